from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator
from pydantic.alias_generators import to_camel

from .params import fingerprint

ParamType = Literal["string", "number", "integer", "boolean", "array", "object"]


class WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)


class ItemSpec(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: ParamType = "string"
    enum: Optional[List[Any]] = None


class ParameterSpec(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    type: ParamType
    description: str = ""
    required: bool = False
    default: Any = None
    enum: Optional[List[Any]] = None
    items: Optional[ItemSpec] = None

    def json_schema(self) -> Dict[str, Any]:
        schema: Dict[str, Any] = {"type": self.type, "description": self.description}
        if self.enum:
            schema["enum"] = list(self.enum)
        if self.default is not None:
            schema["default"] = self.default
        if self.type == "array":
            items = self.items or ItemSpec()
            item_schema: Dict[str, Any] = {"type": items.type}
            if items.enum:
                item_schema["enum"] = list(items.enum)
            schema["items"] = item_schema
        return schema


class ToolDefinition(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    name: str
    description: str
    parameters: List[ParameterSpec] = Field(default_factory=list)
    may_require_clarification: bool = False
    clarification_kind: Optional[str] = None

    def parameter(self, name: str) -> Optional[ParameterSpec]:
        for spec in self.parameters:
            if spec.name == name:
                return spec
        return None

    def parameter_names(self) -> List[str]:
        return [spec.name for spec in self.parameters]

    def required_parameters(self) -> List[str]:
        return [spec.name for spec in self.parameters if spec.required]

    def to_openai_tool(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": {spec.name: spec.json_schema() for spec in self.parameters},
                    "required": self.required_parameters(),
                },
            },
        }


class ToolCall(BaseModel):
    model_config = ConfigDict(extra="ignore")

    operation: str
    parameters: Dict[str, Any] = Field(default_factory=dict)

    def fingerprint(self) -> str:
        return fingerprint(self.operation, self.parameters)


class Plan(BaseModel):
    calls: List[ToolCall] = Field(default_factory=list)

    def operations(self) -> List[str]:
        return [call.operation for call in self.calls]

    def __len__(self) -> int:
        return len(self.calls)


class NextAction(str, Enum):
    CONTINUE = "continue"
    COMPLETE = "complete"
    CLARIFICATION_NEEDED = "clarification_needed"
    ERROR = "error"


class ResponseAction(str, Enum):
    NAVIGATE_TO_CONVERSATION = "navigate_to_conversation"
    SHOW_SUMMARY = "show_summary"
    SHOW_ERROR = "show_error"
    NO_ACTION = "no_action"
    REQUEST_CLARIFICATION = "request_clarification"


class ClarificationOption(WireModel):
    id: str
    title: str
    subtitle: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    display_text: Optional[str] = None

    @model_validator(mode="after")
    def _fill_display_text(self) -> "ClarificationOption":
        if not self.display_text:
            label = f"{self.title} - {self.subtitle}" if self.subtitle else self.title
            self.display_text = f"{label} ({round(self.confidence * 100)}% match)"
        return self


class ClarificationRequest(WireModel):
    kind: str
    question: str
    options: List[ClarificationOption] = Field(default_factory=list)
    operation: Optional[str] = None
    reason: Optional[str] = None
    allow_cancel: bool = True

    @model_validator(mode="after")
    def _rank_options(self) -> "ClarificationRequest":
        self.options = sorted(self.options, key=lambda option: option.confidence, reverse=True)
        return self

    @computed_field
    @property
    def best_option(self) -> Optional[str]:
        return self.options[0].id if self.options else None


class ToolOutcome(WireModel):
    success: bool
    next_action: NextAction
    data: Any = None
    clarification: Optional[ClarificationRequest] = None
    error: Optional[str] = None
    confidence: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_variant(self) -> "ToolOutcome":
        if self.next_action == NextAction.CLARIFICATION_NEEDED and self.clarification is None:
            raise ValueError("clarification_needed outcome requires a clarification request")
        if self.next_action == NextAction.ERROR:
            if self.success:
                raise ValueError("error outcome cannot be successful")
            if not self.error:
                raise ValueError("error outcome requires an error message")
        if self.next_action in (NextAction.CONTINUE, NextAction.COMPLETE) and not self.success:
            raise ValueError(f"{self.next_action.value} outcome must be successful")
        return self

    @classmethod
    def proceed(cls, data: Any = None, confidence: Optional[float] = None) -> "ToolOutcome":
        return cls(success=True, next_action=NextAction.CONTINUE, data=data, confidence=confidence)

    @classmethod
    def complete(cls, data: Any = None, confidence: Optional[float] = None) -> "ToolOutcome":
        return cls(success=True, next_action=NextAction.COMPLETE, data=data, confidence=confidence)

    @classmethod
    def clarify(cls, request: ClarificationRequest, data: Any = None) -> "ToolOutcome":
        return cls(
            success=True,
            next_action=NextAction.CLARIFICATION_NEEDED,
            clarification=request,
            data=data,
        )

    @classmethod
    def fail(cls, error: str, data: Any = None) -> "ToolOutcome":
        return cls(success=False, next_action=NextAction.ERROR, error=error, data=data)

    @property
    def halts(self) -> bool:
        return self.next_action in (NextAction.ERROR, NextAction.CLARIFICATION_NEEDED)

    @property
    def usable(self) -> bool:
        return self.success and not self.halts

    def with_metadata(self, **values: Any) -> "ToolOutcome":
        return self.model_copy(update={"metadata": {**self.metadata, **values}})

    def to_transcript(self) -> str:
        payload = self.model_dump(mode="json", exclude_none=True, exclude={"metadata"})
        return json.dumps(payload, ensure_ascii=True, default=str)


class ClarificationResponse(WireModel):
    selected_option: ClarificationOption
    original_clarification: Optional[ClarificationRequest] = None


class AppContext(WireModel):
    current_screen: str = "home"
    current_conversation_id: Optional[str] = None
    acting_user_id: str = ""
    device_info: Dict[str, Any] = Field(default_factory=dict)
    recent_conversations: List[str] = Field(default_factory=list)
    clarification_response: Optional[ClarificationResponse] = None

    @property
    def in_conversation(self) -> bool:
        return self.current_screen == "conversation" and bool(self.current_conversation_id)


class CommandRequest(WireModel):
    text: str = ""
    app_context: AppContext = Field(default_factory=AppContext)
    enable_chaining: bool = True
    max_chain_length: int = Field(default=5, ge=1)


class ChainInfo(WireModel):
    operations_used: List[str] = Field(default_factory=list)
    outcomes: List[ToolOutcome] = Field(default_factory=list)
    total_execution_time_ms: int = 0


class CommandResponse(WireModel):
    success: bool
    result: Any = None
    response_text: str = ""
    action: ResponseAction = ResponseAction.NO_ACTION
    error: Optional[str] = None
    trace_id: Optional[str] = None
    chain_info: Optional[ChainInfo] = None
    requires_clarification: bool = False
    clarification_data: Optional[ClarificationRequest] = None
    original_instruction: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


@dataclass(frozen=True)
class ToolContext:
    acting_user_id: str
    app_context: AppContext
    request_id: str


@dataclass
class ChainContext:
    acting_user_id: str
    app_context: AppContext
    request_id: str
    prior_outcomes: Dict[str, ToolOutcome] = field(default_factory=dict)
    max_chain_length: int = 5
    current_chain_length: int = 0

    def tool_context(self) -> ToolContext:
        return ToolContext(
            acting_user_id=self.acting_user_id,
            app_context=self.app_context,
            request_id=self.request_id,
        )

    def record(self, operation: str, outcome: ToolOutcome) -> None:
        self.prior_outcomes[operation] = outcome
        self.current_chain_length += 1

    @property
    def selection(self) -> Optional[ClarificationResponse]:
        return self.app_context.clarification_response

    @property
    def has_room(self) -> bool:
        return self.current_chain_length < self.max_chain_length
