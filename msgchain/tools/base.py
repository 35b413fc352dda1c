from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Iterable, Optional, Protocol

from pydantic import BaseModel, ValidationError

from ..backends.base import MessagingBackend
from ..utils.schemas import ToolContext, ToolDefinition, ToolOutcome
from .schema_registry import TOOL_SCHEMAS, ToolSchema, parameters_from_model


logger = logging.getLogger(__name__)


class ToolAdapter(Protocol):
    definition: ToolDefinition

    async def execute(self, parameters: Dict[str, Any], context: ToolContext) -> ToolOutcome:
        ...


def format_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "parameters"
        parts.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(parts)


class MessagingTool:
    """Base adapter: decodes parameters, runs the operation and never raises."""

    name: str = ""
    description: str = ""
    may_require_clarification: bool = False
    clarification_kind: Optional[str] = None

    def __init__(self, backend: MessagingBackend) -> None:
        self.backend = backend
        self.schema: ToolSchema = TOOL_SCHEMAS[self.name]
        self.definition = ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=parameters_from_model(self.schema.args_model),
            may_require_clarification=self.may_require_clarification,
            clarification_kind=self.clarification_kind,
        )

    async def execute(self, parameters: Dict[str, Any], context: ToolContext) -> ToolOutcome:
        start = time.perf_counter()
        try:
            args = self.schema.args_model.model_validate(parameters or {})
        except ValidationError as exc:
            outcome = ToolOutcome.fail(f"Invalid parameters for {self.name}: {format_validation_error(exc)}")
        else:
            try:
                outcome = await self.run(args, context)
            except Exception as exc:
                logger.exception("Tool %s failed", self.name)
                outcome = ToolOutcome.fail(f"{self.name} failed: {exc}")
        latency_ms = int((time.perf_counter() - start) * 1000)
        return outcome.with_metadata(tool_name=self.name, execution_time_ms=latency_ms)

    async def run(self, args: Any, context: ToolContext) -> ToolOutcome:
        raise NotImplementedError

    def output(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.schema.output_model is None:
            return payload
        model: BaseModel = self.schema.output_model.model_validate(payload)
        return model.model_dump(mode="json")

    async def display_names(self, user_ids: Iterable[str]) -> Dict[str, str]:
        unique = list(dict.fromkeys(user_ids))
        users = await asyncio.gather(*(self.backend.get_user(user_id) for user_id in unique))
        return {
            user_id: (user.display_name if user else user_id)
            for user_id, user in zip(unique, users)
        }
