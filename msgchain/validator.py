from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .mapper import IDENTITY_FIELDS, ParameterMapper
from .tools.registry import ToolRegistry
from .utils.params import is_concrete, is_placeholder
from .utils.schemas import AppContext, ParameterSpec, Plan, ToolCall

_CONTEXTUAL_REFERENCE = re.compile(r"\b(this (conversation|chat)|here|in here)\b", re.IGNORECASE)

CHAIN_PATTERNS: Dict[Tuple[str, ...], str] = {
    ("lookup_contacts", "send_message"): "Send message to contact by name",
    ("lookup_contacts", "resolve_conversation"): "Open conversation with contact by name",
    ("lookup_contacts", "resolve_conversation", "send_message"): "Send message via resolved conversation",
    ("resolve_conversation", "send_message"): "Send message to resolved conversation",
    ("get_conversations", "summarize_conversation"): "Summarize recent conversation",
    ("get_conversations", "get_messages"): "Read recent conversation",
    ("search_conversations", "summarize_conversation"): "Summarize conversation by topic",
    ("search_conversations", "analyze_conversation"): "Answer question about conversation by topic",
    ("get_messages", "summarize_conversation"): "Summarize retrieved messages",
}

_PYTHON_TYPES = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
}


@dataclass(frozen=True)
class ValidationVerdict:
    valid: bool
    errors: Tuple[str, ...] = field(default_factory=tuple)
    warnings: Tuple[str, ...] = field(default_factory=tuple)
    suggestions: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def build(
        cls,
        errors: Iterable[str] = (),
        warnings: Iterable[str] = (),
        suggestions: Iterable[str] = (),
    ) -> "ValidationVerdict":
        errors = tuple(errors)
        return cls(valid=not errors, errors=errors, warnings=tuple(warnings), suggestions=tuple(suggestions))


def _type_matches(value: Any, expected: str) -> bool:
    if expected in ("integer", "number") and isinstance(value, bool):
        return False
    return isinstance(value, _PYTHON_TYPES.get(expected, (object,)))


class ChainValidator:
    def __init__(
        self,
        registry: ToolRegistry,
        mapper: Optional[ParameterMapper] = None,
        max_instruction_chars: int = 4000,
    ) -> None:
        self.registry = registry
        self.mapper = mapper or ParameterMapper()
        self.max_instruction_chars = max_instruction_chars

    def validate_pre_flight(self, text: str, app_context: AppContext) -> ValidationVerdict:
        errors: List[str] = []
        warnings: List[str] = []
        suggestions: List[str] = []
        if not text or not text.strip():
            errors.append("Instruction text is empty")
        elif len(text) > self.max_instruction_chars:
            errors.append(f"Instruction is longer than {self.max_instruction_chars} characters")
        if not app_context.acting_user_id or not app_context.acting_user_id.strip():
            errors.append("Acting user id is missing")
        if app_context.current_screen == "conversation" and not app_context.current_conversation_id:
            warnings.append("Conversation screen is active but no conversation id was supplied")
        if text and _CONTEXTUAL_REFERENCE.search(text) and not app_context.in_conversation:
            suggestions.append("Open the conversation you mean, or name it, so 'this' can be resolved")
        return ValidationVerdict.build(errors, warnings, suggestions)

    def chain_pattern(self, plan: Plan) -> Optional[str]:
        return CHAIN_PATTERNS.get(tuple(plan.operations()))

    def validate_chain(
        self,
        plan: Plan,
        max_chain_length: int,
        excluded_operations: Sequence[str] = (),
    ) -> ValidationVerdict:
        errors: List[str] = []
        warnings: List[str] = []
        operations = plan.operations()
        if not operations:
            errors.append("Plan is empty")
        if len(operations) > max_chain_length:
            errors.append(f"Plan has {len(operations)} steps; the limit is {max_chain_length}")

        for index in range(1, len(operations)):
            if operations[index] == operations[index - 1]:
                errors.append(f"Step {index + 1} repeats {operations[index]} consecutively")

        seen_disambiguating = set()
        for index, call in enumerate(plan.calls):
            definition = self.registry.definition(call.operation)
            if definition is None:
                errors.append(f"Step {index + 1} uses unknown operation {call.operation}")
                continue
            if call.operation in excluded_operations:
                errors.append(f"Step {index + 1} repeats {call.operation}, which already asked for clarification")
            if definition.may_require_clarification:
                if call.operation in seen_disambiguating:
                    errors.append(f"{call.operation} may only appear once per plan")
                seen_disambiguating.add(call.operation)
            if call.operation == "send_message":
                errors.extend(self._check_send_target(plan.calls, index))

        pattern = self.chain_pattern(plan)
        if pattern:
            warnings.append(f"Recognised pattern: {pattern}")
        elif len(operations) > 1:
            warnings.append("Unrecognised chain pattern: " + " -> ".join(operations))
        return ValidationVerdict.build(errors, warnings)

    def _check_send_target(self, calls: List[ToolCall], index: int) -> List[str]:
        call = calls[index]
        if is_concrete(call.parameters.get("recipient_id")) or is_concrete(call.parameters.get("conversation_id")):
            return []
        if index > 0:
            previous = calls[index - 1].operation
            if self.mapper.mappable_fields(previous, call.operation) & {"recipient_id", "conversation_id"}:
                return []
        return [f"Step {index + 1} send_message has no recipient_id or conversation_id and no step to resolve one"]

    def validate_tool_parameters(
        self,
        operation: str,
        parameters: Dict[str, Any],
        app_context: AppContext,
        deferred_fields: Iterable[str] = (),
    ) -> ValidationVerdict:
        definition = self.registry.definition(operation)
        if definition is None:
            return ValidationVerdict.build([f"Unknown operation {operation}"])

        deferred = set(deferred_fields)
        errors: List[str] = []
        warnings: List[str] = []
        declared = {spec.name: spec for spec in definition.parameters}

        for name in sorted(set(parameters) - set(declared)):
            warnings.append(f"Unexpected parameter {name} for {operation}")

        for spec in definition.parameters:
            value = parameters.get(spec.name)
            if value is None:
                if spec.required and spec.name not in deferred:
                    errors.append(f"Missing required parameter {spec.name}")
                continue
            if is_placeholder(value):
                if spec.name in deferred:
                    continue
                if spec.required:
                    errors.append(f"Parameter {spec.name} is a placeholder: {value!r}")
                else:
                    warnings.append(f"Optional parameter {spec.name} looks like a placeholder: {value!r}")
                continue
            errors.extend(self._check_value(spec, value))

        acting_user = app_context.acting_user_id
        for name in IDENTITY_FIELDS:
            value = parameters.get(name)
            if name in declared and value is not None and acting_user and value != acting_user:
                errors.append(f"Parameter {name} must be the acting user")

        sender = parameters.get("sender_id")
        recipient = parameters.get("recipient_id")
        if sender and recipient and sender == recipient and not parameters.get("allow_self_message"):
            errors.append("Sender and recipient are the same user")
        return ValidationVerdict.build(errors, warnings)

    @staticmethod
    def _check_value(spec: ParameterSpec, value: Any) -> List[str]:
        if not _type_matches(value, spec.type):
            return [f"Parameter {spec.name} should be {spec.type}, got {type(value).__name__}"]
        errors: List[str] = []
        if spec.enum and value not in spec.enum:
            errors.append(f"Parameter {spec.name} must be one of {', '.join(map(str, spec.enum))}")
        if spec.type == "array" and spec.items is not None:
            for item in value:
                if not _type_matches(item, spec.items.type):
                    errors.append(f"Items of {spec.name} should be {spec.items.type}")
                    break
                if spec.items.enum and item not in spec.items.enum:
                    errors.append(f"Item {item!r} of {spec.name} must be one of {', '.join(map(str, spec.items.enum))}")
                    break
        return errors
