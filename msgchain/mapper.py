from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Set, Tuple

from .utils.params import get_path, is_concrete
from .utils.schemas import ClarificationOption, ToolDefinition, ToolOutcome


logger = logging.getLogger(__name__)

IDENTITY_FIELDS = ("user_id", "sender_id", "current_user_id")

CONVERSATION_CONSUMERS = (
    "summarize_conversation",
    "analyze_conversation",
    "get_messages",
    "get_conversation_info",
)


@dataclass(frozen=True)
class FieldMapping:
    target_field: str
    source_paths: Tuple[str, ...]


def _conversation_mappings(source: str, path: str, targets: Iterable[str]) -> Dict[Tuple[str, str], Tuple[FieldMapping, ...]]:
    return {(source, target): (FieldMapping("conversation_id", (path,)),) for target in targets}


FIELD_MAPPINGS: Dict[Tuple[str, str], Tuple[FieldMapping, ...]] = {
    ("lookup_contacts", "send_message"): (
        FieldMapping("recipient_id", ("contact_id", "contacts.0.id")),
    ),
    ("lookup_contacts", "resolve_conversation"): (
        FieldMapping("contact_identifier", ("contact_id", "contacts.0.id", "contacts.0.email")),
    ),
    ("resolve_conversation", "send_message"): (
        FieldMapping("conversation_id", ("conversation_id",)),
    ),
    **_conversation_mappings("resolve_conversation", "conversation_id", CONVERSATION_CONSUMERS),
    **_conversation_mappings("search_conversations", "conversation_id", (*CONVERSATION_CONSUMERS, "send_message")),
    **_conversation_mappings("get_conversations", "conversations.0.id", (*CONVERSATION_CONSUMERS, "send_message")),
    **_conversation_mappings("get_messages", "conversation_id", ("summarize_conversation", "analyze_conversation")),
    **_conversation_mappings(
        "get_conversation_info",
        "conversation_id",
        ("summarize_conversation", "analyze_conversation", "get_messages"),
    ),
}

SELECTION_BINDINGS: Dict[str, Dict[str, str]] = {
    "contact_selection": {
        "send_message": "recipient_id",
        "resolve_conversation": "contact_identifier",
    },
    "conversation_selection": {
        "send_message": "conversation_id",
        "summarize_conversation": "conversation_id",
        "analyze_conversation": "conversation_id",
        "get_messages": "conversation_id",
        "get_conversation_info": "conversation_id",
    },
}


class ParameterMapper:
    """Copies real values between chained operations without ever overriding the planner."""

    def __init__(
        self,
        field_mappings: Optional[Dict[Tuple[str, str], Tuple[FieldMapping, ...]]] = None,
        selection_bindings: Optional[Dict[str, Dict[str, str]]] = None,
    ) -> None:
        self.field_mappings = dict(field_mappings if field_mappings is not None else FIELD_MAPPINGS)
        self.selection_bindings = dict(
            selection_bindings if selection_bindings is not None else SELECTION_BINDINGS
        )

    def mappable_fields(self, source_operation: str, target_operation: str) -> Set[str]:
        mappings = self.field_mappings.get((source_operation, target_operation), ())
        return {mapping.target_field for mapping in mappings}

    def resolution_sources(self, target_operation: str, target_field: str) -> Set[str]:
        return {
            source
            for (source, target), mappings in self.field_mappings.items()
            if target == target_operation and any(m.target_field == target_field for m in mappings)
        }

    def auto_map_parameters(
        self,
        source_operation: str,
        source_outcome: Optional[ToolOutcome],
        target_operation: str,
        parameters: Dict[str, Any],
    ) -> Dict[str, Any]:
        mapped = dict(parameters)
        if source_outcome is None or not source_outcome.usable or source_outcome.data is None:
            return mapped
        for mapping in self.field_mappings.get((source_operation, target_operation), ()):
            if is_concrete(mapped.get(mapping.target_field)):
                continue
            for path in mapping.source_paths:
                value = get_path(source_outcome.data, path)
                if is_concrete(value):
                    mapped[mapping.target_field] = value
                    logger.debug(
                        "Mapped %s.%s -> %s.%s",
                        source_operation,
                        path,
                        target_operation,
                        mapping.target_field,
                    )
                    break
        return mapped

    def apply_selection(
        self,
        kind: str,
        option: ClarificationOption,
        target_operation: str,
        parameters: Dict[str, Any],
    ) -> Dict[str, Any]:
        mapped = dict(parameters)
        target_field = self.selection_bindings.get(kind, {}).get(target_operation)
        if target_field and not is_concrete(mapped.get(target_field)):
            mapped[target_field] = option.id
        return mapped

    @staticmethod
    def bind_acting_user(
        definition: ToolDefinition, parameters: Dict[str, Any], acting_user_id: str
    ) -> Dict[str, Any]:
        bound = dict(parameters)
        for name in IDENTITY_FIELDS:
            if definition.parameter(name) is not None and not is_concrete(bound.get(name)):
                bound[name] = acting_user_id
        return bound
