from __future__ import annotations

from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..analysis import ConversationAnalyst
from ..backends.base import MessagingBackend
from ..utils.schemas import ToolDefinition
from .base import ToolAdapter
from .messaging_tools import build_messaging_tools


class ToolRegistry:
    """Immutable catalog of tool adapters shared by the planner, validator and executor."""

    def __init__(self, tools: Iterable[ToolAdapter]) -> None:
        adapters: Dict[str, ToolAdapter] = {}
        for tool in tools:
            name = tool.definition.name
            if name in adapters:
                raise ValueError(f"Duplicate tool registration for '{name}'")
            adapters[name] = tool
        self._adapters: Mapping[str, ToolAdapter] = MappingProxyType(adapters)

    def __contains__(self, name: object) -> bool:
        return name in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)

    def names(self) -> List[str]:
        return list(self._adapters)

    def get(self, name: str) -> Optional[ToolAdapter]:
        return self._adapters.get(name)

    def require(self, name: str) -> ToolAdapter:
        adapter = self._adapters.get(name)
        if adapter is None:
            raise KeyError(f"Unknown operation '{name}'")
        return adapter

    def definition(self, name: str) -> Optional[ToolDefinition]:
        adapter = self._adapters.get(name)
        return adapter.definition if adapter else None

    def definitions(self) -> List[ToolDefinition]:
        return [adapter.definition for adapter in self._adapters.values()]

    def openai_tools(self) -> List[Dict[str, Any]]:
        return [definition.to_openai_tool() for definition in self.definitions()]

    def disambiguating_operations(self) -> List[str]:
        return [d.name for d in self.definitions() if d.may_require_clarification]

    def operations_for_clarification(self, kind: str) -> List[str]:
        return [
            d.name
            for d in self.definitions()
            if d.may_require_clarification and d.clarification_kind == kind
        ]


def build_default_registry(backend: MessagingBackend, analyst: ConversationAnalyst) -> ToolRegistry:
    return ToolRegistry(build_messaging_tools(backend, analyst))
