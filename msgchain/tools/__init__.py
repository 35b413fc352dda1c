from .base import MessagingTool, ToolAdapter
from .registry import ToolRegistry, build_default_registry

__all__ = ["MessagingTool", "ToolAdapter", "ToolRegistry", "build_default_registry"]
