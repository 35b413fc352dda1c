from .command_core import CommandProcessor, build_processor
from .config import AppConfig

__all__ = ["AppConfig", "CommandProcessor", "build_processor"]
