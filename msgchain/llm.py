from __future__ import annotations

import copy
import itertools
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from langchain_core.messages import AIMessage
from langchain_openai import ChatOpenAI

from .config import AppConfig


class ChatModel(Protocol):
    async def ainvoke(self, *args: Any, **kwargs: Any) -> Any:
        ...

    def bind_tools(self, tools: list, **kwargs: Any) -> "ChatModel":
        ...

    def with_structured_output(self, schema: Any) -> "ChatModel":
        ...


@dataclass(frozen=True)
class ModelSettings:
    provider: str
    model: str
    temperature: float
    api_key: Optional[str] = None
    base_url: Optional[str] = None

    @classmethod
    def from_config(cls, config: AppConfig) -> "ModelSettings":
        return cls(
            provider=config.llm_provider,
            model=config.llm_model,
            temperature=config.llm_temperature,
            api_key=config.llm_api_key,
            base_url=config.llm_base_url,
        )


class LLMProvider(Protocol):
    def get_chat_model(self, settings: ModelSettings) -> ChatModel:
        ...


class OpenAIProvider:
    def get_chat_model(self, settings: ModelSettings) -> ChatModel:
        kwargs: Dict[str, Any] = {
            "model": settings.model,
            "temperature": settings.temperature,
        }
        if settings.api_key:
            kwargs["api_key"] = settings.api_key
        return ChatOpenAI(**kwargs)


class OpenAICompatibleProvider:
    def get_chat_model(self, settings: ModelSettings) -> ChatModel:
        if not settings.base_url:
            raise ValueError("LLM_BASE_URL is required for the openai_compatible provider.")
        kwargs: Dict[str, Any] = {
            "model": settings.model,
            "temperature": settings.temperature,
            "base_url": settings.base_url,
        }
        if settings.api_key:
            kwargs["api_key"] = settings.api_key
        return ChatOpenAI(**kwargs)


class AnthropicProvider:
    def get_chat_model(self, settings: ModelSettings) -> ChatModel:
        try:
            from langchain_anthropic import ChatAnthropic
        except ImportError as exc:
            raise RuntimeError(
                "langchain-anthropic is not installed. Install the 'anthropic' extra to use it."
            ) from exc
        kwargs: Dict[str, Any] = {"model": settings.model, "temperature": settings.temperature}
        if settings.api_key:
            kwargs["api_key"] = settings.api_key
        return ChatAnthropic(**kwargs)


_call_ids = itertools.count(1)


def scripted_turn(*calls: Tuple[str, Dict[str, Any]], content: str = "") -> AIMessage:
    """Build an assistant turn proposing the given (operation, arguments) calls."""
    tool_calls = [
        {"name": name, "args": dict(args), "id": f"call_{next(_call_ids)}", "type": "tool_call"}
        for name, args in calls
    ]
    return AIMessage(content=content, tool_calls=tool_calls)


class MockChatModel:
    """Replays a script of assistant turns and records every transcript it receives.

    Script entries may be ``AIMessage`` instances, exceptions (raised on that turn) or
    sequences of ``(operation, arguments)`` tuples. Once the script runs out the model
    answers with plain text and no calls. Clones made by ``bind_tools`` and
    ``with_structured_output`` share the script and the call log.
    """

    def __init__(
        self,
        model: str = "mock",
        temperature: float = 0.0,
        script: Optional[List[Any]] = None,
        structured: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.script: List[Any] = script if script is not None else []
        self.structured: Dict[str, Any] = structured if structured is not None else {}
        self.calls: List[Sequence[Any]] = []
        self.bound_tools: List[Any] = []
        self._structured_schema: Any = None

    def bind_tools(self, tools: list, **kwargs: Any) -> "MockChatModel":
        clone = copy.copy(self)
        clone.bound_tools = list(tools)
        return clone

    def with_structured_output(self, schema: Any) -> "MockChatModel":
        clone = copy.copy(self)
        clone._structured_schema = schema
        return clone

    def queue(self, *entries: Any) -> None:
        self.script.extend(entries)

    def invoke(self, messages: Any, *args: Any, **kwargs: Any) -> Any:
        self.calls.append(list(messages) if isinstance(messages, Iterable) else [messages])
        if self._structured_schema is not None:
            return self._structured_reply(self._structured_schema)
        if not self.script:
            return AIMessage(content="Done.")
        entry = self.script.pop(0)
        if isinstance(entry, BaseException):
            raise entry
        if isinstance(entry, AIMessage):
            return entry
        return scripted_turn(*entry)

    async def ainvoke(self, messages: Any, *args: Any, **kwargs: Any) -> Any:
        return self.invoke(messages, *args, **kwargs)

    def _structured_reply(self, schema: Any) -> Any:
        name = getattr(schema, "__name__", str(schema))
        reply = self.structured.get(name)
        if isinstance(reply, BaseException):
            raise reply
        if reply is not None:
            return schema.model_validate(reply) if isinstance(reply, dict) else reply
        return schema.model_construct()


class MockProvider:
    def get_chat_model(self, settings: ModelSettings) -> ChatModel:
        return MockChatModel(model=settings.model, temperature=settings.temperature)


_PROVIDERS: Dict[str, LLMProvider] = {
    "openai": OpenAIProvider(),
    "openai_compatible": OpenAICompatibleProvider(),
    "anthropic": AnthropicProvider(),
    "mock": MockProvider(),
}


def get_chat_model(settings: ModelSettings) -> ChatModel:
    provider = _PROVIDERS.get(settings.provider)
    if not provider:
        raise ValueError(f"Unknown LLM provider '{settings.provider}'.")
    return provider.get_chat_model(settings)
