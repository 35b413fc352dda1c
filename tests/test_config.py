from pathlib import Path

import pytest

from msgchain.analysis import ExtractiveConversationAnalyst
from msgchain.backends import HttpMessagingBackend, InMemoryMessagingBackend
from msgchain.command_core import analyst_from_config, backend_from_config, build_processor
from msgchain.config import AppConfig
from msgchain.errors import ReasoningServiceUnavailable
from msgchain.llm import MockChatModel, ModelSettings, get_chat_model

SEED_PATH = Path(__file__).resolve().parent.parent / "data" / "demo_seed.json"


def test_defaults(monkeypatch):
    for name in ("LLM_PROVIDER", "LLM_MODEL", "OPENAI_MODEL", "PLANNER_MAX_ITERATIONS", "CHAIN_MAX_LENGTH",
                 "CHAINING_ENABLED", "MESSAGING_BACKEND", "TRACE_RECORDER"):
        monkeypatch.delenv(name, raising=False)
    config = AppConfig.from_env()
    assert config.llm_provider == "openai"
    assert config.llm_model == "gpt-4o-mini"
    assert config.max_iterations == 3
    assert config.max_chain_length == 5
    assert config.chaining_enabled is True
    assert config.messaging_backend == "memory"
    assert config.trace_recorder == "noop"


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("LLM_PROVIDER", "MOCK")
    monkeypatch.setenv("CHAINING_ENABLED", "false")
    monkeypatch.setenv("CHAIN_MAX_LENGTH", "3")
    monkeypatch.setenv("LLM_API_KEY", "sk-test")
    config = AppConfig.from_env()
    assert config.llm_provider == "mock"
    assert config.chaining_enabled is False
    assert config.max_chain_length == 3
    assert config.llm_api_key == "sk-test"


def test_mock_provider_and_unknown_provider():
    model = get_chat_model(ModelSettings(provider="mock", model="scripted", temperature=0.0))
    assert isinstance(model, MockChatModel)
    with pytest.raises(ValueError, match="Unknown LLM provider"):
        get_chat_model(ModelSettings(provider="carrier-pigeon", model="x", temperature=0.0))


def test_openai_compatible_requires_base_url():
    with pytest.raises(ValueError, match="LLM_BASE_URL"):
        get_chat_model(ModelSettings(provider="openai_compatible", model="x", temperature=0.0))


def test_backend_selection(monkeypatch, tmp_path):
    monkeypatch.setenv("MESSAGING_BACKEND", "http")
    assert isinstance(backend_from_config(AppConfig.from_env()), HttpMessagingBackend)
    monkeypatch.setenv("MESSAGING_BACKEND", "memory")
    monkeypatch.setenv("MESSAGING_SEED_PATH", str(tmp_path / "missing.json"))
    assert isinstance(backend_from_config(AppConfig.from_env()), InMemoryMessagingBackend)
    monkeypatch.setenv("MESSAGING_BACKEND", "carrier-pigeon")
    with pytest.raises(ValueError):
        backend_from_config(AppConfig.from_env())


def test_mock_provider_uses_extractive_analyst(monkeypatch):
    monkeypatch.setenv("LLM_PROVIDER", "mock")
    assert isinstance(analyst_from_config(AppConfig.from_env(), MockChatModel()), ExtractiveConversationAnalyst)


@pytest.mark.asyncio
async def test_build_processor_with_mock_model(monkeypatch):
    monkeypatch.setenv("LLM_PROVIDER", "mock")
    monkeypatch.setenv("MESSAGING_BACKEND", "memory")
    monkeypatch.setenv("MESSAGING_SEED_PATH", str(SEED_PATH))
    monkeypatch.setenv("TRACE_RECORDER", "noop")
    model = MockChatModel(script=[[("get_conversations", {})]])
    processor = build_processor(AppConfig.from_env(), llm=model)
    response = await processor.process(
        {"text": "Show my chats", "appContext": {"actingUserId": "u_alex"}}
    )
    assert response.success is True
    assert response.response_text == "You have 4 conversations."


def test_misconfigured_provider_is_reported(monkeypatch):
    monkeypatch.setenv("LLM_PROVIDER", "carrier-pigeon")
    with pytest.raises(ReasoningServiceUnavailable):
        build_processor(AppConfig.from_env())
