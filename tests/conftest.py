from pathlib import Path
from typing import Any, Dict, Optional

import pytest

from msgchain.analysis import ExtractiveConversationAnalyst
from msgchain.backends.memory import InMemoryMessagingBackend
from msgchain.command_core import CommandProcessor
from msgchain.llm import MockChatModel
from msgchain.mapper import ParameterMapper
from msgchain.tools.registry import build_default_registry
from msgchain.utils.schemas import AppContext, ChainContext
from msgchain.utils.trace_recorder import MemoryTraceRecorder
from msgchain.validator import ChainValidator

SEED_PATH = Path(__file__).resolve().parent.parent / "data" / "demo_seed.json"


@pytest.fixture
def backend():
    return InMemoryMessagingBackend.from_json_file(str(SEED_PATH))


@pytest.fixture
def registry(backend):
    return build_default_registry(backend, ExtractiveConversationAnalyst())


@pytest.fixture
def mapper():
    return ParameterMapper()


@pytest.fixture
def validator(registry, mapper):
    return ChainValidator(registry, mapper)


@pytest.fixture
def model():
    return MockChatModel()


@pytest.fixture
def recorder():
    return MemoryTraceRecorder()


@pytest.fixture
def processor(model, registry, recorder):
    return CommandProcessor.from_components(model, registry, trace_recorder=recorder)


@pytest.fixture
def make_context():
    def _make(
        user_id: str = "u_alex",
        screen: str = "home",
        conversation_id: Optional[str] = None,
        max_chain_length: int = 5,
        clarification_response: Optional[Dict[str, Any]] = None,
    ) -> ChainContext:
        app_context = AppContext(
            current_screen=screen,
            current_conversation_id=conversation_id,
            acting_user_id=user_id,
            clarification_response=clarification_response,
        )
        return ChainContext(
            acting_user_id=user_id,
            app_context=app_context,
            request_id="req-test",
            max_chain_length=max_chain_length,
        )

    return _make


@pytest.fixture
def make_request():
    def _make(text: str, user_id: str = "u_alex", **context: Any) -> Dict[str, Any]:
        app_context = {"currentScreen": "home", "actingUserId": user_id, "deviceInfo": {}}
        app_context.update(context)
        return {"text": text, "appContext": app_context}

    return _make
