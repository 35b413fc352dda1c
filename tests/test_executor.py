from typing import Any, Dict, List, Optional

import pytest

from msgchain.executor import ChainExecutor
from msgchain.tools.registry import ToolRegistry
from msgchain.utils.schemas import (
    ClarificationOption,
    ClarificationRequest,
    NextAction,
    ParameterSpec,
    Plan,
    ToolCall,
    ToolContext,
    ToolDefinition,
    ToolOutcome,
)
from msgchain.utils.trace_recorder import MemoryTraceRecorder
from msgchain.validator import ChainValidator


class FakeTool:
    def __init__(self, name: str, outcome: Optional[ToolOutcome] = None, required: Optional[List[str]] = None,
                 optional: Optional[List[str]] = None, raises: Optional[Exception] = None) -> None:
        params = [ParameterSpec(name=field, type="string", required=True) for field in required or []]
        params += [ParameterSpec(name=field, type="string") for field in optional or []]
        self.definition = ToolDefinition(name=name, description=name, parameters=params)
        self.outcome = outcome or ToolOutcome.proceed({})
        self.raises = raises
        self.received: List[Dict[str, Any]] = []

    async def execute(self, parameters: Dict[str, Any], context: ToolContext) -> ToolOutcome:
        self.received.append(parameters)
        if self.raises:
            raise self.raises
        return self.outcome


def _executor(*tools, recorder=None):
    registry = ToolRegistry(tools)
    return ChainExecutor(registry, ChainValidator(registry), trace_recorder=recorder)


def _plan(*calls):
    return Plan(calls=[ToolCall(operation=name, parameters=params) for name, params in calls])


@pytest.mark.asyncio
async def test_runs_steps_in_order_and_maps_parameters(make_context):
    lookup = FakeTool("lookup_contacts", ToolOutcome.proceed({"contact_id": "u_jane"}), required=["query"])
    send = FakeTool("send_message", ToolOutcome.complete({"message_id": "m"}), required=["content"],
                    optional=["recipient_id"])
    recorder = MemoryTraceRecorder()
    executor = _executor(lookup, send, recorder=recorder)
    context = make_context()

    execution = await executor.execute(
        _plan(("lookup_contacts", {"query": "Jane"}), ("send_message", {"content": "hi"})), context
    )

    assert execution.operations() == ["lookup_contacts", "send_message"]
    assert send.received == [{"content": "hi", "recipient_id": "u_jane"}]
    assert execution.calls[1].parameters["recipient_id"] == "u_jane"
    assert [outcome.metadata["chain_position"] for outcome in execution.outcomes] == [1, 2]
    assert context.current_chain_length == 2
    assert set(context.prior_outcomes) == {"lookup_contacts", "send_message"}
    assert recorder.steps() == ["executor", "executor"]


@pytest.mark.asyncio
async def test_halts_on_clarification(make_context):
    request = ClarificationRequest(
        kind="contact_selection",
        question="Which John?",
        options=[ClarificationOption(id="a", title="A", confidence=0.9)],
    )
    lookup = FakeTool("lookup_contacts", ToolOutcome.clarify(request), required=["query"])
    send = FakeTool("send_message", required=["content"], optional=["recipient_id"])
    execution = await _executor(lookup, send).execute(
        _plan(("lookup_contacts", {"query": "John"}), ("send_message", {"content": "hi"})), make_context()
    )
    assert execution.halted is True
    assert len(execution.outcomes) == 1
    assert send.received == []


@pytest.mark.asyncio
async def test_halts_on_error(make_context):
    first = FakeTool("get_conversations", ToolOutcome.fail("backend down"))
    second = FakeTool("summarize_conversation")
    execution = await _executor(first, second).execute(
        _plan(("get_conversations", {}), ("summarize_conversation", {})), make_context()
    )
    assert execution.last_outcome.error == "backend down"
    assert second.received == []


@pytest.mark.asyncio
async def test_adapter_exception_becomes_failed_outcome(make_context):
    tool = FakeTool("get_conversations", raises=RuntimeError("socket closed"))
    execution = await _executor(tool).execute(_plan(("get_conversations", {})), make_context())
    outcome = execution.last_outcome
    assert outcome.next_action == NextAction.ERROR
    assert outcome.error == "get_conversations failed: socket closed"
    assert outcome.metadata["tool_name"] == "get_conversations"


@pytest.mark.asyncio
async def test_invalid_parameters_fail_without_invoking(make_context):
    tool = FakeTool("lookup_contacts", required=["query"])
    execution = await _executor(tool).execute(_plan(("lookup_contacts", {})), make_context())
    assert execution.last_outcome.error == "Invalid parameters for lookup_contacts: Missing required parameter query"
    assert tool.received == []


@pytest.mark.asyncio
async def test_chain_length_limit_is_enforced(make_context):
    first = FakeTool("get_conversations")
    second = FakeTool("get_messages")
    third = FakeTool("summarize_conversation")
    context = make_context(max_chain_length=1)
    execution = await _executor(first, second, third).execute(
        _plan(("get_conversations", {}), ("get_messages", {}), ("summarize_conversation", {})), context
    )
    assert execution.operations() == ["get_conversations"]
    assert len(execution.outcomes) == 1
    assert execution.skipped == ["get_messages", "summarize_conversation"]
    assert context.current_chain_length == 1
    assert second.received == []
    assert third.received == []


@pytest.mark.asyncio
async def test_observed_outcomes_are_reused(make_context):
    tool = FakeTool("get_conversations", ToolOutcome.proceed({"count": 0}))
    call = ToolCall(operation="get_conversations", parameters={})
    observed = {call.fingerprint(): ToolOutcome.proceed({"count": 7})}
    execution = await _executor(tool).execute(Plan(calls=[call]), make_context(), observed)
    assert tool.received == []
    assert execution.last_outcome.data == {"count": 7}
    assert execution.last_outcome.metadata["reused"] is True
