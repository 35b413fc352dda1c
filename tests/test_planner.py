import pytest
from langchain_core.messages import ToolMessage

from msgchain.errors import PlanningError, ReasoningServiceUnavailable
from msgchain.llm import MockChatModel
from msgchain.planner import Planner, PlanningLoop, RoundDecision
from msgchain.utils.schemas import ClarificationOption, ClarificationRequest, ClarificationResponse
from msgchain.utils.trace_recorder import MemoryTraceRecorder


def _planner(model, registry, validator, mapper, recorder=None, max_iterations=3):
    return Planner(model, registry, validator, mapper, max_iterations=max_iterations, trace_recorder=recorder)


def test_loop_continues_until_iterations_exhausted():
    loop = PlanningLoop(max_iterations=2, max_chain_length=5)
    assert loop.advance(proposed=1, plan_length=1, halted=False) == RoundDecision.CONTINUE
    assert loop.advance(proposed=1, plan_length=2, halted=False) == RoundDecision.STOP
    assert loop.stop_reason == "iterations_exhausted"
    assert loop.rounds == 2


@pytest.mark.parametrize(
    "proposed, plan_length, halted, reason",
    [(0, 1, False, "no_proposals"), (2, 1, True, "halted"), (1, 5, False, "chain_full")],
)
def test_loop_stop_reasons(proposed, plan_length, halted, reason):
    loop = PlanningLoop(max_iterations=3, max_chain_length=5)
    assert loop.advance(proposed, plan_length, halted) == RoundDecision.STOP
    assert loop.stop_reason == reason


@pytest.mark.asyncio
async def test_lookup_result_feeds_the_next_round(registry, validator, mapper, make_context):
    model = MockChatModel(
        script=[
            [("lookup_contacts", {"query": "Jane"})],
            [("send_message", {"content": "I'm on my way"})],
        ]
    )
    recorder = MemoryTraceRecorder()
    result = await _planner(model, registry, validator, mapper, recorder).plan(
        "Tell Jane I'm on my way", make_context()
    )

    assert result.plan.operations() == ["lookup_contacts", "send_message"]
    send = result.plan.calls[1]
    assert send.parameters["recipient_id"] == "u_jane"
    assert send.parameters["sender_id"] == "u_alex"
    assert len(result.observed) == 2
    assert result.rounds == 3
    assert result.stop_reason == "no_proposals"
    assert recorder.steps() == ["planner", "planner", "planner"]
    assert any(isinstance(message, ToolMessage) for message in model.calls[1])


@pytest.mark.asyncio
async def test_calls_after_a_disambiguating_call_are_dropped(registry, validator, mapper, make_context):
    model = MockChatModel(
        script=[[("lookup_contacts", {"query": "John"}), ("send_message", {"content": "hey"})]]
    )
    result = await _planner(model, registry, validator, mapper).plan("Tell John hey", make_context())
    assert result.plan.operations() == ["lookup_contacts"]
    assert result.stop_reason == "halted"
    assert len(model.calls) == 1


@pytest.mark.asyncio
async def test_consecutive_repeats_are_dropped(registry, validator, mapper, make_context):
    model = MockChatModel(script=[[("get_conversations", {}), ("get_conversations", {"limit": 1})]])
    result = await _planner(model, registry, validator, mapper).plan("Show my chats", make_context())
    assert result.plan.operations() == ["get_conversations"]


@pytest.mark.asyncio
async def test_unknown_operations_are_rejected(registry, validator, mapper, make_context):
    model = MockChatModel(script=[[("delete_all", {}), ("get_conversations", {})]])
    result = await _planner(model, registry, validator, mapper).plan("Show my chats", make_context())
    assert result.plan.operations() == ["get_conversations"]
    assert result.rejected[0].operation == "delete_all"
    assert result.rejected[0].reasons == ["Unknown operation delete_all"]


@pytest.mark.asyncio
async def test_invalid_parameters_are_reported_back(registry, validator, mapper, make_context):
    model = MockChatModel(
        script=[
            [("lookup_contacts", {})],
            [("lookup_contacts", {"query": "Jane"})],
        ]
    )
    result = await _planner(model, registry, validator, mapper).plan("Find Jane", make_context())
    assert result.plan.operations() == ["lookup_contacts"]
    assert result.rejected[0].reasons == ["Missing required parameter query"]
    feedback = model.calls[1][-1]
    assert isinstance(feedback, ToolMessage)
    assert "Missing required parameter query" in feedback.content


@pytest.mark.asyncio
async def test_no_proposals_raises_planning_error(registry, validator, mapper, make_context):
    planner = _planner(MockChatModel(), registry, validator, mapper)
    with pytest.raises(PlanningError, match="No appropriate operations"):
        await planner.plan("What's the weather?", make_context())


@pytest.mark.asyncio
async def test_reasoning_failure_is_surfaced(registry, validator, mapper, make_context):
    planner = _planner(MockChatModel(script=[RuntimeError("timeout")]), registry, validator, mapper)
    with pytest.raises(ReasoningServiceUnavailable, match="timeout"):
        await planner.plan("Tell Jane hi", make_context())


@pytest.mark.asyncio
async def test_single_round_plans_without_executing(registry, validator, mapper, make_context):
    model = MockChatModel(
        script=[[("get_conversations", {"limit": 1}), ("summarize_conversation", {})]]
    )
    result = await _planner(model, registry, validator, mapper).plan(
        "Summarize my latest chat", make_context(), enable_chaining=False
    )
    assert result.plan.operations() == ["get_conversations", "summarize_conversation"]
    assert result.observed == {}
    assert result.stop_reason == "iterations_exhausted"


@pytest.mark.asyncio
async def test_plan_respects_chain_length(registry, validator, mapper, make_context):
    model = MockChatModel(
        script=[[("get_conversations", {}), ("summarize_conversation", {"conversation_id": "c42"})]]
    )
    result = await _planner(model, registry, validator, mapper).plan(
        "Summarize", make_context(max_chain_length=1)
    )
    assert result.plan.operations() == ["get_conversations"]
    assert result.stop_reason == "chain_full"


@pytest.mark.asyncio
async def test_resume_applies_selection_and_excludes_lookup(registry, validator, mapper, make_context):
    original = ClarificationRequest(
        kind="contact_selection",
        question='I found 3 contacts named "John". Which one did you mean?',
        options=[ClarificationOption(id="u_johnny", title="Johnny Park", confidence=0.85)],
        operation="lookup_contacts",
    )
    selection = ClarificationResponse(selected_option=original.options[0], original_clarification=original)
    model = MockChatModel(
        script=[[("lookup_contacts", {"query": "John"}), ("send_message", {"content": "hey"})]]
    )
    result = await _planner(model, registry, validator, mapper).plan(
        "Tell John hey", make_context(clarification_response=selection)
    )
    assert result.excluded_operations == ("lookup_contacts",)
    assert result.rejected[0].operation == "lookup_contacts"
    assert result.plan.operations() == ["send_message"]
    assert result.plan.calls[0].parameters["recipient_id"] == "u_johnny"
    assert "Do NOT call lookup_contacts" in model.calls[0][0].content


@pytest.mark.asyncio
async def test_resume_binds_selected_conversation(registry, validator, mapper, make_context):
    original = ClarificationRequest(
        kind="conversation_selection",
        question='I found 2 conversations about "Priya". Which one did you mean?',
        options=[
            ClarificationOption(id="c42", title="Weekend trip", confidence=0.8),
            ClarificationOption(id="c_priya", title="Priya Patel", confidence=0.8),
        ],
        operation="search_conversations",
    )
    selection = ClarificationResponse(selected_option=original.options[1], original_clarification=original)
    model = MockChatModel(
        script=[[("search_conversations", {"query": "Priya"}), ("summarize_conversation", {})]]
    )
    result = await _planner(model, registry, validator, mapper).plan(
        "Summarize my chat with Priya", make_context(clarification_response=selection)
    )
    assert result.excluded_operations == ("search_conversations",)
    assert result.rejected[0].operation == "search_conversations"
    assert result.plan.operations() == ["summarize_conversation"]
    assert result.plan.calls[0].parameters["conversation_id"] == "c_priya"
    assert "Do NOT call search_conversations" in model.calls[0][0].content


@pytest.mark.asyncio
async def test_second_disambiguating_call_is_refused_before_running(registry, validator, mapper, make_context):
    model = MockChatModel(
        script=[
            [("lookup_contacts", {"query": "Jane"})],
            [("send_message", {"content": "hi"})],
            [("lookup_contacts", {"query": "Priya"})],
        ]
    )
    result = await _planner(model, registry, validator, mapper).plan("Tell Jane hi", make_context())
    assert result.plan.operations() == ["lookup_contacts", "send_message"]
    assert result.rejected[-1].reasons == ["lookup_contacts may only appear once per plan"]
    assert len(result.observed) == 2
