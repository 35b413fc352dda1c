from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from langchain_core.messages import AIMessage, BaseMessage, ToolMessage
from langchain_core.prompts import ChatPromptTemplate

from .errors import PlanningError, ReasoningServiceUnavailable
from .executor import invoke_tool
from .llm import ChatModel
from .mapper import ParameterMapper
from .tools.registry import ToolRegistry
from .utils.schemas import ChainContext, ClarificationResponse, Plan, ToolCall, ToolOutcome
from .utils.trace_recorder import NoopTraceRecorder, TraceEvent, TraceRecorder
from .validator import ChainValidator


logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = """You are the command assistant inside a messaging app. Turn the user's \
instruction into calls to the available operations. Never chat; only call operations.

Acting user id: {acting_user_id}
{screen_context}

Common patterns:
- "Tell Jane I'm on my way": lookup_contacts(query="Jane"), then send_message(content="I'm on my way"). \
The recipient is filled in from the lookup result.
- "Open my chat with Sam": lookup_contacts(query="Sam"), then resolve_conversation(create_if_missing=true).
- "Summarize this conversation" inside a conversation: summarize_conversation(conversation_id=<current \
conversation id>). Do not list conversations first.
- "Summarize my latest chat" outside a conversation: get_conversations(limit=1), then \
summarize_conversation.
- "What did Priya say about the launch?" inside a conversation: analyze_conversation(query="What did \
Priya say about the launch?") on the current conversation.
- "Find the chat about the trip": search_conversations(query="trip").

Rules:
- Call lookup_contacts at most once, and call nothing after it in the same turn; wait for its result.
- Never invent ids. Leave an id out when an earlier step will supply it.
- Use at most {max_chain_length} operations in total.
- When the instruction is complete, or cannot be handled with these operations, reply with no calls."""

RESUME_SYSTEM_PROMPT = """You are the command assistant inside a messaging app. The user was asked \
"{original_question}" and picked an answer. Continue the original request with that choice.

Acting user id: {acting_user_id}
{screen_context}

Selected option: {selected_title} (id {selected_id})
{binding_hint}

Rules:
- Do NOT call {excluded_operations}. The selection above already answers it.
- Call the operation that completes the request directly, using the selected id.
- Never invent other ids.
- When the instruction is complete, reply with no calls."""


class RoundDecision(str, Enum):
    CONTINUE = "continue"
    STOP = "stop"


@dataclass
class PlanningLoop:
    """Termination rules for the planning rounds."""

    max_iterations: int
    max_chain_length: int
    round_index: int = 0
    stop_reason: Optional[str] = None

    @property
    def rounds(self) -> int:
        return self.round_index + 1

    def more_rounds_remain(self) -> bool:
        return self.round_index < self.max_iterations - 1

    def advance(self, proposed: int, plan_length: int, halted: bool) -> RoundDecision:
        if proposed == 0:
            self.stop_reason = "no_proposals"
        elif halted:
            self.stop_reason = "halted"
        elif plan_length >= self.max_chain_length:
            self.stop_reason = "chain_full"
        elif not self.more_rounds_remain():
            self.stop_reason = "iterations_exhausted"
        else:
            self.round_index += 1
            return RoundDecision.CONTINUE
        return RoundDecision.STOP


@dataclass
class Proposal:
    call_id: str
    operation: str
    parameters: Dict[str, Any]


@dataclass
class RejectedCall:
    operation: str
    parameters: Dict[str, Any]
    reasons: List[str]


@dataclass
class PlanningResult:
    plan: Plan
    observed: Dict[str, ToolOutcome] = field(default_factory=dict)
    rounds: int = 0
    rejected: List[RejectedCall] = field(default_factory=list)
    stop_reason: Optional[str] = None
    excluded_operations: Tuple[str, ...] = ()


def _note(**payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=True, default=str)


class Planner:
    def __init__(
        self,
        llm: ChatModel,
        registry: ToolRegistry,
        validator: ChainValidator,
        mapper: Optional[ParameterMapper] = None,
        max_iterations: int = 3,
        trace_recorder: Optional[TraceRecorder] = None,
    ) -> None:
        self.registry = registry
        self.validator = validator
        self.mapper = mapper or ParameterMapper()
        self.max_iterations = max(1, max_iterations)
        self.trace_recorder = trace_recorder or NoopTraceRecorder()
        self.llm = llm.bind_tools(registry.openai_tools())
        self.default_prompt = ChatPromptTemplate.from_messages(
            [("system", DEFAULT_SYSTEM_PROMPT), ("human", "{instruction}")]
        )
        self.resume_prompt = ChatPromptTemplate.from_messages(
            [("system", RESUME_SYSTEM_PROMPT), ("human", "{instruction}")]
        )

    async def plan(
        self, instruction: str, context: ChainContext, enable_chaining: bool = True
    ) -> PlanningResult:
        selection = context.selection
        excluded = self.excluded_operations(selection)
        messages: List[BaseMessage] = self.build_messages(instruction, context, selection, excluded)
        loop = PlanningLoop(
            max_iterations=self.max_iterations if enable_chaining else 1,
            max_chain_length=context.max_chain_length,
        )
        plan_calls: List[ToolCall] = []
        observed: Dict[str, ToolOutcome] = {}
        rejected: List[RejectedCall] = []
        last_executed: Optional[Tuple[ToolCall, ToolOutcome]] = None

        while True:
            round_number = loop.rounds
            round_start = time.perf_counter()
            response = await self._ask(messages)
            proposals, feedback = self._decode(response, rejected)
            raw_count = len(proposals) + len(feedback)
            retained = self._drop_repeats(proposals, feedback)
            retained = self._reject_excluded(retained, excluded, feedback, rejected)
            retained = self._truncate_after_disambiguation(retained, feedback)

            halted = False
            more_rounds = loop.more_rounds_remain()
            for proposal in retained:
                if halted:
                    feedback[proposal.call_id] = _note(status="skipped", reason="an earlier step stopped the chain")
                    continue
                parameters = self._prepare(proposal, context, selection, last_executed if more_rounds else None)
                deferred: Set[str] = set()
                if plan_calls and not more_rounds:
                    deferred = self.mapper.mappable_fields(plan_calls[-1].operation, proposal.operation)
                verdict = self.validator.validate_tool_parameters(
                    proposal.operation, parameters, context.app_context, deferred
                )
                if not verdict.valid:
                    rejected.append(RejectedCall(proposal.operation, parameters, list(verdict.errors)))
                    failure = ToolOutcome.fail(
                        f"Invalid parameters for {proposal.operation}: " + "; ".join(verdict.errors)
                    )
                    feedback[proposal.call_id] = failure.to_transcript()
                    continue

                call = ToolCall(operation=proposal.operation, parameters=parameters)
                if self._repeats_disambiguation(call, plan_calls):
                    reason = f"{call.operation} may only appear once per plan"
                    rejected.append(RejectedCall(call.operation, parameters, [reason]))
                    feedback[proposal.call_id] = ToolOutcome.fail(reason).to_transcript()
                    continue
                if self._is_duplicate(call, plan_calls):
                    feedback[proposal.call_id] = _note(status="skipped", reason="duplicate of an earlier step")
                    continue
                if len(plan_calls) >= context.max_chain_length:
                    feedback[proposal.call_id] = _note(status="skipped", reason="chain length limit reached")
                    continue

                plan_calls.append(call)
                if more_rounds:
                    outcome = await invoke_tool(self.registry, call, context)
                    observed[call.fingerprint()] = outcome
                    last_executed = (call, outcome)
                    feedback[proposal.call_id] = outcome.to_transcript()
                    halted = outcome.halts
                else:
                    feedback[proposal.call_id] = _note(status="planned")

            messages.append(response)
            messages.extend(
                ToolMessage(content=content, tool_call_id=call_id) for call_id, content in feedback.items()
            )
            decision = loop.advance(raw_count, len(plan_calls), halted)
            self._record_round(context, round_number, loop, proposals, plan_calls, decision, round_start)
            if decision == RoundDecision.STOP:
                break

        logger.info(
            "Planning finished after %s round(s): %s (%s)",
            loop.rounds,
            [call.operation for call in plan_calls],
            loop.stop_reason,
        )
        if not plan_calls:
            raise PlanningError("No appropriate operations found for this instruction")
        return PlanningResult(
            plan=Plan(calls=plan_calls),
            observed=observed,
            rounds=loop.rounds,
            rejected=rejected,
            stop_reason=loop.stop_reason,
            excluded_operations=tuple(excluded),
        )

    def excluded_operations(self, selection: Optional[ClarificationResponse]) -> List[str]:
        if selection is None:
            return []
        original = selection.original_clarification
        if original is not None and original.operation:
            return [original.operation]
        if original is not None:
            matching = self.registry.operations_for_clarification(original.kind)
            if matching:
                return matching
        return self.registry.disambiguating_operations()

    def build_messages(
        self,
        instruction: str,
        context: ChainContext,
        selection: Optional[ClarificationResponse],
        excluded: Sequence[str],
    ) -> List[BaseMessage]:
        app_context = context.app_context
        if app_context.in_conversation:
            screen_context = (
                f"The user is inside conversation {app_context.current_conversation_id}. "
                "'this', 'here' and 'this conversation' refer to it."
            )
        else:
            screen_context = f"The user is on the {app_context.current_screen} screen, not inside a conversation."

        if selection is None:
            return self.default_prompt.format_messages(
                instruction=instruction,
                acting_user_id=context.acting_user_id,
                screen_context=screen_context,
                max_chain_length=context.max_chain_length,
            )

        option = selection.selected_option
        original = selection.original_clarification
        kind = original.kind if original else None
        bindings = self.mapper.selection_bindings.get(kind or "", {})
        if bindings:
            binding_hint = "Pass the selected id as " + ", ".join(
                f"{field} for {operation}" for operation, field in bindings.items()
            ) + "."
        else:
            binding_hint = "Pass the selected id wherever the request needs it."
        return self.resume_prompt.format_messages(
            instruction=instruction,
            acting_user_id=context.acting_user_id,
            screen_context=screen_context,
            original_question=original.question if original else "Which one did you mean?",
            selected_title=option.title,
            selected_id=option.id,
            binding_hint=binding_hint,
            excluded_operations=" or ".join(excluded) or "the lookup again",
        )

    async def _ask(self, messages: List[BaseMessage]) -> AIMessage:
        try:
            response = await self.llm.ainvoke(messages)
        except Exception as exc:
            logger.error("Reasoning service call failed: %s", exc)
            raise ReasoningServiceUnavailable(f"Reasoning service unavailable: {exc}") from exc
        if not isinstance(response, AIMessage):
            raise ReasoningServiceUnavailable(
                f"Reasoning service returned {type(response).__name__} instead of an assistant message"
            )
        return response

    def _decode(
        self, response: AIMessage, rejected: List[RejectedCall]
    ) -> Tuple[List[Proposal], Dict[str, str]]:
        proposals: List[Proposal] = []
        feedback: Dict[str, str] = {}
        for invalid in getattr(response, "invalid_tool_calls", None) or []:
            name = invalid.get("name") or "unknown"
            reason = f"Malformed arguments for {name}: {invalid.get('error') or 'could not decode'}"
            rejected.append(RejectedCall(name, {}, [reason]))
            feedback[invalid.get("id") or f"invalid_{len(feedback)}"] = ToolOutcome.fail(reason).to_transcript()
        for raw in response.tool_calls or []:
            call_id = raw.get("id") or f"call_{len(proposals) + len(feedback)}"
            name = raw.get("name", "")
            args = raw.get("args")
            if name not in self.registry:
                reason = f"Unknown operation {name}"
                rejected.append(RejectedCall(name, args if isinstance(args, dict) else {}, [reason]))
                feedback[call_id] = ToolOutcome.fail(reason).to_transcript()
                continue
            if not isinstance(args, dict):
                reason = f"Arguments for {name} must be an object"
                rejected.append(RejectedCall(name, {}, [reason]))
                feedback[call_id] = ToolOutcome.fail(reason).to_transcript()
                continue
            proposals.append(Proposal(call_id=call_id, operation=name, parameters=dict(args)))
        return proposals, feedback

    @staticmethod
    def _drop_repeats(proposals: List[Proposal], feedback: Dict[str, str]) -> List[Proposal]:
        retained: List[Proposal] = []
        previous: Optional[str] = None
        for proposal in proposals:
            if proposal.operation == previous:
                feedback[proposal.call_id] = _note(status="skipped", reason="repeats the previous operation")
            else:
                retained.append(proposal)
            previous = proposal.operation
        return retained

    def _truncate_after_disambiguation(
        self, proposals: List[Proposal], feedback: Dict[str, str]
    ) -> List[Proposal]:
        for index, proposal in enumerate(proposals):
            definition = self.registry.definition(proposal.operation)
            if definition is not None and definition.may_require_clarification:
                for dropped in proposals[index + 1:]:
                    feedback[dropped.call_id] = _note(
                        status="skipped", reason=f"wait for the result of {proposal.operation} first"
                    )
                return proposals[: index + 1]
        return proposals

    @staticmethod
    def _reject_excluded(
        proposals: List[Proposal],
        excluded: Sequence[str],
        feedback: Dict[str, str],
        rejected: List[RejectedCall],
    ) -> List[Proposal]:
        if not excluded:
            return proposals
        retained = []
        for proposal in proposals:
            if proposal.operation in excluded:
                reason = f"{proposal.operation} was already answered by the user's selection"
                rejected.append(RejectedCall(proposal.operation, proposal.parameters, [reason]))
                feedback[proposal.call_id] = ToolOutcome.fail(reason).to_transcript()
            else:
                retained.append(proposal)
        return retained

    def _prepare(
        self,
        proposal: Proposal,
        context: ChainContext,
        selection: Optional[ClarificationResponse],
        last_executed: Optional[Tuple[ToolCall, ToolOutcome]],
    ) -> Dict[str, Any]:
        definition = self.registry.definition(proposal.operation)
        parameters = self.mapper.bind_acting_user(definition, proposal.parameters, context.acting_user_id)
        if selection is not None and selection.original_clarification is not None:
            parameters = self.mapper.apply_selection(
                selection.original_clarification.kind,
                selection.selected_option,
                proposal.operation,
                parameters,
            )
        if last_executed is not None:
            source, outcome = last_executed
            parameters = self.mapper.auto_map_parameters(
                source.operation, outcome, proposal.operation, parameters
            )
        return parameters

    def _repeats_disambiguation(self, call: ToolCall, plan_calls: List[ToolCall]) -> bool:
        definition = self.registry.definition(call.operation)
        if definition is None or not definition.may_require_clarification:
            return False
        return any(existing.operation == call.operation for existing in plan_calls)

    @staticmethod
    def _is_duplicate(call: ToolCall, plan_calls: List[ToolCall]) -> bool:
        if plan_calls and plan_calls[-1].operation == call.operation:
            return True
        key = call.fingerprint()
        return any(existing.fingerprint() == key for existing in plan_calls)

    def _record_round(
        self,
        context: ChainContext,
        round_number: int,
        loop: PlanningLoop,
        proposals: List[Proposal],
        plan_calls: List[ToolCall],
        decision: RoundDecision,
        started: float,
    ) -> None:
        self.trace_recorder.record(
            TraceEvent(
                trace_id=context.request_id,
                step="planner",
                event=f"round_{round_number}",
                status=decision.value,
                data={
                    "proposed": [p.operation for p in proposals],
                    "plan": [call.operation for call in plan_calls],
                    "stop_reason": loop.stop_reason,
                },
                latency_ms=int((time.perf_counter() - started) * 1000),
            )
        )
