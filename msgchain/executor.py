from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .mapper import ParameterMapper
from .tools.registry import ToolRegistry
from .utils.schemas import ChainContext, Plan, ToolCall, ToolOutcome
from .utils.trace_recorder import NoopTraceRecorder, TraceEvent, TraceRecorder
from .validator import ChainValidator


logger = logging.getLogger(__name__)


@dataclass
class ChainExecution:
    calls: List[ToolCall] = field(default_factory=list)
    outcomes: List[ToolOutcome] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    total_execution_time_ms: int = 0

    @property
    def halted(self) -> bool:
        return bool(self.outcomes) and self.outcomes[-1].halts

    @property
    def last_outcome(self) -> Optional[ToolOutcome]:
        return self.outcomes[-1] if self.outcomes else None

    def operations(self) -> List[str]:
        return [call.operation for call in self.calls]


async def invoke_tool(registry: ToolRegistry, call: ToolCall, context: ChainContext) -> ToolOutcome:
    adapter = registry.get(call.operation)
    if adapter is None:
        return ToolOutcome.fail(f"Unknown operation {call.operation}").with_metadata(tool_name=call.operation)
    start = time.perf_counter()
    try:
        outcome = await adapter.execute(dict(call.parameters), context.tool_context())
    except Exception as exc:
        logger.exception("Adapter %s raised", call.operation)
        outcome = ToolOutcome.fail(f"{call.operation} failed: {exc}")
    if "execution_time_ms" not in outcome.metadata:
        outcome = outcome.with_metadata(execution_time_ms=int((time.perf_counter() - start) * 1000))
    if "tool_name" not in outcome.metadata:
        outcome = outcome.with_metadata(tool_name=call.operation)
    return outcome


class ChainExecutor:
    def __init__(
        self,
        registry: ToolRegistry,
        validator: ChainValidator,
        mapper: Optional[ParameterMapper] = None,
        trace_recorder: Optional[TraceRecorder] = None,
    ) -> None:
        self.registry = registry
        self.validator = validator
        self.mapper = mapper or ParameterMapper()
        self.trace_recorder = trace_recorder or NoopTraceRecorder()

    async def execute(
        self,
        plan: Plan,
        context: ChainContext,
        observed: Optional[Dict[str, ToolOutcome]] = None,
    ) -> ChainExecution:
        """Run the plan in order, stopping at the first error or clarification.

        ``observed`` holds outcomes already produced while planning, keyed by call
        fingerprint. Those calls are not invoked again.
        """
        observed = dict(observed or {})
        execution = ChainExecution()
        start = time.perf_counter()
        previous: Optional[ToolCall] = None

        for call in plan.calls:
            if not context.has_room:
                execution.skipped = [c.operation for c in plan.calls[len(execution.calls):]]
                logger.warning(
                    "Chain length limit of %s reached; not running %s",
                    context.max_chain_length,
                    execution.skipped,
                )
                break
            position = len(execution.outcomes) + 1
            step_start = time.perf_counter()
            resolved, outcome = await self._run_step(call, previous, execution.last_outcome, context, observed)
            outcome = outcome.with_metadata(chain_position=position)
            if "tool_name" not in outcome.metadata:
                outcome = outcome.with_metadata(tool_name=call.operation)

            context.record(resolved.operation, outcome)
            execution.calls.append(resolved)
            execution.outcomes.append(outcome)
            self._record_trace(context, resolved, outcome, step_start)
            previous = resolved
            if outcome.halts:
                logger.info(
                    "Chain halted at step %s (%s): %s",
                    position,
                    resolved.operation,
                    outcome.next_action.value,
                )
                break

        execution.total_execution_time_ms = int((time.perf_counter() - start) * 1000)
        return execution

    async def _run_step(
        self,
        call: ToolCall,
        previous: Optional[ToolCall],
        previous_outcome: Optional[ToolOutcome],
        context: ChainContext,
        observed: Dict[str, ToolOutcome],
    ) -> Tuple[ToolCall, ToolOutcome]:
        parameters = call.parameters
        if previous is not None:
            parameters = self.mapper.auto_map_parameters(
                previous.operation, previous_outcome, call.operation, parameters
            )
        resolved = ToolCall(operation=call.operation, parameters=parameters)
        verdict = self.validator.validate_tool_parameters(
            call.operation, parameters, context.app_context
        )
        if not verdict.valid:
            return resolved, ToolOutcome.fail(
                f"Invalid parameters for {call.operation}: " + "; ".join(verdict.errors)
            )

        key = resolved.fingerprint()
        if key in observed:
            logger.debug("Reusing planning outcome for %s", call.operation)
            return resolved, observed.pop(key).with_metadata(reused=True)
        return resolved, await invoke_tool(self.registry, resolved, context)

    def _record_trace(
        self, context: ChainContext, call: ToolCall, outcome: ToolOutcome, started: float
    ) -> None:
        self.trace_recorder.record(
            TraceEvent(
                trace_id=context.request_id,
                step="executor",
                event=call.operation,
                status=outcome.next_action.value,
                data={
                    "parameters": call.parameters,
                    "error": outcome.error,
                    "chain_position": outcome.metadata.get("chain_position"),
                    "reused": bool(outcome.metadata.get("reused")),
                },
                latency_ms=int((time.perf_counter() - started) * 1000),
            )
        )
