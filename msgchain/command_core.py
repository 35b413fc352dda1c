from __future__ import annotations

import logging
import os
import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, TypedDict, Union

from langgraph.graph import END, StateGraph
from pydantic import ValidationError

from .analysis import ConversationAnalyst, ExtractiveConversationAnalyst, LLMConversationAnalyst
from .backends import HttpMessagingBackend, InMemoryMessagingBackend, MessagingBackend
from .config import AppConfig
from .errors import ChainValidationError, CommandError, ReasoningServiceUnavailable, RequestError
from .executor import ChainExecution, ChainExecutor
from .llm import ChatModel, ModelSettings, get_chat_model
from .mapper import ParameterMapper
from .planner import Planner, PlanningResult
from .synthesizer import ResponseSynthesizer
from .tools.registry import ToolRegistry, build_default_registry
from .utils.schemas import ChainContext, ChainInfo, CommandRequest, CommandResponse
from .utils.trace_recorder import (
    NoopTraceRecorder,
    SafeTraceRecorder,
    TraceEvent,
    TraceRecorder,
    build_trace_recorder,
)
from .utils.tracing import trace_span
from .validator import ChainValidator


logger = logging.getLogger(__name__)


class CommandStage(str, Enum):
    INTAKE = "intake"
    PLANNING = "planning"
    VALIDATING = "validating"
    EXECUTING = "executing"
    SUCCESS = "success"
    ERROR = "error"
    AWAITING_CLARIFICATION = "awaiting_clarification"


class CommandState(TypedDict, total=False):
    request: CommandRequest
    context: ChainContext
    trace_id: str
    stage: CommandStage
    planning: PlanningResult
    execution: ChainExecution
    warnings: List[str]
    response: CommandResponse


def _final_stage(response: CommandResponse) -> CommandStage:
    if response.requires_clarification:
        return CommandStage.AWAITING_CLARIFICATION
    return CommandStage.SUCCESS if response.success else CommandStage.ERROR


def _observed_chain_info(planning: PlanningResult) -> Optional[ChainInfo]:
    """Steps that already ran while planning, so a rejected plan still reports them."""
    ran = [call for call in planning.plan.calls if call.fingerprint() in planning.observed]
    if not ran:
        return None
    return ChainInfo(
        operations_used=[call.operation for call in ran],
        outcomes=[planning.observed[call.fingerprint()] for call in ran],
    )


class CommandProcessor:
    """Runs one natural-language instruction from intake to a single response."""

    def __init__(
        self,
        planner: Planner,
        validator: ChainValidator,
        executor: ChainExecutor,
        synthesizer: Optional[ResponseSynthesizer] = None,
        trace_recorder: Optional[TraceRecorder] = None,
        max_chain_length: int = 5,
    ) -> None:
        self.planner = planner
        self.validator = validator
        self.executor = executor
        self.synthesizer = synthesizer or ResponseSynthesizer()
        self.trace_recorder = trace_recorder or NoopTraceRecorder()
        self.max_chain_length = max_chain_length
        self.graph = self._build_graph()

    @classmethod
    def from_components(
        cls,
        llm: ChatModel,
        registry: ToolRegistry,
        max_iterations: int = 3,
        max_instruction_chars: int = 4000,
        max_chain_length: int = 5,
        trace_recorder: Optional[TraceRecorder] = None,
    ) -> "CommandProcessor":
        recorder = SafeTraceRecorder(trace_recorder or NoopTraceRecorder())
        mapper = ParameterMapper()
        validator = ChainValidator(registry, mapper, max_instruction_chars=max_instruction_chars)
        planner = Planner(
            llm,
            registry,
            validator,
            mapper,
            max_iterations=max_iterations,
            trace_recorder=recorder,
        )
        executor = ChainExecutor(registry, validator, mapper, trace_recorder=recorder)
        return cls(
            planner,
            validator,
            executor,
            ResponseSynthesizer(),
            trace_recorder=recorder,
            max_chain_length=max_chain_length,
        )

    def _build_graph(self):
        async def intake_step(state: CommandState) -> CommandState:
            request = state["request"]
            verdict = self.validator.validate_pre_flight(request.text, request.app_context)
            for warning in verdict.warnings:
                logger.warning("Pre-flight: %s", warning)
            if not verdict.valid:
                error = RequestError("; ".join(verdict.errors), details=verdict.errors)
                return self._fail(state, error)
            return {
                **state,
                "stage": CommandStage.PLANNING,
                "warnings": [*verdict.warnings, *verdict.suggestions],
            }

        async def plan_step(state: CommandState) -> CommandState:
            if state.get("response"):
                return state
            request = state["request"]
            try:
                with trace_span("planning", trace_id=state["trace_id"]):
                    planning = await self.planner.plan(
                        request.text, state["context"], enable_chaining=request.enable_chaining
                    )
            except CommandError as exc:
                return self._fail(state, exc)
            return {**state, "planning": planning, "stage": CommandStage.VALIDATING}

        async def validate_step(state: CommandState) -> CommandState:
            if state.get("response"):
                return state
            planning = state["planning"]
            verdict = self.validator.validate_chain(
                planning.plan,
                state["context"].max_chain_length,
                excluded_operations=planning.excluded_operations,
            )
            if not verdict.valid:
                return self._fail(
                    state, ChainValidationError(verdict.errors), chain_info=_observed_chain_info(planning)
                )
            for warning in verdict.warnings:
                logger.info("Chain check: %s", warning)
            return {**state, "stage": CommandStage.EXECUTING}

        async def execute_step(state: CommandState) -> CommandState:
            if state.get("response"):
                return state
            planning = state["planning"]
            with trace_span("execution", trace_id=state["trace_id"]):
                execution = await self.executor.execute(planning.plan, state["context"], planning.observed)
            return {**state, "execution": execution}

        async def respond_step(state: CommandState) -> CommandState:
            if state.get("response"):
                return state
            response = self.synthesizer.synthesize(
                state["execution"], trace_id=state["trace_id"], instruction=state["request"].text
            )
            return {**state, "response": response, "stage": _final_stage(response)}

        graph = StateGraph(CommandState)
        graph.add_node("intake", intake_step)
        graph.add_node("plan", plan_step)
        graph.add_node("validate", validate_step)
        graph.add_node("execute", execute_step)
        graph.add_node("respond", respond_step)

        graph.set_entry_point("intake")
        graph.add_edge("intake", "plan")
        graph.add_edge("plan", "validate")
        graph.add_edge("validate", "execute")
        graph.add_edge("execute", "respond")
        graph.add_edge("respond", END)

        return graph.compile()

    def _fail(
        self, state: CommandState, error: CommandError, chain_info: Optional[ChainInfo] = None
    ) -> CommandState:
        logger.warning("Instruction failed during %s: %s", error.stage, error.message)
        response = self.synthesizer.failure(error, trace_id=state.get("trace_id"), chain_info=chain_info)
        return {**state, "response": response, "stage": CommandStage.ERROR}

    async def process(self, request: Union[CommandRequest, Dict[str, Any]]) -> CommandResponse:
        trace_id = str(uuid.uuid4())
        start = time.perf_counter()
        try:
            if not isinstance(request, CommandRequest):
                request = CommandRequest.model_validate(request)
        except ValidationError as exc:
            response = self.synthesizer.failure(
                RequestError(f"Malformed request: {exc.error_count()} invalid field(s)"), trace_id=trace_id
            )
            self._record(trace_id, None, response, CommandStage.ERROR, start)
            return response

        context = ChainContext(
            acting_user_id=request.app_context.acting_user_id,
            app_context=request.app_context,
            request_id=trace_id,
            max_chain_length=min(request.max_chain_length, self.max_chain_length),
        )
        initial_state: CommandState = {
            "request": request,
            "context": context,
            "trace_id": trace_id,
            "stage": CommandStage.INTAKE,
            "warnings": [],
        }
        try:
            final_state = await self.graph.ainvoke(initial_state)
            response = final_state["response"]
            stage = final_state.get("stage", _final_stage(response))
        except Exception as exc:
            logger.exception("Unhandled failure while processing instruction")
            response = self.synthesizer.failure(exc, trace_id=trace_id)
            stage = CommandStage.ERROR
        self._record(trace_id, request, response, stage, start)
        return response

    def _record(
        self,
        trace_id: str,
        request: Optional[CommandRequest],
        response: CommandResponse,
        stage: CommandStage,
        started: float,
    ) -> None:
        chain_info: Optional[ChainInfo] = response.chain_info
        self.trace_recorder.record(
            TraceEvent(
                trace_id=trace_id,
                step="instruction",
                event="processed",
                status=stage.value,
                data={
                    "text": request.text if request else None,
                    "acting_user_id": request.app_context.acting_user_id if request else None,
                    "operations": chain_info.operations_used if chain_info else [],
                    "action": response.action.value,
                    "success": response.success,
                    "error": response.error,
                },
                latency_ms=int((time.perf_counter() - started) * 1000),
            )
        )


def backend_from_config(config: AppConfig) -> MessagingBackend:
    if config.messaging_backend == "http":
        return HttpMessagingBackend(config.messaging_api_base_url, timeout=config.messaging_api_timeout)
    if config.messaging_backend != "memory":
        raise ValueError(f"Unknown messaging backend '{config.messaging_backend}'.")
    if config.messaging_seed_path and os.path.exists(config.messaging_seed_path):
        return InMemoryMessagingBackend.from_json_file(config.messaging_seed_path)
    logger.warning("No seed data at %s; starting with an empty data layer", config.messaging_seed_path)
    return InMemoryMessagingBackend()


def analyst_from_config(config: AppConfig, llm: ChatModel) -> ConversationAnalyst:
    if config.analyst_mode == "extractive" or config.llm_provider == "mock":
        return ExtractiveConversationAnalyst()
    return LLMConversationAnalyst(llm)


def build_processor(
    config: Optional[AppConfig] = None,
    backend: Optional[MessagingBackend] = None,
    llm: Optional[ChatModel] = None,
) -> CommandProcessor:
    config = config or AppConfig.from_env()
    if llm is None:
        try:
            llm = get_chat_model(ModelSettings.from_config(config))
        except Exception as exc:
            raise ReasoningServiceUnavailable(
                f"Reasoning service is misconfigured ({config.llm_provider}): {exc}"
            ) from exc
    backend = backend or backend_from_config(config)
    registry = build_default_registry(backend, analyst_from_config(config, llm))
    trace_recorder = build_trace_recorder(
        config.trace_recorder, config.trace_output_path, config.langsmith_project
    )
    logger.info(
        "Command processor ready: provider=%s model=%s tools=%s",
        config.llm_provider,
        config.llm_model,
        len(registry),
    )
    return CommandProcessor.from_components(
        llm,
        registry,
        max_iterations=config.max_iterations if config.chaining_enabled else 1,
        max_instruction_chars=config.max_instruction_chars,
        max_chain_length=config.max_chain_length,
        trace_recorder=trace_recorder,
    )
