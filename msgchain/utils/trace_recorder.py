import json
import logging
import os
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Protocol

from langsmith import Client


logger = logging.getLogger(__name__)


@dataclass
class TraceEvent:
    trace_id: str
    step: str
    event: str
    status: str
    data: Dict[str, Any] = field(default_factory=dict)
    latency_ms: Optional[int] = None
    timestamp: float = field(default_factory=time.time)


class TraceRecorder(Protocol):
    def record(self, event: TraceEvent) -> None:
        ...


class NoopTraceRecorder:
    def record(self, event: TraceEvent) -> None:
        return None


class MemoryTraceRecorder:
    def __init__(self) -> None:
        self.events: list[TraceEvent] = []

    def record(self, event: TraceEvent) -> None:
        self.events.append(event)

    def steps(self) -> list[str]:
        return [event.step for event in self.events]


class JsonlTraceRecorder:
    def __init__(self, path: str) -> None:
        self.path = path

    def record(self, event: TraceEvent) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(asdict(event), ensure_ascii=True, default=str) + "\n")


class LangSmithTraceRecorder:
    def __init__(self, project: str, client: Optional[Client] = None) -> None:
        self.client = client or Client()
        self.project = project

    def record(self, event: TraceEvent) -> None:
        self.client.create_run(
            name=f"{event.step}.{event.event}",
            inputs={"trace_id": event.trace_id, "step": event.step},
            run_type="chain",
            project_name=self.project,
            outputs={"status": event.status, "data": event.data},
            extra={"latency_ms": event.latency_ms, "timestamp": event.timestamp},
        )


class SafeTraceRecorder:
    """Wraps a recorder so a reporting failure never fails the instruction."""

    def __init__(self, inner: TraceRecorder) -> None:
        self.inner = inner

    def record(self, event: TraceEvent) -> None:
        try:
            self.inner.record(event)
        except Exception as exc:
            logger.warning("Trace recording failed for %s.%s: %s", event.step, event.event, exc)


def build_trace_recorder(mode: str, path: str, project: str) -> TraceRecorder:
    mode = mode.lower()
    if mode == "jsonl":
        return SafeTraceRecorder(JsonlTraceRecorder(path))
    if mode == "langsmith":
        try:
            return SafeTraceRecorder(LangSmithTraceRecorder(project))
        except Exception as exc:
            logger.warning("LangSmith unavailable: %s", exc)
            return SafeTraceRecorder(JsonlTraceRecorder(path))
    return NoopTraceRecorder()
