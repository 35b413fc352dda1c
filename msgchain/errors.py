from typing import Iterable, List, Optional


class CommandError(RuntimeError):
    stage = "error"

    def __init__(self, message: str, *, details: Optional[Iterable[str]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: List[str] = list(details or [])


class RequestError(CommandError):
    """Malformed or rejected inbound instruction."""

    stage = "request"


class PlanningError(CommandError):
    stage = "planning"


class ReasoningServiceUnavailable(PlanningError):
    """The reasoning service could not be reached or is misconfigured."""


class ChainValidationError(CommandError):
    stage = "validation"

    def __init__(self, reasons: Iterable[str]) -> None:
        reasons = list(reasons)
        summary = "; ".join(reasons) or "Chain validation failed"
        super().__init__(f"Chain validation failed: {summary}", details=reasons)
        self.reasons = reasons