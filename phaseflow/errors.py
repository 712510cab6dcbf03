"""
Error taxonomy for phaseflow.

This module provides:
- FailureReason enum reported to users when a run fails
- Pipeline exceptions, each tagged with the failure reason it maps to
- LLMErrorType and LLMError for classifying model API failures
"""

from __future__ import annotations

from enum import Enum, auto
from typing import Any, Optional


class FailureReason(Enum):
    """Why a phase (and therefore its run) failed."""

    VALIDATION = "validation"            # Output failed its schema
    TIMEOUT = "timeout"                  # A human gate expired
    GATE_EXHAUSTION = "gate_exhaustion"  # Quality gates never passed
    REJECTION = "rejection"              # Review verdict or human said no
    ERROR = "error"                      # Anything else


class PipelineError(Exception):
    """
    Base exception for phase failures.

    Carries the FailureReason used for the user-visible run outcome and a
    JSON-serializable details dict that is attached to the failed PhaseResult.
    """

    reason: FailureReason = FailureReason.ERROR

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.details = details or {}


class PhaseValidationError(PipelineError):
    """Raised when a phase's final output does not match its schema."""

    reason = FailureReason.VALIDATION

    def __init__(self, phase: str, message: str) -> None:
        super().__init__(f"{phase} output invalid: {message}", {"phase": phase})
        self.phase = phase


class ToolInputError(PipelineError):
    """Raised when the model calls a tool with arguments that violate its schema."""

    reason = FailureReason.VALIDATION

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(f"{tool_name} input invalid: {message}", {"tool": tool_name})
        self.tool_name = tool_name


class ApprovalTimeoutError(PipelineError):
    """Raised inside a phase when a human feedback request expired."""

    reason = FailureReason.TIMEOUT

    def __init__(self, cta_id: str) -> None:
        super().__init__(f"Human feedback request {cta_id} timed out", {"cta_id": cta_id})
        self.cta_id = cta_id


class GateExhaustionError(PipelineError):
    """Raised when every coder attempt failed the quality gates."""

    reason = FailureReason.GATE_EXHAUSTION

    def __init__(self, attempts: int, gate_results: list[dict[str, Any]], branch: str) -> None:
        failed = [g["gate"] for g in gate_results if g.get("status") == "failed"]
        super().__init__(
            f"Quality gates still failing after {attempts} attempts: {', '.join(failed) or 'none'}",
            {"totalCoderAttempts": attempts, "gateResults": gate_results, "branch": branch},
        )
        self.attempts = attempts
        self.gate_results = gate_results


class VerdictRejectedError(PipelineError):
    """Raised when the judging verdict is rejected. Not retried automatically."""

    reason = FailureReason.REJECTION

    def __init__(self, rejection_reason: str, output: dict[str, Any]) -> None:
        super().__init__(rejection_reason, {"judgingOutput": output})
        self.rejection_reason = rejection_reason


class ApproachSelectionError(PipelineError):
    """
    Raised when the chosen approach id is not among the generated approaches.

    This is an integrity failure: the pipeline never falls back to another
    approach.
    """

    def __init__(self, selected_id: str, available_ids: list[str]) -> None:
        super().__init__(
            f"Selected approach {selected_id!r} not found in {available_ids}",
            {"selectedId": selected_id, "availableIds": available_ids},
        )
        self.selected_id = selected_id
        self.available_ids = available_ids


class ApprovalCorrelationError(Exception):
    """Raised when a human response does not match exactly one pending request."""
    pass


class LLMErrorType(Enum):
    """
    Classification of model API errors.

    Used to decide whether a call is retried or surfaced immediately.
    """

    AUTH_FAILED = auto()         # 401/403, needs operator action
    RATE_LIMIT = auto()          # 429
    SERVER_OVERLOADED = auto()   # 529/503
    SERVER_ERROR = auto()        # Other 5xx
    INVALID_REQUEST = auto()     # 400/404/413/422
    TIMEOUT = auto()             # Request timed out
    CONNECTION = auto()          # Network failure
    PARSE_ERROR = auto()         # Response body was not the expected JSON
    UNKNOWN = auto()


_RECOVERABLE = {
    LLMErrorType.RATE_LIMIT,
    LLMErrorType.SERVER_OVERLOADED,
    LLMErrorType.SERVER_ERROR,
    LLMErrorType.TIMEOUT,
    LLMErrorType.CONNECTION,
}


class LLMError(Exception):
    """
    Exception for model API failures.

    Includes error type classification for retry decisions.
    """

    def __init__(
        self,
        message: str,
        error_type: LLMErrorType = LLMErrorType.UNKNOWN,
        status_code: Optional[int] = None,
        body: str = "",
    ) -> None:
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code
        self.body = body

    @property
    def recoverable(self) -> bool:
        """Check if retrying the same request may succeed."""
        return self.error_type in _RECOVERABLE


def classify_status(status_code: int) -> LLMErrorType:
    """
    Map an HTTP status code to an LLMErrorType.

    Args:
        status_code: HTTP status returned by the API.

    Returns:
        The matching LLMErrorType.
    """
    if status_code in (401, 403):
        return LLMErrorType.AUTH_FAILED
    if status_code == 429:
        return LLMErrorType.RATE_LIMIT
    if status_code in (503, 529):
        return LLMErrorType.SERVER_OVERLOADED
    if status_code >= 500:
        return LLMErrorType.SERVER_ERROR
    if status_code in (400, 404, 413, 422):
        return LLMErrorType.INVALID_REQUEST
    return LLMErrorType.UNKNOWN
