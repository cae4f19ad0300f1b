"""Error taxonomy for workflow execution."""

from __future__ import annotations

from enum import Enum
from typing import Iterable, List, Optional

from pydantic import BaseModel


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    ITERATION_LIMIT = "iteration_limit"


class StepError(Exception):
    """Failure raised while executing a single step.

    ``kind`` drives the retry policy: only transient errors are retried.
    """

    kind: ErrorKind = ErrorKind.PERMANENT

    def __init__(self, message: str, step_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.step_id = step_id

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT

    def with_step(self, step_id: str) -> "StepError":
        """Attach ``step_id`` unless the error already names a step."""
        if self.step_id is None:
            self.step_id = step_id
        return self

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return f"{type(self).__name__}(kind={self.kind.value!r}, step_id={self.step_id!r}, message={self.message!r})"


class ConfigurationError(StepError):
    kind = ErrorKind.CONFIGURATION


class TransientError(StepError):
    kind = ErrorKind.TRANSIENT


class PermanentError(StepError):
    kind = ErrorKind.PERMANENT


class IterationLimitError(StepError):
    """Loop exceeded its iteration ceiling. Never retried."""

    kind = ErrorKind.ITERATION_LIMIT


_KIND_TO_ERROR = {
    ErrorKind.CONFIGURATION: ConfigurationError,
    ErrorKind.TRANSIENT: TransientError,
    ErrorKind.PERMANENT: PermanentError,
    ErrorKind.ITERATION_LIMIT: IterationLimitError,
}

# Error kinds reported by executors that map onto the transient class.
_TRANSIENT_ALIASES = {"timeout", "rate_limited", "upstream_unavailable", "unavailable"}
_PERMANENT_ALIASES = {"not_found", "rejected", "business"}


def error_from_kind(kind: str, message: str, step_id: Optional[str] = None) -> StepError:
    """Build the ``StepError`` subclass matching an executor-reported kind."""
    normalized = (kind or "").lower()
    if normalized in _TRANSIENT_ALIASES:
        return TransientError(message, step_id)
    if normalized in _PERMANENT_ALIASES:
        return PermanentError(message, step_id)
    try:
        return _KIND_TO_ERROR[ErrorKind(normalized)](message, step_id)
    except ValueError:
        return PermanentError(message, step_id)


class ValidationIssue(BaseModel):
    """One problem found while validating a workflow graph."""

    step_id: Optional[str] = None
    message: str


class WorkflowValidationError(Exception):
    """Raised when a workflow cannot be activated."""

    def __init__(self, issues: Iterable[ValidationIssue]) -> None:
        self.issues: List[ValidationIssue] = list(issues)
        super().__init__(
            f"Workflow failed validation with {len(self.issues)} issue(s)"
        )

    @property
    def step_ids(self) -> List[str]:
        seen: List[str] = []
        for issue in self.issues:
            if issue.step_id and issue.step_id not in seen:
                seen.append(issue.step_id)
        return seen


class WorkflowStateError(Exception):
    """Illegal lifecycle transition for a workflow or enrollment."""


class WorkflowNotFound(LookupError):
    pass


class EnrollmentNotFound(LookupError):
    pass
