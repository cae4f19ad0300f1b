"""Retry and failure policy for enrollments."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from .config import RetryConfig
from .contracts import Enrollment, EnrollmentStatus, ErrorInfo
from .errors import StepError, WorkflowStateError
from .utils.clock import Clock, utcnow
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)


class RetryDecision:
    RETRY = "retry"
    FAIL = "fail"


class RetryManager:
    """Classify step errors into a rescheduled retry or a terminal failure.

    ``attempts`` counts failed executions of the current step. A transient
    error is retried while ``attempts < max_attempts``, so a step that keeps
    failing transiently is executed exactly ``max_attempts`` times.
    """

    def __init__(self, config: Optional[RetryConfig] = None, clock: Clock = utcnow) -> None:
        self.config = config or RetryConfig()
        self.clock = clock

    def backoff(self, attempts: int) -> float:
        return compute_backoff(
            attempts,
            base=self.config.backoff_base,
            jitter=self.config.jitter,
            initial=self.config.initial_delay_seconds,
            cap=self.config.max_delay_seconds,
        )

    def handle_failure(self, enrollment: Enrollment, error: StepError) -> str:
        """Record ``error`` on the enrollment and decide what happens next."""
        now = self.clock()
        enrollment.attempts += 1
        enrollment.last_error = ErrorInfo(
            step_id=error.step_id or enrollment.current_step_id,
            kind=error.kind.value,
            message=error.message,
            at=now,
        )
        enrollment.updated_at = now

        if error.retryable and enrollment.attempts < self.config.max_attempts:
            delay = self.backoff(enrollment.attempts)
            enrollment.status = EnrollmentStatus.ACTIVE
            enrollment.resume_at = now + timedelta(seconds=delay)
            logger.info(
                f"Enrollment {enrollment.id} step {error.step_id} failed "
                f"({error.kind.value}, attempt {enrollment.attempts}/{self.config.max_attempts}); "
                f"retrying in {delay:.1f}s"
            )
            return RetryDecision.RETRY

        enrollment.status = EnrollmentStatus.FAILED
        enrollment.resume_at = None
        enrollment.completed_at = now
        logger.warning(
            f"Enrollment {enrollment.id} failed at step {error.step_id}: "
            f"{error.kind.value}: {error.message}"
        )
        return RetryDecision.FAIL

    def retry(self, enrollment: Enrollment, now: Optional[datetime] = None) -> Enrollment:
        """Administrator retry: ``failed -> active`` from the failed step.

        ``current_step_id`` still names the top-level step that failed, even
        when the error came from a step nested inside it.
        """
        if enrollment.status != EnrollmentStatus.FAILED:
            raise WorkflowStateError(
                f"Only failed enrollments can be retried (status is {enrollment.status.value})"
            )
        now = now or self.clock()
        enrollment.status = EnrollmentStatus.ACTIVE
        enrollment.attempts = 0
        enrollment.resume_at = now
        enrollment.completed_at = None
        enrollment.updated_at = now
        return enrollment
