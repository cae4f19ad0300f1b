"""Enrollment executor: claims an enrollment, drives it, releases it."""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from .constants import DEFAULT_LEASE_TTL_SECONDS
from .contracts import (
    DataContext,
    Enrollment,
    EnrollmentStatus,
    SubWorkflowStep,
    WorkflowDefinition,
    WorkflowStatus,
)
from .errors import EnrollmentNotFound, PermanentError, WorkflowStateError
from .failures import RetryDecision, RetryManager
from .interpreter import StepInterpreter, StepOutcome
from .persistence import WorkflowRepository
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class EnrollmentExecutor:
    """Runs enrollments under an exclusive lease.

    Each call to :meth:`run` claims the enrollment, advances it step by step
    until it suspends, completes, fails or is canceled, persisting after every
    step and renewing the lease as it goes. The executor also launches child
    enrollments for ``sub_workflow`` steps.

    Every claim uses its own lease token derived from ``worker_id``, so two
    turns inside one process exclude each other just like two processes do.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        interpreter: StepInterpreter,
        retry_manager: Optional[RetryManager] = None,
        lease_ttl_seconds: float = DEFAULT_LEASE_TTL_SECONDS,
        worker_id: Optional[str] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.repository = repository
        self.interpreter = interpreter
        self.retry_manager = retry_manager or RetryManager(clock=clock)
        self.lease_ttl_seconds = lease_ttl_seconds
        self.worker_id = worker_id or f"worker-{uuid.uuid4()}"
        self.clock = clock
        if self.interpreter.launcher is None:
            self.interpreter.launcher = self

    # ------------------------------------------------------------------
    # Leases

    def _lease_token(self) -> str:
        return f"{self.worker_id}/{uuid.uuid4().hex[:12]}"

    @asynccontextmanager
    async def lease(self, enrollment_id: str) -> AsyncIterator[Optional[str]]:
        """Hold the enrollment's lease for the block.

        Yields the lease token, or ``None`` when someone else holds it.
        """
        token = self._lease_token()
        claimed = await self.repository.claim_enrollment(
            enrollment_id, token, self.lease_ttl_seconds, self.clock()
        )
        if not claimed:
            yield None
            return
        try:
            yield token
        finally:
            await self.repository.release_enrollment(enrollment_id, token)

    async def _save(self, enrollment: Enrollment) -> bool:
        """Persist the turn's copy unless the stored enrollment already ended."""
        stored = await self.repository.get_enrollment(enrollment.id)
        if stored is not None and stored.is_terminal:
            logger.warning(
                f"Enrollment {enrollment.id} is already {stored.status.value}; "
                f"discarding this turn's {enrollment.status.value} state"
            )
            return False
        await self.repository.save_enrollment(enrollment)
        return True

    # ------------------------------------------------------------------
    async def run(self, enrollment_id: str) -> Optional[Enrollment]:
        """Continue an enrollment; ``None`` when another turn holds it."""
        async with self.lease(enrollment_id) as token:
            if token is None:
                logger.debug(f"Enrollment {enrollment_id} is leased elsewhere; skipping")
                return None

            enrollment = await self.repository.get_enrollment(enrollment_id)
            if enrollment is None:
                raise EnrollmentNotFound(enrollment_id)
            if enrollment.is_terminal:
                return enrollment

            workflow = await self.repository.get_workflow(enrollment.workflow_id)
            if workflow is None:
                error = PermanentError(
                    f"Workflow {enrollment.workflow_id} no longer exists",
                    enrollment.current_step_id,
                )
                self.retry_manager.handle_failure(enrollment, error)
                await self._save(enrollment)
                return enrollment
            return await self._drive(workflow, enrollment, token)

    async def _cancel_if_requested(self, enrollment: Enrollment) -> bool:
        if not await self.repository.cancellation_requested(enrollment.id):
            return False
        self._mark_canceled(enrollment)
        if await self._save(enrollment):
            await self._notify_parent(enrollment)
        return True

    async def _drive(
        self, workflow: WorkflowDefinition, enrollment: Enrollment, token: str
    ) -> Enrollment:
        enrollment.status = EnrollmentStatus.ACTIVE
        max_steps = self.interpreter.config.max_steps_per_turn
        steps = 0

        while True:
            if await self._cancel_if_requested(enrollment):
                return enrollment

            if steps >= max_steps:
                # hand the rest of the walk to the next sweep
                enrollment.resume_at = self.clock()
                await self._save(enrollment)
                logger.info(f"Enrollment {enrollment.id} yielded after {steps} steps")
                return enrollment

            outcome = await self.interpreter.advance(workflow, enrollment)
            steps += 1
            now = self.clock()
            enrollment.updated_at = now

            # a cancel requested while the step ran wins over its outcome
            if await self._cancel_if_requested(enrollment):
                return enrollment

            if outcome.kind == StepOutcome.ADVANCE:
                enrollment.current_step_id = outcome.next_step_id
                enrollment.attempts = 0
                enrollment.delay_started_at = None
                # stays due so a crashed worker's enrollment is picked up once
                # its lease expires
                enrollment.resume_at = now
                renewed = await self.repository.claim_enrollment(
                    enrollment.id, token, self.lease_ttl_seconds, now
                )
                if not renewed:
                    logger.warning(
                        f"Lost lease on enrollment {enrollment.id}; abandoning this turn"
                    )
                    return enrollment
                if not await self._save(enrollment):
                    return enrollment
                continue

            if outcome.kind == StepOutcome.SUSPEND:
                enrollment.status = EnrollmentStatus.WAITING
                enrollment.resume_at = outcome.resume_at
                await self._save(enrollment)
                logger.info(
                    f"Enrollment {enrollment.id} waiting at {outcome.step_id} until "
                    f"{outcome.resume_at.isoformat() if outcome.resume_at else 'sub-workflow completes'}"
                )
                return enrollment

            if outcome.kind == StepOutcome.COMPLETE:
                enrollment.status = EnrollmentStatus.COMPLETED
                enrollment.completed_at = now
                enrollment.resume_at = None
                enrollment.goal_met = await self.interpreter.goal_reached(workflow, enrollment)
                if await self._save(enrollment):
                    logger.info(f"Enrollment {enrollment.id} completed at {outcome.step_id}")
                    await self._notify_parent(enrollment)
                return enrollment

            decision = self.retry_manager.handle_failure(enrollment, outcome.error)
            saved = await self._save(enrollment)
            if saved and decision == RetryDecision.FAIL:
                await self._notify_parent(enrollment)
            return enrollment

    # ------------------------------------------------------------------
    def _mark_canceled(self, enrollment: Enrollment) -> None:
        now = self.clock()
        enrollment.status = EnrollmentStatus.CANCELED
        enrollment.resume_at = None
        enrollment.completed_at = now
        enrollment.updated_at = now
        logger.info(f"Enrollment {enrollment.id} canceled")

    async def cancel(self, enrollment_id: str) -> Enrollment:
        """Request cancellation; applied now unless a turn holds the lease."""
        enrollment = await self.repository.get_enrollment(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFound(enrollment_id)
        if enrollment.is_terminal:
            raise WorkflowStateError(
                f"Enrollment {enrollment_id} is already {enrollment.status.value}"
            )

        await self.repository.request_cancellation(enrollment_id)
        async with self.lease(enrollment_id) as token:
            if token is None:
                logger.info(
                    f"Enrollment {enrollment_id} is running; cancellation applies when its step ends"
                )
                return enrollment
            enrollment = await self.repository.get_enrollment(enrollment_id)
            if not enrollment.is_terminal:
                self._mark_canceled(enrollment)
                await self.repository.save_enrollment(enrollment)
                await self._notify_parent(enrollment)
            return enrollment

    async def _notify_parent(self, child: Enrollment) -> None:
        """Make a parent waiting on ``child`` due for the next sweep."""
        if not child.parent_enrollment_id:
            return
        parent = await self.repository.get_enrollment(child.parent_enrollment_id)
        if parent is None or parent.is_terminal or parent.awaiting_enrollment_id != child.id:
            return
        async with self.lease(parent.id) as token:
            if token is None:
                logger.warning(
                    f"Parent enrollment {parent.id} is leased; "
                    f"not resuming it for child {child.id}"
                )
                return
            parent = await self.repository.get_enrollment(parent.id)
            if parent is None or parent.is_terminal or parent.awaiting_enrollment_id != child.id:
                return
            parent.resume_at = self.clock()
            await self.repository.save_enrollment(parent)
            logger.debug(f"Parent enrollment {parent.id} resumed by child {child.id}")

    # ------------------------------------------------------------------
    # Sub-workflow launcher

    async def start(
        self,
        parent: Enrollment,
        step: SubWorkflowStep,
        variables: Dict[str, Any],
    ) -> Enrollment:
        workflow = await self.repository.get_workflow(step.config.workflow_id)
        if workflow is None:
            raise PermanentError(f"Sub-workflow {step.config.workflow_id} not found", step.id)
        if workflow.status != WorkflowStatus.ACTIVE:
            raise PermanentError(
                f"Sub-workflow {workflow.id} is {workflow.status.value}, not active", step.id
            )
        trigger = workflow.trigger_step()
        now = self.clock()
        child = Enrollment(
            workflow_id=workflow.id,
            entity=parent.entity,
            current_step_id=trigger.id if trigger else None,
            data_context=DataContext(variables=dict(variables)),
            source="sub_workflow",
            parent_enrollment_id=parent.id,
            parent_step_id=step.id,
            depth=parent.depth + 1,
            resume_at=now,
            created_at=now,
            updated_at=now,
        )
        await self.repository.create_enrollment(child)
        logger.info(
            f"Enrollment {parent.id} started sub-workflow {workflow.id} as {child.id}"
        )
        await self.run(child.id)
        return await self.repository.get_enrollment(child.id)

    async def fetch(self, enrollment_id: str) -> Optional[Enrollment]:
        return await self.repository.get_enrollment(enrollment_id)
