"""Administrative operations over workflows and enrollments."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from .actions import ActionRegistry
from .contracts import (
    DelayConfig,
    Enrollment,
    EnrollmentStatus,
    WorkflowDefinition,
    WorkflowStatus,
)
from .delays import compute_wake_time, describe
from .dispatch import BulkEnrollmentResult, TriggerDispatcher
from .errors import (
    EnrollmentNotFound,
    ValidationIssue,
    WorkflowNotFound,
    WorkflowStateError,
)
from .execute import EnrollmentExecutor
from .failures import RetryManager
from .persistence import WorkflowRepository
from .simulation import SimulationReport, SimulationRunner
from .utils.clock import Clock, utcnow
from .validation import ensure_valid, validate_workflow

logger = logging.getLogger(__name__)


class WorkflowStats(BaseModel):
    workflow_id: str
    total_enrolled: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)
    goals_met: int = 0
    goal_rate: float = 0.0
    failures_by_step: Dict[str, int] = Field(default_factory=dict)


class WorkflowAdmin:
    """Thin request/response surface over the engine."""

    def __init__(
        self,
        repository: WorkflowRepository,
        registry: ActionRegistry,
        dispatcher: TriggerDispatcher,
        executor: EnrollmentExecutor,
        simulator: SimulationRunner,
        retry_manager: Optional[RetryManager] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.dispatcher = dispatcher
        self.executor = executor
        self.simulator = simulator
        self.retry_manager = retry_manager or executor.retry_manager
        self.clock = clock

    # ------------------------------------------------------------------
    # Workflow lifecycle

    async def _workflow(self, workflow_id: str) -> WorkflowDefinition:
        workflow = await self.repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(workflow_id)
        return workflow

    async def save_draft(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        """Create or replace a draft. Activated workflows are immutable."""
        existing = await self.repository.get_workflow(workflow.id)
        if existing is not None and existing.status != WorkflowStatus.DRAFT:
            raise WorkflowStateError(
                f"Workflow {workflow.id} is {existing.status.value}; only drafts can be edited"
            )
        workflow = workflow.model_copy(update={"status": WorkflowStatus.DRAFT})
        await self.repository.save_workflow(workflow)
        return workflow

    async def validate(self, workflow_id: str) -> List[ValidationIssue]:
        workflow = await self._workflow(workflow_id)
        return validate_workflow(workflow, self.registry.action_types())

    async def activate(self, workflow_id: str) -> WorkflowDefinition:
        """``draft`` or ``paused`` to ``active``; drafts must validate first."""
        workflow = await self._workflow(workflow_id)
        if workflow.status == WorkflowStatus.ACTIVE:
            return workflow
        if workflow.status == WorkflowStatus.ARCHIVED:
            raise WorkflowStateError(f"Workflow {workflow_id} is archived")
        if workflow.status == WorkflowStatus.DRAFT:
            ensure_valid(workflow, self.registry.action_types())
            workflow.activated_at = self.clock()
        workflow.status = WorkflowStatus.ACTIVE
        await self.repository.save_workflow(workflow)
        logger.info(f"Workflow {workflow_id} activated")
        return workflow

    async def pause(self, workflow_id: str) -> WorkflowDefinition:
        """Stop creating enrollments; existing ones continue."""
        workflow = await self._workflow(workflow_id)
        if workflow.status != WorkflowStatus.ACTIVE:
            raise WorkflowStateError(
                f"Only active workflows can be paused ({workflow_id} is {workflow.status.value})"
            )
        workflow.status = WorkflowStatus.PAUSED
        await self.repository.save_workflow(workflow)
        logger.info(f"Workflow {workflow_id} paused")
        return workflow

    async def archive(self, workflow_id: str) -> WorkflowDefinition:
        workflow = await self._workflow(workflow_id)
        if workflow.status == WorkflowStatus.ARCHIVED:
            raise WorkflowStateError(f"Workflow {workflow_id} is already archived")
        workflow.status = WorkflowStatus.ARCHIVED
        await self.repository.save_workflow(workflow)
        logger.info(f"Workflow {workflow_id} archived")
        return workflow

    async def retarget_delay(
        self, workflow_id: str, step_id: str, config: DelayConfig | Dict[str, Any]
    ) -> List[Enrollment]:
        """Change a delay step of a live workflow.

        Enrollments already waiting on the step get a ``resume_at`` recomputed
        from the moment they entered the delay, not from now. Returns the
        enrollments that were rescheduled.
        """
        workflow = await self._workflow(workflow_id)
        step = workflow.step(step_id)
        if step is None or step.type != "delay":
            raise WorkflowStateError(f"{step_id!r} is not a delay step of {workflow_id}")
        if isinstance(config, dict):
            config = DelayConfig.model_validate(config)
        step.config = config
        await self.repository.save_workflow(workflow)

        rescheduled: List[Enrollment] = []
        waiting = await self.repository.list_enrollments(
            status=EnrollmentStatus.WAITING, workflow_id=workflow_id
        )
        for candidate in waiting:
            if candidate.current_step_id != step_id:
                continue
            async with self.executor.lease(candidate.id) as token:
                if token is None:
                    logger.info(f"Enrollment {candidate.id} is being resumed; not rescheduled")
                    continue
                enrollment = await self.repository.get_enrollment(candidate.id)
                if (
                    enrollment is None
                    or enrollment.status != EnrollmentStatus.WAITING
                    or enrollment.current_step_id != step_id
                    or enrollment.delay_started_at is None
                ):
                    continue
                enrollment.resume_at = compute_wake_time(config, enrollment.delay_started_at)
                enrollment.updated_at = self.clock()
                await self.repository.save_enrollment(enrollment)
                rescheduled.append(enrollment)
        logger.info(
            f"Delay {step_id} of {workflow_id} now waits {describe(config)}; "
            f"{len(rescheduled)} enrollment(s) rescheduled"
        )
        return rescheduled

    # ------------------------------------------------------------------
    # Enrollments

    async def enroll(
        self,
        workflow_id: str,
        entity_id: str,
        entity_type: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
    ) -> Optional[Enrollment]:
        return await self.dispatcher.enroll(workflow_id, entity_id, entity_type, variables)

    async def bulk_enroll(
        self,
        workflow_id: str,
        entity_ids: Iterable[str],
        entity_type: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
    ) -> BulkEnrollmentResult:
        return await self.dispatcher.bulk_enroll(workflow_id, entity_ids, entity_type, variables)

    async def cancel(self, enrollment_id: str) -> Enrollment:
        return await self.executor.cancel(enrollment_id)

    async def retry(self, enrollment_id: str, run: bool = True) -> Enrollment:
        """``failed -> active`` with the attempt counter reset, then continue."""
        await self.get_enrollment(enrollment_id)
        async with self.executor.lease(enrollment_id) as token:
            if token is None:
                raise WorkflowStateError(f"Enrollment {enrollment_id} is running")
            enrollment = await self.get_enrollment(enrollment_id)
            self.retry_manager.retry(enrollment, self.clock())
            await self.repository.save_enrollment(enrollment)
        logger.info(f"Enrollment {enrollment_id} retried from step {enrollment.current_step_id}")
        if not run:
            return enrollment
        result = await self.executor.run(enrollment_id)
        return result or enrollment

    async def get_enrollment(self, enrollment_id: str) -> Enrollment:
        enrollment = await self.repository.get_enrollment(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFound(enrollment_id)
        return enrollment

    async def list_enrollments(
        self,
        status: Optional[EnrollmentStatus] = None,
        workflow_id: Optional[str] = None,
    ) -> List[Enrollment]:
        return await self.repository.list_enrollments(status=status, workflow_id=workflow_id)

    async def stats(self, workflow_id: str) -> WorkflowStats:
        enrollments = await self.repository.list_enrollments(workflow_id=workflow_id)
        by_status = Counter(e.status.value for e in enrollments)
        failures = Counter(
            e.last_error.step_id
            for e in enrollments
            if e.status == EnrollmentStatus.FAILED and e.last_error and e.last_error.step_id
        )
        goals = sum(1 for e in enrollments if e.goal_met)
        total = len(enrollments)
        return WorkflowStats(
            workflow_id=workflow_id,
            total_enrolled=total,
            by_status=dict(by_status),
            goals_met=goals,
            goal_rate=round(goals / total, 4) if total else 0.0,
            failures_by_step=dict(failures),
        )

    # ------------------------------------------------------------------
    async def simulate(
        self,
        workflow_id: str,
        entity_id: str,
        entity_type: Optional[str] = None,
        dry_run: bool = True,
        fast_forward: bool = True,
        variables: Optional[Dict[str, Any]] = None,
    ) -> SimulationReport:
        workflow = await self._workflow(workflow_id)
        return await self.simulator.run(
            workflow,
            entity_id,
            entity_type=entity_type,
            dry_run=dry_run,
            fast_forward=fast_forward,
            variables=variables,
        )
