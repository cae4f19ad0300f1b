"""Trigger dispatcher: turns business-record events into enrollments."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from .conditions import criteria_met, evaluate_all
from .contracts import (
    BusinessEvent,
    DataContext,
    Enrollment,
    EntityRef,
    TriggerStep,
    WorkflowDefinition,
    WorkflowStatus,
)
from .errors import ConfigurationError, WorkflowNotFound, WorkflowStateError
from .execute import EnrollmentExecutor
from .persistence import WorkflowRepository
from .records import RecordNotFound, RecordStore
from .resolver import ResolutionContext
from .transports import BaseTransport
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class BulkEnrollmentResult(BaseModel):
    enrolled: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    missing: List[str] = Field(default_factory=list)


def trigger_variables(event: BusinessEvent) -> Dict[str, Any]:
    return {
        "event_id": event.event_id,
        "event_type": event.event_type,
        "timestamp": event.timestamp.isoformat(),
        "payload": event.payload,
    }


class TriggerDispatcher:
    """Matches events against active workflows and creates enrollments.

    New enrollments are handed to the executor right away when
    ``run_immediately`` is set; otherwise they are left due for the next
    scheduler sweep.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        executor: EnrollmentExecutor,
        records: RecordStore,
        run_immediately: bool = True,
        clock: Clock = utcnow,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.records = records
        self.run_immediately = run_immediately
        self.clock = clock
        self._guards: Dict[Tuple[str, str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    # Event matching

    @staticmethod
    def trigger_matches(
        workflow: WorkflowDefinition, trigger: Optional[TriggerStep], event: BusinessEvent
    ) -> bool:
        if trigger is None or trigger.config.event_type != event.event_type:
            return False
        entity_type = trigger.config.entity_type or workflow.entity_type
        return entity_type == event.entity_type

    async def handle_event(self, event: BusinessEvent) -> List[Enrollment]:
        """Enroll the event's record in every matching active workflow."""
        created: List[Enrollment] = []
        workflows = await self.repository.list_workflows(WorkflowStatus.ACTIVE)
        candidates = [
            wf for wf in workflows if self.trigger_matches(wf, wf.trigger_step(), event)
        ]
        if not candidates:
            logger.debug(f"No active workflow listens for {event.event_type}")
            return created

        entity = await self.records.get(event.entity_type, event.entity_id)
        if entity is None:
            logger.warning(
                f"Ignoring {event.event_type} for missing {event.entity_type} {event.entity_id}"
            )
            return created

        variables = {"trigger": trigger_variables(event)}
        ctx = ResolutionContext(
            entity=entity, entity_type=event.entity_type, variables=variables
        )
        for workflow in candidates:
            trigger = workflow.trigger_step()
            try:
                if not evaluate_all(trigger.config.filters, ctx):
                    continue
                if not criteria_met(workflow.enrollment_criteria, ctx):
                    logger.debug(
                        f"{event.entity_type} {event.entity_id} does not meet enrollment "
                        f"criteria of {workflow.id}"
                    )
                    continue
            except ConfigurationError as exc:
                logger.warning(f"Trigger filters of workflow {workflow.id} failed: {exc}")
                continue

            enrollment = await self._enroll(
                workflow,
                EntityRef(type=event.entity_type, id=event.entity_id),
                source="automatic",
                variables=variables,
            )
            if enrollment is not None:
                created.append(enrollment)
        return created

    async def listen(
        self,
        transport: BaseTransport,
        topic: str,
        lifespan: Optional[float] = None,
    ) -> int:
        """Consume the event feed; returns the number of events handled."""
        handled = 0
        async for raw_message, event in transport.subscribe(topic, lifespan=lifespan):
            try:
                await self.handle_event(event)
            except Exception:
                logger.exception(f"Failed to dispatch event {event.event_id}")
                await transport.nack(raw_message)
                continue
            await transport.ack(raw_message)
            handled += 1
        return handled

    # ------------------------------------------------------------------
    # Manual and bulk enrollment

    async def _require_active(self, workflow_id: str) -> WorkflowDefinition:
        workflow = await self.repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(workflow_id)
        if workflow.status != WorkflowStatus.ACTIVE:
            raise WorkflowStateError(
                f"Workflow {workflow_id} is {workflow.status.value}; only active workflows enroll"
            )
        return workflow

    async def enroll(
        self,
        workflow_id: str,
        entity_id: str,
        entity_type: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
        source: str = "manual",
    ) -> Optional[Enrollment]:
        """Enroll one record, bypassing trigger matching.

        Returns ``None`` when the re-enrollment guard refuses the record.
        """
        workflow = await self._require_active(workflow_id)
        entity_type = entity_type or workflow.entity_type
        if await self.records.get(entity_type, entity_id) is None:
            raise RecordNotFound(f"{entity_type} {entity_id} not found")
        return await self._enroll(
            workflow, EntityRef(type=entity_type, id=entity_id), source, variables or {}
        )

    async def bulk_enroll(
        self,
        workflow_id: str,
        entity_ids: Iterable[str],
        entity_type: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
    ) -> BulkEnrollmentResult:
        workflow = await self._require_active(workflow_id)
        entity_type = entity_type or workflow.entity_type
        result = BulkEnrollmentResult()
        for entity_id in entity_ids:
            if await self.records.get(entity_type, entity_id) is None:
                result.missing.append(entity_id)
                continue
            enrollment = await self._enroll(
                workflow,
                EntityRef(type=entity_type, id=entity_id),
                "bulk",
                dict(variables or {}),
            )
            if enrollment is None:
                result.skipped.append(entity_id)
            else:
                result.enrolled.append(enrollment.id)
        logger.info(
            f"Bulk enrollment into {workflow_id}: {len(result.enrolled)} enrolled, "
            f"{len(result.skipped)} skipped, {len(result.missing)} missing"
        )
        return result

    # ------------------------------------------------------------------
    async def _enroll(
        self,
        workflow: WorkflowDefinition,
        entity: EntityRef,
        source: str,
        variables: Dict[str, Any],
    ) -> Optional[Enrollment]:
        async with self._guards[(workflow.id, entity.type, entity.id)]:
            if not workflow.allow_reenrollment:
                existing = await self.repository.find_active_enrollment(
                    workflow.id, entity.type, entity.id
                )
                if existing is not None:
                    logger.info(
                        f"{entity} already enrolled in {workflow.id} ({existing.id}); skipping"
                    )
                    return None

            trigger = workflow.trigger_step()
            now = self.clock()
            enrollment = Enrollment(
                workflow_id=workflow.id,
                entity=entity,
                current_step_id=trigger.id if trigger else None,
                data_context=DataContext(variables=dict(variables)),
                source=source,
                resume_at=now,
                created_at=now,
                updated_at=now,
            )
            await self.repository.create_enrollment(enrollment)
        logger.info(f"Enrolled {entity} in workflow {workflow.id} as {enrollment.id}")

        if not self.run_immediately:
            return enrollment
        result = await self.executor.run(enrollment.id)
        return result or enrollment
