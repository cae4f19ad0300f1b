"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

from ..contracts import (
    TERMINAL_STATUSES,
    Enrollment,
    EnrollmentStatus,
    WorkflowDefinition,
    WorkflowStatus,
)
from ..delays import ensure_utc
from .repository import WorkflowRepository

_DUE_STATUSES = (EnrollmentStatus.ACTIVE, EnrollmentStatus.WAITING)


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store definitions and enrollments in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Stored objects are copied on the way
    in and out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._enrollments: Dict[str, Enrollment] = {}
        self._leases: Dict[str, Tuple[str, datetime]] = {}
        self._cancel_requested: Set[str] = set()

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_workflows(
        self, status: Optional[WorkflowStatus] = None
    ) -> List[WorkflowDefinition]:
        return [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if status is None or wf.status == status
        ]

    # ------------------------------------------------------------------
    async def create_enrollment(self, enrollment: Enrollment) -> None:
        if enrollment.id in self._enrollments:
            raise ValueError(f"Enrollment {enrollment.id} already exists")
        self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)

    async def save_enrollment(self, enrollment: Enrollment) -> None:
        self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)

    async def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        enrollment = self._enrollments.get(enrollment_id)
        return enrollment.model_copy(deep=True) if enrollment else None

    async def list_enrollments(
        self,
        status: Optional[EnrollmentStatus] = None,
        workflow_id: Optional[str] = None,
    ) -> List[Enrollment]:
        found = [
            e
            for e in self._enrollments.values()
            if (status is None or e.status == status)
            and (workflow_id is None or e.workflow_id == workflow_id)
        ]
        found.sort(key=lambda e: e.created_at)
        return [e.model_copy(deep=True) for e in found]

    async def find_active_enrollment(
        self, workflow_id: str, entity_type: str, entity_id: str
    ) -> Optional[Enrollment]:
        for enrollment in self._enrollments.values():
            if (
                enrollment.workflow_id == workflow_id
                and enrollment.entity.type == entity_type
                and enrollment.entity.id == entity_id
                and enrollment.status not in TERMINAL_STATUSES
            ):
                return enrollment.model_copy(deep=True)
        return None

    async def due_enrollments(self, now: datetime, limit: int) -> List[Enrollment]:
        now = ensure_utc(now)
        due = [
            e
            for e in self._enrollments.values()
            if e.status in _DUE_STATUSES
            and e.resume_at is not None
            and ensure_utc(e.resume_at) <= now
        ]
        due.sort(key=lambda e: e.resume_at)
        return [e.model_copy(deep=True) for e in due[:limit]]

    # ------------------------------------------------------------------
    async def claim_enrollment(
        self, enrollment_id: str, owner: str, ttl_seconds: float, now: datetime
    ) -> bool:
        if enrollment_id not in self._enrollments:
            return False
        now = ensure_utc(now)
        current = self._leases.get(enrollment_id)
        if current is not None:
            holder, expires_at = current
            if holder != owner and expires_at > now:
                return False
        self._leases[enrollment_id] = (owner, now + timedelta(seconds=ttl_seconds))
        return True

    async def release_enrollment(self, enrollment_id: str, owner: str) -> None:
        current = self._leases.get(enrollment_id)
        if current is not None and current[0] == owner:
            del self._leases[enrollment_id]

    async def lease_owner(self, enrollment_id: str, now: datetime) -> Optional[str]:
        current = self._leases.get(enrollment_id)
        if current is None or current[1] <= ensure_utc(now):
            return None
        return current[0]

    # ------------------------------------------------------------------
    async def request_cancellation(self, enrollment_id: str) -> None:
        self._cancel_requested.add(enrollment_id)

    async def cancellation_requested(self, enrollment_id: str) -> bool:
        return enrollment_id in self._cancel_requested
