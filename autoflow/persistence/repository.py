"""Repository abstraction for workflow definitions, enrollments and leases."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from ..contracts import (
    Enrollment,
    EnrollmentStatus,
    WorkflowDefinition,
    WorkflowStatus,
)


class WorkflowRepository(Protocol):
    """Protocol for persistence backends.

    Lease columns and the cancellation flag are stored beside the enrollment
    document, so ``save_enrollment`` never overwrites a lease held by another
    worker or a cancellation requested while the enrollment was running.
    """

    # -- workflow definitions ------------------------------------------
    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        """Insert or replace a workflow definition."""

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        """Return the workflow definition or ``None``."""

    async def list_workflows(
        self, status: Optional[WorkflowStatus] = None
    ) -> List[WorkflowDefinition]:
        """Return workflow definitions, optionally filtered by status."""

    # -- enrollments -----------------------------------------------------
    async def create_enrollment(self, enrollment: Enrollment) -> None:
        """Persist a new enrollment."""

    async def save_enrollment(self, enrollment: Enrollment) -> None:
        """Persist the current state of an existing enrollment."""

    async def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        """Return the enrollment or ``None``."""

    async def list_enrollments(
        self,
        status: Optional[EnrollmentStatus] = None,
        workflow_id: Optional[str] = None,
    ) -> List[Enrollment]:
        """Return enrollments ordered by creation time."""

    async def find_active_enrollment(
        self, workflow_id: str, entity_type: str, entity_id: str
    ) -> Optional[Enrollment]:
        """Return a non-terminal enrollment of the record in the workflow."""

    async def due_enrollments(self, now: datetime, limit: int) -> List[Enrollment]:
        """Active or waiting enrollments whose ``resume_at`` is not after ``now``."""

    # -- leases ------------------------------------------------------------
    async def claim_enrollment(
        self, enrollment_id: str, owner: str, ttl_seconds: float, now: datetime
    ) -> bool:
        """Atomically take (or renew) the execution lease.

        Succeeds when the enrollment is unleased, its lease expired, or the
        lease is already held by ``owner``.
        """

    async def release_enrollment(self, enrollment_id: str, owner: str) -> None:
        """Drop the lease if ``owner`` still holds it."""

    async def lease_owner(self, enrollment_id: str, now: datetime) -> Optional[str]:
        """Current unexpired lease holder, if any."""

    # -- cancellation ------------------------------------------------------
    async def request_cancellation(self, enrollment_id: str) -> None:
        """Flag the enrollment for cancellation before its next step."""

    async def cancellation_requested(self, enrollment_id: str) -> bool:
        """Whether cancellation was requested for the enrollment."""
