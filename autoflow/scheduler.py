"""Suspension and scheduling: wakes enrollments whose resume time has passed."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from .config import SchedulerConfig
from .contracts import Enrollment, EnrollmentStatus
from .execute import EnrollmentExecutor
from .persistence import WorkflowRepository
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class SweepReport:
    """Counts from one sweep."""

    def __init__(self) -> None:
        self.selected = 0
        self.executed: List[str] = []
        self.skipped: List[str] = []
        self.errored: List[str] = []

    def __repr__(self) -> str:
        return (
            f"SweepReport(selected={self.selected}, executed={len(self.executed)}, "
            f"skipped={len(self.skipped)}, errored={len(self.errored)})"
        )


class SuspensionScheduler:
    """Periodic sweep over persisted ``resume_at`` markers.

    Selection is by threshold, so wake-ups missed during downtime are caught
    by the next sweep: delays fire no earlier than requested, never exactly
    on time. Enrollments whose lease is held elsewhere are skipped.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        executor: EnrollmentExecutor,
        config: Optional[SchedulerConfig] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.config = config or SchedulerConfig()
        self.clock = clock
        self._stopping = asyncio.Event()

    async def schedule(self, enrollment: Enrollment, resume_at: datetime) -> Enrollment:
        """Persist a wake-up marker for ``enrollment``."""
        enrollment.status = EnrollmentStatus.WAITING
        enrollment.resume_at = resume_at
        enrollment.updated_at = self.clock()
        await self.repository.save_enrollment(enrollment)
        return enrollment

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """Continue every due enrollment, with bounded concurrency."""
        now = now or self.clock()
        report = SweepReport()
        due = await self.repository.due_enrollments(now, self.config.batch_size)
        report.selected = len(due)
        if not due:
            return report

        semaphore = asyncio.Semaphore(self.config.concurrency)

        async def continue_one(enrollment: Enrollment) -> None:
            async with semaphore:
                try:
                    result = await self.executor.run(enrollment.id)
                except Exception:
                    logger.exception(f"Continuation of enrollment {enrollment.id} crashed")
                    report.errored.append(enrollment.id)
                    return
                if result is None:
                    report.skipped.append(enrollment.id)
                else:
                    report.executed.append(enrollment.id)

        await asyncio.gather(*(continue_one(e) for e in due))
        logger.debug(f"Sweep at {now.isoformat()}: {report}")
        return report

    async def run_forever(self, max_sweeps: Optional[int] = None) -> None:
        """Sweep every ``sweep_interval_seconds`` until :meth:`stop` is called."""
        sweeps = 0
        self._stopping.clear()
        logger.info(
            f"Scheduler started (interval {self.config.sweep_interval_seconds}s, "
            f"batch {self.config.batch_size})"
        )
        while not self._stopping.is_set():
            await self.sweep()
            sweeps += 1
            if max_sweeps is not None and sweeps >= max_sweeps:
                break
            try:
                await asyncio.wait_for(
                    self._stopping.wait(), timeout=self.config.sweep_interval_seconds
                )
            except asyncio.TimeoutError:
                continue
        logger.info("Scheduler stopped")

    def stop(self) -> None:
        self._stopping.set()
