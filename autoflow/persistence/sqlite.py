"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, List, Optional

from ..contracts import (
    TERMINAL_STATUSES,
    Enrollment,
    EnrollmentStatus,
    WorkflowDefinition,
    WorkflowStatus,
)
from ..delays import ensure_utc
from .repository import WorkflowRepository


def _epoch(moment: Optional[datetime]) -> Optional[float]:
    return ensure_utc(moment).timestamp() if moment is not None else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist definitions and enrollments using SQLite.

    Documents are stored as JSON; the columns used for selection (status,
    due time, lease, cancellation flag) are stored alongside them. Times are
    stored as UTC epoch seconds so they compare numerically.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                document TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS enrollments (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                status TEXT NOT NULL,
                resume_at REAL,
                created_at REAL NOT NULL,
                document TEXT NOT NULL,
                lease_owner TEXT,
                lease_expires_at REAL,
                cancel_requested INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_enrollments_due ON enrollments (status, resume_at)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_enrollments_entity ON enrollments (workflow_id, entity_type, entity_id)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Workflow definitions
    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflows (id, status, document) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET status = excluded.status, document = excluded.document
            """,
            workflow.id,
            workflow.status.value,
            workflow.to_json(),
        )

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT document FROM workflows WHERE id = ?", workflow_id
        )
        return WorkflowDefinition.from_json(row["document"]) if row else None

    async def list_workflows(
        self, status: Optional[WorkflowStatus] = None
    ) -> List[WorkflowDefinition]:
        if status is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT document FROM workflows ORDER BY rowid"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT document FROM workflows WHERE status = ? ORDER BY rowid",
                status.value,
            )
        return [WorkflowDefinition.from_json(r["document"]) for r in rows]

    # ------------------------------------------------------------------
    # Enrollments
    async def create_enrollment(self, enrollment: Enrollment) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO enrollments
                (id, workflow_id, entity_type, entity_id, status, resume_at, created_at, document)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            enrollment.id,
            enrollment.workflow_id,
            enrollment.entity.type,
            enrollment.entity.id,
            enrollment.status.value,
            _epoch(enrollment.resume_at),
            _epoch(enrollment.created_at),
            enrollment.to_json(),
        )

    async def save_enrollment(self, enrollment: Enrollment) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE enrollments SET status = ?, resume_at = ?, document = ? WHERE id = ?",
            enrollment.status.value,
            _epoch(enrollment.resume_at),
            enrollment.to_json(),
            enrollment.id,
        )

    async def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT document FROM enrollments WHERE id = ?", enrollment_id
        )
        return Enrollment.from_json(row["document"]) if row else None

    async def list_enrollments(
        self,
        status: Optional[EnrollmentStatus] = None,
        workflow_id: Optional[str] = None,
    ) -> List[Enrollment]:
        clauses: List[str] = []
        params: List[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT document FROM enrollments {where} ORDER BY created_at",
            *params,
        )
        return [Enrollment.from_json(r["document"]) for r in rows]

    async def find_active_enrollment(
        self, workflow_id: str, entity_type: str, entity_id: str
    ) -> Optional[Enrollment]:
        terminal = [s.value for s in TERMINAL_STATUSES]
        row = await asyncio.to_thread(
            self._fetchone,
            f"""
            SELECT document FROM enrollments
            WHERE workflow_id = ? AND entity_type = ? AND entity_id = ?
              AND status NOT IN ({', '.join('?' for _ in terminal)})
            ORDER BY created_at LIMIT 1
            """,
            workflow_id,
            entity_type,
            entity_id,
            *terminal,
        )
        return Enrollment.from_json(row["document"]) if row else None

    async def due_enrollments(self, now: datetime, limit: int) -> List[Enrollment]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT document FROM enrollments
            WHERE status IN (?, ?) AND resume_at IS NOT NULL AND resume_at <= ?
            ORDER BY resume_at LIMIT ?
            """,
            EnrollmentStatus.ACTIVE.value,
            EnrollmentStatus.WAITING.value,
            _epoch(now),
            limit,
        )
        return [Enrollment.from_json(r["document"]) for r in rows]

    # ------------------------------------------------------------------
    # Leases
    async def claim_enrollment(
        self, enrollment_id: str, owner: str, ttl_seconds: float, now: datetime
    ) -> bool:
        now = ensure_utc(now)
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE enrollments SET lease_owner = ?, lease_expires_at = ?
            WHERE id = ? AND (lease_owner IS NULL OR lease_owner = ? OR lease_expires_at <= ?)
            """,
            owner,
            _epoch(now + timedelta(seconds=ttl_seconds)),
            enrollment_id,
            owner,
            _epoch(now),
        )
        return updated == 1

    async def release_enrollment(self, enrollment_id: str, owner: str) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE enrollments SET lease_owner = NULL, lease_expires_at = NULL
            WHERE id = ? AND lease_owner = ?
            """,
            enrollment_id,
            owner,
        )

    async def lease_owner(self, enrollment_id: str, now: datetime) -> Optional[str]:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT lease_owner FROM enrollments WHERE id = ? AND lease_expires_at > ?",
            enrollment_id,
            _epoch(now),
        )
        return row["lease_owner"] if row else None

    # ------------------------------------------------------------------
    # Cancellation
    async def request_cancellation(self, enrollment_id: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE enrollments SET cancel_requested = 1 WHERE id = ?",
            enrollment_id,
        )

    async def cancellation_requested(self, enrollment_id: str) -> bool:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT cancel_requested FROM enrollments WHERE id = ?",
            enrollment_id,
        )
        return bool(row and row["cancel_requested"])
