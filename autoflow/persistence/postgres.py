"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, List, Optional

import asyncpg

from ..contracts import (
    TERMINAL_STATUSES,
    Enrollment,
    EnrollmentStatus,
    WorkflowDefinition,
    WorkflowStatus,
)
from ..delays import ensure_utc
from .repository import WorkflowRepository


def _document(value: Any) -> str:
    # asyncpg returns JSONB as text unless a codec is registered.
    return value if isinstance(value, str) else value.decode()


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist definitions and enrollments using PostgreSQL.

    Lease claims are a single conditional ``UPDATE ... RETURNING`` so two
    workers racing for the same enrollment cannot both succeed.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                document JSONB NOT NULL,
                saved_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS enrollments (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                status TEXT NOT NULL,
                resume_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL,
                document JSONB NOT NULL,
                lease_owner TEXT,
                lease_expires_at TIMESTAMPTZ,
                cancel_requested BOOLEAN NOT NULL DEFAULT FALSE
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_enrollments_due ON enrollments (status, resume_at)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_enrollments_entity ON enrollments (workflow_id, entity_type, entity_id)"
        )

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO workflows (id, status, document) VALUES ($1, $2, $3::jsonb)
                ON CONFLICT (id) DO UPDATE
                SET status = EXCLUDED.status, document = EXCLUDED.document
                """,
                workflow.id,
                workflow.status.value,
                workflow.to_json(),
            )
        finally:
            await conn.close()

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT document FROM workflows WHERE id = $1", workflow_id
            )
        finally:
            await conn.close()
        return WorkflowDefinition.from_json(_document(row["document"])) if row else None

    async def list_workflows(
        self, status: Optional[WorkflowStatus] = None
    ) -> List[WorkflowDefinition]:
        conn = await self._connect()
        try:
            if status is None:
                rows = await conn.fetch("SELECT document FROM workflows ORDER BY saved_at")
            else:
                rows = await conn.fetch(
                    "SELECT document FROM workflows WHERE status = $1 ORDER BY saved_at",
                    status.value,
                )
        finally:
            await conn.close()
        return [WorkflowDefinition.from_json(_document(r["document"])) for r in rows]

    # ------------------------------------------------------------------
    async def create_enrollment(self, enrollment: Enrollment) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO enrollments
                    (id, workflow_id, entity_type, entity_id, status, resume_at, created_at, document)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb)
                """,
                enrollment.id,
                enrollment.workflow_id,
                enrollment.entity.type,
                enrollment.entity.id,
                enrollment.status.value,
                enrollment.resume_at,
                enrollment.created_at,
                enrollment.to_json(),
            )
        finally:
            await conn.close()

    async def save_enrollment(self, enrollment: Enrollment) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE enrollments SET status = $1, resume_at = $2, document = $3::jsonb
                WHERE id = $4
                """,
                enrollment.status.value,
                enrollment.resume_at,
                enrollment.to_json(),
                enrollment.id,
            )
        finally:
            await conn.close()

    async def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT document FROM enrollments WHERE id = $1", enrollment_id
            )
        finally:
            await conn.close()
        return Enrollment.from_json(_document(row["document"])) if row else None

    async def list_enrollments(
        self,
        status: Optional[EnrollmentStatus] = None,
        workflow_id: Optional[str] = None,
    ) -> List[Enrollment]:
        clauses: List[str] = []
        params: List[Any] = []
        if status is not None:
            params.append(status.value)
            clauses.append(f"status = ${len(params)}")
        if workflow_id is not None:
            params.append(workflow_id)
            clauses.append(f"workflow_id = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT document FROM enrollments {where} ORDER BY created_at", *params
            )
        finally:
            await conn.close()
        return [Enrollment.from_json(_document(r["document"])) for r in rows]

    async def find_active_enrollment(
        self, workflow_id: str, entity_type: str, entity_id: str
    ) -> Optional[Enrollment]:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                SELECT document FROM enrollments
                WHERE workflow_id = $1 AND entity_type = $2 AND entity_id = $3
                  AND NOT (status = ANY($4::text[]))
                ORDER BY created_at LIMIT 1
                """,
                workflow_id,
                entity_type,
                entity_id,
                [s.value for s in TERMINAL_STATUSES],
            )
        finally:
            await conn.close()
        return Enrollment.from_json(_document(row["document"])) if row else None

    async def due_enrollments(self, now: datetime, limit: int) -> List[Enrollment]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT document FROM enrollments
                WHERE status IN ($1, $2) AND resume_at IS NOT NULL AND resume_at <= $3
                ORDER BY resume_at LIMIT $4
                """,
                EnrollmentStatus.ACTIVE.value,
                EnrollmentStatus.WAITING.value,
                ensure_utc(now),
                limit,
            )
        finally:
            await conn.close()
        return [Enrollment.from_json(_document(r["document"])) for r in rows]

    # ------------------------------------------------------------------
    async def claim_enrollment(
        self, enrollment_id: str, owner: str, ttl_seconds: float, now: datetime
    ) -> bool:
        now = ensure_utc(now)
        conn = await self._connect()
        try:
            claimed = await conn.fetchval(
                """
                UPDATE enrollments SET lease_owner = $1, lease_expires_at = $2
                WHERE id = $3
                  AND (lease_owner IS NULL OR lease_owner = $1 OR lease_expires_at <= $4)
                RETURNING id
                """,
                owner,
                now + timedelta(seconds=ttl_seconds),
                enrollment_id,
                now,
            )
        finally:
            await conn.close()
        return claimed is not None

    async def release_enrollment(self, enrollment_id: str, owner: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE enrollments SET lease_owner = NULL, lease_expires_at = NULL
                WHERE id = $1 AND lease_owner = $2
                """,
                enrollment_id,
                owner,
            )
        finally:
            await conn.close()

    async def lease_owner(self, enrollment_id: str, now: datetime) -> Optional[str]:
        conn = await self._connect()
        try:
            return await conn.fetchval(
                "SELECT lease_owner FROM enrollments WHERE id = $1 AND lease_expires_at > $2",
                enrollment_id,
                ensure_utc(now),
            )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def request_cancellation(self, enrollment_id: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE enrollments SET cancel_requested = TRUE WHERE id = $1",
                enrollment_id,
            )
        finally:
            await conn.close()

    async def cancellation_requested(self, enrollment_id: str) -> bool:
        conn = await self._connect()
        try:
            flag = await conn.fetchval(
                "SELECT cancel_requested FROM enrollments WHERE id = $1", enrollment_id
            )
        finally:
            await conn.close()
        return bool(flag)
