"""PostgreSQL implementation of the automation repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Optional, Sequence

import asyncpg

from ..contracts import (
    TERMINAL_ENROLLMENT_STATUSES,
    TERMINAL_TASK_STATUSES,
    Contact,
    Enrollment,
    JourneyEntry,
    Task,
    Workflow,
)
from .repository import AutomationRepository, apply_contact_update


class PostgresAutomationRepository(AutomationRepository):
    """Persist automation state using PostgreSQL.

    Records live in JSONB documents beside the filter columns. Conditional
    updates (task claims, journey appends, counter increments) are single
    ``UPDATE`` statements, so they stay atomic across worker processes.
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
                owner_id TEXT NOT NULL,
                status TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS contacts (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS enrollments (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                contact_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                enrollment_id TEXT NOT NULL,
                status TEXT NOT NULL,
                scheduled_for TIMESTAMPTZ NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_tasks_due ON tasks (status, scheduled_for)"
        )

    # ------------------------------------------------------------------
    async def _execute(self, query: str, *params: Any) -> str:
        conn = await self._connect()
        try:
            return await conn.execute(query, *params)
        finally:
            await conn.close()

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *params)
        finally:
            await conn.close()

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    @staticmethod
    def _affected(status: str) -> int:
        # asyncpg returns command tags such as "UPDATE 3"
        return int(status.split()[-1]) if status else 0

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        await self._execute(
            """
            INSERT INTO workflows (id, owner_id, status, trigger_type, data)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (id) DO UPDATE SET owner_id = $2, status = $3, trigger_type = $4, data = $5
            """,
            workflow.id,
            workflow.owner_id,
            workflow.status,
            workflow.trigger.type,
            workflow.model_dump_json(),
        )

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await self._fetchrow("SELECT data FROM workflows WHERE id = $1", workflow_id)
        return Workflow.model_validate_json(row["data"]) if row else None

    async def list_workflows(
        self, status: Optional[str] = None, trigger_type: Optional[str] = None
    ) -> list[Workflow]:
        rows = await self._fetch(
            """
            SELECT data FROM workflows
            WHERE ($1::text IS NULL OR status = $1) AND ($2::text IS NULL OR trigger_type = $2)
            """,
            status,
            trigger_type,
        )
        return [Workflow.model_validate_json(r["data"]) for r in rows]

    async def increment_workflow_stats(self, workflow_id: str, **deltas: int) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                for counter, delta in deltas.items():
                    await conn.execute(
                        """
                        UPDATE workflows
                        SET data = jsonb_set(
                            data, ARRAY['stats', $2::text],
                            to_jsonb(COALESCE((data->'stats'->>$2)::int, 0) + $3)
                        )
                        WHERE id = $1
                        """,
                        workflow_id,
                        counter,
                        delta,
                    )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def save_contact(self, contact: Contact) -> None:
        await self._execute(
            """
            INSERT INTO contacts (id, owner_id, data) VALUES ($1, $2, $3)
            ON CONFLICT (id) DO UPDATE SET owner_id = $2, data = $3
            """,
            contact.id,
            contact.owner_id,
            contact.model_dump_json(),
        )

    async def get_contact(self, contact_id: str) -> Contact | None:
        row = await self._fetchrow("SELECT data FROM contacts WHERE id = $1", contact_id)
        return Contact.model_validate_json(row["data"]) if row else None

    async def list_contacts(self, owner_id: str) -> list[Contact]:
        rows = await self._fetch("SELECT data FROM contacts WHERE owner_id = $1", owner_id)
        return [Contact.model_validate_json(r["data"]) for r in rows]

    async def update_contact(
        self,
        contact_id: str,
        add_tags: Sequence[str] = (),
        remove_tags: Sequence[str] = (),
        custom_fields: Optional[Dict[str, Any]] = None,
        **fields: Any,
    ) -> Contact | None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT data FROM contacts WHERE id = $1 FOR UPDATE", contact_id
                )
                if not row:
                    return None
                contact = apply_contact_update(
                    Contact.model_validate_json(row["data"]),
                    add_tags,
                    remove_tags,
                    custom_fields,
                    fields,
                )
                await conn.execute(
                    "UPDATE contacts SET data = $2 WHERE id = $1",
                    contact_id,
                    contact.model_dump_json(),
                )
                return contact
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def create_enrollment(self, enrollment: Enrollment) -> None:
        await self._execute(
            "INSERT INTO enrollments (id, workflow_id, contact_id, status, created_at, data) VALUES ($1, $2, $3, $4, $5, $6)",
            enrollment.id,
            enrollment.workflow_id,
            enrollment.contact_id,
            enrollment.status,
            enrollment.created_at,
            enrollment.model_dump_json(),
        )

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        row = await self._fetchrow("SELECT data FROM enrollments WHERE id = $1", enrollment_id)
        return Enrollment.model_validate_json(row["data"]) if row else None

    async def update_enrollment(self, enrollment_id: str, **fields) -> None:
        patch = Enrollment.model_construct(**fields).model_dump(
            mode="json", include=set(fields)
        )
        await self._execute(
            """
            UPDATE enrollments
            SET data = data || $2::jsonb, status = COALESCE($3, status)
            WHERE id = $1
            """,
            enrollment_id,
            json.dumps(patch),
            fields.get("status"),
        )

    async def find_enrollments(
        self,
        workflow_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
        created_since: Optional[datetime] = None,
    ) -> list[Enrollment]:
        rows = await self._fetch(
            """
            SELECT data FROM enrollments
            WHERE ($1::text IS NULL OR workflow_id = $1)
              AND ($2::text IS NULL OR contact_id = $2)
              AND ($3::text[] IS NULL OR status = ANY($3))
              AND ($4::timestamptz IS NULL OR created_at >= $4)
            ORDER BY created_at
            """,
            workflow_id,
            contact_id,
            list(statuses) if statuses is not None else None,
            created_since,
        )
        return [Enrollment.model_validate_json(r["data"]) for r in rows]

    async def append_journey_entry(
        self, enrollment_id: str, entry: JourneyEntry
    ) -> bool:
        entry_json = entry.model_dump_json()
        marker = json.dumps([{"task_id": entry.task_id}]) if entry.task_id else None
        status = await self._execute(
            """
            UPDATE enrollments
            SET data = jsonb_set(data, '{journey}', COALESCE(data->'journey', '[]'::jsonb) || jsonb_build_array($2::jsonb))
            WHERE id = $1
              AND ($3::jsonb IS NULL OR NOT COALESCE(data->'journey', '[]'::jsonb) @> $3::jsonb)
            """,
            enrollment_id,
            entry_json,
            marker,
        )
        return self._affected(status) == 1

    async def prune_journeys(self, before: datetime) -> int:
        rows = await self._fetch(
            """
            WITH pruned AS (
                SELECT e.id,
                       COALESCE(
                           jsonb_agg(j.value ORDER BY j.idx) FILTER (WHERE (j.value->>'timestamp')::timestamptz >= $1),
                           '[]'::jsonb
                       ) AS kept,
                       COUNT(*) FILTER (WHERE (j.value->>'timestamp')::timestamptz < $1) AS dropped
                FROM enrollments e,
                     jsonb_array_elements(e.data->'journey') WITH ORDINALITY AS j(value, idx)
                WHERE e.status = ANY($2::text[])
                GROUP BY e.id
            )
            UPDATE enrollments SET data = jsonb_set(enrollments.data, '{journey}', pruned.kept)
            FROM pruned
            WHERE enrollments.id = pruned.id AND pruned.dropped > 0
            RETURNING pruned.dropped
            """,
            before,
            list(TERMINAL_ENROLLMENT_STATUSES),
        )
        return sum(r["dropped"] for r in rows)

    # ------------------------------------------------------------------
    async def create_task(self, task: Task) -> bool:
        status = await self._execute(
            """
            INSERT INTO tasks (id, enrollment_id, status, scheduled_for, created_at, updated_at, data)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (id) DO NOTHING
            """,
            task.id,
            task.enrollment_id,
            task.status,
            task.scheduled_for,
            task.created_at,
            task.updated_at,
            task.model_dump_json(),
        )
        return self._affected(status) == 1

    async def get_task(self, task_id: str) -> Task | None:
        row = await self._fetchrow("SELECT data FROM tasks WHERE id = $1", task_id)
        return Task.model_validate_json(row["data"]) if row else None

    async def save_task(self, task: Task) -> None:
        await self._execute(
            """
            UPDATE tasks SET status = $2, scheduled_for = $3, updated_at = $4, data = $5
            WHERE id = $1
            """,
            task.id,
            task.status,
            task.scheduled_for,
            task.updated_at,
            task.model_dump_json(),
        )

    async def due_tasks(self, now: datetime, limit: int) -> list[Task]:
        rows = await self._fetch(
            "SELECT data FROM tasks WHERE status = 'pending' AND scheduled_for <= $1 ORDER BY scheduled_for LIMIT $2",
            now,
            limit,
        )
        return [Task.model_validate_json(r["data"]) for r in rows]

    async def claim_task(self, task_id: str, now: datetime) -> Task | None:
        row = await self._fetchrow(
            """
            UPDATE tasks
            SET status = 'processing',
                updated_at = $2,
                data = data || jsonb_build_object(
                    'status', 'processing',
                    'attempts', COALESCE((data->>'attempts')::int, 0) + 1,
                    'updated_at', to_jsonb($2::timestamptz)
                )
            WHERE id = $1 AND status = 'pending'
            RETURNING data
            """,
            task_id,
            now,
        )
        return Task.model_validate_json(row["data"]) if row else None

    async def list_tasks(
        self,
        enrollment_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
    ) -> list[Task]:
        rows = await self._fetch(
            """
            SELECT data FROM tasks
            WHERE ($1::text IS NULL OR enrollment_id = $1)
              AND ($2::text[] IS NULL OR status = ANY($2))
            ORDER BY created_at
            """,
            enrollment_id,
            list(statuses) if statuses is not None else None,
        )
        return [Task.model_validate_json(r["data"]) for r in rows]

    async def delete_terminal_tasks(self, before: datetime) -> int:
        status = await self._execute(
            "DELETE FROM tasks WHERE status = ANY($1::text[]) AND updated_at < $2",
            list(TERMINAL_TASK_STATUSES),
            before,
        )
        return self._affected(status)
