"""SQLite implementation of the automation repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from ..contracts import (
    TERMINAL_ENROLLMENT_STATUSES,
    TERMINAL_TASK_STATUSES,
    Contact,
    Enrollment,
    JourneyEntry,
    Task,
    Workflow,
)
from ..utils.timing import ensure_aware
from .repository import AutomationRepository, apply_contact_update


def _ts(value: datetime) -> str:
    return ensure_aware(value).astimezone(timezone.utc).isoformat(timespec="microseconds")


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


class SQLiteAutomationRepository(AutomationRepository):
    """Persist automation state using SQLite.

    Each record is stored as a JSON document next to the columns the
    scheduler filters on. Multi-statement updates run under a lock inside a
    single transaction, which makes them atomic for this process.
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
                owner_id TEXT NOT NULL,
                status TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS contacts (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS enrollments (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                contact_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                enrollment_id TEXT NOT NULL,
                status TEXT NOT NULL,
                scheduled_for TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_tasks_due ON tasks (status, scheduled_for)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_enrollments_pair ON enrollments (workflow_id, contact_id)"
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

    def _modify_enrollment(self, enrollment_id: str, mutate) -> Any:
        """Read, mutate and write back one enrollment in a single transaction."""
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("SELECT data FROM enrollments WHERE id = ?", (enrollment_id,))
            row = cur.fetchone()
            if not row:
                return None
            enrollment = Enrollment.model_validate_json(row["data"])
            outcome = mutate(enrollment)
            cur.execute(
                "UPDATE enrollments SET status = ?, data = ? WHERE id = ?",
                (enrollment.status, enrollment.model_dump_json(), enrollment_id),
            )
            self._conn.commit()
            return outcome

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, workflow: Workflow) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO workflows (id, owner_id, status, trigger_type, data) VALUES (?, ?, ?, ?, ?)",
            workflow.id,
            workflow.owner_id,
            workflow.status,
            workflow.trigger.type,
            workflow.model_dump_json(),
        )

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM workflows WHERE id = ?", workflow_id
        )
        return Workflow.model_validate_json(row["data"]) if row else None

    async def list_workflows(
        self, status: Optional[str] = None, trigger_type: Optional[str] = None
    ) -> list[Workflow]:
        query = "SELECT data FROM workflows WHERE 1 = 1"
        params: list[Any] = []
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        if trigger_type is not None:
            query += " AND trigger_type = ?"
            params.append(trigger_type)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [Workflow.model_validate_json(r["data"]) for r in rows]

    def _increment_stats(self, workflow_id: str, deltas: dict[str, int]) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("SELECT data FROM workflows WHERE id = ?", (workflow_id,))
            row = cur.fetchone()
            if not row:
                return
            data = json.loads(row["data"])
            stats = data.setdefault("stats", {})
            for counter, delta in deltas.items():
                stats[counter] = stats.get(counter, 0) + delta
            cur.execute(
                "UPDATE workflows SET data = ? WHERE id = ?",
                (json.dumps(data), workflow_id),
            )
            self._conn.commit()

    async def increment_workflow_stats(self, workflow_id: str, **deltas: int) -> None:
        await asyncio.to_thread(self._increment_stats, workflow_id, deltas)

    # ------------------------------------------------------------------
    # Contacts
    async def save_contact(self, contact: Contact) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO contacts (id, owner_id, data) VALUES (?, ?, ?)",
            contact.id,
            contact.owner_id,
            contact.model_dump_json(),
        )

    async def get_contact(self, contact_id: str) -> Contact | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM contacts WHERE id = ?", contact_id
        )
        return Contact.model_validate_json(row["data"]) if row else None

    async def list_contacts(self, owner_id: str) -> list[Contact]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT data FROM contacts WHERE owner_id = ?", owner_id
        )
        return [Contact.model_validate_json(r["data"]) for r in rows]

    def _modify_contact(self, contact_id: str, changes: tuple) -> Contact | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("SELECT data FROM contacts WHERE id = ?", (contact_id,))
            row = cur.fetchone()
            if not row:
                return None
            contact = apply_contact_update(Contact.model_validate_json(row["data"]), *changes)
            cur.execute(
                "UPDATE contacts SET data = ? WHERE id = ?",
                (contact.model_dump_json(), contact_id),
            )
            self._conn.commit()
            return contact

    async def update_contact(
        self,
        contact_id: str,
        add_tags: Sequence[str] = (),
        remove_tags: Sequence[str] = (),
        custom_fields: Optional[Dict[str, Any]] = None,
        **fields: Any,
    ) -> Contact | None:
        return await asyncio.to_thread(
            self._modify_contact,
            contact_id,
            (add_tags, remove_tags, custom_fields, fields),
        )

    # ------------------------------------------------------------------
    # Enrollments
    async def create_enrollment(self, enrollment: Enrollment) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO enrollments (id, workflow_id, contact_id, status, created_at, data) VALUES (?, ?, ?, ?, ?, ?)",
            enrollment.id,
            enrollment.workflow_id,
            enrollment.contact_id,
            enrollment.status,
            _ts(enrollment.created_at),
            enrollment.model_dump_json(),
        )

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM enrollments WHERE id = ?", enrollment_id
        )
        return Enrollment.model_validate_json(row["data"]) if row else None

    async def update_enrollment(self, enrollment_id: str, **fields) -> None:
        def mutate(enrollment: Enrollment) -> None:
            for name, value in fields.items():
                setattr(enrollment, name, value)

        await asyncio.to_thread(self._modify_enrollment, enrollment_id, mutate)

    async def find_enrollments(
        self,
        workflow_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
        created_since: Optional[datetime] = None,
    ) -> list[Enrollment]:
        query = "SELECT data FROM enrollments WHERE 1 = 1"
        params: list[Any] = []
        if workflow_id is not None:
            query += " AND workflow_id = ?"
            params.append(workflow_id)
        if contact_id is not None:
            query += " AND contact_id = ?"
            params.append(contact_id)
        if statuses is not None:
            if not statuses:
                return []
            query += f" AND status IN ({_placeholders(statuses)})"
            params.extend(statuses)
        if created_since is not None:
            query += " AND created_at >= ?"
            params.append(_ts(created_since))
        query += " ORDER BY created_at"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [Enrollment.model_validate_json(r["data"]) for r in rows]

    async def append_journey_entry(
        self, enrollment_id: str, entry: JourneyEntry
    ) -> bool:
        def mutate(enrollment: Enrollment) -> bool:
            if entry.task_id and enrollment.entry_for_task(entry.task_id):
                return False
            enrollment.journey.append(entry)
            return True

        appended = await asyncio.to_thread(self._modify_enrollment, enrollment_id, mutate)
        return bool(appended)

    def _prune_journeys(self, before: datetime) -> int:
        cutoff = ensure_aware(before)
        removed = 0
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                f"SELECT id, data FROM enrollments WHERE status IN ({_placeholders(TERMINAL_ENROLLMENT_STATUSES)})",
                TERMINAL_ENROLLMENT_STATUSES,
            )
            for row in cur.fetchall():
                enrollment = Enrollment.model_validate_json(row["data"])
                kept = [e for e in enrollment.journey if ensure_aware(e.timestamp) >= cutoff]
                if len(kept) == len(enrollment.journey):
                    continue
                removed += len(enrollment.journey) - len(kept)
                enrollment.journey = kept
                cur.execute(
                    "UPDATE enrollments SET data = ? WHERE id = ?",
                    (enrollment.model_dump_json(), row["id"]),
                )
            self._conn.commit()
        return removed

    async def prune_journeys(self, before: datetime) -> int:
        return await asyncio.to_thread(self._prune_journeys, before)

    # ------------------------------------------------------------------
    # Tasks
    def _task_params(self, task: Task) -> tuple:
        return (
            task.id,
            task.enrollment_id,
            task.status,
            _ts(task.scheduled_for),
            _ts(task.created_at),
            _ts(task.updated_at),
            task.model_dump_json(),
        )

    async def create_task(self, task: Task) -> bool:
        inserted = await asyncio.to_thread(
            self._execute,
            "INSERT OR IGNORE INTO tasks (id, enrollment_id, status, scheduled_for, created_at, updated_at, data) VALUES (?, ?, ?, ?, ?, ?, ?)",
            *self._task_params(task),
        )
        return inserted == 1

    async def get_task(self, task_id: str) -> Task | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM tasks WHERE id = ?", task_id
        )
        return Task.model_validate_json(row["data"]) if row else None

    async def save_task(self, task: Task) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO tasks (id, enrollment_id, status, scheduled_for, created_at, updated_at, data) VALUES (?, ?, ?, ?, ?, ?, ?)",
            *self._task_params(task),
        )

    async def due_tasks(self, now: datetime, limit: int) -> list[Task]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM tasks WHERE status = 'pending' AND scheduled_for <= ? ORDER BY scheduled_for LIMIT ?",
            _ts(now),
            limit,
        )
        return [Task.model_validate_json(r["data"]) for r in rows]

    def _claim(self, task_id: str, now: datetime) -> Task | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "UPDATE tasks SET status = 'processing', updated_at = ? WHERE id = ? AND status = 'pending'",
                (_ts(now), task_id),
            )
            if cur.rowcount != 1:
                self._conn.rollback()
                return None
            cur.execute("SELECT data FROM tasks WHERE id = ?", (task_id,))
            task = Task.model_validate_json(cur.fetchone()["data"])
            task.status = "processing"
            task.attempts += 1
            task.updated_at = now
            cur.execute(
                "UPDATE tasks SET data = ? WHERE id = ?",
                (task.model_dump_json(), task_id),
            )
            self._conn.commit()
            return task

    async def claim_task(self, task_id: str, now: datetime) -> Task | None:
        return await asyncio.to_thread(self._claim, task_id, now)

    async def list_tasks(
        self,
        enrollment_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
    ) -> list[Task]:
        query = "SELECT data FROM tasks WHERE 1 = 1"
        params: list[Any] = []
        if enrollment_id is not None:
            query += " AND enrollment_id = ?"
            params.append(enrollment_id)
        if statuses is not None:
            if not statuses:
                return []
            query += f" AND status IN ({_placeholders(statuses)})"
            params.extend(statuses)
        query += " ORDER BY created_at"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [Task.model_validate_json(r["data"]) for r in rows]

    async def delete_terminal_tasks(self, before: datetime) -> int:
        return await asyncio.to_thread(
            self._execute,
            f"DELETE FROM tasks WHERE status IN ({_placeholders(TERMINAL_TASK_STATUSES)}) AND updated_at < ?",
            *TERMINAL_TASK_STATUSES,
            _ts(before),
        )
