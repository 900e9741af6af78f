"""In-memory implementation of the automation repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
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


class InMemoryAutomationRepository(AutomationRepository):
    """Store automation state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._contacts: Dict[str, Contact] = {}
        self._enrollments: Dict[str, Enrollment] = {}
        self._tasks: Dict[str, Task] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_workflows(
        self, status: Optional[str] = None, trigger_type: Optional[str] = None
    ) -> list[Workflow]:
        return [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if (status is None or wf.status == status)
            and (trigger_type is None or wf.trigger.type == trigger_type)
        ]

    async def increment_workflow_stats(self, workflow_id: str, **deltas: int) -> None:
        async with self._lock:
            wf = self._workflows.get(workflow_id)
            if not wf:
                return
            for counter, delta in deltas.items():
                setattr(wf.stats, counter, getattr(wf.stats, counter) + delta)

    # ------------------------------------------------------------------
    async def save_contact(self, contact: Contact) -> None:
        self._contacts[contact.id] = contact.model_copy(deep=True)

    async def get_contact(self, contact_id: str) -> Contact | None:
        contact = self._contacts.get(contact_id)
        return contact.model_copy(deep=True) if contact else None

    async def list_contacts(self, owner_id: str) -> list[Contact]:
        return [
            c.model_copy(deep=True)
            for c in self._contacts.values()
            if c.owner_id == owner_id
        ]

    async def update_contact(
        self,
        contact_id: str,
        add_tags: Sequence[str] = (),
        remove_tags: Sequence[str] = (),
        custom_fields: Optional[Dict[str, Any]] = None,
        **fields: Any,
    ) -> Contact | None:
        async with self._lock:
            contact = self._contacts.get(contact_id)
            if not contact:
                return None
            apply_contact_update(contact, add_tags, remove_tags, custom_fields, fields)
            return contact.model_copy(deep=True)

    # ------------------------------------------------------------------
    async def create_enrollment(self, enrollment: Enrollment) -> None:
        self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        enrollment = self._enrollments.get(enrollment_id)
        return enrollment.model_copy(deep=True) if enrollment else None

    async def update_enrollment(self, enrollment_id: str, **fields) -> None:
        async with self._lock:
            enrollment = self._enrollments.get(enrollment_id)
            if not enrollment:
                return
            for name, value in fields.items():
                setattr(enrollment, name, value)

    async def find_enrollments(
        self,
        workflow_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
        created_since: Optional[datetime] = None,
    ) -> list[Enrollment]:
        matches = []
        for enrollment in self._enrollments.values():
            if workflow_id is not None and enrollment.workflow_id != workflow_id:
                continue
            if contact_id is not None and enrollment.contact_id != contact_id:
                continue
            if statuses is not None and enrollment.status not in statuses:
                continue
            if created_since is not None and ensure_aware(
                enrollment.created_at
            ) < ensure_aware(created_since):
                continue
            matches.append(enrollment.model_copy(deep=True))
        return sorted(matches, key=lambda e: e.created_at)

    async def append_journey_entry(
        self, enrollment_id: str, entry: JourneyEntry
    ) -> bool:
        async with self._lock:
            enrollment = self._enrollments.get(enrollment_id)
            if not enrollment:
                return False
            if entry.task_id and enrollment.entry_for_task(entry.task_id):
                return False
            enrollment.journey.append(entry.model_copy(deep=True))
            return True

    async def prune_journeys(self, before: datetime) -> int:
        removed = 0
        async with self._lock:
            for enrollment in self._enrollments.values():
                if enrollment.status not in TERMINAL_ENROLLMENT_STATUSES:
                    continue
                kept = [
                    e for e in enrollment.journey
                    if ensure_aware(e.timestamp) >= ensure_aware(before)
                ]
                removed += len(enrollment.journey) - len(kept)
                enrollment.journey = kept
        return removed

    # ------------------------------------------------------------------
    async def create_task(self, task: Task) -> bool:
        async with self._lock:
            if task.id in self._tasks:
                return False
            self._tasks[task.id] = task.model_copy(deep=True)
            return True

    async def get_task(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def save_task(self, task: Task) -> None:
        self._tasks[task.id] = task.model_copy(deep=True)

    async def due_tasks(self, now: datetime, limit: int) -> list[Task]:
        due = [
            t for t in self._tasks.values()
            if t.status == "pending" and ensure_aware(t.scheduled_for) <= ensure_aware(now)
        ]
        due.sort(key=lambda t: ensure_aware(t.scheduled_for))
        return [t.model_copy(deep=True) for t in due[:limit]]

    async def claim_task(self, task_id: str, now: datetime) -> Task | None:
        async with self._lock:
            task = self._tasks.get(task_id)
            if not task or task.status != "pending":
                return None
            task.status = "processing"
            task.attempts += 1
            task.updated_at = now
            return task.model_copy(deep=True)

    async def list_tasks(
        self,
        enrollment_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
    ) -> list[Task]:
        tasks = [
            t.model_copy(deep=True)
            for t in self._tasks.values()
            if (enrollment_id is None or t.enrollment_id == enrollment_id)
            and (statuses is None or t.status in statuses)
        ]
        return sorted(tasks, key=lambda t: t.created_at)

    async def delete_terminal_tasks(self, before: datetime) -> int:
        async with self._lock:
            doomed = [
                task_id
                for task_id, t in self._tasks.items()
                if t.status in TERMINAL_TASK_STATUSES
                and ensure_aware(t.updated_at) < ensure_aware(before)
            ]
            for task_id in doomed:
                del self._tasks[task_id]
        return len(doomed)
