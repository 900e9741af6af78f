"""Repository abstraction for automation state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Protocol, Sequence

from ..contracts import Contact, Enrollment, JourneyEntry, Task, Workflow


class AutomationRepository(Protocol):
    """Protocol for automation persistence backends.

    Every mutation touches a single record. ``claim_task`` and
    ``append_journey_entry`` are the conditional primitives the worker
    relies on and must be atomic in every backend.
    """

    # Workflows ---------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        """Insert or replace a workflow definition."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve a workflow by id."""

    async def list_workflows(
        self, status: Optional[str] = None, trigger_type: Optional[str] = None
    ) -> list[Workflow]:
        """Return workflows, optionally filtered by status and trigger type."""

    async def increment_workflow_stats(self, workflow_id: str, **deltas: int) -> None:
        """Atomically add ``deltas`` to the named ``stats`` counters."""

    # Contacts ----------------------------------------------------------
    async def save_contact(self, contact: Contact) -> None:
        """Insert or replace a contact."""

    async def get_contact(self, contact_id: str) -> Contact | None:
        """Retrieve a contact by id."""

    async def list_contacts(self, owner_id: str) -> list[Contact]:
        """Return all contacts belonging to ``owner_id``."""

    async def update_contact(
        self,
        contact_id: str,
        add_tags: Sequence[str] = (),
        remove_tags: Sequence[str] = (),
        custom_fields: Optional[Dict[str, Any]] = None,
        **fields: Any,
    ) -> Contact | None:
        """Apply a targeted change to one contact atomically.

        Tags are added or removed one by one and ``custom_fields`` is merged
        into the stored fields, so concurrent updates to different parts of a
        contact never overwrite each other. Returns ``None`` if the contact
        does not exist.
        """

    # Enrollments -------------------------------------------------------
    async def create_enrollment(self, enrollment: Enrollment) -> None:
        """Persist a new enrollment."""

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        """Retrieve an enrollment with its journey."""

    async def update_enrollment(self, enrollment_id: str, **fields) -> None:
        """Set top-level enrollment fields without touching the journey."""

    async def find_enrollments(
        self,
        workflow_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
        created_since: Optional[datetime] = None,
    ) -> list[Enrollment]:
        """Return enrollments matching every given filter."""

    async def append_journey_entry(
        self, enrollment_id: str, entry: JourneyEntry
    ) -> bool:
        """Append to the journey; ``False`` if ``entry.task_id`` is already recorded."""

    async def prune_journeys(self, before: datetime) -> int:
        """Drop journey entries older than ``before`` from terminal enrollments."""

    # Tasks -------------------------------------------------------------
    async def create_task(self, task: Task) -> bool:
        """Persist a new task; ``False`` if a task with the same id exists."""

    async def get_task(self, task_id: str) -> Task | None:
        """Retrieve a task by id."""

    async def save_task(self, task: Task) -> None:
        """Replace a task record."""

    async def due_tasks(self, now: datetime, limit: int) -> list[Task]:
        """Pending tasks due at ``now``, oldest ``scheduled_for`` first."""

    async def claim_task(self, task_id: str, now: datetime) -> Task | None:
        """Move a pending task to processing and count the attempt.

        Returns the claimed task, or ``None`` if it was no longer pending.
        """

    async def list_tasks(
        self,
        enrollment_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
    ) -> list[Task]:
        """Return tasks, optionally filtered by enrollment and status."""

    async def delete_terminal_tasks(self, before: datetime) -> int:
        """Delete terminal tasks last updated before ``before``."""


def apply_contact_update(
    contact: Contact,
    add_tags: Sequence[str],
    remove_tags: Sequence[str],
    custom_fields: Optional[Dict[str, Any]],
    fields: Dict[str, Any],
) -> Contact:
    """Mutate ``contact`` in place with an ``update_contact`` change set."""
    for tag in add_tags:
        if tag not in contact.tags:
            contact.tags.append(tag)
    if remove_tags:
        contact.tags = [t for t in contact.tags if t not in remove_tags]
    if custom_fields:
        contact.custom_fields.update(custom_fields)
    for name, value in fields.items():
        setattr(contact, name, value)
    return contact
