"""Enrollment lifecycle: entering, cancelling and recording engagement."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel

from .constants import DEFAULT_MAX_ATTEMPTS
from .contracts import (
    Contact,
    Enrollment,
    EnrollmentNotFound,
    JourneyEntry,
    Step,
    Task,
    Workflow,
)
from .persistence import AutomationRepository
from .utils.timing import schedule_time, utcnow

logger = logging.getLogger(__name__)


class EnrollmentOutcome(BaseModel):
    """Result of an enrollment attempt."""

    enrolled: bool
    enrollment: Optional[Enrollment] = None
    reason: Optional[str] = None


class EnrollmentService:
    """Creates and terminates enrollments and schedules their tasks."""

    def __init__(
        self, repository: AutomationRepository, max_attempts: int = DEFAULT_MAX_ATTEMPTS
    ) -> None:
        self._repository = repository
        self._max_attempts = max_attempts

    async def schedule_task(
        self,
        enrollment: Enrollment,
        step: Step,
        workflow: Workflow,
        now: datetime,
        task_id: Optional[str] = None,
    ) -> Optional[Task]:
        """Create the pending task that will run ``step`` for ``enrollment``.

        Returns ``None`` when ``task_id`` is given and that task already exists.
        """
        task = Task(
            workflow_id=workflow.id,
            enrollment_id=enrollment.id,
            contact_id=enrollment.contact_id,
            step_id=step.id,
            scheduled_for=schedule_time(step, now, workflow.settings.send_window),
            max_attempts=self._max_attempts,
            created_at=now,
            updated_at=now,
        )
        if task_id is not None:
            task.id = task_id
        if not await self._repository.create_task(task):
            return None
        return task

    async def enroll(
        self,
        workflow: Workflow,
        contact: Contact,
        trigger_data: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
        enforce_reentry: bool = True,
    ) -> EnrollmentOutcome:
        """Enroll ``contact`` at the workflow's entry step.

        Args:
            workflow: Active workflow to enter.
            contact: Contact to enroll.
            trigger_data: Context recorded on the enrollment.
            now: Clock override.
            enforce_reentry: Apply ``settings.allow_reentry`` against earlier
                completed enrollments. Recurring date triggers pass ``False``.
        """
        now = now or utcnow()

        if workflow.status != "active":
            return EnrollmentOutcome(enrolled=False, reason="Workflow is not active")
        entry_step = workflow.entry_step
        if entry_step is None:
            return EnrollmentOutcome(enrolled=False, reason="Workflow has no steps")
        if not contact.subscribed:
            return EnrollmentOutcome(enrolled=False, reason="Contact is unsubscribed")
        if any(tag in contact.tags for tag in workflow.settings.exclude_tags):
            return EnrollmentOutcome(enrolled=False, reason="Contact has excluded tag")

        statuses = ["active"]
        if enforce_reentry and not workflow.settings.allow_reentry:
            statuses.append("completed")
        existing = await self._repository.find_enrollments(
            workflow_id=workflow.id, contact_id=contact.id, statuses=statuses
        )
        if existing:
            reason = (
                "Contact already in automation"
                if any(e.status == "active" for e in existing)
                else "Reentry not allowed"
            )
            return EnrollmentOutcome(enrolled=False, reason=reason)

        enrollment = Enrollment(
            workflow_id=workflow.id,
            contact_id=contact.id,
            owner_id=workflow.owner_id,
            current_step=entry_step.id,
            trigger_data=trigger_data or {},
            journey=[
                JourneyEntry(
                    step_id=entry_step.id,
                    action="entered",
                    timestamp=now,
                    data=trigger_data or {},
                )
            ],
            created_at=now,
            updated_at=now,
        )
        await self._repository.create_enrollment(enrollment)
        await self._repository.increment_workflow_stats(
            workflow.id, total_entered=1, active=1
        )
        await self.schedule_task(enrollment, entry_step, workflow, now)

        logger.info(
            f"Enrolled contact {contact.id} in workflow {workflow.id} enrollment={enrollment.id}"
        )
        return EnrollmentOutcome(enrolled=True, enrollment=enrollment)

    async def cancel(
        self, enrollment_id: str, reason: str, now: Optional[datetime] = None
    ) -> bool:
        """Cancel an active enrollment.

        Pending tasks are cancelled too; one already being processed is
        dropped by the worker when it sees the enrollment is inactive.
        Returns ``False`` when the enrollment had already terminated.
        """
        now = now or utcnow()
        enrollment = await self._repository.get_enrollment(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFound(enrollment_id)
        if enrollment.status != "active":
            return False

        await self._repository.update_enrollment(
            enrollment_id,
            status="cancelled",
            failure_reason=reason,
            updated_at=now,
            completed_at=now,
        )
        await self._repository.append_journey_entry(
            enrollment_id,
            JourneyEntry(
                step_id=enrollment.current_step,
                action="cancelled",
                timestamp=now,
                data={"reason": reason},
            ),
        )
        await self._repository.increment_workflow_stats(
            enrollment.workflow_id, active=-1, cancelled=1
        )
        for task in await self._repository.list_tasks(
            enrollment_id=enrollment_id, statuses=["pending"]
        ):
            task.status = "cancelled"
            task.updated_at = now
            task.completed_at = now
            await self._repository.save_task(task)
        logger.info(f"Cancelled enrollment {enrollment_id}: {reason}")
        return True

    async def unsubscribe(self, contact_id: str, now: Optional[datetime] = None) -> int:
        """Unsubscribe a contact and cancel all of its active enrollments."""
        now = now or utcnow()
        await self._repository.update_contact(contact_id, subscribed=False)

        cancelled = 0
        for enrollment in await self._repository.find_enrollments(
            contact_id=contact_id, statuses=["active"]
        ):
            if await self.cancel(enrollment.id, "Contact unsubscribed", now=now):
                cancelled += 1
        return cancelled

    async def record_engagement(
        self,
        enrollment_id: str,
        step_id: str,
        event: Literal["opened", "clicked"],
        data: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Record an open or click so condition steps can branch on it."""
        now = now or utcnow()
        enrollment = await self._repository.get_enrollment(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFound(enrollment_id)

        await self._repository.append_journey_entry(
            enrollment_id,
            JourneyEntry(step_id=step_id, action=event, timestamp=now, data=data or {}),
        )
        await self._repository.update_contact(enrollment.contact_id, last_activity_at=now)
