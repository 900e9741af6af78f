"""Trigger evaluators that enroll contacts without manual action."""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel

from .contracts import Contact, Workflow
from .enroll import EnrollmentService
from .persistence import AutomationRepository
from .utils.timing import ensure_aware, utcnow

logger = logging.getLogger(__name__)


class SweepSummary(BaseModel):
    """Counts from one trigger sweep."""

    workflows: int = 0
    enrolled: int = 0
    skipped: int = 0
    errors: int = 0


def _as_date(value: Any) -> Optional[date]:
    """Best-effort conversion of a stored date field."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
        except ValueError:
            return None
    return None


def date_field_value(contact: Contact, field: str) -> Optional[date]:
    """Look ``field`` up in custom fields first, then on the contact itself."""
    raw = contact.custom_fields.get(field)
    if raw is None:
        raw = getattr(contact, field, None)
    return _as_date(raw)


def last_seen(contact: Contact) -> datetime:
    """Most recent activity or contact time, falling back to creation."""
    moments = [m for m in (contact.last_activity_at, contact.last_contacted_at) if m]
    if not moments:
        return ensure_aware(contact.created_at)
    return max(ensure_aware(m) for m in moments)


class TriggerEvaluator:
    """Periodic sweeps for date-based and inactivity workflows.

    Failures are contained per workflow and per contact so one bad record
    never aborts the rest of the sweep.
    """

    def __init__(
        self, repository: AutomationRepository, enrollments: EnrollmentService
    ) -> None:
        self._repository = repository
        self._enrollments = enrollments

    async def process_date_triggers(self, now: Optional[datetime] = None) -> SweepSummary:
        """Enroll contacts whose configured date falls on today's month/day."""
        now = now or utcnow()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        summary = SweepSummary()

        for workflow in await self._repository.list_workflows(
            status="active", trigger_type="date_based"
        ):
            summary.workflows += 1
            try:
                await self._sweep_date_workflow(workflow, now, day_start, summary)
            except Exception:
                logger.exception(f"Date trigger sweep failed for workflow {workflow.id}")
                summary.errors += 1

        logger.info(
            f"Date triggers: {summary.enrolled} enrolled across {summary.workflows} workflows"
        )
        return summary

    async def _sweep_date_workflow(
        self, workflow: Workflow, now: datetime, day_start: datetime, summary: SweepSummary
    ) -> None:
        trigger = workflow.trigger
        for contact in await self._repository.list_contacts(workflow.owner_id):
            try:
                value = date_field_value(contact, trigger.date_field)
                if value is None or (value.month, value.day) != (now.month, now.day):
                    continue
                existing = await self._repository.find_enrollments(
                    workflow_id=workflow.id, contact_id=contact.id, created_since=day_start
                )
                if existing:
                    summary.skipped += 1
                    continue
                outcome = await self._enrollments.enroll(
                    workflow,
                    contact,
                    trigger_data={"trigger": "date_based", "date_field": trigger.date_field},
                    now=now,
                    enforce_reentry=False,
                )
                if outcome.enrolled:
                    summary.enrolled += 1
                else:
                    summary.skipped += 1
            except Exception:
                logger.exception(
                    f"Date trigger failed for contact {contact.id} in workflow {workflow.id}"
                )
                summary.errors += 1

    async def process_inactivity_triggers(
        self, now: Optional[datetime] = None
    ) -> SweepSummary:
        """Enroll contacts with no activity since the workflow's cutoff."""
        now = now or utcnow()
        summary = SweepSummary()

        for workflow in await self._repository.list_workflows(
            status="active", trigger_type="no_activity"
        ):
            summary.workflows += 1
            try:
                await self._sweep_inactivity_workflow(workflow, now, summary)
            except Exception:
                logger.exception(
                    f"Inactivity trigger sweep failed for workflow {workflow.id}"
                )
                summary.errors += 1

        logger.info(
            f"Inactivity triggers: {summary.enrolled} enrolled across {summary.workflows} workflows"
        )
        return summary

    async def _sweep_inactivity_workflow(
        self, workflow: Workflow, now: datetime, summary: SweepSummary
    ) -> None:
        trigger = workflow.trigger
        cutoff = now - timedelta(days=trigger.inactivity_days)
        for contact in await self._repository.list_contacts(workflow.owner_id):
            try:
                if not contact.subscribed or last_seen(contact) >= cutoff:
                    continue
                existing = await self._repository.find_enrollments(
                    workflow_id=workflow.id,
                    contact_id=contact.id,
                    statuses=["active", "completed"],
                )
                if existing:
                    summary.skipped += 1
                    continue
                outcome = await self._enrollments.enroll(
                    workflow,
                    contact,
                    trigger_data={
                        "trigger": "no_activity",
                        "inactivity_days": trigger.inactivity_days,
                    },
                    now=now,
                )
                if outcome.enrolled:
                    summary.enrolled += 1
                else:
                    summary.skipped += 1
            except Exception:
                logger.exception(
                    f"Inactivity trigger failed for contact {contact.id} in workflow {workflow.id}"
                )
                summary.errors += 1

    async def handle_tag_added(
        self, contact: Contact, tag: str, now: Optional[datetime] = None
    ) -> SweepSummary:
        """Enroll ``contact`` in the owner's active ``tag_added`` workflows for ``tag``."""
        now = now or utcnow()
        summary = SweepSummary()
        for workflow in await self._repository.list_workflows(
            status="active", trigger_type="tag_added"
        ):
            if workflow.owner_id != contact.owner_id or workflow.trigger.tag != tag:
                continue
            summary.workflows += 1
            try:
                outcome = await self._enrollments.enroll(
                    workflow, contact, trigger_data={"trigger": "tag_added", "tag": tag}, now=now
                )
            except Exception:
                logger.exception(f"Tag trigger failed for workflow {workflow.id}")
                summary.errors += 1
                continue
            if outcome.enrolled:
                summary.enrolled += 1
            else:
                summary.skipped += 1
        return summary
