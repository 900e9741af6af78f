"""Step execution for enrolled contacts."""

from __future__ import annotations

import logging
import random
from datetime import datetime
from typing import Any, Optional

import httpx

from .config import EmailConfig
from .contracts import (
    ActionStep,
    ConditionSpec,
    ConditionStep,
    Contact,
    Enrollment,
    SendEmailStep,
    SplitStep,
    Step,
    StepExecutionError,
    StepResult,
    Task,
    WaitStep,
    Workflow,
)
from .persistence import AutomationRepository
from .personalize import (
    add_tracking,
    ensure_unsubscribe_link,
    personalize_content,
    unsubscribe_url,
)
from .providers import EmailProvider, OutgoingEmail, WebhookCaller
from .utils.timing import utcnow

logger = logging.getLogger(__name__)


def compare(value: Any, operator: str, expected: Any) -> bool:
    """Apply a condition operator; missing or incomparable data is ``False``."""
    if operator == "equals":
        return value == expected
    if operator == "not_equals":
        return value != expected
    if value is None:
        return False
    if operator == "contains":
        if isinstance(value, (list, tuple, set)):
            return expected in value
        return str(expected) in str(value)
    try:
        if operator == "greater_than":
            return float(value) > float(expected)
        if operator == "less_than":
            return float(value) < float(expected)
    except (TypeError, ValueError):
        return False
    return False


def evaluate_condition(
    condition: ConditionSpec, enrollment: Enrollment, contact: Contact
) -> bool:
    """Evaluate ``condition`` against the journey or the contact."""
    if condition.kind in ("email_opened", "email_clicked"):
        wanted = "opened" if condition.kind == "email_opened" else "clicked"
        return any(
            entry.action == wanted
            and (condition.step_id is None or entry.step_id == condition.step_id)
            for entry in enrollment.journey
        )
    if condition.kind == "tag_exists":
        return condition.value in contact.tags
    if condition.kind == "custom_field":
        value = contact.custom_fields.get(condition.field or "")
        return compare(value, condition.operator, condition.value)
    if condition.kind == "contact_field":
        value = getattr(contact, condition.field or "", None)
        return compare(value, condition.operator, condition.value)
    return False


class StepExecutor:
    """Runs a single workflow step for an enrolled contact.

    Handlers return a :class:`StepResult` naming the next step, or raise
    :class:`StepExecutionError` when a provider call fails.
    """

    def __init__(
        self,
        repository: AutomationRepository,
        email_provider: EmailProvider,
        webhook_caller: Optional[WebhookCaller] = None,
        email_config: Optional[EmailConfig] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._repository = repository
        self._email_provider = email_provider
        self._webhook_caller = webhook_caller or WebhookCaller()
        self._email_config = email_config or EmailConfig()
        self._rng = rng or random.Random()

    async def execute(
        self,
        step: Step,
        task: Task,
        enrollment: Enrollment,
        contact: Contact,
        workflow: Workflow,
        now: Optional[datetime] = None,
    ) -> StepResult:
        now = now or utcnow()
        if isinstance(step, SendEmailStep):
            return await self._send_email(step, task, enrollment, contact, workflow, now)
        if isinstance(step, WaitStep):
            return StepResult(next_step=step.next_step, data={"waited": True})
        if isinstance(step, ConditionStep):
            return self._condition(step, enrollment, contact)
        if isinstance(step, ActionStep):
            return await self._action(step, task, enrollment, contact, workflow, now)
        if isinstance(step, SplitStep):
            return self._split(step)
        raise TypeError(f"Unsupported step type: {type(step).__name__}")

    # ------------------------------------------------------------------
    async def _send_email(
        self,
        step: SendEmailStep,
        task: Task,
        enrollment: Enrollment,
        contact: Contact,
        workflow: Workflow,
        now: datetime,
    ) -> StepResult:
        config = self._email_config
        unsubscribe = unsubscribe_url(config.frontend_url, contact, workflow.id)
        tracking_id = f"auto_{workflow.id}_{enrollment.id}_{step.id}"

        html = personalize_content(step.email.html, contact, unsubscribe)
        html = add_tracking(
            ensure_unsubscribe_link(html, unsubscribe), tracking_id, config.tracking_url
        )
        message = OutgoingEmail(
            to=contact.email,
            from_email=(
                step.email.from_email
                or workflow.settings.default_from_email
                or config.default_from_email
            ),
            from_name=(
                step.email.from_name
                or workflow.settings.default_from_name
                or config.default_from_name
            ),
            subject=personalize_content(step.email.subject, contact, unsubscribe),
            html=html,
            text=personalize_content(step.email.text, contact, unsubscribe) or None,
            headers={
                "X-Dripflow-Workflow": workflow.id,
                "X-Dripflow-Step": step.id,
                "Idempotency-Key": task.id,
            },
        )

        try:
            receipt = await self._email_provider.send(message)
        except Exception as exc:
            raise StepExecutionError(f"Email provider failed: {exc}") from exc

        await self._repository.increment_workflow_stats(workflow.id, emails_sent=1)
        await self._repository.update_contact(contact.id, last_contacted_at=now)

        logger.info(
            f"Sent email step {step.id} to {contact.email} message_id={receipt.message_id}"
        )
        return StepResult(
            next_step=step.next_step,
            data={"message_id": receipt.message_id, "tracking_id": tracking_id},
        )

    def _condition(
        self, step: ConditionStep, enrollment: Enrollment, contact: Contact
    ) -> StepResult:
        result = evaluate_condition(step.condition, enrollment, contact)
        branch = step.condition.true_branch if result else step.condition.false_branch
        return StepResult(
            next_step=branch or step.next_step,
            data={"condition_result": result},
        )

    async def _action(
        self,
        step: ActionStep,
        task: Task,
        enrollment: Enrollment,
        contact: Contact,
        workflow: Workflow,
        now: datetime,
    ) -> StepResult:
        action = step.action
        data: dict[str, Any] = {"action": action.kind}

        if action.kind == "add_tag":
            await self._repository.update_contact(contact.id, add_tags=[action.tag])
            data["tag"] = action.tag
        elif action.kind == "remove_tag":
            await self._repository.update_contact(contact.id, remove_tags=[action.tag])
            data["tag"] = action.tag
        elif action.kind == "update_field":
            await self._repository.update_contact(
                contact.id, custom_fields={action.field: action.value}
            )
            data["field"] = action.field
        elif action.kind == "webhook":
            payload = {
                **action.payload,
                "contact": {"id": contact.id, "email": contact.email, "name": contact.name},
                "workflow_id": workflow.id,
                "enrollment_id": enrollment.id,
                "timestamp": now.isoformat(),
            }
            headers = {**action.headers, "Idempotency-Key": task.id}
            try:
                data["status_code"] = await self._webhook_caller.post(
                    action.url, json=payload, headers=headers
                )
            except httpx.HTTPError as exc:
                raise StepExecutionError(f"Webhook call failed: {exc}") from exc

        return StepResult(next_step=step.next_step, data=data)

    def _split(self, step: SplitStep) -> StepResult:
        draw = self._rng.random() * 100
        branch = "A" if draw < step.split.ratio else "B"
        target = step.split.branch_a if branch == "A" else step.split.branch_b
        return StepResult(
            next_step=target or step.next_step,
            data={"branch": branch, "draw": round(draw, 4)},
        )
