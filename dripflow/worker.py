"""Queue worker: claims due tasks and advances enrollments through workflows."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Literal, Optional

from pydantic import BaseModel

from .config import WorkerConfig
from .contracts import (
    Enrollment,
    JourneyEntry,
    StepExecutionError,
    StepResult,
    Task,
    Workflow,
)
from .enroll import EnrollmentService
from .execute import StepExecutor
from .persistence import AutomationRepository
from .utils.retry import compute_backoff
from .utils.timing import ensure_aware, utcnow

logger = logging.getLogger(__name__)

_FOLLOW_ON_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "dripflow:follow-on")

TaskOutcome = Literal["completed", "retried", "failed", "cancelled", "skipped"]


class ProcessSummary(BaseModel):
    """Counts from one pass over the queue."""

    due: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    cancelled: int = 0
    skipped: int = 0
    errors: int = 0

    def record(self, outcome: TaskOutcome) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)


class QueueWorker:
    """Drains due tasks in bounded, concurrent groups.

    Each task is claimed with an atomic pending-to-processing transition
    before anything else happens, so a task is never executed by two ticks
    at once. Outcomes are persisted journey first, then the follow-on task
    or terminal enrollment state, and the task itself last. A task replayed
    after a crash therefore reuses its recorded result and finds its
    follow-on already scheduled under the same derived id.
    """

    def __init__(
        self,
        repository: AutomationRepository,
        executor: StepExecutor,
        enrollments: Optional[EnrollmentService] = None,
        config: Optional[WorkerConfig] = None,
    ) -> None:
        self._repository = repository
        self._executor = executor
        self._config = config or WorkerConfig()
        self._enrollments = enrollments or EnrollmentService(
            repository, max_attempts=self._config.max_attempts
        )

    @property
    def enrollments(self) -> EnrollmentService:
        return self._enrollments

    async def process_queue(self, now: Optional[datetime] = None) -> ProcessSummary:
        """Process one batch of due tasks, oldest first."""
        now = now or utcnow()
        tasks = await self._repository.due_tasks(now, self._config.batch_size)
        summary = ProcessSummary(due=len(tasks))
        if not tasks:
            return summary

        logger.info(f"Processing {len(tasks)} automation tasks")
        size = max(self._config.concurrency, 1)
        for start in range(0, len(tasks), size):
            group = tasks[start : start + size]
            outcomes = await asyncio.gather(
                *(self.process_task(task.id, now) for task in group),
                return_exceptions=True,
            )
            for task, outcome in zip(group, outcomes):
                if isinstance(outcome, Exception):
                    logger.error(f"Task {task.id} could not be processed: {outcome}")
                    summary.errors += 1
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    summary.record(outcome)
        return summary

    async def process_task(self, task_id: str, now: Optional[datetime] = None) -> TaskOutcome:
        """Claim and run a single task."""
        now = now or utcnow()
        task = await self._repository.claim_task(task_id, now)
        if task is None:
            logger.debug(f"Task {task_id} was claimed elsewhere")
            return "skipped"

        try:
            return await self._run(task, now)
        except Exception as exc:
            logger.exception(f"Storage error while processing task {task.id}")
            enrollment = await self._repository.get_enrollment(task.enrollment_id)
            return await self._handle_failure(task, enrollment, str(exc), True, now)

    async def requeue_stale_tasks(self, now: Optional[datetime] = None) -> int:
        """Return tasks stuck in ``processing`` (e.g. after a crash) to pending."""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self._config.stale_after_seconds)
        requeued = 0
        for task in await self._repository.list_tasks(statuses=["processing"]):
            if ensure_aware(task.updated_at) >= cutoff:
                continue
            task.status = "pending"
            task.scheduled_for = now
            task.updated_at = now
            await self._repository.save_task(task)
            requeued += 1
        if requeued:
            logger.warning(f"Requeued {requeued} stale processing tasks")
        return requeued

    # ------------------------------------------------------------------
    async def _run(self, task: Task, now: datetime) -> TaskOutcome:
        workflow = await self._repository.get_workflow(task.workflow_id)
        enrollment = await self._repository.get_enrollment(task.enrollment_id)
        if (
            workflow is None
            or enrollment is None
            or workflow.status != "active"
            or enrollment.status != "active"
        ):
            task.status = "cancelled"
            task.updated_at = now
            task.completed_at = now
            await self._repository.save_task(task)
            logger.info(f"Cancelled task {task.id}: workflow or enrollment inactive")
            return "cancelled"

        step = workflow.get_step(task.step_id)
        if step is None:
            return await self._handle_failure(task, enrollment, "Step not found", False, now)

        recorded = enrollment.entry_for_task(task.id)
        if recorded is not None and recorded.action == "completed":
            data = dict(recorded.data)
            result = StepResult(next_step=data.pop("next_step", None), data=data)
            logger.info(f"Reusing recorded result for task {task.id}")
        else:
            contact = await self._repository.get_contact(task.contact_id)
            if contact is None:
                return await self._handle_failure(
                    task, enrollment, "Contact not found", False, now
                )
            try:
                result = await self._executor.execute(
                    step, task, enrollment, contact, workflow, now=now
                )
            except StepExecutionError as exc:
                return await self._handle_failure(task, enrollment, str(exc), exc.retryable, now)
            except Exception as exc:
                return await self._handle_failure(task, enrollment, str(exc), True, now)
            if not result.success:
                error = str(result.data.get("error", "Step reported failure"))
                return await self._handle_failure(task, enrollment, error, True, now)

            await self._repository.append_journey_entry(
                enrollment.id,
                JourneyEntry(
                    task_id=task.id,
                    step_id=step.id,
                    step_type=step.type,
                    action="completed",
                    timestamp=now,
                    data={**result.data, "next_step": result.next_step},
                ),
            )

        await self._advance(task, enrollment, workflow, result.next_step, now)

        task.status = "completed"
        task.result = result.data
        task.last_error = None
        task.updated_at = now
        task.completed_at = now
        await self._repository.save_task(task)
        return "completed"

    async def _advance(
        self,
        task: Task,
        enrollment: Enrollment,
        workflow: Workflow,
        next_step_id: Optional[str],
        now: datetime,
    ) -> None:
        next_step = workflow.get_step(next_step_id)
        if next_step is not None:
            follow_on_id = uuid.uuid5(_FOLLOW_ON_NAMESPACE, task.id).hex
            created = await self._enrollments.schedule_task(
                enrollment, next_step, workflow, now, task_id=follow_on_id
            )
            if created is None:
                existing = await self._repository.get_task(follow_on_id)
                if existing is None or existing.is_terminal:
                    # The follow-on already ran and moved the enrollment on.
                    return
                logger.info(f"Follow-on task {follow_on_id} for {task.id} already scheduled")
            await self._repository.update_enrollment(
                enrollment.id, current_step=next_step.id, updated_at=now
            )
            return

        await self._repository.update_enrollment(
            enrollment.id,
            status="completed",
            current_step=None,
            updated_at=now,
            completed_at=now,
        )
        await self._repository.increment_workflow_stats(
            workflow.id, active=-1, completed=1
        )
        logger.info(f"Enrollment {enrollment.id} completed workflow {workflow.id}")

    async def _handle_failure(
        self,
        task: Task,
        enrollment: Optional[Enrollment],
        error: str,
        retryable: bool,
        now: datetime,
    ) -> TaskOutcome:
        task.last_error = error
        task.updated_at = now

        if retryable and task.attempts < task.max_attempts:
            delay = compute_backoff(
                task.attempts,
                base=self._config.backoff_base,
                unit_seconds=self._config.backoff_unit_seconds,
            )
            task.status = "pending"
            task.scheduled_for = now + delay
            await self._repository.save_task(task)
            logger.warning(
                f"Task {task.id} attempt {task.attempts}/{task.max_attempts} failed: {error}; "
                f"retrying at {task.scheduled_for.isoformat()}"
            )
            return "retried"

        task.status = "failed"
        task.completed_at = now
        await self._repository.save_task(task)
        logger.error(f"Task {task.id} failed permanently: {error}")

        if enrollment is not None and enrollment.status == "active":
            await self._repository.update_enrollment(
                enrollment.id,
                status="failed",
                failure_reason=error,
                updated_at=now,
                completed_at=now,
            )
            await self._repository.append_journey_entry(
                enrollment.id,
                JourneyEntry(
                    task_id=task.id,
                    step_id=task.step_id,
                    action="failed",
                    timestamp=now,
                    data={"error": error, "attempts": task.attempts},
                ),
            )
            await self._repository.increment_workflow_stats(
                enrollment.workflow_id, active=-1, failed=1
            )
        return "failed"
