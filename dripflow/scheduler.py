"""In-process scheduler that drives the queue, trigger and retention jobs."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional

from .config import DripflowConfig, load_config
from .enroll import EnrollmentService
from .execute import StepExecutor
from .persistence import AutomationRepository, get_repository
from .providers import EmailProvider, get_email_provider
from .retention import CleanupSummary, RetentionSweeper
from .triggers import SweepSummary, TriggerEvaluator
from .worker import ProcessSummary, QueueWorker

logger = logging.getLogger(__name__)


class _PeriodicJob:
    """Runs ``func`` every ``interval`` seconds, never overlapping itself."""

    def __init__(
        self, name: str, interval: float, func: Callable[[Optional[datetime]], Awaitable[Any]]
    ) -> None:
        self.name = name
        self.interval = interval
        self._func = func
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def run_once(self, now: Optional[datetime] = None) -> Any:
        """Run the job unless a previous run is still in progress."""
        if self._lock.locked():
            logger.debug(f"Skipping {self.name}: previous run still in progress")
            return None
        async with self._lock:
            try:
                return await self._func(now)
            except Exception:
                logger.exception(f"Scheduled job {self.name} failed")
                return None

    async def _loop(self, run_immediately: bool) -> None:
        if run_immediately:
            await self.run_once()
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()

    def start(self, run_immediately: bool = False) -> None:
        if self._task is None:
            self._task = asyncio.create_task(
                self._loop(run_immediately), name=f"dripflow-{self.name}"
            )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


class AutomationScheduler:
    """Owns the worker, trigger evaluator and retention sweeper.

    Every entry point is guarded so that a tick which is still running when
    the next one fires is skipped rather than run concurrently.
    """

    def __init__(
        self,
        worker: QueueWorker,
        triggers: TriggerEvaluator,
        retention: RetentionSweeper,
        config: Optional[DripflowConfig] = None,
        email_provider: Optional[EmailProvider] = None,
    ) -> None:
        self.worker = worker
        self.triggers = triggers
        self.retention = retention
        self._config = config or DripflowConfig()
        self._email_provider = email_provider

        self._queue_job = _PeriodicJob(
            "queue",
            self._config.worker.tick_interval_seconds,
            self.worker.process_queue,
        )
        self._date_job = _PeriodicJob(
            "date-triggers",
            self._config.triggers.interval_seconds,
            self.triggers.process_date_triggers,
        )
        self._inactivity_job = _PeriodicJob(
            "inactivity-triggers",
            self._config.triggers.interval_seconds,
            self.triggers.process_inactivity_triggers,
        )
        self._retention_job = _PeriodicJob(
            "retention",
            self._config.retention.interval_seconds,
            self.retention.cleanup_old_data,
        )

    @classmethod
    def from_config(
        cls,
        config: Optional[DripflowConfig] = None,
        repository: Optional[AutomationRepository] = None,
        email_provider: Optional[EmailProvider] = None,
    ) -> "AutomationScheduler":
        """Wire every component from configuration."""
        config = config or load_config()
        repository = repository or get_repository(config=config)
        email_provider = email_provider or get_email_provider(config=config)

        enrollments = EnrollmentService(repository, max_attempts=config.worker.max_attempts)
        executor = StepExecutor(repository, email_provider, email_config=config.email)
        worker = QueueWorker(repository, executor, enrollments, config.worker)
        triggers = TriggerEvaluator(repository, enrollments)
        retention = RetentionSweeper(repository, config.retention)
        return cls(worker, triggers, retention, config, email_provider)

    @property
    def _jobs(self) -> List[_PeriodicJob]:
        return [
            self._queue_job,
            self._date_job,
            self._inactivity_job,
            self._retention_job,
        ]

    async def process_queue(self, now: Optional[datetime] = None) -> Optional[ProcessSummary]:
        """Run one queue tick. Returns ``None`` when a tick is already running."""
        return await self._queue_job.run_once(now)

    async def process_date_triggers(
        self, now: Optional[datetime] = None
    ) -> Optional[SweepSummary]:
        return await self._date_job.run_once(now)

    async def process_inactivity_triggers(
        self, now: Optional[datetime] = None
    ) -> Optional[SweepSummary]:
        return await self._inactivity_job.run_once(now)

    async def cleanup_old_data(
        self, now: Optional[datetime] = None
    ) -> Optional[CleanupSummary]:
        return await self._retention_job.run_once(now)

    async def start(self) -> None:
        """Recover stale tasks and start all periodic jobs.

        The queue runs once immediately; triggers and retention wait for
        their first interval.
        """
        if self._email_provider is not None:
            await self._email_provider.connect()
        await self.worker.requeue_stale_tasks()
        self._queue_job.start(run_immediately=True)
        self._date_job.start()
        self._inactivity_job.start()
        self._retention_job.start()
        logger.info("Automation scheduler started")

    async def stop(self) -> None:
        for job in self._jobs:
            await job.stop()
        if self._email_provider is not None:
            await self._email_provider.disconnect()
        logger.info("Automation scheduler stopped")

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Start the scheduler and block until cancelled or ``lifespan`` expires."""
        await self.start()
        try:
            if lifespan:
                await asyncio.sleep(lifespan)
            else:
                await asyncio.Event().wait()
        finally:
            await self.stop()
