"""Retention sweeper for terminal tasks and old journey entries."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from .config import RetentionConfig
from .persistence import AutomationRepository
from .utils.timing import utcnow

logger = logging.getLogger(__name__)


class CleanupSummary(BaseModel):
    tasks_deleted: int = 0
    journey_entries_deleted: int = 0
    errors: int = 0


class RetentionSweeper:
    """Deletes terminal tasks and journey entries past their retention window.

    Each half of the sweep fails independently; errors are logged and the
    next scheduled run tries again.
    """

    def __init__(
        self, repository: AutomationRepository, config: Optional[RetentionConfig] = None
    ) -> None:
        self._repository = repository
        self._config = config or RetentionConfig()

    async def cleanup_old_data(self, now: Optional[datetime] = None) -> CleanupSummary:
        now = now or utcnow()
        summary = CleanupSummary()

        task_cutoff = now - timedelta(days=self._config.task_retention_days)
        try:
            summary.tasks_deleted = await self._repository.delete_terminal_tasks(task_cutoff)
        except Exception:
            logger.exception("Failed to delete old tasks")
            summary.errors += 1

        log_cutoff = now - timedelta(days=self._config.log_retention_days)
        try:
            summary.journey_entries_deleted = await self._repository.prune_journeys(log_cutoff)
        except Exception:
            logger.exception("Failed to prune old journey entries")
            summary.errors += 1

        logger.info(
            f"Retention cleanup removed {summary.tasks_deleted} tasks and "
            f"{summary.journey_entries_deleted} journey entries"
        )
        return summary
