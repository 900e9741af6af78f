"""Persistence layer for dripflow automations."""

from __future__ import annotations

import os
from typing import Optional

from ..config import DripflowConfig, load_config
from .inmemory import InMemoryAutomationRepository
from .repository import AutomationRepository
from .sqlite import SQLiteAutomationRepository

_repository_instance: AutomationRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[DripflowConfig] = None
) -> AutomationRepository:
    """Factory function to obtain an automation repository.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``DRIPFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("DRIPFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryAutomationRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteAutomationRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        from .postgres import PostgresAutomationRepository

        _repository_instance = PostgresAutomationRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "AutomationRepository",
    "InMemoryAutomationRepository",
    "SQLiteAutomationRepository",
    "get_repository",
]
