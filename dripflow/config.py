from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_BACKOFF_UNIT_SECONDS,
    DEFAULT_BATCH_SIZE,
    DEFAULT_CONCURRENCY,
    DEFAULT_FRONTEND_URL,
    DEFAULT_LOG_RETENTION_DAYS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETENTION_INTERVAL_SECONDS,
    DEFAULT_STALE_AFTER_SECONDS,
    DEFAULT_TASK_RETENTION_DAYS,
    DEFAULT_TICK_INTERVAL_SECONDS,
    DEFAULT_TRACKING_URL,
    DEFAULT_TRIGGER_INTERVAL_SECONDS,
)


class WorkerConfig(BaseModel):
    """Queue worker tuning."""

    batch_size: int = DEFAULT_BATCH_SIZE
    concurrency: int = DEFAULT_CONCURRENCY
    tick_interval_seconds: float = DEFAULT_TICK_INTERVAL_SECONDS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base: float = DEFAULT_BACKOFF_BASE
    backoff_unit_seconds: float = DEFAULT_BACKOFF_UNIT_SECONDS
    stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS


class TriggerConfig(BaseModel):
    """Trigger sweep cadence."""

    interval_seconds: float = DEFAULT_TRIGGER_INTERVAL_SECONDS


class RetentionConfig(BaseModel):
    """Retention windows for terminal tasks and journey entries."""

    interval_seconds: float = DEFAULT_RETENTION_INTERVAL_SECONDS
    task_retention_days: int = DEFAULT_TASK_RETENTION_DAYS
    log_retention_days: int = DEFAULT_LOG_RETENTION_DAYS


class MailgunConfig(BaseModel):
    """Credentials for the Mailgun HTTP API."""

    api_key: Optional[str] = None
    domain: Optional[str] = None
    base_url: Optional[str] = None


class EmailConfig(BaseModel):
    """Email delivery settings."""

    provider: Literal["inmemory", "logging", "mailgun"] = "logging"
    default_from_email: str = "noreply@localhost"
    default_from_name: str = "Dripflow"
    frontend_url: str = DEFAULT_FRONTEND_URL
    tracking_url: str = DEFAULT_TRACKING_URL
    mailgun: MailgunConfig = MailgunConfig()


class DripflowConfig(BaseModel):
    """Top-level configuration model."""

    worker: WorkerConfig = WorkerConfig()
    triggers: TriggerConfig = TriggerConfig()
    retention: RetentionConfig = RetentionConfig()
    email: EmailConfig = EmailConfig()
    database_url: Optional[str] = None


_ENV_OVERRIDES = {
    "DRIPFLOW_BATCH_SIZE": ("worker", "batch_size", int),
    "DRIPFLOW_CONCURRENCY": ("worker", "concurrency", int),
    "DRIPFLOW_TICK_INTERVAL": ("worker", "tick_interval_seconds", float),
    "DRIPFLOW_MAX_ATTEMPTS": ("worker", "max_attempts", int),
    "DRIPFLOW_TRIGGER_INTERVAL": ("triggers", "interval_seconds", float),
    "DRIPFLOW_TASK_RETENTION_DAYS": ("retention", "task_retention_days", int),
    "DRIPFLOW_LOG_RETENTION_DAYS": ("retention", "log_retention_days", int),
    "DRIPFLOW_EMAIL_PROVIDER": ("email", "provider", str),
    "DRIPFLOW_FRONTEND_URL": ("email", "frontend_url", str),
    "DRIPFLOW_TRACKING_URL": ("email", "tracking_url", str),
}


def load_config(path: Optional[str] = None) -> DripflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to DRIPFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.

    Environment variables listed in ``_ENV_OVERRIDES`` take precedence over
    the file, as do ``DRIPFLOW_DATABASE_URL``/``DATABASE_URL`` and the
    ``MAILGUN_*`` credentials.
    """

    config_path = path or os.getenv("DRIPFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}
    # A section left empty in YAML loads as None; treat it as absent.
    data = {key: value for key, value in data.items() if value is not None}

    for env_name, (section, field, cast) in _ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw:
            data[section] = {**(data.get(section) or {}), field: cast(raw)}

    config = DripflowConfig(**data)

    env_db_url = os.getenv("DRIPFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    if os.getenv("MAILGUN_API_KEY"):
        config.email.mailgun.api_key = os.getenv("MAILGUN_API_KEY")
    if os.getenv("MAILGUN_DOMAIN"):
        config.email.mailgun.domain = os.getenv("MAILGUN_DOMAIN")
    return config
