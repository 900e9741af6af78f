"""Default tuning values for the automation scheduler."""

DEFAULT_BATCH_SIZE = 50
DEFAULT_CONCURRENCY = 10
DEFAULT_TICK_INTERVAL_SECONDS = 60.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 2.0
DEFAULT_BACKOFF_UNIT_SECONDS = 60.0
DEFAULT_STALE_AFTER_SECONDS = 15 * 60.0

DEFAULT_TRIGGER_INTERVAL_SECONDS = 24 * 60 * 60.0
DEFAULT_RETENTION_INTERVAL_SECONDS = 24 * 60 * 60.0
DEFAULT_TASK_RETENTION_DAYS = 30
DEFAULT_LOG_RETENTION_DAYS = 90

DEFAULT_FRONTEND_URL = "http://localhost:3000"
DEFAULT_TRACKING_URL = "http://localhost:8000"

WAIT_UNIT_SECONDS = {
    "minutes": 60,
    "hours": 60 * 60,
    "days": 24 * 60 * 60,
    "weeks": 7 * 24 * 60 * 60,
}
