"""Time helpers for scheduling step executions."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional

from ..constants import WAIT_UNIT_SECONDS

if TYPE_CHECKING:
    from ..contracts import SendWindow, WaitSpec


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def wait_until(wait: WaitSpec, now: datetime) -> datetime:
    """Return the moment a wait step releases the contact."""
    if wait.kind == "delay":
        seconds = wait.duration * WAIT_UNIT_SECONDS[wait.unit]
        return now + timedelta(seconds=seconds)

    if wait.kind == "until_time" and wait.time:
        hours, minutes = (int(part) for part in wait.time.split(":"))
        target = now.replace(hour=hours, minute=minutes, second=0, microsecond=0)
        if target <= now:
            target += timedelta(days=1)
        return target

    if wait.kind == "until_day" and wait.weekday is not None:
        days_ahead = (wait.weekday - now.weekday()) % 7
        return now + timedelta(days=days_ahead)

    return now


def next_send_window_time(window: SendWindow, now: datetime) -> datetime:
    """Return ``now`` if inside the send window, else the next opening."""
    if not window.enabled or not window.days_of_week:
        return now

    if window.start_hour <= now.hour < window.end_hour and now.weekday() in window.days_of_week:
        return now

    target = now.replace(hour=window.start_hour, minute=0, second=0, microsecond=0)
    if now.hour >= window.start_hour:
        target += timedelta(days=1)
    while target.weekday() not in window.days_of_week:
        target += timedelta(days=1)
    return target


def schedule_time(step, now: datetime, window: Optional[SendWindow] = None) -> datetime:
    """When a task for ``step`` should become due.

    Wait steps are deferred by their configured wait; email steps respect
    the workflow's send window. Everything else is due immediately.
    """
    if step.type == "wait":
        return wait_until(step.wait, now)
    if step.type == "send_email" and window is not None:
        return next_send_window_time(window, now)
    return now
