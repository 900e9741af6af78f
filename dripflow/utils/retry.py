from __future__ import annotations

import random
from datetime import timedelta


def compute_backoff(
    attempt: int, base: float = 2.0, unit_seconds: float = 60.0, jitter: float = 0.0
) -> timedelta:
    """Compute exponential backoff with optional jitter.

    The first retry waits one ``unit_seconds`` and each further attempt
    multiplies the delay by ``base`` (1, 2, 4 minutes with the defaults).
    """
    delay = unit_seconds * base ** max(attempt - 1, 0)
    if jitter:
        delay += random.uniform(0, jitter)
    return timedelta(seconds=delay)
