"""Allowed ranges for webhook definition settings."""
from __future__ import annotations

TIMEOUT_SECONDS_RANGE = (1, 300)
RETRY_COUNT_RANGE = (0, 10)
RATE_LIMIT_PER_MINUTE_RANGE = (1, 1000)


def clamp(value: int, bounds: tuple[int, int]) -> int:
    low, high = bounds
    return max(low, min(high, int(value)))
