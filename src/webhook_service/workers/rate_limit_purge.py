"""Worker: purge rate-limit windows older than the retention horizon."""
from __future__ import annotations

from datetime import datetime

from backend_common.worker import TaskFn

from webhook_service.services.rate_limiter import RateLimiter


def make_rate_limit_purge(limiter: RateLimiter) -> TaskFn:
    async def rate_limit_purge(now: datetime) -> str | None:
        purged = await limiter.purge_expired(now)
        return f"purged={purged}" if purged else None

    return rate_limit_purge
