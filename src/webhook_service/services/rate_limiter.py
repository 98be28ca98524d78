"""Fixed one-minute window rate limiting per (tenant, webhook)."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable
from uuid import UUID

import structlog

from webhook_service.core.exceptions import StorageError
from webhook_service.core.limits import RATE_LIMIT_PER_MINUTE_RANGE, clamp
from webhook_service.domain.models import RateLimitResult
from webhook_service.services.gateway import GatewayFactory, TenantGateway
from webhook_service.storage.base import Lt
from webhook_service.storage.fieldmap import column

logger = structlog.get_logger(__name__)

TABLE = "rate_limit_windows"
WINDOW = timedelta(minutes=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def bucket_start(moment: datetime) -> datetime:
    return moment.replace(second=0, microsecond=0)


class RateLimiter:
    """Counts requests in storage so limits hold across restarts and instances.

    Admission is an atomic upsert-increment; the caller is admitted when the
    post-increment count is within the limit. Storage failures fail open.
    """

    def __init__(
        self,
        gateways: GatewayFactory,
        *,
        default_limit: int = 60,
        retention: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._gateways = gateways
        self._default_limit = default_limit
        self._retention = retention
        self._clock = clock

    async def check(self, tenant_id: UUID, webhook_id: UUID, limit: int | None = None) -> RateLimitResult:
        limit = clamp(limit or self._default_limit, RATE_LIMIT_PER_MINUTE_RANGE)
        now = self._clock()
        window = bucket_start(now)
        reset_time = window + WINDOW
        gateway = self._gateways(tenant_id)

        try:
            row = await gateway.upsert(
                TABLE,
                {"webhook_id": webhook_id, "bucket_start": window, "request_count": 1},
                conflict=["webhook_id", "bucket_start"],
                increment={"request_count": 1},
            )
        except StorageError as exc:
            logger.warning(
                "rate limiter unavailable, admitting request",
                tenant_id=str(tenant_id),
                webhook_id=str(webhook_id),
                error=exc.message,
            )
            return RateLimitResult(allowed=True, current_count=0, reset_time=reset_time, limit=limit)

        current = int(row["request_count"])
        if current == 1:
            await self._reclaim(gateway, now)

        allowed = current <= limit
        if not allowed:
            logger.info(
                "rate limit exceeded",
                tenant_id=str(tenant_id),
                webhook_id=str(webhook_id),
                current_count=current,
                limit=limit,
            )
        return RateLimitResult(allowed=allowed, current_count=current, reset_time=reset_time, limit=limit)

    async def _reclaim(self, gateway: TenantGateway, now: datetime) -> None:
        # Runs when a new bucket opens, so at most once per minute per webhook.
        try:
            await gateway.delete(TABLE, {"bucket_start": Lt(now - self._retention)})
        except StorageError as exc:
            logger.warning("rate limit window reclaim failed", error=exc.message)

    async def purge_expired(self, now: datetime) -> int:
        """Delete windows older than the retention horizon for every tenant."""
        cutoff = now - self._retention
        return await self._gateways.store.delete(TABLE, {column(TABLE, "bucket_start"): Lt(cutoff)})
