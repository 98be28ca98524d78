from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from webhook_service.core.exceptions import StorageError
from webhook_service.services.gateway import GatewayFactory, RetryPolicy
from webhook_service.services.rate_limiter import RateLimiter, bucket_start

NOW = datetime(2024, 5, 1, 12, 0, 30, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


async def test_61st_request_in_a_minute_is_rejected(gateways, tenant_id):
    limiter = RateLimiter(gateways, clock=Clock(NOW))
    webhook_id = uuid.uuid4()

    results = [await limiter.check(tenant_id, webhook_id, 60) for _ in range(61)]

    assert all(result.allowed for result in results[:60])
    rejected = results[60]
    assert not rejected.allowed
    assert rejected.current_count == 61
    assert rejected.limit == 60
    assert rejected.reset_time == datetime(2024, 5, 1, 12, 1, tzinfo=timezone.utc)


async def test_concurrent_checks_admit_exactly_the_limit(gateways, tenant_id):
    limiter = RateLimiter(gateways, clock=Clock(NOW))
    webhook_id = uuid.uuid4()

    results = await asyncio.gather(*(limiter.check(tenant_id, webhook_id, 60) for _ in range(100)))

    assert sum(result.allowed for result in results) == 60
    assert sorted(result.current_count for result in results) == list(range(1, 101))


async def test_next_window_starts_fresh(gateways, tenant_id):
    clock = Clock(NOW)
    limiter = RateLimiter(gateways, clock=clock)
    webhook_id = uuid.uuid4()
    assert (await limiter.check(tenant_id, webhook_id, 1)).allowed
    assert not (await limiter.check(tenant_id, webhook_id, 1)).allowed

    clock.now = NOW + timedelta(minutes=1)
    result = await limiter.check(tenant_id, webhook_id, 1)
    assert result.allowed
    assert result.current_count == 1


async def test_limits_are_per_tenant_and_webhook(gateways):
    limiter = RateLimiter(gateways, clock=Clock(NOW))
    webhook_id = uuid.uuid4()
    assert (await limiter.check(uuid.uuid4(), webhook_id, 1)).allowed
    assert (await limiter.check(uuid.uuid4(), webhook_id, 1)).allowed


async def test_limit_is_clamped(gateways, tenant_id):
    limiter = RateLimiter(gateways, clock=Clock(NOW))
    result = await limiter.check(tenant_id, uuid.uuid4(), 5000)
    assert result.limit == 1000


async def test_storage_failure_fails_open(tenant_id):
    store = AsyncMock()
    store.upsert.side_effect = StorageError("connection refused")
    limiter = RateLimiter(GatewayFactory(store, RetryPolicy(base_delay=0, jitter=0)), clock=Clock(NOW))

    result = await limiter.check(tenant_id, uuid.uuid4(), 10)

    assert result.allowed
    assert result.current_count == 0


async def test_new_window_reclaims_expired_windows(store, gateways, tenant_id):
    clock = Clock(NOW)
    limiter = RateLimiter(gateways, retention=timedelta(minutes=5), clock=clock)
    webhook_id = uuid.uuid4()
    await limiter.check(tenant_id, webhook_id)

    clock.now = NOW + timedelta(minutes=10)
    await limiter.check(tenant_id, webhook_id)

    windows = store.rows("rate_limit_windows")
    assert [row["window_start"] for row in windows] == [bucket_start(clock.now)]


async def test_purge_expired_covers_all_tenants(store, gateways):
    limiter = RateLimiter(gateways, retention=timedelta(hours=1), clock=Clock(NOW))
    for _ in range(2):
        await limiter.check(uuid.uuid4(), uuid.uuid4())

    assert await limiter.purge_expired(NOW + timedelta(minutes=30)) == 0
    assert await limiter.purge_expired(NOW + timedelta(hours=2)) == 2
    assert store.rows("rate_limit_windows") == []
