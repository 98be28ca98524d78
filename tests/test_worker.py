"""Tests for the periodic BackgroundWorker and the purge tasks it runs."""
from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from aiohttp import web

from backend_common.worker import BackgroundWorker, WorkerTask

from webhook_service.workers import build_worker

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_worker_runs_tasks():
    called_with: list[datetime] = []

    async def task_fn(now: datetime) -> str | None:
        called_with.append(now)
        return "ok"

    worker = BackgroundWorker(interval_seconds=0.05, tasks=[WorkerTask(name="test_task", fn=task_fn)])

    app = web.Application()
    await worker.start(app)
    await asyncio.sleep(0.2)
    await worker.stop(app)

    assert len(called_with) >= 2
    assert all(dt.tzinfo is not None for dt in called_with)


@pytest.mark.asyncio
async def test_worker_task_failure_does_not_stop_others():
    good_count = 0

    async def bad_task(now: datetime) -> str | None:
        raise RuntimeError("boom")

    async def good_task(now: datetime) -> str | None:
        nonlocal good_count
        good_count += 1
        return None

    worker = BackgroundWorker(
        interval_seconds=0.05,
        tasks=[WorkerTask(name="bad", fn=bad_task), WorkerTask(name="good", fn=good_task)],
    )

    summaries = await worker.run_once(NOW)

    assert summaries == {"bad": None, "good": None}
    assert good_count == 1


@pytest.mark.asyncio
async def test_worker_stop_is_clean():
    call_count = 0

    async def task_fn(now: datetime) -> str | None:
        nonlocal call_count
        call_count += 1
        return None

    worker = BackgroundWorker(interval_seconds=0.05, tasks=[WorkerTask(name="t", fn=task_fn)])

    app = web.Application()
    await worker.start(app)
    await asyncio.sleep(0.12)
    await worker.stop(app)

    count_at_stop = call_count
    await asyncio.sleep(0.1)
    assert call_count == count_at_stop


@pytest.mark.asyncio
async def test_worker_stop_without_start():
    worker = BackgroundWorker(interval_seconds=1.0, tasks=[])
    await worker.stop(web.Application())


@pytest.mark.asyncio
async def test_purge_tasks_remove_expired_rows(gateways, settings, store):
    tenant_id = uuid.uuid4()
    webhook_id = uuid.uuid4()
    await store.insert("execution_records", {"id": uuid.uuid4(), "organization_id": tenant_id, "started_at": NOW - timedelta(days=31)})
    await store.insert("execution_records", {"id": uuid.uuid4(), "organization_id": tenant_id, "started_at": NOW - timedelta(days=1)})
    await store.insert(
        "rate_limit_windows",
        {"organization_id": tenant_id, "webhook_id": webhook_id, "window_start": NOW - timedelta(hours=2), "request_count": 5},
    )
    await store.insert(
        "rate_limit_windows",
        {"organization_id": tenant_id, "webhook_id": webhook_id, "window_start": NOW, "request_count": 1},
    )

    summaries = await build_worker(gateways, settings).run_once(NOW)

    assert summaries == {"rate_limit_purge": "purged=1", "execution_record_purge": "purged=1"}
    assert len(store.rows("execution_records")) == 1
    assert [row["window_start"] for row in store.rows("rate_limit_windows")] == [NOW]


@pytest.mark.asyncio
async def test_purge_tasks_are_quiet_when_nothing_expired(gateways, settings):
    summaries = await build_worker(gateways, settings).run_once(NOW)
    assert summaries == {"rate_limit_purge": None, "execution_record_purge": None}
