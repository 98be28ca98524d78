"""Background workers for webhook-service.

Each worker module exports a factory returning an async task function
compatible with :class:`backend_common.worker.WorkerTask`.
:func:`build_worker` aggregates them into one :class:`BackgroundWorker`.
"""
from __future__ import annotations

from datetime import timedelta

from backend_common.worker import BackgroundWorker, WorkerTask

from webhook_service.services.gateway import GatewayFactory
from webhook_service.services.rate_limiter import RateLimiter
from webhook_service.settings import Settings
from webhook_service.workers.execution_record_purge import make_execution_record_purge
from webhook_service.workers.rate_limit_purge import make_rate_limit_purge


def build_worker(gateways: GatewayFactory, settings: Settings) -> BackgroundWorker:
    limiter = RateLimiter(
        gateways,
        default_limit=settings.default_rate_limit_per_minute,
        retention=timedelta(minutes=settings.rate_limit_retention_minutes),
    )
    return BackgroundWorker(
        interval_seconds=settings.worker_interval_seconds,
        tasks=[
            WorkerTask(name="rate_limit_purge", fn=make_rate_limit_purge(limiter)),
            WorkerTask(
                name="execution_record_purge",
                fn=make_execution_record_purge(gateways.store, settings.execution_record_retention_days),
            ),
        ],
    )


__all__ = ["build_worker"]
