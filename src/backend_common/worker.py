"""Periodic in-process background worker for aiohttp services.

Usage::

    async def purge_rate_limit_windows(now: datetime) -> str | None:
        purged = await limiter.purge_expired(now)
        return f"purged={purged}" if purged else None

    worker = BackgroundWorker(
        interval_seconds=60.0,
        tasks=[WorkerTask(name="rate_limit_purge", fn=purge_rate_limit_windows)],
    )
    app.on_startup.append(worker.start)
    app.on_cleanup.append(worker.stop)
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Sequence

import structlog
from aiohttp import web

logger = structlog.get_logger(__name__)

# Receives the sweep time (UTC); a non-empty return value is logged as the summary.
TaskFn = Callable[[datetime], Awaitable[str | None]]

_WORKER_TASK_KEY = "background_worker_task"


@dataclass
class WorkerTask:
    name: str
    fn: TaskFn


@dataclass
class BackgroundWorker:
    """Runs every task once per ``interval_seconds``.

    A failing task is logged and does not prevent the remaining tasks of the
    sweep from running.
    """

    interval_seconds: float = 60.0
    tasks: Sequence[WorkerTask] = field(default_factory=list)

    async def start(self, app: web.Application) -> None:
        app[_WORKER_TASK_KEY] = asyncio.create_task(self._loop())

    async def stop(self, app: web.Application) -> None:
        task = app.get(_WORKER_TASK_KEY)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def run_once(self, now: datetime | None = None) -> dict[str, str | None]:
        """Execute a single sweep and return the per-task summaries."""
        now = now or datetime.now(timezone.utc)
        summaries: dict[str, str | None] = {}
        for task in self.tasks:
            try:
                summary = await task.fn(now)
            except Exception:
                logger.exception("background_task failed", task=task.name)
                summaries[task.name] = None
                continue
            summaries[task.name] = summary
            if summary:
                logger.info("background_task completed", task=task.name, summary=summary)
        return summaries

    async def _loop(self) -> None:
        logger.info(
            "background_worker started",
            interval_seconds=self.interval_seconds,
            tasks=[t.name for t in self.tasks],
        )
        while True:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.run_once()
            except asyncio.CancelledError:
                logger.info("background_worker stopped")
                raise
