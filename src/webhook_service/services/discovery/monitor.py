"""Queue-backed consumer for DOM mutations reported by a live page."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Sequence
from uuid import UUID

import structlog

from webhook_service.core.exceptions import DiscoveryError
from webhook_service.domain.dom import MutationRecord

logger = structlog.get_logger(__name__)

MutationHandler = Callable[[list[MutationRecord]], Awaitable[None]]


class DomMonitor:
    """Subscription returned by ``DiscoveryEngine.start_auto_discovery``.

    :meth:`submit` only enqueues; batches are handled one at a time on a
    separate task. :meth:`stop` may be called any number of times.
    """

    def __init__(self, session_id: UUID, page_path: str, handler: MutationHandler) -> None:
        self.session_id = session_id
        self.page_path = page_path
        self._handler = handler
        self._queue: asyncio.Queue[list[MutationRecord]] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._stopped = False

    @property
    def active(self) -> bool:
        return self._task is not None and not self._stopped

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._consume())

    def submit(self, mutations: Sequence[MutationRecord]) -> int:
        if not self.active:
            raise DiscoveryError(
                "Discovery session is not observing mutations",
                details={"session_id": str(self.session_id)},
            )
        batch = list(mutations)
        if batch:
            self._queue.put_nowait(batch)
        return len(batch)

    async def drain(self) -> None:
        """Wait until every submitted batch has been handled."""
        if self.active:
            await self._queue.join()

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        task = self._task
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("dom monitor stopped", session_id=str(self.session_id), dropped=self._queue.qsize())

    async def _consume(self) -> None:
        while True:
            batch = await self._queue.get()
            try:
                await self._handler(batch)
            except Exception:
                logger.exception("failed to process dom mutations", session_id=str(self.session_id))
            finally:
                self._queue.task_done()
