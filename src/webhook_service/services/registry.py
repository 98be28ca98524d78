"""In-memory bookkeeping owned by one execution engine instance."""
from __future__ import annotations

import asyncio
import inspect
import time
from collections import OrderedDict, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import UUID

import structlog

from webhook_service.domain.models import ExecutionResult

logger = structlog.get_logger(__name__)

EXECUTION_STARTED = "execution_started"
EXECUTION_COMPLETED = "execution_completed"
EXECUTION_FAILED = "execution_failed"


@dataclass
class ExecutionEvent:
    type: str
    execution_id: UUID
    tenant_id: UUID
    webhook_id: UUID | None = None
    result: ExecutionResult | None = None
    error: dict[str, Any] | None = None
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Subscriber = Callable[[ExecutionEvent], Awaitable[None] | None]


class ExecutionRegistry:
    """Active executions, event subscribers and background tasks.

    Admission against the concurrency ceiling happens in :meth:`try_acquire`
    without suspending, so concurrent callers cannot overshoot the ceiling.
    """

    def __init__(self, *, outcome_ttl: float = 3600.0, max_outcomes: int = 1000) -> None:
        self._active: dict[UUID, UUID | None] = {}
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self._tasks: set[asyncio.Task] = set()
        self._outcome_ttl = outcome_ttl
        self._max_outcomes = max_outcomes
        # execution_id -> (expires_at, tenant_id, webhook_id, error)
        self._outcomes: OrderedDict[UUID, tuple[float, UUID, UUID | None, dict[str, Any]]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._active)

    def is_active(self, execution_id: UUID) -> bool:
        return execution_id in self._active

    def active_webhook(self, execution_id: UUID) -> UUID | None:
        return self._active.get(execution_id)

    def try_acquire(self, execution_id: UUID, ceiling: int) -> bool:
        if len(self._active) >= ceiling:
            return False
        self._active[execution_id] = None
        return True

    def attach(self, execution_id: UUID, webhook_id: UUID) -> None:
        if execution_id in self._active:
            self._active[execution_id] = webhook_id

    def release(self, execution_id: UUID) -> None:
        self._active.pop(execution_id, None)

    def subscribe(self, key: str, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` under ``key``; the returned function unsubscribes it."""
        self._subscribers[key].append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(key)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)
                if not callbacks:
                    del self._subscribers[key]

        return unsubscribe

    async def publish(self, event: ExecutionEvent) -> None:
        keys = [f"execution:{event.execution_id}"]
        if event.webhook_id is not None:
            keys.append(f"webhook:{event.webhook_id}")
        for key in keys:
            for callback in list(self._subscribers.get(key, [])):
                try:
                    outcome = callback(event)
                    if inspect.isawaitable(outcome):
                        await outcome
                except Exception:
                    logger.exception("execution subscriber failed", event_type=event.type, key=key)

    def remember_outcome(self, execution_id: UUID, tenant_id: UUID, error: dict[str, Any]) -> None:
        """Keep the error of an execution that finished without a stored record."""
        self._prune_outcomes()
        webhook_id = self._active.get(execution_id)
        self._outcomes[execution_id] = (time.monotonic() + self._outcome_ttl, tenant_id, webhook_id, error)
        self._outcomes.move_to_end(execution_id)
        while len(self._outcomes) > self._max_outcomes:
            self._outcomes.popitem(last=False)

    def outcome(self, execution_id: UUID, tenant_id: UUID) -> tuple[UUID | None, dict[str, Any]] | None:
        self._prune_outcomes()
        entry = self._outcomes.get(execution_id)
        if entry is None or entry[1] != tenant_id:
            return None
        return entry[2], entry[3]

    def _prune_outcomes(self) -> None:
        now = time.monotonic()
        while self._outcomes:
            execution_id, entry = next(iter(self._outcomes.items()))
            if entry[0] > now:
                break
            del self._outcomes[execution_id]

    def track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        # Failures are kept as outcomes; retrieving marks them handled.
        if not task.cancelled():
            task.exception()

    async def clear(self) -> None:
        """Cancel background executions and drop all state."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._active.clear()
        self._subscribers.clear()
        self._outcomes.clear()
