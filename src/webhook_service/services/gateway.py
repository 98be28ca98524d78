"""Tenant-scoped access to the data store.

Every operation is parameterised with the caller's tenant. Rows that come back
with a different (non-null) tenant are a security violation and raise
:class:`UnauthorizedAccessError` instead of being filtered out. Transient
storage failures are retried with exponential backoff and jitter.
"""
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Sequence, TypeVar
from uuid import UUID

import structlog

from webhook_service.core.exceptions import TransientStorageError, UnauthorizedAccessError
from webhook_service.settings import Settings
from webhook_service.storage.base import DataStore, Filters, In, Order, Row
from webhook_service.storage.fieldmap import column, from_storage, to_storage

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 0.1
    jitter: float = 0.05

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.gateway_max_retries,
            base_delay=settings.gateway_retry_base_delay_seconds,
            jitter=settings.gateway_retry_jitter_seconds,
        )

    def delay(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt`` (0-based)."""
        return self.base_delay * (2**attempt) + random.uniform(0, self.jitter)


class TenantGateway:
    def __init__(self, store: DataStore, tenant_id: UUID, *, retry: RetryPolicy | None = None) -> None:
        self._store = store
        self.tenant_id = tenant_id
        self._retry = retry or RetryPolicy()

    def _scope(self, table: str, filters: Filters | None, include_global: bool) -> dict[str, Any]:
        scoped = to_storage(table, dict(filters or {}))
        tenant_column = column(table, "tenant_id")
        if include_global:
            scoped[tenant_column] = In((self.tenant_id,), include_null=True)
        else:
            scoped[tenant_column] = self.tenant_id
        return scoped

    def _order(self, table: str, order: Order | None) -> list[tuple[str, str]] | None:
        if order is None:
            return None
        return [(column(table, name), direction) for name, direction in order]

    def _check_rows(self, table: str, rows: list[Row], operation: str) -> list[Row]:
        result = []
        for raw in rows:
            row = from_storage(table, raw)
            owner = row.get("tenant_id")
            if owner is not None and owner != self.tenant_id:
                logger.warning(
                    "cross-tenant row returned by storage",
                    security_event=True,
                    table=table,
                    operation=operation,
                    caller_tenant=str(self.tenant_id),
                    row_tenant=str(owner),
                )
                raise UnauthorizedAccessError(
                    "Record belongs to another tenant",
                    details={"table": table, "operation": operation},
                )
            result.append(row)
        return result

    async def _call(self, operation: str, table: str, fn: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            try:
                return await fn()
            except TransientStorageError as exc:
                if attempt >= self._retry.max_retries:
                    logger.error(
                        "storage operation failed after retries",
                        operation=operation,
                        table=table,
                        attempts=attempt + 1,
                        error=exc.message,
                    )
                    raise
                delay = self._retry.delay(attempt)
                logger.warning(
                    "transient storage failure, retrying",
                    operation=operation,
                    table=table,
                    attempt=attempt + 1,
                    delay_seconds=round(delay, 3),
                    error=exc.message,
                )
                await asyncio.sleep(delay)
                attempt += 1

    async def query(
        self,
        table: str,
        filters: Filters | None = None,
        *,
        include_global: bool = False,
        order: Order | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Row]:
        scoped = self._scope(table, filters, include_global)
        rows = await self._call(
            "query",
            table,
            lambda: self._store.query(
                table, scoped, order=self._order(table, order), limit=limit, offset=offset
            ),
        )
        return self._check_rows(table, rows, "query")

    async def get(self, table: str, filters: Filters, *, include_global: bool = False) -> Row | None:
        rows = await self.query(table, filters, include_global=include_global, limit=1)
        return rows[0] if rows else None

    async def count(self, table: str, filters: Filters | None = None, *, include_global: bool = False) -> int:
        scoped = self._scope(table, filters, include_global)
        return await self._call("count", table, lambda: self._store.count(table, scoped))

    async def insert(self, table: str, row: Mapping[str, Any], *, global_row: bool = False) -> Row:
        data = dict(row)
        data["tenant_id"] = None if global_row else self.tenant_id
        stored = to_storage(table, data)
        inserted = await self._call("insert", table, lambda: self._store.insert(table, stored))
        return self._check_rows(table, [inserted], "insert")[0]

    async def update(
        self,
        table: str,
        filters: Filters,
        patch: Mapping[str, Any],
        *,
        include_global: bool = False,
    ) -> list[Row]:
        scoped = self._scope(table, filters, include_global)
        stored_patch = to_storage(table, {k: v for k, v in patch.items() if k != "tenant_id"})
        rows = await self._call("update", table, lambda: self._store.update(table, scoped, stored_patch))
        return self._check_rows(table, rows, "update")

    async def delete(self, table: str, filters: Filters) -> int:
        scoped = self._scope(table, filters, False)
        return await self._call("delete", table, lambda: self._store.delete(table, scoped))

    async def increment(
        self,
        table: str,
        filters: Filters,
        deltas: Mapping[str, int | float],
        *,
        assign: Mapping[str, Any] | None = None,
        include_global: bool = False,
    ) -> list[Row]:
        scoped = self._scope(table, filters, include_global)
        stored_deltas = to_storage(table, deltas)
        stored_assign = to_storage(table, assign or {})
        rows = await self._call(
            "increment",
            table,
            lambda: self._store.increment(table, scoped, stored_deltas, assign=stored_assign),
        )
        return self._check_rows(table, rows, "increment")

    async def upsert(
        self,
        table: str,
        row: Mapping[str, Any],
        *,
        conflict: Sequence[str],
        increment: Mapping[str, int] | None = None,
        update: Sequence[str] | None = None,
    ) -> Row:
        data = dict(row)
        data["tenant_id"] = self.tenant_id
        keys = list(conflict) if "tenant_id" in conflict else ["tenant_id", *conflict]
        stored = to_storage(table, data)
        upserted = await self._call(
            "upsert",
            table,
            lambda: self._store.upsert(
                table,
                stored,
                conflict=[column(table, key) for key in keys],
                increment=to_storage(table, increment or {}),
                update=[column(table, key) for key in update or []],
            ),
        )
        return self._check_rows(table, [upserted], "upsert")[0]


class GatewayFactory:
    """Creates per-tenant gateways sharing one store and retry policy."""

    def __init__(self, store: DataStore, retry: RetryPolicy | None = None) -> None:
        self.store = store
        self.retry = retry or RetryPolicy()

    def __call__(self, tenant_id: UUID) -> TenantGateway:
        return TenantGateway(self.store, tenant_id, retry=self.retry)
