"""Process-local storage used for development runs and tests."""
from __future__ import annotations

import asyncio
import copy
from collections import defaultdict
from typing import Any, Mapping, Sequence

from webhook_service.storage.base import Filters, Order, Row, matches


def _sort_key(column: str):
    # NULLs sort last, as in Postgres ascending order.
    def key(row: Row):
        value = row.get(column)
        return (value is None, value if value is not None else 0)

    return key


class InMemoryDataStore:
    """Dictionary-backed :class:`~webhook_service.storage.base.DataStore`.

    Mutations run under one lock so increments and upserts are atomic with
    respect to concurrent tasks. Rows are copied on the way in and out.
    """

    def __init__(self) -> None:
        self._tables: dict[str, list[Row]] = defaultdict(list)
        self._lock = asyncio.Lock()

    def rows(self, table: str) -> list[Row]:
        """Snapshot of a table, for assertions."""
        return copy.deepcopy(self._tables[table])

    async def query(
        self,
        table: str,
        filters: Filters | None = None,
        *,
        order: Order | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Row]:
        rows = [row for row in self._tables[table] if matches(row, filters)]
        for column, direction in reversed(list(order or [])):
            rows.sort(key=_sort_key(column), reverse=direction.lower() == "desc")
        rows = rows[offset:]
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    async def count(self, table: str, filters: Filters | None = None) -> int:
        return sum(1 for row in self._tables[table] if matches(row, filters))

    async def insert(self, table: str, row: Mapping[str, Any]) -> Row:
        async with self._lock:
            stored = copy.deepcopy(dict(row))
            self._tables[table].append(stored)
            return copy.deepcopy(stored)

    async def update(self, table: str, filters: Filters, patch: Mapping[str, Any]) -> list[Row]:
        async with self._lock:
            updated = []
            for row in self._tables[table]:
                if matches(row, filters):
                    row.update(copy.deepcopy(dict(patch)))
                    updated.append(copy.deepcopy(row))
            return updated

    async def delete(self, table: str, filters: Filters) -> int:
        async with self._lock:
            kept = [row for row in self._tables[table] if not matches(row, filters)]
            removed = len(self._tables[table]) - len(kept)
            self._tables[table] = kept
            return removed

    async def increment(
        self,
        table: str,
        filters: Filters,
        deltas: Mapping[str, int | float],
        *,
        assign: Mapping[str, Any] | None = None,
    ) -> list[Row]:
        async with self._lock:
            updated = []
            for row in self._tables[table]:
                if not matches(row, filters):
                    continue
                for column, delta in deltas.items():
                    row[column] = (row.get(column) or 0) + delta
                row.update(copy.deepcopy(dict(assign or {})))
                updated.append(copy.deepcopy(row))
            return updated

    async def upsert(
        self,
        table: str,
        row: Mapping[str, Any],
        *,
        conflict: Sequence[str],
        increment: Mapping[str, int] | None = None,
        update: Sequence[str] | None = None,
    ) -> Row:
        async with self._lock:
            key = {column: row.get(column) for column in conflict}
            for existing in self._tables[table]:
                if all(existing.get(c) == v for c, v in key.items()):
                    for column, delta in (increment or {}).items():
                        existing[column] = (existing.get(column) or 0) + delta
                    for column in update or []:
                        existing[column] = copy.deepcopy(row.get(column))
                    return copy.deepcopy(existing)
            stored = copy.deepcopy(dict(row))
            self._tables[table].append(stored)
            return copy.deepcopy(stored)

    async def close(self) -> None:
        return None
