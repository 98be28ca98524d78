"""Generic query/mutate interface implemented by every storage backend.

Filters are a mapping of column to condition. A plain value means equality,
``None`` means ``IS NULL``, and :class:`Gte`, :class:`Lt` and :class:`In`
express ranges and membership. Order is a sequence of ``(column, "asc"|"desc")``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence

Row = dict[str, Any]
Filters = Mapping[str, Any]
Order = Sequence[tuple[str, str]]


@dataclass(frozen=True)
class Gte:
    value: Any


@dataclass(frozen=True)
class Lt:
    value: Any


@dataclass(frozen=True)
class In:
    values: tuple[Any, ...]
    include_null: bool = False


def matches(row: Mapping[str, Any], filters: Filters | None) -> bool:
    """Evaluate ``filters`` against an in-memory row."""
    for column, condition in (filters or {}).items():
        value = row.get(column)
        if condition is None:
            if value is not None:
                return False
        elif isinstance(condition, Gte):
            if value is None or value < condition.value:
                return False
        elif isinstance(condition, Lt):
            if value is None or value >= condition.value:
                return False
        elif isinstance(condition, In):
            if value is None:
                if not condition.include_null:
                    return False
            elif value not in condition.values:
                return False
        elif value != condition:
            return False
    return True


class DataStore(Protocol):
    async def query(
        self,
        table: str,
        filters: Filters | None = None,
        *,
        order: Order | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Row]: ...

    async def count(self, table: str, filters: Filters | None = None) -> int: ...

    async def insert(self, table: str, row: Mapping[str, Any]) -> Row: ...

    async def update(self, table: str, filters: Filters, patch: Mapping[str, Any]) -> list[Row]: ...

    async def delete(self, table: str, filters: Filters) -> int: ...

    async def increment(
        self,
        table: str,
        filters: Filters,
        deltas: Mapping[str, int | float],
        *,
        assign: Mapping[str, Any] | None = None,
    ) -> list[Row]:
        """Atomically add ``deltas`` to numeric columns and set ``assign`` on matching rows."""
        ...

    async def upsert(
        self,
        table: str,
        row: Mapping[str, Any],
        *,
        conflict: Sequence[str],
        increment: Mapping[str, int] | None = None,
        update: Sequence[str] | None = None,
    ) -> Row:
        """Insert ``row``; on a ``conflict`` key collision add ``increment`` and copy ``update`` columns."""
        ...

    async def close(self) -> None: ...
