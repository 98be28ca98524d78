"""asyncpg implementation of the storage interface."""
from __future__ import annotations

import re
from typing import Any, Iterable, Mapping, Sequence

import asyncpg  # type: ignore[import-untyped]
import structlog

from webhook_service.core.exceptions import (
    ConflictError,
    StorageError,
    TransientStorageError,
)
from webhook_service.storage.base import Filters, Gte, In, Lt, Order, Row

logger = structlog.get_logger(__name__)

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")

_TRANSIENT_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.QueryCanceledError,
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.InterfaceError,
    OSError,
    TimeoutError,
)


def _ident(name: str) -> str:
    """Table and column names come from code, never from requests; still refuse anything odd."""
    if not _IDENTIFIER.match(name):
        raise StorageError(f"Invalid identifier: {name!r}")
    return name


def _where(filters: Filters | None, args: list[Any]) -> str:
    clauses = []
    for column, condition in (filters or {}).items():
        col = _ident(column)
        if condition is None:
            clauses.append(f"{col} IS NULL")
        elif isinstance(condition, Gte):
            args.append(condition.value)
            clauses.append(f"{col} >= ${len(args)}")
        elif isinstance(condition, Lt):
            args.append(condition.value)
            clauses.append(f"{col} < ${len(args)}")
        elif isinstance(condition, In):
            args.append(list(condition.values))
            clause = f"{col} = ANY(${len(args)})"
            if condition.include_null:
                clause = f"({clause} OR {col} IS NULL)"
            clauses.append(clause)
        else:
            args.append(condition)
            clauses.append(f"{col} = ${len(args)}")
    return f" WHERE {' AND '.join(clauses)}" if clauses else ""


def _order_by(order: Order | None) -> str:
    if not order:
        return ""
    parts = []
    for column, direction in order:
        direction = direction.upper()
        if direction not in ("ASC", "DESC"):
            raise StorageError(f"Invalid sort direction: {direction!r}")
        parts.append(f"{_ident(column)} {direction}")
    return f" ORDER BY {', '.join(parts)}"


def _affected(status: str) -> int:
    # asyncpg returns command tags such as "DELETE 3".
    try:
        return int(status.rsplit(" ", 1)[-1])
    except ValueError:
        return 0


class PostgresDataStore:
    """Builds parameterised SQL for the generic query/mutate operations."""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def _run(self, method: str, query: str, *args: Any) -> Any:
        try:
            async with self._pool.acquire() as conn:
                return await getattr(conn, method)(query, *args)
        except asyncpg.exceptions.UniqueViolationError as exc:
            raise ConflictError(str(exc), details={"constraint": exc.constraint_name}) from exc
        except _TRANSIENT_ERRORS as exc:
            raise TransientStorageError(str(exc) or type(exc).__name__) from exc
        except asyncpg.exceptions.PostgresError as exc:
            logger.error("storage query failed", error=str(exc), sqlstate=exc.sqlstate)
            raise StorageError(str(exc), details={"sqlstate": exc.sqlstate}) from exc

    async def _fetch(self, query: str, *args: Any) -> list[Row]:
        records: Iterable[asyncpg.Record] = await self._run("fetch", query, *args)
        return [dict(record) for record in records]

    async def query(
        self,
        table: str,
        filters: Filters | None = None,
        *,
        order: Order | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Row]:
        args: list[Any] = []
        sql = f"SELECT * FROM {_ident(table)}{_where(filters, args)}{_order_by(order)}"
        if limit is not None:
            args.append(limit)
            sql += f" LIMIT ${len(args)}"
        if offset:
            args.append(offset)
            sql += f" OFFSET ${len(args)}"
        return await self._fetch(sql, *args)

    async def count(self, table: str, filters: Filters | None = None) -> int:
        args: list[Any] = []
        sql = f"SELECT COUNT(*) AS total FROM {_ident(table)}{_where(filters, args)}"
        return int(await self._run("fetchval", sql, *args) or 0)

    async def insert(self, table: str, row: Mapping[str, Any]) -> Row:
        columns = [_ident(column) for column in row]
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        sql = (
            f"INSERT INTO {_ident(table)} ({', '.join(columns)}) "
            f"VALUES ({placeholders}) RETURNING *"
        )
        rows = await self._fetch(sql, *row.values())
        return rows[0]

    async def update(self, table: str, filters: Filters, patch: Mapping[str, Any]) -> list[Row]:
        if not patch:
            return await self.query(table, filters)
        args: list[Any] = list(patch.values())
        assignments = ", ".join(f"{_ident(column)} = ${i}" for i, column in enumerate(patch, start=1))
        sql = f"UPDATE {_ident(table)} SET {assignments}{_where(filters, args)} RETURNING *"
        return await self._fetch(sql, *args)

    async def delete(self, table: str, filters: Filters) -> int:
        args: list[Any] = []
        status = await self._run("execute", f"DELETE FROM {_ident(table)}{_where(filters, args)}", *args)
        return _affected(status)

    async def increment(
        self,
        table: str,
        filters: Filters,
        deltas: Mapping[str, int | float],
        *,
        assign: Mapping[str, Any] | None = None,
    ) -> list[Row]:
        args: list[Any] = []
        assignments = []
        for column, delta in deltas.items():
            args.append(delta)
            col = _ident(column)
            assignments.append(f"{col} = COALESCE({col}, 0) + ${len(args)}")
        for column, value in (assign or {}).items():
            args.append(value)
            assignments.append(f"{_ident(column)} = ${len(args)}")
        sql = f"UPDATE {_ident(table)} SET {', '.join(assignments)}{_where(filters, args)} RETURNING *"
        return await self._fetch(sql, *args)

    async def upsert(
        self,
        table: str,
        row: Mapping[str, Any],
        *,
        conflict: Sequence[str],
        increment: Mapping[str, int] | None = None,
        update: Sequence[str] | None = None,
    ) -> Row:
        tbl = _ident(table)
        columns = [_ident(column) for column in row]
        args: list[Any] = list(row.values())
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        actions = []
        for column, delta in (increment or {}).items():
            args.append(delta)
            col = _ident(column)
            actions.append(f"{col} = COALESCE({tbl}.{col}, 0) + ${len(args)}")
        actions += [f"{_ident(c)} = EXCLUDED.{_ident(c)}" for c in (update or [])]
        if actions:
            on_conflict = f"DO UPDATE SET {', '.join(actions)}"
        else:
            # DO NOTHING would return no row; touch a key column instead.
            key = _ident(conflict[0])
            on_conflict = f"DO UPDATE SET {key} = EXCLUDED.{key}"
        sql = (
            f"INSERT INTO {tbl} ({', '.join(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT ({', '.join(_ident(c) for c in conflict)}) {on_conflict} RETURNING *"
        )
        rows = await self._fetch(sql, *args)
        return rows[0]

    async def close(self) -> None:
        return None
