from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock

from webhook_service.storage.postgres import PostgresDataStore


class FakePool:
    """Stands in for an asyncpg pool; records the statements it is given."""

    def __init__(self, rows: list[dict]) -> None:
        self.conn = AsyncMock()
        self.conn.fetch.return_value = rows

    @asynccontextmanager
    async def acquire(self):
        yield self.conn


async def test_upsert_adds_the_bound_delta_on_conflict():
    window = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    pool = FakePool([{"webhook_id": "w", "window_start": window, "request_count": 6}])
    store = PostgresDataStore(pool)

    row = await store.upsert(
        "webhook_rate_limits",
        {"webhook_id": "w", "window_start": window, "request_count": 1},
        conflict=["webhook_id", "window_start"],
        increment={"request_count": 5},
    )

    assert row["request_count"] == 6
    sql, *args = pool.conn.fetch.await_args.args
    assert "VALUES ($1, $2, $3)" in sql
    assert "request_count = COALESCE(webhook_rate_limits.request_count, 0) + $4" in sql
    assert "EXCLUDED.request_count" not in sql
    assert args == ["w", window, 1, 5]


async def test_upsert_copies_update_columns_from_the_new_row():
    pool = FakePool([{"id": 1, "name": "b"}])
    store = PostgresDataStore(pool)

    await store.upsert("sessions", {"id": 1, "name": "b"}, conflict=["id"], update=["name"])

    sql, *args = pool.conn.fetch.await_args.args
    assert sql.endswith("ON CONFLICT (id) DO UPDATE SET name = EXCLUDED.name RETURNING *")
    assert args == [1, "b"]
