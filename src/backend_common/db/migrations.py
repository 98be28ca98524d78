"""Versioned SQL migrations applied on service startup."""
from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Protocol

import asyncpg  # type: ignore[import-untyped]
import structlog
from aiohttp import web

logger = structlog.get_logger(__name__)

_CONNECT_ATTEMPTS = 5
_CONNECT_RETRY_DELAY = 2.0


class SettingsProtocol(Protocol):
    database_url: Any


def _find_migrations_dir(possible_paths: list[Path]) -> Path | None:
    for path in possible_paths:
        if path.exists():
            return path
    return None


def load_migrations(migrations_dir: Path) -> dict[str, tuple[str, str]]:
    """Map version (file stem) to ``(sql, sha256 checksum)`` in file-name order."""
    migrations: dict[str, tuple[str, str]] = {}
    for path in sorted(migrations_dir.glob("*.sql")):
        if path.stem in migrations:
            raise ValueError(f"Duplicate migration version detected: {path.stem}")
        sql = path.read_text(encoding="utf-8")
        migrations[path.stem] = (sql, hashlib.sha256(sql.encode("utf-8")).hexdigest())
    return migrations


async def _connect(database_url: str) -> asyncpg.Connection | None:
    for attempt in range(1, _CONNECT_ATTEMPTS + 1):
        try:
            return await asyncpg.connect(database_url)
        except (OSError, asyncpg.PostgresError) as exc:
            logger.warning(
                "migrations: database connection failed",
                attempt=attempt,
                max_attempts=_CONNECT_ATTEMPTS,
                error=str(exc),
            )
            if attempt < _CONNECT_ATTEMPTS:
                await asyncio.sleep(_CONNECT_RETRY_DELAY)
    return None


async def apply_migrations(conn: asyncpg.Connection, migrations: dict[str, tuple[str, str]]) -> int:
    """Apply pending migrations, each in its own transaction. Returns the count applied."""
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version text PRIMARY KEY,
            checksum text NOT NULL,
            applied_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )
    rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
    applied = {row["version"]: row["checksum"] for row in rows}

    count = 0
    for version, (sql, checksum) in migrations.items():
        if version in applied:
            if applied[version] != checksum:
                raise RuntimeError(
                    f"Checksum mismatch for {version}: {applied[version]} (db) != {checksum} (file)"
                )
            continue
        logger.info("migrations: applying", version=version)
        async with conn.transaction():
            await conn.execute(sql)
            await conn.execute(
                "INSERT INTO schema_migrations (version, checksum) VALUES ($1, $2)",
                version,
                checksum,
            )
        count += 1
    return count


def create_migration_runner(
    settings: SettingsProtocol,
    possible_paths: Iterable[Path],
) -> Callable[[web.Application], Awaitable[None]]:
    """Create an ``app.on_startup`` hook that applies pending SQL migrations."""
    possible_paths_list = list(possible_paths)

    async def apply_migrations_on_startup(_app: web.Application) -> None:
        migrations_dir = _find_migrations_dir(possible_paths_list)
        if migrations_dir is None:
            logger.warning("migrations: directory not found", tried=[str(p) for p in possible_paths_list])
            return
        migrations = load_migrations(migrations_dir)
        if not migrations:
            logger.warning("migrations: nothing to apply", directory=str(migrations_dir))
            return

        conn = await _connect(str(settings.database_url))
        if conn is None:
            logger.error("migrations: giving up, database unreachable")
            return
        try:
            count = await apply_migrations(conn, migrations)
        finally:
            await conn.close()
        logger.info("migrations: done", applied=count, known=len(migrations))

    return apply_migrations_on_startup
