"""aiohttp application entrypoint."""
from __future__ import annotations

from pathlib import Path

from aiohttp import web

from backend_common.aiohttp_app import add_cors_to_routes, add_healthcheck, create_base_app
from backend_common.db.migrations import create_migration_runner
from backend_common.db.pool import create_pool_hooks, get_pool
from backend_common.logging_config import configure_logging

from webhook_service.api.errors import error_middleware
from webhook_service.api.router import setup_routes
from webhook_service.services.dependencies import (
    DISCOVERY_ENGINE_KEY,
    EXECUTION_ENGINE_KEY,
    GATEWAYS_KEY,
    SETTINGS_KEY,
    STORE_KEY,
)
from webhook_service.services.discovery import DiscoveryEngine
from webhook_service.services.execution import ExecutionEngine
from webhook_service.services.gateway import GatewayFactory, RetryPolicy
from webhook_service.settings import Settings, settings as default_settings
from webhook_service.storage import DataStore, InMemoryDataStore, PostgresDataStore
from webhook_service.workers import build_worker

_WORKER_KEY = "background_worker"

MIGRATION_PATHS = [
    Path(__file__).resolve().parent.parent.parent / "migrations",  # repository checkout
    Path("/app/migrations"),  # container image
]


async def _attach_postgres_store(app: web.Application) -> None:
    app[STORE_KEY] = PostgresDataStore(await get_pool())


async def _start_services(app: web.Application) -> None:
    settings: Settings = app[SETTINGS_KEY]
    gateways = GatewayFactory(app[STORE_KEY], RetryPolicy.from_settings(settings))
    app[GATEWAYS_KEY] = gateways
    app[EXECUTION_ENGINE_KEY] = ExecutionEngine(gateways, settings)
    app[DISCOVERY_ENGINE_KEY] = DiscoveryEngine(gateways, settings)
    worker = build_worker(gateways, settings)
    app[_WORKER_KEY] = worker
    await worker.start(app)


async def _stop_services(app: web.Application) -> None:
    worker = app.get(_WORKER_KEY)
    if worker is not None:
        await worker.stop(app)
    engine = app.get(EXECUTION_ENGINE_KEY)
    if engine is not None:
        await engine.dispose()
    discovery = app.get(DISCOVERY_ENGINE_KEY)
    if discovery is not None:
        await discovery.close()
    store = app.get(STORE_KEY)
    if store is not None:
        await store.close()


def create_app(settings: Settings | None = None, *, store: DataStore | None = None) -> web.Application:
    """Build the application.

    ``store`` overrides ``settings.storage_backend``; tests pass an
    :class:`InMemoryDataStore` they can inspect.
    """
    settings = settings or default_settings
    app, cors = create_base_app(settings, middlewares=[error_middleware])
    app[SETTINGS_KEY] = settings

    add_healthcheck(app, settings)
    setup_routes(app)

    if store is None and settings.storage_backend == "postgres":
        init_pool, close_pool = create_pool_hooks(settings)
        app.on_startup.append(create_migration_runner(settings, MIGRATION_PATHS))
        app.on_startup.append(init_pool)
        app.on_startup.append(_attach_postgres_store)
        app.on_startup.append(_start_services)
        app.on_cleanup.append(_stop_services)
        app.on_cleanup.append(close_pool)
    else:
        app[STORE_KEY] = store if store is not None else InMemoryDataStore()
        app.on_startup.append(_start_services)
        app.on_cleanup.append(_stop_services)

    add_cors_to_routes(app, cors)
    return app


def main() -> None:
    configure_logging(default_settings.log_level)
    web.run_app(create_app(), host=default_settings.host, port=default_settings.port)


if __name__ == "__main__":
    main()
