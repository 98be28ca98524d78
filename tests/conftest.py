from __future__ import annotations

import asyncio
import json
import uuid

import pytest
from aiohttp import web

from webhook_service.main import create_app
from webhook_service.services.execution import ExecutionEngine
from webhook_service.services.gateway import GatewayFactory, RetryPolicy
from webhook_service.settings import Settings
from webhook_service.storage import InMemoryDataStore


class Receiver:
    """Local webhook endpoint recording every delivery.

    ``responses`` is consumed in order; once empty every call gets 200.
    """

    def __init__(self) -> None:
        self.url = ""
        self.requests: list[dict] = []
        self.responses: list[tuple[int, object]] = []
        self.delay = 0.0
        self.in_flight = 0
        self.peak_in_flight = 0

    async def handle(self, request: web.Request) -> web.Response:
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            return await self._respond(request)
        finally:
            self.in_flight -= 1

    async def _respond(self, request: web.Request) -> web.Response:
        raw = await request.read()
        self.requests.append(
            {
                "method": request.method,
                "headers": request.headers.copy(),
                "body": json.loads(raw.decode("utf-8")) if raw else None,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        status, payload = self.responses.pop(0) if self.responses else (200, {"ok": True})
        return web.json_response(payload, status=status)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        env="development",
        storage_backend="memory",
        retry_base_delay_seconds=0,
        gateway_retry_base_delay_seconds=0,
        gateway_retry_jitter_seconds=0,
    )


@pytest.fixture
def store() -> InMemoryDataStore:
    return InMemoryDataStore()


@pytest.fixture
def gateways(store) -> GatewayFactory:
    return GatewayFactory(store, RetryPolicy(max_retries=2, base_delay=0, jitter=0))


@pytest.fixture
def tenant_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
async def engine(gateways, settings):
    engine = ExecutionEngine(gateways, settings)
    yield engine
    await engine.dispose()


@pytest.fixture
async def receiver():
    receiver = Receiver()
    app = web.Application()
    app.router.add_route("*", "/hook", receiver.handle)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    port = site._server.sockets[0].getsockname()[1]  # type: ignore[union-attr]
    receiver.url = f"http://127.0.0.1:{port}/hook"
    try:
        yield receiver
    finally:
        await runner.cleanup()


@pytest.fixture
async def service_client(aiohttp_client, settings, store):
    """Client for the service API backed by the in-memory store."""
    app = create_app(settings, store=store)
    return await aiohttp_client(app)
