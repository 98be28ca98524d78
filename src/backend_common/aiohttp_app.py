"""Shared aiohttp application helpers."""
from __future__ import annotations

import json
from typing import Any, Literal, Protocol

import structlog
from aiohttp import web
from aiohttp_cors import CorsConfig, ResourceOptions, setup as cors_setup

from backend_common.middleware.trace import create_trace_middleware

logger = structlog.get_logger(__name__)

# aiohttp_cors wants a sequence of header names, not a comma-separated string.
_ALLOWED_HEADERS = (
    "Accept",
    "Accept-Language",
    "Content-Language",
    "Content-Type",
    "Authorization",
    "X-Trace-Id",
    "X-Request-Id",
    "X-Tenant-Id",
    "X-User-Id",
    "X-User-Role",
)

_ALLOWED_METHODS = ("GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS")

_EXPOSED_HEADERS = ("X-Trace-Id", "X-Request-Id", "Retry-After")

HTTP_ERROR_CODES = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHENTICATED",
    403: "UNAUTHORIZED_ACCESS",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    413: "PAYLOAD_TOO_LARGE",
}


class SettingsProtocol(Protocol):
    app_name: str
    env: Literal["development", "staging", "production"]
    cors_allowed_origins: list[str]
    max_request_bytes: int


def _error_detail(exc: web.HTTPException) -> Any:
    text = exc.text or ""
    if text == f"{exc.status}: {exc.reason}":
        return None
    if exc.content_type == "application/json":
        try:
            return json.loads(text)
        except ValueError:
            return text
    return text


@web.middleware
async def json_http_errors(request: web.Request, handler):
    """Render aiohttp's HTTP errors in the same ``{"error": {...}}`` envelope as service errors."""
    try:
        return await handler(request)
    except web.HTTPException as exc:
        if exc.status < 400:
            raise
        detail = _error_detail(exc)
        logger.info("http error", status=exc.status, path=request.path, reason=exc.reason)
        return web.json_response(
            {
                "error": {
                    "code": HTTP_ERROR_CODES.get(exc.status, "HTTP_ERROR"),
                    "message": exc.reason,
                    "details": {"detail": detail} if detail is not None else {},
                    "retryable": False,
                }
            },
            status=exc.status,
        )


def create_base_app(
    settings: SettingsProtocol,
    *,
    middlewares: list[Any] | None = None,
) -> tuple[web.Application, CorsConfig]:
    """Create an app with tracing, JSON HTTP errors, then ``middlewares``, and CORS defaults.

    Request bodies are capped at ``settings.max_request_bytes`` (413 above it).
    """
    app = web.Application(client_max_size=settings.max_request_bytes)
    app.middlewares.append(create_trace_middleware(settings.app_name))
    app.middlewares.append(json_http_errors)
    for middleware in middlewares or []:
        app.middlewares.append(middleware)

    cors = cors_setup(
        app,
        defaults={
            origin: ResourceOptions(
                allow_credentials=True,
                expose_headers=_EXPOSED_HEADERS,
                allow_headers=_ALLOWED_HEADERS,
                allow_methods=_ALLOWED_METHODS,
            )
            for origin in settings.cors_allowed_origins
        },
    )
    return app, cors


def add_healthcheck(app: web.Application, settings: SettingsProtocol) -> None:
    async def healthcheck(_request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "service": settings.app_name, "env": settings.env})

    app.router.add_get("/health", healthcheck)


def add_cors_to_routes(app: web.Application, cors: CorsConfig) -> None:
    """Apply CORS configuration to every registered route."""
    for route in list(app.router.routes()):
        cors.add(route)


async def read_json(request: web.Request) -> dict[str, Any]:
    """Parse a JSON object body, raising HTTPBadRequest otherwise."""
    try:
        data = await request.json()
    except ValueError as exc:
        raise web.HTTPBadRequest(text="Invalid JSON payload") from exc
    if not isinstance(data, dict):
        raise web.HTTPBadRequest(text="JSON body must be an object")
    return data
