"""Translation of service errors into HTTP responses."""
from __future__ import annotations

import math
from datetime import datetime, timezone

import structlog
from aiohttp import web

from webhook_service.core.exceptions import RateLimitExceededError, WebhookServiceError

logger = structlog.get_logger(__name__)

STATUS_BY_CODE = {
    "VALIDATION_ERROR": 400,
    "UNAUTHORIZED_ACCESS": 403,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "DISCOVERY_ERROR": 409,
    "DISCOVERY_IN_PROGRESS": 409,
    "RATE_LIMIT_EXCEEDED": 429,
    "EXECUTION_LIMIT_EXCEEDED": 503,
    "STORAGE_UNAVAILABLE": 503,
}


def error_response(exc: WebhookServiceError) -> web.Response:
    status = STATUS_BY_CODE.get(exc.code, 500)
    headers = {}
    if isinstance(exc, RateLimitExceededError):
        wait = (exc.reset_time - datetime.now(timezone.utc)).total_seconds()
        headers["Retry-After"] = str(max(1, math.ceil(wait)))
    elif status == 503:
        headers["Retry-After"] = "1"
    return web.json_response({"error": exc.to_dict()}, status=status, headers=headers)


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except WebhookServiceError as exc:
        log = logger.warning if STATUS_BY_CODE.get(exc.code, 500) < 500 else logger.error
        log("request failed", code=exc.code, error=exc.message)
        return error_response(exc)
