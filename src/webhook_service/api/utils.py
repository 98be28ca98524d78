"""Helper utilities for API handlers."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, TypeVar
from uuid import UUID

from aiohttp import web
from pydantic import BaseModel, ValidationError

# Re-export read_json from backend_common so handlers import it from one place.
from backend_common.aiohttp_app import read_json as read_json  # noqa: F401

TModel = TypeVar("TModel", bound=BaseModel)


def parse_uuid(value: str, label: str) -> UUID:
    try:
        uuid_str = value if isinstance(value, str) else str(value)
        return UUID(uuid_str)
    except (ValueError, TypeError) as exc:
        raise web.HTTPBadRequest(text=f"Invalid {label}") from exc


def parse_bool(value: str | None, label: str) -> bool | None:
    if value is None:
        return None
    lowered = value.strip().lower()
    if lowered in ("true", "1", "yes"):
        return True
    if lowered in ("false", "0", "no"):
        return False
    raise web.HTTPBadRequest(text=f"Invalid {label}")


def parse_datetime(value: str | None, label: str) -> datetime | None:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise web.HTTPBadRequest(text=f"Invalid {label}") from exc
    # Naive timestamps are taken as UTC.
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)


def parse_int(value: str | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise web.HTTPBadRequest(text=f"{label} must be an integer") from exc


async def parse_body(request: web.Request, model: type[TModel]) -> TModel:
    body = await read_json(request)
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json(), content_type="application/json") from exc


def pagination_params(
    request: web.Request,
    *,
    default_limit: int = 50,
    max_limit: int = 100,
) -> tuple[int, int]:
    query = request.rel_url.query
    try:
        limit = int(query.get("limit", str(default_limit)))
        offset = int(query.get("offset", "0"))
    except ValueError as exc:
        raise web.HTTPBadRequest(text="limit and offset must be integers") from exc
    if limit <= 0:
        limit = default_limit
    limit = min(limit, max_limit)
    if offset < 0:
        offset = 0
    return limit, offset


def paginated_response(
    items: list[Any],
    *,
    limit: int,
    offset: int,
    key: str,
    total: int,
) -> dict[str, Any]:
    page = offset // limit + 1 if limit else 1
    return {
        key: items,
        "total": total,
        "page": page,
        "pageSize": limit,
    }
