"""Webhook definition endpoints."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from aiohttp import web

from webhook_service.api.utils import (
    paginated_response,
    pagination_params,
    parse_body,
    parse_bool,
    parse_datetime,
    parse_int,
    parse_uuid,
)
from webhook_service.core.exceptions import ValidationError
from webhook_service.domain.dto import WebhookCreate, WebhookUpdate
from webhook_service.domain.enums import ExecutionStatus
from webhook_service.domain.models import TimeRange
from webhook_service.services.dependencies import (
    ensure_admin,
    get_analytics_service,
    get_webhook_service,
    require_identity,
)

routes = web.RouteTableDef()


@routes.get("/api/v1/webhooks")
async def list_webhooks(request: web.Request):
    identity = await require_identity(request)
    query = request.rel_url.query
    limit, offset = pagination_params(request)
    service = await get_webhook_service(request)
    items, total = await service.list_webhooks(
        identity.tenant_id,
        feature_slug=query.get("feature_slug"),
        page_path=query.get("page_path"),
        is_active=parse_bool(query.get("is_active"), "is_active"),
        limit=limit,
        offset=offset,
    )
    payload = paginated_response(
        [item.to_wire() for item in items],
        limit=limit,
        offset=offset,
        key="webhooks",
        total=total,
    )
    return web.json_response(payload)


@routes.post("/api/v1/webhooks")
async def create_webhook(request: web.Request):
    identity = await require_identity(request)
    dto = await parse_body(request, WebhookCreate)
    if dto.is_global:
        ensure_admin(identity)
    service = await get_webhook_service(request)
    webhook = await service.create_webhook(identity.tenant_id, dto, user_id=identity.user_id)
    return web.json_response(webhook.to_wire(), status=201)


@routes.get("/api/v1/webhooks/{webhook_id}")
async def get_webhook(request: web.Request):
    identity = await require_identity(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    service = await get_webhook_service(request)
    webhook = await service.get_webhook(identity.tenant_id, webhook_id)
    return web.json_response(webhook.to_wire())


@routes.patch("/api/v1/webhooks/{webhook_id}")
async def update_webhook(request: web.Request):
    identity = await require_identity(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    dto = await parse_body(request, WebhookUpdate)
    service = await get_webhook_service(request)
    webhook = await service.update_webhook(
        identity.tenant_id,
        webhook_id,
        dto,
        user_id=identity.user_id,
        allow_global=identity.is_admin,
    )
    return web.json_response(webhook.to_wire())


@routes.delete("/api/v1/webhooks/{webhook_id}")
async def delete_webhook(request: web.Request):
    identity = await require_identity(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    service = await get_webhook_service(request)
    await service.delete_webhook(identity.tenant_id, webhook_id)
    return web.Response(status=204)


@routes.get("/api/v1/webhooks/{webhook_id}/executions")
async def list_webhook_executions(request: web.Request):
    identity = await require_identity(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    query = request.rel_url.query
    status = query.get("status")
    try:
        status_filter = ExecutionStatus(status) if status else None
    except ValueError as exc:
        raise web.HTTPBadRequest(text="Invalid status") from exc
    page = parse_int(query.get("page"), "page", default=1)
    limit = parse_int(query.get("limit"), "limit", default=50)

    analytics = await get_analytics_service(request)
    records, total = await analytics.get_execution_history(
        identity.tenant_id,
        webhook_id=webhook_id,
        status=status_filter,
        page=page,
        limit=limit,
        sort_by=query.get("sort_by", "started_at"),
        sort_order=query.get("sort_order", "desc"),
    )
    return web.json_response(
        {
            "executions": [record.to_wire() for record in records],
            "total": total,
            "page": max(page, 1),
            "pageSize": len(records),
        }
    )


@routes.get("/api/v1/webhooks/{webhook_id}/metrics")
async def get_webhook_metrics(request: web.Request):
    identity = await require_identity(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    query = request.rel_url.query
    start = parse_datetime(query.get("start"), "start")
    end = parse_datetime(query.get("end"), "end")
    time_range = None
    if start is not None or end is not None:
        end = end or datetime.now(timezone.utc)
        start = start or end - timedelta(hours=24)
        if start > end:
            raise ValidationError("start must not be after end")
        time_range = TimeRange(start=start, end=end)

    analytics = await get_analytics_service(request)
    metrics = await analytics.get_execution_metrics(identity.tenant_id, webhook_id, time_range)
    return web.json_response(metrics.to_wire())


@routes.get("/api/v1/webhooks/{webhook_id}/performance")
async def get_webhook_performance(request: web.Request):
    identity = await require_identity(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    analytics = await get_analytics_service(request)
    performance = await analytics.get_webhook_performance(identity.tenant_id, webhook_id)
    return web.json_response(performance.to_wire())
