"""Execution endpoints: synchronous, background and batch dispatch, plus history."""
from __future__ import annotations

from aiohttp import web

from webhook_service.api.utils import parse_body, parse_int, parse_uuid
from webhook_service.domain.dto import BatchExecutionRequest
from webhook_service.domain.models import ExecutionRequest
from webhook_service.services.dependencies import (
    IdentityContext,
    get_analytics_service,
    get_execution_engine,
    require_identity,
    user_context,
)

routes = web.RouteTableDef()


def _with_caller(request: web.Request, identity: IdentityContext, execution: ExecutionRequest) -> ExecutionRequest:
    return execution.model_copy(
        update={"user_context": user_context(request, identity, execution.user_context)}
    )


@routes.post("/api/v1/executions")
async def execute(request: web.Request):
    identity = await require_identity(request)
    execution = _with_caller(request, identity, await parse_body(request, ExecutionRequest))
    engine = get_execution_engine(request)
    result = await engine.execute(identity.tenant_id, execution)
    return web.json_response(result.to_wire())


@routes.post("/api/v1/executions/async")
async def execute_async(request: web.Request):
    identity = await require_identity(request)
    execution = _with_caller(request, identity, await parse_body(request, ExecutionRequest))
    engine = get_execution_engine(request)
    handle = engine.execute_async(identity.tenant_id, execution)
    return web.json_response(
        {"executionId": str(handle.execution_id), "status": handle.status.value},
        status=202,
    )


@routes.post("/api/v1/executions/batch")
async def execute_batch(request: web.Request):
    identity = await require_identity(request)
    dto = await parse_body(request, BatchExecutionRequest)
    requests = [_with_caller(request, identity, item) for item in dto.requests]
    engine = get_execution_engine(request)
    result = await engine.execute_batch(identity.tenant_id, requests)
    return web.json_response(result.to_wire())


@routes.get("/api/v1/executions/failed")
async def list_failed_executions(request: web.Request):
    identity = await require_identity(request)
    query = request.rel_url.query
    webhook_id = query.get("webhook_id")
    analytics = await get_analytics_service(request)
    failed = await analytics.get_failed_executions(
        identity.tenant_id,
        webhook_id=parse_uuid(webhook_id, "webhook_id") if webhook_id else None,
        limit=parse_int(query.get("limit"), "limit", default=100),
    )
    return web.json_response({"executions": [item.to_wire() for item in failed], "total": len(failed)})


@routes.get("/api/v1/executions/{execution_id}")
async def get_execution(request: web.Request):
    identity = await require_identity(request)
    execution_id = parse_uuid(request.match_info["execution_id"], "execution_id")
    engine = get_execution_engine(request)
    status = await engine.get_execution_status(identity.tenant_id, execution_id)
    return web.json_response(status.to_wire())


@routes.get("/api/v1/executions/{execution_id}/logs")
async def get_execution_logs(request: web.Request):
    identity = await require_identity(request)
    execution_id = parse_uuid(request.match_info["execution_id"], "execution_id")
    analytics = await get_analytics_service(request)
    records = await analytics.get_execution_logs(identity.tenant_id, execution_id)
    return web.json_response({"logs": [record.to_wire() for record in records]})


@routes.post("/api/v1/executions/{execution_id}/retry")
async def retry_execution(request: web.Request):
    identity = await require_identity(request)
    execution_id = parse_uuid(request.match_info["execution_id"], "execution_id")
    engine = get_execution_engine(request)
    result = await engine.retry_failed_execution(identity.tenant_id, execution_id)
    return web.json_response(result.to_wire())
