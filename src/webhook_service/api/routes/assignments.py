"""Assignment endpoints: bind (page, position) trigger points to webhooks."""
from __future__ import annotations

from aiohttp import web

from webhook_service.api.utils import parse_body, parse_bool, parse_uuid
from webhook_service.domain.dto import AssignmentCreate
from webhook_service.services.dependencies import (
    ensure_admin,
    get_assignment_service,
    require_identity,
)

routes = web.RouteTableDef()


@routes.get("/api/v1/assignments")
async def list_assignments(request: web.Request):
    identity = await require_identity(request)
    query = request.rel_url.query
    service = await get_assignment_service(request)
    items = await service.list_assignments(
        identity.tenant_id,
        page=query.get("page"),
        include_inactive=bool(parse_bool(query.get("include_inactive"), "include_inactive")),
    )
    return web.json_response({"assignments": [item.to_wire() for item in items], "total": len(items)})


@routes.post("/api/v1/assignments")
async def create_assignment(request: web.Request):
    identity = await require_identity(request)
    dto = await parse_body(request, AssignmentCreate)
    ensure_admin(identity)
    service = await get_assignment_service(request)
    assignment = await service.create_assignment(identity.tenant_id, dto, user_id=identity.user_id)
    return web.json_response(assignment.to_wire(), status=201)


@routes.get("/api/v1/assignments/resolve")
async def resolve_assignment(request: web.Request):
    identity = await require_identity(request)
    query = request.rel_url.query
    page = query.get("page")
    position = query.get("position")
    if not page or not position:
        raise web.HTTPBadRequest(text="page and position are required")
    service = await get_assignment_service(request)
    assignment = await service.resolve(identity.tenant_id, page, position, user_id=identity.user_id)
    return web.json_response({"assignment": assignment.to_wire() if assignment is not None else None})


@routes.post("/api/v1/assignments/{assignment_id}/disable")
async def disable_assignment(request: web.Request):
    identity = await require_identity(request)
    ensure_admin(identity)
    assignment_id = parse_uuid(request.match_info["assignment_id"], "assignment_id")
    service = await get_assignment_service(request)
    assignment = await service.disable_assignment(
        identity.tenant_id,
        assignment_id,
        user_id=identity.user_id,
        allow_global=True,
    )
    return web.json_response(assignment.to_wire())
