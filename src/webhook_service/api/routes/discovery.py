"""Element discovery endpoints."""
from __future__ import annotations

from aiohttp import web

from webhook_service.api.utils import parse_body, parse_uuid
from webhook_service.domain.dto import (
    MutationBatch,
    RegisteredElementUpdate,
    RegisterElementRequest,
    ScanPagesRequest,
    ScanRequest,
    StartDiscoveryRequest,
    SuggestionRequest,
)
from webhook_service.services.dependencies import get_discovery_engine, require_identity
from webhook_service.services.discovery import resolve_snapshot

routes = web.RouteTableDef()


@routes.post("/api/v1/discovery/scan")
async def scan_page(request: web.Request):
    identity = await require_identity(request)
    dto = await parse_body(request, ScanRequest)
    engine = get_discovery_engine(request)
    elements = await engine.scan_page_elements(
        identity.tenant_id,
        dto.feature_slug,
        dto.page_path,
        resolve_snapshot(dto.snapshot, dto.html),
        dto.settings,
    )
    suggestions = engine.suggest_webhook_mappings(elements)
    return web.json_response(
        {
            "elements": [element.to_wire() for element in elements],
            "suggestions": [suggestion.to_wire() for suggestion in suggestions],
        }
    )


@routes.post("/api/v1/discovery/scan-pages")
async def scan_pages(request: web.Request):
    identity = await require_identity(request)
    dto = await parse_body(request, ScanPagesRequest)
    snapshots = {page.page_path: resolve_snapshot(page.snapshot, page.html) for page in dto.pages}
    engine = get_discovery_engine(request)
    results = await engine.scan_pages(identity.tenant_id, dto.feature_slug, snapshots, dto.settings)
    return web.json_response(
        {"pages": {path: [element.to_wire() for element in elements] for path, elements in results.items()}}
    )


@routes.post("/api/v1/discovery/compare")
async def compare_elements(request: web.Request):
    identity = await require_identity(request)
    dto = await parse_body(request, ScanRequest)
    engine = get_discovery_engine(request)
    changes = await engine.compare_element_changes(
        identity.tenant_id,
        dto.feature_slug,
        dto.page_path,
        resolve_snapshot(dto.snapshot, dto.html),
        dto.settings,
    )
    return web.json_response(changes.to_wire())


@routes.post("/api/v1/discovery/suggestions")
async def suggest_mappings(request: web.Request):
    await require_identity(request)
    dto = await parse_body(request, SuggestionRequest)
    suggestions = get_discovery_engine(request).suggest_webhook_mappings(dto.elements)
    return web.json_response({"suggestions": [suggestion.to_wire() for suggestion in suggestions]})


@routes.get("/api/v1/discovery/elements")
async def list_registered_elements(request: web.Request):
    identity = await require_identity(request)
    query = request.rel_url.query
    elements = await get_discovery_engine(request).get_registered_elements(
        identity.tenant_id,
        feature_slug=query.get("feature_slug"),
        page_path=query.get("page_path"),
    )
    return web.json_response({"elements": [element.to_wire() for element in elements], "total": len(elements)})


@routes.post("/api/v1/discovery/elements")
async def register_element(request: web.Request):
    identity = await require_identity(request)
    dto = await parse_body(request, RegisterElementRequest)
    element = await get_discovery_engine(request).register_element(
        identity.tenant_id,
        dto.feature_slug,
        dto.page_path,
        dto.element,
        display_name=dto.display_name,
        description=dto.description,
        user_id=identity.user_id,
    )
    return web.json_response(element.to_wire(), status=201)


@routes.patch("/api/v1/discovery/elements/{registration_id}")
async def update_registered_element(request: web.Request):
    identity = await require_identity(request)
    registration_id = parse_uuid(request.match_info["registration_id"], "registration_id")
    dto = await parse_body(request, RegisteredElementUpdate)
    element = await get_discovery_engine(request).update_registered_element(
        identity.tenant_id, registration_id, dto
    )
    return web.json_response(element.to_wire())


@routes.post("/api/v1/discovery/sessions")
async def start_session(request: web.Request):
    identity = await require_identity(request)
    dto = await parse_body(request, StartDiscoveryRequest)
    engine = get_discovery_engine(request)
    monitor = await engine.start_auto_discovery(
        identity.tenant_id,
        dto.feature_slug,
        dto.page_path,
        dto.settings,
        user_id=identity.user_id,
    )
    status = await engine.get_discovery_status(identity.tenant_id, monitor.session_id)
    return web.json_response(status.session.to_wire(), status=201)


@routes.get("/api/v1/discovery/sessions/{session_id}")
async def get_session_status(request: web.Request):
    identity = await require_identity(request)
    session_id = parse_uuid(request.match_info["session_id"], "session_id")
    status = await get_discovery_engine(request).get_discovery_status(identity.tenant_id, session_id)
    return web.json_response(status.to_wire())


@routes.post("/api/v1/discovery/sessions/{session_id}/mutations")
async def submit_mutations(request: web.Request):
    identity = await require_identity(request)
    session_id = parse_uuid(request.match_info["session_id"], "session_id")
    dto = await parse_body(request, MutationBatch)
    queued = await get_discovery_engine(request).submit_mutations(identity.tenant_id, session_id, dto.mutations)
    return web.json_response({"queued": queued}, status=202)


@routes.post("/api/v1/discovery/sessions/{session_id}/stop")
async def stop_session(request: web.Request):
    identity = await require_identity(request)
    session_id = parse_uuid(request.match_info["session_id"], "session_id")
    session = await get_discovery_engine(request).stop_auto_discovery(identity.tenant_id, session_id)
    return web.json_response(session.to_wire())
