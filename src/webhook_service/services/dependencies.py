"""Shared dependency providers for aiohttp handlers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar
from uuid import UUID

from aiohttp import web

from webhook_service.domain.models import ExecutionUserContext
from webhook_service.services.analytics import ExecutionAnalytics
from webhook_service.services.assignments import AssignmentService
from webhook_service.services.discovery import DiscoveryEngine
from webhook_service.services.execution import ExecutionEngine
from webhook_service.services.gateway import GatewayFactory
from webhook_service.services.webhooks import WebhookService
from webhook_service.settings import Settings

TService = TypeVar("TService")

SETTINGS_KEY = "settings"
STORE_KEY = "data_store"
GATEWAYS_KEY = "gateway_factory"
EXECUTION_ENGINE_KEY = "execution_engine"
DISCOVERY_ENGINE_KEY = "discovery_engine"

_WEBHOOK_SERVICE_KEY = "webhook_service"
_ASSIGNMENT_SERVICE_KEY = "assignment_service"
_ANALYTICS_SERVICE_KEY = "analytics_service"

TENANT_ID_HEADER = "X-Tenant-Id"
USER_ID_HEADER = "X-User-Id"
USER_ROLE_HEADER = "X-User-Role"

ADMIN_ROLES = ("admin", "owner")


@dataclass
class IdentityContext:
    tenant_id: UUID
    user_id: UUID | None
    role: str | None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


async def require_identity(request: web.Request) -> IdentityContext:
    """Identity comes from headers set by the API gateway (or tests)."""
    tenant_header = request.headers.get(TENANT_ID_HEADER)
    if not tenant_header:
        raise web.HTTPUnauthorized(reason=f"Header {TENANT_ID_HEADER} is required")
    try:
        tenant_id = UUID(tenant_header)
    except ValueError as exc:
        raise web.HTTPBadRequest(text=f"Invalid {TENANT_ID_HEADER}") from exc

    user_header = request.headers.get(USER_ID_HEADER)
    user_id: UUID | None = None
    if user_header:
        try:
            user_id = UUID(user_header)
        except ValueError as exc:
            raise web.HTTPBadRequest(text=f"Invalid {USER_ID_HEADER}") from exc

    return IdentityContext(
        tenant_id=tenant_id,
        user_id=user_id,
        role=request.headers.get(USER_ROLE_HEADER) or None,
    )


def ensure_admin(identity: IdentityContext) -> None:
    if not identity.is_admin:
        raise web.HTTPForbidden(reason="Admin role required")


def user_context(request: web.Request, identity: IdentityContext, given: ExecutionUserContext) -> ExecutionUserContext:
    """Fill caller details the client did not send from the request itself."""
    return ExecutionUserContext(
        user_id=given.user_id or identity.user_id,
        role=given.role or identity.role,
        user_agent=given.user_agent or request.headers.get("User-Agent"),
        ip_address=given.ip_address or request.remote,
        session_id=given.session_id,
    )


def get_settings(request: web.Request) -> Settings:
    return request.app[SETTINGS_KEY]


def get_gateways(request: web.Request) -> GatewayFactory:
    return request.app[GATEWAYS_KEY]


def get_execution_engine(request: web.Request) -> ExecutionEngine:
    return request.app[EXECUTION_ENGINE_KEY]


def get_discovery_engine(request: web.Request) -> DiscoveryEngine:
    return request.app[DISCOVERY_ENGINE_KEY]


async def _get_or_create_service(
    request: web.Request,
    cache_key: str,
    builder: Callable[[web.Request], Awaitable[TService]],
) -> TService:
    service = request.get(cache_key)
    if service is None:
        service = await builder(request)
        request[cache_key] = service
    return service


async def get_webhook_service(request: web.Request) -> WebhookService:
    async def builder(_: web.Request) -> WebhookService:
        return WebhookService(get_gateways(request), get_settings(request))

    return await _get_or_create_service(request, _WEBHOOK_SERVICE_KEY, builder)


async def get_assignment_service(request: web.Request) -> AssignmentService:
    async def builder(_: web.Request) -> AssignmentService:
        return AssignmentService(get_gateways(request), get_settings(request))

    return await _get_or_create_service(request, _ASSIGNMENT_SERVICE_KEY, builder)


async def get_analytics_service(request: web.Request) -> ExecutionAnalytics:
    async def builder(_: web.Request) -> ExecutionAnalytics:
        return ExecutionAnalytics(get_gateways(request), get_settings(request))

    return await _get_or_create_service(request, _ANALYTICS_SERVICE_KEY, builder)
