"""Pre-dispatch security checks.

Tenant-boundary and membership violations are hard failures. Weak endpoint
configuration (plain HTTP, local or private hosts) only produces warnings.
"""
from __future__ import annotations

import ipaddress
from urllib.parse import urlsplit
from uuid import UUID

import structlog

from webhook_service.core.exceptions import UnauthorizedAccessError
from webhook_service.domain.models import SecurityReport
from webhook_service.services.gateway import GatewayFactory

logger = structlog.get_logger(__name__)

MEMBERS_TABLE = "tenant_members"

WARNING_NOT_HTTPS = "Endpoint does not use HTTPS"
WARNING_LOCAL_HOST = "Endpoint targets a local or private address outside development"


def _is_local_host(hostname: str) -> bool:
    hostname = hostname.lower().strip("[]")
    if hostname == "localhost" or hostname.endswith(".localhost"):
        return True
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return address.is_loopback or address.is_private or address.is_link_local or address.is_unspecified


def url_warnings(endpoint_url: str, *, environment: str) -> list[str]:
    parts = urlsplit(endpoint_url)
    warnings = []
    if parts.scheme != "https":
        warnings.append(WARNING_NOT_HTTPS)
    if environment != "development" and parts.hostname and _is_local_host(parts.hostname):
        warnings.append(WARNING_LOCAL_HOST)
    return warnings


class SecurityValidator:
    def __init__(self, gateways: GatewayFactory, *, environment: str = "development") -> None:
        self._gateways = gateways
        self._environment = environment

    async def is_member(self, tenant_id: UUID, user_id: UUID) -> bool:
        row = await self._gateways(tenant_id).get(
            MEMBERS_TABLE, {"user_id": user_id, "is_active": True}
        )
        return row is not None

    async def validate(
        self,
        tenant_id: UUID,
        *,
        binding_tenant_id: UUID | None,
        user_id: UUID | None,
        endpoint_url: str,
    ) -> SecurityReport:
        if binding_tenant_id is not None and binding_tenant_id != tenant_id:
            logger.warning(
                "webhook binding belongs to another tenant",
                security_event=True,
                tenant_id=str(tenant_id),
                binding_tenant_id=str(binding_tenant_id),
            )
            raise UnauthorizedAccessError(
                "Webhook belongs to another tenant",
                details={"tenant_id": str(tenant_id)},
            )

        if user_id is not None and not await self.is_member(tenant_id, user_id):
            logger.warning(
                "user is not an active member of tenant",
                security_event=True,
                tenant_id=str(tenant_id),
                user_id=str(user_id),
            )
            raise UnauthorizedAccessError(
                "User is not a member of this tenant",
                details={"tenant_id": str(tenant_id), "user_id": str(user_id)},
            )

        warnings = url_warnings(endpoint_url, environment=self._environment)
        if warnings:
            logger.info("webhook endpoint configuration warnings", endpoint_url=endpoint_url, warnings=warnings)
        return SecurityReport(warnings=warnings)
