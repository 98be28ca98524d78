"""Webhook definition management."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlsplit
from uuid import UUID, uuid4

import structlog

from webhook_service.core.exceptions import NotFoundError, ValidationError
from webhook_service.core.limits import (
    RATE_LIMIT_PER_MINUTE_RANGE,
    RETRY_COUNT_RANGE,
    TIMEOUT_SECONDS_RANGE,
    clamp,
)
from webhook_service.domain.dto import WebhookCreate, WebhookUpdate
from webhook_service.domain.enums import HttpMethod
from webhook_service.domain.models import WebhookDefinition
from webhook_service.services.gateway import GatewayFactory
from webhook_service.services.templates import validate_template
from webhook_service.settings import Settings

logger = structlog.get_logger(__name__)

TABLE = "webhook_definitions"


def validate_endpoint_url(url: str) -> str:
    url = url.strip()
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ValidationError("endpointUrl must be a valid http(s) URL", details={"endpoint_url": url})
    return url


def normalize_method(method: str) -> HttpMethod:
    try:
        return HttpMethod(method.strip().upper())
    except ValueError as exc:
        raise ValidationError(
            "Unsupported HTTP method",
            details={"http_method": method, "allowed": [m.value for m in HttpMethod]},
        ) from exc


class WebhookService:
    """CRUD over webhook definitions.

    Numeric settings are clamped into their allowed ranges, never rejected.
    Execution counters are not writable here.
    """

    def __init__(self, gateways: GatewayFactory, settings: Settings) -> None:
        self._gateways = gateways
        self._settings = settings

    def _clamped(self, data: dict[str, Any]) -> dict[str, Any]:
        for field, bounds in (
            ("timeout_seconds", TIMEOUT_SECONDS_RANGE),
            ("retry_count", RETRY_COUNT_RANGE),
            ("rate_limit_per_minute", RATE_LIMIT_PER_MINUTE_RANGE),
        ):
            if data.get(field) is not None:
                data[field] = clamp(data[field], bounds)
        return data

    async def create_webhook(
        self,
        tenant_id: UUID,
        data: WebhookCreate,
        *,
        user_id: UUID | None = None,
    ) -> WebhookDefinition:
        if data.payload_template is not None:
            validate_template(data.payload_template)
        now = datetime.now(timezone.utc)
        row = self._clamped(
            {
                "id": uuid4(),
                "feature_slug": data.feature_slug,
                "page_path": data.page_path,
                "element_id": data.element_id,
                "element_type": data.element_type,
                "display_name": data.display_name,
                "endpoint_url": validate_endpoint_url(data.endpoint_url),
                "http_method": normalize_method(data.http_method).value,
                "headers": data.headers or {},
                "payload_template": data.payload_template,
                "timeout_seconds": data.timeout_seconds
                if data.timeout_seconds is not None
                else self._settings.default_timeout_seconds,
                "retry_count": data.retry_count
                if data.retry_count is not None
                else self._settings.default_retry_count,
                "rate_limit_per_minute": data.rate_limit_per_minute
                if data.rate_limit_per_minute is not None
                else self._settings.default_rate_limit_per_minute,
                "is_active": True if data.is_active is None else data.is_active,
                "health_status": "unknown",
                "created_by": user_id,
                "updated_by": user_id,
                "created_at": now,
                "updated_at": now,
                "total_executions": 0,
                "successful_executions": 0,
                "failed_executions": 0,
                "total_response_time_ms": 0,
                "last_executed_at": None,
            }
        )
        stored = await self._gateways(tenant_id).insert(TABLE, row, global_row=data.is_global)
        webhook = WebhookDefinition.model_validate(stored)
        logger.info(
            "webhook created",
            webhook_id=str(webhook.id),
            tenant_id=str(tenant_id),
            is_global=data.is_global,
        )
        return webhook

    async def get_webhook(self, tenant_id: UUID, webhook_id: UUID) -> WebhookDefinition:
        row = await self._gateways(tenant_id).get(TABLE, {"id": webhook_id}, include_global=True)
        if row is None:
            raise NotFoundError("Webhook not found", details={"webhook_id": str(webhook_id)})
        return WebhookDefinition.model_validate(row)

    async def list_webhooks(
        self,
        tenant_id: UUID,
        *,
        feature_slug: str | None = None,
        page_path: str | None = None,
        is_active: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WebhookDefinition], int]:
        filters: dict[str, Any] = {}
        if feature_slug is not None:
            filters["feature_slug"] = feature_slug
        if page_path is not None:
            filters["page_path"] = page_path
        if is_active is not None:
            filters["is_active"] = is_active
        gateway = self._gateways(tenant_id)
        rows = await gateway.query(
            TABLE,
            filters,
            include_global=True,
            order=[("created_at", "desc")],
            limit=limit,
            offset=offset,
        )
        total = await gateway.count(TABLE, filters, include_global=True)
        return [WebhookDefinition.model_validate(row) for row in rows], total

    async def update_webhook(
        self,
        tenant_id: UUID,
        webhook_id: UUID,
        data: WebhookUpdate,
        *,
        user_id: UUID | None = None,
        allow_global: bool = False,
    ) -> WebhookDefinition:
        patch = data.model_dump(exclude_unset=True)
        if "endpoint_url" in patch:
            if patch["endpoint_url"] is None:
                raise ValidationError("endpointUrl cannot be empty")
            patch["endpoint_url"] = validate_endpoint_url(patch["endpoint_url"])
        if "http_method" in patch:
            if patch["http_method"] is None:
                raise ValidationError("httpMethod cannot be empty")
            patch["http_method"] = normalize_method(patch["http_method"]).value
        if patch.get("payload_template") is not None:
            validate_template(patch["payload_template"])
        if "headers" in patch and patch["headers"] is None:
            patch["headers"] = {}
        for field in ("timeout_seconds", "retry_count", "rate_limit_per_minute", "is_active"):
            if field in patch and patch[field] is None:
                del patch[field]
        patch = self._clamped(patch)
        patch["updated_by"] = user_id
        patch["updated_at"] = datetime.now(timezone.utc)

        rows = await self._gateways(tenant_id).update(
            TABLE, {"id": webhook_id}, patch, include_global=allow_global
        )
        if not rows:
            raise NotFoundError("Webhook not found", details={"webhook_id": str(webhook_id)})
        logger.info("webhook updated", webhook_id=str(webhook_id), fields=sorted(patch))
        return WebhookDefinition.model_validate(rows[0])

    async def delete_webhook(self, tenant_id: UUID, webhook_id: UUID) -> None:
        deleted = await self._gateways(tenant_id).delete(TABLE, {"id": webhook_id})
        if not deleted:
            raise NotFoundError("Webhook not found", details={"webhook_id": str(webhook_id)})
        logger.info("webhook deleted", webhook_id=str(webhook_id), tenant_id=str(tenant_id))
