from __future__ import annotations

import uuid
from typing import Any

from webhook_service.domain.dto import WebhookCreate
from webhook_service.domain.models import ExecutionRequest, WebhookDefinition
from webhook_service.services.webhooks import WebhookService


def make_headers(
    tenant_id: uuid.UUID,
    role: str = "member",
    *,
    user_id: uuid.UUID | None = None,
) -> dict[str, str]:
    """Construct identity headers expected from the API gateway."""
    headers = {
        "X-Tenant-Id": str(tenant_id),
        "X-User-Role": role,
    }
    if user_id is not None:
        headers["X-User-Id"] = str(user_id)
    return headers


async def create_webhook(gateways, settings, tenant_id: uuid.UUID, url: str, **overrides: Any) -> WebhookDefinition:
    data = {
        "feature_slug": "knowledge-base",
        "page_path": "/files",
        "element_id": "upload-btn",
        "endpoint_url": url,
        "retry_count": 0,
    }
    data.update(overrides)
    return await WebhookService(gateways, settings).create_webhook(tenant_id, WebhookCreate(**data))


def execution_request(webhook_id: uuid.UUID | None = None, **overrides: Any) -> ExecutionRequest:
    data: dict[str, Any] = {
        "feature_slug": "knowledge-base",
        "page_path": "/files",
        "element_id": "upload-btn",
        "event_type": "click",
        "payload": {"fileName": "report.pdf"},
        "webhook_id": webhook_id,
    }
    data.update(overrides)
    return ExecutionRequest(**data)
