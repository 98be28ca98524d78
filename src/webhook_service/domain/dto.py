"""Input payloads accepted by the services and the HTTP API."""
from __future__ import annotations

from typing import Any
from uuid import UUID

from pydantic import ConfigDict, Field
from pydantic.alias_generators import to_camel

from webhook_service.domain.dom import DomNode, MutationRecord
from webhook_service.domain.discovery import DiscoveredElement, DiscoverySettings
from webhook_service.domain.models import ApiModel, ExecutionRequest


class InputModel(ApiModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class WebhookCreate(InputModel):
    feature_slug: str = Field(min_length=1)
    page_path: str = Field(min_length=1)
    element_id: str = Field(min_length=1)
    element_type: str | None = None
    display_name: str | None = None
    endpoint_url: str
    http_method: str = "POST"
    payload_template: dict[str, Any] | None = None
    headers: dict[str, str] | None = None
    timeout_seconds: int | None = None
    retry_count: int | None = None
    rate_limit_per_minute: int | None = None
    is_active: bool | None = None
    # Admin-only: create a definition shared by every tenant.
    is_global: bool = False


class WebhookUpdate(InputModel):
    feature_slug: str | None = Field(default=None, min_length=1)
    page_path: str | None = Field(default=None, min_length=1)
    element_id: str | None = Field(default=None, min_length=1)
    element_type: str | None = None
    display_name: str | None = None
    endpoint_url: str | None = None
    http_method: str | None = None
    payload_template: dict[str, Any] | None = None
    headers: dict[str, str] | None = None
    timeout_seconds: int | None = None
    retry_count: int | None = None
    rate_limit_per_minute: int | None = None
    is_active: bool | None = None


class AssignmentCreate(InputModel):
    feature_slug: str = Field(min_length=1)
    page: str = Field(min_length=1)
    position: str = Field(min_length=1)
    webhook_id: UUID
    label: str | None = None
    description: str | None = None
    priority: int = 100
    is_global: bool = False


class BatchExecutionRequest(InputModel):
    requests: list[ExecutionRequest]


class ScanRequest(InputModel):
    feature_slug: str = Field(min_length=1)
    page_path: str = Field(min_length=1)
    snapshot: DomNode | None = None
    html: str | None = None
    settings: DiscoverySettings | None = None


class SuggestionRequest(InputModel):
    elements: list[DiscoveredElement]


class RegisterElementRequest(InputModel):
    feature_slug: str = Field(min_length=1)
    page_path: str = Field(min_length=1)
    element: DiscoveredElement
    display_name: str | None = None
    description: str | None = None


class StartDiscoveryRequest(InputModel):
    feature_slug: str = Field(min_length=1)
    page_path: str = Field(min_length=1)
    settings: DiscoverySettings | None = None


class MutationBatch(InputModel):
    mutations: list[MutationRecord]


class RegisteredElementUpdate(InputModel):
    display_name: str | None = None
    description: str | None = None
    css_selector: str | None = Field(default=None, min_length=1)
    xpath: str | None = Field(default=None, min_length=1)
    text_content: str | None = None
    attributes: dict[str, str] | None = None
    is_visible: bool | None = None
    is_stable: bool | None = None


class PageSnapshot(InputModel):
    page_path: str = Field(min_length=1)
    snapshot: DomNode | None = None
    html: str | None = None


class ScanPagesRequest(InputModel):
    feature_slug: str = Field(min_length=1)
    pages: list[PageSnapshot] = Field(min_length=1)
    settings: DiscoverySettings | None = None
