"""Discovery entities: scanned elements, registrations, sessions and suggestions."""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import Field

from webhook_service.domain.dom import Rect
from webhook_service.domain.enums import (
    DiscoverySessionStatus,
    ElementType,
    HttpMethod,
    SuggestionPriority,
)
from webhook_service.domain.models import ApiModel

DEFAULT_EXCLUDED_TAGS = ["script", "style", "meta", "link", "title"]


class DiscoverySettings(ApiModel):
    include_hidden: bool = False
    max_elements_per_page: int = Field(default=1000, ge=1, le=10_000)
    excluded_tags: list[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDED_TAGS))
    auto_approve: bool = False


class DiscoveredElement(ApiModel):
    element_id: str
    element_type: ElementType
    tag_name: str
    text_content: str = ""
    attributes: dict[str, str] = Field(default_factory=dict)
    css_selector: str
    xpath: str
    rect: Rect | None = None
    is_visible: bool = True
    is_interactable: bool = True
    fingerprint: str
    parent_id: str | None = None
    child_ids: list[str] = Field(default_factory=list)
    discovered_at: datetime


class RegisteredElement(ApiModel):
    id: UUID
    tenant_id: UUID
    feature_slug: str
    page_path: str
    element_id: str
    element_type: ElementType
    display_name: str | None = None
    description: str | None = None
    css_selector: str
    xpath: str
    text_content: str = ""
    attributes: dict[str, str] = Field(default_factory=dict)
    is_visible: bool = True
    fingerprint: str
    is_stable: bool = True
    last_seen_at: datetime
    registered_by: UUID | None = None
    registered_at: datetime
    has_active_webhook: bool = False
    webhook_count: int = 0


class FieldChange(ApiModel):
    old_value: Any = None
    new_value: Any = None


class ModifiedElement(ApiModel):
    element_id: str
    changes: dict[str, FieldChange]


class ElementChanges(ApiModel):
    added: list[DiscoveredElement] = Field(default_factory=list)
    removed: list[RegisteredElement] = Field(default_factory=list)
    modified: list[ModifiedElement] = Field(default_factory=list)
    unchanged: list[DiscoveredElement] = Field(default_factory=list)


class WebhookSuggestion(ApiModel):
    element_id: str
    confidence: float
    suggested_endpoint: str
    suggested_method: HttpMethod
    reasoning: list[str] = Field(default_factory=list)
    payload_template: dict[str, Any] = Field(default_factory=dict)
    priority: SuggestionPriority


class DiscoverySession(ApiModel):
    id: UUID
    tenant_id: UUID
    feature_slug: str
    status: DiscoverySessionStatus = DiscoverySessionStatus.ACTIVE
    started_at: datetime
    completed_at: datetime | None = None
    elements_discovered: int = 0
    pages_scanned: list[str] = Field(default_factory=list)
    settings: dict[str, Any] = Field(default_factory=dict)


class DiscoveryStatistics(ApiModel):
    total_elements: int
    by_type: dict[str, int] = Field(default_factory=dict)
    interactable: int = 0


class DiscoveryStatus(ApiModel):
    session: DiscoverySession
    recent_elements: list[DiscoveredElement] = Field(default_factory=list)
    statistics: DiscoveryStatistics
