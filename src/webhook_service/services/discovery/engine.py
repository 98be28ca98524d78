"""Element discovery: scans, change detection, registry and live sessions."""
from __future__ import annotations

import asyncio
from collections import Counter, defaultdict
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping
from uuid import UUID, uuid4

import structlog

from webhook_service.core.exceptions import (
    DiscoveryError,
    DiscoveryInProgressError,
    NotFoundError,
    ValidationError,
    WebhookServiceError,
)
from webhook_service.domain.discovery import (
    DiscoveredElement,
    DiscoverySession,
    DiscoverySettings,
    DiscoveryStatistics,
    DiscoveryStatus,
    ElementChanges,
    FieldChange,
    ModifiedElement,
    RegisteredElement,
    WebhookSuggestion,
)
from webhook_service.domain.dom import DomNode, MutationRecord, parse_html
from webhook_service.domain.dto import RegisteredElementUpdate
from webhook_service.domain.enums import DiscoverySessionStatus
from webhook_service.services.discovery.extraction import extract_elements
from webhook_service.services.discovery.monitor import DomMonitor
from webhook_service.services.discovery.scoring import suggest
from webhook_service.services.gateway import GatewayFactory, TenantGateway
from webhook_service.settings import Settings
from webhook_service.storage.base import Gte

logger = structlog.get_logger(__name__)

DISCOVERED_TABLE = "discovered_elements"
REGISTRY_TABLE = "page_elements"
SESSIONS_TABLE = "discovery_sessions"
WEBHOOKS_TABLE = "webhook_definitions"

COMPARED_FIELDS = ("css_selector", "xpath", "text_content", "attributes", "is_visible")
WATCHED_ATTRIBUTES = frozenset({"id", "class", "role", "data-testid"})

_DISCOVERED_UPDATE_COLUMNS = [
    "feature_slug",
    "page_path",
    "element_id",
    "element_type",
    "tag_name",
    "text_content",
    "attributes",
    "xpath",
    "rect",
    "is_visible",
    "is_interactable",
    "parent_id",
    "child_ids",
    "discovered_at",
]

_REGISTRY_UPDATE_COLUMNS = [
    "element_type",
    "display_name",
    "description",
    "css_selector",
    "xpath",
    "text_content",
    "attributes",
    "is_visible",
    "fingerprint",
    "is_stable",
    "last_seen_at",
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_snapshot(snapshot: DomNode | None, html: str | None) -> DomNode:
    """Accept either a client-side node tree or raw markup."""
    if snapshot is not None:
        return snapshot
    if html is not None:
        return parse_html(html)
    raise ValidationError("Either snapshot or html is required")


def _discovered_row(element: DiscoveredElement, feature_slug: str, page_path: str) -> dict[str, Any]:
    row = element.model_dump()
    row.update(
        id=uuid4(),
        feature_slug=feature_slug,
        page_path=page_path,
        element_type=element.element_type.value,
    )
    return row


class DiscoveryEngine:
    def __init__(self, gateways: GatewayFactory, settings: Settings) -> None:
        self._gateways = gateways
        self._max_elements = settings.max_elements_per_page
        self._min_size = settings.min_element_size_px
        self._threshold = settings.suggestion_confidence_threshold
        self._base_url = settings.suggestion_base_url
        self._recent_limit = settings.discovery_recent_elements_limit
        self._monitors: dict[UUID, DomMonitor] = {}
        self._session_lock = asyncio.Lock()

    def _effective(self, overrides: DiscoverySettings | None) -> DiscoverySettings:
        if overrides is not None:
            return overrides
        return DiscoverySettings(max_elements_per_page=self._max_elements)

    # scanning

    async def _store(
        self,
        gateway: TenantGateway,
        feature_slug: str,
        page_path: str,
        elements: Iterable[DiscoveredElement],
    ) -> int:
        stored = 0
        for element in elements:
            await gateway.upsert(
                DISCOVERED_TABLE,
                _discovered_row(element, feature_slug, page_path),
                conflict=["fingerprint", "css_selector"],
                update=_DISCOVERED_UPDATE_COLUMNS,
            )
            stored += 1
        return stored

    async def _active_session_row(self, gateway: TenantGateway, feature_slug: str) -> dict[str, Any] | None:
        return await gateway.get(
            SESSIONS_TABLE,
            {"feature_slug": feature_slug, "status": DiscoverySessionStatus.ACTIVE.value},
        )

    async def _count_in_session(
        self,
        gateway: TenantGateway,
        session: Mapping[str, Any],
        page_path: str,
        discovered: int,
    ) -> None:
        pages = list(session.get("pages_scanned") or [])
        assign = {}
        if page_path not in pages:
            assign["pages_scanned"] = [*pages, page_path]
        await gateway.increment(
            SESSIONS_TABLE,
            {"id": session["id"]},
            {"elements_discovered": discovered},
            assign=assign,
        )

    async def scan_page_elements(
        self,
        tenant_id: UUID,
        feature_slug: str,
        page_path: str,
        snapshot: DomNode,
        settings: DiscoverySettings | None = None,
    ) -> list[DiscoveredElement]:
        """Extract interactive elements from ``snapshot`` and persist them."""
        started = _utcnow()
        elements = extract_elements(
            snapshot,
            self._effective(settings),
            min_size=self._min_size,
            now=started,
        )
        gateway = self._gateways(tenant_id)
        await self._store(gateway, feature_slug, page_path, elements)
        session = await self._active_session_row(gateway, feature_slug)
        if session is not None:
            await self._count_in_session(gateway, session, page_path, len(elements))
        logger.info(
            "page scanned",
            tenant_id=str(tenant_id),
            feature_slug=feature_slug,
            page_path=page_path,
            elements=len(elements),
            duration_ms=int((_utcnow() - started).total_seconds() * 1000),
        )
        return elements

    async def scan_pages(
        self,
        tenant_id: UUID,
        feature_slug: str,
        snapshots: Mapping[str, DomNode],
        settings: DiscoverySettings | None = None,
    ) -> dict[str, list[DiscoveredElement]]:
        """Scan several pages; a page that fails yields an empty list."""
        results: dict[str, list[DiscoveredElement]] = {}
        for page_path, snapshot in snapshots.items():
            try:
                results[page_path] = await self.scan_page_elements(
                    tenant_id, feature_slug, page_path, snapshot, settings
                )
            except WebhookServiceError as exc:
                logger.warning(
                    "page scan failed", feature_slug=feature_slug, page_path=page_path, code=exc.code, error=exc.message
                )
                results[page_path] = []
        return results

    async def compare_element_changes(
        self,
        tenant_id: UUID,
        feature_slug: str,
        page_path: str,
        snapshot: DomNode,
        settings: DiscoverySettings | None = None,
    ) -> ElementChanges:
        """Diff a fresh scan against the registered elements of the page by element id."""
        registered = await self.get_registered_elements(tenant_id, feature_slug=feature_slug, page_path=page_path)
        current = await self.scan_page_elements(tenant_id, feature_slug, page_path, snapshot, settings)

        previous = {element.element_id: element for element in registered}
        changes = ElementChanges()
        seen: set[str] = set()
        for element in current:
            seen.add(element.element_id)
            old = previous.get(element.element_id)
            if old is None:
                changes.added.append(element)
                continue
            diff = {
                name: FieldChange(old_value=getattr(old, name), new_value=getattr(element, name))
                for name in COMPARED_FIELDS
                if getattr(old, name) != getattr(element, name)
            }
            if diff:
                changes.modified.append(ModifiedElement(element_id=element.element_id, changes=diff))
            else:
                changes.unchanged.append(element)
        changes.removed = [element for element_id, element in previous.items() if element_id not in seen]
        return changes

    def suggest_webhook_mappings(self, elements: Iterable[DiscoveredElement]) -> list[WebhookSuggestion]:
        return suggest(elements, base_url=self._base_url, threshold=self._threshold)

    # registry

    async def register_element(
        self,
        tenant_id: UUID,
        feature_slug: str,
        page_path: str,
        element: DiscoveredElement,
        *,
        display_name: str | None = None,
        description: str | None = None,
        user_id: UUID | None = None,
    ) -> RegisteredElement:
        gateway = self._gateways(tenant_id)
        key = {"feature_slug": feature_slug, "page_path": page_path, "element_id": element.element_id}
        existing = await gateway.get(REGISTRY_TABLE, key)
        now = _utcnow()
        row = await gateway.upsert(
            REGISTRY_TABLE,
            {
                "id": uuid4(),
                **key,
                "element_type": element.element_type.value,
                "display_name": display_name or element.text_content or element.element_id,
                "description": description,
                "css_selector": element.css_selector,
                "xpath": element.xpath,
                "text_content": element.text_content,
                "attributes": element.attributes,
                "is_visible": element.is_visible,
                "fingerprint": element.fingerprint,
                "is_stable": existing is None or existing.get("fingerprint") == element.fingerprint,
                "last_seen_at": now,
                "registered_by": user_id,
                "registered_at": now,
            },
            conflict=["feature_slug", "page_path", "element_id"],
            update=_REGISTRY_UPDATE_COLUMNS,
        )
        logger.info(
            "element registered",
            tenant_id=str(tenant_id),
            feature_slug=feature_slug,
            page_path=page_path,
            element_id=element.element_id,
            updated=existing is not None,
        )
        return RegisteredElement.model_validate(row)

    async def update_registered_element(
        self,
        tenant_id: UUID,
        registration_id: UUID,
        data: RegisteredElementUpdate,
    ) -> RegisteredElement:
        patch = data.model_dump(exclude_unset=True)
        patch["last_seen_at"] = _utcnow()
        rows = await self._gateways(tenant_id).update(REGISTRY_TABLE, {"id": registration_id}, patch)
        if not rows:
            raise NotFoundError("Registered element not found", details={"id": str(registration_id)})
        return RegisteredElement.model_validate(rows[0])

    async def get_registered_elements(
        self,
        tenant_id: UUID,
        *,
        feature_slug: str | None = None,
        page_path: str | None = None,
    ) -> list[RegisteredElement]:
        filters: dict[str, Any] = {}
        if feature_slug is not None:
            filters["feature_slug"] = feature_slug
        if page_path is not None:
            filters["page_path"] = page_path
        gateway = self._gateways(tenant_id)
        rows = await gateway.query(REGISTRY_TABLE, filters, order=[("page_path", "asc"), ("element_id", "asc")])
        if not rows:
            return []

        webhook_filters = {"is_active": True, **filters}
        webhooks = await gateway.query(WEBHOOKS_TABLE, webhook_filters, include_global=True)
        bound = Counter((row["page_path"], row["element_id"]) for row in webhooks)
        elements = []
        for row in rows:
            count = bound[(row["page_path"], row["element_id"])]
            elements.append(
                RegisteredElement.model_validate({**row, "webhook_count": count, "has_active_webhook": count > 0})
            )
        return elements

    # live sessions

    async def start_auto_discovery(
        self,
        tenant_id: UUID,
        feature_slug: str,
        page_path: str,
        settings: DiscoverySettings | None = None,
        *,
        user_id: UUID | None = None,
    ) -> DomMonitor:
        """Open a session for ``feature_slug`` and return its mutation monitor."""
        effective = self._effective(settings)
        gateway = self._gateways(tenant_id)
        async with self._session_lock:
            active = await self._active_session_row(gateway, feature_slug)
            if active is not None:
                raise DiscoveryInProgressError(
                    "Discovery is already running for this feature",
                    details={"feature_slug": feature_slug, "session_id": str(active["id"])},
                )
            row = await gateway.insert(
                SESSIONS_TABLE,
                {
                    "id": uuid4(),
                    "feature_slug": feature_slug,
                    "status": DiscoverySessionStatus.ACTIVE.value,
                    "started_at": _utcnow(),
                    "completed_at": None,
                    "elements_discovered": 0,
                    "pages_scanned": [page_path],
                    "settings": effective.model_dump(mode="json"),
                },
            )
        session = DiscoverySession.model_validate(row)

        async def handle(mutations: list[MutationRecord]) -> None:
            await self._handle_mutations(tenant_id, session, page_path, effective, mutations, user_id=user_id)

        monitor = DomMonitor(session.id, page_path, handle)
        monitor.start()
        self._monitors[session.id] = monitor
        logger.info(
            "auto discovery started",
            tenant_id=str(tenant_id),
            feature_slug=feature_slug,
            session_id=str(session.id),
            auto_approve=effective.auto_approve,
        )
        return monitor

    async def _handle_mutations(
        self,
        tenant_id: UUID,
        session: DiscoverySession,
        page_path: str,
        settings: DiscoverySettings,
        mutations: list[MutationRecord],
        *,
        user_id: UUID | None,
    ) -> None:
        nodes: list[DomNode] = []
        for mutation in mutations:
            if mutation.type == "child_list":
                nodes.extend(mutation.added_nodes)
            elif mutation.attribute_name in WATCHED_ATTRIBUTES and mutation.target is not None:
                nodes.append(mutation.target)

        now = _utcnow()
        found: list[DiscoveredElement] = []
        for node in nodes:
            extracted = extract_elements(node, settings, min_size=self._min_size, now=now)
            found.extend(element for element in extracted if element.is_interactable)
        if not found:
            return

        gateway = self._gateways(tenant_id)
        await self._store(gateway, session.feature_slug, page_path, found)
        await gateway.increment(SESSIONS_TABLE, {"id": session.id}, {"elements_discovered": len(found)})
        if settings.auto_approve:
            for element in found:
                await self.register_element(
                    tenant_id, session.feature_slug, page_path, element, user_id=user_id
                )
        logger.info(
            "elements discovered from mutations",
            session_id=str(session.id),
            elements=len(found),
            auto_approved=settings.auto_approve,
        )

    async def _get_session(self, tenant_id: UUID, session_id: UUID) -> DiscoverySession:
        row = await self._gateways(tenant_id).get(SESSIONS_TABLE, {"id": session_id})
        if row is None:
            raise NotFoundError("Discovery session not found", details={"session_id": str(session_id)})
        return DiscoverySession.model_validate(row)

    async def submit_mutations(
        self,
        tenant_id: UUID,
        session_id: UUID,
        mutations: list[MutationRecord],
    ) -> int:
        session = await self._get_session(tenant_id, session_id)
        monitor = self._monitors.get(session_id)
        if session.status != DiscoverySessionStatus.ACTIVE or monitor is None:
            raise DiscoveryError(
                "Discovery session is not active",
                details={"session_id": str(session_id), "status": session.status.value},
            )
        return monitor.submit(mutations)

    async def stop_auto_discovery(self, tenant_id: UUID, session_id: UUID) -> DiscoverySession:
        session = await self._get_session(tenant_id, session_id)
        monitor = self._monitors.pop(session_id, None)
        if monitor is not None:
            await monitor.stop()
        if session.status == DiscoverySessionStatus.COMPLETED:
            return session
        rows = await self._gateways(tenant_id).update(
            SESSIONS_TABLE,
            {"id": session_id},
            {"status": DiscoverySessionStatus.COMPLETED.value, "completed_at": _utcnow()},
        )
        logger.info("auto discovery stopped", tenant_id=str(tenant_id), session_id=str(session_id))
        return DiscoverySession.model_validate(rows[0])

    async def get_discovery_status(self, tenant_id: UUID, session_id: UUID) -> DiscoveryStatus:
        session = await self._get_session(tenant_id, session_id)
        rows = await self._gateways(tenant_id).query(
            DISCOVERED_TABLE,
            {"feature_slug": session.feature_slug, "discovered_at": Gte(session.started_at)},
            order=[("discovered_at", "desc")],
        )
        elements = [DiscoveredElement.model_validate(row) for row in rows]
        by_type: dict[str, int] = defaultdict(int)
        for element in elements:
            by_type[element.element_type.value] += 1
        return DiscoveryStatus(
            session=session,
            recent_elements=elements[: self._recent_limit],
            statistics=DiscoveryStatistics(
                total_elements=len(elements),
                by_type=dict(by_type),
                interactable=sum(1 for element in elements if element.is_interactable),
            ),
        )

    async def close(self) -> None:
        """Stop every live monitor; sessions stay active in storage."""
        monitors = list(self._monitors.values())
        self._monitors.clear()
        for monitor in monitors:
            await monitor.stop()
