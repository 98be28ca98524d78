"""Assignment management and resolution of trigger points to webhooks."""
from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID, uuid4

import structlog

from webhook_service.core.exceptions import ConflictError, NotFoundError, StorageError
from webhook_service.domain.dto import AssignmentCreate
from webhook_service.domain.models import Assignment, WebhookDefinition
from webhook_service.services.gateway import GatewayFactory, TenantGateway
from webhook_service.settings import Settings

logger = structlog.get_logger(__name__)

TABLE = "webhook_assignments"
WEBHOOKS_TABLE = "webhook_definitions"

AUTO_PROVISION_PRIORITY = 0


class AssignmentService:
    """Resolves (page, position) to an assignment: tenant first, then global.

    Designated critical flows get a global assignment provisioned on first use
    when nothing is configured. ``None`` from :meth:`resolve` means "not
    configured" and is a normal outcome.
    """

    def __init__(self, gateways: GatewayFactory, settings: Settings) -> None:
        self._gateways = gateways
        self._critical_flows = frozenset(settings.critical_flows)
        self._keywords = tuple(keyword.lower() for keyword in settings.auto_provision_keywords)
        self._feature_slug = settings.auto_provision_feature_slug

    def is_critical_flow(self, page: str, position: str) -> bool:
        return f"{page}/{position}" in self._critical_flows

    async def _find_active(self, gateway: TenantGateway, page: str, position: str, *, scope_global: bool) -> Assignment | None:
        filters = {"page": page, "position": position, "is_active": True}
        if scope_global:
            rows = await gateway.query(
                TABLE, filters, include_global=True, order=[("priority", "desc"), ("created_at", "asc")]
            )
            rows = [row for row in rows if row.get("tenant_id") is None]
        else:
            rows = await gateway.query(
                TABLE, filters, order=[("priority", "desc"), ("created_at", "asc")], limit=1
            )
        return Assignment.model_validate(rows[0]) if rows else None

    async def resolve(
        self,
        tenant_id: UUID,
        page: str,
        position: str,
        *,
        user_id: UUID | None = None,
    ) -> Assignment | None:
        gateway = self._gateways(tenant_id)
        assignment = await self._find_active(gateway, page, position, scope_global=False)
        if assignment is None:
            assignment = await self._find_active(gateway, page, position, scope_global=True)
        if assignment is None and self.is_critical_flow(page, position):
            assignment = await self._auto_provision(gateway, page, position, user_id=user_id)
        if assignment is None:
            logger.debug("no webhook assignment configured", page=page, position=position)
        return assignment

    def _matches_keywords(self, webhook: WebhookDefinition) -> bool:
        name = (webhook.display_name or "").lower()
        return any(keyword in name for keyword in self._keywords)

    async def _auto_provision(
        self,
        gateway: TenantGateway,
        page: str,
        position: str,
        *,
        user_id: UUID | None,
    ) -> Assignment | None:
        # Global assignments may only point at global webhooks.
        try:
            rows = await gateway.query(
                WEBHOOKS_TABLE,
                {"is_active": True},
                include_global=True,
                order=[("created_at", "asc")],
            )
            candidates = [
                WebhookDefinition.model_validate(row) for row in rows if row.get("tenant_id") is None
            ]
            webhook = next((w for w in candidates if self._matches_keywords(w)), None)
            if webhook is None:
                logger.warning("no suitable webhook for auto-provisioned assignment", page=page, position=position)
                return None

            now = datetime.now(timezone.utc)
            row = await gateway.insert(
                TABLE,
                {
                    "id": uuid4(),
                    "feature_slug": self._feature_slug,
                    "page": page,
                    "position": position,
                    "webhook_id": webhook.id,
                    "label": f"Auto-created: {page} {position}",
                    "description": (
                        f"Automatically created global webhook assignment for {page}:{position}"
                    ),
                    "is_active": True,
                    "priority": AUTO_PROVISION_PRIORITY,
                    "created_by": user_id,
                    "updated_by": user_id,
                    "created_at": now,
                    "updated_at": now,
                },
                global_row=True,
            )
        except StorageError as exc:
            logger.error("assignment auto-provisioning failed", page=page, position=position, error=exc.message)
            return None
        except ConflictError:
            # Another caller provisioned it concurrently.
            return await self._find_active(gateway, page, position, scope_global=True)

        logger.info(
            "auto-provisioned global assignment",
            page=page,
            position=position,
            webhook_id=str(webhook.id),
        )
        return Assignment.model_validate(row)

    async def create_assignment(
        self,
        tenant_id: UUID,
        data: AssignmentCreate,
        *,
        user_id: UUID | None = None,
    ) -> Assignment:
        gateway = self._gateways(tenant_id)
        webhook_row = await gateway.get(WEBHOOKS_TABLE, {"id": data.webhook_id}, include_global=True)
        if webhook_row is None:
            raise NotFoundError("Webhook not found", details={"webhook_id": str(data.webhook_id)})

        existing = await self._find_active(gateway, data.page, data.position, scope_global=data.is_global)
        if existing is not None:
            raise ConflictError(
                "An active assignment already exists for this page and position",
                details={"assignment_id": str(existing.id)},
            )

        now = datetime.now(timezone.utc)
        row = await gateway.insert(
            TABLE,
            {
                "id": uuid4(),
                "feature_slug": data.feature_slug,
                "page": data.page,
                "position": data.position,
                "webhook_id": data.webhook_id,
                "label": data.label,
                "description": data.description,
                "is_active": True,
                "priority": data.priority,
                "created_by": user_id,
                "updated_by": user_id,
                "created_at": now,
                "updated_at": now,
            },
            global_row=data.is_global,
        )
        return Assignment.model_validate(row)

    async def list_assignments(
        self,
        tenant_id: UUID,
        *,
        page: str | None = None,
        include_inactive: bool = False,
    ) -> list[Assignment]:
        filters: dict[str, object] = {}
        if page is not None:
            filters["page"] = page
        if not include_inactive:
            filters["is_active"] = True
        rows = await self._gateways(tenant_id).query(
            TABLE, filters, include_global=True, order=[("page", "asc"), ("position", "asc")]
        )
        return [Assignment.model_validate(row) for row in rows]

    async def disable_assignment(
        self,
        tenant_id: UUID,
        assignment_id: UUID,
        *,
        user_id: UUID | None = None,
        allow_global: bool = False,
    ) -> Assignment:
        rows = await self._gateways(tenant_id).update(
            TABLE,
            {"id": assignment_id},
            {"is_active": False, "updated_by": user_id, "updated_at": datetime.now(timezone.utc)},
            include_global=allow_global,
        )
        if not rows:
            raise NotFoundError("Assignment not found", details={"assignment_id": str(assignment_id)})
        return Assignment.model_validate(rows[0])
