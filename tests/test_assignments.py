from __future__ import annotations

import uuid

import pytest

from webhook_service.core.exceptions import ConflictError, NotFoundError
from webhook_service.domain.dto import AssignmentCreate
from webhook_service.services.assignments import AssignmentService

from tests.utils import create_webhook

CRITICAL_PAGE = "ManageFiles"
CRITICAL_POSITION = "upload-section"


@pytest.fixture
def service(gateways, settings) -> AssignmentService:
    return AssignmentService(gateways, settings)


async def test_critical_flow_auto_provisions_global_assignment(service, gateways, settings, store):
    admin_tenant = uuid.uuid4()
    webhook = await create_webhook(
        gateways,
        settings,
        admin_tenant,
        "https://hooks.example.com/upload",
        display_name="File upload processor",
        is_global=True,
    )
    tenant_x = uuid.uuid4()

    assignment = await service.resolve(tenant_x, CRITICAL_PAGE, CRITICAL_POSITION)

    assert assignment is not None
    assert assignment.tenant_id is None
    assert assignment.webhook_id == webhook.id
    assert assignment.page == CRITICAL_PAGE
    assert assignment.position == CRITICAL_POSITION

    again = await service.resolve(uuid.uuid4(), CRITICAL_PAGE, CRITICAL_POSITION)
    assert again is not None
    assert again.id == assignment.id
    assert len(store.rows("webhook_assignments")) == 1


async def test_auto_provision_ignores_tenant_webhooks(service, gateways, settings, tenant_id):
    await create_webhook(gateways, settings, tenant_id, "https://hooks.example.com/u", display_name="upload")

    assert await service.resolve(tenant_id, CRITICAL_PAGE, CRITICAL_POSITION) is None


async def test_unconfigured_trigger_resolves_to_none(service, tenant_id):
    assert await service.resolve(tenant_id, "Dashboard", "refresh") is None


async def test_tenant_assignment_takes_precedence(service, gateways, settings, tenant_id):
    global_hook = await create_webhook(gateways, settings, uuid.uuid4(), "https://g.example.com", is_global=True)
    own_hook = await create_webhook(gateways, settings, tenant_id, "https://t.example.com")
    await service.create_assignment(
        tenant_id,
        AssignmentCreate(feature_slug="kb", page="Files", position="export", webhook_id=global_hook.id, is_global=True),
    )
    assert (await service.resolve(tenant_id, "Files", "export")).webhook_id == global_hook.id

    await service.create_assignment(
        tenant_id,
        AssignmentCreate(feature_slug="kb", page="Files", position="export", webhook_id=own_hook.id),
    )
    resolved = await service.resolve(tenant_id, "Files", "export")
    assert resolved.webhook_id == own_hook.id
    assert resolved.tenant_id == tenant_id


async def test_duplicate_active_assignment_conflicts(service, gateways, settings, tenant_id):
    hook = await create_webhook(gateways, settings, tenant_id, "https://t.example.com")
    data = AssignmentCreate(feature_slug="kb", page="Files", position="export", webhook_id=hook.id)
    await service.create_assignment(tenant_id, data)

    with pytest.raises(ConflictError):
        await service.create_assignment(tenant_id, data)


async def test_disabled_assignment_no_longer_resolves(service, gateways, settings, tenant_id):
    hook = await create_webhook(gateways, settings, tenant_id, "https://t.example.com")
    created = await service.create_assignment(
        tenant_id, AssignmentCreate(feature_slug="kb", page="Files", position="export", webhook_id=hook.id)
    )

    disabled = await service.disable_assignment(tenant_id, created.id)

    assert not disabled.is_active
    assert await service.resolve(tenant_id, "Files", "export") is None
    assert await service.list_assignments(tenant_id) == []
    assert len(await service.list_assignments(tenant_id, include_inactive=True)) == 1


async def test_assignment_requires_visible_webhook(service, tenant_id):
    with pytest.raises(NotFoundError):
        await service.create_assignment(
            tenant_id,
            AssignmentCreate(feature_slug="kb", page="Files", position="export", webhook_id=uuid.uuid4()),
        )
