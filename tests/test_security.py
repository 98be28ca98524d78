from __future__ import annotations

import uuid

import pytest

from webhook_service.core.exceptions import UnauthorizedAccessError
from webhook_service.services.security import (
    MEMBERS_TABLE,
    WARNING_LOCAL_HOST,
    WARNING_NOT_HTTPS,
    SecurityValidator,
    url_warnings,
)


@pytest.mark.parametrize(
    ("url", "environment", "expected"),
    [
        ("https://hooks.example.com/x", "production", []),
        ("http://hooks.example.com/x", "production", [WARNING_NOT_HTTPS]),
        ("https://localhost:8080/x", "production", [WARNING_LOCAL_HOST]),
        ("http://10.0.0.5/x", "staging", [WARNING_NOT_HTTPS, WARNING_LOCAL_HOST]),
        ("http://127.0.0.1:9000/x", "development", [WARNING_NOT_HTTPS]),
    ],
)
def test_url_warnings(url, environment, expected):
    assert url_warnings(url, environment=environment) == expected


async def test_foreign_binding_is_rejected(gateways, tenant_id):
    validator = SecurityValidator(gateways)
    with pytest.raises(UnauthorizedAccessError):
        await validator.validate(
            tenant_id,
            binding_tenant_id=uuid.uuid4(),
            user_id=None,
            endpoint_url="https://hooks.example.com",
        )


async def test_global_binding_is_allowed(gateways, tenant_id):
    report = await SecurityValidator(gateways).validate(
        tenant_id, binding_tenant_id=None, user_id=None, endpoint_url="https://hooks.example.com"
    )
    assert report.warnings == []


async def test_user_must_be_active_member(store, gateways, tenant_id):
    validator = SecurityValidator(gateways)
    member, former = uuid.uuid4(), uuid.uuid4()
    await store.insert(MEMBERS_TABLE, {"organization_id": tenant_id, "user_id": member, "role": "member", "is_active": True})
    await store.insert(MEMBERS_TABLE, {"organization_id": tenant_id, "user_id": former, "role": "member", "is_active": False})

    report = await validator.validate(
        tenant_id, binding_tenant_id=tenant_id, user_id=member, endpoint_url="http://hooks.example.com"
    )
    assert report.warnings == [WARNING_NOT_HTTPS]

    with pytest.raises(UnauthorizedAccessError):
        await validator.validate(
            tenant_id, binding_tenant_id=tenant_id, user_id=former, endpoint_url="https://hooks.example.com"
        )
    with pytest.raises(UnauthorizedAccessError):
        await validator.validate(
            uuid.uuid4(), binding_tenant_id=None, user_id=member, endpoint_url="https://hooks.example.com"
        )
