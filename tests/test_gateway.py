from __future__ import annotations

import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from webhook_service.core.exceptions import TransientStorageError, UnauthorizedAccessError
from webhook_service.services.gateway import GatewayFactory, RetryPolicy, TenantGateway
from webhook_service.storage import In, InMemoryDataStore
from webhook_service.storage.fieldmap import column, from_storage, to_storage

NO_WAIT = RetryPolicy(max_retries=2, base_delay=0, jitter=0)


def test_field_map_translates_both_ways():
    row = {"tenant_id": 1, "display_name": "Upload", "endpoint_url": "https://x", "page_path": "/p"}
    stored = to_storage("webhook_definitions", row)
    assert stored == {"organization_id": 1, "name": "Upload", "webhook_url": "https://x", "page_path": "/p"}
    assert from_storage("webhook_definitions", stored) == row
    assert column("webhook_assignments", "page") == "feature_page"
    assert column("execution_records", "error") == "error_details"


async def test_insert_stamps_caller_tenant(store, gateways, tenant_id):
    row = await gateways(tenant_id).insert("webhook_definitions", {"id": uuid.uuid4(), "display_name": "Upload"})

    assert row["tenant_id"] == tenant_id
    assert row["display_name"] == "Upload"
    [stored] = store.rows("webhook_definitions")
    assert stored["organization_id"] == tenant_id
    assert stored["name"] == "Upload"


async def test_query_is_scoped_to_tenant(gateways):
    tenant_a, tenant_b = uuid.uuid4(), uuid.uuid4()
    await gateways(tenant_a).insert("webhook_definitions", {"id": uuid.uuid4(), "page_path": "/a"})
    await gateways(tenant_b).insert("webhook_definitions", {"id": uuid.uuid4(), "page_path": "/b"})
    await gateways(tenant_a).insert("webhook_definitions", {"id": uuid.uuid4(), "page_path": "/g"}, global_row=True)

    own = await gateways(tenant_a).query("webhook_definitions")
    assert [row["page_path"] for row in own] == ["/a"]

    with_global = await gateways(tenant_b).query(
        "webhook_definitions", include_global=True, order=[("page_path", "asc")]
    )
    assert [row["page_path"] for row in with_global] == ["/b", "/g"]


async def test_upsert_increments_on_conflict(gateways, tenant_id):
    gateway = gateways(tenant_id)
    webhook_id = uuid.uuid4()
    bucket = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    for _ in range(3):
        row = await gateway.upsert(
            "rate_limit_windows",
            {"webhook_id": webhook_id, "bucket_start": bucket, "request_count": 1},
            conflict=["webhook_id", "bucket_start"],
            increment={"request_count": 1},
        )
    assert row["request_count"] == 3
    assert row["bucket_start"] == bucket


async def test_cross_tenant_rows_raise():
    caller, other = uuid.uuid4(), uuid.uuid4()
    store = AsyncMock()
    store.query.return_value = [{"id": uuid.uuid4(), "organization_id": other}]
    gateway = TenantGateway(store, caller, retry=NO_WAIT)

    with pytest.raises(UnauthorizedAccessError):
        await gateway.query("webhook_definitions")


async def test_transient_failures_are_retried():
    store = AsyncMock()
    row = {"id": 1, "organization_id": None}
    store.query.side_effect = [TransientStorageError("reset"), TransientStorageError("reset"), [row]]
    gateway = TenantGateway(store, uuid.uuid4(), retry=NO_WAIT)

    rows = await gateway.query("webhook_definitions", include_global=True)

    assert rows == [{"id": 1, "tenant_id": None}]
    assert store.query.await_count == 3
    scoped = store.query.await_args.args[1]
    assert isinstance(scoped["organization_id"], In)


async def test_transient_failures_give_up_after_max_retries():
    store = AsyncMock()
    store.count.side_effect = TransientStorageError("down")
    gateway = TenantGateway(store, uuid.uuid4(), retry=NO_WAIT)

    with pytest.raises(TransientStorageError):
        await gateway.count("execution_records")
    assert store.count.await_count == 3


def test_retry_delay_grows_exponentially():
    policy = RetryPolicy(max_retries=3, base_delay=0.1, jitter=0)
    assert [policy.delay(attempt) for attempt in range(3)] == pytest.approx([0.1, 0.2, 0.4])


async def test_memory_store_orders_nulls_last():
    store = InMemoryDataStore()
    for value in (2, None, 1):
        await store.insert("t", {"v": value})
    rows = await store.query("t", order=[("v", "asc")])
    assert [row["v"] for row in rows] == [1, 2, None]


async def test_factory_shares_store(store):
    factory = GatewayFactory(store, NO_WAIT)
    assert factory(uuid.uuid4())._store is store
