from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from webhook_service.core.exceptions import NotFoundError, ValidationError
from webhook_service.domain.enums import EscalationLevel, ExecutionStatus, OverallHealth
from webhook_service.domain.models import ExecutionError, ExecutionRecord, TimeRange
from webhook_service.services.analytics import (
    ExecutionAnalytics,
    escalation_level,
    health_score,
    overall_health,
    percentile,
    summarize,
)

from tests.utils import create_webhook

NOW = datetime.now(timezone.utc).replace(microsecond=0)


def _record(webhook_id: uuid.UUID, tenant_id: uuid.UUID, *, ok: bool = True, ms: int = 100, minutes_ago: int = 0, error_type: str = "EDGE_FUNCTION_ERROR") -> dict:
    started = NOW - timedelta(minutes=minutes_ago)
    return {
        "id": uuid.uuid4(),
        "webhook_id": webhook_id,
        "tenant_id": tenant_id,
        "feature_slug": "knowledge-base",
        "page_path": "/files",
        "element_id": "upload-btn",
        "event_type": "click",
        "status": "success" if ok else "failure",
        "status_code": 200 if ok else 500,
        "response_time_ms": ms,
        "error": None if ok else {"type": error_type, "message": f"{error_type} happened", "details": {}, "retryable": True},
        "started_at": started,
        "completed_at": started + timedelta(milliseconds=ms),
    }


async def _seed(gateways, tenant_id, webhook_id, records) -> None:
    gateway = gateways(tenant_id)
    for overrides in records:
        await gateway.insert("execution_records", _record(webhook_id, tenant_id, **overrides))


@pytest.fixture
def analytics(gateways, settings) -> ExecutionAnalytics:
    return ExecutionAnalytics(gateways, settings)


def test_percentile_uses_nearest_rank():
    values = list(range(1, 101))
    assert percentile(values, 0.5) == 51.0
    assert percentile(values, 0.99) == 100.0
    assert percentile([], 0.5) == 0.0


def test_health_score_and_band():
    assert health_score(1.0, 200, 10) == 100
    assert health_score(0.0, 200, 0) == 0
    assert health_score(0.85, 200, 10) == 80
    assert overall_health(95) == OverallHealth.EXCELLENT
    assert overall_health(80) == OverallHealth.GOOD
    assert overall_health(50) == OverallHealth.POOR
    assert overall_health(10) == OverallHealth.CRITICAL


@pytest.mark.parametrize(
    ("error_type", "ms", "expected"),
    [
        ("EXECUTION_ERROR", 10, EscalationLevel.CRITICAL),
        ("TIMEOUT", 10, EscalationLevel.HIGH),
        ("NETWORK_ERROR", 10, EscalationLevel.MEDIUM),
        ("EDGE_FUNCTION_ERROR", 10, EscalationLevel.LOW),
        ("EDGE_FUNCTION_ERROR", 31_000, EscalationLevel.CRITICAL),
    ],
)
def test_escalation_level(error_type, ms, expected):
    record = ExecutionRecord.model_validate(_record(uuid.uuid4(), uuid.uuid4(), ok=False, ms=ms, error_type=error_type))
    assert escalation_level(record) == expected


def test_summarize_counts_errors_and_hours():
    webhook_id, tenant_id = uuid.uuid4(), uuid.uuid4()
    records = [
        ExecutionRecord.model_validate(_record(webhook_id, tenant_id, ms=ms))
        for ms in (100, 200, 300)
    ] + [ExecutionRecord.model_validate(_record(webhook_id, tenant_id, ok=False, ms=400, error_type="TIMEOUT"))]

    metrics = summarize(webhook_id, records, TimeRange(start=NOW - timedelta(hours=1), end=NOW))

    assert metrics.total_executions == 4
    assert metrics.failed_executions == 1
    assert metrics.success_rate == 0.75
    assert metrics.average_response_time == 250.0
    assert metrics.errors_by_type == {"TIMEOUT": 1}
    assert metrics.top_errors[0].count == 1
    assert sum(bucket.count for bucket in metrics.hourly) == 4


async def test_execution_history_pages_and_filters(analytics, gateways, settings, tenant_id):
    webhook = await create_webhook(gateways, settings, tenant_id, "https://hooks.example.com")
    await _seed(
        gateways,
        tenant_id,
        webhook.id,
        [{"minutes_ago": 5}, {"minutes_ago": 4, "ok": False}, {"minutes_ago": 3}, {"minutes_ago": 2}],
    )

    first, total = await analytics.get_execution_history(tenant_id, webhook_id=webhook.id, limit=3)
    second, _ = await analytics.get_execution_history(tenant_id, webhook_id=webhook.id, limit=3, page=2)
    failures, failure_total = await analytics.get_execution_history(
        tenant_id, webhook_id=webhook.id, status=ExecutionStatus.FAILURE
    )

    assert total == 4
    assert len(first) == 3
    assert first[0].started_at > first[1].started_at
    assert len(second) == 1
    assert failure_total == 1
    assert failures[0].error is not None


async def test_execution_history_rejects_unknown_sort(analytics, tenant_id):
    with pytest.raises(ValidationError):
        await analytics.get_execution_history(tenant_id, sort_by="payload")


async def test_failed_executions_are_escalated(analytics, gateways, settings, tenant_id):
    webhook = await create_webhook(gateways, settings, tenant_id, "https://hooks.example.com")
    await _seed(gateways, tenant_id, webhook.id, [{"ok": False, "error_type": "TIMEOUT"}, {}])

    failed = await analytics.get_failed_executions(tenant_id)

    assert len(failed) == 1
    assert failed[0].escalation_level == EscalationLevel.HIGH


async def test_metrics_respect_time_range(analytics, gateways, settings, tenant_id):
    webhook = await create_webhook(gateways, settings, tenant_id, "https://hooks.example.com")
    await _seed(gateways, tenant_id, webhook.id, [{"minutes_ago": 10}, {"minutes_ago": 60 * 30}])

    metrics = await analytics.get_execution_metrics(tenant_id, webhook.id)

    assert metrics.total_executions == 1


async def test_performance_for_failing_webhook(analytics, gateways, settings, tenant_id):
    webhook = await create_webhook(gateways, settings, tenant_id, "https://hooks.example.com")
    await _seed(gateways, tenant_id, webhook.id, [{"ok": False}, {"ok": False}, {}])

    performance = await analytics.get_webhook_performance(tenant_id, webhook.id)

    assert performance.overall_health == OverallHealth.CRITICAL
    assert performance.total_executions == 3
    assert any(item.action_required for item in performance.recommendations)


async def test_metrics_for_unknown_webhook(analytics, tenant_id):
    with pytest.raises(NotFoundError):
        await analytics.get_execution_metrics(tenant_id, uuid.uuid4())


def test_error_model_round_trips_wire_names():
    error = ExecutionError.model_validate({"type": "TIMEOUT", "message": "slow", "suggestedAction": "wait"})
    assert error.to_wire()["suggestedAction"] == "wait"


async def test_execution_logs_are_tenant_scoped(analytics, gateways, settings, tenant_id):
    webhook = await create_webhook(gateways, settings, tenant_id, "https://hooks.example.com")
    record = _record(webhook.id, tenant_id)
    await gateways(tenant_id).insert("execution_records", record)

    [log] = await analytics.get_execution_logs(tenant_id, record["id"])

    assert log.id == record["id"]
    assert await analytics.get_execution_logs(uuid.uuid4(), record["id"]) == []
