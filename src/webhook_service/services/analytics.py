"""Execution history, metrics and health scoring."""
from __future__ import annotations

import math
from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from webhook_service.core.exceptions import NotFoundError, ValidationError
from webhook_service.domain.enums import (
    EscalationLevel,
    ExecutionErrorType,
    ExecutionStatus,
    OverallHealth,
)
from webhook_service.domain.models import (
    ErrorCount,
    ExecutionMetrics,
    ExecutionRecord,
    FailedExecution,
    HourlyBucket,
    Recommendation,
    TimeRange,
    WebhookPerformance,
)
from webhook_service.services.gateway import GatewayFactory
from webhook_service.settings import Settings
from webhook_service.storage.base import Gte

RECORDS_TABLE = "execution_records"
WEBHOOKS_TABLE = "webhook_definitions"

SORTABLE_FIELDS = ("started_at", "completed_at", "response_time_ms", "status")
TOP_ERRORS = 5

TARGET_SUCCESS_RATE = 0.95
SLOW_RESPONSE_MS = 5000


def percentile(sorted_values: list[int], fraction: float) -> float:
    """Nearest-rank style: ``sorted_values[floor(n * fraction)]``."""
    if not sorted_values:
        return 0.0
    index = min(math.floor(len(sorted_values) * fraction), len(sorted_values) - 1)
    return float(sorted_values[index])


def health_score(success_rate: float, average_response_time: float, total_executions: int) -> int:
    if total_executions == 0:
        return 0
    score = 100.0
    if success_rate < TARGET_SUCCESS_RATE:
        score -= (TARGET_SUCCESS_RATE - success_rate) * 200
    if average_response_time > SLOW_RESPONSE_MS:
        score -= (average_response_time - SLOW_RESPONSE_MS) / 100
    return round(max(0.0, min(100.0, score)))


def overall_health(score: int) -> OverallHealth:
    if score >= 90:
        return OverallHealth.EXCELLENT
    if score >= 70:
        return OverallHealth.GOOD
    if score >= 40:
        return OverallHealth.POOR
    return OverallHealth.CRITICAL


def escalation_level(record: ExecutionRecord) -> EscalationLevel:
    error_type = record.error.type if record.error else None
    elapsed = record.response_time_ms
    if error_type == ExecutionErrorType.EXECUTION_ERROR or elapsed > 30_000:
        return EscalationLevel.CRITICAL
    if error_type == ExecutionErrorType.TIMEOUT or elapsed > 10_000:
        return EscalationLevel.HIGH
    if error_type == ExecutionErrorType.NETWORK_ERROR or elapsed > 5_000:
        return EscalationLevel.MEDIUM
    return EscalationLevel.LOW


def recommendations(metrics: ExecutionMetrics) -> list[Recommendation]:
    result = []
    if metrics.total_executions and metrics.success_rate < TARGET_SUCCESS_RATE:
        result.append(
            Recommendation(
                type="reliability",
                priority="high",
                title="Low success rate",
                description=(
                    f"Success rate is {metrics.success_rate * 100:.1f}%. "
                    "Review error patterns and endpoint reliability."
                ),
                action_required=True,
            )
        )
    if metrics.average_response_time > SLOW_RESPONSE_MS:
        result.append(
            Recommendation(
                type="performance",
                priority="medium",
                title="Slow response times",
                description=(
                    f"Average response time is {metrics.average_response_time:.0f}ms. "
                    "Consider optimizing the endpoint."
                ),
            )
        )
    if metrics.errors_by_type:
        result.append(
            Recommendation(
                type="configuration",
                priority="medium",
                title="Error pattern analysis",
                description="Errors were recorded. Review webhook configuration and endpoint compatibility.",
            )
        )
    return result


def _rate(successful: int, total: int) -> float:
    return round(successful / total, 4) if total else 0.0


def _mean(values: list[int]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


def summarize(webhook_id: UUID, records: list[ExecutionRecord], time_range: TimeRange) -> ExecutionMetrics:
    total = len(records)
    successful = sum(1 for r in records if r.status == ExecutionStatus.SUCCESS)
    times = sorted(r.response_time_ms for r in records)

    errors_by_type: Counter[str] = Counter()
    messages: Counter[str] = Counter()
    for record in records:
        if record.error is not None:
            errors_by_type[record.error.type.value] += 1
            messages[record.error.message] += 1

    by_hour: dict[datetime, list[ExecutionRecord]] = defaultdict(list)
    for record in records:
        by_hour[record.started_at.replace(minute=0, second=0, microsecond=0)].append(record)
    hourly = [
        HourlyBucket(
            hour=hour,
            count=len(items),
            success_rate=_rate(sum(1 for r in items if r.status == ExecutionStatus.SUCCESS), len(items)),
            average_response_time=_mean([r.response_time_ms for r in items]),
        )
        for hour, items in sorted(by_hour.items())
    ]

    return ExecutionMetrics(
        webhook_id=webhook_id,
        time_range=time_range,
        total_executions=total,
        successful_executions=successful,
        failed_executions=total - successful,
        success_rate=_rate(successful, total),
        average_response_time=_mean(times),
        median_response_time=percentile(times, 0.5),
        p95_response_time=percentile(times, 0.95),
        p99_response_time=percentile(times, 0.99),
        errors_by_type=dict(errors_by_type),
        top_errors=[ErrorCount(message=m, count=c) for m, c in messages.most_common(TOP_ERRORS)],
        hourly=hourly,
    )


class ExecutionAnalytics:
    """Read side over persisted execution records."""

    def __init__(self, gateways: GatewayFactory, settings: Settings) -> None:
        self._gateways = gateways
        self._max_page_size = settings.execution_history_max_page_size
        self._failed_limit = settings.failed_executions_limit

    async def _ensure_webhook(self, tenant_id: UUID, webhook_id: UUID) -> None:
        row = await self._gateways(tenant_id).get(WEBHOOKS_TABLE, {"id": webhook_id}, include_global=True)
        if row is None:
            raise NotFoundError("Webhook not found", details={"webhook_id": str(webhook_id)})

    async def get_record(self, tenant_id: UUID, execution_id: UUID) -> ExecutionRecord:
        row = await self._gateways(tenant_id).get(RECORDS_TABLE, {"id": execution_id})
        if row is None:
            raise NotFoundError("Execution not found", details={"execution_id": str(execution_id)})
        return ExecutionRecord.model_validate(row)

    async def get_execution_logs(self, tenant_id: UUID, execution_id: UUID) -> list[ExecutionRecord]:
        """Full records (request, response and context snapshots) for one execution."""
        rows = await self._gateways(tenant_id).query(
            RECORDS_TABLE,
            {"id": execution_id},
            order=[("started_at", "asc")],
        )
        return [ExecutionRecord.model_validate(row) for row in rows]

    async def get_execution_history(
        self,
        tenant_id: UUID,
        *,
        webhook_id: UUID | None = None,
        status: ExecutionStatus | None = None,
        page: int = 1,
        limit: int = 50,
        sort_by: str = "started_at",
        sort_order: str = "desc",
    ) -> tuple[list[ExecutionRecord], int]:
        if sort_by not in SORTABLE_FIELDS:
            raise ValidationError("Unsupported sort field", details={"sort_by": sort_by, "allowed": list(SORTABLE_FIELDS)})
        if sort_order.lower() not in ("asc", "desc"):
            raise ValidationError("sort_order must be asc or desc", details={"sort_order": sort_order})
        page = max(page, 1)
        limit = max(1, min(limit, self._max_page_size))

        filters: dict[str, Any] = {}
        if webhook_id is not None:
            filters["webhook_id"] = webhook_id
        if status is not None:
            filters["status"] = status.value
        gateway = self._gateways(tenant_id)
        rows = await gateway.query(
            RECORDS_TABLE,
            filters,
            order=[(sort_by, sort_order.lower())],
            limit=limit,
            offset=(page - 1) * limit,
        )
        total = await gateway.count(RECORDS_TABLE, filters)
        return [ExecutionRecord.model_validate(row) for row in rows], total

    async def get_failed_executions(
        self,
        tenant_id: UUID,
        *,
        webhook_id: UUID | None = None,
        limit: int | None = None,
    ) -> list[FailedExecution]:
        filters: dict[str, Any] = {"status": ExecutionStatus.FAILURE.value}
        if webhook_id is not None:
            filters["webhook_id"] = webhook_id
        rows = await self._gateways(tenant_id).query(
            RECORDS_TABLE,
            filters,
            order=[("started_at", "desc")],
            limit=min(limit or self._failed_limit, self._failed_limit),
        )
        failed = []
        for row in rows:
            record = ExecutionRecord.model_validate(row)
            failed.append(FailedExecution(record=record, escalation_level=escalation_level(record)))
        return failed

    async def get_execution_metrics(
        self,
        tenant_id: UUID,
        webhook_id: UUID,
        time_range: TimeRange | None = None,
    ) -> ExecutionMetrics:
        await self._ensure_webhook(tenant_id, webhook_id)
        if time_range is None:
            end = datetime.now(timezone.utc)
            time_range = TimeRange(start=end - timedelta(hours=24), end=end)
        rows = await self._gateways(tenant_id).query(
            RECORDS_TABLE,
            {"webhook_id": webhook_id, "started_at": Gte(time_range.start)},
            order=[("started_at", "asc")],
        )
        records = [ExecutionRecord.model_validate(row) for row in rows]
        records = [r for r in records if r.started_at <= time_range.end]
        return summarize(webhook_id, records, time_range)

    async def get_webhook_performance(self, tenant_id: UUID, webhook_id: UUID) -> WebhookPerformance:
        metrics = await self.get_execution_metrics(tenant_id, webhook_id)
        score = health_score(metrics.success_rate, metrics.average_response_time, metrics.total_executions)
        return WebhookPerformance(
            webhook_id=webhook_id,
            overall_health=overall_health(score),
            health_score=score,
            success_rate=metrics.success_rate,
            average_response_time=metrics.average_response_time,
            total_executions=metrics.total_executions,
            recommendations=recommendations(metrics),
        )
