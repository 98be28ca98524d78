"""Webhook, assignment and execution entities.

Field names are snake_case internally; every model also accepts and emits the
camelCase wire names through its alias generator.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel

from webhook_service.domain.enums import (
    EscalationLevel,
    ExecutionErrorType,
    ExecutionStatus,
    HealthStatus,
    HttpMethod,
    OverallHealth,
)


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class WebhookDefinition(ApiModel):
    id: UUID
    tenant_id: UUID | None = None
    feature_slug: str
    page_path: str
    element_id: str
    element_type: str | None = None
    display_name: str | None = None
    endpoint_url: str
    http_method: HttpMethod = HttpMethod.POST
    headers: dict[str, str] = Field(default_factory=dict)
    payload_template: dict[str, Any] | None = None
    timeout_seconds: int = 30
    retry_count: int = 3
    rate_limit_per_minute: int = 60
    is_active: bool = True
    health_status: HealthStatus = HealthStatus.UNKNOWN
    created_by: UUID | None = None
    updated_by: UUID | None = None
    created_at: datetime
    updated_at: datetime
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    total_response_time_ms: int = 0
    last_executed_at: datetime | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def average_response_time_ms(self) -> float:
        if not self.total_executions:
            return 0.0
        return round(self.total_response_time_ms / self.total_executions, 2)


class Assignment(ApiModel):
    """Binds a (page, position) trigger point to a webhook, per tenant or globally."""

    id: UUID
    tenant_id: UUID | None = None
    feature_slug: str
    page: str
    position: str
    webhook_id: UUID
    label: str | None = None
    description: str | None = None
    is_active: bool = True
    priority: int = 100
    created_by: UUID | None = None
    updated_by: UUID | None = None
    created_at: datetime
    updated_at: datetime


class ExecutionUserContext(ApiModel):
    user_id: UUID | None = None
    role: str | None = None
    user_agent: str | None = None
    ip_address: str | None = None
    session_id: str | None = None


class ExecutionRequest(ApiModel):
    feature_slug: str
    page_path: str
    element_id: str
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    user_context: ExecutionUserContext = Field(default_factory=ExecutionUserContext)
    template_variables: dict[str, Any] | None = None
    webhook_id: UUID | None = None


class ExecutionError(ApiModel):
    type: ExecutionErrorType
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    retryable: bool = False
    suggested_action: str | None = None


class ExecutionMetadata(ApiModel):
    """Timings in milliseconds."""

    attempts: int = 0
    network_latency: int = 0
    processing_time: int = 0
    queue_time: int = 0


class ExecutionResult(ApiModel):
    success: bool
    execution_id: UUID
    webhook_id: UUID | None = None
    status_code: int | None = None
    response_time: int = 0
    response_body: Any = None
    error: ExecutionError | None = None
    metadata: ExecutionMetadata = Field(default_factory=ExecutionMetadata)
    warnings: list[str] = Field(default_factory=list)


class ExecutionRecord(ApiModel):
    id: UUID
    webhook_id: UUID
    tenant_id: UUID
    user_id: UUID | None = None
    feature_slug: str
    page_path: str
    element_id: str
    event_type: str
    status: ExecutionStatus
    status_code: int | None = None
    response_time_ms: int = 0
    error: ExecutionError | None = None
    execution_context: dict[str, Any] = Field(default_factory=dict)
    request_snapshot: dict[str, Any] = Field(default_factory=dict)
    response_snapshot: dict[str, Any] | None = None
    performance: ExecutionMetadata = Field(default_factory=ExecutionMetadata)
    started_at: datetime
    completed_at: datetime


class ExecutionStatusView(ApiModel):
    execution_id: UUID
    status: str
    webhook_id: UUID | None = None
    record: ExecutionRecord | None = None
    error: dict[str, Any] | None = None


class BatchItemResult(ApiModel):
    index: int
    success: bool
    result: ExecutionResult | None = None
    error: dict[str, Any] | None = None


class BatchStatistics(ApiModel):
    total: int
    successful: int
    failed: int
    average_response_time: float
    total_time_ms: int


class BatchResult(ApiModel):
    results: list[BatchItemResult]
    statistics: BatchStatistics


class RateLimitResult(ApiModel):
    allowed: bool
    current_count: int
    reset_time: datetime
    limit: int


class SecurityReport(ApiModel):
    warnings: list[str] = Field(default_factory=list)


class TimeRange(ApiModel):
    start: datetime
    end: datetime


class HourlyBucket(ApiModel):
    hour: datetime
    count: int
    success_rate: float
    average_response_time: float


class ErrorCount(ApiModel):
    message: str
    count: int


class ExecutionMetrics(ApiModel):
    webhook_id: UUID
    time_range: TimeRange
    total_executions: int
    successful_executions: int
    failed_executions: int
    success_rate: float
    average_response_time: float
    median_response_time: float
    p95_response_time: float
    p99_response_time: float
    errors_by_type: dict[str, int] = Field(default_factory=dict)
    top_errors: list[ErrorCount] = Field(default_factory=list)
    hourly: list[HourlyBucket] = Field(default_factory=list)


class Recommendation(ApiModel):
    type: str
    priority: str
    title: str
    description: str
    action_required: bool = False


class WebhookPerformance(ApiModel):
    webhook_id: UUID
    overall_health: OverallHealth
    health_score: int
    success_rate: float
    average_response_time: float
    total_executions: int
    recommendations: list[Recommendation] = Field(default_factory=list)


class FailedExecution(ApiModel):
    record: ExecutionRecord
    escalation_level: EscalationLevel
