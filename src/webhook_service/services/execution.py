"""Webhook execution engine.

Admission runs in a fixed order: request validation, concurrency ceiling,
definition lookup, security validation, rate limiting. Admission failures
raise and leave no trace in storage. Once a request is admitted it is
dispatched and exactly one execution record is written, whatever the outcome.
"""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence
from uuid import UUID, uuid4

import aiohttp
import structlog

from webhook_service.core.exceptions import (
    ExecutionLimitExceededError,
    NotFoundError,
    RateLimitExceededError,
    StorageError,
    ValidationError,
    WebhookServiceError,
    normalize_error,
)
from webhook_service.domain.enums import (
    EventType,
    ExecutionErrorType,
    ExecutionStatus,
    HandleStatus,
    HealthStatus,
    HttpMethod,
)
from webhook_service.domain.models import (
    BatchItemResult,
    BatchResult,
    BatchStatistics,
    ExecutionError,
    ExecutionMetadata,
    ExecutionRequest,
    ExecutionResult,
    ExecutionStatusView,
    SecurityReport,
    WebhookDefinition,
)
from webhook_service.services.analytics import ExecutionAnalytics
from webhook_service.services.assignments import AssignmentService
from webhook_service.services.gateway import GatewayFactory, TenantGateway
from webhook_service.services.rate_limiter import RateLimiter
from webhook_service.services.registry import (
    EXECUTION_COMPLETED,
    EXECUTION_FAILED,
    EXECUTION_STARTED,
    ExecutionEvent,
    ExecutionRegistry,
    Subscriber,
)
from webhook_service.services.security import SecurityValidator
from webhook_service.services.templates import (
    build_variables,
    default_body,
    render_template,
)
from webhook_service.settings import Settings

logger = structlog.get_logger(__name__)

RECORDS_TABLE = "execution_records"
WEBHOOKS_TABLE = "webhook_definitions"

EXECUTION_ID_HEADER = "X-Webhook-Execution-Id"
EVENT_HEADER = "X-Webhook-Event"

RESPONSE_SNAPSHOT_CHARS = 10_000

SUGGESTED_ACTIONS = {
    ExecutionErrorType.EDGE_FUNCTION_ERROR: "Check the endpoint logs; 5xx responses are retried automatically.",
    ExecutionErrorType.NETWORK_ERROR: "Verify the endpoint URL and that the host is reachable.",
    ExecutionErrorType.TIMEOUT: "Increase timeoutSeconds or make the endpoint respond faster.",
    ExecutionErrorType.EXECUTION_ERROR: "Review the webhook configuration and the service logs.",
}


def _elapsed_ms(since: float) -> int:
    return int(round((time.perf_counter() - since) * 1000))


def _error(kind: ExecutionErrorType, message: str, *, retryable: bool, **details: Any) -> ExecutionError:
    return ExecutionError(
        type=kind,
        message=message,
        details=details,
        retryable=retryable,
        suggested_action=SUGGESTED_ACTIONS[kind],
    )


def health_from_counters(total: int, successful: int) -> HealthStatus:
    if total == 0:
        return HealthStatus.UNKNOWN
    rate = successful / total
    if rate >= 0.95:
        return HealthStatus.HEALTHY
    if rate >= 0.7:
        return HealthStatus.DEGRADED
    return HealthStatus.UNHEALTHY


def validate_request(request: ExecutionRequest, *, max_payload_bytes: int) -> None:
    missing = [
        name
        for name in ("feature_slug", "page_path", "element_id", "event_type")
        if not str(getattr(request, name) or "").strip()
    ]
    if missing:
        raise ValidationError("Missing required fields", details={"fields": missing})
    try:
        EventType(request.event_type)
    except ValueError:
        raise ValidationError(
            "Invalid event type",
            details={"event_type": request.event_type, "allowed": [e.value for e in EventType]},
        ) from None
    size = len(json.dumps(request.payload, default=str).encode("utf-8"))
    if size > max_payload_bytes:
        raise ValidationError(
            "Payload too large",
            details={"size_bytes": size, "max_bytes": max_payload_bytes},
        )


def _parse_body(raw: bytes) -> Any:
    if not raw:
        return None
    text = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return text


def _snapshot_body(body: Any) -> Any:
    if isinstance(body, str) and len(body) > RESPONSE_SNAPSHOT_CHARS:
        return body[:RESPONSE_SNAPSHOT_CHARS]
    return body


@dataclass
class DispatchOutcome:
    success: bool
    attempts: int
    total_ms: int
    network_latency_ms: int
    status_code: int | None = None
    response_body: Any = None
    response_size: int = 0
    error: ExecutionError | None = None


class ExecutionHandle:
    """Reference to an execution running in the background."""

    def __init__(self, execution_id: UUID, task: asyncio.Task, registry: ExecutionRegistry) -> None:
        self.execution_id = execution_id
        self._task = task
        self._registry = registry

    @property
    def status(self) -> HandleStatus:
        if self._task.cancelled():
            return HandleStatus.CANCELLED
        if not self._task.done():
            if self._registry.is_active(self.execution_id):
                return HandleStatus.RUNNING
            return HandleStatus.PENDING
        if self._task.exception() is not None:
            return HandleStatus.FAILED
        return HandleStatus.COMPLETED if self._task.result().success else HandleStatus.FAILED

    def done(self) -> bool:
        return self._task.done()

    async def result(self) -> ExecutionResult:
        """Wait for completion; admission errors are re-raised here."""
        return await self._task

    def cancel(self) -> bool:
        return self._task.cancel()

    def subscribe(self, callback: Subscriber):
        return self._registry.subscribe(f"execution:{self.execution_id}", callback)


class ExecutionEngine:
    def __init__(
        self,
        gateways: GatewayFactory,
        settings: Settings,
        *,
        resolver: AssignmentService | None = None,
        security: SecurityValidator | None = None,
        rate_limiter: RateLimiter | None = None,
        analytics: ExecutionAnalytics | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._gateways = gateways
        self._settings = settings
        self.resolver = resolver or AssignmentService(gateways, settings)
        self.security = security or SecurityValidator(gateways, environment=settings.env)
        self.rate_limiter = rate_limiter or RateLimiter(
            gateways,
            default_limit=settings.default_rate_limit_per_minute,
            retention=timedelta(minutes=settings.rate_limit_retention_minutes),
        )
        self.analytics = analytics or ExecutionAnalytics(gateways, settings)
        self.registry = ExecutionRegistry(
            outcome_ttl=settings.execution_outcome_ttl_seconds,
            max_outcomes=settings.execution_outcome_max_entries,
        )
        self._session = session
        self._owns_session = session is None

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            # Per-dispatch deadlines are enforced with asyncio.timeout.
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None))
            self._owns_session = True
        return self._session

    async def dispose(self) -> None:
        await self.registry.clear()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    @property
    def active_executions(self) -> int:
        return len(self.registry)

    def subscribe_to_webhook(self, webhook_id: UUID, callback: Subscriber):
        return self.registry.subscribe(f"webhook:{webhook_id}", callback)

    def subscribe_to_execution(self, execution_id: UUID, callback: Subscriber):
        return self.registry.subscribe(f"execution:{execution_id}", callback)

    # admission

    async def _resolve_definition(self, tenant_id: UUID, request: ExecutionRequest) -> WebhookDefinition:
        gateway = self._gateways(tenant_id)
        webhook_id = request.webhook_id
        if webhook_id is None:
            assignment = await self.resolver.resolve(
                tenant_id,
                request.page_path,
                request.element_id,
                user_id=request.user_context.user_id,
            )
            if assignment is None:
                raise NotFoundError(
                    "No webhook configured for this trigger",
                    details={"page_path": request.page_path, "element_id": request.element_id},
                )
            webhook_id = assignment.webhook_id
        row = await gateway.get(WEBHOOKS_TABLE, {"id": webhook_id}, include_global=True)
        if row is None:
            raise NotFoundError("Webhook not found", details={"webhook_id": str(webhook_id)})
        definition = WebhookDefinition.model_validate(row)
        if not definition.is_active:
            raise ValidationError("Webhook is inactive", details={"webhook_id": str(webhook_id)})
        return definition

    async def _admit(
        self, tenant_id: UUID, request: ExecutionRequest, execution_id: UUID
    ) -> tuple[WebhookDefinition, SecurityReport]:
        definition = await self._resolve_definition(tenant_id, request)
        self.registry.attach(execution_id, definition.id)
        report = await self.security.validate(
            tenant_id,
            binding_tenant_id=definition.tenant_id,
            user_id=request.user_context.user_id,
            endpoint_url=definition.endpoint_url,
        )
        limit = await self.rate_limiter.check(tenant_id, definition.id, definition.rate_limit_per_minute)
        if not limit.allowed:
            raise RateLimitExceededError(
                "Rate limit exceeded",
                reset_time=limit.reset_time,
                current_count=limit.current_count,
                limit=limit.limit,
            )
        return definition, report

    # public operations

    async def execute(self, tenant_id: UUID, request: ExecutionRequest) -> ExecutionResult:
        """Dispatch ``request`` and wait for the outcome."""
        validate_request(request, max_payload_bytes=self._settings.max_payload_bytes)
        return await self._run(tenant_id, request, uuid4())

    def execute_async(self, tenant_id: UUID, request: ExecutionRequest) -> ExecutionHandle:
        """Start a dispatch in the background and return its handle immediately."""
        validate_request(request, max_payload_bytes=self._settings.max_payload_bytes)
        execution_id = uuid4()
        task = asyncio.create_task(self._run(tenant_id, request, execution_id, keep_outcome=True))
        self.registry.track(task)
        return ExecutionHandle(execution_id, task, self.registry)

    async def execute_batch(self, tenant_id: UUID, requests: Sequence[ExecutionRequest]) -> BatchResult:
        """Run up to ``batch_max_size`` requests, ``batch_chunk_size`` at a time."""
        if not requests:
            raise ValidationError("Batch must contain at least one request")
        if len(requests) > self._settings.batch_max_size:
            raise ValidationError(
                "Batch too large",
                details={"size": len(requests), "max_size": self._settings.batch_max_size},
            )
        started = time.perf_counter()
        chunk_size = self._settings.batch_chunk_size
        items: list[BatchItemResult] = []
        for offset in range(0, len(requests), chunk_size):
            chunk = requests[offset:offset + chunk_size]
            outcomes = await asyncio.gather(
                *(self.execute(tenant_id, request) for request in chunk),
                return_exceptions=True,
            )
            for index, outcome in enumerate(outcomes, start=offset):
                if isinstance(outcome, ExecutionResult):
                    items.append(BatchItemResult(index=index, success=outcome.success, result=outcome))
                elif isinstance(outcome, Exception):
                    if not isinstance(outcome, WebhookServiceError):
                        logger.error("batch item failed unexpectedly", index=index, exc_info=outcome)
                    items.append(BatchItemResult(index=index, success=False, error=normalize_error(outcome)))
                else:
                    raise outcome

        dispatched = [item.result.response_time for item in items if item.result is not None]
        successful = sum(1 for item in items if item.success)
        statistics = BatchStatistics(
            total=len(items),
            successful=successful,
            failed=len(items) - successful,
            average_response_time=round(sum(dispatched) / len(dispatched), 2) if dispatched else 0.0,
            total_time_ms=_elapsed_ms(started),
        )
        logger.info(
            "batch execution finished",
            tenant_id=str(tenant_id),
            total=statistics.total,
            successful=statistics.successful,
            total_time_ms=statistics.total_time_ms,
        )
        return BatchResult(results=items, statistics=statistics)

    async def get_execution_status(self, tenant_id: UUID, execution_id: UUID) -> ExecutionStatusView:
        if self.registry.is_active(execution_id):
            return ExecutionStatusView(
                execution_id=execution_id,
                status=HandleStatus.RUNNING.value,
                webhook_id=self.registry.active_webhook(execution_id),
            )
        outcome = self.registry.outcome(execution_id, tenant_id)
        if outcome is not None:
            webhook_id, error = outcome
            return ExecutionStatusView(
                execution_id=execution_id,
                status=HandleStatus.REJECTED.value,
                webhook_id=webhook_id,
                error=error,
            )
        record = await self.analytics.get_record(tenant_id, execution_id)
        return ExecutionStatusView(
            execution_id=execution_id,
            status=record.status.value,
            webhook_id=record.webhook_id,
            record=record,
        )

    async def retry_failed_execution(self, tenant_id: UUID, execution_id: UUID) -> ExecutionResult:
        """Re-dispatch a failed execution as a new execution with its own record."""
        record = await self.analytics.get_record(tenant_id, execution_id)
        if record.status != ExecutionStatus.FAILURE:
            raise ValidationError(
                "Only failed executions can be retried",
                details={"execution_id": str(execution_id), "status": record.status.value},
            )
        original = record.request_snapshot.get("request")
        if not isinstance(original, dict):
            raise ValidationError(
                "Execution record has no request snapshot",
                details={"execution_id": str(execution_id)},
            )
        request = ExecutionRequest.model_validate(original)
        request = request.model_copy(update={"webhook_id": record.webhook_id})
        logger.info("retrying failed execution", execution_id=str(execution_id), webhook_id=str(record.webhook_id))
        return await self.execute(tenant_id, request)

    # dispatch

    async def _run(
        self,
        tenant_id: UUID,
        request: ExecutionRequest,
        execution_id: UUID,
        *,
        keep_outcome: bool = False,
    ) -> ExecutionResult:
        """Admit, dispatch and record one execution.

        With ``keep_outcome`` a failure that leaves no execution record is kept
        in the registry so status lookups can still report it.
        """
        admitted_at = time.perf_counter()
        started_at = datetime.now(timezone.utc)
        log = logger.bind(execution_id=str(execution_id), tenant_id=str(tenant_id))

        if not self.registry.try_acquire(execution_id, self._settings.max_concurrent_executions):
            log.warning("execution ceiling reached", ceiling=self._settings.max_concurrent_executions)
            error = ExecutionLimitExceededError(
                "Too many concurrent executions",
                details={"max_concurrent_executions": self._settings.max_concurrent_executions},
            )
            if keep_outcome:
                self.registry.remember_outcome(execution_id, tenant_id, error.to_dict())
            raise error
        try:
            try:
                definition, report = await self._admit(tenant_id, request, execution_id)
            except WebhookServiceError as exc:
                log.info("execution rejected", code=exc.code, error=exc.message)
                await self.registry.publish(
                    ExecutionEvent(
                        type=EXECUTION_FAILED,
                        execution_id=execution_id,
                        tenant_id=tenant_id,
                        webhook_id=self.registry.active_webhook(execution_id),
                        error=exc.to_dict(),
                    )
                )
                raise
            queue_time = _elapsed_ms(admitted_at)
            await self.registry.publish(
                ExecutionEvent(
                    type=EXECUTION_STARTED,
                    execution_id=execution_id,
                    tenant_id=tenant_id,
                    webhook_id=definition.id,
                )
            )

            render_started = time.perf_counter()
            variables = build_variables(
                request=request,
                definition=definition,
                execution_id=execution_id,
                tenant_id=tenant_id,
                now=started_at,
            )
            try:
                if definition.payload_template is not None:
                    body = render_template(definition.payload_template, variables)
                else:
                    body = default_body(variables)
            except ValidationError as exc:
                # A stored template that no longer renders is a configuration fault.
                body = None
                outcome = DispatchOutcome(
                    success=False,
                    attempts=0,
                    total_ms=0,
                    network_latency_ms=0,
                    error=_error(
                        ExecutionErrorType.EXECUTION_ERROR,
                        exc.message,
                        retryable=False,
                        **exc.details,
                    ),
                )
            processing_time = _elapsed_ms(render_started)
            if body is not None:
                outcome = await self._dispatch(definition, body, request, execution_id)

            result = ExecutionResult(
                success=outcome.success,
                execution_id=execution_id,
                webhook_id=definition.id,
                status_code=outcome.status_code,
                response_time=outcome.total_ms,
                response_body=outcome.response_body,
                error=outcome.error,
                metadata=ExecutionMetadata(
                    attempts=outcome.attempts,
                    network_latency=outcome.network_latency_ms,
                    processing_time=processing_time,
                    queue_time=queue_time,
                ),
                warnings=report.warnings,
            )
            await self._record(tenant_id, request, definition, result, outcome, body, report, started_at)

            log.info(
                "execution finished",
                webhook_id=str(definition.id),
                success=result.success,
                status_code=result.status_code,
                attempts=outcome.attempts,
                response_time_ms=result.response_time,
                error_type=result.error.type.value if result.error else None,
            )
            await self.registry.publish(
                ExecutionEvent(
                    type=EXECUTION_COMPLETED if result.success else EXECUTION_FAILED,
                    execution_id=execution_id,
                    tenant_id=tenant_id,
                    webhook_id=definition.id,
                    result=result,
                )
            )
            return result
        except Exception as exc:
            if keep_outcome:
                self.registry.remember_outcome(execution_id, tenant_id, normalize_error(exc))
            raise
        finally:
            self.registry.release(execution_id)

    def _backoff_seconds(self, attempt: int) -> float:
        # attempt is 1-based
        return min(
            self._settings.retry_max_delay_seconds,
            self._settings.retry_base_delay_seconds * 2 ** (attempt - 1),
        )

    async def _dispatch(
        self,
        definition: WebhookDefinition,
        body: Any,
        request: ExecutionRequest,
        execution_id: UUID,
    ) -> DispatchOutcome:
        headers = {
            "Content-Type": "application/json",
            **definition.headers,
            EXECUTION_ID_HEADER: str(execution_id),
            EVENT_HEADER: request.event_type,
        }
        max_attempts = 1 + definition.retry_count
        started = time.perf_counter()
        attempt = 0
        while True:
            attempt += 1
            attempt_started = time.perf_counter()
            outcome = await self._attempt(definition, body, headers)
            outcome.attempts = attempt
            outcome.network_latency_ms = _elapsed_ms(attempt_started)
            if outcome.success or outcome.error is None or not outcome.error.retryable or attempt >= max_attempts:
                outcome.total_ms = _elapsed_ms(started)
                return outcome
            delay = self._backoff_seconds(attempt)
            logger.info(
                "webhook attempt failed, retrying",
                execution_id=str(execution_id),
                attempt=attempt,
                max_attempts=max_attempts,
                error_type=outcome.error.type.value,
                delay_seconds=delay,
            )
            await asyncio.sleep(delay)

    async def _attempt(self, definition: WebhookDefinition, body: Any, headers: dict[str, str]) -> DispatchOutcome:
        method = definition.http_method.value
        kwargs: dict[str, Any] = {"headers": headers}
        if definition.http_method != HttpMethod.GET:
            kwargs["data"] = json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        try:
            async with asyncio.timeout(definition.timeout_seconds):
                async with self._http().request(method, definition.endpoint_url, **kwargs) as response:
                    status = response.status
                    raw = await response.read()
        except TimeoutError:
            return DispatchOutcome(
                success=False,
                attempts=0,
                total_ms=0,
                network_latency_ms=0,
                error=_error(
                    ExecutionErrorType.TIMEOUT,
                    f"Webhook did not respond within {definition.timeout_seconds}s",
                    retryable=True,
                    timeout_seconds=definition.timeout_seconds,
                ),
            )
        except aiohttp.ClientError as exc:
            return DispatchOutcome(
                success=False,
                attempts=0,
                total_ms=0,
                network_latency_ms=0,
                error=_error(
                    ExecutionErrorType.NETWORK_ERROR,
                    str(exc) or type(exc).__name__,
                    retryable=True,
                    error_type=type(exc).__name__,
                ),
            )
        except Exception as exc:
            logger.exception("unexpected error during webhook dispatch", webhook_id=str(definition.id))
            return DispatchOutcome(
                success=False,
                attempts=0,
                total_ms=0,
                network_latency_ms=0,
                error=_error(
                    ExecutionErrorType.EXECUTION_ERROR,
                    str(exc) or type(exc).__name__,
                    retryable=False,
                    error_type=type(exc).__name__,
                ),
            )

        parsed = _parse_body(raw)
        if 200 <= status < 300:
            return DispatchOutcome(
                success=True,
                attempts=0,
                total_ms=0,
                network_latency_ms=0,
                status_code=status,
                response_body=parsed,
                response_size=len(raw),
            )
        return DispatchOutcome(
            success=False,
            attempts=0,
            total_ms=0,
            network_latency_ms=0,
            status_code=status,
            response_body=parsed,
            response_size=len(raw),
            error=_error(
                ExecutionErrorType.EDGE_FUNCTION_ERROR,
                f"HTTP {status}",
                retryable=status >= 500,
                status_code=status,
                response=_snapshot_body(parsed) if isinstance(parsed, str) else parsed,
            ),
        )

    # persistence

    async def _record(
        self,
        tenant_id: UUID,
        request: ExecutionRequest,
        definition: WebhookDefinition,
        result: ExecutionResult,
        outcome: DispatchOutcome,
        body: Any,
        report: SecurityReport,
        started_at: datetime,
    ) -> None:
        completed_at = datetime.now(timezone.utc)
        gateway = self._gateways(tenant_id)
        user = request.user_context
        row = {
            "id": result.execution_id,
            "webhook_id": definition.id,
            "user_id": user.user_id,
            "feature_slug": request.feature_slug,
            "page_path": request.page_path,
            "element_id": request.element_id,
            "event_type": request.event_type,
            "status": ExecutionStatus.SUCCESS.value if result.success else ExecutionStatus.FAILURE.value,
            "status_code": result.status_code,
            "response_time_ms": result.response_time,
            "error": result.error.model_dump(mode="json") if result.error else None,
            "execution_context": {
                "role": user.role,
                "user_agent": user.user_agent,
                "ip_address": user.ip_address,
                "session_id": user.session_id,
                "security_warnings": report.warnings,
            },
            "request_snapshot": {
                "request": request.model_dump(mode="json"),
                "body": body,
            },
            "response_snapshot": {
                "body": _snapshot_body(outcome.response_body),
                "size": outcome.response_size,
            },
            "performance": result.metadata.model_dump(mode="json"),
            "started_at": started_at,
            "completed_at": completed_at,
        }
        try:
            await gateway.insert(RECORDS_TABLE, row)
            await self._update_counters(gateway, definition.id, result, completed_at)
        except StorageError as exc:
            # The call already happened; losing the record must not turn it into a failure.
            logger.error(
                "failed to persist execution record",
                execution_id=str(result.execution_id),
                webhook_id=str(definition.id),
                error=exc.message,
            )

    async def _update_counters(
        self,
        gateway: TenantGateway,
        webhook_id: UUID,
        result: ExecutionResult,
        completed_at: datetime,
    ) -> None:
        rows = await gateway.increment(
            WEBHOOKS_TABLE,
            {"id": webhook_id},
            {
                "total_executions": 1,
                "successful_executions": 1 if result.success else 0,
                "failed_executions": 0 if result.success else 1,
                "total_response_time_ms": result.response_time,
            },
            assign={"last_executed_at": completed_at},
            include_global=True,
        )
        if not rows:
            return
        row = rows[0]
        health = health_from_counters(int(row["total_executions"]), int(row["successful_executions"]))
        if row.get("health_status") != health.value:
            await gateway.update(
                WEBHOOKS_TABLE,
                {"id": webhook_id},
                {"health_status": health.value},
                include_global=True,
            )
