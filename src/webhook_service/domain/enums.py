"""Domain enums."""
from __future__ import annotations

from enum import Enum


class EventType(str, Enum):
    """UI events that can trigger a dispatch."""

    CLICK = "click"
    SUBMIT = "submit"
    TRIGGER = "trigger"
    TEST = "test"


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    PATCH = "PATCH"


class HealthStatus(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class ExecutionErrorType(str, Enum):
    """Dispatch failure kinds recorded on execution records."""

    EDGE_FUNCTION_ERROR = "EDGE_FUNCTION_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    EXECUTION_ERROR = "EXECUTION_ERROR"


class HandleStatus(str, Enum):
    """Lifecycle of an asynchronous execution handle."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class EscalationLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class OverallHealth(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    POOR = "poor"
    CRITICAL = "critical"


class ElementType(str, Enum):
    BUTTON = "button"
    FORM = "form"
    LINK = "link"
    INPUT = "input"
    SELECT = "select"
    DIV = "div"
    SPAN = "span"
    OTHER = "other"


class SuggestionPriority(str, Enum):
    HIGH = "high"
    LOW = "low"


class DiscoverySessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
