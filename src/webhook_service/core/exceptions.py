"""Error taxonomy shared by the gateway, the engine and the HTTP layer.

Every error carries a stable ``code`` and a ``retryable`` flag and serialises
to ``{code, message, details, retryable}`` via :meth:`WebhookServiceError.to_dict`.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any


class WebhookServiceError(Exception):
    """Base error for the service layer."""

    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class ValidationError(WebhookServiceError):
    """Malformed input. Never retried."""

    code = "VALIDATION_ERROR"


class TemplateError(ValidationError):
    """Payload template is malformed or references an unknown variable."""


class NotFoundError(WebhookServiceError):
    code = "NOT_FOUND"


class ConflictError(WebhookServiceError):
    code = "CONFLICT"


class UnauthorizedAccessError(WebhookServiceError):
    """Tenant-boundary or membership violation."""

    code = "UNAUTHORIZED_ACCESS"


class RateLimitExceededError(WebhookServiceError):
    code = "RATE_LIMIT_EXCEEDED"
    retryable = True

    def __init__(self, message: str, *, reset_time: datetime, current_count: int, limit: int) -> None:
        super().__init__(
            message,
            details={
                "reset_time": reset_time.isoformat(),
                "current_count": current_count,
                "limit": limit,
            },
        )
        self.reset_time = reset_time


class ExecutionLimitExceededError(WebhookServiceError):
    """Concurrency ceiling reached; the caller should back off."""

    code = "EXECUTION_LIMIT_EXCEEDED"
    retryable = True


class DiscoveryError(WebhookServiceError):
    """Discovery session is missing, finished or cannot process the input."""

    code = "DISCOVERY_ERROR"


class DiscoveryInProgressError(DiscoveryError):
    """Another discovery session is already active for the same scope."""

    code = "DISCOVERY_IN_PROGRESS"


class StorageError(WebhookServiceError):
    code = "STORAGE_ERROR"


class TransientStorageError(StorageError):
    """Connection resets, timeouts and similar failures worth retrying."""

    code = "STORAGE_UNAVAILABLE"
    retryable = True


def normalize_error(exc: BaseException) -> dict[str, Any]:
    """Return the ``{code, message, details, retryable}`` shape for any exception."""
    if isinstance(exc, WebhookServiceError):
        return exc.to_dict()
    return {
        "code": "INTERNAL_ERROR",
        "message": str(exc) or type(exc).__name__,
        "details": {"error_type": type(exc).__name__},
        "retryable": False,
    }
