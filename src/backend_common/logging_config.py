"""Structured key=value logging shared by the services."""
from __future__ import annotations

import logging
import sys

import structlog


def _escape(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )


SENSITIVE_KEYS = frozenset({"authorization", "password", "secret", "token", "api_key", "x-api-key", "cookie"})
REDACTED = "***"


def _is_sensitive(key) -> bool:
    lowered = str(key).lower()
    return lowered in SENSITIVE_KEYS or lowered.endswith(("_secret", "_token", "_password"))


def _redact(value):
    if isinstance(value, dict):
        return {k: REDACTED if _is_sensitive(k) else _redact(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    return value


def redact_secrets_processor(logger, method_name, event_dict):
    """Mask credentials such as webhook auth headers wherever they appear in an event."""
    for key, value in list(event_dict.items()):
        event_dict[key] = REDACTED if _is_sensitive(key) else _redact(value)
    return event_dict


def single_line_processor(logger, method_name, event_dict):
    """Escape control characters in string values (tracebacks included).

    Must run after ``format_exc_info`` so the rendered exception is covered too.
    """
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = _escape(value)
        elif isinstance(value, (list, tuple)):
            event_dict[key] = [_escape(item) if isinstance(item, str) else item for item in value]
        elif isinstance(value, dict):
            event_dict[key] = {
                k: _escape(v) if isinstance(v, str) else v for k, v in value.items()
            }
    return event_dict


class SingleLineFormatter(logging.Formatter):
    """stdlib formatter for records that bypass structlog (aiohttp internals)."""

    def format(self, record):
        return super().format(record).replace("\n", "\\n").replace("\r", "\\r")


def configure_logging(level: str = "INFO") -> None:
    """Route stdlib and structlog output to stdout as one key=value line per event."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(SingleLineFormatter("%(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level.upper())

    access_logger = logging.getLogger("aiohttp.access")
    access_logger.handlers = []
    access_logger.propagate = True

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            redact_secrets_processor,
            structlog.processors.format_exc_info,
            single_line_processor,
            structlog.processors.KeyValueRenderer(
                key_order=["timestamp", "level", "logger", "event"],
                drop_missing=True,
            ),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
