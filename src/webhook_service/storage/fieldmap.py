"""Translation between engine field names and storage column names.

The engine uses one naming convention everywhere; columns keep the names of
the shared database. Only the gateway calls these functions.
"""
from __future__ import annotations

from typing import Any, Mapping

_COMMON_FIELDS = {"tenant_id": "organization_id"}

_TABLE_FIELDS: dict[str, dict[str, str]] = {
    "webhook_definitions": {
        "display_name": "name",
        "endpoint_url": "webhook_url",
    },
    "webhook_assignments": {
        "page": "feature_page",
        "position": "button_position",
    },
    "execution_records": {
        "response_time_ms": "execution_time_ms",
        "error": "error_details",
    },
    "rate_limit_windows": {
        "bucket_start": "window_start",
    },
}

_REVERSE: dict[str, dict[str, str]] = {}


def _fields(table: str) -> dict[str, str]:
    return {**_COMMON_FIELDS, **_TABLE_FIELDS.get(table, {})}


def _columns(table: str) -> dict[str, str]:
    if table not in _REVERSE:
        _REVERSE[table] = {column: field for field, column in _fields(table).items()}
    return _REVERSE[table]


def column(table: str, field: str) -> str:
    return _fields(table).get(field, field)


def to_storage(table: str, data: Mapping[str, Any]) -> dict[str, Any]:
    fields = _fields(table)
    return {fields.get(key, key): value for key, value in data.items()}


def from_storage(table: str, row: Mapping[str, Any]) -> dict[str, Any]:
    columns = _columns(table)
    return {columns.get(key, key): value for key, value in row.items()}
