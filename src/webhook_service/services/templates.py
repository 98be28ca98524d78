"""Payload template rendering.

Templates are JSON structures whose string values may contain ``{{name}}``
tokens. Tokens are located with a plain scan (no regular expressions) and
resolved against a typed variable map. An unknown token or an unterminated
``{{`` raises :class:`TemplateError`; nothing is ever left unsubstituted.

A string consisting of exactly one token is replaced by the variable's value
with its type preserved, so ``"{{payload}}"`` embeds the whole payload object.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Mapping
from uuid import UUID

from webhook_service.core.exceptions import TemplateError
from webhook_service.domain.models import ExecutionRequest, WebhookDefinition

TOKEN_OPEN = "{{"
TOKEN_CLOSE = "}}"

BUILTIN_VARIABLES = frozenset(
    {
        "element.id",
        "element.type",
        "event.type",
        "event.timestamp",
        "execution.id",
        "feature.slug",
        "page.path",
        "payload",
        "tenant.id",
        "user.id",
        "user.role",
        "webhook.id",
    }
)

# Dynamic names: "payload.<top-level key>" and "vars.<request template variable>".
VARIABLE_PREFIXES = ("payload.", "vars.")

_JSON_SCALARS = (str, int, float, bool, type(None))


def _check_json(value: Any, path: str) -> None:
    if isinstance(value, _JSON_SCALARS):
        return
    if isinstance(value, list):
        for index, item in enumerate(value):
            _check_json(item, f"{path}[{index}]")
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise TemplateError("Template keys must be strings", details={"path": path})
            _check_json(item, f"{path}.{key}")
        return
    raise TemplateError(
        "Unsupported value in template",
        details={"path": path, "type": type(value).__name__},
    )


def scan_tokens(text: str) -> list[tuple[int, int, str]]:
    """Return ``(start, end, name)`` for every token in ``text``."""
    tokens = []
    position = 0
    while True:
        start = text.find(TOKEN_OPEN, position)
        if start < 0:
            return tokens
        end = text.find(TOKEN_CLOSE, start + len(TOKEN_OPEN))
        if end < 0:
            raise TemplateError("Unterminated template token", details={"text": text[start:start + 40]})
        name = text[start + len(TOKEN_OPEN):end].strip()
        if not name:
            raise TemplateError("Empty template token", details={"text": text})
        end += len(TOKEN_CLOSE)
        tokens.append((start, end, name))
        position = end


def is_known_name(name: str) -> bool:
    if name in BUILTIN_VARIABLES:
        return True
    return any(name.startswith(prefix) and len(name) > len(prefix) for prefix in VARIABLE_PREFIXES)


def validate_template(template: Any) -> None:
    """Check structure and token names without rendering."""
    _check_json(template, "$")

    def walk(value: Any) -> None:
        if isinstance(value, str):
            for _, _, name in scan_tokens(value):
                if not is_known_name(name):
                    raise TemplateError(f"Unknown template variable: {name}", details={"variable": name})
        elif isinstance(value, list):
            for item in value:
                walk(item)
        elif isinstance(value, dict):
            for item in value.values():
                walk(item)

    walk(template)


class TemplateVariables:
    """Immutable name -> JSON value map used for substitution."""

    def __init__(self, values: Mapping[str, Any]) -> None:
        for name, value in values.items():
            _check_json(value, name)
        self._values = dict(values)

    def __contains__(self, name: str) -> bool:
        return name in self._values

    def resolve(self, name: str) -> Any:
        try:
            return self._values[name]
        except KeyError:
            raise TemplateError(f"Unknown template variable: {name}", details={"variable": name}) from None

    def as_dict(self) -> dict[str, Any]:
        return dict(self._values)


def build_variables(
    *,
    request: ExecutionRequest,
    definition: WebhookDefinition,
    execution_id: UUID,
    tenant_id: UUID,
    now: datetime,
) -> TemplateVariables:
    user = request.user_context
    values: dict[str, Any] = {
        "element.id": request.element_id,
        "element.type": definition.element_type,
        "event.type": request.event_type,
        "event.timestamp": now.isoformat(),
        "execution.id": str(execution_id),
        "feature.slug": request.feature_slug,
        "page.path": request.page_path,
        "payload": request.payload,
        "tenant.id": str(tenant_id),
        "user.id": str(user.user_id) if user.user_id else None,
        "user.role": user.role,
        "webhook.id": str(definition.id),
    }
    for key, value in request.payload.items():
        values[f"payload.{key}"] = value
    for key, value in (request.template_variables or {}).items():
        values[f"vars.{key}"] = value
    return TemplateVariables(values)


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _render_string(text: str, variables: TemplateVariables) -> Any:
    tokens = scan_tokens(text)
    if not tokens:
        return text
    if len(tokens) == 1 and tokens[0][0] == 0 and tokens[0][1] == len(text):
        return variables.resolve(tokens[0][2])
    parts = []
    position = 0
    for start, end, name in tokens:
        parts.append(text[position:start])
        parts.append(_stringify(variables.resolve(name)))
        position = end
    parts.append(text[position:])
    return "".join(parts)


def render_template(template: Any, variables: TemplateVariables) -> Any:
    """Return a new structure with every token substituted."""
    if isinstance(template, str):
        return _render_string(template, variables)
    if isinstance(template, dict):
        return {key: render_template(value, variables) for key, value in template.items()}
    if isinstance(template, list):
        return [render_template(item, variables) for item in template]
    _check_json(template, "$")
    return template


def default_body(variables: TemplateVariables) -> dict[str, Any]:
    """Envelope sent when a definition has no payload template."""
    body = {
        "event": variables.resolve("event.type"),
        "featureSlug": variables.resolve("feature.slug"),
        "pagePath": variables.resolve("page.path"),
        "elementId": variables.resolve("element.id"),
        "executionId": variables.resolve("execution.id"),
        "webhookId": variables.resolve("webhook.id"),
        "timestamp": variables.resolve("event.timestamp"),
        "user": {"id": variables.resolve("user.id"), "role": variables.resolve("user.role")},
        "payload": variables.resolve("payload"),
    }
    extra = {
        name[len("vars."):]: value
        for name, value in variables.as_dict().items()
        if name.startswith("vars.")
    }
    if extra:
        body["variables"] = extra
    return body
