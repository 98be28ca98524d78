"""Webhook suggestions for discovered elements.

Confidence is the sum of the weights of every matching rule in
:data:`SCORING_RULES`. All weights are positive, so an additional matching
signal never lowers the score.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable

from webhook_service.domain.discovery import DiscoveredElement, WebhookSuggestion
from webhook_service.domain.enums import ElementType, HttpMethod, SuggestionPriority

CONFIDENCE_THRESHOLD = 0.3
MAX_CONFIDENCE = 1.0
DEFAULT_BASE_URL = "https://your-webhook-server.com/webhooks"

HIGH_PRIORITY_TYPES = frozenset({ElementType.BUTTON, ElementType.FORM})


@dataclass(frozen=True)
class ScoringRule:
    name: str
    weight: float
    reason: str
    matches: Callable[[DiscoveredElement], bool]
    method: HttpMethod | None = None


def _text_contains(word: str) -> Callable[[DiscoveredElement], bool]:
    return lambda element: word in element.text_content.lower()


SCORING_RULES: tuple[ScoringRule, ...] = (
    ScoringRule(
        "button",
        0.8,
        "Button elements are primary webhook candidates",
        lambda element: element.element_type == ElementType.BUTTON,
    ),
    ScoringRule(
        "form",
        0.7,
        "Form submissions are common webhook triggers",
        lambda element: element.element_type == ElementType.FORM,
        method=HttpMethod.POST,
    ),
    ScoringRule("submit_text", 0.3, "Submit-related text suggests form submission", _text_contains("submit")),
    ScoringRule("save_text", 0.3, "Save action suggests data persistence", _text_contains("save")),
    ScoringRule(
        "delete_text",
        0.2,
        "Delete action suggests data removal",
        _text_contains("delete"),
        method=HttpMethod.DELETE,
    ),
    ScoringRule(
        "test_id",
        0.2,
        "Test ID indicates important interactive element",
        lambda element: bool(element.attributes.get("data-testid")),
    ),
    ScoringRule("interactable", 0.1, "Element is interactable", lambda element: element.is_interactable),
)

# First match wins; element text is checked before the element id.
ACTION_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("submit", ("submit", "save")),
    ("delete", ("delete", "remove")),
    ("update", ("update", "edit")),
    ("create", ("create", "add")),
)


def infer_action(element: DiscoveredElement) -> str:
    text = element.text_content.lower()
    for action, keywords in ACTION_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return action
    identifier = element.element_id.lower()
    if "submit" in identifier or "save" in identifier:
        return "submit"
    return "action"


def payload_template(element: DiscoveredElement) -> dict[str, Any]:
    template: dict[str, Any] = {
        "elementId": "{{element.id}}",
        "action": "{{event.type}}",
        "timestamp": "{{event.timestamp}}",
        "userId": "{{user.id}}",
    }
    if element.element_type == ElementType.FORM:
        template["formData"] = "{{payload}}"
    # Literal page text must not introduce template tokens.
    if element.text_content and "{{" not in element.text_content and "}}" not in element.text_content:
        template["elementText"] = element.text_content
    return template


def score(element: DiscoveredElement) -> tuple[float, list[str], HttpMethod]:
    confidence = 0.0
    reasoning = []
    method = HttpMethod.POST
    for rule in SCORING_RULES:
        if rule.matches(element):
            confidence += rule.weight
            reasoning.append(rule.reason)
            if rule.method is not None:
                method = rule.method
    return round(confidence, 4), reasoning, method


def suggest(
    elements: Iterable[DiscoveredElement],
    *,
    base_url: str = DEFAULT_BASE_URL,
    threshold: float = CONFIDENCE_THRESHOLD,
) -> list[WebhookSuggestion]:
    """Suggestions at or above ``threshold``, highest confidence first."""
    suggestions = []
    for element in elements:
        confidence, reasoning, method = score(element)
        if confidence < threshold:
            continue
        suggestions.append(
            WebhookSuggestion(
                element_id=element.element_id,
                confidence=min(confidence, MAX_CONFIDENCE),
                suggested_endpoint=f"{base_url.rstrip('/')}/{infer_action(element)}",
                suggested_method=method,
                reasoning=reasoning,
                payload_template=payload_template(element),
                priority=(
                    SuggestionPriority.HIGH
                    if element.element_type in HIGH_PRIORITY_TYPES
                    else SuggestionPriority.LOW
                ),
            )
        )
    suggestions.sort(key=lambda suggestion: suggestion.confidence, reverse=True)
    return suggestions
