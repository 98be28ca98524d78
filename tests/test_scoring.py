from __future__ import annotations

from datetime import datetime, timezone

import pytest

from webhook_service.domain.discovery import DiscoveredElement
from webhook_service.domain.enums import ElementType, HttpMethod, SuggestionPriority
from webhook_service.services.discovery.scoring import (
    SCORING_RULES,
    infer_action,
    payload_template,
    score,
    suggest,
)

BASE_URL = "https://hooks.example.com/webhooks"


def _element(**overrides) -> DiscoveredElement:
    data = {
        "element_id": "el-1",
        "element_type": ElementType.BUTTON,
        "tag_name": "button",
        "text_content": "",
        "css_selector": "#el-1",
        "xpath": '//*[@id="el-1"]',
        "is_interactable": False,
        "fingerprint": "f" * 64,
        "discovered_at": datetime(2024, 5, 1, tzinfo=timezone.utc),
    }
    data.update(overrides)
    return DiscoveredElement(**data)


def test_rules_have_positive_weights():
    assert all(rule.weight > 0 for rule in SCORING_RULES)
    assert len({rule.name for rule in SCORING_RULES}) == len(SCORING_RULES)


@pytest.mark.parametrize(
    ("overrides", "expected"),
    [
        ({}, 0.8),
        ({"element_type": ElementType.FORM, "tag_name": "form"}, 0.7),
        ({"element_type": ElementType.LINK, "text_content": "Submit"}, 0.3),
        ({"element_type": ElementType.LINK, "text_content": "Save draft"}, 0.3),
        ({"element_type": ElementType.LINK, "text_content": "Delete"}, 0.2),
        ({"element_type": ElementType.LINK, "attributes": {"data-testid": "x"}}, 0.2),
        ({"element_type": ElementType.LINK, "is_interactable": True}, 0.1),
    ],
)
def test_each_rule_contributes_its_weight(overrides, expected):
    confidence, reasoning, _ = score(_element(**overrides))
    assert confidence == pytest.approx(expected)
    assert len(reasoning) == 1


def test_additional_signals_never_lower_confidence():
    plain = _element(element_type=ElementType.LINK)
    signals = [
        {"text_content": "Submit and save"},
        {"attributes": {"data-testid": "submit"}},
        {"is_interactable": True},
        {"element_type": ElementType.BUTTON},
    ]
    previous = score(plain)[0]
    overrides: dict = {}
    for signal in signals:
        overrides.update(signal)
        current = score(_element(**overrides))[0]
        assert current >= previous
        previous = current


def test_methods_follow_matching_rules():
    assert score(_element(element_type=ElementType.FORM, tag_name="form"))[2] == HttpMethod.POST
    assert score(_element(text_content="Delete file"))[2] == HttpMethod.DELETE
    assert score(_element(text_content="Open"))[2] == HttpMethod.POST


@pytest.mark.parametrize(
    ("text", "element_id", "expected"),
    [
        ("Save changes", "x", "submit"),
        ("Remove row", "x", "delete"),
        ("Edit profile", "x", "update"),
        ("Add item", "x", "create"),
        ("", "form-submit", "submit"),
        ("Open", "menu", "action"),
    ],
)
def test_infer_action(text, element_id, expected):
    assert infer_action(_element(text_content=text, element_id=element_id)) == expected


def test_payload_template_shapes():
    form = payload_template(_element(element_type=ElementType.FORM, text_content="Upload"))
    assert form["formData"] == "{{payload}}"
    assert form["elementText"] == "Upload"
    assert form["elementId"] == "{{element.id}}"

    tricky = payload_template(_element(text_content="Hello {{user.id}}"))
    assert "elementText" not in tricky
    assert "formData" not in tricky


def test_suggest_filters_sorts_and_caps():
    elements = [
        _element(element_id="link", element_type=ElementType.LINK, is_interactable=True),
        _element(element_id="form", element_type=ElementType.FORM, tag_name="form"),
        _element(element_id="submit", text_content="Submit", is_interactable=True),
    ]

    suggestions = suggest(elements, base_url=BASE_URL + "/", threshold=0.3)

    assert [s.element_id for s in suggestions] == ["submit", "form"]
    top = suggestions[0]
    assert top.confidence == 1.0
    assert top.suggested_method == HttpMethod.POST
    assert top.suggested_endpoint == f"{BASE_URL}/submit"
    assert top.priority == SuggestionPriority.HIGH
    assert suggestions[1].confidence == pytest.approx(0.7)
