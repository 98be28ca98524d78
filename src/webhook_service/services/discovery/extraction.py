"""Candidate selection and per-element data extraction from DOM snapshots."""
from __future__ import annotations

import hashlib
import json
import re
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator

from webhook_service.domain.discovery import DiscoveredElement, DiscoverySettings
from webhook_service.domain.dom import DomNode
from webhook_service.domain.enums import ElementType

MAX_LOCATOR_DEPTH = 10
TEXT_LIMIT = 100
ID_TEXT_LIMIT = 20

INTERACTIVE_INPUT_TYPES = frozenset({"button", "submit", "reset", "checkbox", "radio"})
INTERACTIVE_TAGS = frozenset({"button", "a", "select", "textarea"})
RECORDED_ATTRIBUTES = ("id", "class", "name", "type", "role", "data-testid", "aria-label", "href")

_UNSAFE_ID_CHARS = re.compile(r"[^a-zA-Z0-9-]")
_WHITESPACE = re.compile(r"\s+")


@dataclass
class NodeContext:
    """A node together with its position in the snapshot tree."""

    node: DomNode
    parent: NodeContext | None = None
    index: int = 0
    type_index: int = 1
    type_count: int = 1


def children_of(ctx: NodeContext) -> list[NodeContext]:
    children = ctx.node.children
    totals = Counter(child.tag_name for child in children)
    seen: Counter[str] = Counter()
    result = []
    for index, child in enumerate(children):
        seen[child.tag_name] += 1
        result.append(
            NodeContext(
                node=child,
                parent=ctx,
                index=index,
                type_index=seen[child.tag_name],
                type_count=totals[child.tag_name],
            )
        )
    return result


def iter_nodes(root: DomNode) -> Iterator[NodeContext]:
    """Depth-first, document order."""
    pending = [NodeContext(root)]
    while pending:
        ctx = pending.pop()
        yield ctx
        pending.extend(reversed(children_of(ctx)))


def _has_click_handler(node: DomNode) -> bool:
    return node.has_click_handler or "onclick" in node.attributes


def is_candidate(node: DomNode) -> bool:
    tag = node.tag_name
    attributes = node.attributes
    if tag in ("button", "form", "select"):
        return True
    if tag == "a" and attributes.get("href"):
        return True
    if tag == "input" and attributes.get("type", "").lower() in INTERACTIVE_INPUT_TYPES:
        return True
    if _has_click_handler(node):
        return True
    return attributes.get("role") == "button" or "tabindex" in attributes


def is_interactable(node: DomNode) -> bool:
    attributes = node.attributes
    return (
        node.tag_name in INTERACTIVE_TAGS
        or attributes.get("type", "").lower() in INTERACTIVE_INPUT_TYPES
        or _has_click_handler(node)
        or "role" in attributes
        or "tabindex" in attributes
    )


def is_visible(ctx: NodeContext) -> bool:
    node = ctx.node
    if node.rect is not None and (node.rect.width <= 0 or node.rect.height <= 0):
        return False
    current: NodeContext | None = ctx
    while current is not None:
        if current.node.is_hidden() or current.node.style.get("opacity", "").strip() == "0":
            return False
        current = current.parent
    return True


def is_excluded(node: DomNode, settings: DiscoverySettings, *, min_size: float) -> bool:
    tag = node.tag_name
    if tag in {excluded.lower() for excluded in settings.excluded_tags}:
        return True
    if tag == "div" and not _has_click_handler(node) and not node.attributes.get("role"):
        return True
    # Elements without measured geometry are kept.
    rect = node.rect
    return rect is not None and (rect.width < min_size or rect.height < min_size)


def element_id(ctx: NodeContext) -> str:
    node = ctx.node
    for name in ("id", "data-testid", "name"):
        value = node.attributes.get(name, "").strip()
        if value:
            return value
    classes = "-".join(node.attributes.get("class", "").split()[:2])
    text = _WHITESPACE.sub("-", node.text_content().strip()[:ID_TEXT_LIMIT])
    raw = f"{node.tag_name}-{classes}-{text}-{ctx.index}"
    return _UNSAFE_ID_CHARS.sub("", raw).lower()


def css_selector(ctx: NodeContext) -> str:
    own_id = ctx.node.attributes.get("id", "").strip()
    if own_id:
        return f"#{own_id}"
    parts: list[str] = []
    current: NodeContext | None = ctx
    while current is not None and len(parts) < MAX_LOCATOR_DEPTH:
        node = current.node
        selector = node.tag_name
        node_id = node.attributes.get("id", "").strip()
        if node_id:
            parts.insert(0, f"{selector}#{node_id}")
            break
        classes = node.attributes.get("class", "").split()[:2]
        if classes:
            selector += "." + ".".join(classes)
        if current.type_count > 1:
            selector += f":nth-of-type({current.type_index})"
        parts.insert(0, selector)
        current = current.parent
    return " > ".join(parts)


def xpath(ctx: NodeContext) -> str:
    own_id = ctx.node.attributes.get("id", "").strip()
    if own_id:
        return f'//*[@id="{own_id}"]'
    parts: list[str] = []
    current: NodeContext | None = ctx
    while current is not None and len(parts) < MAX_LOCATOR_DEPTH:
        parts.insert(0, f"{current.node.tag_name}[{current.type_index}]")
        current = current.parent
    return "/" + "/".join(parts)


def classify(node: DomNode) -> ElementType:
    tag = node.tag_name
    input_type = node.attributes.get("type", "").lower()
    if tag == "button" or input_type in ("button", "submit") or node.attributes.get("role") == "button":
        return ElementType.BUTTON
    if tag == "form":
        return ElementType.FORM
    if tag == "a":
        return ElementType.LINK
    if tag == "input":
        return ElementType.INPUT
    if tag == "select":
        return ElementType.SELECT
    if tag == "div":
        return ElementType.DIV
    if tag == "span":
        return ElementType.SPAN
    return ElementType.OTHER


def fingerprint(node: DomNode) -> str:
    """sha256 over canonical JSON of tag, id, class, trimmed text and attributes."""
    data = {
        "tag": node.tag_name,
        "id": node.attributes.get("id", ""),
        "class": node.attributes.get("class", ""),
        "text": node.text_content().strip(),
        "attributes": node.attributes,
    }
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def extract_element(ctx: NodeContext, *, now: datetime) -> DiscoveredElement:
    node = ctx.node
    return DiscoveredElement(
        element_id=element_id(ctx),
        element_type=classify(node),
        tag_name=node.tag_name,
        text_content=node.text_content()[:TEXT_LIMIT],
        attributes={name: node.attributes[name] for name in RECORDED_ATTRIBUTES if name in node.attributes},
        css_selector=css_selector(ctx),
        xpath=xpath(ctx),
        rect=node.rect,
        is_visible=is_visible(ctx),
        is_interactable=is_interactable(node),
        fingerprint=fingerprint(node),
        parent_id=element_id(ctx.parent) if ctx.parent is not None else None,
        child_ids=[element_id(child) for child in children_of(ctx)],
        discovered_at=now,
    )


def _with_unique_id(element: DiscoveredElement, taken: set[str]) -> DiscoveredElement:
    # Repeated ids (radio groups sharing a name) get "-2", "-3" in document order.
    candidate, suffix = element.element_id, 1
    while candidate in taken:
        suffix += 1
        candidate = f"{element.element_id}-{suffix}"
    taken.add(candidate)
    if candidate == element.element_id:
        return element
    return element.model_copy(update={"element_id": candidate})


def extract_elements(
    root: DomNode,
    settings: DiscoverySettings,
    *,
    min_size: float,
    now: datetime,
) -> list[DiscoveredElement]:
    """Interactive elements of ``root`` in document order, capped at ``max_elements_per_page``."""
    elements: list[DiscoveredElement] = []
    taken: set[str] = set()
    for ctx in iter_nodes(root):
        node = ctx.node
        if not is_candidate(node) or is_excluded(node, settings, min_size=min_size):
            continue
        if not settings.include_hidden and not is_visible(ctx):
            continue
        elements.append(_with_unique_id(extract_element(ctx, now=now), taken))
        if len(elements) >= settings.max_elements_per_page:
            break
    return elements
