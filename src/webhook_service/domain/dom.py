"""DOM snapshots supplied by clients, plus a small HTML reader for server-side scans."""
from __future__ import annotations

from html.parser import HTMLParser
from typing import Literal

from pydantic import BaseModel, Field

_VOID_TAGS = frozenset(
    {"area", "base", "br", "col", "embed", "hr", "img", "input", "link", "meta", "source", "track", "wbr"}
)


class Rect(BaseModel):
    x: float = 0
    y: float = 0
    width: float
    height: float


class DomNode(BaseModel):
    """One element of a client-side DOM snapshot.

    ``text`` holds the node's own text; :meth:`text_content` adds descendants.
    ``rect`` is absent when the client could not measure the element.
    """

    tag: str
    attributes: dict[str, str] = Field(default_factory=dict)
    text: str = ""
    rect: Rect | None = None
    style: dict[str, str] = Field(default_factory=dict)
    has_click_handler: bool = Field(default=False, alias="hasClickHandler")
    children: list[DomNode] = Field(default_factory=list)

    model_config = {"populate_by_name": True}

    @property
    def tag_name(self) -> str:
        return self.tag.lower()

    def text_content(self) -> str:
        parts = [self.text]
        parts.extend(child.text_content() for child in self.children)
        return " ".join(part.strip() for part in parts if part and part.strip())

    def is_hidden(self) -> bool:
        if "hidden" in self.attributes:
            return True
        if self.style.get("display", "").strip() == "none":
            return True
        return self.style.get("visibility", "").strip() == "hidden"


class MutationRecord(BaseModel):
    """A structural change observed by the client-side monitor."""

    type: Literal["child_list", "attributes"]
    added_nodes: list[DomNode] = Field(default_factory=list, alias="addedNodes")
    target: DomNode | None = None
    attribute_name: str | None = Field(default=None, alias="attributeName")

    model_config = {"populate_by_name": True}


def _parse_style(value: str) -> dict[str, str]:
    style: dict[str, str] = {}
    for declaration in value.split(";"):
        name, sep, prop = declaration.partition(":")
        if sep:
            style[name.strip().lower()] = prop.strip().lower()
    return style


def _pixels(value: str | None) -> float | None:
    if not value:
        return None
    value = value.strip().lower()
    if value.endswith("px"):
        value = value[:-2]
    try:
        return float(value)
    except ValueError:
        return None


def _geometry(attributes: dict[str, str], style: dict[str, str]) -> Rect | None:
    width = _pixels(style.get("width")) or _pixels(attributes.get("width"))
    height = _pixels(style.get("height")) or _pixels(attributes.get("height"))
    if width is None or height is None:
        return None
    return Rect(width=width, height=height)


class _SnapshotBuilder(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.root = DomNode(tag="body")
        self._stack: list[DomNode] = [self.root]

    def handle_starttag(self, tag, attrs):
        attributes = {name: value if value is not None else "" for name, value in attrs}
        style = _parse_style(attributes.get("style", ""))
        node = DomNode(
            tag=tag,
            attributes=attributes,
            style=style,
            rect=_geometry(attributes, style),
            has_click_handler="onclick" in attributes,
        )
        self._stack[-1].children.append(node)
        if tag not in _VOID_TAGS:
            self._stack.append(node)

    def handle_startendtag(self, tag, attrs):
        self.handle_starttag(tag, attrs)
        if tag not in _VOID_TAGS and len(self._stack) > 1:
            self._stack.pop()

    def handle_endtag(self, tag):
        # Unclosed inner tags are closed implicitly.
        for index in range(len(self._stack) - 1, 0, -1):
            if self._stack[index].tag == tag:
                del self._stack[index:]
                return

    def handle_data(self, data):
        if data.strip():
            current = self._stack[-1]
            current.text = f"{current.text} {data.strip()}".strip()


def parse_html(html: str) -> DomNode:
    """Build a snapshot tree from markup.

    Geometry comes from inline ``width``/``height`` styles or attributes only.
    A document with its own ``<body>`` returns that element as the root.
    """
    builder = _SnapshotBuilder()
    builder.feed(html)
    builder.close()
    root = builder.root
    for node in root.children:
        if node.tag == "html":
            for child in node.children:
                if child.tag == "body":
                    return child
        if node.tag == "body":
            return node
    return root
