from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterator

from bs4 import BeautifulSoup
from bs4.element import NavigableString, PreformattedString, Tag
from soupsieve import SelectorSyntaxError

from utils import normalize_text

REF_ATTR = "proxycast-id"
NODE_ATTR = "data-proxycast-node"
LAYOUT_ATTR = "data-proxycast-layout"

NON_RENDERED_TAGS: set[str] = {
    "base",
    "datalist",
    "head",
    "link",
    "meta",
    "noscript",
    "script",
    "style",
    "template",
    "title",
}

BOXED_TAGS: set[str] = {
    "button",
    "canvas",
    "embed",
    "hr",
    "iframe",
    "img",
    "input",
    "meter",
    "object",
    "progress",
    "select",
    "svg",
    "textarea",
    "video",
}

INLINE_TAGS: set[str] = {
    "a",
    "abbr",
    "b",
    "cite",
    "code",
    "em",
    "i",
    "kbd",
    "label",
    "mark",
    "q",
    "s",
    "small",
    "span",
    "strong",
    "sub",
    "sup",
    "time",
    "u",
}

VALUE_TAGS: set[str] = {
    "button",
    "data",
    "input",
    "li",
    "meter",
    "option",
    "output",
    "param",
    "progress",
    "select",
    "textarea",
}


@dataclass(slots=True, frozen=True)
class ComputedStyle:
    display: str = "inline"
    visibility: str = "visible"
    opacity: str = "1"
    cursor: str = "auto"

    def is_hidden(self) -> bool:
        if self.display == "none" or self.visibility == "hidden":
            return True
        try:
            return float(self.opacity) == 0
        except ValueError:
            return False


@dataclass(slots=True, frozen=True)
class LayoutRecord:
    style: ComputedStyle
    width: float
    height: float


def _declarations(tag: Tag) -> dict[str, str]:
    raw = tag.get("style")
    if not isinstance(raw, str) or not raw.strip():
        return {}
    declarations: dict[str, str] = {}
    for chunk in raw.split(";"):
        name, sep, value = chunk.partition(":")
        if not sep:
            continue
        value = value.replace("!important", "").strip().lower()
        if value:
            declarations[name.strip().lower()] = value
    return declarations


def _length(value: str | None) -> float | None:
    if not value:
        return None
    number = value.strip()
    for unit in ("px", "em", "rem", "vh", "vw", "%"):
        if number.endswith(unit):
            number = number[: -len(unit)]
            break
    try:
        return float(number)
    except ValueError:
        return None


class PageDocument:
    """Parsed page with the browser-side queries the page model relies on.

    The document is either the page itself (static pages, where mutations
    are the real effect) or a mirror of a live page. A mirror carries a
    layout record on each element, written in-page right before the markup
    was read, and that record wins over anything derived from markup.
    """

    def __init__(self, soup: BeautifulSoup, *, url: str = "about:blank") -> None:
        self.soup = soup
        self.url = url

    @classmethod
    def from_html(cls, markup: str, *, url: str = "about:blank") -> PageDocument:
        return cls(BeautifulSoup(markup or "<html><body></body></html>", "lxml"), url=url)

    @property
    def title(self) -> str:
        title = self.soup.title
        if title is None:
            return ""
        return normalize_text(title.get_text())

    @property
    def body(self) -> Tag:
        return self.soup.body or self.soup

    def elements(self) -> Iterator[Tag]:
        """All elements in document order."""
        yield from self.soup.find_all(True)

    def tagged(self, attr: str) -> list[Tag]:
        return self.soup.find_all(attrs={attr: True})

    def select_first(self, selector: str) -> Tag | None:
        """CSS selection; raises ``ValueError`` for an unusable selector."""
        try:
            return self.soup.select_one(selector)
        except SelectorSyntaxError as exc:
            raise ValueError(f"invalid selector: {selector}") from exc

    def select_all(self, selector: str) -> list[Tag]:
        try:
            return self.soup.select(selector)
        except SelectorSyntaxError as exc:
            raise ValueError(f"invalid selector: {selector}") from exc

    def node_id(self, tag: Tag) -> str | None:
        value = tag.get(NODE_ATTR)
        return value if isinstance(value, str) and value else None

    # computed style

    def layout(self, tag: Tag) -> LayoutRecord | None:
        raw = tag.get(LAYOUT_ATTR)
        if not isinstance(raw, str) or not raw:
            return None
        try:
            payload: Any = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if not isinstance(payload, dict):
            return None
        try:
            width = float(payload.get("width") or 0)
            height = float(payload.get("height") or 0)
        except (TypeError, ValueError):
            width = height = 0.0
        style = ComputedStyle(
            display=str(payload.get("display") or "inline"),
            visibility=str(payload.get("visibility") or "visible"),
            opacity=str(payload.get("opacity") if payload.get("opacity") is not None else "1"),
            cursor=str(payload.get("cursor") or "auto"),
        )
        return LayoutRecord(style=style, width=width, height=height)

    def computed_style(self, tag: Tag) -> ComputedStyle:
        layout = self.layout(tag)
        if layout is not None:
            return layout.style
        declarations = _declarations(tag)
        return ComputedStyle(
            display=self._display(tag, declarations),
            visibility=self._inherited(tag, "visibility", "visible"),
            opacity=declarations.get("opacity", "1"),
            cursor=self._inherited(tag, "cursor", "auto"),
        )

    @staticmethod
    def _display(tag: Tag, declarations: dict[str, str]) -> str:
        if tag.name == "input" and str(tag.get("type") or "").lower() == "hidden":
            return "none"
        if "display" in declarations:
            return declarations["display"]
        if tag.name in NON_RENDERED_TAGS or tag.has_attr("hidden"):
            return "none"
        return "inline" if tag.name in INLINE_TAGS else "block"

    @staticmethod
    def _inherited(tag: Tag, prop: str, default: str) -> str:
        node: Any = tag
        while isinstance(node, Tag) and not isinstance(node, BeautifulSoup):
            value = _declarations(node).get(prop)
            if value and value != "inherit":
                return value
            node = node.parent
        return default

    def is_rendered(self, tag: Tag) -> bool:
        """False when the element or an ancestor has ``display: none``."""
        node: Any = tag
        while isinstance(node, Tag) and not isinstance(node, BeautifulSoup):
            if self.computed_style(node).display == "none":
                return False
            node = node.parent
        return True

    def has_box(self, tag: Tag) -> bool:
        """Whether the element's bounding rect has positive width and height."""
        layout = self.layout(tag)
        if layout is not None:
            return layout.width > 0 and layout.height > 0
        if not self.is_rendered(tag):
            return False
        declarations = _declarations(tag)
        width = _length(declarations.get("width"))
        height = _length(declarations.get("height"))
        if width == 0 or height == 0:
            return False
        if tag.name in {"option", "optgroup"}:
            return self._in_listbox(tag)
        if tag.name in BOXED_TAGS:
            return True
        if width and height:
            return True
        if self.rendered_text(tag):
            return True
        return any(self.has_box(child) for child in tag.find_all(True, recursive=False))

    @staticmethod
    def _in_listbox(tag: Tag) -> bool:
        select = tag.find_parent("select")
        if select is None:
            return False
        if select.has_attr("multiple"):
            return True
        size = _length(str(select.get("size") or ""))
        return bool(size and size > 1)

    def is_visible(self, tag: Tag) -> bool:
        return not self.computed_style(tag).is_hidden() and self.has_box(tag)

    # text and values

    def rendered_text(self, tag: Tag) -> str:
        """Approximation of ``innerText``: text of rendered descendants."""
        if tag.name in {"input", "textarea"}:
            return ""
        parts: list[str] = []
        self._collect_text(tag, parts)
        return normalize_text("".join(parts))

    def _collect_text(self, tag: Tag, parts: list[str]) -> None:
        for child in tag.children:
            if isinstance(child, Tag):
                if child.name in NON_RENDERED_TAGS or self.computed_style(child).display == "none":
                    continue
                if child.name == "br":
                    parts.append(" ")
                    continue
                block = child.name not in INLINE_TAGS
                if block:
                    parts.append(" ")
                self._collect_text(child, parts)
                if block:
                    parts.append(" ")
            elif isinstance(child, NavigableString) and not isinstance(child, PreformattedString):
                parts.append(str(child))

    @staticmethod
    def has_value_property(tag: Tag) -> bool:
        return tag.name in VALUE_TAGS

    @staticmethod
    def value_of(tag: Tag) -> str:
        if tag.name == "textarea":
            return tag.get_text()
        if tag.name == "select":
            options = tag.find_all("option")
            chosen = next((option for option in options if option.has_attr("selected")), None)
            if chosen is None and options:
                chosen = options[0]
            if chosen is None:
                return ""
            value = chosen.get("value")
            return value if isinstance(value, str) else chosen.get_text()
        value = tag.get("value")
        return value if isinstance(value, str) else ""

    @staticmethod
    def attribute(tag: Tag, name: str) -> str:
        value = tag.get(name)
        if value is None:
            return ""
        if isinstance(value, list):
            return " ".join(value)
        return str(value)
