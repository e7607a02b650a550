from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from bs4.element import Tag

from utils import isoformat, normalize_text, utc_now
from pagemodel.document import REF_ATTR, PageDocument

log = logging.getLogger(__name__)

REF_PREFIX = "proxycast-"
MAX_INTERACTIVE_ELEMENTS = 300
MAX_BODY_TEXT_CHARS = 6_000

INTERACTIVE_TAGS: set[str] = {"a", "button", "input", "textarea", "select", "option"}

INTERACTIVE_ROLES: set[str] = {
    "button",
    "checkbox",
    "combobox",
    "link",
    "menuitem",
    "option",
    "radio",
    "searchbox",
    "switch",
    "tab",
    "textbox",
}

TEXT_MATCH_SELECTOR = "button,a,input,textarea,select,[role='button']"


@dataclass(slots=True)
class PageSnapshot:
    title: str
    url: str
    markdown: str
    updated_at: datetime = field(default_factory=utc_now)

    def to_payload(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "url": self.url,
            "markdown": self.markdown,
            "updatedAt": isoformat(self.updated_at),
        }


def is_interactive(document: PageDocument, tag: Tag) -> bool:
    if not document.is_visible(tag):
        return False
    if tag.name in INTERACTIVE_TAGS:
        return True
    role = document.attribute(tag, "role").strip().lower()
    if role in INTERACTIVE_ROLES:
        return True
    if tag.has_attr("onclick"):
        return True
    return document.computed_style(tag).cursor == "pointer"


def _label_source(document: PageDocument, tag: Tag) -> str:
    candidates = (
        document.rendered_text(tag),
        document.value_of(tag),
        document.attribute(tag, "placeholder"),
        document.attribute(tag, "aria-label"),
        document.attribute(tag, "title"),
        document.attribute(tag, "name"),
        document.attribute(tag, "id"),
    )
    for candidate in candidates:
        if candidate:
            return normalize_text(candidate)
    return ""


def interactive_label(document: PageDocument, tag: Tag) -> str:
    text = _label_source(document, tag)
    role = document.attribute(tag, "role").strip().lower()
    if tag.name == "a":
        return f"Link: {text or 'untitled link'}"
    if tag.name == "button" or role == "button":
        return f"Button: {text or 'untitled button'}"
    if tag.name in {"input", "textarea"}:
        return f"Input: {text or 'unnamed input'}"
    if tag.name == "select":
        return f"Select: {text or 'unnamed select'}"
    return f"Element: {text or tag.name}"


def reset_references(document: PageDocument) -> None:
    for tag in document.tagged(REF_ATTR):
        tag.attrs.pop(REF_ATTR, None)


def build_snapshot(document: PageDocument) -> PageSnapshot:
    """Tag interactive elements with fresh references and render the page as Markdown.

    References from any earlier snapshot are stripped first, so only the
    ids in the returned Markdown resolve through the reference branch.
    """
    reset_references(document)

    title = document.title
    lines = [f"# {title or 'Untitled'}", f"URL: {document.url}", ""]

    body_text = document.rendered_text(document.body)
    if body_text:
        lines.append("## Page Text")
        lines.append(body_text[:MAX_BODY_TEXT_CHARS])
        lines.append("")

    lines.append("## Interactive Elements")
    counter = 0
    for tag in document.elements():
        if counter >= MAX_INTERACTIVE_ELEMENTS:
            break
        if not is_interactive(document, tag):
            continue
        counter += 1
        ref = f"{REF_PREFIX}{counter}"
        tag[REF_ATTR] = ref
        lines.append(f"- [{interactive_label(document, tag)}]({ref})")

    log.debug("Snapshot of %s lists %s interactive elements", document.url, counter)
    return PageSnapshot(title=title, url=document.url, markdown="\n".join(lines).strip())


def find_element(document: PageDocument, target: Any) -> Tag | None:
    """Resolve a target by reference, then CSS selector, then text, then aria-label."""
    if not isinstance(target, str):
        return None
    wanted = normalize_text(target)
    if not wanted:
        return None

    for tag in document.tagged(REF_ATTR):
        if tag.get(REF_ATTR) == wanted:
            return tag

    try:
        found = document.select_first(target.strip())
    except ValueError:
        found = None
    if found is not None:
        return found

    for tag in document.select_all(TEXT_MATCH_SELECTOR):
        text = document.rendered_text(tag) or document.value_of(tag) or document.attribute(tag, "placeholder")
        if normalize_text(text) == wanted:
            return tag

    for tag in document.tagged("aria-label"):
        if normalize_text(document.attribute(tag, "aria-label")) == wanted:
            return tag
    return None
