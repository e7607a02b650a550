from __future__ import annotations

import logging
import math
from typing import Any, Awaitable, Callable

from bs4.element import Tag

from utils import normalize_text
from pagemodel.document import PageDocument
from pagemodel.model import find_element
from pagemodel.surface import PageSurface

log = logging.getLogger(__name__)

PageInfoSender = Callable[[str, "str | None"], Awaitable[None]]

DEFAULT_SCROLL_AMOUNT = 500.0
SCROLL_DIRECTIONS = {"up", "down", "left", "right"}


def _success(message: str) -> dict[str, Any]:
    return {"status": "success", "message": message}


def _error(error: str) -> dict[str, Any]:
    return {"status": "error", "error": error}


def parse_scroll(text: Any) -> tuple[str, float]:
    """Parse ``"<direction>:<amount>"``; a bare direction scrolls the default amount."""
    value = normalize_text(text)
    direction, amount = "down", DEFAULT_SCROLL_AMOUNT
    if ":" in value:
        head, tail = value.split(":")[:2]
        direction = normalize_text(head).lower() or "down"
        try:
            parsed = float(tail) if tail.strip() else 0.0
        except ValueError:
            parsed = 0.0
        if math.isfinite(parsed) and parsed > 0:
            amount = parsed
    elif value.lower() in SCROLL_DIRECTIONS:
        direction = value.lower()
    if direction not in SCROLL_DIRECTIONS:
        direction = "down"
    return direction, amount


def scroll_vector(direction: str, amount: float) -> tuple[float, float]:
    if direction == "up":
        return 0.0, -amount
    if direction == "left":
        return -amount, 0.0
    if direction == "right":
        return amount, 0.0
    return 0.0, amount


class ActionExecutor:
    """Runs one command against the page behind ``surface``.

    ``execute`` never raises: unresolved targets, unknown commands and any
    failure inside the page come back as ``{"status": "error", ...}``.
    """

    def __init__(self, surface: PageSurface, send_page_info: PageInfoSender) -> None:
        self._surface = surface
        self._send_page_info = send_page_info

    async def execute(self, command: dict[str, Any]) -> dict[str, Any]:
        name = str(command.get("command") or "").strip()
        try:
            return await self._dispatch(name, command)
        except Exception as exc:
            log.warning("Command %s failed in page: %s", name, exc)
            return _error(f"{type(exc).__name__}: {exc}")

    async def _resolve(self, target: Any) -> tuple[PageDocument, Tag | None]:
        document = await self._surface.load_document()
        return document, find_element(document, target)

    async def _dispatch(self, name: str, command: dict[str, Any]) -> dict[str, Any]:
        target = command.get("target")
        if name == "click":
            document, element = await self._resolve(target)
            if element is None:
                return _error(f"Click target not found: {target}")
            await self._surface.click(document, element)
            return _success("click succeeded")

        if name == "type":
            document, element = await self._resolve(target)
            if element is None:
                return _error(f"Type target not found: {target}")
            text = command.get("text")
            value = "" if text is None else str(text)
            if document.has_value_property(element):
                await self._surface.fill(document, element, value)
            else:
                await self._surface.set_text(document, element, value)
            return _success("type succeeded")

        if name in {"scroll", "scroll_page"}:
            direction, amount = parse_scroll(command.get("text"))
            dx, dy = scroll_vector(direction, amount)
            await self._surface.scroll_by(dx, dy)
            return _success("scroll succeeded")

        if name == "get_page_info":
            request_id = command.get("requestId")
            await self._send_page_info("get_page_info", str(request_id) if request_id else None)
            return _success("page info sent")

        if name == "refresh_page":
            await self._surface.reload()
            return _success("page refreshing")

        if name == "go_back":
            await self._surface.back()
            return _success("navigating back")

        if name == "go_forward":
            await self._surface.forward()
            return _success("navigating forward")

        return _error(f"Unsupported command: {name}")
