from __future__ import annotations

import asyncio
import html
import logging
from typing import Awaitable, Callable, Literal, Protocol
from urllib.parse import urljoin

from bs4.element import Tag

from pagemodel.document import PageDocument

log = logging.getLogger(__name__)

LoadState = Literal["loading", "complete"]
PageLoader = Callable[[str], Awaitable[str]]
NavigationListener = Callable[["StaticPage"], None]


class PageSurface(Protocol):
    """Side effects the action executor performs on one page."""

    async def load_document(self) -> PageDocument: ...

    async def sync_references(self, document: PageDocument) -> None: ...

    async def click(self, document: PageDocument, element: Tag) -> None: ...

    async def fill(self, document: PageDocument, element: Tag, value: str) -> None: ...

    async def set_text(self, document: PageDocument, element: Tag, value: str) -> None: ...

    async def scroll_by(self, dx: float, dy: float) -> None: ...

    async def reload(self) -> None: ...

    async def back(self) -> None: ...

    async def forward(self) -> None: ...


class StaticPage:
    """In-memory page whose parsed document is the page itself.

    Mutations land directly on the document, so references written by a
    snapshot stay attached until the next snapshot or navigation. Navigation
    goes through ``loader`` and replaces the document once loading finishes.
    """

    def __init__(self, markup: str, *, url: str, loader: PageLoader | None = None) -> None:
        self.document = PageDocument.from_html(markup, url=url)
        self.status: LoadState = "complete"
        self.scroll_x = 0.0
        self.scroll_y = 0.0
        self.focused: Tag | None = None
        self.events: list[tuple[str, str]] = []
        self._loader = loader
        self._sources: dict[str, str] = {url: markup}
        self._history: list[str] = [url]
        self._history_index = 0
        self._listeners: list[NavigationListener] = []
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def url(self) -> str:
        return self.document.url

    @property
    def title(self) -> str:
        return self.document.title

    def on_navigated(self, listener: NavigationListener) -> None:
        self._listeners.append(listener)

    async def load_document(self) -> PageDocument:
        return self.document

    async def sync_references(self, document: PageDocument) -> None:
        return None

    def _record(self, event: str, element: Tag) -> None:
        self.events.append((event, element.name))

    async def click(self, document: PageDocument, element: Tag) -> None:
        self._record("click", element)
        if element.name == "input" and document.attribute(element, "type").lower() in {"checkbox", "radio"}:
            if element.has_attr("checked"):
                element.attrs.pop("checked", None)
            else:
                element["checked"] = ""
            return
        href = document.attribute(element, "href")
        if element.name == "a" and href and not href.startswith(("#", "javascript:")):
            self._spawn(self.navigate(urljoin(self.url, href)))

    async def fill(self, document: PageDocument, element: Tag, value: str) -> None:
        self.focused = element
        self._record("focus", element)
        if element.name == "textarea":
            element.string = value
        elif element.name == "select":
            for option in element.find_all("option"):
                option.attrs.pop("selected", None)
            for option in element.find_all("option"):
                option_value = option.get("value")
                if (option_value if isinstance(option_value, str) else option.get_text()) == value:
                    option["selected"] = ""
                    break
        else:
            element["value"] = value
        self._record("input", element)
        self._record("change", element)

    async def set_text(self, document: PageDocument, element: Tag, value: str) -> None:
        element.string = value

    async def scroll_by(self, dx: float, dy: float) -> None:
        self.scroll_x = max(0.0, self.scroll_x + dx)
        self.scroll_y = max(0.0, self.scroll_y + dy)

    async def reload(self) -> None:
        self._spawn(self.navigate(self.url, record=False))

    async def back(self) -> None:
        if self._history_index > 0:
            self._history_index -= 1
            self._spawn(self.navigate(self._history[self._history_index], record=False))

    async def forward(self) -> None:
        if self._history_index + 1 < len(self._history):
            self._history_index += 1
            self._spawn(self.navigate(self._history[self._history_index], record=False))

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def navigate(self, url: str, *, record: bool = True) -> None:
        if record:
            del self._history[self._history_index + 1 :]
            self._history.append(url)
            self._history_index = len(self._history) - 1
        self.status = "loading"
        self._notify()
        try:
            if self._loader is not None:
                self._sources[url] = await self._loader(url)
            markup = self._sources.get(url, "")
        except Exception:
            log.warning("Failed to load %s", url, exc_info=True)
            markup = f"<html><head><title>{html.escape(url)}</title></head><body></body></html>"
        self.document = PageDocument.from_html(markup, url=url)
        self.scroll_x = self.scroll_y = 0.0
        self.focused = None
        self.status = "complete"
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    async def wait_idle(self) -> None:
        """Wait for navigations started by clicks or history commands."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
