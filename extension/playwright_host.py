from __future__ import annotations

import contextlib
import importlib.metadata
import itertools
import logging
from typing import Any

from bs4.element import Tag
from playwright.async_api import (
    BrowserContext,
    Frame,
    Locator,
    Page,
    Playwright,
    async_playwright,
)

from errors import ExecutionError
from extension.host import TabHostBase, TabInfo, TabStatus
from pagemodel.document import NODE_ATTR, REF_ATTR, PageDocument

log = logging.getLogger(__name__)

LIVE_VALUE_ATTR = "data-proxycast-value"
DEFAULT_TIMEOUT_MS = 15_000

PROBE_SCRIPT = """
() => {
  let counter = 0;
  for (const el of document.querySelectorAll("*")) {
    counter += 1;
    el.setAttribute("data-proxycast-node", String(counter));
    const style = window.getComputedStyle(el);
    const rect = el.getBoundingClientRect();
    el.setAttribute(
      "data-proxycast-layout",
      JSON.stringify({
        display: style.display,
        visibility: style.visibility,
        opacity: style.opacity,
        cursor: style.cursor,
        width: rect.width,
        height: rect.height,
      }),
    );
    if (el instanceof HTMLInputElement || el instanceof HTMLTextAreaElement || el instanceof HTMLSelectElement) {
      el.setAttribute("data-proxycast-value", el.value);
    }
  }
  const html = document.documentElement.outerHTML;
  for (const el of document.querySelectorAll("[data-proxycast-layout]")) {
    el.removeAttribute("data-proxycast-layout");
    el.removeAttribute("data-proxycast-value");
  }
  return { html, url: window.location.href };
}
"""

SYNC_REFS_SCRIPT = """
(refs) => {
  for (const el of document.querySelectorAll("[proxycast-id]")) {
    el.removeAttribute("proxycast-id");
  }
  for (const [node, ref] of Object.entries(refs)) {
    const el = document.querySelector(`[data-proxycast-node="${node}"]`);
    if (el) el.setAttribute("proxycast-id", ref);
  }
}
"""

FILL_SCRIPT = """
(el, value) => {
  el.focus();
  el.value = value;
  el.dispatchEvent(new Event("input", { bubbles: true }));
  el.dispatchEvent(new Event("change", { bubbles: true }));
}
"""

SET_TEXT_SCRIPT = "(el, value) => { el.textContent = value; }"
SCROLL_SCRIPT = "([dx, dy]) => window.scrollBy(dx, dy)"
RELOAD_SCRIPT = "() => { setTimeout(() => window.location.reload(), 0); }"
BACK_SCRIPT = "() => { setTimeout(() => window.history.back(), 0); }"
FORWARD_SCRIPT = "() => { setTimeout(() => window.history.forward(), 0); }"


def _apply_live_values(document: PageDocument) -> None:
    for tag in document.tagged(LIVE_VALUE_ATTR):
        value = document.attribute(tag, LIVE_VALUE_ATTR)
        tag.attrs.pop(LIVE_VALUE_ATTR, None)
        if tag.name == "textarea":
            tag.string = value
        elif tag.name == "select":
            for option in tag.find_all("option"):
                option.attrs.pop("selected", None)
                option_value = option.get("value")
                if (option_value if isinstance(option_value, str) else option.get_text()) == value:
                    option["selected"] = ""
        else:
            tag["value"] = value


class PlaywrightSurface:
    """Live page surface; documents are mirrors read through a layout probe."""

    def __init__(self, page: Page, *, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> None:
        self.page = page
        self._timeout_ms = timeout_ms

    async def load_document(self) -> PageDocument:
        probe: dict[str, Any] = await self.page.evaluate(PROBE_SCRIPT)
        document = PageDocument.from_html(str(probe.get("html") or ""), url=str(probe.get("url") or self.page.url))
        _apply_live_values(document)
        return document

    async def sync_references(self, document: PageDocument) -> None:
        refs: dict[str, str] = {}
        for tag in document.tagged(REF_ATTR):
            node_id = document.node_id(tag)
            if node_id is not None:
                refs[node_id] = document.attribute(tag, REF_ATTR)
        await self.page.evaluate(SYNC_REFS_SCRIPT, refs)

    def _locator(self, document: PageDocument, element: Tag) -> Locator:
        node_id = document.node_id(element)
        if node_id is None:
            raise ExecutionError(f"<{element.name}> is not attached to the live page")
        return self.page.locator(f'[{NODE_ATTR}="{node_id}"]')

    async def click(self, document: PageDocument, element: Tag) -> None:
        locator = self._locator(document, element)
        with contextlib.suppress(Exception):
            await locator.scroll_into_view_if_needed(timeout=5_000)
        try:
            await locator.click(timeout=self._timeout_ms)
        except Exception:
            await locator.click(timeout=self._timeout_ms, force=True)

    async def fill(self, document: PageDocument, element: Tag, value: str) -> None:
        await self._locator(document, element).evaluate(FILL_SCRIPT, value)

    async def set_text(self, document: PageDocument, element: Tag, value: str) -> None:
        await self._locator(document, element).evaluate(SET_TEXT_SCRIPT, value)

    async def scroll_by(self, dx: float, dy: float) -> None:
        await self.page.evaluate(SCROLL_SCRIPT, [dx, dy])

    async def reload(self) -> None:
        await self.page.evaluate(RELOAD_SCRIPT)

    async def back(self) -> None:
        await self.page.evaluate(BACK_SCRIPT)

    async def forward(self) -> None:
        await self.page.evaluate(FORWARD_SCRIPT)


class PlaywrightBrowser(TabHostBase):
    """One persistent Chromium profile driven through Playwright."""

    def __init__(
        self,
        *,
        user_data_dir: str,
        headless: bool = True,
        viewport: dict[str, int] | None = None,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        auto_inject: bool = True,
    ) -> None:
        super().__init__(auto_inject=auto_inject)
        self.user_data_dir = user_data_dir
        self.headless = headless
        self.viewport = viewport
        self.default_timeout_ms = default_timeout_ms
        self._playwright: Playwright | None = None
        self._context: BrowserContext | None = None
        self._pages: dict[int, Page] = {}
        self._page_ids: dict[Page, int] = {}
        self._surfaces: dict[int, PlaywrightSurface] = {}
        self._status: dict[int, TabStatus] = {}
        self._active_id: int | None = None
        self._ids = itertools.count(1)

    @staticmethod
    def _detect_playwright_version() -> str:
        try:
            return importlib.metadata.version("playwright")
        except importlib.metadata.PackageNotFoundError:
            return "unknown"

    async def start(self) -> None:
        if self._context is not None:
            return
        try:
            self._playwright = await async_playwright().start()
            log.info("Playwright version: %s", self._detect_playwright_version())
            self._context = await self._playwright.chromium.launch_persistent_context(
                user_data_dir=self.user_data_dir,
                headless=self.headless,
                viewport=self.viewport,
            )
        except Exception:
            await self.close()
            raise

        self._context.set_default_timeout(self.default_timeout_ms)
        self._context.on("page", lambda page: self._register_page(page, set_active=False))
        for page in self._context.pages:
            self._register_page(page, set_active=False)
        if not self._pages:
            page = await self._context.new_page()
            self._register_page(page, set_active=True)
        else:
            self._active_id = next(reversed(self._pages.keys()))
        for tab_id in list(self._pages):
            if self.auto_inject:
                self._spawn(self._on_load_complete(tab_id))

    def _register_page(self, page: Page, *, set_active: bool = True) -> int:
        existing = self._page_ids.get(page)
        if existing is not None:
            if set_active:
                self._active_id = existing
            return existing
        tab_id = next(self._ids)
        self._pages[tab_id] = page
        self._page_ids[page] = tab_id
        self._surfaces[tab_id] = PlaywrightSurface(page, timeout_ms=self.default_timeout_ms)
        self._status[tab_id] = "complete"

        def _on_close() -> None:
            self._pages.pop(tab_id, None)
            self._page_ids.pop(page, None)
            self._surfaces.pop(tab_id, None)
            self._status.pop(tab_id, None)
            self._drop_content_script(tab_id)
            if self._active_id == tab_id:
                self._active_id = next(reversed(self._pages.keys()), None)

        def _on_navigated(frame: Frame) -> None:
            if frame is not page.main_frame:
                return
            self._status[tab_id] = "loading"
            self._drop_content_script(tab_id)
            self._spawn(self._emit_current(tab_id))

        def _on_load(_: Page) -> None:
            self._status[tab_id] = "complete"
            self._spawn(self._on_load_complete(tab_id))

        page.on("close", lambda _: _on_close())
        page.on("framenavigated", _on_navigated)
        page.on("load", _on_load)

        if set_active or self._active_id is None:
            self._active_id = tab_id
        return tab_id

    async def _emit_current(self, tab_id: int) -> None:
        tab = await self.get_tab(tab_id)
        if tab is not None:
            self._emit_updated(tab)

    def _surface(self, tab_id: int) -> PlaywrightSurface | None:
        return self._surfaces.get(tab_id)

    async def get_tab(self, tab_id: int) -> TabInfo | None:
        page = self._pages.get(tab_id)
        if page is None or page.is_closed():
            return None
        title = ""
        with contextlib.suppress(Exception):
            title = await page.title()
        return TabInfo(
            tab_id=tab_id,
            url=page.url,
            title=title,
            active=tab_id == self._active_id,
            status=self._status.get(tab_id, "complete"),
        )

    async def active_tab(self) -> TabInfo | None:
        if self._active_id is None:
            return None
        return await self.get_tab(self._active_id)

    async def list_tabs(self) -> list[TabInfo]:
        tabs = [await self.get_tab(tab_id) for tab_id in list(self._pages)]
        return [tab for tab in tabs if tab is not None]

    async def open_tab(self, url: str) -> TabInfo:
        if self._context is None:
            raise RuntimeError("PlaywrightBrowser has not started yet.")
        page = await self._context.new_page()
        tab_id = self._register_page(page, set_active=True)
        self._status[tab_id] = "loading"
        with contextlib.suppress(Exception):
            await page.bring_to_front()
        self._emit_activated(tab_id)
        self._spawn(self._goto(page, url))
        return TabInfo(tab_id=tab_id, url=url, title="", active=True, status="loading")

    async def _goto(self, page: Page, url: str) -> None:
        try:
            await page.goto(url, wait_until="load")
        except Exception as exc:
            log.warning("Navigation to %s failed: %s", url, exc)
            tab_id = self._page_ids.get(page)
            if tab_id is not None:
                self._status[tab_id] = "complete"
                await self._on_load_complete(tab_id)

    async def activate_tab(self, tab_id: int) -> TabInfo:
        page = self._pages.get(tab_id)
        if page is None:
            raise KeyError(f"No tab with id {tab_id}")
        await page.bring_to_front()
        if self._active_id != tab_id:
            self._active_id = tab_id
            self._emit_activated(tab_id)
        tab = await self.get_tab(tab_id)
        if tab is None:
            raise KeyError(f"No tab with id {tab_id}")
        return tab

    async def close(self) -> None:
        await self._shutdown_scripts()
        if self._context is not None:
            with contextlib.suppress(Exception):
                await self._context.close()
        if self._playwright is not None:
            with contextlib.suppress(Exception):
                await self._playwright.stop()
        self._playwright = None
        self._context = None
        self._pages = {}
        self._page_ids = {}
        self._surfaces = {}
        self._status = {}
        self._active_id = None


async def launch_browser(*, user_data_dir: str, headless: bool = True) -> PlaywrightBrowser:
    browser = PlaywrightBrowser(user_data_dir=user_data_dir, headless=headless)
    await browser.start()
    return browser


