from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass

import aiohttp

from extension.host import TabHostBase, TabInfo
from pagemodel.surface import StaticPage

log = logging.getLogger(__name__)

FETCH_TIMEOUT_S = 15.0


@dataclass(slots=True)
class StaticTab:
    tab_id: int
    page: StaticPage
    discarded: bool = False


class StaticBrowser(TabHostBase):
    """Browser profile made of in-memory pages.

    Pages come from ``pages`` (url -> markup) when listed there and are
    fetched over HTTP otherwise. There is no layout engine: visibility and
    boxes are inferred from markup by the page document.
    """

    def __init__(
        self,
        *,
        pages: dict[str, str] | None = None,
        http: aiohttp.ClientSession | None = None,
        fetch_timeout_s: float = FETCH_TIMEOUT_S,
        auto_inject: bool = True,
        ready_delay_s: float | None = None,
    ) -> None:
        super().__init__(auto_inject=auto_inject, ready_delay_s=ready_delay_s)
        self.pages = dict(pages or {})
        self._http = http
        self._owns_http = http is None
        self._fetch_timeout_s = fetch_timeout_s
        self._tabs: dict[int, StaticTab] = {}
        self._active_id: int | None = None
        self._ids = itertools.count(1)

    async def fetch(self, url: str) -> str:
        if url in self.pages:
            return self.pages[url]
        if self._http is None:
            self._http = aiohttp.ClientSession()
        timeout = aiohttp.ClientTimeout(total=self._fetch_timeout_s)
        async with self._http.get(url, timeout=timeout) as resp:
            resp.raise_for_status()
            return await resp.text()

    def _info(self, tab: StaticTab) -> TabInfo:
        return TabInfo(
            tab_id=tab.tab_id,
            url=tab.page.url,
            title=tab.page.title,
            active=tab.tab_id == self._active_id,
            status=tab.page.status,
            discarded=tab.discarded,
        )

    def page(self, tab_id: int) -> StaticPage | None:
        tab = self._tabs.get(tab_id)
        return tab.page if tab is not None else None

    def _surface(self, tab_id: int) -> StaticPage | None:
        return self.page(tab_id)

    async def active_tab(self) -> TabInfo | None:
        if self._active_id is None:
            return None
        return await self.get_tab(self._active_id)

    async def get_tab(self, tab_id: int) -> TabInfo | None:
        tab = self._tabs.get(tab_id)
        return self._info(tab) if tab is not None else None

    async def list_tabs(self) -> list[TabInfo]:
        return [self._info(tab) for tab in self._tabs.values()]

    def add_tab(self, url: str, markup: str, *, active: bool = True) -> int:
        """Register an already loaded page, like a tab open before the agent started."""
        tab_id = next(self._ids)
        page = StaticPage(markup, url=url, loader=self.fetch)
        page.on_navigated(lambda current, tab_id=tab_id: self._on_navigated(tab_id, current))
        self._tabs[tab_id] = StaticTab(tab_id=tab_id, page=page)
        self.pages.setdefault(url, markup)
        if active or self._active_id is None:
            self._active_id = tab_id
        if self.auto_inject:
            self._spawn(self.inject_content_script(tab_id))
        return tab_id

    async def open_tab(self, url: str) -> TabInfo:
        tab_id = next(self._ids)
        page = StaticPage("", url=url, loader=self.fetch)
        page.status = "loading"
        page.on_navigated(lambda current, tab_id=tab_id: self._on_navigated(tab_id, current))
        self._tabs[tab_id] = StaticTab(tab_id=tab_id, page=page)
        self._active_id = tab_id
        info = self._info(self._tabs[tab_id])
        self._emit_activated(tab_id)
        self._spawn(page.navigate(url, record=False))
        return info

    async def activate_tab(self, tab_id: int) -> TabInfo:
        tab = self._tabs.get(tab_id)
        if tab is None:
            raise KeyError(f"No tab with id {tab_id}")
        if self._active_id != tab_id:
            self._active_id = tab_id
            self._emit_activated(tab_id)
        return self._info(tab)

    async def close_tab(self, tab_id: int) -> None:
        if self._tabs.pop(tab_id, None) is None:
            return
        self._drop_content_script(tab_id)
        if self._active_id == tab_id:
            self._active_id = next(reversed(self._tabs.keys()), None)
            if self._active_id is not None:
                self._emit_activated(self._active_id)

    def _on_navigated(self, tab_id: int, page: StaticPage) -> None:
        if tab_id not in self._tabs:
            return
        if page.status == "loading":
            self._drop_content_script(tab_id)
            tab = self._tabs[tab_id]
            self._emit_updated(self._info(tab))
            return
        self._spawn(self._on_load_complete(tab_id))

    async def close(self) -> None:
        await self._shutdown_scripts()
        self._tabs.clear()
        self._active_id = None
        if self._http is not None and self._owns_http:
            await self._http.close()
        self._http = None
