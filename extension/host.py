from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, Protocol

from errors import ContentScriptUnavailable
from extension.content import ContentScript
from pagemodel.surface import PageSurface

log = logging.getLogger(__name__)

TabStatus = Literal["loading", "complete"]

TabActivatedListener = Callable[[int], Awaitable[None]]
TabUpdatedListener = Callable[["TabInfo"], Awaitable[None]]
RuntimeMessageListener = Callable[[int, dict[str, Any]], Awaitable[None]]


@dataclass(slots=True)
class TabInfo:
    tab_id: int
    url: str
    title: str
    active: bool
    status: TabStatus
    discarded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.tab_id,
            "url": self.url,
            "title": self.title,
            "active": self.active,
            "status": self.status,
        }


class BrowserHost(Protocol):
    """Tab API of one browser profile as seen by the observer agent."""

    async def active_tab(self) -> TabInfo | None: ...

    async def get_tab(self, tab_id: int) -> TabInfo | None: ...

    async def list_tabs(self) -> list[TabInfo]: ...

    async def open_tab(self, url: str) -> TabInfo: ...

    async def activate_tab(self, tab_id: int) -> TabInfo: ...

    async def wait_tab_loaded(self, tab_id: int, timeout_s: float) -> bool: ...

    async def send_to_tab(self, tab_id: int, message: dict[str, Any]) -> dict[str, Any]: ...

    async def inject_content_script(self, tab_id: int) -> None: ...

    def on_tab_activated(self, listener: TabActivatedListener) -> None: ...

    def on_tab_updated(self, listener: TabUpdatedListener) -> None: ...

    def on_runtime_message(self, listener: RuntimeMessageListener) -> None: ...

    async def close(self) -> None: ...


class TabHostBase:
    """Content-script registry and event plumbing shared by the hosts.

    Subclasses own the tabs; this class keeps at most one content script per
    tab, drops it when the tab navigates and fans events out to listeners.
    """

    def __init__(
        self,
        *,
        auto_inject: bool = True,
        ready_delay_s: float | None = None,
    ) -> None:
        self.auto_inject = auto_inject
        self._script_options: dict[str, float] = {}
        if ready_delay_s is not None:
            self._script_options["ready_delay_s"] = ready_delay_s
        self._scripts: dict[int, ContentScript] = {}
        self._activated_listeners: list[TabActivatedListener] = []
        self._updated_listeners: list[TabUpdatedListener] = []
        self._message_listeners: list[RuntimeMessageListener] = []
        self._load_waiters: dict[int, list[asyncio.Future[None]]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    def on_tab_activated(self, listener: TabActivatedListener) -> None:
        self._activated_listeners.append(listener)

    def on_tab_updated(self, listener: TabUpdatedListener) -> None:
        self._updated_listeners.append(listener)

    def on_runtime_message(self, listener: RuntimeMessageListener) -> None:
        self._message_listeners.append(listener)

    # subclass hooks

    async def get_tab(self, tab_id: int) -> TabInfo | None:
        raise NotImplementedError

    def _surface(self, tab_id: int) -> PageSurface | None:
        raise NotImplementedError

    # content scripts

    def content_script(self, tab_id: int) -> ContentScript | None:
        return self._scripts.get(tab_id)

    async def send_to_tab(self, tab_id: int, message: dict[str, Any]) -> dict[str, Any]:
        script = self._scripts.get(tab_id)
        if script is None:
            raise ContentScriptUnavailable(f"Could not establish connection to tab {tab_id}")
        return await script.handle_message(message)

    async def inject_content_script(self, tab_id: int) -> None:
        tab = await self.get_tab(tab_id)
        surface = self._surface(tab_id)
        if tab is None or surface is None:
            raise ContentScriptUnavailable(f"No tab with id {tab_id}")
        if tab.status != "complete":
            raise ContentScriptUnavailable(f"Tab {tab_id} is still loading")
        script = self._scripts.get(tab_id)
        if script is not None and script.initialized:
            return
        script = ContentScript(tab_id, surface, self._poster(tab_id), **self._script_options)
        self._scripts[tab_id] = script
        script.start()

    def _poster(self, tab_id: int) -> Callable[[dict[str, Any]], Awaitable[None]]:
        async def post(message: dict[str, Any]) -> None:
            for listener in list(self._message_listeners):
                await listener(tab_id, message)

        return post

    def _drop_content_script(self, tab_id: int) -> None:
        script = self._scripts.pop(tab_id, None)
        if script is not None:
            script.stop()

    # events

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._finish_task)

    def _finish_task(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.warning("Tab event handler failed: %s", exc)

    def _emit_activated(self, tab_id: int) -> None:
        for listener in list(self._activated_listeners):
            self._spawn(listener(tab_id))

    def _emit_updated(self, tab: TabInfo) -> None:
        if tab.status == "complete":
            for waiter in self._load_waiters.pop(tab.tab_id, []):
                if not waiter.done():
                    waiter.set_result(None)
        for listener in list(self._updated_listeners):
            self._spawn(listener(tab))

    async def _on_load_complete(self, tab_id: int) -> None:
        if self.auto_inject:
            try:
                await self.inject_content_script(tab_id)
            except ContentScriptUnavailable as exc:
                log.debug("Auto injection skipped: %s", exc)
        tab = await self.get_tab(tab_id)
        if tab is not None:
            self._emit_updated(tab)

    async def wait_tab_loaded(self, tab_id: int, timeout_s: float) -> bool:
        tab = await self.get_tab(tab_id)
        if tab is None:
            return False
        if tab.status == "complete":
            return True
        waiter = asyncio.get_running_loop().create_future()
        self._load_waiters.setdefault(tab_id, []).append(waiter)
        try:
            await asyncio.wait_for(waiter, timeout_s)
        except asyncio.TimeoutError:
            log.info("Tab %s did not finish loading within %ss", tab_id, timeout_s)
            return False
        finally:
            waiters = self._load_waiters.get(tab_id)
            if waiters and waiter in waiters:
                waiters.remove(waiter)
        return True

    async def _shutdown_scripts(self) -> None:
        for tab_id in list(self._scripts):
            self._drop_content_script(tab_id)
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
