from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from pagemodel.actions import ActionExecutor
from pagemodel.model import build_snapshot
from pagemodel.surface import PageSurface

log = logging.getLogger(__name__)

REQUEST_PAGE_CAPTURE = "REQUEST_PAGE_CAPTURE"
EXECUTE_COMMAND = "EXECUTE_COMMAND"
PAGE_INFO_UPDATE = "PAGE_INFO_UPDATE"

READY_CAPTURE_DELAY_S = 0.8

RuntimePoster = Callable[[dict[str, Any]], Awaitable[None]]


class ContentScript:
    """Per-tab page runtime answering capture and command messages."""

    def __init__(
        self,
        tab_id: int,
        surface: PageSurface,
        post_message: RuntimePoster,
        *,
        ready_delay_s: float = READY_CAPTURE_DELAY_S,
    ) -> None:
        self.tab_id = tab_id
        self.initialized = False
        self._surface = surface
        self._post_message = post_message
        self._ready_delay_s = ready_delay_s
        self._executor = ActionExecutor(surface, self.send_page_info)
        self._tasks: set[asyncio.Task[None]] = set()

    def start(self) -> None:
        if self.initialized:
            return
        self.initialized = True
        self._spawn(self._delayed_capture(self._ready_delay_s, "content_script_ready", None))

    def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _delayed_capture(self, delay_s: float, reason: str, request_id: str | None) -> None:
        await asyncio.sleep(delay_s)
        try:
            await self.send_page_info(reason, request_id)
        except Exception as exc:
            log.debug("Tab %s capture (%s) failed: %s", self.tab_id, reason, exc)

    async def handle_message(self, message: dict[str, Any]) -> dict[str, Any]:
        message_type = message.get("type")
        data = message.get("data") or {}

        if message_type == REQUEST_PAGE_CAPTURE:
            request_id = data.get("requestId")
            try:
                await self.send_page_info(str(data.get("reason") or "manual"), str(request_id) if request_id else None)
            except Exception as exc:
                return {"status": "error", "error": str(exc) or type(exc).__name__}
            return {"status": "success"}

        if message_type == EXECUTE_COMMAND:
            return await self._executor.execute(data)

        return {"status": "error", "error": f"Unsupported message: {message_type}"}

    async def send_page_info(self, reason: str, request_id: str | None = None) -> None:
        document = await self._surface.load_document()
        snapshot = build_snapshot(document)
        await self._surface.sync_references(document)
        data: dict[str, Any] = {
            "reason": reason,
            "title": snapshot.title,
            "url": snapshot.url,
            "markdown": snapshot.markdown,
        }
        if request_id:
            data["requestId"] = request_id
        await self._post_message({"type": PAGE_INFO_UPDATE, "data": data})
