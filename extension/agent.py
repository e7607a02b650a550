from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable

import aiohttp
from aiohttp import WSMsgType

from errors import ConfigurationError, ContentScriptUnavailable, ExecutionError
from extension.content import EXECUTE_COMMAND, PAGE_INFO_UPDATE, REQUEST_PAGE_CAPTURE
from extension.host import BrowserHost, TabInfo
from extension.session import (
    RECONNECT_MAX_DELAY_MS,
    RECONNECT_MIN_DELAY_MS,
    AgentSession,
    ConnectionState,
    ReconnectScheduler,
)
from extension.settings import AgentSettings, SettingsStore
from utils import normalize_text, timestamp_ms

log = logging.getLogger(__name__)

HEARTBEAT_INTERVAL_S = 30.0
PAGE_CAPTURE_RETRY_LIMIT = 3
PAGE_CAPTURE_RETRY_STEP_S = 0.25
TAB_LOAD_TIMEOUT_S = 30.0
SETTLE_CAPTURE_DELAY_S = 0.4
CONNECT_TIMEOUT_S = 10.0

PROACTIVE_CAPTURE_REASONS = {"ws_open", "tab_activated", "tab_updated", "content_script_ready"}

_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)


class ExtensionAgent:
    """Observer endpoint for one browser profile.

    Keeps one outbound socket to the relay's observer path, answers relay
    commands against the active tab of ``host`` and forwards page snapshots
    produced by the tab's content script. Transport failures never stop the
    agent: every close schedules a reconnect with exponential backoff until
    ``disconnect`` is called.
    """

    def __init__(
        self,
        host: BrowserHost,
        settings: AgentSettings,
        *,
        store: SettingsStore | None = None,
        http: aiohttp.ClientSession | None = None,
        heartbeat_interval_s: float = HEARTBEAT_INTERVAL_S,
        reconnect_base_ms: int = RECONNECT_MIN_DELAY_MS,
        reconnect_max_ms: int = RECONNECT_MAX_DELAY_MS,
        capture_retry_limit: int = PAGE_CAPTURE_RETRY_LIMIT,
        capture_retry_step_s: float = PAGE_CAPTURE_RETRY_STEP_S,
        tab_load_timeout_s: float = TAB_LOAD_TIMEOUT_S,
        settle_delay_s: float = SETTLE_CAPTURE_DELAY_S,
    ) -> None:
        self.host = host
        self.store = store
        self.session = AgentSession(
            settings=settings,
            reconnect=ReconnectScheduler(self._on_reconnect_timer, base_ms=reconnect_base_ms, max_ms=reconnect_max_ms),
        )
        self._http = http
        self._owns_http = http is None
        self._heartbeat_interval_s = heartbeat_interval_s
        self._capture_retry_limit = capture_retry_limit
        self._capture_retry_step_s = capture_retry_step_s
        self._tab_load_timeout_s = tab_load_timeout_s
        self._settle_delay_s = settle_delay_s
        self._connect_lock = asyncio.Lock()
        self._sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

        host.on_tab_activated(self._on_tab_activated)
        host.on_tab_updated(self._on_tab_updated)
        host.on_runtime_message(self._on_runtime_message)

    @property
    def state(self) -> ConnectionState:
        return self.session.state

    @property
    def settings(self) -> AgentSettings:
        return self.session.settings

    # lifecycle

    async def start(self) -> None:
        tab = await self.host.active_tab()
        self.session.active_tab_id = tab.tab_id if tab is not None else None
        if self.settings.observer_url() is not None:
            await self.connect()
        else:
            log.warning("Agent for profile %s has no server URL or bridge key", self.settings.profile_key)

    async def connect(self, *, force: bool = False) -> bool:
        """Open the observer socket; returns whether it is connected afterwards.

        Raises ``ConfigurationError`` when the server URL or bridge key is
        missing. Handshake failures schedule a reconnect instead of raising.
        """
        async with self._connect_lock:
            session = self.session
            if session.connected and not force:
                return True
            session.reconnect.cancel()
            self._stop_heartbeat()
            session.manual_stop = False

            url = self.settings.observer_url()
            if url is None:
                session.state = "disconnected"
                raise ConfigurationError("server URL and bridge key are required")

            if force:
                await self._close_socket()

            session.state = "connecting"
            log.info(
                "Connecting observer for profile %s to %s",
                self.settings.profile_key,
                self.settings.server_url,
            )
            if self._http is None:
                self._http = aiohttp.ClientSession()
            try:
                ws = await asyncio.wait_for(self._http.ws_connect(url), CONNECT_TIMEOUT_S)
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
                session.last_error = str(exc) or type(exc).__name__
                log.warning("Observer handshake failed: %s", session.last_error)
                session.state = "reconnecting"
                session.reconnect.schedule()
                return False

            session.ws = ws
            session.state = "connected"
            session.last_error = None
            session.reconnect.reset()
            session.heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws))
            session.reader_task = asyncio.create_task(self._read_loop(ws))
            self._spawn(self.trigger_capture("ws_open"))
            return True

    def _on_reconnect_timer(self) -> None:
        self._spawn(self._reconnect())

    async def _reconnect(self) -> None:
        try:
            await self.connect()
        except ConfigurationError as exc:
            log.warning("Reconnect skipped: %s", exc)

    async def disconnect(self) -> None:
        """Stop for good; no reconnect is scheduled until ``connect`` is called again."""
        session = self.session
        session.manual_stop = True
        session.reconnect.cancel()
        self._stop_heartbeat()
        await self._close_socket()
        session.state = "disconnected"

    async def toggle_connection(self) -> bool:
        if self.session.connected:
            await self.disconnect()
            return False
        return await self.connect()

    async def close(self) -> None:
        await self.disconnect()
        for task in list(self.session.tasks):
            task.cancel()
        self.session.tasks.clear()
        if self._http is not None and self._owns_http:
            await self._http.close()
        self._http = None

    async def _close_socket(self) -> None:
        session = self.session
        ws, session.ws = session.ws, None
        reader, session.reader_task = session.reader_task, None
        if ws is not None and not ws.closed:
            await ws.close()
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()

    def _stop_heartbeat(self) -> None:
        task, self.session.heartbeat_task = self.session.heartbeat_task, None
        if task is not None:
            task.cancel()

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self.session.tasks.add(task)
        task.add_done_callback(self._finish_task)
        return task

    def _finish_task(self, task: asyncio.Task[Any]) -> None:
        self.session.tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("Agent task failed", exc_info=exc)

    # socket

    async def _heartbeat_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while not ws.closed:
            await asyncio.sleep(self._heartbeat_interval_s)
            await self._send({"type": "heartbeat", "timestamp": timestamp_ms()})

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    self._handle_text(msg.data)
                elif msg.type == WSMsgType.ERROR:
                    log.warning("Observer socket error: %s", ws.exception())
                    break
        finally:
            if self.session.ws is ws:
                self._on_socket_closed()

    def _on_socket_closed(self) -> None:
        session = self.session
        session.ws = None
        session.reader_task = None
        self._stop_heartbeat()
        if session.manual_stop:
            session.state = "disconnected"
            return
        session.state = "reconnecting"
        session.reconnect.schedule()

    def _handle_text(self, raw: str) -> None:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            log.warning("Dropping malformed relay message: %s", exc)
            return
        if not isinstance(payload, dict):
            return
        message_type = payload.get("type")
        if message_type in {"heartbeat_ack", "connection_ack"}:
            return
        data = payload.get("data")
        if message_type != "command" or not isinstance(data, dict):
            return
        self._spawn(self.execute_remote_command(data))

    async def _send(self, payload: dict[str, Any]) -> bool:
        ws = self.session.ws
        if ws is None or ws.closed:
            return False
        try:
            await ws.send_json(payload)
        except (ConnectionResetError, aiohttp.ClientError) as exc:
            log.warning("Failed to send %s: %s", payload.get("type"), exc)
            return False
        return True

    async def _send_command_result(
        self,
        data: dict[str, Any],
        *,
        error: str | None = None,
        message: str | None = None,
    ) -> None:
        result: dict[str, Any] = {
            "requestId": data.get("requestId"),
            "sourceClientId": data.get("sourceClientId"),
        }
        if error is not None:
            result["status"] = "error"
            result["error"] = error
        else:
            result["status"] = "success"
            result["message"] = message or ""
        await self._send({"type": "command_result", "data": result})

    # commands

    async def execute_remote_command(self, data: dict[str, Any]) -> None:
        command = str(data.get("command") or "").strip()
        if not command:
            return
        wait_for_page_info = data.get("wait_for_page_info") is True

        if command == "open_url":
            await self._handle_open_url(data, wait_for_page_info)
            return
        if command == "switch_tab":
            await self._handle_switch_tab(data, wait_for_page_info)
            return

        tab_id = await self._resolve_target_tab()
        if tab_id is None:
            await self._send_command_result(data, error="No active tab available")
            return

        try:
            response = await self._send_to_tab(tab_id, {"type": EXECUTE_COMMAND, "data": data})
        except Exception as exc:
            await self._send_command_result(data, error=str(exc) or type(exc).__name__)
            return

        if response.get("status") == "error":
            await self._send_command_result(data, error=str(response.get("error") or "Command failed"))
            return
        await self._send_command_result(data, message=str(response.get("message") or f"{command} succeeded"))

        if wait_for_page_info and command != "get_page_info":
            await self._capture_after_command(tab_id, data.get("requestId"))

    async def _capture_after_command(self, tab_id: int, request_id: Any) -> None:
        # Navigation started by the command replaces the content script, so the
        # snapshot is taken from here once the tab has settled and loaded again.
        await self._sleep(self._settle_delay_s)
        await self.host.wait_tab_loaded(tab_id, self._tab_load_timeout_s)
        await self.trigger_capture("command_result", request_id=request_id)

    async def _handle_open_url(self, data: dict[str, Any], wait_for_page_info: bool) -> None:
        url = str(data.get("url") or "").strip()
        if not url:
            await self._send_command_result(data, error="open_url requires a url")
            return
        if not _SCHEME_RE.match(url):
            url = f"https://{url}"

        try:
            tab = await self.host.open_tab(url)
        except Exception as exc:
            await self._send_command_result(data, error=str(exc) or type(exc).__name__)
            return

        self.session.active_tab_id = tab.tab_id
        await self._send_command_result(data, message=f"Opened {url}")

        if wait_for_page_info:
            await self.host.wait_tab_loaded(tab.tab_id, self._tab_load_timeout_s)
            await self.trigger_capture("open_url_complete", request_id=data.get("requestId"))

    async def _handle_switch_tab(self, data: dict[str, Any], wait_for_page_info: bool) -> None:
        raw = normalize_text(data.get("target"))
        if not raw:
            await self._send_command_result(data, error="switch_tab requires a target")
            return

        tab: TabInfo | None = None
        if raw.isdigit():
            number = int(raw)
            if number > 0:
                tab = await self.host.get_tab(number)
            if tab is None:
                tabs = await self.host.list_tabs()
                if number < len(tabs):
                    tab = tabs[number]

        if tab is None:
            await self._send_command_result(data, error=f"Tab not found: {raw}")
            return

        await self.host.activate_tab(tab.tab_id)
        self.session.active_tab_id = tab.tab_id
        await self._send_command_result(data, message=f"Switched to tab {tab.tab_id}")

        if wait_for_page_info:
            await self.trigger_capture("switch_tab", request_id=data.get("requestId"))

    async def _resolve_target_tab(self) -> int | None:
        active_tab_id = self.session.active_tab_id
        if active_tab_id is not None:
            tab = await self.host.get_tab(active_tab_id)
            if tab is not None and not tab.discarded:
                return tab.tab_id
        tab = await self.host.active_tab()
        if tab is not None:
            self.session.active_tab_id = tab.tab_id
            return tab.tab_id
        return None

    async def _send_to_tab(self, tab_id: int, message: dict[str, Any]) -> dict[str, Any]:
        try:
            return await self.host.send_to_tab(tab_id, message)
        except ContentScriptUnavailable:
            await self.host.inject_content_script(tab_id)
            return await self.host.send_to_tab(tab_id, message)

    # page capture

    async def trigger_capture(self, reason: str, *, request_id: Any = None) -> bool:
        """Ask the active tab for a snapshot.

        Proactive reasons are skipped while monitoring is off. Captures that no
        command waits on are retried with a growing delay before giving up.
        """
        if reason in PROACTIVE_CAPTURE_REASONS and not self.session.monitoring_enabled:
            return False
        retries = self._capture_retry_limit if not request_id else 0
        data: dict[str, Any] = {"reason": reason}
        if request_id:
            data["requestId"] = str(request_id)

        attempt = 0
        while True:
            tab_id = await self._resolve_target_tab()
            if tab_id is None:
                return False
            try:
                response = await self._send_to_tab(tab_id, {"type": REQUEST_PAGE_CAPTURE, "data": data})
                if response.get("status") == "error":
                    raise ExecutionError(str(response.get("error") or "capture failed"))
                return True
            except Exception as exc:
                if attempt >= retries:
                    log.warning("Page capture (%s) failed: %s", reason, exc)
                    return False
                attempt += 1
                await self._sleep(self._capture_retry_step_s * attempt)

    async def _on_runtime_message(self, tab_id: int, message: dict[str, Any]) -> None:
        if message.get("type") != PAGE_INFO_UPDATE:
            return
        session = self.session
        if session.active_tab_id is not None and tab_id != session.active_tab_id:
            return
        data = message.get("data") or {}
        markdown = data.get("markdown")
        if not isinstance(markdown, str) or not markdown.strip():
            return
        if data.get("reason") in PROACTIVE_CAPTURE_REASONS and not session.monitoring_enabled:
            return

        session.latest_page_info = {
            "title": str(data.get("title") or ""),
            "url": str(data.get("url") or ""),
            "markdown": markdown,
            "timestamp": timestamp_ms(),
        }
        payload: dict[str, Any] = {
            "markdown": markdown,
            "title": session.latest_page_info["title"],
            "url": session.latest_page_info["url"],
        }
        if data.get("requestId"):
            payload["requestId"] = data["requestId"]
        await self._send({"type": "pageInfoUpdate", "data": payload})

    async def _on_tab_activated(self, tab_id: int) -> None:
        self.session.active_tab_id = tab_id
        await self.trigger_capture("tab_activated")

    async def _on_tab_updated(self, tab: TabInfo) -> None:
        if not tab.active:
            return
        self.session.active_tab_id = tab.tab_id
        if tab.status == "complete":
            await self.trigger_capture("tab_updated")

    # settings and status

    async def update_settings(self, patch: dict[str, Any], *, reconnect: bool = False) -> AgentSettings:
        settings = self.settings.merged(patch)
        self.session.settings = settings
        if self.store is not None:
            self.store.save(settings)
        if reconnect:
            await self.connect(force=True)
        return settings

    async def set_monitoring(self, enabled: bool) -> bool:
        await self.update_settings({"monitoring_enabled": enabled})
        if enabled:
            self._spawn(self.trigger_capture("manual"))
        return enabled

    async def toggle_monitoring(self) -> bool:
        return await self.set_monitoring(not self.session.monitoring_enabled)

    def status(self) -> dict[str, Any]:
        session = self.session
        return {
            "state": session.state,
            "is_connected": session.connected,
            "monitoring_enabled": session.monitoring_enabled,
            "active_tab_id": session.active_tab_id,
            "latest_page_info": session.latest_page_info,
            "reconnect_attempts": session.reconnect.attempts,
            "last_error": session.last_error,
            "settings": self.settings.masked(),
        }
