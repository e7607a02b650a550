from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import quote
from uuid import uuid4

import aiohttp

from errors import CommandTimeoutError, TransportError
from relay.protocol import decode_message, message_data, request_id_of

log = logging.getLogger(__name__)

Predicate = Callable[[dict[str, Any]], bool]

DEFAULT_CONNECT_TIMEOUT_S = 10.0
RESULT_GRACE_S = 5.0
MESSAGE_HISTORY = 200


def reply_matcher(kind: str, request_id: str) -> Predicate:
    def _match(payload: dict[str, Any]) -> bool:
        return payload.get("type") == kind and request_id_of(message_data(payload)) == request_id

    return _match


def type_matcher(kind: str) -> Predicate:
    return lambda payload: payload.get("type") == kind


class BridgeSocket:
    """Client side of a relay socket keeping the latest inbound JSON messages.

    Every message gets a sequence number; `received` is the next one. Waiters
    are satisfied by a kept message numbered `since` or later, or by the next
    matching one. Only the last `history` messages are kept.
    """

    def __init__(
        self,
        ws: aiohttp.ClientWebSocketResponse,
        *,
        label: str,
        history: int = MESSAGE_HISTORY,
    ) -> None:
        self.ws = ws
        self.label = label
        self.received = 0
        self._history: deque[tuple[int, dict[str, Any]]] = deque(maxlen=history)
        self._waiters: list[tuple[Predicate, asyncio.Future[dict[str, Any]]]] = []
        self._reader = asyncio.create_task(self._read())

    @property
    def messages(self) -> list[dict[str, Any]]:
        return [payload for _, payload in self._history]

    @classmethod
    async def connect(
        cls,
        http: aiohttp.ClientSession,
        url: str,
        *,
        label: str,
        timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S,
        history: int = MESSAGE_HISTORY,
    ) -> BridgeSocket:
        try:
            ws = await asyncio.wait_for(http.ws_connect(url), timeout_s)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"{label} could not connect to {url}: {exc}") from exc
        return cls(ws, label=label, history=history)

    async def _read(self) -> None:
        try:
            async for msg in self.ws:
                if msg.type != aiohttp.WSMsgType.TEXT:
                    continue
                payload = decode_message(msg.data)
                if payload is None:
                    continue
                self._history.append((self.received, payload))
                self.received += 1
                for waiter in list(self._waiters):
                    predicate, future = waiter
                    if not future.done() and predicate(payload):
                        future.set_result(payload)
                        self._waiters.remove(waiter)
        finally:
            for _, future in self._waiters:
                if not future.done():
                    future.set_exception(TransportError(f"{self.label} socket closed"))
            self._waiters.clear()

    async def send(self, payload: dict[str, Any]) -> None:
        try:
            await self.ws.send_json(payload)
        except (ConnectionError, RuntimeError) as exc:
            raise TransportError(f"{self.label} send failed: {exc}") from exc

    async def wait_for(
        self,
        predicate: Predicate,
        *,
        timeout_s: float,
        description: str = "message",
        since: int = 0,
    ) -> dict[str, Any]:
        for seq, payload in list(self._history):
            if seq >= since and predicate(payload):
                return payload
        if self._reader.done():
            raise TransportError(f"{self.label} socket closed before {description}")
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        waiter = (predicate, future)
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(future, timeout_s)
        except asyncio.TimeoutError as exc:
            raise CommandTimeoutError(f"{self.label} timed out waiting for {description}") from exc
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    def recent(self, count: int = 5) -> list[dict[str, Any]]:
        return self.messages[-count:]

    async def close(self) -> None:
        await self.ws.close()
        with contextlib.suppress(asyncio.CancelledError):
            await self._reader


@dataclass(slots=True)
class ControlResult:
    request_id: str
    success: bool
    message: str | None = None
    error: str | None = None
    page_info: dict[str, Any] | None = None


class ControlClient:
    """Control caller correlating relay replies by request id."""

    def __init__(
        self,
        server_url: str,
        bridge_key: str,
        *,
        http: aiohttp.ClientSession | None = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self.bridge_key = bridge_key
        self.client_id: str | None = None
        self.socket: BridgeSocket | None = None
        self._http = http
        self._owns_http = http is None

    @property
    def url(self) -> str:
        return f"{self.server_url}/proxycast-chrome-control/{quote(self.bridge_key, safe='')}"

    def _socket(self) -> BridgeSocket:
        if self.socket is None:
            raise TransportError("control client is not connected")
        return self.socket

    async def connect(self, *, timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S) -> str:
        if self._http is None:
            self._http = aiohttp.ClientSession()
        self.socket = await BridgeSocket.connect(self._http, self.url, label="control", timeout_s=timeout_s)
        ack = await self.socket.wait_for(
            type_matcher("connection_ack"), timeout_s=timeout_s, description="connection_ack"
        )
        self.client_id = str(message_data(ack).get("clientId") or "")
        log.info("Control connected as %s", self.client_id)
        return self.client_id

    async def heartbeat(self, *, timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S) -> dict[str, Any]:
        socket = self._socket()
        since = socket.received
        await socket.send({"type": "heartbeat", "timestamp": int(asyncio.get_running_loop().time() * 1000)})
        return await socket.wait_for(
            type_matcher("heartbeat_ack"), timeout_s=timeout_s, description="heartbeat_ack", since=since
        )

    async def send_command(
        self,
        command: str,
        *,
        profile_key: str = "default",
        target: str | None = None,
        text: str | None = None,
        url: str | None = None,
        wait_for_page_info: bool = False,
        timeout_ms: int | None = None,
        request_id: str | None = None,
    ) -> str:
        request_id = request_id or f"cb-{uuid4()}"
        data: dict[str, Any] = {
            "requestId": request_id,
            "profileKey": profile_key,
            "command": command,
            "target": target,
            "text": text,
            "url": url,
            "wait_for_page_info": wait_for_page_info,
        }
        if timeout_ms is not None:
            data["timeoutMs"] = timeout_ms
        await self._socket().send({"type": "command", "data": data})
        return request_id

    async def wait_result(self, request_id: str, *, timeout_s: float) -> dict[str, Any]:
        reply = await self._socket().wait_for(
            reply_matcher("command_result", request_id),
            timeout_s=timeout_s,
            description=f"command_result {request_id}",
        )
        return message_data(reply)

    async def wait_page_info(self, request_id: str, *, timeout_s: float) -> dict[str, Any]:
        reply = await self._socket().wait_for(
            reply_matcher("page_info_update", request_id),
            timeout_s=timeout_s,
            description=f"page_info_update {request_id}",
        )
        return message_data(reply)

    async def execute(
        self,
        command: str,
        *,
        profile_key: str = "default",
        target: str | None = None,
        text: str | None = None,
        url: str | None = None,
        wait_for_page_info: bool = False,
        timeout_ms: int | None = None,
    ) -> ControlResult:
        """Send one command and wait for its result (and page info when asked)."""
        request_id = await self.send_command(
            command,
            profile_key=profile_key,
            target=target,
            text=text,
            url=url,
            wait_for_page_info=wait_for_page_info,
            timeout_ms=timeout_ms,
        )
        timeout_s = (timeout_ms or 30_000) / 1000 + RESULT_GRACE_S
        data = await self.wait_result(request_id, timeout_s=timeout_s)
        result = ControlResult(
            request_id=request_id,
            success=data.get("status") == "success",
            message=data.get("message"),
            error=data.get("error"),
        )
        if result.success and wait_for_page_info:
            info = await self.wait_page_info(request_id, timeout_s=timeout_s)
            result.page_info = {key: info.get(key) for key in ("title", "url", "markdown", "updatedAt")}
        return result

    async def close(self) -> None:
        if self.socket is not None:
            await self.socket.close()
            self.socket = None
        if self._owns_http and self._http is not None:
            await self._http.close()
            self._http = None
