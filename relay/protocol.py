from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from aiohttp import web

from relay.models import PageInfo, PendingCommand, ReplyShape
from utils import timestamp_ms, truncate_message, utc_now

log = logging.getLogger(__name__)

BRIDGE_KEY_PREFIX = "Proxycast_Key="
DEFAULT_PROFILE_KEY = "default"
PAGE_INFO_HEADER_LINES = 6

ALLOWED_COMMANDS = frozenset(
    {
        "open_url",
        "click",
        "type",
        "scroll",
        "scroll_page",
        "get_page_info",
        "refresh_page",
        "go_back",
        "go_forward",
        "switch_tab",
    }
)
PAGE_INFO_TYPES = frozenset({"pageInfoUpdate", "page_info_update"})

_PROFILE_KEY_RE = re.compile(r"[^A-Za-z0-9_-]")


def normalize_profile_key(raw: object) -> str:
    key = _PROFILE_KEY_RE.sub("_", str(raw or "").strip())
    if not key.strip("_"):
        return DEFAULT_PROFILE_KEY
    return key


def parse_bridge_key(segment: str) -> str:
    key = segment.strip()
    if key.startswith(BRIDGE_KEY_PREFIX):
        key = key[len(BRIDGE_KEY_PREFIX):]
    return key.strip()


def validate_command(command: str, url: str | None) -> str | None:
    """Return an error message for a command the relay refuses to route."""
    if not command:
        return "Missing command"
    if command not in ALLOWED_COMMANDS:
        return f"Unsupported command: {command}"
    if command == "open_url" and not (url or "").strip():
        return "open_url requires a non-empty url"
    return None


def parse_page_info(markdown: str, *, title: object = None, url: object = None) -> PageInfo:
    """Title and url come from the payload when present, else from the markdown header."""
    parsed_title = title.strip() if isinstance(title, str) and title.strip() else None
    parsed_url = url.strip() if isinstance(url, str) and url.strip() else None
    for line in markdown.splitlines()[:PAGE_INFO_HEADER_LINES]:
        stripped = line.strip()
        if parsed_title is None and stripped.startswith("#"):
            candidate = stripped.lstrip("#").strip()
            if candidate:
                parsed_title = candidate
        elif parsed_url is None and stripped.lower().startswith("url:"):
            candidate = stripped[4:].strip()
            if candidate:
                parsed_url = candidate
    return PageInfo(markdown=markdown, title=parsed_title, url=parsed_url, updated_at=utc_now())


def decode_message(raw: str) -> dict[str, Any] | None:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        log.warning("Dropping malformed JSON message: %s", truncate_message(raw, 200))
        return None
    if not isinstance(payload, dict):
        log.warning("Dropping non-object message: %s", truncate_message(raw, 200))
        return None
    return payload


def message_data(payload: dict[str, Any]) -> dict[str, Any]:
    """The `data` envelope when present, else the payload itself."""
    data = payload.get("data")
    return data if isinstance(data, dict) else payload


def _field(data: dict[str, Any], *names: str) -> Any:
    for name in names:
        value = data.get(name)
        if value is not None:
            return value
    return None


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def request_id_of(data: dict[str, Any]) -> str | None:
    value = _field(data, "requestId", "request_id")
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(slots=True)
class CommandRequest:
    command: str
    profile_key: str
    request_id: str | None = None
    target: str | None = None
    text: str | None = None
    url: str | None = None
    wait_for_page_info: bool = False
    timeout_ms: Any = None
    reply_shape: ReplyShape = "envelope"

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> CommandRequest:
        """Accept `{type, data:{...}}` or a flat body, camelCase or snake_case."""
        enveloped = isinstance(payload.get("data"), dict)
        data = message_data(payload)
        return cls(
            command=str(_field(data, "command") or "").strip().lower(),
            profile_key=normalize_profile_key(_field(data, "profileKey", "profile_key")),
            request_id=request_id_of(data),
            target=_optional_text(_field(data, "target")),
            text=_optional_text(_field(data, "text")),
            url=_optional_text(_field(data, "url")),
            wait_for_page_info=_flag(_field(data, "wait_for_page_info", "waitForPageInfo")),
            timeout_ms=_field(data, "timeout_ms", "timeoutMs"),
            reply_shape="envelope" if enveloped else "flat",
        )


def connection_ack(message: str, **data: Any) -> dict[str, Any]:
    return {"type": "connection_ack", "message": message, "data": data}


def heartbeat_ack() -> dict[str, Any]:
    return {"type": "heartbeat_ack", "timestamp": timestamp_ms()}


def command_payload(row: PendingCommand, request: CommandRequest) -> dict[str, Any]:
    return {
        "type": "command",
        "data": {
            "requestId": row.request_id,
            "sourceClientId": row.source_client_id,
            "command": request.command,
            "target": request.target,
            "text": request.text,
            "url": request.url,
            "wait_for_page_info": request.wait_for_page_info,
        },
    }


def command_result_message(
    shape: ReplyShape,
    request_id: str,
    command: str,
    *,
    success: bool,
    message: str | None = None,
    error: str | None = None,
) -> dict[str, Any]:
    if shape == "flat":
        payload: dict[str, Any] = {
            "type": "command_result",
            "request_id": request_id,
            "command": command,
            "success": success,
        }
        if success:
            payload["message"] = truncate_message(message or "")
        else:
            payload["error"] = truncate_message(error or "Command failed")
        return payload
    data: dict[str, Any] = {"requestId": request_id, "status": "success" if success else "error"}
    if success:
        data["message"] = truncate_message(message or "")
    else:
        data["error"] = truncate_message(error or "Command failed")
    return {"type": "command_result", "data": data}


def page_info_message(shape: ReplyShape, request_id: str, page_info: PageInfo) -> dict[str, Any]:
    if shape == "flat":
        return {"type": "page_info_update", "request_id": request_id, "page_info": page_info.to_dict()}
    return {
        "type": "page_info_update",
        "data": {
            "requestId": request_id,
            "markdown": page_info.markdown,
            "title": page_info.title,
            "url": page_info.url,
            "updatedAt": page_info.updated_at.isoformat(),
        },
    }


class Outbox:
    """Per-socket send queue drained by one writer task.

    `send` never blocks, so hub code can enqueue while holding its lock.
    `close` enqueues a sentinel; the writer closes the socket after flushing.
    """

    def __init__(self, ws: web.WebSocketResponse, *, label: str = "socket") -> None:
        self._ws = ws
        self._label = label
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._closed = False
        self._writer = asyncio.create_task(self._drain())

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, payload: dict[str, Any]) -> bool:
        if self._closed:
            return False
        self._queue.put_nowait(payload)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def _drain(self) -> None:
        while True:
            payload = await self._queue.get()
            if payload is None:
                with contextlib.suppress(ConnectionError, RuntimeError):
                    await self._ws.close()
                return
            if self._ws.closed:
                continue
            try:
                await self._ws.send_json(payload)
            except (ConnectionError, RuntimeError) as exc:
                log.debug("Send to %s failed: %s", self._label, exc)

    async def aclose(self) -> None:
        self.close()
        await self._writer
