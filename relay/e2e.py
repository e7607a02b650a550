"""End-to-end round trip through a running relay with a scripted observer."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from urllib.parse import quote
from uuid import uuid4

import aiohttp

from errors import BridgeError
from relay.control_client import BridgeSocket, ControlClient, reply_matcher, type_matcher
from relay.protocol import BRIDGE_KEY_PREFIX, message_data

log = logging.getLogger(__name__)

E2E_MARKDOWN = "# E2E Page\nURL: https://example.com/e2e\n\n## Content\nbridge e2e test"
SCROLL_TEXT = "down:300"
QUIET_WINDOW_S = 0.3


class E2EFailure(BridgeError):
    pass


@dataclass(slots=True)
class E2EOptions:
    bridge_key: str
    server_url: str = "ws://127.0.0.1:8999"
    profile_key: str = "e2e_profile"
    timeout_s: float = 8.0

    def observer_url(self) -> str:
        key = quote(self.bridge_key, safe="")
        return (
            f"{self.server_url.rstrip('/')}/proxycast-chrome-observer/"
            f"{BRIDGE_KEY_PREFIX}{key}?profileKey={quote(self.profile_key, safe='')}"
        )


def _check(condition: bool, message: str) -> None:
    if not condition:
        raise E2EFailure(message)


async def _round_trips(options: E2EOptions, observer: BridgeSocket, control: ControlClient) -> list[str]:
    timeout_s = options.timeout_s
    steps: list[str] = []

    ack = await observer.wait_for(type_matcher("connection_ack"), timeout_s=timeout_s, description="observer ack")
    _check(bool(message_data(ack).get("clientId")), "observer ack carries no clientId")
    steps.append("observer connected")
    await control.connect(timeout_s=timeout_s)
    steps.append("control connected")

    since = observer.received
    await observer.send({"type": "heartbeat", "timestamp": 0})
    await observer.wait_for(
        type_matcher("heartbeat_ack"), timeout_s=timeout_s, description="observer heartbeat_ack", since=since
    )
    await control.heartbeat(timeout_s=timeout_s)
    steps.append("heartbeat")

    page_request = await control.send_command(
        "get_page_info",
        profile_key=options.profile_key,
        wait_for_page_info=True,
        request_id=f"e2e-page-{uuid4().hex[:8]}",
    )
    command = await observer.wait_for(
        reply_matcher("command", page_request), timeout_s=timeout_s, description="get_page_info command"
    )
    _check(message_data(command).get("command") == "get_page_info", "observer received the wrong command")
    await observer.send(
        {"type": "command_result", "data": {"requestId": page_request, "status": "success", "message": "page info sent"}}
    )
    await observer.send({"type": "pageInfoUpdate", "data": {"markdown": E2E_MARKDOWN}})
    result = await control.wait_result(page_request, timeout_s=timeout_s)
    _check(result.get("status") == "success", f"get_page_info failed: {result.get('error')}")
    info = await control.wait_page_info(page_request, timeout_s=timeout_s)
    _check("E2E Page" in str(info.get("markdown") or ""), "page info markdown is missing the page title")
    _check(info.get("title") == "E2E Page", f"unexpected page title: {info.get('title')!r}")
    steps.append("get_page_info round trip")

    scroll_request = await control.send_command(
        "scroll",
        profile_key=options.profile_key,
        text=SCROLL_TEXT,
        request_id=f"e2e-scroll-{uuid4().hex[:8]}",
    )
    command = await observer.wait_for(
        reply_matcher("command", scroll_request), timeout_s=timeout_s, description="scroll command"
    )
    _check(message_data(command).get("text") == SCROLL_TEXT, "scroll command lost its text")
    await observer.send(
        {"type": "command_result", "data": {"requestId": scroll_request, "status": "success", "message": "scroll succeeded"}}
    )
    result = await control.wait_result(scroll_request, timeout_s=timeout_s)
    _check(result.get("status") == "success", f"scroll failed: {result.get('error')}")
    await asyncio.sleep(QUIET_WINDOW_S)
    _check(
        not any(reply_matcher("page_info_update", scroll_request)(payload) for payload in control.socket.messages),
        "scroll without wait_for_page_info produced a page_info_update",
    )
    steps.append("scroll round trip")
    return steps


async def run_e2e(options: E2EOptions, *, http: aiohttp.ClientSession | None = None) -> list[str]:
    """Return the names of the steps that passed; raise E2EFailure on the first failure."""
    owns_http = http is None
    session = http or aiohttp.ClientSession()
    observer: BridgeSocket | None = None
    control = ControlClient(options.server_url, options.bridge_key, http=session)
    try:
        observer = await BridgeSocket.connect(
            session, options.observer_url(), label="observer", timeout_s=options.timeout_s
        )
        steps = await _round_trips(options, observer, control)
        log.info("E2E passed: %s", ", ".join(steps))
        return steps
    except E2EFailure:
        raise
    except BridgeError as exc:
        recent = {
            "observer": observer.recent() if observer else [],
            "control": control.socket.recent() if control.socket else [],
        }
        raise E2EFailure(f"{exc}; recent messages: {json.dumps(recent)}") from exc
    finally:
        await control.close()
        if observer is not None:
            await observer.close()
        if owns_http:
            await session.close()
