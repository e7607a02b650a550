from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

import aiohttp

from extension.settings import AgentSettings

log = logging.getLogger(__name__)

ConnectionState = Literal["disconnected", "connecting", "connected", "reconnecting"]

RECONNECT_MIN_DELAY_MS = 1_000
RECONNECT_MAX_DELAY_MS = 30_000


def reconnect_delay_ms(
    attempt: int,
    *,
    base_ms: int = RECONNECT_MIN_DELAY_MS,
    max_ms: int = RECONNECT_MAX_DELAY_MS,
) -> int:
    """Delay before reconnect number ``attempt`` (1-based)."""
    return min(max_ms, base_ms * 2 ** (max(attempt, 1) - 1))


class ReconnectScheduler:
    """Owns the single pending reconnect timer of one agent.

    ``attempts`` counts scheduled reconnects and is only reset after a
    successful connection. Scheduling while a timer is pending is a no-op.
    """

    def __init__(
        self,
        callback: Callable[[], None],
        *,
        base_ms: int = RECONNECT_MIN_DELAY_MS,
        max_ms: int = RECONNECT_MAX_DELAY_MS,
    ) -> None:
        self.attempts = 0
        self._callback = callback
        self._base_ms = base_ms
        self._max_ms = max_ms
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def delay_for(self, attempt: int) -> int:
        return reconnect_delay_ms(attempt, base_ms=self._base_ms, max_ms=self._max_ms)

    def schedule(self) -> int | None:
        if self._handle is not None:
            return None
        self.attempts += 1
        delay = self.delay_for(self.attempts)
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay / 1000, self._fire)
        log.info("Connection lost, reconnecting in %sms (attempt %s)", delay, self.attempts)
        return delay

    def _fire(self) -> None:
        self._handle = None
        self._callback()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def reset(self) -> None:
        self.attempts = 0


@dataclass(slots=True)
class AgentSession:
    settings: AgentSettings
    reconnect: ReconnectScheduler
    state: ConnectionState = "disconnected"
    ws: aiohttp.ClientWebSocketResponse | None = None
    heartbeat_task: asyncio.Task[None] | None = None
    reader_task: asyncio.Task[None] | None = None
    active_tab_id: int | None = None
    latest_page_info: dict[str, Any] | None = None
    manual_stop: bool = False
    last_error: str | None = None
    tasks: set[asyncio.Task[Any]] = field(default_factory=set)

    @property
    def connected(self) -> bool:
        return self.state == "connected"

    @property
    def monitoring_enabled(self) -> bool:
        return self.settings.monitoring_enabled
