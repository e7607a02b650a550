from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal

from utils import isoformat, utc_now

if TYPE_CHECKING:
    from relay.protocol import Outbox

SourceType = Literal["control", "api"]
ReplyShape = Literal["envelope", "flat"]


@dataclass(slots=True)
class PageInfo:
    markdown: str
    title: str | None = None
    url: str | None = None
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "url": self.url,
            "markdown": self.markdown,
            "updated_at": isoformat(self.updated_at),
        }


@dataclass(slots=True)
class ObserverConnection:
    client_id: str
    bridge_key: str
    profile_key: str
    outbox: Outbox
    connected_at: datetime = field(default_factory=utc_now)
    user_agent: str | None = None
    last_heartbeat_at: datetime | None = None
    last_page_info: PageInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "client_id": self.client_id,
            "profile_key": self.profile_key,
            "connected_at": isoformat(self.connected_at),
            "user_agent": self.user_agent,
            "last_heartbeat_at": isoformat(self.last_heartbeat_at),
            "last_page_info": self.last_page_info.to_dict() if self.last_page_info else None,
        }


@dataclass(slots=True)
class ControlConnection:
    client_id: str
    bridge_key: str
    outbox: Outbox
    connected_at: datetime = field(default_factory=utc_now)
    user_agent: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "client_id": self.client_id,
            "connected_at": isoformat(self.connected_at),
            "user_agent": self.user_agent,
        }


@dataclass(slots=True)
class PendingCommand:
    request_id: str
    bridge_key: str
    source_type: SourceType
    source_client_id: str
    command: str
    target_profile_key: str
    observer_client_id: str
    wait_for_page_info: bool
    timeout_ms: int
    reply_shape: ReplyShape = "envelope"
    created_at: datetime = field(default_factory=utc_now)
    completed: bool = False
    execution_message: str | None = None
    early_page_info: PageInfo | None = None
    future: asyncio.Future[dict[str, Any]] | None = None
    timer: asyncio.TimerHandle | None = None

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "source_type": self.source_type,
            "command": self.command,
            "profile_key": self.target_profile_key,
            "observer_client_id": self.observer_client_id,
            "wait_for_page_info": self.wait_for_page_info,
            "command_completed": self.completed,
            "timeout_ms": self.timeout_ms,
            "created_at": isoformat(self.created_at),
        }


@dataclass(slots=True)
class CommandAuditEntry:
    request_id: str
    bridge_key: str
    profile_key: str
    command: str
    source_type: SourceType
    success: bool
    error: str | None
    created_at: datetime
    finished_at: datetime = field(default_factory=utc_now)

    @property
    def duration_ms(self) -> int:
        return int((self.finished_at - self.created_at).total_seconds() * 1000)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "profile_key": self.profile_key,
            "command": self.command,
            "source_type": self.source_type,
            "success": self.success,
            "error": self.error,
            "created_at": isoformat(self.created_at),
            "finished_at": isoformat(self.finished_at),
            "duration_ms": self.duration_ms,
        }
