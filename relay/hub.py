from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Coroutine
from uuid import uuid4

from errors import RoutingError
from relay.config import RelayConfig
from relay.models import (
    CommandAuditEntry,
    ControlConnection,
    ObserverConnection,
    PageInfo,
    PendingCommand,
)
from relay.pending import PendingCommandTable
from relay.protocol import (
    PAGE_INFO_TYPES,
    CommandRequest,
    Outbox,
    command_payload,
    command_result_message,
    heartbeat_ack,
    message_data,
    normalize_profile_key,
    page_info_message,
    parse_page_info,
    request_id_of,
    validate_command,
)
from utils import truncate_message, utc_now

log = logging.getLogger(__name__)

OBSERVER_DISCONNECTED = "observer disconnected"
OBSERVER_REPLACED = "observer replaced by a new connection"
CONTROL_DISCONNECTED = "control disconnected"


class BridgeHub:
    """Shared relay state: observers, controls and in-flight commands.

    Every mutation happens under one lock and every resolution path pops the
    pending row before delivering, so exactly one outcome reaches the caller.
    """

    def __init__(self, config: RelayConfig | None = None) -> None:
        self.config = config or RelayConfig()
        self._lock = asyncio.Lock()
        self._observers: dict[str, ObserverConnection] = {}
        self._observer_index: dict[tuple[str, str], str] = {}
        self._controls: dict[str, ControlConnection] = {}
        self._pending = PendingCommandTable()
        self._audit: deque[CommandAuditEntry] = deque(maxlen=self.config.audit_size)
        self._tasks: set[asyncio.Task[Any]] = set()

    def is_valid_key(self, bridge_key: str) -> bool:
        return bool(bridge_key) and bridge_key in self.config.bridge_keys

    # connections -----------------------------------------------------------------

    async def register_observer(
        self,
        bridge_key: str,
        profile_key: object,
        outbox: Outbox,
        *,
        user_agent: str | None = None,
    ) -> ObserverConnection:
        profile = normalize_profile_key(profile_key)
        conn = ObserverConnection(
            client_id=f"observer-{uuid4()}",
            bridge_key=bridge_key,
            profile_key=profile,
            outbox=outbox,
            user_agent=user_agent,
        )
        async with self._lock:
            previous_id = self._observer_index.get((bridge_key, profile))
            if previous_id is not None:
                previous = self._observers.pop(previous_id, None)
                for row in self._pending.pop_where(lambda r: r.observer_client_id == previous_id):
                    self._finish(row, success=False, error=OBSERVER_REPLACED)
                if previous is not None:
                    previous.outbox.close()
                log.info("Observer %s replaced by %s for profile %s", previous_id, conn.client_id, profile)
            self._observers[conn.client_id] = conn
            self._observer_index[(bridge_key, profile)] = conn.client_id
        log.info("Observer connected: %s (profile=%s)", conn.client_id, profile)
        return conn

    async def unregister_observer(self, client_id: str) -> None:
        async with self._lock:
            conn = self._observers.pop(client_id, None)
            if conn is None:
                return
            key = (conn.bridge_key, conn.profile_key)
            if self._observer_index.get(key) == client_id:
                del self._observer_index[key]
            failed = self._pending.pop_where(lambda r: r.observer_client_id == client_id)
            for row in failed:
                self._finish(row, success=False, error=OBSERVER_DISCONNECTED)
        log.info("Observer disconnected: %s (%d pending failed)", client_id, len(failed))

    async def register_control(
        self,
        bridge_key: str,
        outbox: Outbox,
        *,
        user_agent: str | None = None,
    ) -> ControlConnection:
        conn = ControlConnection(
            client_id=f"control-{uuid4()}",
            bridge_key=bridge_key,
            outbox=outbox,
            user_agent=user_agent,
        )
        async with self._lock:
            self._controls[conn.client_id] = conn
        log.info("Control connected: %s", conn.client_id)
        return conn

    async def unregister_control(self, client_id: str) -> None:
        async with self._lock:
            if self._controls.pop(client_id, None) is None:
                return
            dropped = self._pending.pop_where(
                lambda r: r.source_type == "control" and r.source_client_id == client_id
            )
            for row in dropped:
                self._record(row, success=False, error=CONTROL_DISCONNECTED)
        log.info("Control disconnected: %s (%d pending dropped)", client_id, len(dropped))

    # inbound messages ------------------------------------------------------------

    async def handle_observer_message(self, client_id: str, payload: dict[str, Any]) -> None:
        kind = payload.get("type")
        if kind == "heartbeat":
            await self._observer_heartbeat(client_id)
        elif kind in PAGE_INFO_TYPES:
            await self.handle_page_info(client_id, message_data(payload))
        elif kind == "command_result":
            await self.handle_command_result(client_id, message_data(payload))
        else:
            log.debug("Ignoring observer message type %r from %s", kind, client_id)

    async def handle_control_message(self, client_id: str, payload: dict[str, Any]) -> None:
        kind = payload.get("type")
        if kind == "heartbeat":
            async with self._lock:
                control = self._controls.get(client_id)
                if control is not None:
                    control.outbox.send(heartbeat_ack())
        elif kind == "command":
            await self.handle_control_command(client_id, payload)
        else:
            log.debug("Ignoring control message type %r from %s", kind, client_id)

    async def _observer_heartbeat(self, client_id: str) -> None:
        async with self._lock:
            observer = self._observers.get(client_id)
            if observer is None:
                return
            observer.last_heartbeat_at = utc_now()
            observer.outbox.send(heartbeat_ack())

    async def handle_control_command(self, client_id: str, payload: dict[str, Any]) -> None:
        request = CommandRequest.from_payload(payload)
        request_id = request.request_id or f"cb-{uuid4()}"
        async with self._lock:
            control = self._controls.get(client_id)
            if control is None:
                return
            try:
                observer = self._route(control.bridge_key, request, request_id)
            except RoutingError as exc:
                log.info("Rejecting command %s (%s): %s", request.command or "?", request_id, exc)
                control.outbox.send(
                    command_result_message(
                        request.reply_shape, request_id, request.command, success=False, error=str(exc)
                    )
                )
                return
            row = PendingCommand(
                request_id=request_id,
                bridge_key=control.bridge_key,
                source_type="control",
                source_client_id=client_id,
                command=request.command,
                target_profile_key=request.profile_key,
                observer_client_id=observer.client_id,
                wait_for_page_info=request.wait_for_page_info,
                timeout_ms=self.config.normalize_timeout(request.timeout_ms),
                reply_shape=request.reply_shape,
            )
            self._dispatch(row, request, observer)

    async def handle_command_result(self, observer_id: str, data: dict[str, Any]) -> None:
        request_id = request_id_of(data)
        status = str(data.get("status") or "").strip().lower()
        async with self._lock:
            row = self._pending.get(request_id)
            if row is None or row.observer_client_id != observer_id:
                log.debug("Dropping result for unknown request %s from %s", request_id, observer_id)
                return
            if status != "success":
                self._pending.pop(row.request_id)
                self._finish(row, success=False, error=str(data.get("error") or "Command failed"))
                return
            message = str(data.get("message") or "Command succeeded")
            if not row.wait_for_page_info:
                self._pending.pop(row.request_id)
                self._finish(row, success=True, message=message)
                return
            if row.completed:
                return
            row.completed = True
            row.execution_message = message
            control = self._controls.get(row.source_client_id) if row.source_type == "control" else None
            if control is not None:
                control.outbox.send(
                    command_result_message(row.reply_shape, row.request_id, row.command, success=True, message=message)
                )
            if row.early_page_info is not None:
                self._pending.pop(row.request_id)
                self._finish(row, success=True, message=message, page_info=row.early_page_info)

    async def handle_page_info(self, observer_id: str, data: dict[str, Any]) -> None:
        markdown = data.get("markdown")
        if not isinstance(markdown, str):
            log.warning("Dropping page info without markdown from %s", observer_id)
            return
        page_info = parse_page_info(markdown, title=data.get("title"), url=data.get("url"))
        request_id = request_id_of(data)
        async with self._lock:
            observer = self._observers.get(observer_id)
            if observer is None:
                return
            observer.last_page_info = page_info
            if request_id is not None:
                row = self._pending.get(request_id)
                if row is None or row.observer_client_id != observer_id or not row.wait_for_page_info:
                    return
                if row.completed:
                    self._pending.pop(row.request_id)
                    self._finish(row, success=True, message=row.execution_message, page_info=page_info)
                else:
                    row.early_page_info = page_info
                return
            resolved = self._pending.pop_where(
                lambda r: r.observer_client_id == observer_id and r.wait_for_page_info and r.completed
            )
            for row in resolved:
                self._finish(row, success=True, message=row.execution_message, page_info=page_info)

    # collaborator API --------------------------------------------------------------

    async def execute_api_command(self, bridge_key: str, body: dict[str, Any]) -> dict[str, Any]:
        """Route one command and wait for its final outcome."""
        request = CommandRequest.from_payload(body)
        request_id = f"cb-api-{uuid4()}"
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        async with self._lock:
            try:
                observer = self._route(bridge_key, request, request_id)
            except RoutingError as exc:
                return {"success": False, "request_id": request_id, "command": request.command, "error": str(exc)}
            row = PendingCommand(
                request_id=request_id,
                bridge_key=bridge_key,
                source_type="api",
                source_client_id=f"proxycast-api-{uuid4()}",
                command=request.command,
                target_profile_key=request.profile_key,
                observer_client_id=observer.client_id,
                wait_for_page_info=request.wait_for_page_info,
                timeout_ms=self.config.normalize_timeout(request.timeout_ms),
                future=future,
            )
            self._dispatch(row, request, observer)
        return await future

    async def status_snapshot(self, bridge_key: str | None = None) -> dict[str, Any]:
        async with self._lock:
            observers = [
                conn.to_dict()
                for conn in self._observers.values()
                if bridge_key is None or conn.bridge_key == bridge_key
            ]
            controls = [
                conn.to_dict()
                for conn in self._controls.values()
                if bridge_key is None or conn.bridge_key == bridge_key
            ]
            pending = [row.to_dict() for row in self._pending if bridge_key is None or row.bridge_key == bridge_key]
            audit = [
                entry.to_dict() for entry in self._audit if bridge_key is None or entry.bridge_key == bridge_key
            ]
        return {
            "observer_count": len(observers),
            "control_count": len(controls),
            "pending_command_count": len(pending),
            "observers": observers,
            "controls": controls,
            "pending_commands": pending,
            "recent_commands": audit,
        }

    async def shutdown(self) -> None:
        async with self._lock:
            for row in self._pending.pop_where(lambda r: True):
                self._finish(row, success=False, error="relay shutting down")
            for conn in [*self._observers.values(), *self._controls.values()]:
                conn.outbox.close()
        for task in list(self._tasks):
            task.cancel()

    # internals ---------------------------------------------------------------------

    def _route(self, bridge_key: str, request: CommandRequest, request_id: str) -> ObserverConnection:
        error = validate_command(request.command, request.url)
        if error is not None:
            raise RoutingError(error)
        if request_id in self._pending:
            raise RoutingError(f"Request id already in flight: {request_id}")
        observer = self._observer_for(bridge_key, request.profile_key)
        if observer is None:
            raise RoutingError(f"No observer connected for profile: {request.profile_key}")
        return observer

    def _observer_for(self, bridge_key: str, profile_key: str) -> ObserverConnection | None:
        client_id = self._observer_index.get((bridge_key, profile_key))
        return self._observers.get(client_id) if client_id is not None else None

    def _dispatch(self, row: PendingCommand, request: CommandRequest, observer: ObserverConnection) -> None:
        self._pending.insert(row)
        loop = asyncio.get_running_loop()
        row.timer = loop.call_later(row.timeout_ms / 1000, self._on_timer, row.request_id)
        observer.outbox.send(command_payload(row, request))
        log.info(
            "Routed %s (%s) to %s via %s",
            row.command,
            row.request_id,
            observer.client_id,
            row.source_type,
        )

    def _on_timer(self, request_id: str) -> None:
        self._spawn(self._expire(request_id))

    async def _expire(self, request_id: str) -> None:
        async with self._lock:
            row = self._pending.pop(request_id)
            if row is None:
                return
            log.warning("Command %s (%s) timed out after %dms", row.command, request_id, row.timeout_ms)
            self._finish(row, success=False, error=f"timeout: no result within {row.timeout_ms}ms")

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _record(self, row: PendingCommand, *, success: bool, error: str | None) -> None:
        self._audit.append(
            CommandAuditEntry(
                request_id=row.request_id,
                bridge_key=row.bridge_key,
                profile_key=row.target_profile_key,
                command=row.command,
                source_type=row.source_type,
                success=success,
                error=error,
                created_at=row.created_at,
            )
        )

    def _finish(
        self,
        row: PendingCommand,
        *,
        success: bool,
        message: str | None = None,
        error: str | None = None,
        page_info: PageInfo | None = None,
    ) -> None:
        """Deliver the outcome of a row that has already left the table."""
        row.cancel_timer()
        if message is not None:
            message = truncate_message(message)
        if error is not None:
            error = truncate_message(error)
        self._record(row, success=success, error=error)

        if row.source_type == "api":
            if row.future is None or row.future.done():
                return
            result: dict[str, Any] = {"success": success, "request_id": row.request_id, "command": row.command}
            if message is not None:
                result["message"] = message
            if error is not None:
                result["error"] = error
            if page_info is not None:
                result["page_info"] = page_info.to_dict()
            row.future.set_result(result)
            return

        control = self._controls.get(row.source_client_id)
        if control is None:
            return
        if success and page_info is not None:
            control.outbox.send(page_info_message(row.reply_shape, row.request_id, page_info))
        else:
            control.outbox.send(
                command_result_message(
                    row.reply_shape, row.request_id, row.command, success=success, message=message, error=error
                )
            )
