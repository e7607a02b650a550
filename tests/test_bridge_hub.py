import asyncio
import sys
from pathlib import Path
from typing import Any

sys.path.append(str(Path(__file__).resolve().parents[1]))

from relay.config import RelayConfig
from relay.hub import BridgeHub

KEY = "secret"
E2E_MARKDOWN = "# E2E Page\nURL: https://example.com/e2e\n\n## Content\nbridge e2e test"


class _Outbox:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False

    def send(self, payload: dict[str, Any]) -> bool:
        if self.closed:
            return False
        self.sent.append(payload)
        return True

    def close(self) -> None:
        self.closed = True

    def of_type(self, kind: str) -> list[dict[str, Any]]:
        return [payload for payload in self.sent if payload.get("type") == kind]


async def _setup(config: RelayConfig | None = None, profile: str = "default"):
    hub = BridgeHub(config or RelayConfig(bridge_keys=(KEY,)))
    observer_box, control_box = _Outbox(), _Outbox()
    observer = await hub.register_observer(KEY, profile, observer_box)  # type: ignore[arg-type]
    control = await hub.register_control(KEY, control_box)  # type: ignore[arg-type]
    return hub, observer, observer_box, control, control_box


def _command(request_id: str, command: str = "click", **data: Any) -> dict[str, Any]:
    return {"type": "command", "data": {"requestId": request_id, "command": command, **data}}


def test_command_is_routed_to_profile_observer_and_result_returned() -> None:
    async def _run() -> None:
        hub, observer, observer_box, control, control_box = await _setup(profile="work")

        await hub.handle_control_message(
            control.client_id, _command("r1", target="Buy", profileKey="work", text="t", url=None)
        )

        assert observer_box.sent[-1] == {
            "type": "command",
            "data": {
                "requestId": "r1",
                "sourceClientId": control.client_id,
                "command": "click",
                "target": "Buy",
                "text": "t",
                "url": None,
                "wait_for_page_info": False,
            },
        }
        assert (await hub.status_snapshot())["pending_command_count"] == 1

        await hub.handle_observer_message(
            observer.client_id,
            {"type": "command_result", "data": {"requestId": "r1", "status": "success", "message": "click succeeded"}},
        )

        assert control_box.sent[-1] == {
            "type": "command_result",
            "data": {"requestId": "r1", "status": "success", "message": "click succeeded"},
        }
        status = await hub.status_snapshot()
        assert status["pending_command_count"] == 0
        assert status["recent_commands"][-1]["success"] is True

    asyncio.run(_run())


def test_rejections_are_immediate_errors_without_rows() -> None:
    async def _run() -> None:
        hub, _, observer_box, control, control_box = await _setup()

        await hub.handle_control_message(control.client_id, _command("a", "hover"))
        await hub.handle_control_message(control.client_id, _command("b", "open_url", url="  "))
        await hub.handle_control_message(control.client_id, _command("c", profileKey="nobody"))

        errors = [m["data"]["error"] for m in control_box.of_type("command_result")]
        assert errors == [
            "Unsupported command: hover",
            "open_url requires a non-empty url",
            "No observer connected for profile: nobody",
        ]
        assert observer_box.sent == []
        assert (await hub.status_snapshot())["pending_command_count"] == 0

    asyncio.run(_run())


def test_duplicate_in_flight_request_id_is_rejected() -> None:
    async def _run() -> None:
        hub, _, observer_box, control, control_box = await _setup()

        await hub.handle_control_message(control.client_id, _command("dup"))
        await hub.handle_control_message(control.client_id, _command("dup"))

        assert len(observer_box.of_type("command")) == 1
        assert control_box.sent[-1]["data"]["error"] == "Request id already in flight: dup"

    asyncio.run(_run())


def test_missing_request_id_is_generated() -> None:
    async def _run() -> None:
        hub, _, observer_box, control, _ = await _setup()

        await hub.handle_control_message(control.client_id, {"type": "command", "data": {"command": "scroll"}})

        assert observer_box.sent[-1]["data"]["requestId"].startswith("cb-")

    asyncio.run(_run())


def test_pending_command_times_out() -> None:
    async def _run() -> None:
        config = RelayConfig(bridge_keys=(KEY,), min_timeout_ms=10, default_timeout_ms=20)
        hub, observer, _, control, control_box = await _setup(config)

        await hub.handle_control_message(control.client_id, _command("slow"))
        await asyncio.sleep(0.1)

        result = control_box.sent[-1]
        assert result["data"]["status"] == "error"
        assert result["data"]["error"].startswith("timeout")
        assert (await hub.status_snapshot())["pending_command_count"] == 0

        await hub.handle_observer_message(
            observer.client_id, {"type": "command_result", "data": {"requestId": "slow", "status": "success"}}
        )
        assert len(control_box.of_type("command_result")) == 1

    asyncio.run(_run())


def test_waiting_row_expiring_after_success_reports_the_timeout() -> None:
    async def _run() -> None:
        config = RelayConfig(bridge_keys=(KEY,), min_timeout_ms=10, default_timeout_ms=30)
        hub, observer, _, control, control_box = await _setup(config)

        await hub.handle_control_message(control.client_id, _command("w1", wait_for_page_info=True))
        await hub.handle_observer_message(
            observer.client_id,
            {"type": "command_result", "data": {"requestId": "w1", "status": "success", "message": "clicked"}},
        )
        await asyncio.sleep(0.1)

        replies = [(m["type"], m["data"]["status"]) for m in control_box.sent]
        assert replies == [("command_result", "success"), ("command_result", "error")]
        assert control_box.sent[-1]["data"]["error"] == "timeout: no result within 30ms"
        status = await hub.status_snapshot()
        assert status["pending_command_count"] == 0
        assert status["recent_commands"][-1]["success"] is False

    asyncio.run(_run())


def test_timeout_is_clamped() -> None:
    config = RelayConfig()

    assert config.normalize_timeout(None) == 30_000
    assert config.normalize_timeout(5) == 1_000
    assert config.normalize_timeout(10**9) == 120_000
    assert config.normalize_timeout("2500") == 2_500
    assert config.normalize_timeout("soon") == 30_000


def test_wait_for_page_info_resolves_on_next_snapshot() -> None:
    async def _run() -> None:
        hub, observer, _, control, control_box = await _setup()

        await hub.handle_control_message(control.client_id, _command("w1", "get_page_info", wait_for_page_info=True))
        await hub.handle_observer_message(
            observer.client_id,
            {"type": "command_result", "data": {"requestId": "w1", "status": "success", "message": "page info sent"}},
        )

        assert control_box.sent[-1]["type"] == "command_result"
        assert (await hub.status_snapshot())["pending_commands"][0]["command_completed"] is True

        await hub.handle_observer_message(observer.client_id, {"type": "pageInfoUpdate", "data": {"markdown": E2E_MARKDOWN}})

        update = control_box.sent[-1]
        assert update["type"] == "page_info_update"
        assert update["data"]["requestId"] == "w1"
        assert update["data"]["title"] == "E2E Page"
        assert update["data"]["url"] == "https://example.com/e2e"
        assert update["data"]["markdown"] == E2E_MARKDOWN
        status = await hub.status_snapshot()
        assert status["pending_command_count"] == 0
        assert status["observers"][0]["last_page_info"]["title"] == "E2E Page"

    asyncio.run(_run())


def test_early_page_info_is_delivered_after_result() -> None:
    async def _run() -> None:
        hub, observer, _, control, control_box = await _setup()

        await hub.handle_control_message(control.client_id, _command("e1", "get_page_info", wait_for_page_info=True))
        await hub.handle_observer_message(
            observer.client_id, {"type": "page_info_update", "data": {"requestId": "e1", "markdown": "# Early"}}
        )
        assert control_box.sent == []

        await hub.handle_observer_message(
            observer.client_id, {"type": "command_result", "data": {"requestId": "e1", "status": "success"}}
        )

        assert [m["type"] for m in control_box.sent] == ["command_result", "page_info_update"]
        assert control_box.sent[-1]["data"]["title"] == "Early"
        assert (await hub.status_snapshot())["pending_command_count"] == 0

    asyncio.run(_run())


def test_page_info_with_request_id_resolves_only_that_row() -> None:
    async def _run() -> None:
        hub, observer, _, control, control_box = await _setup()

        for request_id in ("p1", "p2"):
            await hub.handle_control_message(control.client_id, _command(request_id, wait_for_page_info=True))
            await hub.handle_observer_message(
                observer.client_id, {"type": "command_result", "data": {"requestId": request_id, "status": "success"}}
            )

        await hub.handle_observer_message(
            observer.client_id, {"type": "pageInfoUpdate", "data": {"requestId": "p1", "markdown": "# One"}}
        )

        updates = control_box.of_type("page_info_update")
        assert [u["data"]["requestId"] for u in updates] == ["p1"]
        pending = (await hub.status_snapshot())["pending_commands"]
        assert [row["request_id"] for row in pending] == ["p2"]

    asyncio.run(_run())


def test_observer_replacement_fails_old_rows_and_closes_socket() -> None:
    async def _run() -> None:
        hub, observer, observer_box, control, control_box = await _setup()
        await hub.handle_control_message(control.client_id, _command("old"))

        replacement = await hub.register_observer(KEY, "default", _Outbox())  # type: ignore[arg-type]

        assert observer_box.closed is True
        assert control_box.sent[-1]["data"]["status"] == "error"
        assert "replaced" in control_box.sent[-1]["data"]["error"]
        status = await hub.status_snapshot()
        assert status["observer_count"] == 1
        assert status["observers"][0]["client_id"] == replacement.client_id

        await hub.unregister_observer(observer.client_id)
        assert (await hub.status_snapshot())["observer_count"] == 1

    asyncio.run(_run())


def test_observer_disconnect_fails_pending_rows() -> None:
    async def _run() -> None:
        hub, observer, _, control, control_box = await _setup()
        await hub.handle_control_message(control.client_id, _command("gone"))

        await hub.unregister_observer(observer.client_id)

        assert control_box.sent[-1]["data"] == {"requestId": "gone", "status": "error", "error": "observer disconnected"}
        assert (await hub.status_snapshot())["observer_count"] == 0

    asyncio.run(_run())


def test_control_disconnect_drops_rows_into_audit() -> None:
    async def _run() -> None:
        hub, observer, _, control, control_box = await _setup()
        await hub.handle_control_message(control.client_id, _command("orphan"))

        await hub.unregister_control(control.client_id)
        await hub.handle_observer_message(
            observer.client_id, {"type": "command_result", "data": {"requestId": "orphan", "status": "success"}}
        )

        status = await hub.status_snapshot()
        assert status["pending_command_count"] == 0
        assert status["control_count"] == 0
        assert status["recent_commands"][-1]["error"] == "control disconnected"
        assert control_box.sent == []

    asyncio.run(_run())


def test_flat_requests_get_flat_replies() -> None:
    async def _run() -> None:
        hub, observer, observer_box, control, control_box = await _setup()

        await hub.handle_control_message(
            control.client_id,
            {
                "type": "command",
                "request_id": "f1",
                "profile_key": "default",
                "command": "get_page_info",
                "wait_for_page_info": True,
            },
        )
        assert observer_box.sent[-1]["data"]["requestId"] == "f1"

        await hub.handle_observer_message(
            observer.client_id,
            {"type": "command_result", "data": {"requestId": "f1", "status": "success", "message": "page info sent"}},
        )
        await hub.handle_observer_message(observer.client_id, {"type": "pageInfoUpdate", "data": {"markdown": "# Flat"}})

        assert control_box.sent[0] == {
            "type": "command_result",
            "request_id": "f1",
            "command": "get_page_info",
            "success": True,
            "message": "page info sent",
        }
        assert control_box.sent[1]["type"] == "page_info_update"
        assert control_box.sent[1]["request_id"] == "f1"
        assert control_box.sent[1]["page_info"]["title"] == "Flat"

        await hub.handle_control_message(
            control.client_id, {"type": "command", "request_id": "f2", "command": "hover"}
        )
        assert control_box.sent[-1] == {
            "type": "command_result",
            "request_id": "f2",
            "command": "hover",
            "success": False,
            "error": "Unsupported command: hover",
        }

    asyncio.run(_run())


def test_long_messages_are_truncated() -> None:
    async def _run() -> None:
        hub, observer, _, control, control_box = await _setup()
        await hub.handle_control_message(control.client_id, _command("big"))

        await hub.handle_observer_message(
            observer.client_id,
            {"type": "command_result", "data": {"requestId": "big", "status": "error", "error": "x" * 5000}},
        )

        error = control_box.sent[-1]["data"]["error"]
        assert len(error) == 2003
        assert error.endswith("...")

    asyncio.run(_run())


def test_heartbeats_are_acknowledged() -> None:
    async def _run() -> None:
        hub, observer, observer_box, control, control_box = await _setup()

        await hub.handle_observer_message(observer.client_id, {"type": "heartbeat", "timestamp": 1})
        await hub.handle_control_message(control.client_id, {"type": "heartbeat"})

        assert observer_box.sent[-1]["type"] == "heartbeat_ack"
        assert control_box.sent[-1]["type"] == "heartbeat_ack"
        assert isinstance(control_box.sent[-1]["timestamp"], int)
        assert (await hub.status_snapshot())["observers"][0]["last_heartbeat_at"] is not None

    asyncio.run(_run())


def test_api_command_waits_for_page_info() -> None:
    async def _run() -> None:
        hub, observer, observer_box, _, _ = await _setup()

        task = asyncio.create_task(
            hub.execute_api_command(KEY, {"profile_key": "default", "command": "get_page_info", "wait_for_page_info": True})
        )
        await asyncio.sleep(0.01)
        command = observer_box.sent[-1]["data"]
        assert command["requestId"].startswith("cb-api-")
        assert command["sourceClientId"].startswith("proxycast-api-")

        await hub.handle_observer_message(
            observer.client_id,
            {"type": "command_result", "data": {"requestId": command["requestId"], "status": "success", "message": "ok"}},
        )
        assert not task.done()
        await hub.handle_observer_message(observer.client_id, {"type": "pageInfoUpdate", "data": {"markdown": "# Api"}})

        result = await task
        assert result["success"] is True
        assert result["request_id"] == command["requestId"]
        assert result["command"] == "get_page_info"
        assert result["message"] == "ok"
        assert result["page_info"]["title"] == "Api"

    asyncio.run(_run())


def test_api_command_errors_and_timeout() -> None:
    async def _run() -> None:
        config = RelayConfig(bridge_keys=(KEY,), min_timeout_ms=10)
        hub, _, _, _, _ = await _setup(config)

        missing = await hub.execute_api_command(KEY, {"command": "click", "profile_key": "ghost"})
        assert missing["success"] is False
        assert missing["error"] == "No observer connected for profile: ghost"

        rejected = await hub.execute_api_command(KEY, {"command": "hover"})
        assert rejected["error"] == "Unsupported command: hover"

        timed_out = await hub.execute_api_command(KEY, {"command": "click", "timeout_ms": 20})
        assert timed_out["success"] is False
        assert timed_out["error"].startswith("timeout")

    asyncio.run(_run())


def test_status_snapshot_fields() -> None:
    async def _run() -> None:
        hub, observer, _, control, _ = await _setup(profile="a b")
        await hub.handle_control_message(control.client_id, _command("s1", profileKey="a b"))

        status = await hub.status_snapshot(KEY)

        assert status["observer_count"] == 1
        assert status["control_count"] == 1
        assert status["pending_command_count"] == 1
        assert set(status["observers"][0]) == {
            "client_id",
            "profile_key",
            "connected_at",
            "user_agent",
            "last_heartbeat_at",
            "last_page_info",
        }
        assert status["observers"][0]["profile_key"] == "a_b"
        assert set(status["controls"][0]) == {"client_id", "connected_at", "user_agent"}
        row = status["pending_commands"][0]
        assert row["request_id"] == "s1"
        assert row["source_type"] == "control"
        assert row["observer_client_id"] == observer.client_id
        assert row["command_completed"] is False
        assert (await hub.status_snapshot("other-key"))["observer_count"] == 0
        await hub.shutdown()

    asyncio.run(_run())


def test_command_name_is_lowercased_before_routing() -> None:
    async def _run() -> None:
        hub, _, observer_box, control, control_box = await _setup()

        await hub.handle_control_message(control.client_id, _command("u1", "Scroll_Page", text="down"))

        assert observer_box.sent[-1]["data"]["command"] == "scroll_page"
        assert control_box.sent == []

    asyncio.run(_run())
