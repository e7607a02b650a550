import asyncio
import sys
from pathlib import Path
from typing import Any

sys.path.append(str(Path(__file__).resolve().parents[1]))

from extension.agent import ExtensionAgent
from extension.content import PAGE_INFO_UPDATE
from extension.settings import AgentSettings, SettingsStore
from extension.static_host import StaticBrowser

SHOP_URL = "https://shop.test/"
SHOP_HTML = """
<html><head><title>Shop</title></head>
<body><button>Buy</button><input placeholder="Search"></body></html>
"""
OTHER_HTML = "<html><head><title>Other</title></head><body><a href='/'>Home</a></body></html>"


class _FakeSocket:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False

    async def send_json(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)

    async def close(self) -> None:
        self.closed = True

    def of_type(self, kind: str) -> list[dict[str, Any]]:
        return [payload for payload in self.sent if payload.get("type") == kind]


def _agent(browser: StaticBrowser, **settings: Any) -> tuple[ExtensionAgent, _FakeSocket]:
    agent = ExtensionAgent(
        browser,
        AgentSettings(server_url="ws://relay.test", bridge_key="k", **settings),
        settle_delay_s=0,
    )
    socket = _FakeSocket()
    agent.session.ws = socket  # type: ignore[assignment]
    agent.session.state = "connected"
    return agent, socket


def _browser() -> StaticBrowser:
    return StaticBrowser(
        pages={SHOP_URL: SHOP_HTML, "https://other.test/": OTHER_HTML},
        ready_delay_s=60,
    )


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0.01)


def test_command_runs_in_active_tab_and_reports_success() -> None:
    async def _run() -> None:
        browser = _browser()
        tab_id = browser.add_tab(SHOP_URL, SHOP_HTML)
        agent, socket = _agent(browser)
        await _settle()

        await agent.execute_remote_command({"requestId": "r1", "sourceClientId": "c1", "command": "click", "target": "Buy"})

        assert socket.of_type("command_result")[-1] == {
            "type": "command_result",
            "data": {"requestId": "r1", "sourceClientId": "c1", "status": "success", "message": "click succeeded"},
        }
        assert ("click", "button") in browser.page(tab_id).events
        await agent.close()
        await browser.close()

    asyncio.run(_run())


def test_command_errors_are_reported() -> None:
    async def _run() -> None:
        browser = _browser()
        agent, socket = _agent(browser)

        await agent.execute_remote_command({"requestId": "r1", "command": "click", "target": "Buy"})
        assert socket.of_type("command_result")[-1]["data"]["error"] == "No active tab available"

        browser.add_tab(SHOP_URL, SHOP_HTML)
        await _settle()
        await agent.execute_remote_command({"requestId": "r2", "command": "click", "target": "Nope"})
        data = socket.of_type("command_result")[-1]["data"]
        assert data["status"] == "error"
        assert data["error"] == "Click target not found: Nope"
        await agent.close()
        await browser.close()

    asyncio.run(_run())


def test_get_page_info_sends_snapshot_tagged_with_request() -> None:
    async def _run() -> None:
        browser = _browser()
        browser.add_tab(SHOP_URL, SHOP_HTML)
        agent, socket = _agent(browser)
        await _settle()

        await agent.execute_remote_command({"requestId": "r9", "command": "get_page_info", "wait_for_page_info": True})

        updates = [m for m in socket.of_type("pageInfoUpdate") if m["data"].get("requestId") == "r9"]
        assert len(updates) == 1
        assert updates[0]["data"]["title"] == "Shop"
        assert "[Button: Buy](proxycast-1)" in updates[0]["data"]["markdown"]
        assert socket.of_type("command_result")[-1]["data"]["message"] == "page info sent"
        assert agent.status()["latest_page_info"]["title"] == "Shop"
        await agent.close()
        await browser.close()

    asyncio.run(_run())


def test_refresh_with_wait_sends_requested_snapshot_while_monitoring_is_off() -> None:
    async def _run() -> None:
        browser = _browser()
        browser.add_tab(SHOP_URL, SHOP_HTML)
        agent, socket = _agent(browser, monitoring_enabled=False)
        await _settle()

        await agent.execute_remote_command({"requestId": "R1", "command": "refresh_page", "wait_for_page_info": True})
        await _settle()

        sent = [(m["type"], m["data"].get("requestId"), m["data"].get("status")) for m in socket.sent]
        assert sent == [("command_result", "R1", "success"), ("pageInfoUpdate", "R1", None)]
        assert "[Button: Buy]" in socket.sent[-1]["data"]["markdown"]
        await agent.close()
        await browser.close()

    asyncio.run(_run())


def test_link_click_with_wait_yields_one_snapshot_for_the_request() -> None:
    async def _run() -> None:
        browser = _browser()
        tab_id = browser.add_tab("https://other.test/", OTHER_HTML)
        agent, socket = _agent(browser)
        await _settle()

        await agent.execute_remote_command(
            {"requestId": "L1", "command": "click", "target": "Home", "wait_for_page_info": True}
        )
        await _settle()

        updates = [m for m in socket.of_type("pageInfoUpdate") if m["data"].get("requestId") == "L1"]
        assert len(updates) == 1
        assert updates[0]["data"]["title"] == "Other"
        assert socket.of_type("command_result")[-1]["data"]["status"] == "success"
        assert browser.page(tab_id).status == "complete"
        await agent.close()
        await browser.close()

    asyncio.run(_run())


def test_command_without_wait_sends_no_snapshot() -> None:
    async def _run() -> None:
        browser = _browser()
        browser.add_tab(SHOP_URL, SHOP_HTML)
        agent, socket = _agent(browser, monitoring_enabled=False)
        await _settle()

        await agent.execute_remote_command({"requestId": "N1", "command": "scroll", "text": "down"})
        await _settle()

        assert [m["type"] for m in socket.sent] == ["command_result"]
        await agent.close()
        await browser.close()

    asyncio.run(_run())


def test_open_url_adds_scheme_and_captures_after_load() -> None:
    async def _run() -> None:
        browser = _browser()
        agent, socket = _agent(browser)

        await agent.execute_remote_command(
            {"requestId": "r5", "command": "open_url", "url": "other.test/", "wait_for_page_info": True}
        )

        assert socket.of_type("command_result")[0]["data"]["message"] == "Opened https://other.test/"
        updates = [m for m in socket.of_type("pageInfoUpdate") if m["data"].get("requestId") == "r5"]
        assert updates and updates[-1]["data"]["title"] == "Other"
        assert (await browser.active_tab()).url == "https://other.test/"
        await agent.close()
        await browser.close()

    asyncio.run(_run())


def test_switch_tab_by_id_and_by_index() -> None:
    async def _run() -> None:
        browser = _browser()
        first = browser.add_tab(SHOP_URL, SHOP_HTML)
        second = browser.add_tab("https://other.test/", OTHER_HTML)
        agent, socket = _agent(browser)

        await agent.execute_remote_command({"requestId": "s1", "command": "switch_tab", "target": str(first)})
        assert socket.of_type("command_result")[-1]["data"]["message"] == f"Switched to tab {first}"
        assert agent.session.active_tab_id == first

        await agent.execute_remote_command({"requestId": "s2", "command": "switch_tab", "target": "0"})
        assert agent.session.active_tab_id == first

        await agent.execute_remote_command({"requestId": "s3", "command": "switch_tab", "target": str(second)})
        assert (await browser.active_tab()).tab_id == second

        await agent.execute_remote_command({"requestId": "s4", "command": "switch_tab", "target": "99"})
        assert socket.of_type("command_result")[-1]["data"]["error"] == "Tab not found: 99"
        await agent.close()
        await browser.close()

    asyncio.run(_run())


def test_proactive_capture_retries_with_growing_delay() -> None:
    async def _run() -> None:
        browser = StaticBrowser(auto_inject=False)
        tab_id = browser.add_tab(SHOP_URL, SHOP_HTML)
        browser.page(tab_id).status = "loading"
        agent, _ = _agent(browser)
        delays: list[float] = []

        async def fake_sleep(delay: float) -> None:
            delays.append(delay)

        agent._sleep = fake_sleep

        assert await agent.trigger_capture("tab_updated") is False
        assert delays == [0.25, 0.5, 0.75]

        delays.clear()
        assert await agent.trigger_capture("wait_for_page_info", request_id="r1") is False
        assert delays == []
        await agent.close()
        await browser.close()

    asyncio.run(_run())


def test_monitoring_off_skips_proactive_captures(tmp_path: Path) -> None:
    async def _run() -> None:
        browser = _browser()
        browser.add_tab(SHOP_URL, SHOP_HTML)
        agent, socket = _agent(browser)
        agent.store = SettingsStore(tmp_path / "settings.json")
        await _settle()

        assert await agent.toggle_monitoring() is False
        assert agent.status()["monitoring_enabled"] is False
        assert (tmp_path / "settings.json").exists()

        assert await agent.trigger_capture("tab_activated") is False
        await agent._on_runtime_message(
            1, {"type": PAGE_INFO_UPDATE, "data": {"reason": "content_script_ready", "markdown": "# x"}}
        )
        assert socket.of_type("pageInfoUpdate") == []

        assert await agent.trigger_capture("manual") is True
        assert len(socket.of_type("pageInfoUpdate")) == 1
        await agent.close()
        await browser.close()

    asyncio.run(_run())


def test_snapshots_from_background_tabs_are_dropped() -> None:
    async def _run() -> None:
        browser = _browser()
        agent, socket = _agent(browser)
        agent.session.active_tab_id = 1

        await agent._on_runtime_message(2, {"type": PAGE_INFO_UPDATE, "data": {"markdown": "# bg"}})
        await agent._on_runtime_message(1, {"type": PAGE_INFO_UPDATE, "data": {"markdown": "   "}})
        assert socket.sent == []

        await agent._on_runtime_message(1, {"type": PAGE_INFO_UPDATE, "data": {"markdown": "# fg", "requestId": "q"}})
        assert socket.sent == [{"type": "pageInfoUpdate", "data": {"markdown": "# fg", "title": "", "url": "", "requestId": "q"}}]
        await agent.close()
        await browser.close()

    asyncio.run(_run())


def test_malformed_relay_messages_are_ignored() -> None:
    async def _run() -> None:
        browser = _browser()
        agent, socket = _agent(browser)

        agent._handle_text("{not json")
        agent._handle_text('{"type": "heartbeat_ack", "timestamp": 1}')
        agent._handle_text('["command"]')
        await _settle()

        assert socket.sent == []
        await agent.close()
        await browser.close()

    asyncio.run(_run())


def test_closing_active_tab_falls_back_to_remaining_tab() -> None:
    async def _run() -> None:
        browser = _browser()
        first = browser.add_tab(SHOP_URL, SHOP_HTML)
        second = browser.add_tab("https://other.test/", OTHER_HTML)
        agent, socket = _agent(browser, monitoring_enabled=False)
        await _settle()
        assert browser.content_script(second) is not None

        await browser.close_tab(second)
        await _settle()

        assert browser.content_script(second) is None
        assert (await browser.active_tab()).tab_id == first
        assert agent.session.active_tab_id == first
        await browser.close_tab(second)

        await agent.execute_remote_command({"requestId": "c1", "command": "click", "target": "Buy"})
        assert socket.of_type("command_result")[-1]["data"]["status"] == "success"
        await agent.close()
        await browser.close()

    asyncio.run(_run())
