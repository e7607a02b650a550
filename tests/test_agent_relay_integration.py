import asyncio
import sys
from pathlib import Path

from aiohttp.test_utils import TestServer

sys.path.append(str(Path(__file__).resolve().parents[1]))

from extension.agent import ExtensionAgent
from extension.settings import AgentSettings
from extension.static_host import StaticBrowser
from relay.config import RelayConfig
from relay.control_client import ControlClient
from relay.hub import BridgeHub
from relay.service import HUB_KEY, create_app

SHOP_URL = "https://shop.test/"
SHOP_HTML = """
<html><head><title>Shop</title></head>
<body>
  <h1>Catalog</h1>
  <button>Buy</button>
  <input placeholder="Search">
</body></html>
"""


async def _wait_for_observer(hub: BridgeHub) -> None:
    for _ in range(300):
        if (await hub.status_snapshot())["observer_count"] == 1:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("agent never registered with the relay")


def test_agent_answers_control_commands_through_relay() -> None:
    async def _run() -> None:
        server = TestServer(create_app(RelayConfig(bridge_keys=("secret",))))
        await server.start_server()
        browser = StaticBrowser(pages={SHOP_URL: SHOP_HTML}, ready_delay_s=0)
        tab_id = browser.add_tab(SHOP_URL, SHOP_HTML)
        base_url = f"ws://{server.host}:{server.port}"
        agent = ExtensionAgent(
            browser,
            AgentSettings(server_url=base_url, bridge_key="secret", profile_key="shop"),
            heartbeat_interval_s=0.05,
            settle_delay_s=0,
        )
        control = ControlClient(base_url, "secret")
        try:
            await agent.start()
            assert agent.state == "connected"
            await _wait_for_observer(server.app[HUB_KEY])
            await control.connect(timeout_s=5)

            info = await control.execute("get_page_info", profile_key="shop", wait_for_page_info=True, timeout_ms=5000)
            assert info.success is True
            assert info.page_info is not None
            assert info.page_info["title"] == "Shop"
            assert info.page_info["url"] == SHOP_URL
            assert "[Button: Buy]" in info.page_info["markdown"]

            clicked = await control.execute("click", profile_key="shop", target="Buy", timeout_ms=5000)
            assert (clicked.success, clicked.message) == (True, "click succeeded")
            assert ("click", "button") in browser.page(tab_id).events

            typed = await control.execute(
                "type", profile_key="shop", target="Search", text="shoes", wait_for_page_info=True, timeout_ms=5000
            )
            assert typed.success is True
            assert typed.page_info is not None

            missing = await control.execute("click", profile_key="shop", target="Nope", timeout_ms=5000)
            assert missing.success is False
            assert missing.error == "Click target not found: Nope"

            other = await control.execute("scroll", profile_key="elsewhere", text="down", timeout_ms=5000)
            assert other.error == "No observer connected for profile: elsewhere"
        finally:
            await control.close()
            await agent.close()
            await browser.close()
            await server.close()

    asyncio.run(_run())
