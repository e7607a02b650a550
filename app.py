"""Browser bridge entry points: relay server, observer agents and the e2e check."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import replace
from pathlib import Path

from aiohttp import web
from dotenv import load_dotenv

from extension.agent import ExtensionAgent
from extension.host import BrowserHost
from extension.settings import AgentSettings, SettingsStore, apply_auto_config
from extension.static_host import StaticBrowser
from relay.config import RelayConfig
from relay.e2e import E2EOptions, run_e2e
from relay.service import create_app
from utils import configure_logging, env_bool

log = logging.getLogger(__name__)

BASE_DIR = Path(__file__).parent
DEFAULT_LOG_FILE = "bridge.log"
DEFAULT_SETTINGS_FILE = "data/agent_settings/{profile}.json"
DEFAULT_AUTO_CONFIG = "auto_config.json"
DEFAULT_PROFILE_DIR = "data/profiles"


def setup() -> None:
    load_dotenv()
    configure_logging(os.getenv("BRIDGE_LOG_FILE") or DEFAULT_LOG_FILE)


def _resolve(path: str) -> Path:
    candidate = Path(path)
    return candidate if candidate.is_absolute() else BASE_DIR / candidate


async def serve_relay(config: RelayConfig) -> None:
    if not config.bridge_keys:
        raise SystemExit("ERROR: BRIDGE_KEYS not set")
    runner = web.AppRunner(create_app(config))
    await runner.setup()
    site = web.TCPSite(runner, config.host, config.port)
    await site.start()
    log.info("Relay listening on ws://%s:%s (%d bridge keys)", config.host, config.port, len(config.bridge_keys))
    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()


def load_agent_settings(profile_key: str | None) -> tuple[AgentSettings, SettingsStore]:
    """Environment defaults, then the saved settings file, then auto config."""
    defaults = AgentSettings.from_env()
    if profile_key:
        defaults = replace(defaults, profile_key=profile_key)
    template = os.getenv("BRIDGE_SETTINGS_FILE") or DEFAULT_SETTINGS_FILE
    store = SettingsStore(_resolve(template.format(profile=defaults.profile_key)))
    settings = store.load(defaults)
    settings = apply_auto_config(_resolve(os.getenv("BRIDGE_AUTO_CONFIG") or DEFAULT_AUTO_CONFIG), settings)
    if profile_key:
        settings = replace(settings, profile_key=profile_key)
    return settings, store


async def _open_host(profile_key: str, *, static: bool, headless: bool) -> BrowserHost:
    if static:
        return StaticBrowser()
    from extension.playwright_host import launch_browser

    profile_dir = _resolve(os.getenv("BRIDGE_PROFILE_DIR") or DEFAULT_PROFILE_DIR) / profile_key
    profile_dir.mkdir(parents=True, exist_ok=True)
    return await launch_browser(user_data_dir=str(profile_dir), headless=headless)


async def run_agents(
    profiles: list[str],
    *,
    static: bool = False,
    headless: bool | None = None,
    start_url: str | None = None,
) -> None:
    """Run one observer agent per profile until cancelled."""
    if headless is None:
        headless = env_bool("BRIDGE_HEADLESS", True)
    agents: list[ExtensionAgent] = []
    hosts: list[BrowserHost] = []
    try:
        for profile in profiles or [None]:
            settings, store = load_agent_settings(profile)
            host = await _open_host(settings.profile_key, static=static, headless=headless)
            hosts.append(host)
            if start_url:
                await host.open_tab(start_url)
            store.save(settings)
            agent = ExtensionAgent(host, settings, store=store)
            agents.append(agent)
            await agent.start()
            log.info("Agent status: %s", agent.status())
        await asyncio.Event().wait()
    finally:
        for agent in agents:
            await agent.close()
        for host in hosts:
            await host.close()


async def run_e2e_check(options: E2EOptions) -> list[str]:
    return await run_e2e(options)
