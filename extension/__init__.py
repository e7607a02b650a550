"""Observer agent: relay connection, tab hosts and per-tab content scripts."""

from extension.agent import ExtensionAgent
from extension.content import ContentScript
from extension.host import BrowserHost, TabInfo
from extension.session import AgentSession, ReconnectScheduler, reconnect_delay_ms
from extension.settings import AgentSettings, SettingsStore, apply_auto_config
from extension.static_host import StaticBrowser

__all__ = [
    "AgentSession",
    "AgentSettings",
    "BrowserHost",
    "ContentScript",
    "ExtensionAgent",
    "ReconnectScheduler",
    "SettingsStore",
    "StaticBrowser",
    "TabInfo",
    "apply_auto_config",
    "reconnect_delay_ms",
]
