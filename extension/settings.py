from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any
from urllib.parse import quote

from utils import env_bool

log = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "ws://127.0.0.1:8999"
DEFAULT_PROFILE_KEY = "default"
OBSERVER_PATH = "proxycast-chrome-observer"

# persisted file keys follow the extension storage layout
_FILE_KEYS = {
    "server_url": "serverUrl",
    "bridge_key": "bridgeKey",
    "profile_key": "profileKey",
    "monitoring_enabled": "monitoringEnabled",
}


@dataclass(slots=True)
class AgentSettings:
    server_url: str = DEFAULT_SERVER_URL
    bridge_key: str = ""
    profile_key: str = DEFAULT_PROFILE_KEY
    monitoring_enabled: bool = True

    @classmethod
    def from_env(cls) -> AgentSettings:
        return cls(
            server_url=os.getenv("BRIDGE_SERVER_URL", DEFAULT_SERVER_URL),
            bridge_key=os.getenv("BRIDGE_KEY", ""),
            profile_key=os.getenv("BRIDGE_PROFILE_KEY", DEFAULT_PROFILE_KEY) or DEFAULT_PROFILE_KEY,
            monitoring_enabled=env_bool("BRIDGE_MONITORING", True),
        )

    def observer_url(self) -> str | None:
        server_url = self.server_url.strip()
        bridge_key = self.bridge_key.strip()
        if not server_url or not bridge_key:
            return None
        profile_key = quote(self.profile_key or DEFAULT_PROFILE_KEY, safe="")
        return f"{server_url.rstrip('/')}/{OBSERVER_PATH}/{quote(bridge_key, safe='')}?profileKey={profile_key}"

    def masked(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["bridge_key"] = "***" if self.bridge_key else ""
        return payload

    def to_file_payload(self) -> dict[str, Any]:
        return {file_key: getattr(self, name) for name, file_key in _FILE_KEYS.items()}

    def merged(self, patch: dict[str, Any]) -> AgentSettings:
        """Apply a partial update; values of the wrong type are ignored."""
        changes: dict[str, Any] = {}
        for name, file_key in _FILE_KEYS.items():
            value = patch.get(name, patch.get(file_key))
            expected = bool if name == "monitoring_enabled" else str
            if isinstance(value, expected):
                changes[name] = value
        return replace(self, **changes)


class SettingsStore:
    """JSON file holding the agent settings between runs."""

    def __init__(self, path: Path | None) -> None:
        self.path = path

    def load(self, defaults: AgentSettings) -> AgentSettings:
        if self.path is None or not self.path.exists():
            return defaults
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            log.warning("Ignoring unreadable settings file %s", self.path)
            return defaults
        if not isinstance(raw, dict):
            return defaults
        return defaults.merged(raw)

    def save(self, settings: AgentSettings) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps(settings.to_file_payload(), ensure_ascii=False, indent=2),
            encoding="utf-8",
        )


def apply_auto_config(path: Path | None, settings: AgentSettings) -> AgentSettings:
    """Overlay an ``auto_config.json`` that carries both server URL and bridge key."""
    if path is None or not path.exists():
        return settings
    try:
        config = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        log.warning("Failed to load auto config %s: %s", path, exc)
        return settings
    if not isinstance(config, dict) or not config.get("serverUrl") or not config.get("bridgeKey"):
        log.warning("Auto config %s is missing serverUrl or bridgeKey", path)
        return settings
    log.info("Applying auto config from %s", path)
    return replace(
        settings,
        server_url=str(config["serverUrl"]),
        bridge_key=str(config["bridgeKey"]),
        profile_key=str(config.get("profileKey") or DEFAULT_PROFILE_KEY),
        monitoring_enabled=config.get("monitoringEnabled") is not False,
    )
