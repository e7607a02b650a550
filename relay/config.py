from __future__ import annotations

import os
from dataclasses import dataclass

from utils import env_float, env_int, env_list

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8999
DEFAULT_COMMAND_TIMEOUT_MS = 30_000
MIN_COMMAND_TIMEOUT_MS = 1_000
MAX_COMMAND_TIMEOUT_MS = 120_000
DEFAULT_AUDIT_SIZE = 200
DEFAULT_WS_HEARTBEAT_S = 20.0


@dataclass(slots=True)
class RelayConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    bridge_keys: tuple[str, ...] = ()
    default_timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS
    min_timeout_ms: int = MIN_COMMAND_TIMEOUT_MS
    max_timeout_ms: int = MAX_COMMAND_TIMEOUT_MS
    audit_size: int = DEFAULT_AUDIT_SIZE
    ws_heartbeat_s: float = DEFAULT_WS_HEARTBEAT_S

    @classmethod
    def from_env(cls) -> RelayConfig:
        min_timeout_ms = env_int("BRIDGE_MIN_TIMEOUT_MS", MIN_COMMAND_TIMEOUT_MS, min_value=1)
        max_timeout_ms = env_int("BRIDGE_MAX_TIMEOUT_MS", MAX_COMMAND_TIMEOUT_MS, min_value=min_timeout_ms)
        return cls(
            host=os.getenv("BRIDGE_HOST", DEFAULT_HOST),
            port=env_int("BRIDGE_PORT", DEFAULT_PORT, min_value=0, max_value=65_535),
            bridge_keys=tuple(env_list("BRIDGE_KEYS")),
            default_timeout_ms=env_int(
                "BRIDGE_COMMAND_TIMEOUT_MS",
                DEFAULT_COMMAND_TIMEOUT_MS,
                min_value=min_timeout_ms,
                max_value=max_timeout_ms,
            ),
            min_timeout_ms=min_timeout_ms,
            max_timeout_ms=max_timeout_ms,
            audit_size=env_int("BRIDGE_AUDIT_SIZE", DEFAULT_AUDIT_SIZE, min_value=1),
            ws_heartbeat_s=env_float("BRIDGE_WS_HEARTBEAT_S", DEFAULT_WS_HEARTBEAT_S, min_value=1.0),
        )

    def normalize_timeout(self, value: object) -> int:
        """Caller timeout in ms, or the default, clamped to the allowed range."""
        try:
            timeout_ms = int(value) if value is not None else self.default_timeout_ms
        except (TypeError, ValueError):
            timeout_ms = self.default_timeout_ms
        return min(max(timeout_ms, self.min_timeout_ms), self.max_timeout_ms)
