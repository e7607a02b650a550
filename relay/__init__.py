"""WebSocket relay pairing control callers with browser observers."""

from relay.config import RelayConfig
from relay.control_client import ControlClient, ControlResult
from relay.hub import BridgeHub
from relay.pending import PendingCommandTable
from relay.service import BridgeService, create_app, register_bridge_routes

__all__ = [
    "BridgeHub",
    "BridgeService",
    "ControlClient",
    "ControlResult",
    "PendingCommandTable",
    "RelayConfig",
    "create_app",
    "register_bridge_routes",
]
