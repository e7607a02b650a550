"""Error taxonomy shared by the relay, the observer agent and the page model."""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for every browser bridge failure."""


class ConfigurationError(BridgeError):
    """Missing server URL or bridge key; the agent stays disconnected."""


class TransportError(BridgeError):
    """Socket closed or failed; always followed by a backoff reconnect."""


class RoutingError(BridgeError):
    """No observer is connected for the requested profile key."""


class ExecutionError(BridgeError):
    """A command could not be carried out in the page."""


class CommandTimeoutError(BridgeError):
    """The relay gave up waiting for a pending command."""


class ContentScriptUnavailable(BridgeError):
    """The tab has no content script to receive the message yet."""
