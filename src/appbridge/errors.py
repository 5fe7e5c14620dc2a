"""
Error types for the app-server bridge.

Every failure a caller can observe derives from BridgeError, so a single
except clause covers spawn, transport, protocol and timeout failures.
Malformed inbound lines are not errors here: the reader loop logs and
drops them.
"""

from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base class for all bridge failures."""


# ── Spawn ───────────────────────────────────────────────────

class SpawnError(BridgeError):
    """The app-server process could not be started."""


class BinaryNotFound(SpawnError):
    """No executable resolved from the explicit path, PATH or install dirs."""

    def __init__(self, binary_name: str, searched: list[str] | None = None):
        self.binary_name = binary_name
        self.searched = searched or []
        msg = f"{binary_name} not found. Please install it first."
        if self.searched:
            msg += f" Searched: {', '.join(self.searched)}"
        super().__init__(msg)


class LaunchFailed(SpawnError):
    """The OS refused to launch the resolved executable."""


class HandshakeFailed(BridgeError):
    """The initialize exchange did not complete; the process was terminated."""


# ── Runtime ─────────────────────────────────────────────────

class NotReady(BridgeError):
    """Traffic attempted before the handshake reached the ready state."""


class TransportError(BridgeError):
    """Reading from or writing to the subprocess pipes failed."""


class BridgeTimeout(BridgeError):
    """No response arrived within the call deadline."""

    def __init__(self, method: str, timeout: float):
        self.method = method
        self.timeout = timeout
        super().__init__(f"Request timeout: {method} (no response after {timeout}s)")


class MethodError(BridgeError):
    """The app-server answered a call with an error object."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"JSON-RPC error {code}: {message}")


class Disconnected(BridgeError):
    """The app-server went away while the call was pending."""

    def __init__(self, message: str = "App server disconnected"):
        super().__init__(message)


class InvalidDecision(BridgeError):
    """An approval decision could not be mapped to its wire form."""
