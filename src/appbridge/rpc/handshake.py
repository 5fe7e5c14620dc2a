"""
Initialize/initialized handshake.

    Uninitialized --launch--> Initializing --initialize ok--> Ready
                                          +--error/timeout--> Failed

No ordinary traffic is accepted before Ready; the supervisor rejects it
with NotReady.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..errors import BridgeError, HandshakeFailed
from ..models import ProcessState

if TYPE_CHECKING:
    from .transport import AppServerProcess

logger = logging.getLogger(__name__)

INITIALIZE_METHOD = "initialize"
INITIALIZED_METHOD = "initialized"


class HandshakeController:
    """Drives one process from Uninitialized to Ready (or Failed)."""

    def __init__(
        self,
        process: AppServerProcess,
        client_info: dict[str, str] | None = None,
        timeout: float | None = None,
    ):
        self.process = process
        self.client_info = client_info or process.config.client_info
        self.timeout = timeout if timeout is not None else process.config.handshake_timeout

    def run(self) -> Any:
        """Perform the handshake. Returns the initialize result."""
        process = self.process
        if process.state is not ProcessState.UNINITIALIZED:
            raise HandshakeFailed(f"Cannot initialize from state {process.state.value}")

        process._set_state(ProcessState.INITIALIZING)
        logger.info(f"Initializing app server as {self.client_info.get('name')}")

        try:
            result = process._request(
                INITIALIZE_METHOD,
                {"clientInfo": self.client_info},
                self.timeout,
            )
            process._send_notification(INITIALIZED_METHOD, {})
        except BridgeError as e:
            process._set_state(ProcessState.FAILED)
            raise HandshakeFailed(f"App server handshake failed: {e}") from e

        process.server_info = result
        process._set_state(ProcessState.READY)
        logger.info("App server ready")
        return result
