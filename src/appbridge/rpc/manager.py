"""
App Server Manager — owns the single app-server process.

Usage:
    manager = AppServerManager(BridgeConfig(), event_sink=bus)
    bridge = manager.bridge()           # starts the process on first use
    thread = bridge.start_thread(cwd="/work/repo")
    manager.stop()
"""

from __future__ import annotations

import logging
import threading

from ..config import BridgeConfig
from ..errors import NotReady
from ..events import EventBus, EventSink
from ..models import ExitStatus, ServerStatus
from .bridge import IpcBridge
from .transport import AppServerProcess

logger = logging.getLogger(__name__)


class AppServerManager:
    """
    Lifecycle of the app-server process.

    Responsibilities:
    - Start the process lazily, at most one at a time
    - Replace a process that died on its own
    - Graceful stop and restart

    All access to the process goes through one lock, so callers never
    see a half-started or half-stopped process.
    """

    def __init__(self, config: BridgeConfig | None = None, event_sink: EventSink | None = None):
        self.config = config or BridgeConfig()
        self.event_sink = event_sink if event_sink is not None else EventBus()
        self._process: AppServerProcess | None = None
        self._lock = threading.RLock()

    def start(self) -> AppServerProcess:
        """Start the app-server if it is not already running."""
        with self._lock:
            if self._process is not None:
                if self._process.is_alive():
                    return self._process
                logger.warning("App server process died, starting a new one")
                self._process.shutdown(grace_period=0.1)
                self._process = None

            self._process = AppServerProcess.spawn(self.config, self.event_sink)
            logger.info(f"App server started (pid {self._process.pid})")
            return self._process

    def stop(self) -> ExitStatus | None:
        with self._lock:
            process, self._process = self._process, None
            if process is None:
                return None
            status = process.shutdown()
            logger.info("App server stopped")
            return status

    def restart(self) -> AppServerProcess:
        with self._lock:
            self.stop()
            return self.start()

    def current(self) -> AppServerProcess:
        """The running process, without starting one."""
        with self._lock:
            if self._process is None:
                raise NotReady("App server not running")
            return self._process

    def process(self) -> AppServerProcess:
        """The running process, starting it if needed."""
        return self.start()

    def bridge(self, start: bool = True) -> IpcBridge:
        """An IpcBridge over the process; starts it unless start is False."""
        return IpcBridge(self.process() if start else self.current())

    def is_running(self) -> bool:
        with self._lock:
            return self._process is not None and self._process.is_alive()

    def status(self) -> ServerStatus:
        with self._lock:
            if not self.is_running():
                return ServerStatus(is_running=False)
            info = self._process.server_info
            version = info.get("userAgent") if isinstance(info, dict) else None
            return ServerStatus(is_running=True, version=version)

    def __enter__(self) -> AppServerManager:
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()
