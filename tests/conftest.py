"""Shared fixtures: configs and processes backed by tests/fixtures/fake_app_server.py."""

import sys
import threading
from pathlib import Path

import pytest

from appbridge import AppServerProcess, BridgeConfig, EventBus
from appbridge.config import BINARY_ENV_VAR

FAKE_SERVER = Path(__file__).parent / "fixtures" / "fake_app_server.py"


def make_config(*flags, **overrides) -> BridgeConfig:
    """A config that launches the fake server with the current interpreter."""
    values = {
        "binary_path": sys.executable,
        "args": [str(FAKE_SERVER), *flags],
        "search_dirs": [],
        "request_timeout": 5.0,
        "handshake_timeout": 5.0,
        "shutdown_grace_period": 2.0,
    }
    values.update(overrides)
    return BridgeConfig(**values)


class EventRecorder:
    """Wildcard subscriber that remembers every event and can wait for one."""

    def __init__(self, bus: EventBus):
        self.events: list[tuple[str, object]] = []
        self._cond = threading.Condition()
        bus.subscribe("*", self)

    def __call__(self, event, payload):
        with self._cond:
            self.events.append((event, payload))
            self._cond.notify_all()

    def named(self, name: str) -> list:
        with self._cond:
            return [p for e, p in self.events if e == name]

    def wait_for(self, name: str, timeout: float = 5.0):
        with self._cond:
            ok = self._cond.wait_for(
                lambda: any(e == name for e, _ in self.events), timeout=timeout
            )
        assert ok, f"event {name!r} not received; got {[e for e, _ in self.events]}"
        return self.named(name)[0]


@pytest.fixture(autouse=True)
def _no_binary_override(monkeypatch):
    monkeypatch.delenv(BINARY_ENV_VAR, raising=False)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    return EventRecorder(bus)


@pytest.fixture
def server(bus):
    """A ready process running the fake server with default behaviour."""
    process = AppServerProcess.spawn(make_config(), bus)
    yield process
    process.shutdown()
