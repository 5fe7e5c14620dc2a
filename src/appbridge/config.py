"""
Bridge configuration — how to find, launch and talk to the app-server.

A config is a plain dataclass that can be built in code or loaded from a
YAML file:

    binary_name: codex
    args: [app-server]
    request_timeout: 30
    shutdown_grace_period: 2
    client_name: my-desktop
    env:
      RUST_LOG: warn

Setting APPBRIDGE_BINARY in the environment overrides binary_path.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from . import __version__

logger = logging.getLogger(__name__)

BINARY_ENV_VAR = "APPBRIDGE_BINARY"

DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_SHUTDOWN_GRACE_PERIOD = 2.0


def default_search_dirs() -> list[str]:
    """Well-known install locations checked after PATH."""
    home = Path.home()
    return [
        str(home / ".cargo" / "bin"),
        str(home / ".local" / "bin"),
        "/usr/local/bin",
        "/opt/homebrew/bin",
    ]


@dataclass
class BridgeConfig:
    """
    Launch and protocol settings for one app-server process.

    Fields:
        binary_name: Executable looked up on PATH and in search_dirs
        binary_path: Explicit executable path, tried first
        args: Arguments passed to the executable
        search_dirs: Install directories tried after PATH
        env: Extra environment variables (merged over os.environ)
        cwd: Working directory for the subprocess
        request_timeout: Default seconds to wait for a call's response
        handshake_timeout: Seconds to wait for the initialize response
        shutdown_grace_period: Seconds to wait for exit before killing
        client_name / client_title / client_version: initialize clientInfo
    """
    binary_name: str = "codex"
    binary_path: str | None = None
    args: list[str] = field(default_factory=lambda: ["app-server"])
    search_dirs: list[str] = field(default_factory=default_search_dirs)
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None

    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    handshake_timeout: float = DEFAULT_REQUEST_TIMEOUT
    shutdown_grace_period: float = DEFAULT_SHUTDOWN_GRACE_PERIOD

    client_name: str = "appbridge"
    client_title: str = "App Bridge"
    client_version: str = __version__

    def __post_init__(self):
        for name in ("request_timeout", "handshake_timeout", "shutdown_grace_period"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or value <= 0:
                raise ValueError(f"{name} must be a positive number, got {value!r}")

        override = os.environ.get(BINARY_ENV_VAR)
        if override:
            self.binary_path = override

    @property
    def client_info(self) -> dict[str, str]:
        return {
            "name": self.client_name,
            "title": self.client_title,
            "version": self.client_version,
        }

    def process_env(self) -> dict[str, str] | None:
        """Environment for the subprocess, or None to inherit unchanged."""
        if not self.env:
            return None
        return {**os.environ, **{k: str(v) for k, v in self.env.items()}}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BridgeConfig:
        """Create a config from a plain dict, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown bridge config key(s): {', '.join(unknown)}")

        values = dict(data)
        if "args" in values:
            values["args"] = [str(a) for a in values["args"] or []]
        if "search_dirs" in values:
            values["search_dirs"] = [
                os.path.expanduser(str(d)) for d in values["search_dirs"] or []
            ]
        if values.get("binary_path"):
            values["binary_path"] = os.path.expanduser(str(values["binary_path"]))
        if values.get("env") is None:
            values.pop("env", None)

        return cls(**values)

    @classmethod
    def from_yaml(cls, path: str | Path) -> BridgeConfig:
        """Load a config from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Bridge config not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError(f"Bridge config must be a YAML mapping, got {type(data).__name__}")

        logger.info(f"Loaded bridge config from {path}")
        return cls.from_dict(data)
