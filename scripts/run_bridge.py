#!/usr/bin/env python3
"""
Run Bridge — start the app-server, make calls, watch its events.

Usage:
    # Is the app-server installed and does it complete the handshake?
    python scripts/run_bridge.py --status

    # One call, printed as JSON
    python scripts/run_bridge.py --call thread/list --params '{"limit": 5}'

    # Frontend names work too
    python scripts/run_bridge.py --call listThreads

    # Print every event for 30 seconds, declining approval requests
    python scripts/run_bridge.py --listen 30 --auto-decline

    # Explicit binary / config file
    python scripts/run_bridge.py --binary ~/bin/codex --status
    python scripts/run_bridge.py --config bridge.yaml --listen 10
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
import logging
import time
from pathlib import Path

# Ensure src/ is on path for development
PROJECT_ROOT = Path(__file__).parent.parent.resolve()
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from appbridge import (
    AppServerManager,
    BridgeConfig,
    BridgeError,
    EventBus,
)
from appbridge.events import WILDCARD
from appbridge.rpc.bridge import auto_decline

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)


def load_config(args) -> BridgeConfig:
    config = BridgeConfig.from_yaml(args.config) if args.config else BridgeConfig()
    if args.binary:
        config.binary_path = args.binary
    return config


def print_event(event, payload):
    print(f"[{event}] {json.dumps(payload, default=str)}")


def main():
    parser = argparse.ArgumentParser(
        description="Talk JSON-RPC to an app-server subprocess.",
    )
    parser.add_argument("--config", "-c", type=str, help="Path to a YAML bridge config")
    parser.add_argument("--binary", "-b", type=str, help="Explicit app-server executable")
    parser.add_argument("--status", action="store_true", help="Start the server and report status")
    parser.add_argument("--call", type=str, help="Method to call (JSON-RPC or frontend name)")
    parser.add_argument("--params", type=str, default="{}", help="JSON params for --call")
    parser.add_argument("--timeout", type=float, default=None, help="Call timeout in seconds")
    parser.add_argument("--listen", type=float, default=0, help="Print events for N seconds")
    parser.add_argument("--auto-decline", action="store_true", help="Decline approval requests")
    parser.add_argument("--verbose", "-v", action="store_true")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if not (args.status or args.call or args.listen):
        parser.error("Use --status, --call <method> or --listen <seconds>")

    try:
        params = json.loads(args.params)
    except json.JSONDecodeError as e:
        parser.error(f"--params is not valid JSON: {e}")

    bus = EventBus()
    if args.listen:
        bus.subscribe(WILDCARD, print_event)

    manager = AppServerManager(load_config(args), event_sink=bus)

    def shutdown(sig, frame):
        print("\nShutting down app server...")
        manager.stop()
        sys.exit(0)
    signal.signal(signal.SIGINT, shutdown)

    exit_code = 0
    try:
        bridge = manager.bridge()
        if args.auto_decline:
            auto_decline(bus, bridge)

        if args.status:
            status = manager.status()
            print(f"Running: {status.is_running}")
            print(f"Version: {status.version or '(unknown)'}")

        if args.call:
            result = bridge.invoke(args.call, params, timeout=args.timeout)
            print(json.dumps(result, indent=2, default=str))

        if args.listen:
            print(f"Listening for events for {args.listen}s (Ctrl-C to stop)...")
            time.sleep(args.listen)
    except BridgeError as e:
        print(f"Error: {e}")
        exit_code = 1
    finally:
        status = manager.stop()
        if status and status.forced:
            logger.warning("App server had to be killed")

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
