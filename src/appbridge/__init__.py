"""
App Bridge — supervise an app-server subprocess and talk JSON-RPC to it.

Usage:
    from appbridge import AppServerManager, BridgeConfig, EventBus

    bus = EventBus()
    bus.subscribe("item-agentMessage-delta", lambda event, payload: print(payload))

    manager = AppServerManager(BridgeConfig(), event_sink=bus)
    bridge = manager.bridge()
    thread = bridge.start_thread(cwd="/work/repo")
    bridge.start_turn(thread["thread"]["id"], "Summarize the README")

    # Approval requests arrive as events carrying "_requestId"
    bridge.respond_to_approval(request_id, "accept")

    manager.stop()
"""

__version__ = "0.1.0"

from .config import BridgeConfig
from .errors import (
    BinaryNotFound,
    BridgeError,
    BridgeTimeout,
    Disconnected,
    HandshakeFailed,
    InvalidDecision,
    LaunchFailed,
    MethodError,
    NotReady,
    SpawnError,
    TransportError,
)
from .events import DISCONNECTED_EVENT, EventBus, EventSink, event_to_method, method_to_event
from .models import (
    ApprovalDecision,
    ApprovalDecisionKind,
    ExecPolicyAmendment,
    ExitStatus,
    ProcessState,
    ServerStatus,
)
from .rpc import AppServerManager, AppServerProcess, IpcBridge

__all__ = [
    # Core
    "AppServerManager",
    "AppServerProcess",
    "IpcBridge",
    "BridgeConfig",
    # Events
    "DISCONNECTED_EVENT",
    "EventBus",
    "EventSink",
    "event_to_method",
    "method_to_event",
    # Models
    "ApprovalDecision",
    "ApprovalDecisionKind",
    "ExecPolicyAmendment",
    "ExitStatus",
    "ProcessState",
    "ServerStatus",
    # Errors
    "BinaryNotFound",
    "BridgeError",
    "BridgeTimeout",
    "Disconnected",
    "HandshakeFailed",
    "InvalidDecision",
    "LaunchFailed",
    "MethodError",
    "NotReady",
    "SpawnError",
    "TransportError",
]
