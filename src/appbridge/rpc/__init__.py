"""
JSON-RPC over stdio to the app-server.

Provides:
- codec — line-delimited message encoding and shape classification
- CorrelationRegistry — pending outbound calls keyed by id
- AppServerProcess — subprocess supervisor with its reader thread
- HandshakeController — initialize/initialized exchange
- AppServerManager — lazy start, stop and restart of the process
- IpcBridge — typed thread/turn/account calls and approval answers
"""

from .registry import CorrelationRegistry
from .transport import AppServerProcess, locate_binary
from .handshake import HandshakeController
from .bridge import IpcBridge, auto_decline
from .manager import AppServerManager

__all__ = [
    "AppServerManager",
    "AppServerProcess",
    "CorrelationRegistry",
    "HandshakeController",
    "IpcBridge",
    "auto_decline",
    "locate_binary",
]
