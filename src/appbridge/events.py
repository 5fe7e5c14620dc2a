"""
Event delivery from the app-server to the UI side.

Notifications and server requests are emitted as named events. The name
is the JSON-RPC method with path separators turned into hyphens:

    item/agentMessage/delta  ->  item-agentMessage-delta

Server requests carry their JSON-RPC id in the payload under
"_requestId" so the receiver can answer them later.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)

DISCONNECTED_EVENT = "app-server-disconnected"
REQUEST_ID_KEY = "_requestId"
WILDCARD = "*"

EventHandler = Callable[[str, Any], None]


def method_to_event(method: str) -> str:
    """Map a JSON-RPC method name to its event name."""
    return method.replace("/", "-")


def event_to_method(event: str) -> str:
    """
    Inverse of method_to_event for method names without hyphens.

    Event names are a fixed contract with the UI, so hyphens are not
    escaped: "a/b-c" and "a/b/c" share the event "a-b-c", which maps back
    to "a/b/c". Keep the original method when an exact name matters.
    """
    return event.replace("-", "/")


def server_request_payload(request_id: Any, params: Any) -> dict[str, Any]:
    """Attach the request id to a server request's params."""
    if isinstance(params, dict):
        return {**params, REQUEST_ID_KEY: request_id}
    if params is None:
        return {REQUEST_ID_KEY: request_id}
    return {"params": params, REQUEST_ID_KEY: request_id}


class EventSink(Protocol):
    """Anything that can receive named events from the reader thread."""

    def emit(self, event: str, payload: Any) -> None:
        ...


class EventBus:
    """
    In-process publish/subscribe sink.

    Handlers receive (event, payload). Subscribing to "*" receives every
    event. A failing handler is logged and skipped; it never reaches the
    reader loop that called emit().
    """

    def __init__(self):
        self._handlers: dict[str, list[EventHandler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event: str, handler: EventHandler) -> Callable[[], None]:
        """Register a handler. Returns a callable that unsubscribes it."""
        with self._lock:
            self._handlers.setdefault(event, []).append(handler)
        return lambda: self.unsubscribe(event, handler)

    def unsubscribe(self, event: str, handler: EventHandler) -> bool:
        with self._lock:
            handlers = self._handlers.get(event, [])
            if handler not in handlers:
                return False
            handlers.remove(handler)
            if not handlers:
                del self._handlers[event]
            return True

    def emit(self, event: str, payload: Any) -> None:
        with self._lock:
            targets = list(self._handlers.get(event, []))
            targets += self._handlers.get(WILDCARD, [])

        logger.debug(f"Emitting event: {event} ({len(targets)} handler(s))")
        for handler in targets:
            try:
                handler(event, payload)
            except Exception:
                logger.exception(f"Event handler failed for {event}")

    def handler_count(self, event: str | None = None) -> int:
        with self._lock:
            if event is None:
                return sum(len(h) for h in self._handlers.values())
            return len(self._handlers.get(event, []))
