"""
Correlation registry: outbound call id -> pending Future.

Shared between caller threads (register / discard on timeout) and the
reader thread (complete / fail). Every entry is removed exactly once.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from typing import Any

logger = logging.getLogger(__name__)


class CorrelationRegistry:
    """
    Thread-safe map of pending calls. Futures are resolved outside the lock.
    """

    def __init__(self):
        self._pending: dict[int, Future] = {}
        self._lock = threading.Lock()

    def register(self, call_id: int) -> Future:
        """Create the completion handle for call_id."""
        future: Future = Future()
        with self._lock:
            if call_id in self._pending:
                raise ValueError(f"Call id {call_id} is already pending")
            self._pending[call_id] = future
        return future

    def _take(self, call_id: Any) -> Future | None:
        with self._lock:
            return self._pending.pop(call_id, None)

    def complete(self, call_id: Any, result: Any) -> bool:
        """Resolve a pending call with its result. False if the id is unknown."""
        future = self._take(call_id)
        if future is None:
            return False
        future.set_result(result)
        return True

    def fail(self, call_id: Any, error: BaseException) -> bool:
        """Resolve a pending call with an error. False if the id is unknown."""
        future = self._take(call_id)
        if future is None:
            return False
        future.set_exception(error)
        return True

    def discard(self, call_id: int) -> bool:
        """Drop an entry without resolving it (timeout, write failure)."""
        return self._take(call_id) is not None

    def take_all_and_fail(self, error: BaseException) -> int:
        """Fail every pending call with the same error. Returns how many."""
        with self._lock:
            pending = list(self._pending.items())
            self._pending.clear()

        for call_id, future in pending:
            future.set_exception(error)

        if pending:
            logger.info(f"Failed {len(pending)} pending call(s): {error}")
        return len(pending)

    def __contains__(self, call_id: object) -> bool:
        with self._lock:
            return call_id in self._pending

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def pending_ids(self) -> list[int]:
        with self._lock:
            return sorted(self._pending)
