"""
Stdio transport: supervises the app-server subprocess.

The app-server runs as a child process. We write JSON-RPC messages to
its stdin and a dedicated reader thread consumes its stdout for the
lifetime of the process. One line = one message.

Writes (and call id allocation) are serialized by a single write lock so
lines from concurrent callers never interleave. Responses are matched to
calls by id through the CorrelationRegistry, so they may arrive in any
order. Notifications and server requests go to the event sink.
"""

from __future__ import annotations

import itertools
import logging
import os
import selectors
import shutil
import subprocess
import threading
import time
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Any, Iterator

from ..config import BridgeConfig
from ..errors import (
    BinaryNotFound,
    BridgeError,
    BridgeTimeout,
    Disconnected,
    HandshakeFailed,
    LaunchFailed,
    MethodError,
    NotReady,
    TransportError,
)
from ..events import (
    DISCONNECTED_EVENT,
    EventBus,
    EventSink,
    method_to_event,
    server_request_payload,
)
from ..models import ExitStatus, ProcessState
from .codec import (
    Malformed,
    Message,
    Notification,
    Request,
    RequestId,
    Response,
    RpcErrorObject,
    ServerRequest,
    decode,
)
from .handshake import HandshakeController
from .registry import CorrelationRegistry

logger = logging.getLogger(__name__)

READER_JOIN_TIMEOUT = 1.0
READ_CHUNK_SIZE = 65536


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def locate_binary(config: BridgeConfig) -> Path:
    """
    Find the app-server executable.

    Search order: config.binary_path, PATH lookup of config.binary_name,
    then config.binary_name inside each of config.search_dirs.
    """
    searched: list[str] = []

    if config.binary_path:
        candidate = Path(config.binary_path).expanduser()
        searched.append(str(candidate))
        if _is_executable(candidate):
            return candidate
        logger.warning(f"Configured binary is not executable: {candidate}")

    found = shutil.which(config.binary_name)
    searched.append(f"PATH ({config.binary_name})")
    if found:
        return Path(found)

    for directory in config.search_dirs:
        candidate = Path(directory).expanduser() / config.binary_name
        searched.append(str(candidate))
        if _is_executable(candidate):
            return candidate

    raise BinaryNotFound(config.binary_name, searched)


class AppServerProcess:
    """
    One running app-server and the bridge state tied to it.

    Use spawn() to get a ready process (launch + handshake), or launch()
    to get one that has not been initialized yet.
    """

    def __init__(
        self,
        process: subprocess.Popen,
        config: BridgeConfig,
        event_sink: EventSink,
    ):
        self._process = process
        self.config = config
        self.event_sink = event_sink
        self.server_info: Any = None

        self._registry = CorrelationRegistry()
        self._ids = itertools.count(1)
        self._write_lock = threading.Lock()

        self._state = ProcessState.UNINITIALIZED
        self._state_lock = threading.Lock()

        self._stop = threading.Event()
        self._reader_done = threading.Event()
        self._reader: threading.Thread | None = None
        # Shutdown writes a byte here to wake a reader blocked in select().
        # Windows cannot select() on pipes, so there is no wakeup pipe there.
        self._wakeup: tuple[int, int] | None = os.pipe() if os.name != "nt" else None

        self._shutdown_lock = threading.Lock()
        self._exit_status: ExitStatus | None = None

    # ── Construction ────────────────────────────────────────

    @classmethod
    def launch(
        cls,
        config: BridgeConfig | None = None,
        event_sink: EventSink | None = None,
    ) -> AppServerProcess:
        """Start the subprocess and its reader thread, without the handshake."""
        config = config or BridgeConfig()
        event_sink = event_sink if event_sink is not None else EventBus()

        binary = locate_binary(config)
        command = [str(binary), *config.args]
        logger.info(f"Spawning app-server: {' '.join(command)}")

        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=None,
                cwd=config.cwd,
                env=config.process_env(),
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            raise LaunchFailed(f"Failed to spawn app-server: {e}") from e

        bridge = cls(process, config, event_sink)
        bridge._start_reader()
        return bridge

    @classmethod
    def spawn(
        cls,
        config: BridgeConfig | None = None,
        event_sink: EventSink | None = None,
    ) -> AppServerProcess:
        """Launch the subprocess and complete the handshake."""
        bridge = cls.launch(config, event_sink)
        try:
            HandshakeController(bridge).run()
        except HandshakeFailed:
            bridge.shutdown()
            raise
        return bridge

    def _start_reader(self) -> None:
        self._reader = threading.Thread(
            target=self._read_loop,
            name=f"app-server-reader-{self.pid}",
            daemon=True,
        )
        self._reader.start()

    # ── State ───────────────────────────────────────────────

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def state(self) -> ProcessState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: ProcessState) -> None:
        with self._state_lock:
            logger.debug(f"App server state: {self._state.value} -> {state.value}")
            self._state = state

    def _ensure_ready(self) -> None:
        state = self.state
        if state is not ProcessState.READY:
            raise NotReady(f"App server is not ready (state: {state.value})")

    @property
    def pending_calls(self) -> int:
        return len(self._registry)

    def is_alive(self) -> bool:
        return self._process.poll() is None

    # ── Outbound ────────────────────────────────────────────

    def call(self, method: str, params: Any = None, timeout: float | None = None) -> Any:
        """Send a request and block until its response, an error, or the timeout."""
        self._ensure_ready()
        return self._request(method, params, timeout)

    def notify(self, method: str, params: Any = None) -> None:
        """Send a notification. No response is expected."""
        self._ensure_ready()
        self._send_notification(method, params)

    def respond(self, request_id: RequestId, result: Any) -> None:
        """Answer a server request, echoing the id the app-server chose."""
        self._ensure_ready()
        with self._write_lock:
            self._write_line(Response(id=request_id, result=result).to_json())
        logger.debug(f"Responded to server request {request_id}")

    def respond_error(
        self,
        request_id: RequestId,
        code: int,
        message: str,
        data: Any = None,
    ) -> None:
        """Answer a server request with an error object."""
        self._ensure_ready()
        error = RpcErrorObject(code=code, message=message, data=data)
        with self._write_lock:
            self._write_line(Response(id=request_id, error=error).to_json())
        logger.debug(f"Responded to server request {request_id} with error {code}")

    def _request(self, method: str, params: Any, timeout: float | None) -> Any:
        timeout = self.config.request_timeout if timeout is None else timeout

        with self._write_lock:
            call_id = next(self._ids)
            future = self._registry.register(call_id)
            if self._reader_done.is_set():
                self._registry.discard(call_id)
                raise Disconnected()
            try:
                self._write_line(Request(id=call_id, method=method, params=params).to_json())
            except TransportError:
                self._registry.discard(call_id)
                raise

        logger.debug(f"-> [{call_id}] {method}")
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            # Already taken by the reader, which sets the outcome right after.
            if not self._registry.discard(call_id):
                return future.result()
            logger.warning(f"Request {call_id} ({method}) timed out after {timeout}s")
            raise BridgeTimeout(method, timeout) from None

    def _send_notification(self, method: str, params: Any) -> None:
        with self._write_lock:
            self._write_line(Notification(method=method, params=params).to_json())
        logger.debug(f"-> {method} (notification)")

    def _write_line(self, line: str) -> None:
        # Caller holds _write_lock.
        stdin = self._process.stdin
        if stdin is None or stdin.closed:
            raise TransportError("App server stdin is closed")
        try:
            stdin.write(line + "\n")
            stdin.flush()
        except (OSError, ValueError) as e:
            raise TransportError(f"Failed to write to stdin: {e}") from e

    # ── Reader loop ─────────────────────────────────────────

    def _read_loop(self) -> None:
        try:
            self._consume_stdout()
        finally:
            self._reader_done.set()

    def _consume_stdout(self) -> None:
        try:
            for line in self._read_lines():
                if self._stop.is_set():
                    return
                if line.strip():
                    self._dispatch(decode(line))
        except (OSError, ValueError) as e:
            if self._stop.is_set():
                return
            logger.error(f"Error reading from app-server stdout: {e}")
            self._reader_failed(TransportError(f"Failed to read from stdout: {e}"))
            return

        if self._stop.is_set():
            logger.debug("Stdout reader stopped (shutdown)")
            return
        logger.info("App server stdout closed (EOF)")
        self._reader_failed(Disconnected())
        self._emit(DISCONNECTED_EVENT, {})

    def _read_lines(self) -> Iterator[str]:
        """Yield stdout lines until EOF, or until shutdown wakes the reader."""
        stdout = self._process.stdout
        if self._wakeup is None:
            yield from iter(stdout.readline, "")
            return

        fd = stdout.fileno()
        wakeup_fd = self._wakeup[0]
        pending = bytearray()

        with selectors.DefaultSelector() as selector:
            selector.register(fd, selectors.EVENT_READ)
            selector.register(wakeup_fd, selectors.EVENT_READ)
            while True:
                ready = {key.fd for key, _ in selector.select()}
                if wakeup_fd in ready:
                    return

                chunk = os.read(fd, READ_CHUNK_SIZE)
                if not chunk:
                    if pending:
                        yield pending.decode("utf-8", errors="replace")
                    return

                pending += chunk
                if b"\n" not in chunk:
                    continue
                *lines, rest = pending.split(b"\n")
                pending = bytearray(rest)
                for line in lines:
                    yield line.decode("utf-8", errors="replace")

    def _reader_failed(self, error: BridgeError) -> None:
        # Order matters: callers check _reader_done after registering.
        self._reader_done.set()
        self._registry.take_all_and_fail(error)

    def _dispatch(self, message: Message) -> None:
        if isinstance(message, Response):
            self._handle_response(message)
        elif isinstance(message, ServerRequest):
            event = method_to_event(message.method)
            logger.debug(f"<- server request [{message.id}] {message.method}")
            self._emit(event, server_request_payload(message.id, message.params))
        elif isinstance(message, Notification):
            self._emit(method_to_event(message.method), message.params)
        elif isinstance(message, Malformed):
            logger.warning(f"Dropping malformed message ({message.reason}): {message.line[:200]}")
        else:
            logger.warning(f"Unhandled message type: {type(message).__name__}")

    def _handle_response(self, response: Response) -> None:
        if response.error is not None:
            err = response.error
            found = self._registry.fail(response.id, MethodError(err.code, err.message, err.data))
        else:
            found = self._registry.complete(response.id, response.result)

        if found:
            logger.debug(f"<- [{response.id}] {'error' if response.is_error else 'ok'}")
        else:
            logger.warning(f"Discarding response for unknown or expired call id {response.id}")

    def _emit(self, event: str, payload: Any) -> None:
        try:
            self.event_sink.emit(event, payload)
        except Exception:
            logger.exception(f"Failed to emit event {event}")

    # ── Shutdown ────────────────────────────────────────────

    def shutdown(self, grace_period: float | None = None) -> ExitStatus:
        """
        Stop the app-server: close stdin, wait up to grace_period for it to
        exit, then kill it. Safe to call more than once; later calls return
        the first call's status.

        The grace period also bounds the wait for a caller stuck writing to
        a full stdin pipe; the kill breaks that write.
        """
        grace = self.config.shutdown_grace_period if grace_period is None else grace_period
        deadline = time.monotonic() + grace

        with self._shutdown_lock:
            if self._exit_status is not None:
                return self._exit_status

            self._set_state(ProcessState.SHUTTING_DOWN)
            self._stop.set()
            forced = not self._close_stdin(grace)

            if forced:
                returncode = self._process.wait()
            else:
                try:
                    returncode = self._process.wait(timeout=max(0.0, deadline - time.monotonic()))
                    logger.info(f"App server exited with status: {returncode}")
                except subprocess.TimeoutExpired:
                    logger.warning("App server did not exit gracefully, killing...")
                    self._process.kill()
                    returncode = self._process.wait()
                    forced = True

            self._registry.take_all_and_fail(Disconnected("App server shut down"))
            self._wake_reader()
            self._join_reader()

            self._exit_status = ExitStatus(returncode=returncode, forced=forced)
            self._set_state(ProcessState.TERMINATED)
            return self._exit_status

    def _close_stdin(self, timeout: float) -> bool:
        """Close stdin so the app-server sees EOF. Returns False if it had to kill."""
        killed = False
        if not self._write_lock.acquire(timeout=timeout):
            logger.warning("Write to app-server stdin is blocked, killing...")
            self._process.kill()
            killed = True
            if not self._write_lock.acquire(timeout=READER_JOIN_TIMEOUT):
                logger.warning("Blocked writer did not release app-server stdin")
                return False

        try:
            stdin = self._process.stdin
            if stdin is not None and not stdin.closed:
                try:
                    stdin.close()
                except OSError as e:
                    logger.debug(f"Error closing app-server stdin: {e}")
        finally:
            self._write_lock.release()
        return not killed

    def _wake_reader(self) -> None:
        if self._wakeup is None:
            return
        try:
            os.write(self._wakeup[1], b"\0")
        except OSError as e:
            logger.debug(f"Error waking stdout reader: {e}")

    def _join_reader(self) -> None:
        reader = self._reader
        if reader is None or reader is threading.current_thread():
            return
        reader.join(timeout=READER_JOIN_TIMEOUT)
        if reader.is_alive():
            logger.warning("Stdout reader did not stop in time")
            return
        if self._process.stdout is not None:
            self._process.stdout.close()
        if self._wakeup is not None:
            for fd in self._wakeup:
                os.close(fd)
            self._wakeup = None

    def __enter__(self) -> AppServerProcess:
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()
