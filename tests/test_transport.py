"""
Transport tests against a real subprocess.

Every test launches tests/fixtures/fake_app_server.py with the current
interpreter and drives it over its stdin/stdout pipes.

Covers:
- Binary resolution and spawn failures
- The initialize/initialized handshake and the NotReady gate
- Call correlation (ordering, concurrency, timeouts, stale responses)
- Notification / server request routing and respond()
- Disconnect handling and graceful/forced shutdown
"""

import contextlib
import os
import signal
import stat
import sys
import threading
import time
import warnings
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from appbridge import (
    AppServerProcess,
    BinaryNotFound,
    BridgeConfig,
    BridgeError,
    BridgeTimeout,
    DISCONNECTED_EVENT,
    Disconnected,
    ExitStatus,
    HandshakeFailed,
    LaunchFailed,
    MethodError,
    NotReady,
    ProcessState,
    TransportError,
)
from appbridge.rpc import handshake
from appbridge.rpc.handshake import HandshakeController
from appbridge.rpc.transport import locate_binary

from conftest import make_config


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


# ── Binary resolution ───────────────────────────────────────

class TestLocateBinary:
    def test_explicit_path_wins(self):
        config = BridgeConfig(binary_path=sys.executable, binary_name="no-such-app-server")
        assert str(locate_binary(config)) == sys.executable

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX exec bits")
    def test_search_dir_fallback(self, tmp_path):
        binary = tmp_path / "appbridge-test-server"
        binary.write_text("#!/bin/sh\nexit 0\n")
        binary.chmod(binary.stat().st_mode | stat.S_IXUSR)

        config = BridgeConfig(binary_name="appbridge-test-server", search_dirs=[str(tmp_path)])
        assert locate_binary(config) == binary

    def test_not_found_lists_searched_locations(self, tmp_path):
        missing = tmp_path / "missing-binary"
        config = BridgeConfig(
            binary_name="appbridge-definitely-missing",
            binary_path=str(missing),
            search_dirs=[str(tmp_path)],
        )
        with pytest.raises(BinaryNotFound) as excinfo:
            locate_binary(config)
        assert str(missing) in excinfo.value.searched
        assert excinfo.value.binary_name == "appbridge-definitely-missing"


# ── Spawn + handshake ───────────────────────────────────────

class TestSpawn:
    def test_unresolvable_binary(self):
        config = BridgeConfig(binary_name="appbridge-definitely-missing", search_dirs=[])
        with pytest.raises(BinaryNotFound):
            AppServerProcess.spawn(config)

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX exec format error")
    def test_launch_failure(self, tmp_path):
        garbage = tmp_path / "not-a-program"
        garbage.write_bytes(b"\x00\x01\x02 not an executable")
        garbage.chmod(0o755)
        with pytest.raises(LaunchFailed):
            AppServerProcess.spawn(BridgeConfig(binary_path=str(garbage), search_dirs=[]))

    def test_handshake_reaches_ready(self, server):
        assert server.state is ProcessState.READY
        assert server.server_info == {"userAgent": "fake-app-server/1.0"}
        assert server.is_alive()

    def test_handshake_wire_messages(self, server):
        initialize, initialized = server.call("received")

        assert initialize["id"] == 1
        assert initialize["method"] == "initialize"
        assert initialize["params"]["clientInfo"] == server.config.client_info

        assert initialized == {"jsonrpc": "2.0", "method": "initialized", "params": {}}

    def test_initialize_error_fails_spawn(self, bus):
        with pytest.raises(HandshakeFailed, match="unsupported client"):
            AppServerProcess.spawn(make_config("--fail-initialize"), bus)

    def test_early_exit_fails_spawn(self, bus):
        with pytest.raises(HandshakeFailed):
            AppServerProcess.spawn(make_config("--exit-on-start"), bus)


class TestNotReady:
    def test_traffic_rejected_before_handshake(self, bus):
        process = AppServerProcess.launch(make_config(), bus)
        try:
            assert process.state is ProcessState.UNINITIALIZED
            with pytest.raises(NotReady):
                process.call("thread/list", {})
            with pytest.raises(NotReady):
                process.notify("something", {})
            with pytest.raises(NotReady):
                process.respond(1, {})

            HandshakeController(process).run()
            assert process.state is ProcessState.READY

            received = process.call("received")
            assert [m["method"] for m in received] == ["initialize", "initialized"]
        finally:
            process.shutdown()

    def test_handshake_runs_once(self, server):
        with pytest.raises(HandshakeFailed, match="ready"):
            HandshakeController(server).run()

    def test_handshake_source_compiles_without_warnings(self):
        path = Path(handshake.__file__)
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            compile(path.read_text(encoding="utf-8"), str(path), "exec")


# ── Calls ───────────────────────────────────────────────────

class TestCalls:
    def test_echo(self, server):
        result = server.call("thread/list", {"limit": 3})
        assert result["method"] == "thread/list"
        assert result["params"] == {"limit": 3}

    def test_ids_strictly_increase(self, server):
        ids = [server.call("echo")["id"] for _ in range(5)]
        assert ids == sorted(ids)
        assert len(set(ids)) == 5
        assert ids[0] == 2  # 1 was initialize

    def test_method_error(self, server):
        with pytest.raises(MethodError) as excinfo:
            server.call("fail")
        assert excinfo.value.code == -32000
        assert excinfo.value.message == "boom"
        assert excinfo.value.data == {"hint": "x"}
        assert server.pending_calls == 0

    def test_timeout_removes_pending_call(self, server):
        with pytest.raises(BridgeTimeout, match="never"):
            server.call("never", timeout=0.2)
        assert server.pending_calls == 0

    def test_result_taken_at_timeout_is_returned(self, server, monkeypatch):
        registry = server._registry

        # The reader has popped the entry but not yet set the result.
        def discard_after_reader_took_it(call_id):
            future = registry._take(call_id)
            threading.Timer(0.1, future.set_result, args=("just in time",)).start()
            return False

        monkeypatch.setattr(registry, "discard", discard_after_reader_took_it)
        assert server.call("never", timeout=0.2) == "just in time"

    def test_late_response_is_discarded(self, server):
        with pytest.raises(BridgeTimeout):
            server.call("late", {"delay": 0.5}, timeout=0.1)

        # The late answer arrives first and must not resolve this call.
        result = server.call("after-late", {"n": 1})
        assert result["method"] == "after-late"
        assert server.pending_calls == 0

    def test_malformed_lines_are_dropped(self, server):
        assert server.call("malformed") == "after-junk"
        assert server.call("echo")["method"] == "echo"
        assert server.pending_calls == 0

    def test_stale_response_is_dropped(self, server):
        assert server.call("stale") == "fresh"

    def test_out_of_order_responses(self, server):
        for _ in range(3):
            server.call("echo")  # ids 2..4, so the pair uses 5 and 6

        with ThreadPoolExecutor(max_workers=2) as pool:
            first = pool.submit(server.call, "pair", {"value": "A"})
            second = pool.submit(server.call, "pair", {"value": "B"})
            assert first.result(timeout=5) == "A"
            assert second.result(timeout=5) == "B"

    def test_many_concurrent_callers(self, server):
        def one(n):
            return server.call("echo", {"n": n})

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(one, range(40)))

        assert [r["params"]["n"] for r in results] == list(range(40))
        assert len({r["id"] for r in results}) == 40
        assert server.pending_calls == 0


# ── Events ──────────────────────────────────────────────────

class TestEvents:
    def test_notification_becomes_event(self, server, recorder):
        assert server.call("notify") == "notified"
        payload = recorder.wait_for("turn-started")
        assert payload == {"threadId": "thr_1", "turnId": "turn_1"}

    def test_server_request_and_respond(self, server, recorder):
        assert server.call("server_request") == "requested"

        payload = recorder.wait_for("item-commandExecution-requestApproval")
        assert payload["_requestId"] == 42
        assert payload["itemId"] == "item_1"

        server.respond(42, {"decision": "accept"})
        echoed = recorder.wait_for("fake-responded")
        assert echoed["message"] == {"jsonrpc": "2.0", "id": 42, "result": {"decision": "accept"}}

    def test_respond_error(self, server, recorder):
        server.respond_error(42, -32601, "not supported")
        echoed = recorder.wait_for("fake-responded")
        assert echoed["message"]["error"] == {"code": -32601, "message": "not supported"}

    def test_server_ids_do_not_touch_pending_calls(self, server, recorder):
        server.call("server_request")
        recorder.wait_for("item-commandExecution-requestApproval")
        # Id 42 belongs to the server; answering it resolves nothing locally.
        server.respond(42, {"decision": "decline"})
        recorder.wait_for("fake-responded")
        assert server.pending_calls == 0
        assert server.call("echo")["method"] == "echo"


# ── Disconnect + shutdown ───────────────────────────────────

class TestDisconnect:
    def test_exit_fails_pending_call_and_emits_once(self, server, recorder):
        with pytest.raises(Disconnected):
            server.call("exit")

        recorder.wait_for(DISCONNECTED_EVENT)
        time.sleep(0.2)
        assert len(recorder.named(DISCONNECTED_EVENT)) == 1

        assert wait_until(lambda: not server.is_alive())
        with pytest.raises(Disconnected):
            server.call("echo")

        assert server.shutdown() == ExitStatus(returncode=3, forced=False)


class TestShutdown:
    def test_graceful_exit_on_stdin_close(self, server, recorder):
        status = server.shutdown()
        assert status == ExitStatus(returncode=0, forced=False)
        assert server.state is ProcessState.TERMINATED
        assert not server.is_alive()
        assert recorder.named(DISCONNECTED_EVENT) == []

    def test_shutdown_is_idempotent(self, server):
        first = server.shutdown()
        assert server.shutdown() is first

    def test_calls_after_shutdown_are_rejected(self, server):
        server.shutdown()
        with pytest.raises(NotReady):
            server.call("echo")

    def test_pending_calls_fail_on_shutdown(self, server):
        outcome = {}

        def caller():
            try:
                server.call("never", timeout=10)
            except Exception as e:
                outcome["error"] = e

        thread = threading.Thread(target=caller)
        thread.start()
        assert wait_until(lambda: server.pending_calls == 1)

        server.shutdown()
        thread.join(timeout=5)
        assert isinstance(outcome.get("error"), Disconnected)

    def test_forced_kill_after_grace_period(self, bus):
        process = AppServerProcess.spawn(make_config("--ignore-stdin-close"), bus)
        started = time.monotonic()
        status = process.shutdown(grace_period=0.5)
        elapsed = time.monotonic() - started

        assert status.forced
        assert status.returncode != 0
        assert elapsed >= 0.5
        assert elapsed < 5
        assert not process.is_alive()

    def test_shutdown_kills_past_a_blocked_writer(self, bus):
        process = AppServerProcess.spawn(make_config("--stop-reading"), bus)
        outcome = {}

        def caller():
            try:
                process.call("big", {"blob": "x" * (4 * 1024 * 1024)}, timeout=1.0)
            except BridgeError as e:
                outcome["error"] = e

        thread = threading.Thread(target=caller, daemon=True)
        thread.start()
        time.sleep(0.5)

        started = time.monotonic()
        status = process.shutdown(grace_period=0.5)
        assert time.monotonic() - started < 5
        assert status.forced
        assert not process.is_alive()

        thread.join(timeout=5)
        assert not thread.is_alive()
        assert isinstance(outcome.get("error"), (TransportError, Disconnected))

    @pytest.mark.skipif(sys.platform == "win32", reason="select() on pipes")
    def test_reader_stops_while_grandchild_holds_stdout(self, bus, recorder):
        process = AppServerProcess.spawn(make_config("--spawn-grandchild"), bus)
        grandchild = process.server_info["grandchildPid"]
        try:
            status = process.shutdown()
            assert status == ExitStatus(returncode=0, forced=False)
            assert not process._reader.is_alive()
            assert recorder.named(DISCONNECTED_EVENT) == []
        finally:
            with contextlib.suppress(ProcessLookupError):
                os.kill(grandchild, signal.SIGKILL)

    def test_context_manager(self, bus):
        with AppServerProcess.spawn(make_config(), bus) as process:
            assert process.call("echo")["method"] == "echo"
        assert process.state is ProcessState.TERMINATED
