"""
IPC bridge — high-level calls on top of an AppServerProcess.

Maps frontend method names to app-server JSON-RPC methods, builds the
camelCase params the app-server expects, and answers approval requests.
"""

from __future__ import annotations

import base64
import binascii
import logging
import tempfile
from typing import Any, Callable

from ..errors import BridgeError
from ..events import REQUEST_ID_KEY, EventBus, method_to_event
from ..models import ApprovalDecision
from .transport import AppServerProcess

logger = logging.getLogger(__name__)

METHOD_MAP = {
    "startThread": "thread/start",
    "resumeThread": "thread/resume",
    "listThreads": "thread/list",
    "startTurn": "turn/start",
    "interruptTurn": "turn/interrupt",
    "getAccount": "account/read",
    "login": "account/login/start",
    "logout": "account/logout",
}

APPROVAL_METHODS = {
    "item/commandExecution/requestApproval",
    "item/fileChange/requestApproval",
}

IMAGE_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
}


def _compact(**params: Any) -> dict[str, Any]:
    """Drop unset fields; the app-server treats absent and null differently."""
    return {k: v for k, v in params.items() if v is not None}


def save_data_url_image(data_url: str) -> str:
    """Decode a data:image/...;base64 URL into a temp file and return its path."""
    header, sep, payload = data_url.partition(",")
    if not sep:
        raise BridgeError("Invalid data URL format")

    mime = header[len("data:"):].split(";", 1)[0] if header.startswith("data:") else ""
    extension = IMAGE_EXTENSIONS.get(mime, "png")

    try:
        image_bytes = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise BridgeError(f"Failed to decode base64 image: {e}") from e

    with tempfile.NamedTemporaryFile(
        prefix="appbridge_image_", suffix=f".{extension}", delete=False
    ) as f:
        f.write(image_bytes)
        return f.name


def build_turn_input(
    text: str,
    images: list[str] | None = None,
    skills: list[dict[str, str]] | None = None,
) -> list[dict[str, str]]:
    """Text first, then skills, then images."""
    items: list[dict[str, str]] = [{"type": "text", "text": text}]

    for skill in skills or []:
        items.append({"type": "skill", "name": skill["name"], "path": skill["path"]})

    for image in images or []:
        path = save_data_url_image(image) if image.startswith("data:image/") else image
        items.append({"type": "localImage", "path": path})

    return items


class IpcBridge:
    """Typed front door to the app-server's JSON-RPC methods."""

    def __init__(self, process: AppServerProcess):
        self.process = process

    @staticmethod
    def map_method(name: str) -> str:
        return METHOD_MAP.get(name, name)

    @staticmethod
    def map_event(method: str) -> str:
        return method_to_event(method)

    def invoke(self, name: str, params: Any = None, timeout: float | None = None) -> Any:
        """Call by frontend name or raw JSON-RPC method."""
        return self.process.call(self.map_method(name), params, timeout)

    # ── Threads ─────────────────────────────────────────────

    def start_thread(
        self,
        cwd: str | None = None,
        model: str | None = None,
        model_provider: str | None = None,
        sandbox: str | None = None,
        approval_policy: str | None = None,
        base_instructions: str | None = None,
        developer_instructions: str | None = None,
        config: dict | None = None,
    ) -> Any:
        params = _compact(
            cwd=cwd,
            model=model,
            modelProvider=model_provider,
            sandbox=sandbox,
            approvalPolicy=approval_policy,
            baseInstructions=base_instructions,
            developerInstructions=developer_instructions,
            config=config,
        )
        response = self.process.call("thread/start", params)
        thread = response.get("thread") if isinstance(response, dict) else None
        if isinstance(thread, dict):
            logger.info(f"Started thread: {thread.get('id')}")
        return response

    def resume_thread(self, thread_id: str) -> Any:
        response = self.process.call("thread/resume", {"threadId": thread_id})
        logger.info(f"Resumed thread: {thread_id}")
        return response

    def list_threads(
        self,
        limit: int | None = None,
        cursor: str | None = None,
        model_providers: list[str] | None = None,
    ) -> Any:
        params = _compact(limit=limit, cursor=cursor, modelProviders=model_providers)
        return self.process.call("thread/list", params)

    # ── Turns ───────────────────────────────────────────────

    def start_turn(
        self,
        thread_id: str,
        text: str,
        images: list[str] | None = None,
        skills: list[dict[str, str]] | None = None,
        effort: str | None = None,
        summary: str | None = None,
        model: str | None = None,
        approval_policy: str | None = None,
        sandbox_policy: str | None = None,
        cwd: str | None = None,
    ) -> Any:
        params = {
            "threadId": thread_id,
            "input": build_turn_input(text, images, skills),
            **_compact(
                effort=effort,
                summary=summary,
                cwd=cwd,
                approvalPolicy=approval_policy,
                sandboxPolicy=sandbox_policy,
                model=model,
            ),
        }
        return self.process.call("turn/start", params)

    def interrupt_turn(self, thread_id: str, turn_id: str | None = None) -> None:
        self.process.call("turn/interrupt", _compact(threadId=thread_id, turnId=turn_id))
        logger.info(f"Interrupted turn on thread {thread_id}")

    # ── Account ─────────────────────────────────────────────

    def get_account(self) -> Any:
        return self.process.call("account/read", {})

    def start_login(self, method: str) -> Any:
        return self.process.call("account/login/start", {"method": method})

    def logout(self) -> None:
        self.process.call("account/logout", {})

    # ── Approvals ───────────────────────────────────────────

    def respond_to_approval(
        self,
        request_id: int,
        decision: str,
        execpolicy_amendment: Any = None,
    ) -> None:
        """
        Answer an approval request.

        request_id is the JSON-RPC id of the app-server's request (the
        "_requestId" field of the event payload). The answer is a response
        carrying that id, not a new call.
        """
        parsed = ApprovalDecision.parse(decision, execpolicy_amendment)
        self.process.respond(request_id, {"decision": parsed.to_wire()})
        logger.info(f"Responded to approval request {request_id}: {parsed.kind.value}")


def auto_decline(bus: EventBus, bridge: IpcBridge) -> Callable[[], None]:
    """
    Answer every approval request on bus with "decline".

    Handlers run on the reader thread and answer through this bridge's
    process only. Returns a callable that removes the subscriptions.
    """
    def decline(event: str, payload: Any) -> None:
        try:
            bridge.respond_to_approval(payload[REQUEST_ID_KEY], "decline")
        except BridgeError as e:
            logger.warning(f"Could not decline {event}: {e}")

    unsubscribers = [
        bus.subscribe(method_to_event(method), decline) for method in sorted(APPROVAL_METHODS)
    ]

    def unsubscribe() -> None:
        for remove in unsubscribers:
            remove()

    return unsubscribe
