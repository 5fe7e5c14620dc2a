"""
Line codec for JSON-RPC over stdio.

One JSON object per line in both directions. Outbound messages are built
from the dataclasses below and serialized with to_json(); inbound lines
go through decode(), which classifies them by field presence:

    id + method      -> ServerRequest (the app-server expects a reply)
    id, no method    -> Response
    method, no id    -> Notification
    anything else    -> Malformed
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union

JSONRPC_VERSION = "2.0"

# JSON-RPC 2.0 reserved codes
INTERNAL_ERROR = -32603
METHOD_NOT_FOUND = -32601

RequestId = Union[int, str]


def _dumps(payload: dict[str, Any]) -> str:
    return json.dumps({"jsonrpc": JSONRPC_VERSION, **payload})


@dataclass
class RpcErrorObject:
    code: int
    message: str
    data: Any = None

    @classmethod
    def from_value(cls, value: Any) -> RpcErrorObject:
        """Coerce whatever arrived in the error slot into code + message."""
        if not isinstance(value, dict):
            return cls(code=INTERNAL_ERROR, message=str(value))
        code = value.get("code")
        if not isinstance(code, int) or isinstance(code, bool):
            code = INTERNAL_ERROR
        return cls(
            code=code,
            message=str(value.get("message", "Unknown error")),
            data=value.get("data"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            out["data"] = self.data
        return out


# ── Outbound ─────────────────────────────────────────────────

@dataclass
class Request:
    """Bridge-issued call; id comes from the supervisor's counter."""
    id: int
    method: str
    params: Any = None

    def to_json(self) -> str:
        return _dumps({
            "id": self.id,
            "method": self.method,
            "params": {} if self.params is None else self.params,
        })


@dataclass
class Notification:
    """One-way message. Used both for outbound notifications and inbound ones."""
    method: str
    params: Any = None

    def to_json(self) -> str:
        return _dumps({
            "method": self.method,
            "params": {} if self.params is None else self.params,
        })


@dataclass
class Response:
    """Answer to a request. Inbound for bridge calls, outbound for server requests."""
    id: RequestId
    result: Any = None
    error: RpcErrorObject | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_json(self) -> str:
        if self.error is not None:
            return _dumps({"id": self.id, "error": self.error.to_dict()})
        return _dumps({"id": self.id, "result": self.result})


# ── Inbound only ─────────────────────────────────────────────

@dataclass
class ServerRequest:
    """A call issued by the app-server; its id lives in the server's numbering space."""
    id: RequestId
    method: str
    params: Any = None


@dataclass
class Malformed:
    line: str
    reason: str


Message = Union[Response, ServerRequest, Notification, Malformed]


def _is_request_id(value: Any) -> bool:
    return isinstance(value, (int, str)) and not isinstance(value, bool)


def decode(line: str) -> Message:
    """Decode one line of app-server output into a typed message."""
    text = line.strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        return Malformed(line=text, reason=f"invalid JSON: {e}")

    if not isinstance(data, dict):
        return Malformed(line=text, reason=f"expected object, got {type(data).__name__}")

    raw_id = data.get("id")
    raw_method = data.get("method")

    if raw_id is not None and not _is_request_id(raw_id):
        return Malformed(line=text, reason=f"invalid id: {raw_id!r}")
    if raw_method is not None and not isinstance(raw_method, str):
        return Malformed(line=text, reason=f"invalid method: {raw_method!r}")

    has_id = raw_id is not None
    has_method = raw_method is not None

    if has_id and has_method:
        return ServerRequest(id=raw_id, method=raw_method, params=data.get("params"))

    if has_id:
        error = data.get("error")
        return Response(
            id=raw_id,
            result=data.get("result"),
            error=RpcErrorObject.from_value(error) if error is not None else None,
        )

    if has_method:
        return Notification(method=raw_method, params=data.get("params"))

    return Malformed(line=text, reason="neither id nor method present")
