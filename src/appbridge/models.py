"""
Data models for the app-server bridge.

Enums and dataclasses shared by the transport, the manager and the
IPC facade.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import InvalidDecision


# ── Enums ────────────────────────────────────────────────────

class ProcessState(str, Enum):
    """Lifecycle of one app-server process."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"


class ApprovalDecisionKind(str, Enum):
    ACCEPT = "accept"
    ACCEPT_FOR_SESSION = "acceptForSession"
    ACCEPT_WITH_EXECPOLICY_AMENDMENT = "acceptWithExecpolicyAmendment"
    DECLINE = "decline"
    CANCEL = "cancel"


# ── Process lifecycle ────────────────────────────────────────

@dataclass(frozen=True)
class ExitStatus:
    """What shutdown observed: the exit code and whether a kill was needed."""
    returncode: int | None
    forced: bool = False


@dataclass
class ServerStatus:
    is_running: bool
    version: str | None = None


# ── Approvals ────────────────────────────────────────────────

@dataclass
class ExecPolicyAmendment:
    """Command prefix the app-server should persist in its allow-list."""
    command: list[str] = field(default_factory=list)

    @classmethod
    def from_value(cls, value: Any) -> ExecPolicyAmendment:
        if isinstance(value, ExecPolicyAmendment):
            return value
        if isinstance(value, dict):
            value = value.get("command")
        if not isinstance(value, list) or not all(isinstance(c, str) for c in value):
            raise InvalidDecision("execpolicy amendment must be a list of command strings")
        return cls(command=list(value))

    def to_dict(self) -> dict[str, Any]:
        return {"command": list(self.command)}


@dataclass
class ApprovalDecision:
    """
    A host decision on an approval request.

    Unit decisions serialize as a bare string ("accept"); the amendment
    decision serializes as a single-key object carrying the amendment.
    """
    kind: ApprovalDecisionKind
    execpolicy_amendment: ExecPolicyAmendment | None = None

    @classmethod
    def parse(
        cls,
        decision: str | ApprovalDecisionKind,
        execpolicy_amendment: Any = None,
    ) -> ApprovalDecision:
        try:
            kind = ApprovalDecisionKind(decision)
        except ValueError:
            raise InvalidDecision(f"Invalid decision: {decision}") from None

        if kind is ApprovalDecisionKind.ACCEPT_WITH_EXECPOLICY_AMENDMENT:
            if execpolicy_amendment is None:
                raise InvalidDecision("Missing execpolicy amendment")
            return cls(kind, ExecPolicyAmendment.from_value(execpolicy_amendment))

        return cls(kind)

    def to_wire(self) -> str | dict[str, Any]:
        if self.kind is ApprovalDecisionKind.ACCEPT_WITH_EXECPOLICY_AMENDMENT:
            return {
                self.kind.value: {
                    "execpolicy_amendment": self.execpolicy_amendment.to_dict(),
                }
            }
        return self.kind.value
