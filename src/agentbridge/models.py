"""Value types exchanged between the bridge and its callers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Backend(str, Enum):
    """The two interchangeable agent backends."""

    CODEX = "codex"
    TRAE = "trae"

    @property
    def other(self) -> Backend:
        return Backend.TRAE if self is Backend.CODEX else Backend.CODEX


class ApprovalKind(str, Enum):
    """What a server-initiated approval request is asking about."""

    COMMAND = "command"
    PATCH = "patch"
    OTHER = "other"


class ApprovalDecision(str, Enum):
    """Closed set of decisions accepted by the Codex app-server."""

    APPROVED = "approved"
    APPROVED_FOR_SESSION = "approved_for_session"
    DENIED = "denied"
    ABORT = "abort"


@dataclass
class ApprovalRequest:
    """A proposed command execution awaiting (or implying) a decision.

    ``implicit`` requests come from the Trae CLI path, where the command
    already ran; they are informational and expect no decision.
    """

    request_id: int | str
    command: list[str]
    cwd: str
    kind: ApprovalKind = ApprovalKind.COMMAND
    reason: str | None = None
    implicit: bool = False

    @property
    def command_line(self) -> str:
        return " ".join(self.command)


@dataclass
class ToolCall:
    """A single tool invocation reported by an agent."""

    name: str
    parameters: Any = field(default_factory=dict)
    result: str | None = None
    call_id: str | None = None


@dataclass
class TurnResult:
    """Outcome of one Codex turn."""

    turn_id: str
    text: str
    raw_turn: dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentResponse:
    """Uniform result returned by every bridge operation.

    ``mode`` names the path that produced the response:
    ``"app-server"`` (Codex), ``"mcp"`` (Trae tool server) or ``"cli"``
    (Trae one-shot CLI).
    """

    success: bool
    content: str
    error: str | None = None
    tool_calls: list[ToolCall] | None = None
    mode: str | None = None
    backend: Backend | None = None
    error_kind: str | None = None

    @classmethod
    def failed(
        cls,
        error: str,
        *,
        kind: str,
        content: str = "",
        mode: str | None = None,
        backend: Backend | None = None,
    ) -> AgentResponse:
        """Build a failure response carrying a human-readable *error*."""
        return cls(
            success=False,
            content=content,
            error=error,
            mode=mode,
            backend=backend,
            error_kind=kind,
        )
