"""Pydantic v2 models for bridge session events."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag


class _EventBase(BaseModel):
    """Common envelope fields shared by every session event."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    ts: str = Field(description="ISO 8601 timestamp with milliseconds")
    seq: int = Field(ge=0, description="Monotonic sequence number")


class SessionStartEvent(_EventBase):
    """Emitted once when the recorder opens."""

    type: Literal["session_start"] = "session_start"
    session_id: str = Field(description="Unique session identifier")
    backend: str = Field(description="Preferred backend at startup")


class SessionEndEvent(_EventBase):
    """Emitted once when the bridge is disposed."""

    type: Literal["session_end"] = "session_end"
    reason: Literal["complete", "user_shutdown", "error"] = Field(
        description="Why the session ended",
    )
    duration_ms: int = Field(description="Total session duration in milliseconds")


class RequestStartEvent(_EventBase):
    """Emitted when the bridge accepts a user message."""

    type: Literal["request_start"] = "request_start"
    backend: str = Field(description="Backend the request is attempted on first")
    working_directory: str = Field(description="Directory the agent works in")
    session: bool = Field(
        default=False, description="Whether the session-aware variant was used"
    )


class RequestDoneEvent(_EventBase):
    """Emitted when a user message has produced an ``AgentResponse``."""

    type: Literal["request_done"] = "request_done"
    backend: str | None = Field(description="Backend that produced the response")
    mode: str | None = Field(description="app-server, mcp or cli")
    success: bool = Field(description="Whether the response is a success")
    error_kind: str | None = Field(default=None, description="Failure kind")


class BackendFallbackEvent(_EventBase):
    """Emitted when a backend or path is skipped in favour of another."""

    type: Literal["backend_fallback"] = "backend_fallback"
    from_backend: str = Field(description="Backend or path that was unusable")
    to_backend: str = Field(description="Backend or path tried next")
    reason: str = Field(description="Why the fallback happened")


class ApprovalRequestedEvent(_EventBase):
    """Emitted when an agent asks to run a command."""

    type: Literal["approval_requested"] = "approval_requested"
    request_id: int | str = Field(description="Server-assigned request id")
    command: list[str] = Field(description="Proposed command argv")
    cwd: str = Field(description="Directory the command would run in")
    kind: str = Field(description="command, patch or other")
    implicit: bool = Field(default=False, description="Already executed by the CLI")


class ApprovalDecidedEvent(_EventBase):
    """Emitted when a decision is written back to the agent."""

    type: Literal["approval_decided"] = "approval_decided"
    request_id: int | str = Field(description="Server-assigned request id")
    decision: str = Field(description="Decision sent to the agent")
    automatic: bool = Field(
        default=False, description="Decided by policy rather than by the user"
    )


class ToolCallEvent(_EventBase):
    """Emitted for each tool invocation reported in a response."""

    type: Literal["tool_call"] = "tool_call"
    backend: str = Field(description="Backend that reported the call")
    tool: str = Field(description="Tool name")
    args: Any = Field(default=None, description="Tool arguments")
    result_size: int = Field(default=0, description="Size of the result text")


class StatusEvent(_EventBase):
    """Free-form status line from a backend."""

    type: Literal["status"] = "status"
    component: str = Field(description="Component reporting status")
    status: str = Field(description="Status message")


class ErrorEvent(_EventBase):
    """An error encountered during the session."""

    type: Literal["error"] = "error"
    component: str | None = Field(
        default=None,
        description="Component that hit the error (null for bridge-level errors)",
    )
    error: str = Field(description="Error description")
    context: str | None = Field(
        default=None,
        description="Error context: subprocess, handshake, approval, etc.",
    )


def _event_discriminator(v: Any) -> str:
    """Extract the discriminator value from raw data or a model instance."""
    if isinstance(v, dict):
        return str(v.get("type", ""))
    return str(getattr(v, "type", ""))


SessionEvent = Annotated[
    Annotated[SessionStartEvent, Tag("session_start")]
    | Annotated[SessionEndEvent, Tag("session_end")]
    | Annotated[RequestStartEvent, Tag("request_start")]
    | Annotated[RequestDoneEvent, Tag("request_done")]
    | Annotated[BackendFallbackEvent, Tag("backend_fallback")]
    | Annotated[ApprovalRequestedEvent, Tag("approval_requested")]
    | Annotated[ApprovalDecidedEvent, Tag("approval_decided")]
    | Annotated[ToolCallEvent, Tag("tool_call")]
    | Annotated[StatusEvent, Tag("status")]
    | Annotated[ErrorEvent, Tag("error")],
    Discriminator(_event_discriminator),
]
"""Discriminated union of all session event types."""
