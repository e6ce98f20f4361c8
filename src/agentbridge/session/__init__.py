"""Session recording for bridge events."""

from agentbridge.session.models import (
    ApprovalDecidedEvent,
    ApprovalRequestedEvent,
    BackendFallbackEvent,
    ErrorEvent,
    RequestDoneEvent,
    RequestStartEvent,
    SessionEndEvent,
    SessionEvent,
    SessionStartEvent,
    StatusEvent,
    ToolCallEvent,
)
from agentbridge.session.recorder import EndReason, SessionRecorder

__all__ = [
    "ApprovalDecidedEvent",
    "ApprovalRequestedEvent",
    "BackendFallbackEvent",
    "EndReason",
    "ErrorEvent",
    "RequestDoneEvent",
    "RequestStartEvent",
    "SessionEndEvent",
    "SessionEvent",
    "SessionRecorder",
    "SessionStartEvent",
    "StatusEvent",
    "ToolCallEvent",
]
