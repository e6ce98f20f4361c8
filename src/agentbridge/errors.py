"""Error taxonomy shared by every bridge component."""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for all bridge failures.

    ``kind`` is a stable short identifier copied into
    ``AgentResponse.error_kind`` when the failure is reported to callers.
    """

    kind = "error"


class SpawnError(BridgeError):
    """The agent process could not be started."""

    kind = "spawn"


class ResolutionError(SpawnError):
    """No usable executable was found (surfaces at spawn time)."""

    kind = "resolution"


class ProtocolError(BridgeError):
    """A frame read from an agent process was not a valid JSON object."""

    kind = "protocol"


class TransportError(BridgeError):
    """Writing to the agent process failed (stdin closed or broken)."""

    kind = "transport"


class RpcError(BridgeError):
    """The remote agent answered a request with an ``error`` payload."""

    kind = "rpc"

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class AgentUnavailableError(BridgeError):
    """Readiness or handshake failed; the backend cannot serve requests."""

    kind = "unavailable"


class EmptyResultError(BridgeError):
    """The protocol returned no usable text."""

    kind = "empty_result"


class ToolCallError(BridgeError):
    """A tool invocation failed or reported an error result."""

    kind = "tool_call"


class BridgeTimeoutError(BridgeError, TimeoutError):
    """An inactivity or overall time limit expired."""

    kind = "timeout"


class DisposedError(BridgeError):
    """The operation was attempted on, or interrupted by, a torn-down connection."""

    kind = "disposed"


class InvalidDecisionError(BridgeError):
    """An approval decision outside the closed set the app-server accepts."""

    kind = "invalid_decision"
