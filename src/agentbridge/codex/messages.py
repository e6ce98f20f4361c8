"""Typed variants for frames received from the Codex app-server.

Each inbound JSON object is classified exactly once by ``decode_message``
and handled afterwards with ``match`` on the variant class.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from agentbridge.errors import ProtocolError

RequestId = int | str

_AGENT_MESSAGE_TYPES = frozenset({"agent_message", "agentMessage"})
_DELTA_NOTIFICATIONS = {
    "item/agentMessage/delta": "agent_message",
    "item/commandExecution/outputDelta": "command_output",
}


# ------------------------------------------------------------------ #
# Responses to our requests
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class Response:
    id: RequestId
    result: Any


@dataclass(frozen=True)
class ErrorResponse:
    id: RequestId
    message: str
    code: int | None = None


# ------------------------------------------------------------------ #
# Server-initiated requests (must be answered)
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class ExecApprovalRequest:
    id: RequestId
    command: list[str]
    cwd: str
    reason: str | None = None


@dataclass(frozen=True)
class PatchApprovalRequest:
    id: RequestId
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UnknownServerRequest:
    id: RequestId
    method: str
    params: dict[str, Any] = field(default_factory=dict)


# ------------------------------------------------------------------ #
# Notifications
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class TurnStarted:
    turn_id: str | None


@dataclass(frozen=True)
class TurnCompleted:
    turn_id: str
    turn: dict[str, Any]

    @property
    def agent_text(self) -> str | None:
        """Text of the last agent-authored message among the turn's items."""
        text: str | None = None
        items = self.turn.get("items")
        if not isinstance(items, list):
            return None
        for item in items:
            if not isinstance(item, dict):
                continue
            if item.get("type") in _AGENT_MESSAGE_TYPES and isinstance(
                item.get("text"), str
            ):
                text = item["text"]
        return text


@dataclass(frozen=True)
class OutputDelta:
    source: str
    delta: str


@dataclass(frozen=True)
class OtherNotification:
    method: str
    params: dict[str, Any] = field(default_factory=dict)


InboundMessage = (
    Response
    | ErrorResponse
    | ExecApprovalRequest
    | PatchApprovalRequest
    | UnknownServerRequest
    | TurnStarted
    | TurnCompleted
    | OutputDelta
    | OtherNotification
)


def decode_message(doc: dict[str, Any]) -> InboundMessage:
    """Classify one JSON-RPC style envelope.

    * ``method`` and ``id``: server request.
    * ``method`` without ``id``: notification.
    * ``id`` with ``result`` or ``error``: response.

    Raises:
        ProtocolError: The envelope fits none of the shapes above.
    """
    method = doc.get("method")
    msg_id = doc.get("id")
    params = doc.get("params")
    if not isinstance(params, dict):
        params = {}

    if isinstance(method, str) and method:
        if msg_id is not None:
            return _decode_server_request(msg_id, method, params)
        return _decode_notification(method, params)

    if msg_id is not None:
        if "error" in doc:
            error = doc.get("error")
            if isinstance(error, dict):
                code = error.get("code")
                return ErrorResponse(
                    id=msg_id,
                    message=str(error.get("message") or "Codex request failed"),
                    code=code if isinstance(code, int) else None,
                )
            return ErrorResponse(id=msg_id, message=str(error or "Codex request failed"))
        if "result" in doc:
            return Response(id=msg_id, result=doc.get("result"))

    msg = f"Unrecognised Codex frame: {str(doc)[:200]}"
    raise ProtocolError(msg)


def _decode_server_request(
    msg_id: RequestId, method: str, params: dict[str, Any]
) -> InboundMessage:
    match method:
        case "execCommandApproval":
            command = params.get("command")
            if isinstance(command, str):
                argv = [command]
            elif isinstance(command, list):
                argv = [str(part) for part in command]
            else:
                argv = []
            reason = params.get("reason")
            return ExecApprovalRequest(
                id=msg_id,
                command=argv,
                cwd=str(params.get("cwd") or ""),
                reason=reason if isinstance(reason, str) else None,
            )
        case "applyPatchApproval":
            return PatchApprovalRequest(id=msg_id, params=params)
        case _:
            return UnknownServerRequest(id=msg_id, method=method, params=params)


def _turn_of(params: dict[str, Any]) -> dict[str, Any]:
    turn = params.get("turn")
    return turn if isinstance(turn, dict) else {}


def _decode_notification(method: str, params: dict[str, Any]) -> InboundMessage:
    match method:
        case "turn/started":
            turn_id = _turn_of(params).get("id")
            return TurnStarted(turn_id=str(turn_id) if turn_id is not None else None)
        case "turn/completed":
            turn = _turn_of(params)
            turn_id = turn.get("id")
            if turn_id is None:
                return OtherNotification(method=method, params=params)
            return TurnCompleted(turn_id=str(turn_id), turn=turn)
        case _ if method in _DELTA_NOTIFICATIONS:
            delta = params.get("delta")
            return OutputDelta(
                source=_DELTA_NOTIFICATIONS[method],
                delta=delta if isinstance(delta, str) else "",
            )
        case _:
            return OtherNotification(method=method, params=params)
