"""Shared constants and type aliases for the agent bridge."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from agentbridge.models import ApprovalRequest

#: Identity announced to both agent servers during the handshake.
CLIENT_NAME = "agentbridge"
CLIENT_TITLE = "Agent Bridge"
CLIENT_VERSION = "0.1.0"

#: Env var overriding the Codex binary location.
CODEX_PATH_ENV = "AGENTBRIDGE_CODEX_PATH"

#: Env var overriding the trae-cli location.
TRAE_CLI_PATH_ENV = "AGENTBRIDGE_TRAE_CLI_PATH"

#: Env var tagging spawned processes with the backend that launched them.
AGENT_TAG_ENV = "AGENTBRIDGE_AGENT"

#: Env var enabling raw CLI debug echo to the progress callback.
DEBUG_ENV = "AGENTBRIDGE_DEBUG"

#: Fixed variables that keep Python-based agents emitting UTF-8.
UTF8_ENV = {"PYTHONIOENCODING": "utf-8", "PYTHONUTF8": "1"}

#: Text used when a completed turn carries no agent-authored message.
NO_RESPONSE_TEXT = "(no response)"

#: Number of stderr lines kept for diagnostics.
STDERR_TAIL_LINES = 6

#: Callback receiving incremental output text.
ProgressCallback = Callable[[str], Awaitable[None]]

#: Callback receiving approval requests for rendering.
ApprovalCallback = Callable[["ApprovalRequest"], Awaitable[None]]

#: Callback receiving backend status lines.
StatusCallback = Callable[[str], Awaitable[None]]
