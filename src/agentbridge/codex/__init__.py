"""Codex app-server backend (JSON-RPC over stdio)."""

from agentbridge.codex.client import (
    CodexClient,
    ConnectionState,
    resolve_codex_executable,
)
from agentbridge.codex.messages import InboundMessage, decode_message

__all__ = [
    "CodexClient",
    "ConnectionState",
    "InboundMessage",
    "decode_message",
    "resolve_codex_executable",
]
