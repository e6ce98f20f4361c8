"""Trae agent backend: MCP tool server with a one-shot CLI fallback."""

from agentbridge.trae.agent import TraeAgent, parse_waiting_session, resolve_trae_cli
from agentbridge.trae.cli_executor import CLIExecutor, build_trajectory_path
from agentbridge.trae.sanitize import sanitize_output
from agentbridge.trae.tool_client import ToolSessionClient
from agentbridge.trae.trace import (
    TraceRecord,
    parse_tool_calls_from_output,
    parse_trace,
    parse_trace_file,
)

__all__ = [
    "CLIExecutor",
    "ToolSessionClient",
    "TraceRecord",
    "TraeAgent",
    "build_trajectory_path",
    "parse_tool_calls_from_output",
    "parse_trace",
    "parse_trace_file",
    "parse_waiting_session",
    "resolve_trae_cli",
    "sanitize_output",
]
