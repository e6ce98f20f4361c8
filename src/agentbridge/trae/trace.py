"""Parse the trajectory (trace) file written by ``trae-cli run``."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agentbridge.models import ToolCall

logger = logging.getLogger(__name__)

_UNKNOWN_TOOL = "unknown_tool"

# "Tool: bash (ls -la)" lines in the simple console output.
_TOOL_LINE = re.compile(r"Tool: (\w+)\s*\(([^)]+)\)")


@dataclass
class TraceRecord:
    """Structured outcome of one CLI run, as recorded in its trace file."""

    success: bool | None = None
    final_result: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)


def parse_trace_file(path: Path) -> TraceRecord | None:
    """Read and parse a trace file.

    Returns ``None`` when the file is missing, unreadable, not JSON, or
    not a JSON object.  Never raises.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.debug("trae: cannot read trace %s: %s", path, exc)
        return None

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.debug("trae: trace %s is not valid JSON: %s", path, exc)
        return None
    if not isinstance(data, dict):
        logger.debug("trae: trace %s is not a JSON object", path)
        return None
    return parse_trace(data)


def parse_trace(data: dict[str, Any]) -> TraceRecord:
    """Build a TraceRecord from an already-decoded trace document.

    Tool calls and results may appear at the top level and inside each
    entry of ``agent_steps``; they are correlated through ``call_id``.
    """
    success = data.get("success")
    final_result = data.get("final_result")

    steps = [step for step in _list_of(data, "agent_steps") if isinstance(step, dict)]
    sources = [data, *steps]

    results: dict[str, Any] = {}
    for source in sources:
        for entry in _list_of(source, "tool_results"):
            if isinstance(entry, dict) and entry.get("call_id") is not None:
                results[str(entry["call_id"])] = entry.get("result")

    calls: list[ToolCall] = []
    for source in sources:
        for entry in _list_of(source, "tool_calls"):
            if not isinstance(entry, dict):
                continue
            call_id = str(entry["call_id"]) if entry.get("call_id") else None
            params = entry.get("arguments")
            if params is None:
                params = entry.get("parameters")
            result = results.get(call_id) if call_id else None
            calls.append(
                ToolCall(
                    name=str(entry.get("name") or _UNKNOWN_TOOL),
                    parameters=params if params is not None else {},
                    result=None if result is None else str(result),
                    call_id=call_id,
                )
            )

    return TraceRecord(
        success=success if isinstance(success, bool) else None,
        final_result=final_result if isinstance(final_result, str) else None,
        tool_calls=calls,
    )


def parse_tool_calls_from_output(output: str) -> list[ToolCall]:
    """Heuristically extract ``Tool: name (args)`` lines from raw output."""
    return [
        ToolCall(name=match.group(1), parameters=match.group(2), result="Executed")
        for match in _TOOL_LINE.finditer(output)
    ]


def _list_of(source: dict[str, Any], key: str) -> list[Any]:
    value = source.get(key)
    return value if isinstance(value, list) else []
