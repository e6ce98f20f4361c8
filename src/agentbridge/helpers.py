"""Shared helper functions for backend implementations."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable

from agentbridge.constants import STDERR_TAIL_LINES
from agentbridge.session.models import ErrorEvent
from agentbridge.session.recorder import SessionRecorder


def format_stderr_preview(
    stderr_text: str | Iterable[str], max_lines: int = STDERR_TAIL_LINES
) -> str:
    """Extract and format the last N non-empty lines from stderr output."""
    lines = stderr_text.split("\n") if isinstance(stderr_text, str) else stderr_text
    last = deque((line.rstrip() for line in lines if line.strip()), maxlen=max_lines)
    return "\n  ".join(last)


def record_error(
    recorder: SessionRecorder | None,
    component: str,
    error_msg: str,
    context: str = "subprocess",
    logger: logging.Logger | None = None,
) -> None:
    """Log and record an error event in one call."""
    if logger:
        logger.error("%s: %s", component, error_msg)
    if recorder is None:
        return
    recorder.record(
        ErrorEvent(
            ts="",
            seq=0,
            component=component,
            error=error_msg,
            context=context,
        )
    )
