"""Session recorder: append-only JSONL writer for bridge events."""

from __future__ import annotations

import threading
import time
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Literal

from agentbridge.session.models import SessionEndEvent, SessionEvent, SessionStartEvent

EndReason = Literal["complete", "user_shutdown", "error"]


class SessionRecorder:
    """Records bridge events to an append-only JSONL file.

    Thread-safe: all writes are serialized through a ``threading.Lock``.
    Crash-safe: the file is flushed after every event.
    """

    def __init__(self, backend: str, sessions_dir: Path | None = None) -> None:
        self._lock = threading.Lock()
        self._seq = 0
        self._closed = False
        self._start_ns = time.monotonic_ns()
        self._session_id = uuid.uuid4().hex[:12]

        if sessions_dir is None:
            sessions_dir = Path("sessions")
        sessions_dir.mkdir(parents=True, exist_ok=True)

        date_str = datetime.now(tz=UTC).strftime("%Y-%m-%d")
        self._session_file = sessions_dir / f"{date_str}_bridge_{self._session_id}.jsonl"

        self._fh: IO[str] | None = self._session_file.open("a", encoding="utf-8")
        try:
            self.record(
                SessionStartEvent(
                    ts="",  # placeholder, record() overwrites
                    seq=0,
                    session_id=self._session_id,
                    backend=backend,
                )
            )
        except Exception:
            self._fh.close()
            raise

    @property
    def session_id(self) -> str:
        """Unique session identifier (12-char hex)."""
        return self._session_id

    @property
    def session_file(self) -> Path:
        """Path to the JSONL file."""
        return self._session_file

    @property
    def event_count(self) -> int:
        """Number of events recorded so far."""
        return self._seq

    def record(self, event: SessionEvent) -> None:
        """Write *event* to the JSONL file, stamping ``ts`` and ``seq``.

        Silently drops events after the recorder has been closed.
        """
        with self._lock:
            if self._closed or self._fh is None:
                return
            event.seq = self._seq
            event.ts = _iso_now()
            self._seq += 1
            self._fh.write(event.model_dump_json(by_alias=True) + "\n")
            self._fh.flush()

    def end(self, reason: EndReason) -> None:
        """Write a ``session_end`` event and close the file. Idempotent."""
        if self._closed:
            return
        duration_ms = int((time.monotonic_ns() - self._start_ns) / 1_000_000)
        self.record(SessionEndEvent(ts="", seq=0, reason=reason, duration_ms=duration_ms))
        self.close()

    def close(self) -> None:
        """Close the file **without** writing a ``session_end`` event."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._fh is not None and not self._fh.closed:
                self._fh.close()


def _iso_now() -> str:
    """Return the current UTC time as ISO 8601 with milliseconds."""
    return datetime.now(tz=UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
