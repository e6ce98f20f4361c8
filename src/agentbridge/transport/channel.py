"""Newline-delimited JSON framing over subprocess pipes."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from typing import Any, Protocol

from agentbridge.errors import ProtocolError, TransportError

logger = logging.getLogger(__name__)

#: Bytes requested per read from the subprocess stdout.
_READ_CHUNK = 65_536

#: Maximum bytes per JSONL line before the line is discarded (1 MB).
_MAX_LINE_BYTES = 1_048_576


class ByteReader(Protocol):
    """The subset of ``asyncio.StreamReader`` the channel reads with."""

    async def read(self, n: int = -1) -> bytes: ...


class ByteWriter(Protocol):
    """The subset of ``asyncio.StreamWriter`` the channel writes with."""

    def write(self, data: bytes) -> None: ...

    def is_closing(self) -> bool: ...

    async def drain(self) -> None: ...


class LineDecoder:
    """Split an arbitrarily chunked byte stream into complete lines.

    Partial lines are buffered until their terminating newline arrives.
    Lines longer than *max_line_bytes* are dropped whole.
    """

    def __init__(self, max_line_bytes: int = _MAX_LINE_BYTES) -> None:
        self._buffer = bytearray()
        self._max_line_bytes = max_line_bytes
        self._discarding = False

    def feed(self, data: bytes) -> list[bytes]:
        """Add *data* and return every line it completed (without ``\\n``)."""
        lines: list[bytes] = []
        self._buffer.extend(data)
        while True:
            index = self._buffer.find(b"\n")
            if index < 0:
                break
            line = bytes(self._buffer[:index])
            del self._buffer[: index + 1]
            if self._discarding:
                self._discarding = False
                continue
            if len(line) > self._max_line_bytes:
                logger.warning("line exceeds %d bytes, discarding", self._max_line_bytes)
                continue
            lines.append(line.rstrip(b"\r"))
        if len(self._buffer) > self._max_line_bytes:
            logger.warning("line exceeds %d bytes, discarding", self._max_line_bytes)
            self._buffer.clear()
            self._discarding = True
        return lines

    def flush(self) -> bytes | None:
        """Return the unterminated tail at end of stream, if any."""
        tail = bytes(self._buffer)
        self._buffer.clear()
        if self._discarding:
            self._discarding = False
            return None
        return tail if tail.strip() else None


def decode_document(line: bytes) -> dict[str, Any]:
    """Parse one line as a JSON object.

    Raises:
        ProtocolError: The line is not valid JSON or not an object.
    """
    text = line.decode("utf-8", errors="replace").strip()
    try:
        doc = json.loads(text)
    except json.JSONDecodeError as exc:
        msg = f"Malformed JSON frame: {text[:200]}"
        raise ProtocolError(msg) from exc
    if not isinstance(doc, dict):
        msg = f"Expected a JSON object frame, got {type(doc).__name__}"
        raise ProtocolError(msg)
    return doc


class JsonLineChannel:
    """Bidirectional JSONL channel bound to a process's stdout and stdin.

    ``receive()`` returns one document per call and ``None`` at end of
    stream.  A malformed line raises ``ProtocolError`` for that call only;
    the next call continues with the following line.
    """

    def __init__(self, reader: ByteReader, writer: ByteWriter | None, name: str) -> None:
        self._reader = reader
        self._writer = writer
        self._name = name
        self._decoder = LineDecoder()
        self._lines: deque[bytes] = deque()
        self._eof = False
        self._write_lock = asyncio.Lock()

    @property
    def at_eof(self) -> bool:
        return self._eof and not self._lines

    async def receive(self) -> dict[str, Any] | None:
        """Return the next JSON document, or ``None`` once the stream ends."""
        while True:
            while self._lines:
                line = self._lines.popleft()
                if line.strip():
                    return decode_document(line)
            if self._eof:
                return None
            chunk = await self._reader.read(_READ_CHUNK)
            if not chunk:
                self._eof = True
                tail = self._decoder.flush()
                if tail is not None:
                    self._lines.append(tail)
                continue
            self._lines.extend(self._decoder.feed(chunk))

    async def send(self, document: dict[str, Any]) -> None:
        """Serialize *document* as one line on the process's stdin.

        Raises:
            TransportError: stdin is closed or the write failed.
        """
        writer = self._writer
        if writer is None or writer.is_closing():
            msg = f"{self._name} stdin is not writable"
            raise TransportError(msg)
        payload = (json.dumps(document, separators=(",", ":")) + "\n").encode()
        async with self._write_lock:
            try:
                writer.write(payload)
                await writer.drain()
            except (BrokenPipeError, ConnectionResetError, OSError) as exc:
                msg = f"Failed to write to {self._name}: {exc}"
                raise TransportError(msg) from exc
