"""Tests for the newline-delimited JSON channel."""

from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from agentbridge.errors import ProtocolError, TransportError
from agentbridge.transport.channel import JsonLineChannel, LineDecoder, decode_document

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


class ChunkedReader:
    """Reader that returns pre-split chunks, then EOF."""

    def __init__(self, chunks: list[bytes]) -> None:
        self._chunks = list(chunks)

    async def read(self, n: int = -1) -> bytes:
        await asyncio.sleep(0)
        if not self._chunks:
            return b""
        return self._chunks.pop(0)


def _make_writer(closing: bool = False) -> MagicMock:
    writer = MagicMock()
    writer.write = MagicMock()
    writer.drain = AsyncMock()
    writer.is_closing = MagicMock(return_value=closing)
    return writer


async def _drain(channel: JsonLineChannel) -> list[dict[str, Any]]:
    docs: list[dict[str, Any]] = []
    while True:
        doc = await channel.receive()
        if doc is None:
            return docs
        docs.append(doc)


_DOCS: list[dict[str, Any]] = [
    {"id": 1, "result": {"ok": True}},
    {"method": "turn/started", "params": {"turn": {"id": "t1"}}},
    {"method": "note", "params": {"text": "héllo ☃"}},
]


def _encoded() -> bytes:
    return b"".join(json.dumps(d).encode() + b"\n" for d in _DOCS)


# ------------------------------------------------------------------ #
# LineDecoder
# ------------------------------------------------------------------ #


class TestLineDecoder:
    def test_partial_line_buffered_until_newline(self) -> None:
        decoder = LineDecoder()
        assert decoder.feed(b'{"a":') == []
        assert decoder.feed(b'1}\n{"b"') == [b'{"a":1}']
        assert decoder.feed(b":2}\n") == [b'{"b":2}']

    def test_crlf_stripped(self) -> None:
        decoder = LineDecoder()
        assert decoder.feed(b'{"a":1}\r\n') == [b'{"a":1}']

    def test_flush_returns_unterminated_tail(self) -> None:
        decoder = LineDecoder()
        decoder.feed(b'{"a":1}')
        assert decoder.flush() == b'{"a":1}'
        assert decoder.flush() is None

    def test_overlong_line_discarded(self) -> None:
        decoder = LineDecoder(max_line_bytes=8)
        assert decoder.feed(b"x" * 20) == []
        assert decoder.feed(b"yyy\nok\n") == [b"ok"]


# ------------------------------------------------------------------ #
# decode_document
# ------------------------------------------------------------------ #


class TestDecodeDocument:
    def test_object(self) -> None:
        assert decode_document(b'{"id": 3}') == {"id": 3}

    def test_malformed_raises(self) -> None:
        with pytest.raises(ProtocolError):
            decode_document(b"{not json")

    def test_non_object_raises(self) -> None:
        with pytest.raises(ProtocolError, match="JSON object"):
            decode_document(b"[1, 2]")


# ------------------------------------------------------------------ #
# JsonLineChannel
# ------------------------------------------------------------------ #


class TestReceive:
    async def test_single_chunk(self) -> None:
        channel = JsonLineChannel(ChunkedReader([_encoded()]), None, "test")
        assert await _drain(channel) == _DOCS

    @pytest.mark.parametrize("size", [1, 2, 3, 7, 16, 64])
    async def test_any_chunking_reconstructs_documents(self, size: int) -> None:
        data = _encoded()
        chunks = [data[i : i + size] for i in range(0, len(data), size)]
        channel = JsonLineChannel(ChunkedReader(chunks), None, "test")
        assert await _drain(channel) == _DOCS

    async def test_line_split_across_two_chunks(self) -> None:
        line = json.dumps(_DOCS[0]).encode() + b"\n"
        half = len(line) // 2
        channel = JsonLineChannel(ChunkedReader([line[:half], line[half:]]), None, "test")
        assert await channel.receive() == _DOCS[0]
        assert await channel.receive() is None
        assert channel.at_eof

    async def test_blank_lines_skipped(self) -> None:
        channel = JsonLineChannel(ChunkedReader([b'\n\n{"a":1}\n\n']), None, "test")
        assert await _drain(channel) == [{"a": 1}]

    async def test_malformed_line_does_not_end_channel(self) -> None:
        reader = ChunkedReader([b'{"a":1}\ngarbage\n{"b":2}\n'])
        channel = JsonLineChannel(reader, None, "test")
        assert await channel.receive() == {"a": 1}
        with pytest.raises(ProtocolError):
            await channel.receive()
        assert await channel.receive() == {"b": 2}
        assert await channel.receive() is None

    async def test_unterminated_final_line_delivered(self) -> None:
        channel = JsonLineChannel(ChunkedReader([b'{"a":1}\n{"b":2}']), None, "test")
        assert await _drain(channel) == [{"a": 1}, {"b": 2}]


class TestSend:
    async def test_writes_one_compact_line(self) -> None:
        writer = _make_writer()
        channel = JsonLineChannel(ChunkedReader([]), writer, "test")
        await channel.send({"id": 1, "method": "initialize"})
        writer.write.assert_called_once_with(b'{"id":1,"method":"initialize"}\n')
        writer.drain.assert_awaited_once()

    async def test_closing_writer_raises(self) -> None:
        channel = JsonLineChannel(ChunkedReader([]), _make_writer(closing=True), "test")
        with pytest.raises(TransportError, match="not writable"):
            await channel.send({"id": 1})

    async def test_missing_writer_raises(self) -> None:
        channel = JsonLineChannel(ChunkedReader([]), None, "test")
        with pytest.raises(TransportError):
            await channel.send({"id": 1})

    async def test_broken_pipe_raises_transport_error(self) -> None:
        writer = _make_writer()
        writer.drain = AsyncMock(side_effect=BrokenPipeError("gone"))
        channel = JsonLineChannel(ChunkedReader([]), writer, "test")
        with pytest.raises(TransportError, match="gone"):
            await channel.send({"id": 1})
