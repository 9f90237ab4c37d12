"""Tests for SSE frame decoding (conduit/api/frames.py)."""

import json

import pytest

from conduit.api.cancellation import CancelToken
from conduit.api.frames import FrameDecoder, iter_chunks
from conduit.errors import ProviderStreamError, RunCancelled
from tests.conftest import content_chunk, sse


async def _source(*parts: bytes):
    for part in parts:
        yield part


def _texts(chunks) -> list[str]:
    return [c.choices[0].delta.content for c in chunks]


# ---------------------------------------------------------------------------
# FrameDecoder
# ---------------------------------------------------------------------------


class TestFrameDecoder:
    def test_single_frame(self):
        decoder = FrameDecoder()
        chunks = decoder.feed(sse(content_chunk("hi"), done=False))
        assert _texts(chunks) == ["hi"]

    def test_byte_at_a_time(self):
        """Fragment boundaries do not change the decoded sequence."""
        body = sse(content_chunk("one"), content_chunk("two"), content_chunk("three"))
        decoder = FrameDecoder()
        chunks = []
        for i in range(len(body)):
            chunks.extend(decoder.feed(body[i:i + 1]))
        chunks.extend(decoder.flush())
        assert _texts(chunks) == ["one", "two", "three"]

    def test_multibyte_character_split(self):
        body = sse(content_chunk("héllo wörld"), done=False)
        split = body.index("é".encode()) + 1  # inside the two-byte sequence
        decoder = FrameDecoder()
        chunks = decoder.feed(body[:split]) + decoder.feed(body[split:])
        assert _texts(chunks) == ["héllo wörld"]

    def test_partial_line_held_back(self):
        line = f"data: {json.dumps(content_chunk('x'))}".encode()
        decoder = FrameDecoder()
        assert decoder.feed(line) == []
        assert _texts(decoder.feed(b"\n")) == ["x"]

    def test_crlf_framing(self):
        body = f"data: {json.dumps(content_chunk('crlf'))}\r\n\r\n".encode()
        assert _texts(FrameDecoder().feed(body)) == ["crlf"]

    def test_comments_and_event_lines_ignored(self):
        body = (
            b": OPENROUTER PROCESSING\n\n"
            b"event: message\n"
            + sse(content_chunk("after"), done=False)
        )
        decoder = FrameDecoder()
        assert _texts(decoder.feed(body)) == ["after"]
        assert decoder.skipped == 0

    def test_done_sentinel_not_yielded(self):
        body = sse(content_chunk("a")) + sse(content_chunk("b"), done=False)
        decoder = FrameDecoder()
        assert _texts(decoder.feed(body)) == ["a", "b"]

    def test_malformed_json_skipped_and_counted(self):
        body = (
            sse(content_chunk("before"), done=False)
            + b"data: {not json\n\n"
            + sse(content_chunk("after"), done=False)
        )
        decoder = FrameDecoder()
        assert _texts(decoder.feed(body)) == ["before", "after"]
        assert decoder.skipped == 1

    def test_non_object_payload_skipped(self):
        decoder = FrameDecoder()
        assert decoder.feed(b"data: [1, 2]\n\n") == []
        assert decoder.skipped == 1

    def test_schema_mismatch_skipped(self):
        decoder = FrameDecoder()
        assert decoder.feed(b'data: {"choices": "nope"}\n\n') == []
        assert decoder.skipped == 1

    def test_unknown_fields_tolerated(self):
        payload = {**content_chunk("x"), "system_fingerprint": "fp", "object": "chunk"}
        assert _texts(FrameDecoder().feed(sse(payload, done=False))) == ["x"]

    def test_error_frame_raises(self):
        body = sse({"error": {"code": 502, "message": "upstream overloaded"}}, done=False)
        with pytest.raises(ProviderStreamError) as exc_info:
            FrameDecoder().feed(body)
        assert exc_info.value.status_code == 502
        assert "upstream overloaded" in str(exc_info.value)

    def test_error_after_chunks_held_back(self):
        body = sse(content_chunk("partial"), {"error": {"message": "cut off"}}, done=False)
        decoder = FrameDecoder()
        assert _texts(decoder.feed(body)) == ["partial"]
        with pytest.raises(ProviderStreamError):
            decoder.feed(b"")

    def test_residual_parsed_on_flush(self):
        line = f"data: {json.dumps(content_chunk('tail'))}".encode()
        decoder = FrameDecoder()
        assert decoder.feed(line) == []
        assert _texts(decoder.flush()) == ["tail"]

    def test_flush_empty_residual(self):
        decoder = FrameDecoder()
        decoder.feed(sse(content_chunk("x")))
        assert decoder.flush() == []


# ---------------------------------------------------------------------------
# iter_chunks
# ---------------------------------------------------------------------------


class TestIterChunks:
    @pytest.mark.asyncio
    async def test_yields_in_order(self):
        body = sse(content_chunk("a"), content_chunk("b"))
        chunks = [c async for c in iter_chunks(_source(body[:7], body[7:]))]
        assert _texts(chunks) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_continues_after_done(self):
        """Reading goes on until the transport ends, not until [DONE]."""
        body = sse(content_chunk("a")) + sse(content_chunk("late"), done=False)
        chunks = [c async for c in iter_chunks(_source(body))]
        assert _texts(chunks) == ["a", "late"]

    @pytest.mark.asyncio
    async def test_residual_without_newline(self):
        body = f"data: {json.dumps(content_chunk('end'))}".encode()
        chunks = [c async for c in iter_chunks(_source(body))]
        assert _texts(chunks) == ["end"]

    @pytest.mark.asyncio
    async def test_cancelled_before_read(self):
        token = CancelToken("r1")
        token.cancel()
        with pytest.raises(RunCancelled):
            async for _ in iter_chunks(_source(sse(content_chunk("x"))), token):
                pass

    @pytest.mark.asyncio
    async def test_cancel_stops_yielding(self):
        token = CancelToken("r1")
        received = []
        parts = [sse(content_chunk("1"), done=False), sse(content_chunk("2"), done=False)]
        with pytest.raises(RunCancelled):
            async for c in iter_chunks(_source(*parts), token):
                received.append(c)
                token.cancel()
        assert _texts(received) == ["1"]

    @pytest.mark.asyncio
    async def test_source_closed_on_cancel(self):
        closed = []

        async def source():
            try:
                yield sse(content_chunk("1"), done=False)
                yield sse(content_chunk("2"), done=False)
            finally:
                closed.append(True)

        token = CancelToken("r1")
        with pytest.raises(RunCancelled):
            async for _ in iter_chunks(source(), token):
                token.cancel()
        assert closed == [True]
