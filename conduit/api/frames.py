"""Server-sent-event frame decoding for Chat Completions streams.

Turns raw response bytes, delivered in fragments of any size, into an
ordered sequence of StreamChunk objects.

- Only ``data: `` lines carry payloads; comments (``: OPENROUTER
  PROCESSING``), ``event:`` lines and blank lines are ignored.
- ``data: [DONE]`` is swallowed; reading continues to end-of-stream.
- A payload that fails to parse is skipped and counted, never fatal.
- An ``{"error": ...}`` payload is a provider failure and raises.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

from pydantic import ValidationError

from conduit.api.cancellation import CancelToken
from conduit.api.schemas import StreamChunk
from conduit.errors import ProviderStreamError

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


def _provider_error(data: dict[str, Any]) -> ProviderStreamError | None:
    """Return an exception for an in-stream error object, else None."""
    error = data.get("error")
    if not error or data.get("choices"):
        return None
    if isinstance(error, dict):
        message = error.get("message") or "unknown provider error"
        code = error.get("code")
        status = code if isinstance(code, int) else None
        return ProviderStreamError(f"Provider error: {message}", status_code=status)
    return ProviderStreamError(f"Provider error: {error}")


class FrameDecoder:
    """Incremental decoder. Feed bytes, collect chunks.

    The decoder holds back the unterminated tail of the buffer until the
    next ``feed()`` or the final ``flush()``. ``skipped`` counts payloads
    that were dropped because they did not parse.
    """

    def __init__(self) -> None:
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._error: ProviderStreamError | None = None
        self.skipped = 0

    def feed(self, data: bytes) -> list[StreamChunk]:
        self.raise_pending()
        self._buffer += self._text.decode(data)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._parse_lines(lines)

    def flush(self) -> list[StreamChunk]:
        """End of stream: give the residual line one last parse attempt."""
        self.raise_pending()
        self._buffer += self._text.decode(b"", final=True)
        residual, self._buffer = self._buffer, ""
        if not residual.strip():
            return []
        return self._parse_lines(residual.split("\n"))

    def _parse_lines(self, lines: list[str]) -> list[StreamChunk]:
        chunks: list[StreamChunk] = []
        for line in lines:
            try:
                chunk = self.parse_line(line)
            except ProviderStreamError as e:
                if not chunks:
                    raise
                # Hand out what preceded the error first
                self._error = e
                self._buffer = ""
                break
            if chunk is not None:
                chunks.append(chunk)
        return chunks

    def raise_pending(self) -> None:
        """Raise a provider error held back behind already-returned chunks."""
        if self._error is not None:
            error, self._error = self._error, None
            raise error

    def parse_line(self, line: str) -> StreamChunk | None:
        """Parse one SSE line. Returns None for anything not yielded."""
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return None

        payload = line[len(DATA_PREFIX):].strip()
        if not payload or payload == DONE_SENTINEL:
            return None

        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            self._skip(payload, "invalid JSON")
            return None
        if not isinstance(data, dict):
            self._skip(payload, "not an object")
            return None

        error = _provider_error(data)
        if error is not None:
            raise error

        try:
            return StreamChunk.model_validate(data)
        except ValidationError:
            self._skip(payload, "schema mismatch")
            return None

    def _skip(self, payload: str, reason: str) -> None:
        self.skipped += 1
        logger.debug("Skipping malformed frame (%s): %.200s", reason, payload)


async def iter_chunks(
    source: AsyncIterable[bytes],
    token: CancelToken | None = None,
    decoder: FrameDecoder | None = None,
) -> AsyncIterator[StreamChunk]:
    """Drive a FrameDecoder over an async byte source.

    Checks the cancel token before every read and after every fragment;
    once cancelled, raises RunCancelled and yields nothing further. The
    source is closed on the way out so the underlying response is
    released even when decoding stops early.
    """
    decoder = decoder or FrameDecoder()
    iterator = source.__aiter__()
    try:
        while True:
            if token is not None:
                token.raise_if_cancelled()
            try:
                data = await iterator.__anext__()
            except StopAsyncIteration:
                break
            if token is not None:
                token.raise_if_cancelled()
            for chunk in decoder.feed(data):
                yield chunk
            decoder.raise_pending()
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()

    for chunk in decoder.flush():
        yield chunk
    decoder.raise_pending()

    if decoder.skipped:
        logger.debug("Stream finished with %d malformed frame(s) skipped", decoder.skipped)
