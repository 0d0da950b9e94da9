"""Chunk streams: server-sent-event decoding and a replay double.

Both variants expose the same interface::

    chunk = await stream.recv()   # StreamChunk, or None at end-of-stream
    await stream.close()          # idempotent

and are async iterators over ``StreamChunk``.  Exactly one reader may
consume a stream; chunks come out strictly in arrival order.
"""

from __future__ import annotations

import abc
import json
import logging
from typing import Any, AsyncIterator, Callable, Iterable

import httpx

from deecli.config import debug_enabled
from deecli.types import StreamChunk

from .cancel import CancelToken
from .errors import ErrorClassifier

_logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class ChunkStream(abc.ABC):
    """A sequence of decoded chunks from one streaming response."""

    @abc.abstractmethod
    async def recv(self) -> StreamChunk | None:
        """Next chunk, or ``None`` once the stream has ended."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Release the underlying resource.  Safe to call repeatedly."""

    def __aiter__(self) -> AsyncIterator[StreamChunk]:
        return self

    async def __anext__(self) -> StreamChunk:
        chunk = await self.recv()
        if chunk is None:
            raise StopAsyncIteration
        return chunk

    async def __aenter__(self) -> ChunkStream:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


def parse_sse_line(line: str) -> str | None:
    """Return the data payload of an SSE line, or ``None`` to skip it.

    Skips blank lines, ``:`` comments (keep-alives) and non-data fields.
    """
    line = line.strip()
    if not line or line.startswith(":"):
        return None
    if not line.startswith(DATA_PREFIX):
        return None
    payload = line[len(DATA_PREFIX):]
    if payload.startswith(" "):
        payload = payload[1:]
    return payload


class SSEChunkStream(ChunkStream):
    """Decode ``data: {json}`` lines from an open ``httpx.Response``.

    Malformed JSON frames are skipped.  ``data: [DONE]`` ends the stream.
    The token is checked before every line read, and an in-flight read is
    abandoned as soon as it fires.
    """

    def __init__(
        self,
        response: httpx.Response,
        token: CancelToken | None = None,
        on_close: Callable[[], None] | None = None,
    ) -> None:
        self._response = response
        self._token = token
        self._on_close = on_close
        self._lines = response.aiter_lines()
        self._ended = False
        self._closed = False
        self.chunks_read = 0

    async def recv(self) -> StreamChunk | None:
        while not self._ended:
            if self._token is not None:
                self._token.raise_if_cancelled()
            try:
                if self._token is not None:
                    line = await self._token.run(self._lines.__anext__())
                else:
                    line = await self._lines.__anext__()
            except StopAsyncIteration:
                self._ended = True
                break
            except httpx.HTTPError as exc:
                raise ErrorClassifier.from_exception(exc) from exc

            payload = parse_sse_line(line)
            if payload is None:
                continue
            if payload.strip() == DONE_SENTINEL:
                self._ended = True
                break

            try:
                data = json.loads(payload)
                if not isinstance(data, dict):
                    raise ValueError(f"expected object, got {type(data).__name__}")
                chunk = StreamChunk.from_dict(data)
            except (AttributeError, TypeError, KeyError, ValueError) as exc:
                # json.JSONDecodeError is a ValueError
                _logger.debug("Skipping malformed stream frame (%s): %r", exc, payload[:200])
                continue

            self.chunks_read += 1
            if debug_enabled() and chunk.content:
                _logger.debug("Stream chunk content: %r", chunk.content)
            return chunk
        return None

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._ended = True
        try:
            await self._response.aclose()
        finally:
            if self._on_close is not None:
                self._on_close()

    @property
    def closed(self) -> bool:
        return self._closed


class ReplayChunkStream(ChunkStream):
    """Replay a fixed chunk sequence.  Used for deterministic tests.

    ``error`` (if given) is raised after the chunks are exhausted instead
    of signalling end-of-stream.
    """

    def __init__(
        self,
        chunks: Iterable[StreamChunk | dict[str, Any]],
        token: CancelToken | None = None,
        error: Exception | None = None,
    ) -> None:
        self._chunks = [
            c if isinstance(c, StreamChunk) else StreamChunk.from_dict(c)
            for c in chunks
        ]
        self._token = token
        self._error = error
        self._pos = 0
        self.close_count = 0

    async def recv(self) -> StreamChunk | None:
        if self._token is not None:
            self._token.raise_if_cancelled()
        if self.close_count:
            return None
        if self._pos < len(self._chunks):
            chunk = self._chunks[self._pos]
            self._pos += 1
            return chunk
        if self._error is not None:
            raise self._error
        return None

    async def close(self) -> None:
        self.close_count += 1

    @property
    def closed(self) -> bool:
        return self.close_count > 0
