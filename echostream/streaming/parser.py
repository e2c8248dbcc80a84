"""Event frame parser: turn an incrementally delivered byte stream into frames.

The parser knows nothing about conversations. It splits the response body
into ``text/event-stream`` frames: frames are separated by a blank line,
``event:`` sets the frame type and ``data:`` lines carry the payload.
Incomplete trailing lines are buffered until the next chunk completes them,
so the produced frame sequence does not depend on how the bytes were
chunked.

Frames are returned as ``httpx_sse.ServerSentEvent`` instances; turning the
payload into a typed event is the job of :mod:`echostream.streaming.events`.
"""

from __future__ import annotations

import codecs
import logging
from typing import TYPE_CHECKING

from httpx_sse import ServerSentEvent

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterable

logger = logging.getLogger(__name__)

_EVENT_FIELD = "event:"
_DATA_FIELD = "data:"


class EventFrameParser:
    """Incremental ``text/event-stream`` frame parser.

    Usage::

        parser = EventFrameParser()
        for chunk in chunks:
            for frame in parser.feed(chunk):
                handle(frame.event, frame.data)
        for frame in parser.close():
            handle(frame.event, frame.data)

    A parser instance belongs to one stream and cannot be restarted once
    closed.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._event: str | None = None
        self._data: list[str] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, chunk: bytes | str) -> list[ServerSentEvent]:
        """Consume one chunk and return the frames it completed.

        Args:
            chunk: Raw bytes from the response body (``str`` is accepted for
                transports that already decode).

        Returns:
            Completed frames in arrival order (possibly empty).
        """
        if self._closed:
            raise RuntimeError("EventFrameParser is closed")

        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        if not text:
            return []

        self._buffer += text
        lines = self._buffer.split("\n")
        # The last element is either "" (chunk ended on a newline) or a
        # partial line that must wait for the next chunk.
        self._buffer = lines.pop()

        frames: list[ServerSentEvent] = []
        for line in lines:
            frame = self._process_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def close(self) -> list[ServerSentEvent]:
        """Flush at end of stream.

        The stream has ended, so a buffered trailing line is complete; it is
        processed and any frame still open is emitted.
        """
        if self._closed:
            return []
        self._closed = True

        frames: list[ServerSentEvent] = []
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        for line in tail.split("\n") if tail else []:
            frame = self._process_line(line)
            if frame is not None:
                frames.append(frame)

        frame = self._dispatch()
        if frame is not None:
            frames.append(frame)
        return frames

    def _process_line(self, line: str) -> ServerSentEvent | None:
        if line.endswith("\r"):
            line = line[:-1]

        if not line.strip():
            return self._dispatch()

        if line.startswith(":"):
            # Comment / keep-alive
            return None

        if line.startswith(_EVENT_FIELD):
            self._event = line[len(_EVENT_FIELD) :].strip()
        elif line.startswith(_DATA_FIELD):
            value = line[len(_DATA_FIELD) :]
            if value.startswith(" "):
                value = value[1:]
            self._data.append(value)
        else:
            # id:, retry: and unknown fields carry nothing we use
            logger.debug("Ignoring SSE line: %s", line[:80])
        return None

    def _dispatch(self) -> ServerSentEvent | None:
        event, data = self._event, self._data
        self._event = None
        self._data = []
        if not event and not data:
            return None
        return ServerSentEvent(event=event or "message", data="\n".join(data))


async def aiter_frames(
    chunks: AsyncIterable[bytes],
    parser: EventFrameParser | None = None,
) -> AsyncGenerator[ServerSentEvent, None]:
    """Lazily parse an async byte stream into frames.

    Args:
        chunks: Async iterable of raw body chunks (e.g. ``response.aiter_bytes()``).
        parser: Optional parser instance (a fresh one is created otherwise).

    Yields:
        Frames in arrival order; the trailing frame is flushed when the
        byte stream ends.
    """
    parser = parser or EventFrameParser()
    async for chunk in chunks:
        for frame in parser.feed(chunk):
            yield frame
    for frame in parser.close():
        yield frame
