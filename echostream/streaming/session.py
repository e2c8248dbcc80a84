"""Stream session: one in-flight streamed answer.

A StreamSession issues exactly one request through the transport, feeds the
response body to an EventFrameParser and dispatches the decoded events to
caller-supplied handlers, strictly in arrival order. A new message always
gets a new session, even within the same conversation.

Cancelling the session's handle aborts the transport, stops further
dispatch and calls ``on_cancelled``; ``on_error`` is never called for an
abort.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from echostream.exceptions import ProtocolError
from echostream.streaming.events import (
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    NewMessageEvent,
    SourcesEvent,
    StatusEvent,
    UnknownEvent,
    decode_frame,
)
from echostream.streaming.failures import StreamFailure, classify_failure, failure_from_exception
from echostream.streaming.parser import EventFrameParser, aiter_frames
from echostream.streaming.state import CancelHandle

if TYPE_CHECKING:
    from collections.abc import Callable

    from httpx_sse import ServerSentEvent

    from echostream.streaming.events import StreamEvent
    from echostream.transport import ByteStream, StreamRequest, StreamTransport

logger = logging.getLogger(__name__)

_session_ids = itertools.count(1)


@dataclass
class StreamHandlers:
    """Callbacks invoked by a StreamSession.

    Attributes:
        on_status: Stage label update.
        on_new_message: Mid-stream split (start a new answer in the same exchange).
        on_sources: Complete current citation set.
        on_content: Answer text fragment.
        on_done: Terminal success.
        on_error: Terminal failure (never called for cancellation).
        on_conversation_assigned: First server-confirmed conversation id.
        on_cancelled: The session was aborted through its handle.
    """

    on_status: Callable[[StatusEvent], Any] | None = None
    on_new_message: Callable[[NewMessageEvent], Any] | None = None
    on_sources: Callable[[SourcesEvent], Any] | None = None
    on_content: Callable[[ContentEvent], Any] | None = None
    on_done: Callable[[DoneEvent], Any] | None = None
    on_error: Callable[[StreamFailure], Any] | None = None
    on_conversation_assigned: Callable[[int], Any] | None = None
    on_cancelled: Callable[[], Any] | None = None


class StreamSession:
    """Owns one streamed request from open to completion or cancellation.

    Usage::

        session = StreamSession(transport, StreamRequest(message="Hi"), handlers)
        session.start()
        ...
        session.cancel()      # or: await session.wait()
    """

    def __init__(
        self,
        transport: StreamTransport,
        request: StreamRequest,
        handlers: StreamHandlers | None = None,
    ) -> None:
        self.session_id = next(_session_ids)
        self.request = request
        self.handlers = handlers or StreamHandlers()
        self.conversation_id = request.conversation_id
        self.handle = CancelHandle(name=f"stream-{self.session_id}")
        self.handle.add_abort_callback(self._abort)

        self._transport = transport
        self._stream: ByteStream | None = None
        self._task: asyncio.Task[None] | None = None
        self._terminated = False

    def __repr__(self) -> str:
        return (
            f"StreamSession(id={self.session_id}, conversation={self.conversation_id}, "
            f"handle={self.handle.state.value})"
        )

    @property
    def task(self) -> asyncio.Task[None] | None:
        return self._task

    @property
    def is_finished(self) -> bool:
        return self._terminated or not self.handle.is_active

    def start(self) -> asyncio.Task[None]:
        """Schedule ``run()`` on the running event loop."""
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name=f"echostream-{self.session_id}")
        return self._task

    async def wait(self) -> None:
        """Wait until the session has finished, however it ended."""
        if self._task is not None:
            await asyncio.wait({self._task})

    def cancel(self) -> bool:
        """Abort the session. Idempotent; never raises."""
        return self.handle.cancel()

    async def run(self) -> None:
        """Open the request and dispatch frames until the stream ends."""
        try:
            self._stream = await self._transport.open(self.request)
            if not self.handle.is_active:
                return

            async for frame in aiter_frames(self._stream.aiter_bytes(), EventFrameParser()):
                if not self._dispatch_frame(frame):
                    break

            if not self._terminated and self.handle.is_active:
                logger.info("Stream %s ended without a done frame, finalizing", self.session_id)
                self._dispatch(DoneEvent(conversation_id=self.conversation_id))
        except asyncio.CancelledError:
            if not self.handle.is_cancelled:
                raise
            logger.debug("Stream %s aborted", self.session_id)
        except Exception as e:
            if self.handle.is_cancelled:
                logger.debug("Stream %s raised after abort: %s", self.session_id, e)
            else:
                failure = failure_from_exception(e)
                logger.warning(
                    "Stream %s failed (%s): %s",
                    self.session_id,
                    failure.kind.value,
                    failure.detail[:200],
                )
                self._fail(failure)
        finally:
            self.handle.complete()
            await self._close_stream()

    def _dispatch_frame(self, frame: ServerSentEvent) -> bool:
        """Dispatch one frame. Returns False once nothing more may be dispatched."""
        if not self.handle.is_active or self._terminated:
            return False
        event = decode_frame(frame)
        if event is None:
            return True
        logger.debug("Stream %s frame %s", self.session_id, type(event).__name__)
        self._dispatch(event)
        return not self._terminated and self.handle.is_active

    def _dispatch(self, event: StreamEvent) -> None:
        if isinstance(event, UnknownEvent):
            logger.debug("Ignoring unknown event type '%s'", event.event_type)
            return

        self._check_conversation(getattr(event, "conversation_id", None))

        h = self.handlers
        if isinstance(event, StatusEvent):
            self._notify(h.on_status, event)
        elif isinstance(event, NewMessageEvent):
            self._notify(h.on_new_message, event)
        elif isinstance(event, SourcesEvent):
            self._notify(h.on_sources, event)
        elif isinstance(event, ContentEvent):
            self._notify(h.on_content, event)
        elif isinstance(event, DoneEvent):
            self._terminated = True
            self.handle.complete()
            self._notify(h.on_done, event)
        elif isinstance(event, ErrorEvent):
            self._fail(classify_failure(event.message))

    def _check_conversation(self, conversation_id: int | None) -> None:
        if conversation_id is None:
            return
        if self.conversation_id is None:
            self.conversation_id = conversation_id
            logger.debug("Stream %s assigned conversation %s", self.session_id, conversation_id)
            self._notify(self.handlers.on_conversation_assigned, conversation_id)
        elif conversation_id != self.conversation_id:
            raise ProtocolError(
                f"Stream {self.session_id} switched conversation "
                f"{self.conversation_id} -> {conversation_id}"
            )

    def _fail(self, failure: StreamFailure) -> None:
        if self._terminated or self.handle.is_cancelled:
            return
        self._terminated = True
        self.handle.complete()
        self._notify(self.handlers.on_error, failure)

    def _abort(self) -> None:
        if self._stream is not None:
            self._stream.cancel()
        if self._task is not None and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()
        self._notify(self.handlers.on_cancelled)

    def _notify(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Stream %s handler %s failed", self.session_id, getattr(callback, "__name__", callback))

    async def _close_stream(self) -> None:
        if self._stream is None:
            return
        stream, self._stream = self._stream, None
        with contextlib.suppress(Exception):
            await stream.aclose()
