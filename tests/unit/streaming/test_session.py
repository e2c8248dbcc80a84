"""Unit tests for StreamSession dispatch, termination and cancellation."""

import asyncio

import pytest

from echostream.exceptions import TransportError
from echostream.models import FailureKind
from echostream.streaming.events import NEW_MESSAGE_SENTINEL
from echostream.streaming.session import StreamHandlers, StreamSession
from echostream.streaming.state import HandleState
from echostream.transport import StreamRequest


def _recording_handlers():
    """Handlers that append (name, payload) tuples to a shared list."""
    log = []
    handlers = StreamHandlers(
        on_status=lambda e: log.append(("status", e.stage)),
        on_new_message=lambda e: log.append(("new_message", e.message_id)),
        on_sources=lambda e: log.append(("sources", [s.doc_id for s in e.sources])),
        on_content=lambda e: log.append(("content", e.text)),
        on_done=lambda e: log.append(("done", e.message_id)),
        on_error=lambda f: log.append(("error", f.kind)),
        on_conversation_assigned=lambda cid: log.append(("assigned", cid)),
        on_cancelled=lambda: log.append(("cancelled", None)),
    )
    return handlers, log


class TestDispatch:
    @pytest.mark.asyncio
    async def test_events_dispatched_in_order(self, make_transport, make_stream, frame):
        stream = make_stream(
            [
                frame("status", '"🔍 正在检索：x"'),
                frame("sources", {"conversationId": 12, "sources": [{"docId": 1}]}),
                frame("content", {"conversationId": 12, "content": "Hel"}),
                frame("content", {"conversationId": 12, "content": "lo"}),
                frame("done", {"conversationId": 12, "messageId": 40}),
            ]
        )
        handlers, log = _recording_handlers()
        session = StreamSession(make_transport(stream), StreamRequest(message="Hi"), handlers)

        await session.run()

        assert log == [
            ("status", "🔍 正在检索：x"),
            ("assigned", 12),
            ("sources", [1]),
            ("content", "Hel"),
            ("content", "lo"),
            ("done", 40),
        ]
        assert session.conversation_id == 12
        assert session.handle.state == HandleState.COMPLETED
        assert stream.closed

    @pytest.mark.asyncio
    async def test_sentinel_triggers_new_message(self, make_transport, make_stream, frame):
        stream = make_stream(
            [
                frame("content", "Part A"),
                frame("status", {"stage": NEW_MESSAGE_SENTINEL, "messageId": 41}),
                frame("content", "Part B"),
                frame("done", {}),
            ]
        )
        handlers, log = _recording_handlers()
        await StreamSession(make_transport(stream), StreamRequest(message="Hi"), handlers).run()

        assert [name for name, _ in log] == ["content", "new_message", "content", "done"]
        assert ("new_message", 41) in log

    @pytest.mark.asyncio
    async def test_known_conversation_is_not_reassigned(self, make_transport, make_stream, frame):
        stream = make_stream([frame("content", {"conversationId": 5, "content": "x"}), frame("done", {})])
        handlers, log = _recording_handlers()
        await StreamSession(
            make_transport(stream), StreamRequest(message="Hi", conversation_id=5), handlers
        ).run()

        assert ("assigned", 5) not in log

    @pytest.mark.asyncio
    async def test_nothing_dispatched_after_done(self, make_transport, make_stream, frame):
        stream = make_stream([frame("done", {}), frame("content", "late")])
        handlers, log = _recording_handlers()
        await StreamSession(make_transport(stream), StreamRequest(message="Hi"), handlers).run()

        assert log == [("done", None)]

    @pytest.mark.asyncio
    async def test_unknown_and_malformed_frames_skipped(self, make_transport, make_stream, frame):
        stream = make_stream(
            [frame("heartbeat", "{}"), frame("done", "{broken"), frame("content", "ok"), frame("done", {})]
        )
        handlers, log = _recording_handlers()
        await StreamSession(make_transport(stream), StreamRequest(message="Hi"), handlers).run()

        assert log == [("content", "ok"), ("done", None)]

    @pytest.mark.asyncio
    async def test_end_of_stream_without_done_is_done(self, make_transport, make_stream, frame):
        stream = make_stream([frame("content", {"conversationId": 3, "content": "x"})])
        handlers, log = _recording_handlers()
        await StreamSession(make_transport(stream), StreamRequest(message="Hi"), handlers).run()

        assert log[-1] == ("done", None)
        assert [name for name, _ in log].count("done") == 1

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_stream(self, make_transport, make_stream, frame):
        seen = []

        def on_content(event):
            raise RuntimeError("ui blew up")

        stream = make_stream([frame("content", "x"), frame("done", {})])
        handlers = StreamHandlers(on_content=on_content, on_done=lambda e: seen.append("done"))
        await StreamSession(make_transport(stream), StreamRequest(message="Hi"), handlers).run()

        assert seen == ["done"]


class TestFailures:
    @pytest.mark.asyncio
    async def test_error_frame_is_terminal(self, make_transport, make_stream, frame):
        stream = make_stream([frame("content", "x"), frame("error", {"error": "系统繁忙"}), frame("done", {})])
        handlers, log = _recording_handlers()
        await StreamSession(make_transport(stream), StreamRequest(message="Hi"), handlers).run()

        assert log == [("content", "x"), ("error", FailureKind.RATE_LIMITED)]

    @pytest.mark.asyncio
    async def test_transport_error_classified(self, make_transport):
        transport = make_transport(open_error=TransportError("HTTP error! status: 503", status_code=503))
        handlers, log = _recording_handlers()
        await StreamSession(transport, StreamRequest(message="Hi"), handlers).run()

        assert log == [("error", FailureKind.UPSTREAM_OVERLOADED)]

    @pytest.mark.asyncio
    async def test_error_mid_body(self, make_transport, make_stream, frame):
        stream = make_stream([frame("content", "x")], error=ConnectionResetError("reset"))
        handlers, log = _recording_handlers()
        await StreamSession(make_transport(stream), StreamRequest(message="Hi"), handlers).run()

        assert log == [("content", "x"), ("error", FailureKind.GENERIC)]
        assert stream.closed

    @pytest.mark.asyncio
    async def test_conversation_mismatch_is_protocol_error(self, make_transport, make_stream, frame):
        stream = make_stream(
            [
                frame("content", {"conversationId": 1, "content": "a"}),
                frame("content", {"conversationId": 2, "content": "b"}),
                frame("done", {}),
            ]
        )
        errors = []
        handlers = StreamHandlers(on_error=errors.append)
        await StreamSession(make_transport(stream), StreamRequest(message="Hi"), handlers).run()

        assert len(errors) == 1
        assert "Protocol error" in errors[0].detail


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_mid_stream(self, make_transport, make_stream, frame):
        gate = asyncio.Event()
        stream = make_stream(
            [frame("content", "a"), frame("content", "b"), frame("done", {})],
            gate=gate,
            pause_at=1,
        )
        handlers, log = _recording_handlers()
        session = StreamSession(make_transport(stream), StreamRequest(message="Hi"), handlers)
        session.start()

        for _ in range(5):
            await asyncio.sleep(0)
        assert log == [("content", "a")]

        assert session.cancel() is True
        await session.wait()

        assert log == [("content", "a"), ("cancelled", None)]
        assert stream.cancelled
        assert stream.closed
        assert session.is_finished
        assert session.handle.state == HandleState.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, make_transport, make_stream, frame):
        gate = asyncio.Event()
        stream = make_stream([frame("done", {})], gate=gate)
        handlers, log = _recording_handlers()
        session = StreamSession(make_transport(stream), StreamRequest(message="Hi"), handlers)
        session.start()
        await asyncio.sleep(0)

        assert session.cancel() is True
        assert session.cancel() is False
        await session.wait()
        assert log == [("cancelled", None)]

    @pytest.mark.asyncio
    async def test_cancel_after_done_is_noop(self, make_transport, make_stream, frame):
        handlers, log = _recording_handlers()
        session = StreamSession(
            make_transport(make_stream([frame("done", {})])), StreamRequest(message="Hi"), handlers
        )
        await session.run()

        assert session.cancel() is False
        assert log == [("done", None)]

    @pytest.mark.asyncio
    async def test_cancel_from_handler(self, make_transport, make_stream, frame):
        """A handler may cancel its own session; dispatch stops right there."""
        stream = make_stream([frame("content", "a"), frame("content", "b"), frame("done", {})])
        seen = []
        session = None

        def on_content(event):
            seen.append(event.text)
            session.cancel()

        session = StreamSession(
            make_transport(stream),
            StreamRequest(message="Hi"),
            StreamHandlers(on_content=on_content, on_error=lambda f: seen.append("error")),
        )
        await session.run()

        assert seen == ["a"]
        assert session.handle.is_cancelled
