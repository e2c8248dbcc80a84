"""Session multiplexer: composition root for concurrent streamed conversations.

Coordinates StreamSessions against the ConversationRegistry. Any number of
sessions may run at once; each one only touches the StreamState and
message list of the conversation it was started for, so their frames can
interleave freely on the event loop without locks.

Usage::

    mux = SessionMultiplexer()
    await mux.load_conversations()
    session = mux.start_stream("What are the library opening hours?")
    await session.wait()
    print(mux.current_messages[-1].content)
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from echostream.client import ChatApiClient
from echostream.exceptions import PersistenceError
from echostream.models import ProcessingStage
from echostream.registry import ConversationRegistry
from echostream.settings import Settings, get_settings
from echostream.streaming.events import DoneEvent
from echostream.streaming.session import StreamHandlers, StreamSession
from echostream.streaming.state import StreamState
from echostream.transport import HttpStreamTransport, StreamRequest

if TYPE_CHECKING:
    from collections.abc import Callable
    from typing import Any

    from echostream.models import Conversation, Message
    from echostream.streaming.events import (
        ContentEvent,
        NewMessageEvent,
        SourcesEvent,
        StatusEvent,
    )
    from echostream.streaming.failures import StreamFailure
    from echostream.transport import StreamTransport

logger = logging.getLogger(__name__)

SENDING_STATUS = "Sending..."


class _Turn:
    """Binds one StreamSession to the registry tables of its conversation.

    ``conversation_id`` starts as None for a new conversation and is filled
    in when the server confirms the id.
    """

    def __init__(
        self,
        mux: SessionMultiplexer,
        session: StreamSession,
        state: StreamState,
        user_message: Message,
        extra: StreamHandlers | None,
    ) -> None:
        self.mux = mux
        self.registry = mux.registry
        self.session = session
        self.state = state
        self.user_message = user_message
        self.conversation_id = session.conversation_id
        self.parent_message_id: int | None = user_message.id
        self.extra = extra or StreamHandlers()

    @property
    def round_id(self) -> int:
        return self.user_message.id

    @property
    def owns_state(self) -> bool:
        return self.state.abort_handle is self.session.handle

    def handlers(self) -> StreamHandlers:
        return StreamHandlers(
            on_status=self.on_status,
            on_new_message=self.on_new_message,
            on_sources=self.on_sources,
            on_content=self.on_content,
            on_done=self.on_done,
            on_error=self.on_error,
            on_conversation_assigned=self.on_conversation_assigned,
            on_cancelled=self.on_cancelled,
        )

    def _forward(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is not None:
            callback(*args)

    def on_conversation_assigned(self, conversation_id: int) -> None:
        if self.conversation_id is not None:
            return
        if self.registry.pending_state is self.state:
            self.registry.migrate_pending(conversation_id, self.user_message)
        self.conversation_id = conversation_id
        self.mux._adopt_new_conversation(conversation_id)
        self._forward(self.extra.on_conversation_assigned, conversation_id)

    def on_status(self, event: StatusEvent) -> None:
        if not self.owns_state:
            return
        self.state.apply_status(event.stage)
        if event.message_id is not None:
            self.state.streaming_message_id = event.message_id
        self._forward(self.extra.on_status, event)

    def on_new_message(self, event: NewMessageEvent) -> None:
        if not self.owns_state:
            return
        flushed = self.registry.flush_intermediate(
            self.conversation_id,
            self.state,
            round_id=self.round_id,
            parent_message_id=self.parent_message_id,
        )
        if flushed is not None:
            self.parent_message_id = flushed.id
        if event.message_id is not None:
            self.state.streaming_message_id = event.message_id
        self._forward(self.extra.on_new_message, event)

    def on_sources(self, event: SourcesEvent) -> None:
        if not self.owns_state:
            return
        self.state.replace_sources(event.sources)
        self._forward(self.extra.on_sources, event)

    def on_content(self, event: ContentEvent) -> None:
        if not self.owns_state:
            return
        self.state.append_content(event.text)
        if event.message_id is not None:
            self.state.streaming_message_id = event.message_id
        self._forward(self.extra.on_content, event)

    def on_done(self, event: DoneEvent) -> None:
        if not self.owns_state:
            return
        self.registry.finalize_answer(
            self.conversation_id,
            self.state,
            event,
            round_id=self.round_id,
            parent_message_id=self.parent_message_id,
        )
        self.state.done_received = True
        self.state.is_sending = False
        self.state.processing_stage = ProcessingStage.DONE
        try:
            self._forward(self.extra.on_done, event)
        finally:
            self.state.reset()

    def on_error(self, failure: StreamFailure) -> None:
        if not self.owns_state:
            return
        self.state.fail(failure.message, self.mux.settings.error_display_seconds)
        self.registry.rollback_turn(self.conversation_id, self.user_message)
        self._forward(self.extra.on_error, failure)

    def on_cancelled(self) -> None:
        if self.owns_state:
            self.state.reset()
        self._forward(self.extra.on_cancelled)


class SessionMultiplexer:
    """Creates StreamSessions against the registry and exposes UI verbs."""

    def __init__(
        self,
        *,
        transport: StreamTransport | None = None,
        client: ChatApiClient | None = None,
        registry: ConversationRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.transport = transport or HttpStreamTransport(self.settings)
        self.client = client or ChatApiClient(self.settings)
        self.registry = registry or ConversationRegistry(self.settings)
        self._current_conversation_id: int | None = None
        self._sessions: set[StreamSession] = set()

    # ------------------------------------------------------------------
    # Projections for the UI
    # ------------------------------------------------------------------

    @property
    def conversations(self) -> tuple[Conversation, ...]:
        return self.registry.conversations

    def messages(self, conversation_id: int | None) -> tuple[Message, ...]:
        return self.registry.messages(conversation_id)

    @property
    def current_conversation_id(self) -> int | None:
        return self._current_conversation_id

    @property
    def current_conversation(self) -> Conversation | None:
        if self._current_conversation_id is None:
            return None
        return self.registry.get_conversation(self._current_conversation_id)

    @property
    def current_messages(self) -> tuple[Message, ...]:
        return self.registry.messages(self._current_conversation_id)

    @property
    def current_stream_state(self) -> StreamState:
        """State of the viewed conversation, or of the pending one on the new-chat view.

        Reading never creates registry state; a conversation without one
        reads as idle.
        """
        state = self.registry.stream_state(self._current_conversation_id)
        return state if state is not None else StreamState()

    @property
    def is_sending(self) -> bool:
        state = self.registry.stream_state(self._current_conversation_id)
        return bool(state and state.is_sending)

    @property
    def live_sessions(self) -> tuple[StreamSession, ...]:
        return tuple(s for s in self._sessions if not s.is_finished)

    # ------------------------------------------------------------------
    # Streaming verbs
    # ------------------------------------------------------------------

    def start_stream(
        self,
        text: str,
        conversation_id: int | None = None,
        handlers: StreamHandlers | None = None,
    ) -> StreamSession:
        """Send ``text`` and stream the answer.

        Must be called from a running event loop. A conversation whose
        state already has a live stream has that stream cancelled first.

        Args:
            text: The user's message.
            conversation_id: Target conversation, or None for a new one.
            handlers: Optional callbacks invoked after internal processing.

        Returns:
            The started session (``await session.wait()`` to join it).
        """
        text = text.strip()
        if not text:
            raise ValueError("Cannot send an empty message")

        state = self.registry.get_or_create_state(conversation_id)
        if state.abort_handle is not None and state.abort_handle.is_active:
            logger.info("Replacing live stream for conversation %s", conversation_id)
            state.abort_handle.cancel()

        user_message = self.registry.push_user_message(conversation_id, text)
        request = StreamRequest(
            message=text,
            conversation_id=conversation_id,
            enable_context=self.settings.enable_context,
            context_rounds=self.settings.context_rounds,
        )
        session = StreamSession(self.transport, request)
        turn = _Turn(self, session, state, user_message, handlers)
        session.handlers = turn.handlers()

        state.begin(session.handle, SENDING_STATUS)
        self._sessions.add(session)
        session.start().add_done_callback(lambda _: self._sessions.discard(session))
        logger.debug("Started %r", session)
        return session

    def cancel_stream(self, conversation_id: int | None = None) -> bool:
        """Abort the live stream of a conversation (the viewed one by default).

        Returns:
            True if a live stream was cancelled.
        """
        target = conversation_id if conversation_id is not None else self._current_conversation_id
        state = self.registry.stream_state(target)
        if state is None or state.abort_handle is None:
            return False
        return state.abort_handle.cancel()

    def clear_conversation(self) -> None:
        """Leave the viewed conversation and show an empty new chat."""
        self._current_conversation_id = None
        pending = self.registry.pending_state
        if pending is None or not pending.is_streaming:
            self.registry.discard_pending()

    def clear_all(self) -> None:
        """Abort every live stream and forget all state (e.g. on logout)."""
        for handle in self.registry.live_handles():
            handle.cancel()
        for session in list(self._sessions):
            session.cancel()
        self.registry.clear()
        self._sessions.clear()
        self._current_conversation_id = None

    async def wait_all(self) -> None:
        """Wait for every session started so far to finish."""
        pending = [s.task for s in self._sessions if s.task is not None]
        if pending:
            await asyncio.wait(pending)

    def _adopt_new_conversation(self, conversation_id: int) -> None:
        # The new-chat view follows its conversation once the id is known
        if self._current_conversation_id is None:
            self._current_conversation_id = conversation_id

    async def send_message(self, text: str, conversation_id: int | None = None) -> Message | None:
        """Send ``text`` and wait for the whole answer without streaming.

        The USER message is shown optimistically and removed again if the
        request fails. A new conversation is migrated out of the pending
        slot once the reply names its id.

        Returns:
            The BOT answer, or None if the reply carried no text.

        Raises:
            ValueError: If ``text`` is blank.
            PersistenceError: If the request failed.
        """
        text = text.strip()
        if not text:
            raise ValueError("Cannot send an empty message")

        state = self.registry.get_or_create_state(conversation_id)
        if state.abort_handle is not None and state.abort_handle.is_active:
            logger.info("Replacing live stream for conversation %s", conversation_id)
            state.abort_handle.cancel()

        user_message = self.registry.push_user_message(conversation_id, text)
        state.is_sending = True
        try:
            reply = await self.client.send_message(text, conversation_id)
        except PersistenceError:
            self.registry.rollback_turn(conversation_id, user_message)
            raise
        finally:
            state.is_sending = state.is_streaming

        if conversation_id is None and reply.conversation_id is not None:
            if self.registry.pending_state is state:
                self.registry.migrate_pending(reply.conversation_id, user_message)
            conversation_id = reply.conversation_id
            self._adopt_new_conversation(conversation_id)

        answer = StreamState(streaming_content=reply.answer, streaming_sources=list(reply.sources))
        done = DoneEvent(
            conversation_id=conversation_id,
            message_id=reply.message_id,
            usage=reply.usage,
            response_time_ms=reply.response_time_ms,
        )
        return self.registry.finalize_answer(
            conversation_id,
            answer,
            done,
            round_id=user_message.id,
            parent_message_id=user_message.id,
        )

    # ------------------------------------------------------------------
    # Persistence verbs
    # ------------------------------------------------------------------

    async def load_conversations(self, page: int = 1, size: int | None = None) -> list[Conversation]:
        conversations = await self.client.list_conversations(page=page, size=size)
        self.registry.set_conversations(conversations)
        return conversations

    async def create_conversation(self, title: str | None = None) -> Conversation:
        conversation = await self.client.create_conversation(title)
        conversation = self.registry.add_conversation(conversation)
        self._current_conversation_id = conversation.id
        return conversation

    async def select_conversation(self, conversation_id: int) -> Conversation | None:
        """View a conversation, fetching its history unless cached."""
        self._current_conversation_id = conversation_id
        self.registry.get_or_create_state(conversation_id)
        if not self.registry.has_messages(conversation_id):
            await self.fetch_messages(conversation_id)
        return self.registry.get_conversation(conversation_id)

    async def fetch_messages(self, conversation_id: int) -> list[Message]:
        messages = await self.client.get_messages(conversation_id)
        return self.registry.load_messages(conversation_id, messages)

    async def rename_conversation(self, conversation_id: int, title: str) -> None:
        await self.client.rename_conversation(conversation_id, title)
        self.registry.rename_conversation(conversation_id, title)

    async def delete_conversation(self, conversation_id: int) -> None:
        await self.client.delete_conversation(conversation_id)
        self.registry.remove_conversation(conversation_id)
        if self._current_conversation_id == conversation_id:
            self._current_conversation_id = None

    async def aclose(self) -> None:
        """Abort live streams and release HTTP resources."""
        for session in list(self._sessions):
            session.cancel()
        await self.wait_all()
        close_transport = getattr(self.transport, "close", None)
        if close_transport is not None:
            await close_transport()
        await self.client.close()
