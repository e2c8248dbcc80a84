"""Conversation registry: owner of conversations, messages and stream states.

The registry is the single owner of every Conversation, Message and
StreamState. Tables are keyed by the server-assigned conversation id; a
distinguished pending slot holds the state and message buffer of a new
conversation until the server confirms its id, at which point both are
moved (not copied) under the real id.

Everything here runs on the event loop thread; isolation between
conversations comes from partitioning state per key, so no locks are
needed.
"""

from __future__ import annotations

import itertools
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from echostream.models import Conversation, ConversationStatus, Message, SenderType
from echostream.rounds import assign_rounds, mark_last_in_round
from echostream.settings import Settings, get_settings
from echostream.streaming.state import StreamState

if TYPE_CHECKING:
    from collections.abc import Iterable

    from echostream.streaming.events import DoneEvent
    from echostream.streaming.state import CancelHandle

logger = logging.getLogger(__name__)


class ConversationRegistry:
    """Owns the conversation list, cached message lists and stream states.

    ``conversation_id=None`` addresses the pending slot throughout.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self._conversations: list[Conversation] = []
        self._messages: dict[int, list[Message]] = {}
        self._states: dict[int, StreamState] = {}
        self._pending_state: StreamState | None = None
        self._pending_messages: list[Message] | None = None
        # Optimistic messages get negative ids so they never collide with server ids
        self._local_ids = itertools.count(-1, -1)

    # ------------------------------------------------------------------
    # Read-only projections
    # ------------------------------------------------------------------

    @property
    def conversations(self) -> tuple[Conversation, ...]:
        return tuple(self._conversations)

    def get_conversation(self, conversation_id: int) -> Conversation | None:
        for conversation in self._conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    def messages(self, conversation_id: int | None) -> tuple[Message, ...]:
        if conversation_id is None:
            return tuple(self._pending_messages or ())
        return tuple(self._messages.get(conversation_id, ()))

    def stream_state(self, conversation_id: int | None) -> StreamState | None:
        if conversation_id is None:
            return self._pending_state
        return self._states.get(conversation_id)

    @property
    def pending_state(self) -> StreamState | None:
        return self._pending_state

    @property
    def pending_messages(self) -> tuple[Message, ...] | None:
        if self._pending_messages is None:
            return None
        return tuple(self._pending_messages)

    @property
    def has_pending(self) -> bool:
        return self._pending_state is not None or self._pending_messages is not None

    def has_messages(self, conversation_id: int) -> bool:
        """Whether a message list is cached for the conversation."""
        return conversation_id in self._messages

    def live_handles(self) -> list[CancelHandle]:
        """Every active cancellation handle, pending slot included."""
        states: Iterable[StreamState] = list(self._states.values())
        if self._pending_state is not None:
            states = [*states, self._pending_state]
        return [s.abort_handle for s in states if s.abort_handle is not None and s.abort_handle.is_active]

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    def get_or_create_messages(self, conversation_id: int | None) -> list[Message]:
        if conversation_id is None:
            if self._pending_messages is None:
                self._pending_messages = []
            return self._pending_messages
        return self._messages.setdefault(conversation_id, [])

    def get_or_create_state(self, conversation_id: int | None) -> StreamState:
        if conversation_id is None:
            if self._pending_state is None:
                self._pending_state = StreamState()
            return self._pending_state
        state = self._states.get(conversation_id)
        if state is None:
            state = StreamState()
            self._states[conversation_id] = state
        return state

    def discard_pending(self) -> None:
        """Drop the pending slot, aborting its stream if one is live."""
        if self._pending_state is not None:
            if self._pending_state.abort_handle is not None:
                self._pending_state.abort_handle.cancel()
            self._pending_state.reset()
        self._pending_state = None
        self._pending_messages = None

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def set_conversations(self, conversations: Iterable[Conversation]) -> None:
        """Replace the conversation list; cached messages and states are kept."""
        self._conversations = list(conversations)

    def add_conversation(self, conversation: Conversation) -> Conversation:
        """Insert at the head of the list and prepare empty tables."""
        existing = self.get_conversation(conversation.id)
        if existing is not None:
            return existing
        self._conversations.insert(0, conversation)
        self.get_or_create_messages(conversation.id)
        self.get_or_create_state(conversation.id)
        return conversation

    def rename_conversation(self, conversation_id: int, title: str) -> bool:
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            return False
        conversation.title = title
        return True

    def remove_conversation(self, conversation_id: int) -> Conversation | None:
        """Forget a conversation, aborting its live stream first."""
        state = self._states.pop(conversation_id, None)
        if state is not None:
            if state.abort_handle is not None:
                state.abort_handle.cancel()
            state.cancel_reset_timer()
        self._messages.pop(conversation_id, None)

        conversation = self.get_conversation(conversation_id)
        if conversation is not None:
            self._conversations.remove(conversation)
        return conversation

    def load_messages(self, conversation_id: int, messages: Iterable[Message]) -> list[Message]:
        """Cache a freshly fetched history with round fields reconciled."""
        loaded = list(messages)
        assign_rounds(loaded)
        self._messages[conversation_id] = loaded
        self.get_or_create_state(conversation_id)
        return loaded

    def sync_message_count(self, conversation_id: int | None) -> None:
        if conversation_id is None:
            return
        conversation = self.get_conversation(conversation_id)
        if conversation is not None:
            conversation.message_count = len(self._messages.get(conversation_id, ()))

    # ------------------------------------------------------------------
    # Streaming turn
    # ------------------------------------------------------------------

    def push_user_message(self, conversation_id: int | None, text: str) -> Message:
        """Append the optimistic USER message that opens a round."""
        local_id = next(self._local_ids)
        message = Message(
            id=local_id,
            conversation_id=conversation_id,
            sender_type=SenderType.USER,
            content=text,
            created_at=datetime.now(UTC),
            round_id=local_id,
        )
        self.get_or_create_messages(conversation_id).append(message)
        return message

    def migrate_pending(self, conversation_id: int, opening: Message | None = None) -> bool:
        """Move the pending slot under the server-confirmed conversation id.

        Synthesises the Conversation (provisional title from the opening
        USER message), inserts it at the head of the list, re-keys the
        pending message buffer and StreamState, stamps the buffered messages
        with the id and clears the pending slot.

        Returns:
            True if a migration happened, False if there was nothing to move
            (e.g. a duplicate id frame).
        """
        if not self.has_pending:
            return False

        pending_state = self._pending_state
        pending_messages = self._pending_messages or []
        self._pending_state = None
        self._pending_messages = None

        if self.get_conversation(conversation_id) is None:
            title_source = opening.content if opening is not None else next(
                (m.content for m in pending_messages if m.is_user), ""
            )
            self._conversations.insert(
                0,
                Conversation(
                    id=conversation_id,
                    title=title_source[: self.settings.title_max_length],
                    message_count=0,
                    status=ConversationStatus.ACTIVE,
                    created_at=datetime.now(UTC),
                    updated_at=datetime.now(UTC),
                ),
            )

        for message in pending_messages:
            message.conversation_id = conversation_id

        existing = self._messages.get(conversation_id)
        if existing:
            existing.extend(pending_messages)
        else:
            self._messages[conversation_id] = pending_messages

        if pending_state is not None:
            replaced = self._states.get(conversation_id)
            if replaced is not None and replaced is not pending_state:
                replaced.cancel_reset_timer()
            self._states[conversation_id] = pending_state
        else:
            self.get_or_create_state(conversation_id)

        self.sync_message_count(conversation_id)
        logger.info("Pending conversation migrated to %s", conversation_id)
        return True

    def flush_intermediate(
        self,
        conversation_id: int | None,
        state: StreamState,
        *,
        round_id: int | None,
        parent_message_id: int | None = None,
    ) -> Message | None:
        """Finalize accumulated text as an intermediate BOT message.

        Sources are not attached and keep accumulating across the split.
        Returns None when nothing had been accumulated.
        """
        content = state.take_content()
        if not content:
            return None
        message = Message(
            id=state.streaming_message_id or next(self._local_ids),
            conversation_id=conversation_id,
            sender_type=SenderType.BOT,
            content=content,
            metadata={"isIntermediate": True},
            parent_message_id=parent_message_id,
            created_at=datetime.now(UTC),
            round_id=round_id,
            skip_animation=True,
        )
        # The next segment gets its own id
        state.streaming_message_id = None
        messages = self.get_or_create_messages(conversation_id)
        messages.append(message)
        mark_last_in_round(messages, round_id)
        return message

    def finalize_answer(
        self,
        conversation_id: int | None,
        state: StreamState,
        done: DoneEvent,
        *,
        round_id: int | None,
        parent_message_id: int | None = None,
    ) -> Message | None:
        """Materialise the terminal BOT message of a round.

        Returns None when the stream produced no (further) text.
        """
        content = state.take_content()
        message: Message | None = None
        if content:
            metadata: dict[str, Any] = {
                "sources": [s.model_dump(by_alias=True, exclude_none=True) for s in state.streaming_sources],
            }
            if done.usage is not None:
                metadata["usage"] = done.usage.model_dump(by_alias=True)
            if done.response_time_ms is not None:
                metadata["responseTimeMs"] = done.response_time_ms

            message = Message(
                id=done.message_id or state.streaming_message_id or next(self._local_ids),
                conversation_id=conversation_id,
                sender_type=SenderType.BOT,
                content=content,
                metadata=metadata,
                parent_message_id=parent_message_id,
                created_at=datetime.now(UTC),
                round_id=round_id,
                is_last_in_round=True,
            )
            messages = self.get_or_create_messages(conversation_id)
            messages.append(message)
            mark_last_in_round(messages, round_id)

        self.sync_message_count(conversation_id)
        return message

    def rollback_turn(self, conversation_id: int | None, user_message: Message) -> bool:
        """Remove a failed turn: its optimistic USER message and every BOT
        message already flushed into its round.

        Returns:
            True if the USER message was still present.
        """
        messages = self._messages.get(conversation_id) if conversation_id is not None else self._pending_messages
        if not messages or not any(m is user_message for m in messages):
            return False
        messages[:] = [
            m for m in messages if m is not user_message and not (m.is_bot and m.round_id == user_message.id)
        ]
        self.sync_message_count(conversation_id)
        return True

    def clear(self) -> None:
        """Abort every live stream and forget all state."""
        for handle in self.live_handles():
            handle.cancel()
        for state in self._states.values():
            state.reset()
        if self._pending_state is not None:
            self._pending_state.reset()
        self._conversations.clear()
        self._messages.clear()
        self._states.clear()
        self._pending_state = None
        self._pending_messages = None
