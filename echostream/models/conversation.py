"""Conversation and message models.

The backend speaks camelCase JSON; models accept either spelling and
expose snake_case attributes.
"""

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .enums import ConversationStatus, SenderType

_WIRE_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    extra="ignore",
)


class SourceDoc(BaseModel):
    """A knowledge-base citation attached to an answer."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    doc_id: int | None = None
    title: str = ""
    content: str = ""
    similarity: float | None = None
    category: str | None = None


class TokenUsage(BaseModel):
    """Token accounting reported when an answer completes."""

    model_config = _WIRE_CONFIG

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class Conversation(BaseModel):
    """A chat conversation.

    ``id`` is assigned by the server and never changes afterwards.
    """

    model_config = _WIRE_CONFIG

    id: int = Field(frozen=True)
    title: str = ""
    message_count: int = 0
    status: str = ConversationStatus.ACTIVE
    user_id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Message(BaseModel):
    """A single message within a conversation.

    Content is frozen once the message is constructed; streaming text lives
    in the StreamState until it is materialised into a Message.
    """

    model_config = _WIRE_CONFIG

    id: int
    conversation_id: int | None = None
    sender_type: SenderType
    content: str = Field(default="", frozen=True)
    metadata: dict[str, Any] | None = None
    parent_message_id: int | None = None
    created_at: datetime | None = None
    round_id: int | None = None
    is_last_in_round: bool = False
    skip_animation: bool = False

    @field_validator("metadata", mode="before")
    @classmethod
    def _parse_metadata(cls, value: Any) -> Any:
        # Some endpoints serialise the JSON column as a string
        if isinstance(value, str):
            if not value.strip():
                return None
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return {"raw": value}
        return value

    @property
    def is_user(self) -> bool:
        return self.sender_type == SenderType.USER

    @property
    def is_bot(self) -> bool:
        return self.sender_type == SenderType.BOT

    @property
    def sources(self) -> list[SourceDoc]:
        """Citations stored in the metadata bag, if any."""
        raw = (self.metadata or {}).get("sources") or []
        return [s if isinstance(s, SourceDoc) else SourceDoc.model_validate(s) for s in raw]


class ChatReply(BaseModel):
    """A complete answer from the non-streaming send endpoint."""

    model_config = _WIRE_CONFIG

    message_id: int | None = None
    conversation_id: int | None = None
    answer: str = ""
    sources: list[SourceDoc] = Field(default_factory=list)
    usage: TokenUsage | None = None
    response_time_ms: int | None = None
    created_at: datetime | None = None

    @field_validator("sources", mode="before")
    @classmethod
    def _null_sources(cls, value: Any) -> Any:
        return value or []
