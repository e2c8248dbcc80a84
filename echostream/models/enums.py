"""Enums for conversations and stream state."""

from enum import StrEnum


class SenderType(StrEnum):
    """Author of a message."""

    USER = "USER"
    BOT = "BOT"
    SYSTEM = "SYSTEM"


class ConversationStatus(StrEnum):
    """Status of a conversation as reported by the backend."""

    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"
    DELETED = "DELETED"


class ProcessingStage(StrEnum):
    """Coarse lifecycle label of an in-progress answer."""

    IDLE = "idle"
    SENDING = "sending"
    RETRIEVING = "retrieving"
    GENERATING = "generating"
    DONE = "done"
    ERROR = "error"


class FailureKind(StrEnum):
    """Classification of a failed stream, used to pick the user-facing warning."""

    RATE_LIMITED = "rate_limited"
    UPSTREAM_OVERLOADED = "upstream_overloaded"
    CONCURRENCY_LIMIT = "concurrency_limit"
    GENERIC = "generic"
