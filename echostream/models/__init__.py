"""Data models shared by the streaming core, registry and API client."""

from .conversation import ChatReply, Conversation, Message, SourceDoc, TokenUsage
from .enums import ConversationStatus, FailureKind, ProcessingStage, SenderType

__all__ = [
    "ChatReply",
    "Conversation",
    "ConversationStatus",
    "FailureKind",
    "Message",
    "ProcessingStage",
    "SenderType",
    "SourceDoc",
    "TokenUsage",
]
