"""Streaming module: frame parsing, event decoding, sessions and stream state.

Provides modular, independently testable components for consuming the chat
backend's ``text/event-stream`` answers.
"""

from echostream.streaming.events import (
    NEW_MESSAGE_SENTINEL,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    NewMessageEvent,
    SourcesEvent,
    StatusEvent,
    StreamEvent,
    UnknownEvent,
    decode_frame,
)
from echostream.streaming.failures import StreamFailure, classify_failure
from echostream.streaming.parser import EventFrameParser, aiter_frames
from echostream.streaming.session import StreamHandlers, StreamSession
from echostream.streaming.state import CancelHandle, HandleState, StreamState, stage_from_hint

__all__ = [
    "NEW_MESSAGE_SENTINEL",
    "CancelHandle",
    "ContentEvent",
    "DoneEvent",
    "ErrorEvent",
    "EventFrameParser",
    "HandleState",
    "NewMessageEvent",
    "SourcesEvent",
    "StatusEvent",
    "StreamEvent",
    "StreamFailure",
    "StreamHandlers",
    "StreamSession",
    "StreamState",
    "UnknownEvent",
    "aiter_frames",
    "classify_failure",
    "decode_frame",
    "stage_from_hint",
]
