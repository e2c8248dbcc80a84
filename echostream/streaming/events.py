"""Stream event types: typed variants decoded from raw frames.

The backend emits one frame per ``StreamChatResponse``; the payload is
either a bare JSON value or the full response object::

    event: content
    data: {"type":"CONTENT","conversationId":12,"messageId":40,"content":"Hel"}

``decode_frame()`` maps each frame onto a frozen dataclass. The reserved
status label ``__NEW_MESSAGE__`` is a control signal rather than a display
string, so it decodes to :class:`NewMessageEvent` instead of
:class:`StatusEvent`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from echostream.models import SourceDoc, TokenUsage

if TYPE_CHECKING:
    from httpx_sse import ServerSentEvent

logger = logging.getLogger(__name__)

NEW_MESSAGE_SENTINEL = "__NEW_MESSAGE__"


@dataclass(frozen=True)
class StatusEvent:
    """Human-readable processing stage (e.g. "🔍 正在检索：...")."""

    stage: str
    conversation_id: int | None = None
    message_id: int | None = None


@dataclass(frozen=True)
class NewMessageEvent:
    """Start a new answer within the same exchange.

    ``message_id`` is the server id of the message that follows the split.
    """

    conversation_id: int | None = None
    message_id: int | None = None


@dataclass(frozen=True)
class SourcesEvent:
    """The complete current citation set (not a delta)."""

    sources: list[SourceDoc] = field(default_factory=list)
    conversation_id: int | None = None
    message_id: int | None = None


@dataclass(frozen=True)
class ContentEvent:
    """A fragment of answer text."""

    text: str
    conversation_id: int | None = None
    message_id: int | None = None


@dataclass(frozen=True)
class DoneEvent:
    """The answer is complete."""

    conversation_id: int | None = None
    message_id: int | None = None
    usage: TokenUsage | None = None
    response_time_ms: int | None = None


@dataclass(frozen=True)
class ErrorEvent:
    """The server reported a failure for this stream."""

    message: str
    conversation_id: int | None = None
    message_id: int | None = None


@dataclass(frozen=True)
class UnknownEvent:
    """A frame with an event type this client does not understand."""

    event_type: str
    data: str


StreamEvent = (
    StatusEvent
    | NewMessageEvent
    | SourcesEvent
    | ContentEvent
    | DoneEvent
    | ErrorEvent
    | UnknownEvent
)


def decode_frame(frame: ServerSentEvent) -> StreamEvent | None:
    """Decode one frame into a typed event.

    Malformed JSON in a frame that requires it is logged and the frame is
    dropped (``None``); this function never raises.

    Args:
        frame: Parsed frame with ``event`` and ``data``.

    Returns:
        The typed event, or None if the frame was dropped.
    """
    event_type = frame.event
    data = frame.data

    decoder = _DECODERS.get(event_type)
    if decoder is None:
        return UnknownEvent(event_type=event_type, data=data)

    try:
        return decoder(data)
    except (json.JSONDecodeError, ValidationError, TypeError, ValueError) as e:
        logger.warning(
            "Dropping malformed '%s' frame: %s. Raw data: %s",
            event_type,
            e,
            data[:200] if data else "(empty)",
        )
        return None


def _ids(payload: Any) -> dict[str, int | None]:
    if not isinstance(payload, dict):
        return {"conversation_id": None, "message_id": None}
    return {
        "conversation_id": _as_int(payload.get("conversationId")),
        "message_id": _as_int(payload.get("messageId")),
    }


def _as_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def _decode_status(data: str) -> StatusEvent | NewMessageEvent:
    payload = json.loads(data)
    if isinstance(payload, dict):
        stage = payload.get("stage") or ""
    elif isinstance(payload, str):
        stage = payload
    else:
        raise TypeError(f"status payload must be a string or object, got {type(payload).__name__}")

    if stage == NEW_MESSAGE_SENTINEL:
        return NewMessageEvent(**_ids(payload))
    return StatusEvent(stage=str(stage), **_ids(payload))


def _decode_sources(data: str) -> SourcesEvent:
    payload = json.loads(data)
    raw = payload.get("sources") if isinstance(payload, dict) else payload
    if raw is None:
        raw = []
    if not isinstance(raw, list):
        raise TypeError("sources payload must be a list")
    return SourcesEvent(
        sources=[SourceDoc.model_validate(item) for item in raw],
        **_ids(payload),
    )


def _decode_content(data: str) -> ContentEvent:
    # Content is usually wrapped in a response object, but older servers
    # send the fragment as plain text.
    stripped = data.lstrip()
    if stripped.startswith("{"):
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict) and "content" in payload:
            return ContentEvent(text=payload.get("content") or "", **_ids(payload))
    elif stripped.startswith('"'):
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, str):
            return ContentEvent(text=payload)
    return ContentEvent(text=data)


def _decode_done(data: str) -> DoneEvent:
    if not data.strip():
        return DoneEvent()
    payload = json.loads(data)
    if not isinstance(payload, dict):
        return DoneEvent()
    usage = payload.get("usage")
    response_time = payload.get("responseTimeMs")
    return DoneEvent(
        usage=TokenUsage.model_validate(usage) if usage else None,
        response_time_ms=int(response_time) if response_time is not None else None,
        **_ids(payload),
    )


def _decode_error(data: str) -> ErrorEvent:
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        return ErrorEvent(message=data or "Unknown error")

    if isinstance(payload, dict):
        message = payload.get("error") or payload.get("message") or "Unknown error"
        return ErrorEvent(message=str(message), **_ids(payload))
    if isinstance(payload, str):
        return ErrorEvent(message=payload or "Unknown error")
    return ErrorEvent(message=data)


_DECODERS = {
    "status": _decode_status,
    "sources": _decode_sources,
    "content": _decode_content,
    "done": _decode_done,
    "error": _decode_error,
}
