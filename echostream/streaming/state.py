"""Per-conversation stream state and cancellation handle.

A StreamState is the mutable projection the UI reads while an answer is
streaming. The registry owns one per conversation plus one for the pending
(not yet identified) conversation. Each state holds at most one live
CancelHandle.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum

from echostream.models import ProcessingStage, SourceDoc

logger = logging.getLogger(__name__)

# Substring hints the backend puts in status labels
_RETRIEVAL_HINTS = ("检索", "搜索", "retriev", "search")
_GENERATION_HINTS = ("生成", "generat")


def stage_from_hint(hint: str) -> ProcessingStage | None:
    """Map a free-text status label onto the coarse stage.

    Returns None when the label matches neither hint, in which case the
    caller keeps the current stage.
    """
    lowered = hint.lower()
    if any(h in lowered for h in _RETRIEVAL_HINTS):
        return ProcessingStage.RETRIEVING
    if any(h in lowered for h in _GENERATION_HINTS):
        return ProcessingStage.GENERATING
    return None


class HandleState(StrEnum):
    """Lifecycle of a cancellation handle."""

    ACTIVE = "active"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class CancelHandle:
    """Cancellation handle owning one in-flight request.

    ``cancel()`` aborts the request promptly, is idempotent and never
    raises. Abort callbacks are registered by the session (task
    cancellation, transport close).
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._state = HandleState.ACTIVE
        self._abort_callbacks: list[Callable[[], object]] = []

    def __repr__(self) -> str:
        return f"CancelHandle({self.name!r}, {self._state.value})"

    @property
    def state(self) -> HandleState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state == HandleState.ACTIVE

    @property
    def is_cancelled(self) -> bool:
        return self._state == HandleState.CANCELLED

    def add_abort_callback(self, callback: Callable[[], object]) -> None:
        """Register a callback run on cancellation (immediately if already cancelled)."""
        if self._state == HandleState.CANCELLED:
            self._run_callback(callback)
        elif self._state == HandleState.ACTIVE:
            self._abort_callbacks.append(callback)

    def cancel(self) -> bool:
        """Abort the request.

        Returns:
            True if this call cancelled the handle, False if it was already
            cancelled or completed.
        """
        if self._state != HandleState.ACTIVE:
            return False
        self._state = HandleState.CANCELLED
        callbacks, self._abort_callbacks = self._abort_callbacks, []
        for callback in callbacks:
            self._run_callback(callback)
        return True

    def complete(self) -> None:
        """Mark the request finished; later cancel() calls are no-ops."""
        if self._state == HandleState.ACTIVE:
            self._state = HandleState.COMPLETED
            self._abort_callbacks = []

    def _run_callback(self, callback: Callable[[], object]) -> None:
        try:
            callback()
        except Exception:
            logger.exception("Abort callback failed for %r", self)


@dataclass
class StreamState:
    """Mutable projection of one conversation's in-progress answer."""

    processing_stage: ProcessingStage = ProcessingStage.IDLE
    processing_status: str = ""
    streaming_content: str = ""
    streaming_message_id: int | None = None
    streaming_sources: list[SourceDoc] = field(default_factory=list)
    is_sending: bool = False
    abort_handle: CancelHandle | None = None
    done_received: bool = False
    _reset_timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def is_streaming(self) -> bool:
        return self.abort_handle is not None and self.abort_handle.is_active

    def begin(self, handle: CancelHandle, status: str = "Sending...") -> None:
        """Enter the sending stage for a new request owned by ``handle``."""
        self.cancel_reset_timer()
        self.processing_stage = ProcessingStage.SENDING
        self.processing_status = status
        self.streaming_content = ""
        self.streaming_message_id = None
        self.streaming_sources = []
        self.is_sending = True
        self.abort_handle = handle
        self.done_received = False

    def apply_status(self, label: str) -> None:
        self.processing_status = label
        stage = stage_from_hint(label)
        if stage is not None:
            self.processing_stage = stage

    def replace_sources(self, sources: list[SourceDoc]) -> None:
        self.streaming_sources = list(sources)

    def append_content(self, text: str) -> None:
        self.streaming_content += text
        self.processing_stage = ProcessingStage.GENERATING

    def take_content(self) -> str:
        """Return the accumulated content and reset the accumulator."""
        content, self.streaming_content = self.streaming_content, ""
        return content

    def reset(self) -> None:
        """Return to idle, clearing every transient field."""
        self.cancel_reset_timer()
        self.processing_stage = ProcessingStage.IDLE
        self.processing_status = ""
        self.streaming_content = ""
        self.streaming_message_id = None
        self.streaming_sources = []
        self.is_sending = False
        self.abort_handle = None
        self.done_received = False

    def fail(self, message: str, display_seconds: float) -> None:
        """Show an error, then return to idle after ``display_seconds``.

        The partial answer is discarded; only the error message stays
        visible during the display window.
        """
        self.cancel_reset_timer()
        self.processing_stage = ProcessingStage.ERROR
        self.processing_status = message
        self.streaming_content = ""
        self.streaming_message_id = None
        self.streaming_sources = []
        self.is_sending = False
        self.abort_handle = None

        if display_seconds <= 0:
            self.reset()
            return
        loop = asyncio.get_running_loop()
        self._reset_timer = loop.call_later(display_seconds, self._reset_after_error)

    def cancel_reset_timer(self) -> None:
        if self._reset_timer is not None:
            self._reset_timer.cancel()
            self._reset_timer = None

    def _reset_after_error(self) -> None:
        self._reset_timer = None
        if self.processing_stage == ProcessingStage.ERROR:
            self.reset()
