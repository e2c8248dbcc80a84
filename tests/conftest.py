"""Shared test fixtures for echostream.

Provides settings fixtures and in-memory stream transports used across the
unit tests.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import pytest
from pydantic import SecretStr

from echostream.settings import Settings

# =============================================================================
# SETTINGS
# =============================================================================


@pytest.fixture
def test_settings() -> Settings:
    """Provide test settings with safe defaults."""
    return Settings(
        environment="testing",
        debug=True,
        api_base_url="http://chat.test/api",
        api_token=SecretStr("test-token"),
        user_id=7,
        error_display_seconds=0.05,
    )


@pytest.fixture
def mock_settings(test_settings: Settings, monkeypatch: pytest.MonkeyPatch) -> Settings:
    """Mock get_settings() to return test settings."""
    from echostream import settings

    settings.get_settings.cache_clear()
    monkeypatch.setattr(settings, "get_settings", lambda: test_settings)
    return test_settings


# =============================================================================
# STREAM HELPERS
# =============================================================================


def sse(event: str, payload: Any) -> bytes:
    """Encode one frame the way the chat backend writes it."""
    data = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return f"event: {event}\ndata: {data}\n\n".encode()


class FakeByteStream:
    """In-memory ByteStream that yields scripted chunks.

    ``gate`` (an asyncio.Event) pauses the stream before the chunk at
    ``pause_at`` until the test sets it.
    """

    def __init__(
        self,
        chunks: list[bytes],
        *,
        gate: asyncio.Event | None = None,
        pause_at: int = 0,
        error: Exception | None = None,
    ) -> None:
        self.chunks = chunks
        self.gate = gate
        self.pause_at = pause_at
        self.error = error
        self.cancelled = False
        self.closed = False

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        for index, chunk in enumerate(self.chunks):
            if self.gate is not None and index == self.pause_at:
                await self.gate.wait()
            if self.cancelled:
                return
            yield chunk
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error

    def cancel(self) -> None:
        self.cancelled = True

    async def aclose(self) -> None:
        self.closed = True


class FakeTransport:
    """StreamTransport returning one scripted FakeByteStream per open() call."""

    def __init__(self, *streams: FakeByteStream, open_error: Exception | None = None) -> None:
        self.streams = list(streams)
        self.open_error = open_error
        self.requests: list[Any] = []
        self.opened: list[FakeByteStream] = []

    async def open(self, request: Any) -> FakeByteStream:
        self.requests.append(request)
        if self.open_error is not None:
            raise self.open_error
        stream = self.streams.pop(0)
        self.opened.append(stream)
        return stream


@pytest.fixture
def make_transport():
    """Factory for FakeTransport instances."""
    return FakeTransport


@pytest.fixture
def make_stream():
    """Factory for FakeByteStream instances."""
    return FakeByteStream


@pytest.fixture
def frame():
    """Encoder for backend frames."""
    return sse
