"""HTTP streaming transport for chat answers.

Opens ``POST /v1/chat/message/stream`` and exposes the response body as an
incremental byte stream with a cancel control. Timeouts are owned here;
the streaming core only reacts to the resulting errors.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from echostream.exceptions import ConfigurationError, TransportError
from echostream.settings import Settings, get_settings

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)

STREAM_PATH = "/v1/chat/message/stream"
_MAX_ERROR_BODY = 500


def api_url(settings: Settings, path: str) -> str:
    """Absolute URL of a backend endpoint.

    Raises:
        ConfigurationError: If the configured base URL is not http(s).
    """
    base = settings.api_base_url.rstrip("/")
    if not base.startswith(("http://", "https://")):
        raise ConfigurationError(f"api_base_url must be an http(s) URL, got {settings.api_base_url!r}")
    return f"{base}{path}"


def default_headers(settings: Settings) -> dict[str, str]:
    """Headers sent with every backend request."""
    headers: dict[str, str] = {}
    token = settings.api_token.get_secret_value()
    if token:
        headers["Authorization"] = f"Bearer {token}"
    if settings.user_id is not None:
        headers["X-User-Id"] = str(settings.user_id)
    return headers


@dataclass(frozen=True)
class StreamRequest:
    """One chat turn; the same body serves the streaming and the plain send endpoint."""

    message: str
    conversation_id: int | None = None
    enable_context: bool = True
    context_rounds: int = 5

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "message": self.message,
            "enableContext": self.enable_context,
            "contextRounds": self.context_rounds,
        }
        if self.conversation_id is not None:
            payload["conversationId"] = self.conversation_id
        return payload


class ByteStream(Protocol):
    """Incremental response body with a cancel control."""

    def aiter_bytes(self) -> AsyncIterator[bytes]: ...

    def cancel(self) -> None: ...

    async def aclose(self) -> None: ...


class StreamTransport(Protocol):
    """Anything that can open a stream request."""

    async def open(self, request: StreamRequest) -> ByteStream: ...


class HttpByteStream:
    """Byte stream over an ``httpx`` streaming response."""

    def __init__(self, response: httpx.Response) -> None:
        self._response = response
        self._cancelled = False

    @property
    def status_code(self) -> int:
        return self._response.status_code

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        if self._cancelled:
            return
        async for chunk in self._response.aiter_bytes():
            if self._cancelled:
                break
            yield chunk

    def cancel(self) -> None:
        """Stop yielding chunks; the owner closes the response."""
        self._cancelled = True

    async def aclose(self) -> None:
        await self._response.aclose()


class HttpStreamTransport:
    """Opens streaming chat requests against the backend.

    Usage::

        transport = HttpStreamTransport()
        stream = await transport.open(StreamRequest(message="Hello"))
        try:
            async for chunk in stream.aiter_bytes():
                ...
        finally:
            await stream.aclose()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._http_client = client
        self._owns_client = client is None

    def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create the shared httpx.AsyncClient.

        Created lazily and reused so concurrent streams share the
        connection pool.
        """
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    self.settings.stream_timeout_seconds,
                    connect=self.settings.connect_timeout_seconds,
                ),
                limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
            )
        return self._http_client

    async def open(self, request: StreamRequest) -> HttpByteStream:
        """Send the request and return the response body as a byte stream.

        Raises:
            TransportError: On connection failure, timeout or non-2xx status.
        """
        client = self._get_http_client()
        headers = {"Accept": "text/event-stream", **default_headers(self.settings)}
        http_request = client.build_request(
            "POST",
            api_url(self.settings, STREAM_PATH),
            json=request.to_payload(),
            headers=headers,
        )

        try:
            response = await client.send(http_request, stream=True)
        except httpx.TimeoutException as e:
            raise TransportError(f"Timed out opening stream: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Connection failed: {type(e).__name__}: {e}") from e

        if not response.is_success:
            try:
                raw = await response.aread()
            finally:
                await response.aclose()
            body = raw.decode("utf-8", errors="replace")[:_MAX_ERROR_BODY]
            logger.warning("Stream request rejected: HTTP %s %s", response.status_code, body[:200])
            raise TransportError(
                f"HTTP error! status: {response.status_code}",
                status_code=response.status_code,
                body=body,
            )

        return HttpByteStream(response)

    async def close(self) -> None:
        """Close the shared HTTP client if this transport created it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None
