"""echostream exception hierarchy.

Base exceptions for the streaming core and its collaborators, with
correlation ID support.

Usage:
    from echostream.exceptions import PersistenceError, TransportError

    try:
        await client.list_conversations()
    except PersistenceError as e:
        logger.error("List failed (%s): %s", e.correlation_id, e)
"""

import uuid


class EchoStreamError(Exception):
    """Base exception for all echostream errors.

    Carries a correlation_id for tracing errors across layers.
    """

    def __init__(self, message: str, *, correlation_id: str | None = None):
        self.correlation_id = correlation_id or str(uuid.uuid4())
        super().__init__(message)


class TransportError(EchoStreamError):
    """Errors from the streaming transport.

    Raised when the stream request cannot be opened or the server answers
    with a non-2xx status. ``body`` holds the (truncated) response text so
    capacity errors can be classified.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: str | None = None,
        correlation_id: str | None = None,
    ):
        self.status_code = status_code
        self.body = body or ""
        super().__init__(message, correlation_id=correlation_id)


class PersistenceError(EchoStreamError):
    """Errors from the conversation/message REST API."""

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        status_code: int | None = None,
        correlation_id: str | None = None,
    ):
        self.code = code
        self.status_code = status_code
        super().__init__(message, correlation_id=correlation_id)


class ProtocolError(EchoStreamError):
    """A stream violated the event protocol (e.g. conflicting conversation ids)."""

    pass


class ConfigurationError(EchoStreamError):
    """Errors from application configuration."""

    pass
