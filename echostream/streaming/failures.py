"""Failure classification for stream errors.

Capacity problems (rate limits, upstream overload, the server's cap on
concurrent streams) are surfaced as distinct warnings rather than a
generic failure. Classification inspects the HTTP status when there is one
and otherwise the error text, which the backend writes in Chinese or
English depending on where it originated.
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from echostream.exceptions import ProtocolError, TransportError
from echostream.models import FailureKind

_CONCURRENCY_HINTS = (
    "concurrent",
    "too many streams",
    "too many connections",
    "并发",
    "连接数",
)
_RATE_LIMIT_HINTS = (
    "rate limit",
    "rate-limit",
    "ratelimit",
    "too many requests",
    "429",
    "限流",
    "系统繁忙",
    "请求过于频繁",
)
_OVERLOAD_HINTS = (
    "overload",
    "service unavailable",
    "capacity",
    "503",
    "529",
    "过载",
    "服务暂不可用",
    "服务繁忙",
)

USER_MESSAGES = {
    FailureKind.RATE_LIMITED: "Too many requests. Please wait a moment and try again.",
    FailureKind.UPSTREAM_OVERLOADED: "The model service is overloaded. Please try again shortly.",
    FailureKind.CONCURRENCY_LIMIT: "Too many answers are streaming at once. Wait for one to finish.",
}


@dataclass(frozen=True)
class StreamFailure:
    """A classified stream failure.

    Attributes:
        kind: Coarse classification.
        message: Text to show the user.
        detail: Raw error text as received.
        status_code: HTTP status, when the failure came from the transport.
    """

    kind: FailureKind
    message: str
    detail: str = ""
    status_code: int | None = None

    @property
    def is_capacity(self) -> bool:
        return self.kind != FailureKind.GENERIC


def classify_failure(detail: str, status_code: int | None = None) -> StreamFailure:
    """Classify an error by HTTP status and error text.

    Args:
        detail: Error text from an ``error`` frame or the response body.
        status_code: HTTP status code, if known.

    Returns:
        The classified failure.
    """
    text = (detail or "").lower()

    if any(hint in text for hint in _CONCURRENCY_HINTS):
        kind = FailureKind.CONCURRENCY_LIMIT
    elif status_code == 429 or any(hint in text for hint in _RATE_LIMIT_HINTS):
        kind = FailureKind.RATE_LIMITED
    elif status_code in (502, 503, 529) or any(hint in text for hint in _OVERLOAD_HINTS):
        kind = FailureKind.UPSTREAM_OVERLOADED
    else:
        kind = FailureKind.GENERIC

    message = USER_MESSAGES.get(kind) or detail or "The answer failed. Please try again."
    return StreamFailure(kind=kind, message=message, detail=detail or "", status_code=status_code)


def failure_from_exception(exc: BaseException) -> StreamFailure:
    """Classify an exception raised while opening or reading a stream."""
    if isinstance(exc, TransportError):
        return classify_failure(exc.body or str(exc), exc.status_code)
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_failure(str(exc), exc.response.status_code)
    if isinstance(exc, httpx.TimeoutException):
        return classify_failure(f"Stream timed out: {exc}")
    if isinstance(exc, ProtocolError):
        return classify_failure(f"Protocol error: {exc}")
    return classify_failure(str(exc) or type(exc).__name__)
