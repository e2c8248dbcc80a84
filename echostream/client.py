"""REST client for conversations and message histories.

Plain request/response calls against the chat backend. Every response is
wrapped in the backend's result envelope::

    {"code": 200, "message": "操作成功", "data": ..., "timestamp": 1700000000000}

Anything other than ``code == 200`` raises PersistenceError.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from echostream.exceptions import PersistenceError
from echostream.models import ChatReply, Conversation, Message
from echostream.settings import Settings, get_settings
from echostream.transport import StreamRequest, api_url, default_headers

logger = logging.getLogger(__name__)

CONVERSATIONS_PATH = "/v1/chat/conversations"
MESSAGE_PATH = "/v1/chat/message"
SUCCESS_CODE = 200


class ChatApiClient:
    """Conversation CRUD, message-list fetch and the non-streaming send.

    Usage::

        client = ChatApiClient()
        conversations = await client.list_conversations(page=1, size=20)
        history = await client.get_messages(conversations[0].id)
        await client.close()
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
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    self.settings.request_timeout_seconds,
                    connect=self.settings.connect_timeout_seconds,
                ),
            )
        return self._http_client

    async def close(self) -> None:
        """Close the shared HTTP client if this instance created it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        timeout: Any = httpx.USE_CLIENT_DEFAULT,
    ) -> Any:
        """Send a request and unwrap the result envelope.

        Returns:
            The envelope's ``data`` field.

        Raises:
            PersistenceError: On connection failure, non-2xx status, a
                non-success result code or an unparseable body.
        """
        url = api_url(self.settings, path)
        client = self._get_http_client()
        try:
            response = await client.request(
                method,
                url,
                params=params,
                json=json,
                headers=default_headers(self.settings),
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise PersistenceError(f"{method} {path}: Timeout") from e
        except httpx.HTTPError as e:
            raise PersistenceError(f"{method} {path}: Connection failed ({type(e).__name__})") from e

        if not response.is_success:
            raise PersistenceError(
                f"{method} {path}: HTTP {response.status_code}",
                status_code=response.status_code,
            )

        if not response.content:
            return None

        try:
            body = response.json()
        except ValueError as e:
            raise PersistenceError(f"{method} {path}: Invalid JSON response") from e

        if not isinstance(body, dict) or "code" not in body:
            # Bare payload without the envelope
            return body

        code = body.get("code")
        if code != SUCCESS_CODE:
            raise PersistenceError(
                f"{method} {path}: {body.get('message') or 'request failed'}",
                code=code,
                status_code=response.status_code,
            )
        return body.get("data")

    async def list_conversations(self, page: int = 1, size: int | None = None) -> list[Conversation]:
        data = await self._request(
            "GET",
            CONVERSATIONS_PATH,
            params={"page": page, "size": size or self.settings.page_size},
        )
        # The endpoint returns either a bare list or a page result
        items = data.get("list", []) if isinstance(data, dict) else data or []
        return _validate_all(Conversation, items, "conversation")

    async def create_conversation(self, title: str | None = None) -> Conversation:
        params = {"title": title} if title else None
        data = await self._request("POST", CONVERSATIONS_PATH, params=params)
        try:
            return Conversation.model_validate(data)
        except ValidationError as e:
            raise PersistenceError(f"Invalid conversation in create response: {e}") from e

    async def rename_conversation(self, conversation_id: int, title: str) -> None:
        await self._request("PUT", f"{CONVERSATIONS_PATH}/{conversation_id}", params={"title": title})

    async def delete_conversation(self, conversation_id: int) -> None:
        await self._request("DELETE", f"{CONVERSATIONS_PATH}/{conversation_id}")

    async def get_messages(self, conversation_id: int) -> list[Message]:
        data = await self._request("GET", f"{CONVERSATIONS_PATH}/{conversation_id}/messages")
        return _validate_all(Message, data or [], "message")

    async def send_message(self, message: str, conversation_id: int | None = None) -> ChatReply:
        """Send a message and wait for the complete answer.

        Uses the same request body as the streaming endpoint. The answer is
        generated before the response is sent, so the read timeout is the
        stream timeout.
        """
        request = StreamRequest(
            message=message,
            conversation_id=conversation_id,
            enable_context=self.settings.enable_context,
            context_rounds=self.settings.context_rounds,
        )
        data = await self._request(
            "POST",
            MESSAGE_PATH,
            json=request.to_payload(),
            timeout=httpx.Timeout(
                self.settings.stream_timeout_seconds,
                connect=self.settings.connect_timeout_seconds,
            ),
        )
        try:
            return ChatReply.model_validate(data)
        except ValidationError as e:
            raise PersistenceError(f"Invalid chat response: {e}") from e


def _validate_all(model: type[Any], items: list[Any], label: str) -> list[Any]:
    result = []
    for item in items:
        try:
            result.append(model.model_validate(item))
        except ValidationError as e:
            logger.warning("Skipping invalid %s: %s", label, e)
    return result
