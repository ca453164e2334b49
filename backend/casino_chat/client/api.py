"""Message store and presence collaborators, plus their HTTP client.

The pipeline and the presence tracker depend on the abstract
:class:`MessageStoreAPI` and :class:`PresenceAPI`; :class:`HttpChatAPI`
implements both against the chat service REST endpoints with httpx.

Status mapping of :class:`HttpChatAPI`:
    - 401 → :class:`AuthExpiredError`
    - 429 → :class:`RateLimitError` (``reset_at`` from the body)
    - 400/422 → :class:`ValidationError`
    - other 4xx/5xx, timeouts, transport errors → :class:`NetworkError`
"""
from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from casino_chat.events import MessagePayload, PresencePayload

from .errors import AuthExpiredError, NetworkError, RateLimitError, ValidationError

logger = logging.getLogger(__name__)


class MessageStoreAPI(ABC):
    """Recent-message store."""

    @abstractmethod
    async def list_messages(self, limit: int) -> List[MessagePayload]:
        """Return up to ``limit`` messages, most recent first."""

    @abstractmethod
    async def send_message(self, content: str, correlation_id: str) -> MessagePayload:
        """Store a message and return it with its server id."""

    @abstractmethod
    async def delete_message(self, message_id: str) -> None:
        """Soft-delete a message (owner or moderator)."""

    def set_token(self, token: str) -> None:
        """Use ``token`` for subsequent calls."""


class PresenceAPI(ABC):
    """Online roster service."""

    @abstractmethod
    async def ping(self) -> None:
        """Mark the caller as online."""

    @abstractmethod
    async def list_online(self) -> List[PresencePayload]:
        """Return the current roster."""

    def set_token(self, token: str) -> None:
        """Use ``token`` for subsequent calls."""


class HttpChatAPI(MessageStoreAPI, PresenceAPI):
    """httpx client for the chat service REST API.

    Args:
        base_url: ``http://`` or ``https://`` origin of the chat service.
        token: Bearer token sent with every request.
        timeout: Per-request timeout in seconds.
        client: Pre-built ``httpx.AsyncClient`` (tests pass one bound to an
            ASGI transport). Its ``base_url`` is used as-is.
    """

    def __init__(
        self,
        base_url: str = "",
        token: Optional[str] = None,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._token = token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    def set_token(self, token: str) -> None:
        self._token = token

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"{method} {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"{method} {path} failed: {exc}") from exc

        if response.status_code == 401:
            raise AuthExpiredError()

        body = _json_or_empty(response)
        if response.status_code == 429:
            reset_at = body.get("reset_at")
            raise RateLimitError(
                float(reset_at) if reset_at is not None else time.time(),
                body.get("detail"),
            )
        if response.status_code in (400, 422):
            detail = body.get("detail")
            raise ValidationError(detail if isinstance(detail, str) else "Message rejected by server")
        if response.is_error:
            detail = body.get("detail") or response.reason_phrase
            logger.warning("%s %s -> %d %s", method, path, response.status_code, detail)
            raise NetworkError(str(detail), status_code=response.status_code)
        return body

    async def list_messages(self, limit: int) -> List[MessagePayload]:
        body = await self._request("GET", "/api/chat/messages", params={"limit": limit})
        return [MessagePayload(**item) for item in body.get("messages", [])]

    async def send_message(self, content: str, correlation_id: str) -> MessagePayload:
        body = await self._request(
            "POST",
            "/api/chat/messages",
            json={"content": content, "correlation_id": correlation_id},
        )
        return MessagePayload(**body["chat_message"])

    async def delete_message(self, message_id: str) -> None:
        await self._request("DELETE", f"/api/chat/messages/{message_id}")

    async def ping(self) -> None:
        await self._request("POST", "/api/chat/presence")

    async def list_online(self) -> List[PresencePayload]:
        body = await self._request("GET", "/api/chat/online")
        return [PresencePayload(**item) for item in body.get("online_users", [])]


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
