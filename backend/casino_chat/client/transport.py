"""Realtime transport contract and its WebSocket implementation.

The connection manager only talks to :class:`RealtimeTransport`. A transport
opens one subscription per call to :meth:`RealtimeTransport.subscribe` and
pushes decoded event frames to the callback it was given. The returned
:class:`Subscription` resolves :meth:`Subscription.wait_closed` when the
underlying connection goes away, which is what drives reconnection.

Wire protocol of :class:`WebSocketTransport` (served by ``/ws/{topic}``):
    1. Client connects with ``?token=<bearer token>``.
    2. Server sends ``{"type": "connected", "user_id": "..."}`` first, or
       closes with code 4401 if the token is not accepted.
    3. Server pushes ``{"kind": ..., "payload": {...}}`` event frames.
    4. Client may send ``{"type": "auth", "token": "..."}`` to rotate the
       credential in place; the server answers ``{"type": "token_updated"}``.
"""
from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional
from urllib.parse import quote, urlencode

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from .errors import AuthExpiredError, ChatConnectionError, ChatError

logger = logging.getLogger(__name__)

# Close code the chat service uses for a rejected credential
AUTH_REJECTED_CLOSE_CODE = 4401

EventCallback = Callable[[Any], None]


class Subscription(ABC):
    """A live subscription to one topic."""

    @abstractmethod
    async def wait_closed(self) -> Optional[ChatError]:
        """Wait until the subscription ends.

        Returns:
            None if it was closed locally, otherwise the error describing why
            the transport went away.
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the subscription. Safe to call more than once."""

    async def update_token(self, token: str) -> bool:
        """Rotate the credential without reconnecting.

        Returns:
            True if the transport rotated the credential in place, False if
            it cannot and the caller has to reconnect.
        """
        return False


class RealtimeTransport(ABC):
    """Publish/subscribe transport for chat events."""

    @abstractmethod
    async def subscribe(
        self, topic: str, token: Optional[str], on_event: EventCallback
    ) -> Subscription:
        """Open a subscription to ``topic``.

        Raises:
            AuthExpiredError: If the credential was rejected.
            ChatConnectionError: If the transport could not be opened.
        """


# =============================================================================
# WebSocket transport
# =============================================================================


class WebSocketSubscription(Subscription):
    """Subscription backed by a single WebSocket connection."""

    def __init__(self, ws: ClientConnection, on_event: EventCallback) -> None:
        self._ws = ws
        self._on_event = on_event
        self._closing = False
        self._reader: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._reader = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> Optional[ChatError]:
        try:
            async for raw in self._ws:
                try:
                    data = json.loads(raw)
                except ValueError:
                    logger.warning("[WS] Dropping undecodable frame: %r", raw[:200])
                    continue
                if isinstance(data, dict) and "kind" in data:
                    self._on_event(data)
                else:
                    logger.debug("[WS] Control frame: %s", data)
        except ConnectionClosed:
            pass
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("[WS] Reader failed: %s", exc)
            return ChatConnectionError(f"Realtime reader failed: {exc}")

        if self._closing:
            return None
        code = self._ws.close_code
        if code == AUTH_REJECTED_CLOSE_CODE:
            return AuthExpiredError()
        return ChatConnectionError(
            f"Realtime connection closed (code={code})", {"close_code": code}
        )

    async def wait_closed(self) -> Optional[ChatError]:
        if self._reader is None:
            return None
        return await asyncio.shield(self._reader)

    async def close(self) -> None:
        self._closing = True
        await self._ws.close()
        if self._reader is not None:
            await asyncio.gather(self._reader, return_exceptions=True)

    async def update_token(self, token: str) -> bool:
        try:
            await self._ws.send(json.dumps({"type": "auth", "token": token}))
        except ConnectionClosed:
            return False
        return True


class WebSocketTransport(RealtimeTransport):
    """Realtime transport speaking the chat service's WebSocket protocol.

    Args:
        base_url: ``ws://`` or ``wss://`` origin of the chat service.
        open_timeout: Seconds allowed for the opening handshake.
    """

    def __init__(self, base_url: str, open_timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.open_timeout = open_timeout

    def _url(self, topic: str, token: Optional[str]) -> str:
        url = f"{self.base_url}/ws/{quote(topic, safe='')}"
        if token:
            url = f"{url}?{urlencode({'token': token})}"
        return url

    async def subscribe(
        self, topic: str, token: Optional[str], on_event: EventCallback
    ) -> Subscription:
        logger.info("[WS] Opening %s/ws/%s", self.base_url, topic)
        try:
            ws = await connect(self._url(topic, token), open_timeout=self.open_timeout)
        except InvalidStatus as exc:
            status = exc.response.status_code
            if status in (401, 403):
                raise AuthExpiredError() from exc
            raise ChatConnectionError(f"Handshake rejected with HTTP {status}") from exc
        except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
            raise ChatConnectionError(f"Could not open realtime connection: {exc}") from exc

        try:
            hello = json.loads(await ws.recv())
        except ConnectionClosed as exc:
            if exc.rcvd is not None and exc.rcvd.code == AUTH_REJECTED_CLOSE_CODE:
                raise AuthExpiredError() from exc
            raise ChatConnectionError("Connection closed during handshake") from exc
        except ValueError as exc:
            await ws.close()
            raise ChatConnectionError("Malformed handshake frame") from exc
        except BaseException:
            # Timed out or cancelled while waiting for the connected frame
            await ws.close()
            raise

        if not isinstance(hello, dict) or hello.get("type") != "connected":
            await ws.close()
            raise ChatConnectionError(f"Unexpected handshake frame: {hello!r}")

        logger.info("[WS] Subscribed to %s as %s", topic, hello.get("user_id"))
        subscription = WebSocketSubscription(ws, on_event)
        subscription.start()
        return subscription
