"""The chat session: one object a UI layer talks to.

A :class:`ChatSession` builds and owns its connection manager, message
pipeline, cooldown limiter and presence tracker. Nothing is shared at module
level; everything lives from :meth:`ChatSession.start` to
:meth:`ChatSession.close`, typically one sign-in::

    async with ChatSession.over_http(user, "https://casino.example", token) as chat:
        await chat.send("gl hf")
        print([m.content for m in chat.messages])
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import random
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from casino_chat.config import ClientSettings
from casino_chat.events import EventKind

from .api import HttpChatAPI, MessageStoreAPI, PresenceAPI
from .connection import ConnectionManager, TokenProvider
from .cooldown import CooldownLimiter
from .errors import AuthExpiredError, ChatError
from .models import (
    ChatMessage,
    ChatUser,
    ConnectionHealth,
    ConnectionState,
    ConnectionStatus,
    CooldownState,
    PresenceEntry,
)
from .pipeline import MessagePipeline
from .presence import PresenceTracker
from .transport import RealtimeTransport, WebSocketTransport

logger = logging.getLogger(__name__)

Disposer = Callable[[], Any]


class ChatSession:
    """Composes the chat core behind a single interface.

    Args:
        user: The signed-in user.
        transport: Realtime transport.
        store: Message store collaborator.
        presence_api: Presence collaborator.
        settings: Client tunables; defaults when omitted.
        token: Bearer token for the realtime subscription.
        token_provider: Coroutine function returning a fresh token when the
            current one is rejected.
        clock: Source of timestamps, shared by every component.
        sleep: Coroutine used for backoff and heartbeat waits.
        rng: Random source for backoff jitter.
    """

    def __init__(
        self,
        user: ChatUser,
        transport: RealtimeTransport,
        store: MessageStoreAPI,
        presence_api: PresenceAPI,
        settings: Optional[ClientSettings] = None,
        *,
        token: Optional[str] = None,
        token_provider: Optional[TokenProvider] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.user = user
        self.settings = settings or ClientSettings()
        self._store = store
        self._presence_api = presence_api
        self._token_provider = token_provider

        self.limiter = CooldownLimiter(
            self.settings.cooldown.limit, self.settings.cooldown.window, clock
        )
        self.connection = ConnectionManager.from_settings(
            transport,
            self.settings,
            token,
            token_provider=self._provide_token if token_provider else None,
            rng=rng,
            sleep=sleep,
            clock=clock,
        )
        self.pipeline = MessagePipeline(
            user,
            store,
            self.limiter,
            cache_size=self.settings.cache_size,
            max_length=self.settings.max_message_length,
            send_timeout=self.settings.send_timeout,
            clock=clock,
        )
        self.presence = PresenceTracker.from_settings(
            presence_api, self.settings.presence, clock=clock, sleep=sleep
        )

        self._routes = self._build_routes()
        self._disposers: List[Disposer] = []
        self._background: Set[asyncio.Task] = set()
        self._owned: List[Disposer] = []
        self._started = False
        self._closed = False
        self._error: Optional[ChatError] = None

    @classmethod
    def over_http(
        cls,
        user: ChatUser,
        base_url: str,
        token: str,
        settings: Optional[ClientSettings] = None,
        **kwargs,
    ) -> "ChatSession":
        """Session talking to the chat service at ``base_url`` (http/https)."""
        settings = settings or ClientSettings()
        api = HttpChatAPI(base_url, token=token, timeout=settings.send_timeout)
        ws_url = "ws" + base_url[len("http"):] if base_url.startswith("http") else base_url
        transport = WebSocketTransport(ws_url, open_timeout=settings.reconnect.connect_timeout)
        session = cls(user, transport, api, api, settings, token=token, **kwargs)
        session._owned.append(api.aclose)
        return session

    def _build_routes(self) -> Dict[EventKind, Callable[[Any], None]]:
        routes: Dict[EventKind, Callable[[Any], None]] = {
            EventKind.MESSAGE_NEW: lambda event: self.pipeline.apply_new(event.payload),
            EventKind.MESSAGE_UPDATE: lambda event: self.pipeline.apply_update(event.payload),
            EventKind.MESSAGE_DELETE: lambda event: self.pipeline.apply_delete(event.payload),
            EventKind.PRESENCE_ONLINE: lambda event: self.presence.mark_online(event.payload),
            EventKind.PRESENCE_UPDATE: lambda event: self.presence.mark_seen(event.payload),
            EventKind.PRESENCE_OFFLINE: lambda event: self.presence.mark_offline(event.payload),
        }
        missing = set(EventKind) - set(routes)
        if missing:
            raise RuntimeError(f"No handler for event kinds: {sorted(k.value for k in missing)}")
        return routes

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def messages(self) -> List[ChatMessage]:
        return self.pipeline.messages

    @property
    def connection_state(self) -> ConnectionState:
        return self.connection.state

    @property
    def connection_status(self) -> ConnectionStatus:
        return self.connection.status

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    @property
    def connection_health(self) -> ConnectionHealth:
        """Health summary of the realtime link, for diagnostics."""
        state = self.connection.state
        return ConnectionHealth(
            status=state.status,
            is_healthy=self._started and not self._closed and self.connection.is_connected,
            is_authenticated=not isinstance(state.last_error, AuthExpiredError),
            reconnect_attempt=state.reconnect_attempt,
            max_reconnect_attempts=state.max_reconnect_attempts,
            next_reconnect_delay=state.next_reconnect_delay,
            last_connected_at=state.last_connected_at,
            pending_messages=sum(1 for message in self.pipeline.messages if message.is_pending),
            last_error=state.last_error,
        )

    @property
    def online_users(self) -> List[PresenceEntry]:
        return self.presence.online_users()

    @property
    def online_count(self) -> int:
        return self.presence.online_count()

    @property
    def cooldown_state(self) -> CooldownState:
        return self.limiter.peek(self.user.user_id)

    @property
    def error(self) -> Optional[ChatError]:
        """Last error surfaced to the user by send or delete."""
        return self._error

    def clear_error(self) -> None:
        self._error = None

    def on_messages_change(self, handler: Callable[[List[ChatMessage]], None]) -> Disposer:
        return self.pipeline.on_change(handler)

    def on_status_change(self, handler: Callable[[ConnectionState], None]) -> Disposer:
        return self.connection.on_status_change(handler)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, wait: bool = False, timeout: Optional[float] = None) -> None:
        """Wire subscriptions, start the heartbeat and connect.

        Calling it again while started does nothing.

        Args:
            wait: Return only once connected.
            timeout: Seconds to wait when ``wait`` is set.
        """
        self._ensure_open()
        if self._started:
            logger.debug("[Session] start() ignored, already started")
            return
        self._started = True
        logger.info("[Session] Starting chat for %s", self.user.user_id)

        self._disposers.append(self.connection.on_message(self._route))
        self._disposers.append(self.connection.on_status_change(self._on_status, replay=False))
        self.presence.start_heartbeat()
        self._disposers.append(self.presence.stop)
        self.connection.connect()
        self._disposers.append(self.connection.disconnect)

        if wait:
            await self.connection.wait_for(ConnectionStatus.CONNECTED, timeout=timeout)

    async def close(self) -> None:
        """Tear everything down exactly once."""
        if self._closed:
            return
        self._closed = True
        logger.info("[Session] Closing chat for %s", self.user.user_id)

        disposers, self._disposers = self._disposers, []
        for disposer in reversed(disposers):
            await self._dispose(disposer)

        tasks, self._background = list(self._background), set()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        owned, self._owned = self._owned, []
        for disposer in owned:
            await self._dispose(disposer)

    async def _dispose(self, disposer: Disposer) -> None:
        try:
            result = disposer()
            if inspect.isawaitable(result):
                await result
        except Exception:  # pylint: disable=broad-except
            logger.exception("[Session] Teardown step failed")

    async def __aenter__(self) -> "ChatSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _route(self, event) -> None:
        self._routes[EventKind(event.kind)](event)

    def _on_status(self, state: ConnectionState) -> None:
        if state.status is ConnectionStatus.CONNECTED:
            self._spawn(self._sync_after_connect())

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _sync_after_connect(self) -> None:
        """Backfill messages and roster missed while not connected."""
        try:
            snapshot = await self._store.list_messages(self.settings.cache_size)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("[Session] Message snapshot failed: %s", exc)
        else:
            self.pipeline.load_snapshot(snapshot)
        await self.presence.refresh()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("ChatSession is closed")

    async def send(self, content: str) -> ChatMessage:
        self._ensure_open()
        try:
            return await self.pipeline.send(content)
        except ChatError as exc:
            self._error = exc
            raise

    async def delete_message(self, message_id: str) -> None:
        self._ensure_open()
        try:
            await self.pipeline.delete_message(message_id)
        except ChatError as exc:
            self._error = exc
            raise

    def reconnect(self) -> None:
        """Explicit retry, e.g. after reconnect attempts were exhausted."""
        self._ensure_open()
        self.connection.connect()

    async def update_token(self, token: str) -> None:
        self._ensure_open()
        self._apply_token(token)
        await self.connection.update_token(token)

    def _apply_token(self, token: str) -> None:
        self._store.set_token(token)
        if self._presence_api is not self._store:
            self._presence_api.set_token(token)

    async def _provide_token(self) -> str:
        token = await self._token_provider()
        self._apply_token(token)
        return token
