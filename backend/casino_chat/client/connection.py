"""Realtime connection lifecycle for a chat session.

The :class:`ConnectionManager` keeps exactly one subscription to the chat
topic alive and is the single source of truth for "am I live". A supervisor
task drives the state machine::

    disconnected --connect()-------------> connecting
    connecting   --transport open--------> connected     (attempt reset to 0)
    connecting   --error / timeout-------> reconnecting  (attempts remain)
                                         | disconnected  (attempts exhausted)
    connected    --transport lost--------> reconnecting
    reconnecting --backoff elapsed-------> connecting    (attempt + 1)
    any          --disconnect()----------> disconnected

Transport failures never propagate to callers. They are reported through
``on_status_change`` as ``last_error``. Once attempts are exhausted the
manager stays ``disconnected`` until :meth:`ConnectionManager.connect` is
called again.

Thread Safety:
    Designed for a single asyncio event loop; not safe to share across
    threads.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from casino_chat.config import ClientSettings
from casino_chat.events import parse_event

from .errors import AuthExpiredError, ChatConnectionError, ChatError
from .models import ConnectionState, ConnectionStatus
from .transport import RealtimeTransport, Subscription

logger = logging.getLogger(__name__)

StatusHandler = Callable[[ConnectionState], None]
EventHandler = Callable[[object], None]
TokenProvider = Callable[[], Awaitable[str]]
Unsubscribe = Callable[[], None]

# Exponent cap so the doubling never overflows a float
_MAX_BACKOFF_EXPONENT = 32


def compute_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: float = 0.0,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay before retry number ``attempt + 1``.

    ``min(base_delay * 2**attempt, max_delay)``, then spread by ``±jitter``
    (a fraction) and capped at ``max_delay`` again.
    """
    delay = min(base_delay * (2 ** min(attempt, _MAX_BACKOFF_EXPONENT)), max_delay)
    if jitter:
        delay *= 1 + jitter * (2 * rng() - 1)
    return max(0.0, min(delay, max_delay))


class ConnectionManager:
    """Owns the realtime subscription and its reconnection state machine.

    Args:
        transport: Realtime transport used to open subscriptions.
        topic: Topic to subscribe to.
        token: Initial bearer token.
        base_delay: First backoff delay in seconds.
        max_delay: Backoff ceiling in seconds.
        max_attempts: Reconnect attempts before giving up.
        jitter: Backoff spread as a fraction (0.2 = ±20%).
        connect_timeout: Seconds a single attempt may take to open.
        token_provider: Coroutine function returning a fresh token when the
            current one is rejected.
        rng: Random source for jitter.
        sleep: Coroutine used to wait out backoff delays.
        clock: Source of the ``last_connected_at`` timestamp.
    """

    def __init__(
        self,
        transport: RealtimeTransport,
        topic: str = "chat",
        token: Optional[str] = None,
        *,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        max_attempts: int = 5,
        jitter: float = 0.2,
        connect_timeout: float = 10.0,
        token_provider: Optional[TokenProvider] = None,
        rng: Callable[[], float] = random.random,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.topic = topic
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.jitter = jitter
        self.connect_timeout = connect_timeout

        self._transport = transport
        self._token = token
        self._token_provider = token_provider
        self._rng = rng
        self._sleep = sleep
        self._clock = clock

        self._state = ConnectionState(max_reconnect_attempts=max_attempts)
        self._status_handlers: List[StatusHandler] = []
        self._event_handlers: List[EventHandler] = []
        self._task: Optional[asyncio.Task] = None
        self._subscription: Optional[Subscription] = None
        self._restart_now = False

    @classmethod
    def from_settings(
        cls,
        transport: RealtimeTransport,
        settings: ClientSettings,
        token: Optional[str] = None,
        **kwargs,
    ) -> "ConnectionManager":
        reconnect = settings.reconnect
        return cls(
            transport,
            settings.topic,
            token,
            base_delay=reconnect.base_delay,
            max_delay=reconnect.max_delay,
            max_attempts=reconnect.max_attempts,
            jitter=reconnect.jitter,
            connect_timeout=reconnect.connect_timeout,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def status(self) -> ConnectionStatus:
        return self._state.status

    @property
    def is_connected(self) -> bool:
        return self._state.status is ConnectionStatus.CONNECTED

    def _set_state(self, **changes) -> None:
        new_state = self._state.evolve(**changes)
        if new_state == self._state:
            return
        previous, self._state = self._state, new_state
        if previous.status is not new_state.status:
            logger.info(
                "[Connection] %s -> %s (attempt %s)",
                previous.status.value, new_state.status.value, new_state.progress,
            )
        for handler in list(self._status_handlers):
            try:
                handler(new_state)
            except Exception:  # pylint: disable=broad-except
                logger.exception("[Connection] Status handler failed")

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on_status_change(self, handler: StatusHandler, replay: bool = True) -> Unsubscribe:
        """Register ``handler`` for state changes.

        With ``replay`` the handler is called once right away with the
        current state.
        """
        self._status_handlers.append(handler)
        if replay:
            handler(self._state)

        def unsubscribe() -> None:
            if handler in self._status_handlers:
                self._status_handlers.remove(handler)

        return unsubscribe

    def on_message(self, handler: EventHandler) -> Unsubscribe:
        """Register ``handler`` for parsed inbound events."""
        self._event_handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._event_handlers:
                self._event_handlers.remove(handler)

        return unsubscribe

    def _dispatch(self, raw: object) -> None:
        try:
            event = parse_event(raw)
        except PydanticValidationError as exc:
            logger.warning("[Connection] Dropping malformed event: %s", exc.errors()[:1])
            return
        for handler in list(self._event_handlers):
            try:
                handler(event)
            except Exception:  # pylint: disable=broad-except
                logger.exception("[Connection] Event handler failed for %s", event.kind)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def connect(self, token: Optional[str] = None) -> None:
        """Start connecting. No-op while a connection is live or in progress."""
        if token is not None:
            self._token = token
        if self._task is not None and not self._task.done():
            logger.debug("[Connection] connect() ignored, status=%s", self.status.value)
            return
        self._restart_now = False
        self._set_state(
            status=ConnectionStatus.CONNECTING,
            reconnect_attempt=0,
            next_reconnect_delay=None,
            last_error=None,
        )
        self._task = asyncio.create_task(self._run())

    async def disconnect(self) -> None:
        """Tear down the subscription and cancel pending retries. Idempotent."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._set_state(status=ConnectionStatus.DISCONNECTED, next_reconnect_delay=None)

    async def update_token(self, token: str) -> None:
        """Rotate the credential, in place if the transport supports it.

        Otherwise the live subscription is dropped and reopened right away
        with the new token.
        """
        self._token = token
        subscription = self._subscription
        if subscription is None:
            return
        try:
            rotated = await subscription.update_token(token)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("[Connection] In-place token rotation failed: %s", exc)
            rotated = False
        if rotated:
            logger.info("[Connection] Token rotated in place")
            return
        logger.info("[Connection] Transport cannot rotate tokens, reconnecting")
        self._restart_now = True
        await subscription.close()

    async def wait_for(
        self, *statuses: ConnectionStatus, timeout: Optional[float] = None
    ) -> ConnectionState:
        """Wait until the status is one of ``statuses``."""
        if self._state.status in statuses:
            return self._state
        future = asyncio.get_running_loop().create_future()

        def _on_state(state: ConnectionState) -> None:
            if state.status in statuses and not future.done():
                future.set_result(state)

        unsubscribe = self.on_status_change(_on_state, replay=False)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            unsubscribe()

    # ------------------------------------------------------------------
    # Supervisor
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        retrying = False
        while True:
            if retrying:
                self._set_state(
                    status=ConnectionStatus.CONNECTING,
                    reconnect_attempt=self._state.reconnect_attempt + 1,
                    next_reconnect_delay=None,
                )
            error = await self._attempt()
            if error is None:
                # Closed locally through update_token(): reopen immediately
                retrying = False
                self._set_state(status=ConnectionStatus.CONNECTING)
                continue

            if isinstance(error, AuthExpiredError) and not await self._refresh_token():
                logger.error("[Connection] Credential rejected, re-authentication required")
                self._set_state(
                    status=ConnectionStatus.DISCONNECTED,
                    next_reconnect_delay=None,
                    last_error=error,
                )
                return

            if self._state.reconnect_attempt >= self.max_attempts:
                logger.error(
                    "[Connection] Giving up after %d attempts: %s",
                    self._state.reconnect_attempt, error.message,
                )
                self._set_state(
                    status=ConnectionStatus.DISCONNECTED,
                    next_reconnect_delay=None,
                    last_error=error,
                )
                return

            delay = compute_backoff(
                self._state.reconnect_attempt,
                self.base_delay,
                self.max_delay,
                self.jitter,
                self._rng,
            )
            logger.warning(
                "[Connection] %s; retry %d/%d in %.2fs",
                error.message, self._state.reconnect_attempt + 1, self.max_attempts, delay,
            )
            self._set_state(
                status=ConnectionStatus.RECONNECTING,
                next_reconnect_delay=delay,
                last_error=error,
            )
            await self._sleep(delay)
            retrying = True

    async def _attempt(self) -> Optional[ChatError]:
        """Open one subscription and hold it until it ends.

        Returns the error that ended it, or None when it was closed locally
        for an immediate restart.
        """
        try:
            subscription = await asyncio.wait_for(
                self._transport.subscribe(self.topic, self._token, self._dispatch),
                self.connect_timeout,
            )
        except asyncio.TimeoutError:
            return ChatConnectionError(f"Connect timed out after {self.connect_timeout}s")
        except ChatError as exc:
            return exc
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("[Connection] Transport raised unexpectedly")
            return ChatConnectionError(f"Transport error: {exc}")

        self._subscription = subscription
        self._set_state(
            status=ConnectionStatus.CONNECTED,
            reconnect_attempt=0,
            next_reconnect_delay=None,
            last_error=None,
            last_connected_at=self._clock(),
        )
        try:
            error = await subscription.wait_closed()
        finally:
            self._subscription = None
            await subscription.close()

        if self._restart_now:
            self._restart_now = False
            return None
        return error or ChatConnectionError("Realtime connection closed")

    async def _refresh_token(self) -> bool:
        if self._token_provider is None:
            return False
        try:
            self._token = await self._token_provider()
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("[Connection] Token refresh failed: %s", exc)
            return False
        logger.info("[Connection] Obtained a fresh token after rejection")
        return True
