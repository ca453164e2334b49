"""Optimistic send and server reconciliation for chat messages.

Reconciliation rules, keyed by correlation id for the local user's own
messages and by server id for everything else:

    send()                   -> pending entry appended before the network call
    send() succeeds          -> pending entry confirmed, adopts server id
    send() fails             -> entry removed, error raised with the failed message
    message.new (own)        -> confirms the pending entry, never inserts
    message.new (other)      -> appended as confirmed unless the id is known
    message.update           -> content replaced, or entry removed if soft-deleted
    message.delete           -> entry removed
    snapshot after connect   -> backfills messages missed while offline

Every mutation first looks the entry up again, so a network call that
resolves after the entry was evicted, deleted or reconciled by an echo is
harmless.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import replace
from typing import Callable, Iterable, List, Optional

from casino_chat.events import MessagePayload, MessageRef

from .api import MessageStoreAPI
from .cache import DEFAULT_CACHE_SIZE, MessageCache
from .cooldown import CooldownLimiter
from .errors import ChatError, NetworkError, RateLimitError
from .models import ChatMessage, ChatUser, MessageState
from .validation import MAX_MESSAGE_LENGTH, validate_content

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[List[ChatMessage]], None]


def _new_correlation_id() -> str:
    return str(uuid.uuid4())


class MessagePipeline:
    """Owns the local message cache and every change made to it.

    Args:
        user: The signed-in user; own messages are recognised by its id.
        store: Message store collaborator.
        limiter: Cooldown consulted before each send.
        cache_size: Capacity of the local cache.
        max_length: Maximum content length in UTF-16 code units.
        send_timeout: Seconds before a pending send is treated as failed.
        clock: Source of client timestamps.
        id_factory: Generates correlation ids.
    """

    def __init__(
        self,
        user: ChatUser,
        store: MessageStoreAPI,
        limiter: CooldownLimiter,
        *,
        cache_size: int = DEFAULT_CACHE_SIZE,
        max_length: int = MAX_MESSAGE_LENGTH,
        send_timeout: float = 15.0,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], str] = _new_correlation_id,
    ) -> None:
        self.user = user
        self.max_length = max_length
        self.send_timeout = send_timeout
        self._store = store
        self._limiter = limiter
        self._clock = clock
        self._id_factory = id_factory
        self._cache = MessageCache(cache_size)
        self._change_handlers: List[ChangeHandler] = []

    @property
    def messages(self) -> List[ChatMessage]:
        """Cached messages, oldest first."""
        return self._cache.snapshot()

    def on_change(self, handler: ChangeHandler) -> Callable[[], None]:
        """Call ``handler`` with the message list after every change."""
        self._change_handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._change_handlers:
                self._change_handlers.remove(handler)

        return unsubscribe

    def _notify(self) -> None:
        if not self._change_handlers:
            return
        messages = self._cache.snapshot()
        for handler in list(self._change_handlers):
            try:
                handler(messages)
            except Exception:  # pylint: disable=broad-except
                logger.exception("[Pipeline] Change handler failed")

    def _append(self, message: ChatMessage) -> bool:
        try:
            self._cache.append(message)
        except KeyError:
            logger.warning("[Pipeline] Ignoring duplicate correlation id %s", message.correlation_id)
            return False
        return True

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, content: str) -> ChatMessage:
        """Send ``content`` optimistically.

        The pending entry is in the cache before this coroutine first
        suspends.

        Returns:
            A copy of the confirmed message.

        Raises:
            ValidationError: Content empty or too long (nothing sent).
            RateLimitError: Cooldown active (nothing sent).
            NetworkError: The call failed; the entry was removed and the
                error's ``failed_message`` holds it in ``failed`` state.
            AuthExpiredError: The server rejected the credential; the entry
                was removed.
        """
        text = validate_content(content, self.max_length)

        now = self._clock()
        decision = self._limiter.attempt(self.user.user_id, now)
        if not decision.allowed:
            raise RateLimitError(decision.reset_at)

        correlation_id = self._id_factory()
        pending = ChatMessage(
            id=correlation_id,
            correlation_id=correlation_id,
            author_id=self.user.user_id,
            author_name=self.user.username,
            content=text,
            created_at=now,
            state=MessageState.PENDING,
        )
        self._append(pending)
        self._notify()
        logger.debug("[Pipeline] Sending %s", correlation_id)

        try:
            payload = await asyncio.wait_for(
                self._store.send_message(text, correlation_id), self.send_timeout
            )
        except asyncio.CancelledError:
            self._roll_back(pending)
            raise
        except asyncio.TimeoutError:
            error = NetworkError(f"Sending timed out after {self.send_timeout}s")
            error.failed_message = self._roll_back(pending)
            raise error
        except NetworkError as exc:
            exc.failed_message = self._roll_back(pending)
            raise
        except ChatError:
            self._roll_back(pending)
            raise
        except Exception as exc:  # pylint: disable=broad-except
            failed = self._roll_back(pending)
            raise NetworkError(f"Failed to send message: {exc}", failed_message=failed) from exc

        confirmed = self._confirm(correlation_id, payload)
        if confirmed is None:
            # Evicted or cleared while in flight
            confirmed = ChatMessage.from_payload(payload)
            confirmed.correlation_id = correlation_id
        return replace(confirmed)

    def _roll_back(self, pending: ChatMessage) -> ChatMessage:
        if self._cache.remove(pending.correlation_id) is not None:
            self._notify()
        logger.info("[Pipeline] Send %s failed, rolled back", pending.correlation_id)
        return replace(pending, state=MessageState.FAILED)

    async def delete_message(self, message_id: str) -> None:
        """Delete a message on the server, then drop it locally.

        On failure the cache is left untouched and the error is raised.
        """
        try:
            await asyncio.wait_for(self._store.delete_message(message_id), self.send_timeout)
        except asyncio.TimeoutError as exc:
            raise NetworkError(f"Deleting timed out after {self.send_timeout}s") from exc
        except ChatError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            raise NetworkError(f"Failed to delete message: {exc}") from exc

        if self._cache.remove_by_id(message_id) is not None:
            self._notify()
        logger.info("[Pipeline] Deleted %s", message_id)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _confirm(self, correlation_id: str, payload: MessagePayload) -> Optional[ChatMessage]:
        entry = self._cache.get(correlation_id)
        if entry is None:
            return None
        was_pending = entry.is_pending
        entry = self._cache.confirm(correlation_id, payload)
        if was_pending:
            logger.debug("[Pipeline] Confirmed %s as %s", correlation_id, payload.id)
            self._notify()
        return entry

    def apply_new(self, payload: MessagePayload) -> None:
        """Handle a ``message.new`` event."""
        if payload.author_id == self.user.user_id:
            # Already represented by the optimistic entry
            if payload.correlation_id:
                self._confirm(payload.correlation_id, payload)
            return

        if payload.is_deleted or self._cache.find_by_id(payload.id) is not None:
            return
        if self._append(ChatMessage.from_payload(payload)):
            self._notify()

    def apply_update(self, payload: MessagePayload) -> None:
        """Handle a ``message.update`` event."""
        entry = self._cache.find_by_id(payload.id)
        if entry is None:
            return
        if payload.is_deleted:
            self._cache.remove_by_id(payload.id)
        else:
            entry.content = payload.content
        self._notify()

    def apply_delete(self, ref: MessageRef) -> None:
        """Handle a ``message.delete`` event."""
        if self._cache.remove_by_id(ref.id) is not None:
            self._notify()

    def load_snapshot(self, payloads: Iterable[MessagePayload]) -> int:
        """Merge a most-recent-first snapshot into the cache.

        Known server ids are skipped and own pending entries are confirmed.
        Anything else is appended only if it is newer than the newest
        confirmed entry delivered by the server, so a snapshot taken after a
        reconnect backfills what was missed without reordering what is already
        shown. Own sends are confirmed over HTTP even while the realtime link
        is down, so they do not move the watermark.

        Returns:
            The number of messages added.
        """
        watermark = self._cache.newest_confirmed_at(exclude_author=self.user.user_id)
        added = 0
        for payload in reversed(list(payloads)):
            if payload.is_deleted or self._cache.find_by_id(payload.id) is not None:
                continue
            if (payload.author_id == self.user.user_id
                    and payload.correlation_id
                    and payload.correlation_id in self._cache):
                self._confirm(payload.correlation_id, payload)
                continue
            if watermark is not None and payload.created_at <= watermark:
                continue
            if self._append(ChatMessage.from_payload(payload)):
                added += 1

        if added:
            logger.info("[Pipeline] Snapshot added %d message(s)", added)
            self._notify()
        return added

    def clear(self) -> None:
        self._cache.clear()
        self._notify()
