"""In-memory message store for the chat service.

Keeps the most recent ``history_size`` messages of a topic in arrival order.
Deletes are soft: the message stays in history with ``is_deleted`` set so a
``message.update`` can be broadcast for it, but it is never listed again.

Deduplication:
    A client retrying a send reuses its correlation id. The store remembers
    the (author, correlation id) pairs of the messages it holds in an
    OrderedDict index, so a retried send returns the original message
    instead of storing a copy.
"""
import logging
import time
import uuid
from collections import OrderedDict
from typing import Callable, Dict, List, Optional, Tuple

from casino_chat.events import MessagePayload

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 200


class MessageStore:
    """Bounded, most-recent-wins message history for one topic."""

    def __init__(
        self,
        history_size: int = DEFAULT_HISTORY_SIZE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.history_size = history_size
        self._clock = clock
        # message id -> message, oldest first
        self._messages: "OrderedDict[str, MessagePayload]" = OrderedDict()
        # (author_id, correlation_id) -> message id
        self._by_correlation: Dict[Tuple[str, str], str] = {}

    def __len__(self) -> int:
        return len(self._messages)

    def find_duplicate(self, author_id: str, correlation_id: Optional[str]) -> Optional[MessagePayload]:
        """The stored message an earlier send with this correlation id produced."""
        if not correlation_id:
            return None
        message_id = self._by_correlation.get((author_id, correlation_id))
        if message_id is None:
            return None
        return self._messages.get(message_id)

    def add(
        self,
        author_id: str,
        author_name: str,
        content: str,
        correlation_id: Optional[str] = None,
    ) -> MessagePayload:
        """Store a new message and return it with its server id and timestamp."""
        message = MessagePayload(
            id=str(uuid.uuid4()),
            correlation_id=correlation_id,
            author_id=author_id,
            author_name=author_name,
            content=content,
            created_at=self._clock(),
        )
        self._messages[message.id] = message
        if correlation_id:
            self._by_correlation[(author_id, correlation_id)] = message.id

        while len(self._messages) > self.history_size:
            _, oldest = self._messages.popitem(last=False)
            if oldest.correlation_id:
                self._by_correlation.pop((oldest.author_id, oldest.correlation_id), None)
        return message

    def get(self, message_id: str) -> Optional[MessagePayload]:
        return self._messages.get(message_id)

    def recent(self, limit: int, before: Optional[float] = None) -> Tuple[List[MessagePayload], bool]:
        """Visible messages, most recent first.

        Args:
            limit: Maximum number of messages to return.
            before: Only messages created strictly before this timestamp.

        Returns:
            Tuple of (messages, has_more).
        """
        visible = [
            message for message in reversed(self._messages.values())
            if not message.is_deleted and (before is None or message.created_at < before)
        ]
        return visible[:limit], len(visible) > limit

    def soft_delete(self, message_id: str) -> Optional[MessagePayload]:
        """Flag a message as deleted.

        Returns:
            The updated message, or None if it is unknown or already deleted.
        """
        message = self._messages.get(message_id)
        if message is None or message.is_deleted:
            return None
        message = message.model_copy(update={"is_deleted": True})
        self._messages[message_id] = message
        logger.info("[Store] Soft-deleted message %s", message_id)
        return message

    def clear(self) -> None:
        self._messages.clear()
        self._by_correlation.clear()
