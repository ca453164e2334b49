"""Bounded local message cache.

Entries are kept in arrival order in an OrderedDict keyed by correlation id,
with a secondary index from server id to correlation id. When the cache grows
past capacity the oldest arrival is evicted, whatever its state; since a new
entry is always appended last it can never be the one evicted.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import replace
from typing import Dict, Iterator, List, Optional

from casino_chat.events import MessagePayload

from .models import ChatMessage, MessageState

logger = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 50


class MessageCache:
    """Recent messages, oldest first, at most ``capacity`` of them."""

    def __init__(self, capacity: int = DEFAULT_CACHE_SIZE) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        # correlation_id -> message, in arrival order
        self._entries: "OrderedDict[str, ChatMessage]" = OrderedDict()
        # server id -> correlation_id
        self._by_id: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ChatMessage]:
        return iter(list(self._entries.values()))

    def __contains__(self, correlation_id: object) -> bool:
        return correlation_id in self._entries

    def snapshot(self) -> List[ChatMessage]:
        """Copies of the cached messages, oldest first."""
        return [replace(message) for message in self._entries.values()]

    def get(self, correlation_id: str) -> Optional[ChatMessage]:
        return self._entries.get(correlation_id)

    def find_by_id(self, message_id: str) -> Optional[ChatMessage]:
        correlation_id = self._by_id.get(message_id)
        if correlation_id is None:
            return None
        return self._entries.get(correlation_id)

    def append(self, message: ChatMessage) -> List[ChatMessage]:
        """Add ``message`` as the newest entry.

        Returns:
            The entries evicted to stay within capacity.

        Raises:
            KeyError: If an entry with the same correlation id exists.
        """
        if message.correlation_id in self._entries:
            raise KeyError(f"Duplicate correlation id {message.correlation_id}")
        self._entries[message.correlation_id] = message
        self._by_id[message.id] = message.correlation_id

        evicted = []
        while len(self._entries) > self.capacity:
            _, oldest = self._entries.popitem(last=False)
            self._by_id.pop(oldest.id, None)
            evicted.append(oldest)
        if evicted:
            logger.debug("[Cache] Evicted %d message(s)", len(evicted))
        return evicted

    def confirm(self, correlation_id: str, payload: MessagePayload) -> Optional[ChatMessage]:
        """Mark a pending entry as confirmed under its server id.

        Returns:
            The entry, or None if it is no longer cached. Confirming an entry
            that is already confirmed leaves it as it is.
        """
        message = self._entries.get(correlation_id)
        if message is None:
            return None
        if message.state is MessageState.CONFIRMED:
            return message
        self._by_id.pop(message.id, None)
        message.confirm(payload)
        self._by_id[message.id] = correlation_id
        return message

    def remove(self, correlation_id: str) -> Optional[ChatMessage]:
        message = self._entries.pop(correlation_id, None)
        if message is not None:
            self._by_id.pop(message.id, None)
        return message

    def remove_by_id(self, message_id: str) -> Optional[ChatMessage]:
        correlation_id = self._by_id.get(message_id)
        if correlation_id is None:
            return None
        return self.remove(correlation_id)

    def newest_confirmed_at(self, exclude_author: Optional[str] = None) -> Optional[float]:
        """Server timestamp of the newest confirmed entry.

        Entries by ``exclude_author`` are left out of the comparison.
        """
        stamps = [
            message.created_at for message in self._entries.values()
            if message.state is MessageState.CONFIRMED and message.author_id != exclude_author
        ]
        return max(stamps) if stamps else None

    def clear(self) -> None:
        self._entries.clear()
        self._by_id.clear()
