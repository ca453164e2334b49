"""Server-side presence registry.

Each authenticated ping or WebSocket subscription refreshes a user's
``last_seen_at``. Users silent for longer than ``stale_after`` seconds are
swept out by a background task started in the application lifespan, and a
``presence.offline`` event is published for each of them.
"""
import logging
import time
from typing import Callable, Dict, List, Tuple

from casino_chat.events import PresencePayload

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """Last-seen timestamps keyed by user id."""

    def __init__(self, stale_after: float = 300.0, clock: Callable[[], float] = time.time) -> None:
        self.stale_after = stale_after
        self._clock = clock
        self._users: Dict[str, PresencePayload] = {}

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._users

    def touch(self, user_id: str, username: str) -> Tuple[PresencePayload, bool]:
        """Mark ``user_id`` as seen now.

        Returns:
            Tuple of (presence, is_new) where ``is_new`` is True if the user
            was not online before.
        """
        is_new = user_id not in self._users
        presence = PresencePayload(user_id=user_id, username=username, last_seen_at=self._clock())
        self._users[user_id] = presence
        if is_new:
            logger.info("[Presence] %s (%s) online", username, user_id)
        return presence, is_new

    def remove(self, user_id: str) -> bool:
        removed = self._users.pop(user_id, None) is not None
        if removed:
            logger.info("[Presence] %s offline", user_id)
        return removed

    def list_online(self) -> List[PresencePayload]:
        """Online users, most recently seen first."""
        return sorted(self._users.values(), key=lambda p: p.last_seen_at, reverse=True)

    def sweep(self) -> List[PresencePayload]:
        """Drop users not seen for ``stale_after`` seconds and return them."""
        now = self._clock()
        stale = [p for p in self._users.values() if now - p.last_seen_at >= self.stale_after]
        for presence in stale:
            del self._users[presence.user_id]
        if stale:
            logger.info("[Presence] Swept %d stale user(s)", len(stale))
        return stale
