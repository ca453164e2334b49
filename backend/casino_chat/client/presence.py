"""Best-effort online roster.

The roster is bootstrapped from the presence API each time the realtime
connection comes up, then kept current by ``presence.*`` events. Whether a
user counts as online is decided on read from ``last_seen_at``, so a missed
``presence.offline`` event heals by itself once the entry goes stale.
``last_seen_at`` is the local time a sighting arrived, never the server's
timestamp, so clock skew between the two cannot mark anyone offline.

The heartbeat runs on its own task, independent of reconnection, and never
lets a failed ping escape: it is logged and retried on the next tick.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from casino_chat.config import PresenceSettings
from casino_chat.events import PresencePayload

from .api import PresenceAPI
from .models import PresenceEntry

logger = logging.getLogger(__name__)


class PresenceTracker:
    """Online-user roster keyed by user id.

    Args:
        api: Presence collaborator.
        heartbeat_interval: Seconds between pings.
        stale_threshold: Seconds without a sighting before a user reads as
            offline.
        grace_period: Extra seconds past ``stale_threshold`` before a silent
            entry is dropped from the roster altogether.
        clock: Source of timestamps.
        sleep: Coroutine used between heartbeats.
    """

    def __init__(
        self,
        api: PresenceAPI,
        *,
        heartbeat_interval: float = 60.0,
        stale_threshold: float = 90.0,
        grace_period: float = 300.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.heartbeat_interval = heartbeat_interval
        self.stale_threshold = stale_threshold
        self.grace_period = grace_period
        self._api = api
        self._clock = clock
        self._sleep = sleep
        self._entries: Dict[str, PresenceEntry] = {}
        self._heartbeat_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, api: PresenceAPI, settings: PresenceSettings, **kwargs) -> "PresenceTracker":
        return cls(
            api,
            heartbeat_interval=settings.heartbeat_interval,
            stale_threshold=settings.stale_threshold,
            grace_period=settings.grace_period,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Roster
    # ------------------------------------------------------------------

    def _upsert(self, payload: PresencePayload) -> PresenceEntry:
        # Stamped with the local clock; server timestamps come from another clock
        now = self._clock()
        entry = self._entries.get(payload.user_id)
        if entry is None:
            entry = PresenceEntry.from_payload(payload, now)
            self._entries[payload.user_id] = entry
            return entry
        entry.last_seen_at = max(entry.last_seen_at, now)
        if payload.username:
            entry.username = payload.username
        return entry

    def mark_online(self, payload: PresencePayload) -> None:
        """Handle ``presence.online``."""
        entry = self._upsert(payload)
        logger.debug("[Presence] %s online", entry.username or entry.user_id)

    def mark_seen(self, payload: PresencePayload) -> None:
        """Handle ``presence.update``."""
        self._upsert(payload)

    def mark_offline(self, payload: PresencePayload) -> None:
        """Handle ``presence.offline``."""
        if self._entries.pop(payload.user_id, None) is not None:
            logger.debug("[Presence] %s offline", payload.user_id)

    def merge_snapshot(self, payloads: Iterable[PresencePayload]) -> None:
        for payload in payloads:
            self._upsert(payload)

    def is_online(self, user_id: str, now: Optional[float] = None) -> bool:
        entry = self._entries.get(user_id)
        if entry is None:
            return False
        now = self._clock() if now is None else now
        return entry.is_online(now, self.stale_threshold)

    def online_users(self, now: Optional[float] = None) -> List[PresenceEntry]:
        """Users currently online, most recently seen first."""
        now = self._clock() if now is None else now
        online = [
            replace(entry) for entry in self._entries.values()
            if entry.is_online(now, self.stale_threshold)
        ]
        online.sort(key=lambda entry: entry.last_seen_at, reverse=True)
        return online

    def online_count(self, now: Optional[float] = None) -> int:
        return len(self.online_users(now))

    def prune(self, now: Optional[float] = None) -> int:
        """Drop entries silent for longer than stale threshold + grace period."""
        now = self._clock() if now is None else now
        cutoff = self.stale_threshold + self.grace_period
        expired = [
            user_id for user_id, entry in self._entries.items()
            if now - entry.last_seen_at >= cutoff
        ]
        for user_id in expired:
            del self._entries[user_id]
        if expired:
            logger.debug("[Presence] Pruned %d silent entr(ies)", len(expired))
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    # ------------------------------------------------------------------
    # Network
    # ------------------------------------------------------------------

    async def refresh(self) -> bool:
        """Fetch the roster snapshot and merge it. Failures are logged."""
        try:
            payloads = await self._api.list_online()
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("[Presence] Roster fetch failed: %s", exc)
            return False
        self.merge_snapshot(payloads)
        logger.info("[Presence] Roster refreshed, %d online", self.online_count())
        return True

    async def heartbeat(self) -> bool:
        """Ping once and prune stale entries. Never raises."""
        try:
            await self._api.ping()
            ok = True
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("[Presence] Heartbeat failed, retrying next tick: %s", exc)
            ok = False
        self.prune()
        return ok

    async def _heartbeat_loop(self) -> None:
        while True:
            await self.heartbeat()
            await self._sleep(self.heartbeat_interval)

    def start_heartbeat(self) -> None:
        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            return
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def stop(self) -> None:
        """Cancel the heartbeat. Idempotent."""
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
