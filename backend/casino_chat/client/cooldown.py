"""Per-user send cooldown.

A fixed-window counter: each user may send ``limit`` messages per ``window``
seconds. The first send after the window has elapsed opens a new window. A
refused attempt reports ``reset_at`` (window start + window) so callers can
render an exact countdown without a server round-trip.

The limiter only touches its own counters and reads time from an injected
clock, so it answers the same way whether or not the chat is connected.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional

from .models import CooldownState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CooldownDecision:
    """Outcome of a send attempt.

    Attributes:
        allowed: Whether the send may proceed.
        reset_at: When the current window ends.
        remaining: Sends left in the window after this attempt.
    """
    allowed: bool
    reset_at: float
    remaining: int


class CooldownLimiter:
    """Fixed-window rate limiter keyed by user id."""

    def __init__(
        self,
        limit: int = 1,
        window: float = 2.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window <= 0:
            raise ValueError("window must be positive")
        self.limit = limit
        self.window = window
        self._clock = clock
        self._states: Dict[str, CooldownState] = {}

    def attempt(self, user_id: str, now: Optional[float] = None) -> CooldownDecision:
        """Record a send attempt for ``user_id`` and decide whether it may go ahead."""
        now = self._clock() if now is None else now
        state = self._states.get(user_id)

        if state is None or state.window_elapsed(now):
            state = CooldownState(
                limit=self.limit, window=self.window,
                window_start_at=now, sent_in_window=1,
            )
            self._states[user_id] = state
            return CooldownDecision(True, state.reset_at, self.limit - 1)

        if state.sent_in_window < self.limit:
            state.sent_in_window += 1
            return CooldownDecision(True, state.reset_at, self.limit - state.sent_in_window)

        logger.debug(
            "[Cooldown] %s blocked (%d/%d), resets at %.3f",
            user_id, state.sent_in_window, self.limit, state.reset_at,
        )
        return CooldownDecision(False, state.reset_at, 0)

    def peek(self, user_id: str) -> CooldownState:
        """Current counters for ``user_id`` without recording an attempt."""
        state = self._states.get(user_id)
        if state is None:
            return CooldownState(limit=self.limit, window=self.window)
        return replace(state)

    def reset(self, user_id: Optional[str] = None) -> None:
        """Forget one user's counters, or everyone's."""
        if user_id is None:
            self._states.clear()
        else:
            self._states.pop(user_id, None)
