"""Client-side data model for the chat core."""
from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from casino_chat.events import MessagePayload, PresencePayload

from .errors import ChatError


class MessageState(str, Enum):
    """Delivery state of a cached message."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ConnectionStatus(str, Enum):
    """Connectivity of the realtime subscription."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass
class ChatMessage:
    """A message in the local cache.

    Attributes:
        id: Server id once confirmed; equal to correlation_id while pending.
        correlation_id: Client-generated id, stable across confirmation.
        author_id: Sender's user id.
        author_name: Sender's display name.
        content: Trimmed message text.
        created_at: Client clock while pending, server clock once confirmed.
        state: Delivery state.
    """
    id: str
    correlation_id: str
    author_id: str
    author_name: str
    content: str
    created_at: float
    state: MessageState = MessageState.PENDING

    @property
    def is_pending(self) -> bool:
        return self.state is MessageState.PENDING

    @classmethod
    def from_payload(cls, payload: MessagePayload) -> "ChatMessage":
        """Build a confirmed message from a server payload."""
        return cls(
            id=payload.id,
            # Other clients' messages may arrive without a correlation id
            correlation_id=payload.correlation_id or payload.id,
            author_id=payload.author_id,
            author_name=payload.author_name,
            content=payload.content,
            created_at=payload.created_at,
            state=MessageState.CONFIRMED,
        )

    def confirm(self, payload: MessagePayload) -> None:
        """Adopt the server identity and mark as confirmed."""
        self.id = payload.id
        self.created_at = payload.created_at
        self.state = MessageState.CONFIRMED


@dataclass(frozen=True)
class ConnectionState:
    """Snapshot of the connection manager, handed to status listeners."""
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    reconnect_attempt: int = 0
    max_reconnect_attempts: int = 5
    next_reconnect_delay: Optional[float] = None
    last_error: Optional[ChatError] = None
    last_connected_at: Optional[float] = None

    def evolve(self, **changes) -> "ConnectionState":
        return replace(self, **changes)

    @property
    def progress(self) -> str:
        """``attempt/max`` for reconnect progress display."""
        return f"{self.reconnect_attempt}/{self.max_reconnect_attempts}"


@dataclass(frozen=True)
class ConnectionHealth:
    """Diagnostic summary of a chat session's realtime link.

    ``is_healthy`` means the session is running and subscribed.
    ``is_authenticated`` is False once the server has rejected the
    credential and no fresh one could be obtained.
    """
    status: ConnectionStatus
    is_healthy: bool
    is_authenticated: bool
    reconnect_attempt: int
    max_reconnect_attempts: int
    next_reconnect_delay: Optional[float]
    last_connected_at: Optional[float]
    pending_messages: int
    last_error: Optional[ChatError] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "is_healthy": self.is_healthy,
            "is_authenticated": self.is_authenticated,
            "reconnect_attempt": self.reconnect_attempt,
            "max_reconnect_attempts": self.max_reconnect_attempts,
            "next_reconnect_delay": self.next_reconnect_delay,
            "last_connected_at": self.last_connected_at,
            "pending_messages": self.pending_messages,
            "last_error": self.last_error.to_dict() if self.last_error else None,
        }


@dataclass
class CooldownState:
    """Fixed-window send counter for one user."""
    limit: int
    window: float
    window_start_at: Optional[float] = None
    sent_in_window: int = 0

    @property
    def reset_at(self) -> Optional[float]:
        if self.window_start_at is None:
            return None
        return self.window_start_at + self.window

    def window_elapsed(self, now: float) -> bool:
        return self.window_start_at is None or now >= self.window_start_at + self.window

    def remaining(self, now: float) -> int:
        """Sends still allowed in the current window."""
        if self.window_elapsed(now):
            return self.limit
        return max(0, self.limit - self.sent_in_window)

    def is_cooling_down(self, now: float) -> bool:
        return self.remaining(now) == 0

    def remaining_time(self, now: float) -> float:
        """Seconds until another send is allowed (0 when one is allowed now)."""
        if not self.is_cooling_down(now):
            return 0.0
        return max(0.0, self.reset_at - now)


@dataclass
class PresenceEntry:
    """Roster entry for one user."""
    user_id: str
    username: str
    last_seen_at: float

    def is_online(self, now: float, stale_threshold: float) -> bool:
        return now - self.last_seen_at < stale_threshold

    @classmethod
    def from_payload(cls, payload: PresencePayload, now: float) -> "PresenceEntry":
        """Entry first sighted at local time ``now``."""
        return cls(user_id=payload.user_id, username=payload.username, last_seen_at=now)


@dataclass(frozen=True)
class ChatUser:
    """The signed-in user a chat session acts for."""
    user_id: str
    username: str
    is_moderator: bool = False
