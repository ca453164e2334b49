"""Client-side chat core.

Connection lifecycle, optimistic message pipeline, send cooldown and presence
roster, composed behind :class:`ChatSession`.
"""

from .api import HttpChatAPI, MessageStoreAPI, PresenceAPI
from .connection import ConnectionManager, compute_backoff
from .cooldown import CooldownDecision, CooldownLimiter
from .errors import (
    AuthExpiredError,
    ChatConnectionError,
    ChatError,
    NetworkError,
    RateLimitError,
    ValidationError,
)
from .models import (
    ChatMessage,
    ChatUser,
    ConnectionHealth,
    ConnectionState,
    ConnectionStatus,
    CooldownState,
    MessageState,
    PresenceEntry,
)
from .pipeline import MessagePipeline
from .presence import PresenceTracker
from .session import ChatSession
from .transport import RealtimeTransport, Subscription, WebSocketTransport

__all__ = [
    "AuthExpiredError",
    "ChatConnectionError",
    "ChatError",
    "ChatMessage",
    "ChatSession",
    "ChatUser",
    "ConnectionManager",
    "ConnectionState",
    "ConnectionStatus",
    "CooldownDecision",
    "CooldownLimiter",
    "CooldownState",
    "HttpChatAPI",
    "MessagePipeline",
    "MessageState",
    "MessageStoreAPI",
    "NetworkError",
    "PresenceAPI",
    "PresenceEntry",
    "PresenceTracker",
    "RateLimitError",
    "RealtimeTransport",
    "Subscription",
    "ValidationError",
    "WebSocketTransport",
    "compute_backoff",
]
