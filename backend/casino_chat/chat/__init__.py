"""Chat service: message store, presence registry, subscriber hub and endpoints."""

from .auth import TokenVerifier, current_user
from .hub import SubscriberHub
from .presence import PresenceRegistry
from .router import router
from .store import MessageStore

__all__ = [
    "MessageStore",
    "PresenceRegistry",
    "SubscriberHub",
    "TokenVerifier",
    "current_user",
    "router",
]
