"""Error taxonomy for the client chat core.

Validation and rate-limit errors are raised locally before anything touches
the network. Network errors come from failed send/delete calls and carry the
rolled-back message where there is one. Connection and auth errors are owned
by the connection manager and normally only show up as ``last_error`` on a
status event.
"""
from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from .models import ChatMessage


class ChatError(Exception):
    """Base class for every error raised by the chat core."""

    kind = "chat_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.timestamp = time.time()

    def to_dict(self) -> Dict[str, Any]:
        """Serializable summary for display and status payloads."""
        return {
            "type": self.kind,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp,
        }


class ValidationError(ChatError):
    """Message content is empty or too long."""

    kind = "validation"


class RateLimitError(ChatError):
    """Send refused by the cooldown; ``reset_at`` is when it lifts."""

    kind = "rate_limited"

    def __init__(self, reset_at: float, message: Optional[str] = None) -> None:
        self.reset_at = reset_at
        if message is None:
            wait = max(0.0, reset_at - time.time())
            message = f"Please wait {wait:.1f} seconds before sending another message"
        super().__init__(message, {"reset_at": reset_at})

    def remaining(self, now: Optional[float] = None) -> float:
        """Seconds left until the cooldown lifts."""
        now = time.time() if now is None else now
        return max(0.0, self.reset_at - now)


class NetworkError(ChatError):
    """A send or delete call failed; local state has been rolled back."""

    kind = "network"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        failed_message: Optional["ChatMessage"] = None,
    ) -> None:
        super().__init__(message, {"status_code": status_code} if status_code else None)
        self.status_code = status_code
        self.failed_message = failed_message


class ChatConnectionError(ChatError):
    """Transport-level failure; drives the reconnection state machine."""

    kind = "connection"


class AuthExpiredError(ChatError):
    """The credential was rejected by the server."""

    kind = "auth_expired"

    def __init__(self, message: str = "Session expired, please sign in again") -> None:
        super().__init__(message)
