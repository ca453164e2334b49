"""Realtime event schema shared by the chat service and the client core.

Every frame on the chat topic is a JSON object of the form
``{"kind": "<event kind>", "payload": {...}}``. The kinds form a closed set;
``RealtimeEvent`` is a discriminated union over them so that parsing picks the
right payload model and unknown kinds are rejected instead of passing through
as loose dictionaries.
"""
from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class EventKind(str, Enum):
    """Kinds of realtime events delivered on the chat topic."""
    MESSAGE_NEW = "message.new"
    MESSAGE_UPDATE = "message.update"
    MESSAGE_DELETE = "message.delete"
    PRESENCE_ONLINE = "presence.online"
    PRESENCE_UPDATE = "presence.update"
    PRESENCE_OFFLINE = "presence.offline"


# =============================================================================
# Payloads
# =============================================================================


class MessagePayload(BaseModel):
    """A chat message as the server stores and broadcasts it.

    Attributes:
        id: Server-assigned message id.
        correlation_id: Client-generated id sent along with the message, echoed
            back so the sender can match its optimistic entry.
        author_id: Sender's user id.
        author_name: Sender's display name.
        content: Message text.
        created_at: Unix timestamp (seconds) assigned by the server.
        is_deleted: Soft-delete flag.
    """
    id: str = Field(..., description="Server message id")
    correlation_id: Optional[str] = Field(default=None, description="Client correlation id")
    author_id: str = Field(..., description="Sender user id")
    author_name: str = Field(default="", description="Sender display name")
    content: str = Field(..., description="Message content")
    created_at: float = Field(..., description="Server timestamp in seconds since epoch")
    is_deleted: bool = Field(default=False, description="Soft-delete flag")


class MessageRef(BaseModel):
    """Reference to a message by server id."""
    id: str


class PresencePayload(BaseModel):
    """Presence of a single user."""
    user_id: str
    username: str = ""
    last_seen_at: Optional[float] = None


# =============================================================================
# Events
# =============================================================================


class MessageNewEvent(BaseModel):
    kind: Literal["message.new"] = "message.new"
    payload: MessagePayload


class MessageUpdateEvent(BaseModel):
    kind: Literal["message.update"] = "message.update"
    payload: MessagePayload


class MessageDeleteEvent(BaseModel):
    kind: Literal["message.delete"] = "message.delete"
    payload: MessageRef


class PresenceOnlineEvent(BaseModel):
    kind: Literal["presence.online"] = "presence.online"
    payload: PresencePayload


class PresenceUpdateEvent(BaseModel):
    kind: Literal["presence.update"] = "presence.update"
    payload: PresencePayload


class PresenceOfflineEvent(BaseModel):
    kind: Literal["presence.offline"] = "presence.offline"
    payload: PresencePayload


RealtimeEvent = Annotated[
    Union[
        MessageNewEvent,
        MessageUpdateEvent,
        MessageDeleteEvent,
        PresenceOnlineEvent,
        PresenceUpdateEvent,
        PresenceOfflineEvent,
    ],
    Field(discriminator="kind"),
]

# kind -> event model
EVENT_TYPES: Dict[EventKind, type] = {
    EventKind.MESSAGE_NEW: MessageNewEvent,
    EventKind.MESSAGE_UPDATE: MessageUpdateEvent,
    EventKind.MESSAGE_DELETE: MessageDeleteEvent,
    EventKind.PRESENCE_ONLINE: PresenceOnlineEvent,
    EventKind.PRESENCE_UPDATE: PresenceUpdateEvent,
    EventKind.PRESENCE_OFFLINE: PresenceOfflineEvent,
}

_event_adapter: TypeAdapter = TypeAdapter(RealtimeEvent)


def parse_event(data: Any):
    """Validate a decoded frame into its event model.

    Raises:
        pydantic.ValidationError: If the frame is not a known event kind or
            its payload does not match.
    """
    return _event_adapter.validate_python(data)
