"""Chat router providing REST and WebSocket endpoints.

This module provides:
    - GET    /api/chat/messages: Recent messages, most recent first
    - POST   /api/chat/messages: Send a message
    - DELETE /api/chat/messages/{message_id}: Soft-delete a message
    - POST   /api/chat/presence: Presence heartbeat
    - GET    /api/chat/online: Online roster
    - WebSocket /ws/{topic}: Realtime event stream

REST calls require ``Authorization: Bearer <token>``. Every state change is
broadcast to the topic's subscribers as a ``{"kind", "payload"}`` event.

WebSocket Protocol:
    1. Client connects with ``?token=<bearer token>``
       → Server sends: {type: "connected", user_id: "..."}
       → or closes with code 4401 if the token is not accepted
    2. Server pushes event frames: {kind: "message.new", payload: {...}}
    3. Client sends: {type: "auth", token: "..."} to rotate its credential
       → Server sends: {type: "token_updated"}
    4. Client sends: {type: "ping"}
       → Server refreshes presence and sends: {type: "pong"}
    5. On the user's last disconnect → Server broadcasts presence.offline
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from casino_chat.client.errors import ValidationError
from casino_chat.client.transport import AUTH_REJECTED_CLOSE_CODE
from casino_chat.client.validation import validate_content
from casino_chat.config import TokenGrant
from casino_chat.events import (
    MessageDeleteEvent,
    MessageNewEvent,
    MessageRef,
    PresenceOfflineEvent,
    PresencePayload,
    PresenceOnlineEvent,
    PresenceUpdateEvent,
)

from .auth import current_user

logger = logging.getLogger(__name__)

router = APIRouter()


class SendMessageRequest(BaseModel):
    """Body of ``POST /api/chat/messages``."""
    content: str = Field(..., description="Message text")
    correlation_id: Optional[str] = Field(None, max_length=128, description="Client correlation id")


def _topic(request: Request) -> str:
    return request.app.state.config.client.topic


# =============================================================================
# Messages
# =============================================================================


@router.get("/api/chat/messages")
async def list_messages(
    request: Request,
    limit: Optional[int] = Query(None, ge=1, description="Maximum messages to return"),
    before: Optional[float] = Query(None, description="Only messages created before this timestamp"),
    user: TokenGrant = Depends(current_user),
) -> dict:
    """Recent visible messages, most recent first.

    Returns:
        {"messages": [...], "has_more": bool}
    """
    settings = request.app.state.config.server_chat
    limit = min(limit or settings.default_limit, settings.max_limit)
    messages, has_more = request.app.state.store.recent(limit, before)
    return {
        "messages": [m.model_dump() for m in messages],
        "has_more": has_more,
    }


@router.post("/api/chat/messages")
async def send_message(
    request: Request,
    body: SendMessageRequest,
    user: TokenGrant = Depends(current_user),
):
    """Store and broadcast a message.

    A retry with a correlation id the server already stored returns the
    original message without broadcasting it again.

    Raises:
        HTTPException 400: Empty or too long content.
        429: Cooldown active; body carries ``reset_at``.
    """
    state = request.app.state
    duplicate = state.store.find_duplicate(user.user_id, body.correlation_id)
    if duplicate is not None:
        logger.info("[Chat] Duplicate send %s from %s", body.correlation_id, user.user_id)
        return {"chat_message": duplicate.model_dump()}

    try:
        content = validate_content(body.content, state.config.client.max_message_length)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)

    decision = state.limiter.attempt(user.user_id)
    if not decision.allowed:
        logger.info("[Chat] %s rate limited until %.3f", user.user_id, decision.reset_at)
        return JSONResponse(
            status_code=429,
            content={
                "detail": "Please wait before sending another message",
                "reset_at": decision.reset_at,
            },
        )

    message = state.store.add(user.user_id, user.username, content, body.correlation_id)
    logger.info("[Chat] Message %s from %s", message.id, user.user_id)
    await state.hub.publish(MessageNewEvent(payload=message), _topic(request))
    return {"chat_message": message.model_dump()}


@router.delete("/api/chat/messages/{message_id}")
async def delete_message(
    request: Request,
    message_id: str,
    user: TokenGrant = Depends(current_user),
) -> dict:
    """Soft-delete a message. Only its author or a moderator may do so.

    Raises:
        HTTPException 404: Unknown or already deleted message.
        HTTPException 403: Caller is neither the author nor a moderator.
    """
    state = request.app.state
    message = state.store.get(message_id)
    if message is None or message.is_deleted:
        raise HTTPException(status_code=404, detail="Message not found")
    if message.author_id != user.user_id and not user.is_moderator:
        logger.warning("[Chat] %s may not delete message %s", user.user_id, message_id)
        raise HTTPException(status_code=403, detail="Not allowed to delete this message")

    state.store.soft_delete(message_id)
    await state.hub.publish(MessageDeleteEvent(payload=MessageRef(id=message_id)), _topic(request))
    return {"deleted": message_id}


# =============================================================================
# Presence
# =============================================================================


@router.post("/api/chat/presence")
async def presence_ping(request: Request, user: TokenGrant = Depends(current_user)) -> dict:
    """Refresh the caller's presence and broadcast it."""
    state = request.app.state
    presence, is_new = state.presence.touch(user.user_id, user.username)
    event = PresenceOnlineEvent(payload=presence) if is_new else PresenceUpdateEvent(payload=presence)
    await state.hub.publish(event, _topic(request))
    return {"presence": presence.model_dump()}


@router.get("/api/chat/online")
async def online_users(request: Request, user: TokenGrant = Depends(current_user)) -> dict:
    """Current online roster, most recently seen first."""
    users = request.app.state.presence.list_online()
    return {
        "online_users": [p.model_dump() for p in users],
        "count": len(users),
    }


# =============================================================================
# Realtime
# =============================================================================


@router.websocket("/ws/{topic}")
async def realtime_endpoint(
    websocket: WebSocket,
    topic: str,
    token: Optional[str] = Query(None, description="Bearer token"),
) -> None:
    """WebSocket endpoint streaming chat events for ``topic``.

    Args:
        websocket: The WebSocket connection.
        topic: Topic to subscribe to.
        token: Bearer token; the socket is closed with 4401 if it is not
            accepted.
    """
    state = websocket.app.state
    grant = state.verifier.verify(token)
    if grant is None:
        logger.warning("[WS] Rejected subscription to %s: invalid token", topic)
        await websocket.accept()
        await websocket.close(code=AUTH_REJECTED_CLOSE_CODE)
        return

    await state.hub.connect(websocket, topic, grant)
    presence, is_new = state.presence.touch(grant.user_id, grant.username)
    if is_new:
        await state.hub.publish(PresenceOnlineEvent(payload=presence), topic)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                logger.debug("[WS] Ignoring non-JSON frame on %s", topic)
                continue
            if not isinstance(data, dict):
                continue
            frame_type = data.get("type")

            if frame_type == "auth":
                new_grant = state.verifier.verify(data.get("token"))
                if new_grant is None or new_grant.user_id != grant.user_id:
                    logger.warning("[WS] Token rotation rejected for %s", grant.user_id)
                    await websocket.close(code=AUTH_REJECTED_CLOSE_CODE)
                    break
                grant = new_grant
                state.hub.set_grant(websocket, grant)
                await websocket.send_json({"type": "token_updated"})
                logger.info("[WS] Token rotated for %s", grant.user_id)

            elif frame_type == "ping":
                state.presence.touch(grant.user_id, grant.username)
                await websocket.send_json({"type": "pong"})

            else:
                logger.debug("[WS] Ignoring frame type=%s on %s", frame_type, topic)

    except WebSocketDisconnect:
        pass
    finally:
        user, remaining = state.hub.disconnect(websocket, topic)
        if user is not None and remaining == 0 and state.presence.remove(user.user_id):
            offline = PresencePayload(user_id=user.user_id, username=user.username)
            await state.hub.publish(PresenceOfflineEvent(payload=offline), topic)
        logger.info("[WS] %s left %s", grant.user_id, topic)
