"""WebSocket subscriber hub for realtime chat events.

Tracks the live WebSocket connections per topic and who is behind each one,
and fans events out to every subscriber of a topic.

Performance Notes:
    - Broadcasting uses asyncio.gather() for concurrent delivery
    - Connections that fail a send are dropped from the topic
    - Uvicorn handles ping/pong at the protocol level (default 20s interval)

Thread Safety:
    Designed for a single event loop; not safe to share across threads.
"""
import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from fastapi import WebSocket
from pydantic import BaseModel

from casino_chat.config import TokenGrant

logger = logging.getLogger(__name__)


class SubscriberHub:
    """Manages WebSocket subscribers for chat topics."""

    def __init__(self) -> None:
        # topic -> list of active WebSocket connections
        self.active_connections: Dict[str, List[WebSocket]] = {}

        # websocket -> (topic, identity) for disconnect handling
        self.websocket_to_user: Dict[WebSocket, Tuple[str, TokenGrant]] = {}

    async def connect(self, websocket: WebSocket, topic: str, grant: TokenGrant) -> None:
        """Accept a WebSocket connection and subscribe it to ``topic``.

        The ``connected`` frame is sent before the socket joins the topic so
        it is always the first frame the client sees.
        """
        await websocket.accept()
        await websocket.send_json({"type": "connected", "user_id": grant.user_id})
        self.active_connections.setdefault(topic, []).append(websocket)
        self.websocket_to_user[websocket] = (topic, grant)
        logger.info(
            "[Hub] %s subscribed to %s (%d connections)",
            grant.user_id, topic, self.get_topic_size(topic),
        )

    def detach(self, websocket: WebSocket, topic: str) -> None:
        """Stop publishing to a connection but keep its identity.

        The endpoint that owns the socket still calls :meth:`disconnect` when
        its receive loop ends, and needs the identity to announce the user
        as offline.
        """
        connections = self.active_connections.get(topic)
        if connections and websocket in connections:
            connections.remove(websocket)
            if not connections:
                del self.active_connections[topic]

    def disconnect(self, websocket: WebSocket, topic: str) -> Tuple[Optional[TokenGrant], int]:
        """Remove a connection.

        Returns:
            Tuple of (identity, remaining) where ``remaining`` is how many
            other connections the same user still has on the topic. The
            identity is None if the socket was never registered.
        """
        self.detach(websocket, topic)

        entry = self.websocket_to_user.pop(websocket, None)
        if entry is None:
            return None, 0
        _, grant = entry
        return grant, self.user_connection_count(topic, grant.user_id)

    def set_grant(self, websocket: WebSocket, grant: TokenGrant) -> None:
        """Rebind a live connection to a rotated credential."""
        topic, _ = self.websocket_to_user[websocket]
        self.websocket_to_user[websocket] = (topic, grant)

    def user_connection_count(self, topic: str, user_id: str) -> int:
        return sum(
            1 for t, grant in self.websocket_to_user.values()
            if t == topic and grant.user_id == user_id
        )

    def get_topic_size(self, topic: str) -> int:
        """Get the number of active connections on a topic."""
        return len(self.active_connections.get(topic, []))

    async def publish(self, event: BaseModel, topic: str) -> None:
        """Broadcast an event to every subscriber of ``topic`` concurrently.

        Failed connections stop receiving events; their identity stays
        registered until the owning endpoint disconnects them.
        """
        connections = list(self.active_connections.get(topic, []))
        if not connections:
            return

        message = event.model_dump(mode="json")
        results = await asyncio.gather(
            *[self._safe_send(conn, message) for conn in connections],
            return_exceptions=True
        )

        failed_connections = [
            conn for conn, success in zip(connections, results)
            if success is not True
        ]
        self._cleanup_connections(topic, failed_connections)

    async def _safe_send(self, connection: WebSocket, message: dict) -> bool:
        """Send to one connection; False if it failed."""
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False

    def _cleanup_connections(self, topic: str, failed_connections: List[WebSocket]) -> None:
        for conn in failed_connections:
            self.detach(conn, topic)
            logger.debug(f"Detached dead connection from topic {topic}")

    async def close_all(self) -> None:
        """Close every connection (used at shutdown)."""
        for topic, connections in list(self.active_connections.items()):
            for conn in list(connections):
                try:
                    await conn.close(code=1001)
                except Exception as e:
                    logger.debug(f"Close failed during shutdown: {e}")
                self.disconnect(conn, topic)
