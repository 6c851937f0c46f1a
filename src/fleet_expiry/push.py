"""Real-time push channels for notifications.

Pushes are best effort. A connected user's session gets the notification
immediately. A user who is not connected picks it up from the notification
store later. No implementation lets a delivery failure escape ``send``.
"""
from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Optional, Protocol

import redis.asyncio as aioredis

from .logging import get_logger

logger = get_logger(__name__)


class PushChannel(ABC):
    """Abstract base class for real-time push channels."""

    @abstractmethod
    async def send(self, recipient_id: str, event: str, payload: dict[str, Any]) -> bool:
        """
        Push an event to a recipient's live sessions.

        Returns:
            True if handed off to at least one transport, False otherwise
        """


class NullPushChannel(PushChannel):
    """Channel that drops every event. Used when no transport is configured."""

    async def send(self, recipient_id: str, event: str, payload: dict[str, Any]) -> bool:
        return False


class JsonSocket(Protocol):
    """The part of a websocket connection the manager needs."""

    async def send_json(self, data: Any) -> None:
        ...


class ConnectionManager(PushChannel):
    """In-process fan-out to websocket sessions, keyed by user id.

    The default channel when no Redis is configured. The hosting web tier
    calls ``connect`` and ``disconnect`` as sessions come and go.
    """

    def __init__(self) -> None:
        self.active_connections: dict[str, set[JsonSocket]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, user_id: str, websocket: JsonSocket) -> None:
        async with self._lock:
            self.active_connections.setdefault(user_id, set()).add(websocket)
        logger.info("Push session connected", user_id=user_id)

    async def disconnect(self, user_id: str, websocket: JsonSocket) -> None:
        async with self._lock:
            sessions = self.active_connections.get(user_id)
            if sessions is not None:
                sessions.discard(websocket)
                if not sessions:
                    del self.active_connections[user_id]

    def get_connection_count(self, user_id: Optional[str] = None) -> int:
        if user_id:
            return len(self.active_connections.get(user_id, set()))
        return sum(len(conns) for conns in self.active_connections.values())

    async def send(self, recipient_id: str, event: str, payload: dict[str, Any]) -> bool:
        async with self._lock:
            connections = self.active_connections.get(recipient_id, set()).copy()

        if not connections:
            logger.debug("No active push sessions", recipient_id=recipient_id)
            return False

        message = {"event": event, "data": payload}
        dead_connections = set()
        delivered = False
        for connection in connections:
            try:
                await connection.send_json(message)
                delivered = True
            except Exception as e:
                logger.warning("Error pushing to session", recipient_id=recipient_id, error=str(e))
                dead_connections.add(connection)

        if dead_connections:
            async with self._lock:
                if recipient_id in self.active_connections:
                    self.active_connections[recipient_id] -= dead_connections
                    if not self.active_connections[recipient_id]:
                        del self.active_connections[recipient_id]

        return delivered


class RedisPushChannel(PushChannel):
    """
    Publishes events on Redis for the web tier's socket server to relay.

    Each recipient has its own channel, ``<prefix>:<user_id>``, carrying
    ``{"event": ..., "data": ...}`` JSON messages.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        client: Optional[aioredis.Redis] = None,
        channel_prefix: str = "fleet:notifications",
    ) -> None:
        if client is None and not redis_url:
            raise ValueError("RedisPushChannel needs a redis_url or a client")
        self._redis_url = redis_url
        self._client = client
        self._prefix = channel_prefix

    def _get_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(self._redis_url, decode_responses=True)
        return self._client

    def channel_for(self, recipient_id: str) -> str:
        return f"{self._prefix}:{recipient_id}"

    async def send(self, recipient_id: str, event: str, payload: dict[str, Any]) -> bool:
        message = json.dumps({"event": event, "data": payload}, default=str)
        try:
            receivers = await self._get_client().publish(self.channel_for(recipient_id), message)
        except Exception as e:
            logger.warning(
                "Redis push failed",
                channel=self.channel_for(recipient_id),
                recipient_id=recipient_id,
                error=str(e),
            )
            return False
        return bool(receivers)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
