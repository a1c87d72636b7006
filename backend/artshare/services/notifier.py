"""User notifications for entitlement changes.

The reconciliation service depends only on the ``Notifier`` protocol; the
app lifespan wires a ``RegistryNotifier`` backed by an explicit
``ConnectionRegistry`` that the websocket route registers sockets into.
"""

import asyncio
from collections import defaultdict
from typing import Any, Protocol

import structlog

from artshare.models.billing import NotificationMessage

logger = structlog.get_logger(__name__)


class Connection(Protocol):
    """Anything that can receive a JSON message (e.g. a starlette WebSocket)."""

    async def send_json(self, data: Any) -> None: ...


class Notifier(Protocol):
    async def send_to_user(self, user_id: str, message: NotificationMessage) -> int:
        """Deliver a message to a user. Returns the number of deliveries."""


class ConnectionRegistry:
    """Live connections per user id."""

    def __init__(self) -> None:
        self._connections: dict[str, list[Connection]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def register(self, user_id: str, connection: Connection) -> None:
        async with self._lock:
            self._connections[user_id].append(connection)
        logger.debug("notifier_connection_registered", user_id=user_id)

    async def unregister(self, user_id: str, connection: Connection) -> None:
        async with self._lock:
            connections = self._connections.get(user_id, [])
            if connection in connections:
                connections.remove(connection)
            if not connections:
                self._connections.pop(user_id, None)
        logger.debug("notifier_connection_unregistered", user_id=user_id)

    async def lookup(self, user_id: str) -> list[Connection]:
        async with self._lock:
            return list(self._connections.get(user_id, []))


class RegistryNotifier:
    """Pushes messages to every connection a user has open on this instance."""

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry

    async def send_to_user(self, user_id: str, message: NotificationMessage) -> int:
        delivered = 0
        for connection in await self.registry.lookup(user_id):
            try:
                await connection.send_json(message.model_dump(mode="json"))
                delivered += 1
            except Exception as e:
                # Dead socket; the websocket route unregisters it on disconnect
                logger.warning("notifier_send_failed", user_id=user_id, error=str(e))
                await self.registry.unregister(user_id, connection)
        return delivered


class NullNotifier:
    """Notifier that drops every message."""

    async def send_to_user(self, user_id: str, message: NotificationMessage) -> int:
        return 0
