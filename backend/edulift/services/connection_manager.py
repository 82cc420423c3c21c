"""WebSocket Connection Manager.

Fans out membership change events to the clients subscribed to a family
or group channel. Delivery is best effort: a failed send drops the socket
and never reaches the caller.
"""

import asyncio
import logging
import uuid

from fastapi import WebSocket

from edulift.services.events import MembershipEvent

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Registry of live sockets keyed by family and group channel."""

    def __init__(self) -> None:
        self._family_sockets: dict[uuid.UUID, set[WebSocket]] = {}
        self._group_sockets: dict[uuid.UUID, set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _add(channels: dict[uuid.UUID, set[WebSocket]], key: uuid.UUID, ws: WebSocket) -> None:
        channels.setdefault(key, set()).add(ws)

    @staticmethod
    def _discard(channels: dict[uuid.UUID, set[WebSocket]], key: uuid.UUID, ws: WebSocket) -> None:
        if key in channels:
            channels[key].discard(ws)
            if not channels[key]:
                del channels[key]

    async def subscribe(
        self,
        websocket: WebSocket,
        family_id: uuid.UUID | None,
        group_ids: list[uuid.UUID],
    ) -> None:
        """Register a socket on its family channel and its groups' channels."""
        async with self._lock:
            if family_id is not None:
                self._add(self._family_sockets, family_id, websocket)
            for group_id in group_ids:
                self._add(self._group_sockets, group_id, websocket)
        logger.info("Client subscribed (family %s, %d groups)", family_id, len(group_ids))

    async def unsubscribe(self, websocket: WebSocket) -> None:
        """Remove a socket from every channel."""
        async with self._lock:
            for channels in (self._family_sockets, self._group_sockets):
                for key in list(channels):
                    self._discard(channels, key, websocket)

    async def _send(
        self,
        channels: dict[uuid.UUID, set[WebSocket]],
        key: uuid.UUID,
        message: dict,
    ) -> int:
        sockets = channels.get(key, set()).copy()
        dead: set[WebSocket] = set()
        count = 0
        for ws in sockets:
            try:
                await ws.send_json(message)
                count += 1
            except Exception:
                logger.warning("Failed to deliver %s event on channel %s", message.get("type"), key)
                dead.add(ws)
        if dead:
            async with self._lock:
                for ws in dead:
                    self._discard(channels, key, ws)
        return count

    async def broadcast_family_update(
        self, family_id: uuid.UUID, event: MembershipEvent
    ) -> int:
        """Send an event to every client subscribed to a family.

        Returns the count of sockets successfully notified.
        """
        return await self._send(self._family_sockets, family_id, event.to_message())

    async def broadcast_group_update(
        self, group_id: uuid.UUID, event: MembershipEvent
    ) -> int:
        """Send an event to every client subscribed to a group."""
        return await self._send(self._group_sockets, group_id, event.to_message())

    async def get_connected_count(self, family_id: uuid.UUID) -> int:
        return len(self._family_sockets.get(family_id, set()))

    async def get_group_connected_count(self, group_id: uuid.UUID) -> int:
        return len(self._group_sockets.get(group_id, set()))


# Shared instance used by the application wiring
connection_manager = ConnectionManager()
