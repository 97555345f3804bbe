"""Room-scoped fan-out to connected WebSocket clients."""

import contextlib
import logging
from typing import Protocol

from fastapi import WebSocket

from .errors import RoomFull
from .models import StatusSnapshot

logger = logging.getLogger(__name__)

MAX_CLIENTS_PER_ROOM = 100


class Broadcaster(Protocol):
    async def publish(
        self, room_key: str, event: str, payload: dict, exclude: str | None = None
    ) -> int: ...

    async def publish_snapshot(self, snapshot: StatusSnapshot) -> int: ...

    def subscriber_count(self, room_key: str) -> int: ...


class WebSocketBroadcaster:
    """Tracks which connection listens to which room.

    Delivery is best effort: a client whose send fails is dropped and
    simply misses the message. The next tick resynchronizes the room.
    """

    def __init__(self, max_clients_per_room: int = MAX_CLIENTS_PER_ROOM):
        self.max_clients_per_room = max_clients_per_room
        self.clients: dict[str, WebSocket] = {}
        self.rooms: dict[str, set[str]] = {}

    def connect(self, client_id: str, websocket: WebSocket):
        """Register an accepted connection."""
        self.clients[client_id] = websocket

    def disconnect(self, client_id: str) -> list[str]:
        """Forget a connection; returns the rooms it was subscribed to."""
        self.clients.pop(client_id, None)
        left = []
        for room_key, members in list(self.rooms.items()):
            if client_id in members:
                members.discard(client_id)
                left.append(room_key)
                if not members:
                    del self.rooms[room_key]
        return left

    def subscribe(self, room_key: str, client_id: str) -> int:
        members = self.rooms.setdefault(room_key, set())
        if client_id not in members and len(members) >= self.max_clients_per_room:
            raise RoomFull(f"Room {room_key} is full")
        members.add(client_id)
        return len(members)

    def unsubscribe(self, room_key: str, client_id: str) -> int:
        members = self.rooms.get(room_key)
        if members is None:
            return 0
        members.discard(client_id)
        if not members:
            del self.rooms[room_key]
            return 0
        return len(members)

    def subscriber_count(self, room_key: str) -> int:
        return len(self.rooms.get(room_key, ()))

    async def send(self, client_id: str, message: dict) -> bool:
        """Send message to a specific client."""
        ws = self.clients.get(client_id)
        if ws is None:
            return False
        try:
            await ws.send_json(message)
        except Exception:
            logger.warning("Dropping client %s after failed send", client_id)
            self.disconnect(client_id)
            return False
        return True

    async def publish(
        self, room_key: str, event: str, payload: dict, exclude: str | None = None
    ) -> int:
        """Send ``{"type": event, **payload}`` to every subscriber of a room."""
        message = {"type": event, **payload}
        delivered = 0
        for client_id in list(self.rooms.get(room_key, ())):
            if client_id == exclude:
                continue
            if await self.send(client_id, message):
                delivered += 1
        return delivered

    async def publish_snapshot(self, snapshot: StatusSnapshot) -> int:
        return await self.publish(snapshot.room_id, "status", snapshot.to_message())

    async def close_room(self, room_key: str, reason: str = "Room closed"):
        """Tell subscribers the room is gone and drop the subscriptions."""
        await self.publish(room_key, "room_closed", {"roomId": room_key})
        self.rooms.pop(room_key, None)
        logger.info("Closed room %s: %s", room_key, reason)

    async def close_all(self):
        for _client_id, ws in list(self.clients.items()):
            with contextlib.suppress(Exception):
                await ws.close(code=1001, reason="Server shutting down")
        self.clients.clear()
        self.rooms.clear()
