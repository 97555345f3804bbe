"""In-memory registry of room sessions."""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from .errors import RoomLimitReached, RoomNotFound
from .models import RoomSession, SessionStatus

logger = logging.getLogger(__name__)

MAX_ROOMS = 1000


class SessionRegistry:
    """Owns every room session and the lock that serializes its mutations.

    A room's lock lives as long as the room has a session or someone is
    holding or waiting on it. A command queued on a room that is being
    discarded and recreated still shares the lock with the holder.

    Finished rooms are kept for status queries, but when the registry is
    full the one that finished first makes way for a new room.
    """

    def __init__(self, max_rooms: int = MAX_ROOMS):
        self.max_rooms = max_rooms
        self._sessions: dict[str, RoomSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, room_key: str) -> bool:
        return room_key in self._sessions

    @asynccontextmanager
    async def locked(self, room_key: str) -> AsyncIterator[None]:
        """Hold the room's lock for the duration of the block."""
        lock = self._locks.get(room_key)
        if lock is None:
            lock = self._locks[room_key] = asyncio.Lock()
        self._lock_users[room_key] = self._lock_users.get(room_key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[room_key] -= 1
            self._forget_lock(room_key)

    def get(self, room_key: str) -> RoomSession | None:
        return self._sessions.get(room_key)

    def require(self, room_key: str) -> RoomSession:
        session = self._sessions.get(room_key)
        if session is None:
            raise RoomNotFound(f"Room {room_key} not found")
        return session

    def put(self, session: RoomSession) -> RoomSession:
        """Insert or replace the session for its room key."""
        if session.room_key not in self._sessions and len(self._sessions) >= self.max_rooms:
            self._evict_finished()
        self._sessions[session.room_key] = session
        return session

    def remove(self, room_key: str) -> RoomSession | None:
        session = self._sessions.pop(room_key, None)
        if session is not None:
            logger.debug("Removed room %s", room_key)
            self._forget_lock(room_key)
        return session

    def sessions(self, status: SessionStatus | None = None) -> list[RoomSession]:
        sessions = list(self._sessions.values())
        if status is not None:
            sessions = [s for s in sessions if s.status == status]
        return sessions

    def clear(self) -> None:
        self._sessions.clear()
        self._locks.clear()
        self._lock_users.clear()

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    def _evict_finished(self):
        finished = [s for s in self._sessions.values() if s.is_finished]
        if not finished:
            raise RoomLimitReached()
        oldest = min(finished, key=lambda s: s.finished_at or s.created_at)
        logger.info("Room limit reached, evicting finished room %s", oldest.room_key)
        self.remove(oldest.room_key)

    def _forget_lock(self, room_key: str):
        if room_key in self._sessions or self._lock_users.get(room_key, 0) > 0:
            return
        self._locks.pop(room_key, None)
        self._lock_users.pop(room_key, None)
