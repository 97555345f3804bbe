"""Canonical room keys.

Clients send room ids as numbers or strings depending on the transport.
Every boundary runs ids through ``normalize_room_key`` so ``5``, ``"5"``
and ``"05"`` all address the same room.
"""

from .errors import MissingRoomId

MAX_ROOM_KEY_LENGTH = 128


def normalize_room_key(raw: object) -> str:
    """Return the canonical string key for a client-supplied room id."""
    # bool is an int subclass; True is not a room
    if raw is None or isinstance(raw, bool):
        raise MissingRoomId()

    if isinstance(raw, int):
        if abs(raw) >= 10**MAX_ROOM_KEY_LENGTH:
            raise _too_long()
        return str(raw)

    if isinstance(raw, float):
        if raw.is_integer():
            return normalize_room_key(int(raw))
        raise MissingRoomId(f"Invalid room id: {raw!r}")

    if isinstance(raw, str):
        key = raw.strip()
        if not key:
            raise MissingRoomId()
        if len(key) > MAX_ROOM_KEY_LENGTH:
            raise _too_long()
        if key.removeprefix("-").isdecimal():
            return str(int(key))
        return key

    raise MissingRoomId(f"Invalid room id: {raw!r}")


def _too_long() -> MissingRoomId:
    return MissingRoomId(f"Room id is longer than {MAX_ROOM_KEY_LENGTH} characters")
