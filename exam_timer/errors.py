"""Command errors surfaced to HTTP and WebSocket callers."""


class RoomCommandError(Exception):
    """Base class for recoverable command failures."""

    code = "command_error"
    status_code = 400
    default_message = "Command failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class MissingRoomId(RoomCommandError):
    code = "missing_room_id"
    default_message = "roomId is required"


class InvalidDuration(RoomCommandError):
    code = "invalid_duration"
    default_message = "Invalid duration"


class UnknownCommand(RoomCommandError):
    code = "unknown_command"
    default_message = "Unknown command"


class Unauthorized(RoomCommandError):
    code = "unauthorized"
    status_code = 401
    default_message = "Token required"


class RoomNotFound(RoomCommandError):
    code = "room_not_found"
    status_code = 404
    default_message = "Room not found"


class RoomFull(RoomCommandError):
    code = "room_full"
    status_code = 429
    default_message = "Too many connections"


class RoomLimitReached(RoomCommandError):
    code = "room_limit_reached"
    status_code = 429
    default_message = "Maximum room limit reached"
