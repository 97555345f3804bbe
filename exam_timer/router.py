"""Transport-independent command dispatch.

HTTP endpoints and WebSocket messages both land here. Each command is
authenticated, its room id normalized, and exactly one controller
operation is run. Errors propagate as ``RoomCommandError`` for the
adapters to render.
"""

import logging
from collections.abc import Awaitable, Callable

from .auth import Authenticator, require_role
from .broadcaster import WebSocketBroadcaster
from .controller import SessionController
from .errors import UnknownCommand
from .formatting import format_hms
from .models import CommandOutcome, CommandResult, SessionStatus
from .room_keys import normalize_room_key

logger = logging.getLogger(__name__)

APPLIED_MESSAGES = {
    "start": "Exam started",
    "pause": "Exam paused",
    "continue": "Exam continued",
    "stop": "Exam stopped",
    "configure": "Duration set",
}

SOFT_MESSAGES = {
    CommandOutcome.ALREADY_RUNNING: "Exam already running",
    CommandOutcome.NOTHING_TO_PAUSE: "Nothing to pause",
    CommandOutcome.NOTHING_TO_RESUME: "Nothing to resume",
    CommandOutcome.ALREADY_FINISHED: "Exam already finished",
}

Handler = Callable[[str, dict], Awaitable[CommandResult]]


class CommandRouter:
    def __init__(
        self,
        controller: SessionController,
        broadcaster: WebSocketBroadcaster,
        authenticator: Authenticator,
        control_roles: list[str] | None = None,
    ):
        self.controller = controller
        self.broadcaster = broadcaster
        self.authenticator = authenticator
        self.control_roles = control_roles or ["teacher"]
        self._handlers: dict[str, Handler] = {
            "start": self._start,
            "pause": self._pause,
            "continue": self._continue,
            "stop": self._stop,
            "configure": self._configure,
        }

    @property
    def commands(self) -> list[str]:
        return list(self._handlers)

    async def dispatch(self, command: str, payload: dict, credential: str | None) -> dict:
        """Run one control command and return its acknowledgement."""
        handler = self._handlers.get(command)
        if handler is None:
            raise UnknownCommand(f"Unknown command: {command}")

        await require_role(self.authenticator, credential, self.control_roles)
        room_key = normalize_room_key(payload.get("roomId"))

        result = await handler(room_key, payload)
        if not result.applied:
            logger.info("Room %s %s: %s", room_key, command, result.outcome)
        return self._ack(command, result)

    async def join(self, client_id: str, payload: dict) -> dict:
        room_key = normalize_room_key(payload.get("roomId"))
        role = payload.get("role")
        count = self.broadcaster.subscribe(room_key, client_id)
        logger.info("Client %s (%s) joined room %s. Total: %d", client_id, role, room_key, count)

        await self.broadcaster.publish(
            room_key,
            "user_joined",
            {"roomId": room_key, "role": role, "clientsInRoom": count},
            exclude=client_id,
        )

        ack = {"roomId": room_key, "clientsInRoom": count}
        session = self.controller.registry.get(room_key)
        if session is not None:
            ack["snapshot"] = session.snapshot(timezone=self.controller.timezone).to_message()
        return ack

    async def leave(self, client_id: str, payload: dict) -> dict:
        room_key = normalize_room_key(payload.get("roomId"))
        count = self.broadcaster.unsubscribe(room_key, client_id)
        await self.broadcaster.publish(
            room_key, "user_left", {"roomId": room_key, "clientsInRoom": count}
        )
        return {"roomId": room_key, "clientsInRoom": count}

    async def disconnect(self, client_id: str):
        for room_key in self.broadcaster.disconnect(client_id):
            await self.broadcaster.publish(
                room_key,
                "user_left",
                {"roomId": room_key, "clientsInRoom": self.broadcaster.subscriber_count(room_key)},
            )

    def status(self, payload: dict) -> dict:
        room_key = normalize_room_key(payload.get("roomId"))
        return self.controller.snapshot(room_key).to_message()

    def rooms(self, status: SessionStatus | None = None) -> list[dict]:
        return [
            s.summary().model_dump(mode="json", by_alias=True)
            for s in self.controller.sessions(status)
        ]

    def room(self, room_id: object) -> dict:
        room_key = normalize_room_key(room_id)
        session = self.controller.registry.require(room_key)
        return session.summary().model_dump(mode="json", by_alias=True)

    async def discard(self, room_id: object, credential: str | None):
        await require_role(self.authenticator, credential, self.control_roles)
        room_key = normalize_room_key(room_id)
        await self.controller.discard(room_key)
        await self.broadcaster.close_room(room_key, reason="discarded")

    # ------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------

    async def _start(self, room_key: str, payload: dict) -> CommandResult:
        return await self.controller.start(room_key, payload.get("duration"))

    async def _pause(self, room_key: str, payload: dict) -> CommandResult:
        return await self.controller.pause(room_key)

    async def _continue(self, room_key: str, payload: dict) -> CommandResult:
        return await self.controller.resume(room_key)

    async def _stop(self, room_key: str, payload: dict) -> CommandResult:
        return await self.controller.stop(room_key)

    async def _configure(self, room_key: str, payload: dict) -> CommandResult:
        return await self.controller.configure(room_key, payload.get("duration"))

    def _ack(self, command: str, result: CommandResult) -> dict:
        session = result.session
        if result.applied:
            message = APPLIED_MESSAGES[command]
        else:
            message = SOFT_MESSAGES[result.outcome]

        ack = {
            "message": message,
            "roomId": session.room_key,
            "applied": result.applied,
            "outcome": str(result.outcome),
            "status": str(session.status),
            "timeLeft": session.remaining_seconds,
            "timeFormatted": format_hms(session.remaining_seconds),
        }
        if command == "start":
            ack["duration"] = session.duration_seconds
            ack["clients"] = self.broadcaster.subscriber_count(session.room_key)
        return ack
