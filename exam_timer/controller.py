"""Room session state machine.

Every operation takes the room's lock before it reads the session, so
ticks and control commands for one room are totally ordered. Rooms never
wait on each other.
"""

import logging
from datetime import UTC, datetime

from .broadcaster import Broadcaster
from .errors import InvalidDuration
from .formatting import format_hms
from .models import (
    CommandOutcome,
    CommandResult,
    CompletionReason,
    RoomSession,
    SessionStatus,
    StatusSnapshot,
)
from .registry import SessionRegistry
from .scheduler import ScheduledHandle, Scheduler

logger = logging.getLogger(__name__)

TICK_SECONDS = 1.0
MAX_DURATION_SECONDS = 86400


class SessionController:
    """Start, pause, resume and stop room countdowns."""

    def __init__(
        self,
        registry: SessionRegistry,
        broadcaster: Broadcaster,
        scheduler: Scheduler,
        tick_seconds: float = TICK_SECONDS,
        max_duration_seconds: int = MAX_DURATION_SECONDS,
        timezone: str = "UTC",
    ):
        self.registry = registry
        self.broadcaster = broadcaster
        self.scheduler = scheduler
        self.tick_seconds = tick_seconds
        self.max_duration_seconds = max_duration_seconds
        self.timezone = timezone

    # ------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------

    async def configure(self, room_key: str, duration_seconds: object) -> CommandResult:
        """Store a duration for a room without starting it."""
        duration = self._validate_duration(duration_seconds)

        async with self.registry.locked(room_key):
            existing = self.registry.get(room_key)
            if existing is not None and existing.is_running:
                return CommandResult(existing, CommandOutcome.ALREADY_RUNNING)

            session = self.registry.put(
                RoomSession(room_key, duration, status=SessionStatus.IDLE)
            )
            try:
                await self._emit(session)
            except Exception:
                self._restore(room_key, existing)
                raise
            logger.info("Room %s configured for %s", room_key, format_hms(duration))
            return CommandResult(session)

    async def start(self, room_key: str, duration_seconds: object = None) -> CommandResult:
        """Begin a fresh countdown, replacing any finished or paused session."""
        duration = None
        if duration_seconds is not None:
            duration = self._validate_duration(duration_seconds)

        async with self.registry.locked(room_key):
            existing = self.registry.get(room_key)
            if existing is not None and existing.is_running:
                logger.warning("Room %s already has a running timer", room_key)
                return CommandResult(existing, CommandOutcome.ALREADY_RUNNING)

            if duration is None:
                if existing is None or existing.status != SessionStatus.IDLE:
                    raise InvalidDuration("duration is required")
                duration = existing.duration_seconds

            session = RoomSession(room_key, duration, status=SessionStatus.RUNNING)
            session.started_at = datetime.now(UTC)
            self.registry.put(session)
            try:
                await self.broadcaster.publish(
                    room_key, "start", {"roomId": room_key, "duration": duration}
                )
                await self._emit(session)
            except Exception:
                self._restore(room_key, existing)
                raise

            logger.info("Room %s started with %s", room_key, format_hms(duration))
            self._begin_ticking(session)
            return CommandResult(session)

    async def tick(self, room_key: str, handle: ScheduledHandle | None = None) -> bool:
        """Apply one elapsed period. Returns False when the tick was stale."""
        async with self.registry.locked(room_key):
            session = self.registry.get(room_key)
            if session is None or session.timer_handle is None:
                return False
            # A tick from a cancelled or replaced timer must not touch state
            if handle is not None and session.timer_handle is not handle:
                return False

            session.remaining_seconds -= 1

            if session.remaining_seconds <= 0:
                session.remaining_seconds = 0
                self._cancel_timer(session)
                session.status = SessionStatus.COMPLETED
                session.finished_at = datetime.now(UTC)
                logger.info("Room %s completed", room_key)
                await self._emit(session, completion_reason=CompletionReason.TIMEUP)
                return True

            logger.debug(
                "Room %s remaining %s", room_key, format_hms(session.remaining_seconds)
            )
            await self._emit(session)
            return True

    async def pause(self, room_key: str) -> CommandResult:
        async with self.registry.locked(room_key):
            session = self.registry.require(room_key)
            if not session.is_running:
                return CommandResult(session, CommandOutcome.NOTHING_TO_PAUSE)

            self._cancel_timer(session)
            session.status = SessionStatus.PAUSED
            logger.info(
                "Room %s paused at %s", room_key, format_hms(session.remaining_seconds)
            )
            await self._emit(session)
            return CommandResult(session)

    async def resume(self, room_key: str) -> CommandResult:
        """Continue a paused countdown from the frozen remaining time."""
        async with self.registry.locked(room_key):
            session = self.registry.require(room_key)
            if session.is_running:
                return CommandResult(session, CommandOutcome.ALREADY_RUNNING)
            if session.status != SessionStatus.PAUSED or session.remaining_seconds <= 0:
                return CommandResult(session, CommandOutcome.NOTHING_TO_RESUME)

            session.status = SessionStatus.RUNNING
            try:
                await self._emit(session, status=SessionStatus.CONTINUED)
            except Exception:
                session.status = SessionStatus.PAUSED
                raise

            logger.info(
                "Room %s continued at %s", room_key, format_hms(session.remaining_seconds)
            )
            self._begin_ticking(session)
            return CommandResult(session)

    async def stop(self, room_key: str) -> CommandResult:
        """End the exam early. The session is kept at zero remaining."""
        async with self.registry.locked(room_key):
            session = self.registry.require(room_key)
            if session.is_finished:
                return CommandResult(session, CommandOutcome.ALREADY_FINISHED)

            self._cancel_timer(session)
            session.remaining_seconds = 0
            session.status = SessionStatus.STOPPED
            session.finished_at = datetime.now(UTC)
            logger.info("Room %s stopped", room_key)
            await self._emit(session, completion_reason=CompletionReason.STOPPED)
            return CommandResult(session)

    async def discard(self, room_key: str) -> RoomSession:
        """Cancel any countdown and forget the room entirely."""
        async with self.registry.locked(room_key):
            session = self.registry.require(room_key)
            self._cancel_timer(session)
            self.registry.remove(room_key)
            logger.info("Room %s discarded", room_key)
            return session

    # ------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------

    def snapshot(self, room_key: str) -> StatusSnapshot:
        session = self.registry.require(room_key)
        return session.snapshot(timezone=self.timezone)

    def sessions(self, status: SessionStatus | None = None) -> list[RoomSession]:
        return self.registry.sessions(status)

    def shutdown(self):
        """Cancel every live timer. Called when the app stops."""
        for session in self.registry.sessions():
            self._cancel_timer(session)

    # ------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------

    def _validate_duration(self, duration: object) -> int:
        if isinstance(duration, bool) or not isinstance(duration, int):
            raise InvalidDuration("duration must be a whole number of seconds")
        if duration <= 0:
            raise InvalidDuration("duration must be greater than zero")
        if duration > self.max_duration_seconds:
            raise InvalidDuration(
                f"duration must be at most {self.max_duration_seconds} seconds"
            )
        return duration

    def _begin_ticking(self, session: RoomSession):
        if session.timer_handle is not None:
            return
        room_key = session.room_key

        async def on_tick(handle: ScheduledHandle):
            try:
                await self.tick(room_key, handle)
            except Exception:
                await self._halt(room_key, handle)
                raise

        session.timer_handle = self.scheduler.schedule(on_tick, self.tick_seconds)

    async def _halt(self, room_key: str, handle: ScheduledHandle):
        """Freeze a room whose timer failed so that it can be continued."""
        async with self.registry.locked(room_key):
            session = self.registry.get(room_key)
            if session is None or session.timer_handle is not handle:
                return
            self._cancel_timer(session)
            session.status = SessionStatus.PAUSED
            logger.error(
                "Room %s timer failed, paused at %s",
                room_key,
                format_hms(session.remaining_seconds),
            )

    def _restore(self, room_key: str, previous: RoomSession | None):
        if previous is None:
            self.registry.remove(room_key)
        else:
            self.registry.put(previous)

    def _cancel_timer(self, session: RoomSession):
        handle = session.timer_handle
        session.timer_handle = None
        if handle is not None:
            handle.cancel()

    async def _emit(
        self,
        session: RoomSession,
        status: SessionStatus | None = None,
        completion_reason: CompletionReason | None = None,
    ):
        snapshot = session.snapshot(
            status=status, completion_reason=completion_reason, timezone=self.timezone
        )
        await self.broadcaster.publish_snapshot(snapshot)
