"""Session state and outbound message models."""

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .formatting import format_hms, format_server_time

if TYPE_CHECKING:
    from .scheduler import ScheduledHandle


class SessionStatus(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    # Only ever emitted on the resume snapshot, never stored
    CONTINUED = "continued"
    COMPLETED = "completed"
    STOPPED = "stopped"


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.STOPPED})


class CompletionReason(StrEnum):
    TIMEUP = "timeup"
    STOPPED = "stopped"


class CommandOutcome(StrEnum):
    APPLIED = "applied"
    ALREADY_RUNNING = "already_running"
    NOTHING_TO_PAUSE = "nothing_to_pause"
    NOTHING_TO_RESUME = "nothing_to_resume"
    ALREADY_FINISHED = "already_finished"


def _format_ts(dt: datetime | None) -> str | None:
    """Format a UTC datetime as ISO 8601 with Z suffix."""
    if dt is None:
        return None
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


class StatusSnapshot(BaseModel):
    """What every subscriber of a room sees after a state change."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    room_id: str
    status: SessionStatus
    time_left: int = Field(..., ge=0)
    time_formatted: str
    server_time: str
    completion_reason: CompletionReason | None = None

    def to_message(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class RoomSummary(BaseModel):
    """Status view returned by the room query endpoints."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    room_id: str
    status: SessionStatus
    duration_seconds: int
    time_left: int
    time_formatted: str
    running: bool
    created_at: str
    started_at: str | None
    finished_at: str | None


class RoomSession:
    """Mutable countdown record for a single room."""

    def __init__(
        self,
        room_key: str,
        duration_seconds: int,
        status: SessionStatus = SessionStatus.RUNNING,
    ):
        self.room_key = room_key
        self.duration_seconds = duration_seconds
        self.remaining_seconds = duration_seconds
        self.status = status

        self.created_at = datetime.now(UTC)
        self.started_at: datetime | None = None
        self.finished_at: datetime | None = None

        # Live iff the countdown is ticking
        self.timer_handle: "ScheduledHandle | None" = None

    @property
    def is_running(self) -> bool:
        return self.timer_handle is not None

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def snapshot(
        self,
        status: SessionStatus | None = None,
        completion_reason: CompletionReason | None = None,
        timezone: str = "UTC",
    ) -> StatusSnapshot:
        """Build a fresh snapshot; ``status`` overrides the stored one."""
        return StatusSnapshot(
            room_id=self.room_key,
            status=status or self.status,
            time_left=self.remaining_seconds,
            time_formatted=format_hms(self.remaining_seconds),
            server_time=format_server_time(timezone=timezone),
            completion_reason=completion_reason,
        )

    def summary(self) -> RoomSummary:
        return RoomSummary(
            room_id=self.room_key,
            status=self.status,
            duration_seconds=self.duration_seconds,
            time_left=self.remaining_seconds,
            time_formatted=format_hms(self.remaining_seconds),
            running=self.is_running,
            created_at=_format_ts(self.created_at),
            started_at=_format_ts(self.started_at),
            finished_at=_format_ts(self.finished_at),
        )


@dataclass
class CommandResult:
    """Outcome of one controller operation."""

    session: RoomSession
    outcome: CommandOutcome = CommandOutcome.APPLIED

    @property
    def applied(self) -> bool:
        return self.outcome == CommandOutcome.APPLIED
