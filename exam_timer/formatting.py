"""Time formatting helpers shared by snapshots and logs."""

from datetime import datetime
from zoneinfo import ZoneInfo


def format_hms(seconds: int) -> str:
    """Format a second count as zero-padded HH:MM:SS."""
    seconds = max(0, int(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def format_server_time(now: datetime | None = None, timezone: str = "UTC") -> str:
    """Wall-clock time in the given zone, as shown to exam clients."""
    zone = ZoneInfo(timezone)
    if now is None:
        now = datetime.now(zone)
    else:
        now = now.astimezone(zone)
    return now.strftime("%H:%M:%S")
