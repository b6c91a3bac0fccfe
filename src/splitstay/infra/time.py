"""Time utilities for consistent timestamp and calendar-day handling."""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def local_today(tz_name: str, now: datetime | None = None) -> date:
    """Return the calendar day in the property's timezone.

    Calendar days are always derived in local time: converting a UTC
    instant straight to a date gives off-by-one days in positive offsets.

    Args:
        tz_name: IANA timezone name (e.g. "Africa/Nairobi").
        now: Aware instant to convert (defaults to utc_now()).
    """
    instant = now or utc_now()
    return instant.astimezone(ZoneInfo(tz_name)).date()


def epoch_millis(now: datetime | None = None) -> int:
    """Milliseconds since the Unix epoch for the given (or current) instant."""
    instant = now or utc_now()
    return int(instant.timestamp() * 1000)
