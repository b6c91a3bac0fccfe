"""Calendar-day arithmetic for stays.

All stay logic works on plain ``datetime.date`` values: a night is identified
by the calendar day the guest checks in on, and a stay is the half-open range
``[check_in, checkout)``. The checkout day itself is never a night of the
stay.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterator
from zoneinfo import ZoneInfo

ONE_DAY = timedelta(days=1)


def day_key(day: date) -> str:
    """Format a day as 'YYYY-MM-DD' (the wire format used by every service)."""
    return day.isoformat()


def parse_day(value: date | datetime | str, tz_name: str | None = None) -> date:
    """Parse a calendar day from a date, datetime or ISO string.

    Aware datetimes (including ISO strings with an offset or a trailing 'Z')
    are converted to ``tz_name`` before taking the date, so a midnight-UTC
    timestamp produced by a browser in UTC+3 still lands on the intended day.

    Args:
        value: date, datetime, 'YYYY-MM-DD' or full ISO-8601 timestamp.
        tz_name: IANA timezone for aware values (naive values are taken as-is).

    Raises:
        ValueError: If the string is not a recognisable date.
    """
    if isinstance(value, datetime):
        instant = value
    elif isinstance(value, date):
        return value
    else:
        text = value.strip()
        if len(text) == 10:
            return date.fromisoformat(text)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        instant = datetime.fromisoformat(text)

    if instant.tzinfo is not None and tz_name:
        instant = instant.astimezone(ZoneInfo(tz_name))
    return instant.date()


def add_days(day: date, n: int) -> date:
    return day + timedelta(days=n)


def next_day(day: date) -> date:
    return day + ONE_DAY


def prev_day(day: date) -> date:
    return day - ONE_DAY


def nights_between(check_in: date, checkout: date) -> int:
    """Number of nights in [check_in, checkout); negative if inverted."""
    return (checkout - check_in).days


def iter_nights(start: date, end_exclusive: date) -> Iterator[date]:
    """Yield every night from start up to, but not including, end_exclusive."""
    current = start
    while current < end_exclusive:
        yield current
        current += ONE_DAY


def shift_month(year: int, month: int, offset: int) -> tuple[int, int]:
    """Move (year, month) by offset months, wrapping across years."""
    index = year * 12 + (month - 1) + offset
    return index // 12, index % 12 + 1


@dataclass(frozen=True)
class StayRange:
    """A stay as a half-open range of nights: [check_in, checkout)."""

    check_in: date
    checkout: date

    @property
    def nights(self) -> int:
        return nights_between(self.check_in, self.checkout)

    @property
    def last_night(self) -> date:
        return prev_day(self.checkout)

    def iter_nights(self) -> Iterator[date]:
        return iter_nights(self.check_in, self.checkout)

    def contains_night(self, day: date) -> bool:
        return self.check_in <= day < self.checkout

    def overlaps(self, start: date, end_exclusive: date) -> bool:
        """True if any night of this stay falls inside [start, end_exclusive)."""
        return self.check_in < end_exclusive and self.checkout > start

    def as_dict(self) -> dict[str, str]:
        return {"startDate": day_key(self.check_in), "endDate": day_key(self.checkout)}
