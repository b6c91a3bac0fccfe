"""Occupied-night index for one unit.

Exclusive checkout model: a reservation [start, end) occupies every night
from start through end - 1. The checkout day is never occupied, so the next
guest can check in on it.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date
from typing import Iterable

from splitstay.domain.dates import day_key, iter_nights
from splitstay.domain.models import Reservation


def build_occupied_nights(reservations: Iterable[Reservation]) -> frozenset[date]:
    """Collect every occupied night across all active reservations."""
    occupied: set[date] = set()
    for reservation in reservations:
        if not reservation.is_active:
            continue
        occupied.update(iter_nights(reservation.start_date, reservation.end_date))
    return frozenset(occupied)


class AvailabilityIndex:
    """Immutable set of occupied nights built from a reservation list.

    The index is rebuilt from scratch whenever the reservation list is
    refreshed; it is never patched in place.
    """

    def __init__(self, occupied: Iterable[date] = ()) -> None:
        self._occupied = frozenset(occupied)

    @classmethod
    def from_reservations(cls, reservations: Iterable[Reservation]) -> "AvailabilityIndex":
        return cls(build_occupied_nights(reservations))

    @property
    def occupied(self) -> frozenset[date]:
        return self._occupied

    def is_occupied(self, day: date) -> bool:
        return day in self._occupied

    def first_occupied(self, start: date, end_exclusive: date) -> date | None:
        """Return the first occupied night in [start, end_exclusive), if any."""
        for night in iter_nights(start, end_exclusive):
            if night in self._occupied:
                return night
        return None

    def is_range_free(self, start: date, end_exclusive: date) -> bool:
        """True iff every night in [start, end_exclusive) is unoccupied."""
        return self.first_occupied(start, end_exclusive) is None

    def __contains__(self, day: object) -> bool:
        return day in self._occupied

    def __len__(self) -> int:
        return len(self._occupied)


@dataclass(frozen=True)
class CalendarDay:
    """One cell of a month grid."""

    day: date
    state: str  # "booked" | "past" | "available"
    is_today: bool = False

    def as_dict(self) -> dict:
        return {"date": day_key(self.day), "state": self.state, "today": self.is_today}


def month_grid(
    year: int,
    month: int,
    index: AvailabilityIndex,
    today: date,
) -> list[CalendarDay | None]:
    """Lay out a month Monday-first, with None for the leading blank cells.

    Booked wins over past: an occupied night in the past is still shown as
    booked.
    """
    leading_blanks = calendar.monthrange(year, month)[0]  # Monday == 0
    days_in_month = calendar.monthrange(year, month)[1]

    cells: list[CalendarDay | None] = [None] * leading_blanks
    for n in range(1, days_in_month + 1):
        day = date(year, month, n)
        if index.is_occupied(day):
            state = "booked"
        elif day < today:
            state = "past"
        else:
            state = "available"
        cells.append(CalendarDay(day=day, state=state, is_today=day == today))
    return cells
