"""Calendar selection state machine for one calendar widget.

Only the inclusive anchor pair (check_in, last_night) is stored; the
exclusive checkout is always derived as last_night + 1 day.

Gesture rules while ANCHORED:
- same day as check_in   -> clear, back to IDLE
- day before check_in    -> new one-night anchor on that day
- day after check_in     -> last_night = day, if [check_in, day] is all free
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from enum import Enum
from typing import Callable, Iterable

from splitstay.domain.availability import AvailabilityIndex
from splitstay.domain.dates import StayRange, next_day
from splitstay.domain.models import Reservation


class SelectionPhase(str, Enum):
    IDLE = "IDLE"
    ANCHORED = "ANCHORED"


class SelectionRejected(Exception):
    """A gesture was refused; the committed selection is unchanged."""

    def __init__(self, reason_code: str, day: date | None = None) -> None:
        self.reason_code = reason_code
        self.day = day
        super().__init__(f"Selection rejected: {reason_code}")


@dataclass(frozen=True)
class SelectionState:
    check_in: date | None = None
    last_night: date | None = None
    phase: SelectionPhase = SelectionPhase.IDLE

    @property
    def end_date_exclusive(self) -> date | None:
        if self.last_night is None:
            return None
        return next_day(self.last_night)

    @property
    def nights(self) -> int:
        if self.check_in is None or self.last_night is None:
            return 0
        return (self.last_night - self.check_in).days + 1

    def as_range(self) -> StayRange | None:
        if self.check_in is None or self.last_night is None:
            return None
        return StayRange(self.check_in, next_day(self.last_night))


_IDLE = SelectionState()


class SelectionEngine:
    """Turns tap/click/hover gestures into a validated stay range.

    Args:
        index: Occupied nights for the unit.
        today: Callable returning the current local calendar day.
    """

    def __init__(
        self,
        index: AvailabilityIndex,
        *,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._index = index
        self._today = today
        self._state = _IDLE
        self._hover: date | None = None

    @property
    def state(self) -> SelectionState:
        return self._state

    @property
    def index(self) -> AvailabilityIndex:
        return self._index

    @property
    def preview(self) -> tuple[date, date] | None:
        """Inclusive (first, last) band of the hover preview, if any."""
        if self._hover is None or self._state.last_night is None:
            return None
        return next_day(self._state.last_night), self._hover

    def refresh(self, reservations: Iterable[Reservation]) -> None:
        """Rebuild the occupied index from a freshly fetched reservation list."""
        self._index = AvailabilityIndex.from_reservations(reservations)
        self._hover = None

    def _check_selectable(self, day: date) -> None:
        if day < self._today():
            raise SelectionRejected("past_date", day)
        if self._index.is_occupied(day):
            raise SelectionRejected("occupied", day)

    def activate(self, day: date) -> SelectionState:
        """Apply a tap/click on a calendar day.

        Raises:
            SelectionRejected: past_date, occupied, or range_unavailable.
        """
        state = self._state
        # Tapping the anchor again clears it, even once that day is in the past
        if state.phase is not SelectionPhase.IDLE and day == state.check_in:
            return self._commit(_IDLE)

        self._check_selectable(day)
        if state.phase is SelectionPhase.IDLE:
            return self._commit(SelectionState(day, day, SelectionPhase.ANCHORED))

        if day < state.check_in:
            return self._commit(SelectionState(day, day, SelectionPhase.ANCHORED))

        # Extend or shrink: every night of [check_in, day] must be free
        if not self._index.is_range_free(state.check_in, next_day(day)):
            raise SelectionRejected("range_unavailable", day)
        return self._commit(replace(state, last_night=day))

    def hover(self, day: date) -> tuple[date, date] | None:
        """Preview extending the selection to ``day`` without committing it."""
        state = self._state
        if state.phase is not SelectionPhase.ANCHORED or state.last_night is None:
            self._hover = None
            return None

        if day <= state.last_night or not self._index.is_range_free(
            state.check_in, next_day(day)
        ):
            self._hover = None
            return None

        self._hover = day
        return self.preview

    def leave(self) -> None:
        """Pointer left the grid: drop any preview."""
        self._hover = None

    def cancel(self) -> SelectionState:
        return self._commit(_IDLE)

    def enter_manual(self, check_in: date, checkout: date | None) -> SelectionState:
        """Accept typed check-in / check-out dates (fallback path).

        An invalid checkout (missing, or not after check-in) is advanced to
        check_in + 1 day before validation.

        Raises:
            SelectionRejected: past_date, occupied, or range_unavailable.
        """
        if checkout is None or checkout <= check_in:
            checkout = next_day(check_in)

        self._check_selectable(check_in)
        if not self._index.is_range_free(check_in, checkout):
            raise SelectionRejected("range_unavailable", check_in)

        stay = StayRange(check_in, checkout)
        return self._commit(SelectionState(check_in, stay.last_night, SelectionPhase.ANCHORED))

    def _commit(self, state: SelectionState) -> SelectionState:
        self._state = state
        self._hover = None
        return state
