"""Submission-time conflict detection.

Overlap formula:  (new_checkin < existing_checkout) AND (new_checkout > existing_checkin)
Strict inequality allows check-out day == check-in day (back-to-back turnover).

Only active reservations (deposit or balance paid, or confirmed) generate
conflicts. The same check runs optimistically on the client; only the run
against a freshly fetched reservation list is trusted.
"""

from __future__ import annotations

import logging
from typing import Iterable

from splitstay.domain.dates import StayRange
from splitstay.domain.errors import DateConflictError
from splitstay.domain.models import Reservation

logger = logging.getLogger(__name__)


def _conflicts_with(stay: StayRange, reservation: Reservation) -> bool:
    if not reservation.is_active:
        return False
    # Back-to-back: new check-in on the existing checkout day
    if stay.check_in == reservation.end_date:
        return False
    return stay.overlaps(reservation.start_date, reservation.end_date)


def find_conflict(
    stay: StayRange,
    reservations: Iterable[Reservation],
    *,
    exclude_booking_id: str | None = None,
) -> Reservation | None:
    """Return the first active reservation overlapping the stay, or None.

    Args:
        stay: Candidate half-open range.
        reservations: Reservation list for the unit.
        exclude_booking_id: Reservation to ignore (a resubmitted draft must
            not conflict with itself).
    """
    for reservation in reservations:
        if exclude_booking_id is not None and reservation.booking_id == exclude_booking_id:
            continue
        if _conflicts_with(stay, reservation):
            return reservation
    return None


def is_free(stay: StayRange, reservations: Iterable[Reservation]) -> bool:
    """True iff no active reservation overlaps the candidate stay."""
    return find_conflict(stay, reservations) is None


def assert_range_free(
    stay: StayRange,
    reservations: Iterable[Reservation],
    *,
    exclude_booking_id: str | None = None,
    unit_id: str | None = None,
) -> None:
    """Raise DateConflictError if the stay overlaps an active reservation."""
    conflict = find_conflict(stay, reservations, exclude_booking_id=exclude_booking_id)
    if conflict is None:
        return

    logger.warning(
        "date conflict detected",
        extra={
            "extra_fields": {
                "unit_id": unit_id,
                "requested_checkin": stay.check_in.isoformat(),
                "requested_checkout": stay.checkout.isoformat(),
                "conflicting_booking_id": conflict.booking_id,
                "existing_checkin": conflict.start_date.isoformat(),
                "existing_checkout": conflict.end_date.isoformat(),
            },
        },
    )
    raise DateConflictError(
        stay.check_in,
        stay.checkout,
        conflicting_booking_id=conflict.booking_id,
        existing_start=conflict.start_date,
        existing_end=conflict.end_date,
    )
