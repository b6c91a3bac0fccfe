"""Read-side classification of a guest's bookings (my-bookings listing)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable

from splitstay.domain.models import BookingRecord

PAYMENT_PAID_FULL = "paid-full"
PAYMENT_DEPOSIT = "deposit"
PAYMENT_PENDING = "pending"
PAYMENT_CANCELLED = "cancelled"

STAY_UPCOMING = "upcoming"
STAY_ACTIVE = "active"
STAY_COMPLETED = "completed"
STAY_CANCELLED = "cancelled"

FILTERS = ("all", "deposit-paid", "balance-pending", "fully-paid", "cancelled")


def payment_status(record: BookingRecord) -> str:
    if record.is_cancelled:
        return PAYMENT_CANCELLED
    if record.deposit_paid and record.balance_paid:
        return PAYMENT_PAID_FULL
    if record.deposit_paid:
        return PAYMENT_DEPOSIT
    return PAYMENT_PENDING


def stay_status(record: BookingRecord, today: date) -> str:
    """Where the stay sits relative to today (checkout day counts as completed)."""
    if record.is_cancelled:
        return STAY_CANCELLED
    if record.start_date is None or record.end_date is None:
        return STAY_UPCOMING
    if record.start_date <= today < record.end_date:
        return STAY_ACTIVE
    if record.end_date <= today:
        return STAY_COMPLETED
    return STAY_UPCOMING


def balance_due_in_days(record: BookingRecord, today: date) -> int | None:
    """Days left to pay the balance (due by check-in), or None if nothing is due."""
    if record.is_cancelled or record.balance_paid or not record.deposit_paid:
        return None
    if record.start_date is None:
        return None
    return (record.start_date - today).days


def can_pay_balance(record: BookingRecord) -> bool:
    return record.deposit_paid and not record.balance_paid and not record.is_cancelled


def can_cancel(record: BookingRecord, today: date) -> bool:
    return stay_status(record, today) == STAY_UPCOMING and not record.is_fully_paid


def _matches(record: BookingRecord, status_filter: str, today: date) -> bool:
    if status_filter == "deposit-paid":
        return record.deposit_paid and not record.balance_paid
    if status_filter == "balance-pending":
        return (
            record.deposit_paid
            and not record.balance_paid
            and record.start_date is not None
            and record.start_date >= today
        )
    if status_filter == "fully-paid":
        return record.deposit_paid and record.balance_paid
    if status_filter == "cancelled":
        return record.is_cancelled
    return True


def filter_bookings(
    records: Iterable[BookingRecord],
    today: date,
    *,
    status_filter: str = "all",
    search: str = "",
) -> list[BookingRecord]:
    """Apply the status filter and a case-insensitive unit-name search.

    Unknown filters behave like "all".
    """
    needle = search.strip().lower()
    return [
        r
        for r in records
        if (not needle or needle in r.unit_name.lower()) and _matches(r, status_filter, today)
    ]


@dataclass(frozen=True)
class BookingGroups:
    upcoming: list[BookingRecord]
    previous: list[BookingRecord]


def split_upcoming(records: Iterable[BookingRecord], today: date) -> BookingGroups:
    """Upcoming: check-in today or later. Previous: everything else."""
    upcoming: list[BookingRecord] = []
    previous: list[BookingRecord] = []
    for record in records:
        if record.start_date is not None and record.start_date >= today:
            upcoming.append(record)
        else:
            previous.append(record)
    return BookingGroups(upcoming=upcoming, previous=previous)


def booking_summary(record: BookingRecord, today: date) -> dict:
    """Serializable view of one booking for the my-bookings listing."""
    return {
        "bookingId": record.booking_id,
        "unitId": record.unit_id,
        "unitName": record.unit_name,
        "startDate": record.start_date.isoformat() if record.start_date else None,
        "endDate": record.end_date.isoformat() if record.end_date else None,
        "paymentMethod": record.payment_method,
        "paymentStatus": payment_status(record),
        "stayStatus": stay_status(record, today),
        "depositPaid": record.deposit_paid,
        "balancePaid": record.balance_paid,
        "outstandingBalanceCents": record.outstanding_balance_cents,
        "balanceDueInDays": balance_due_in_days(record, today),
        "canPayBalance": can_pay_balance(record),
        "canCancel": can_cancel(record, today),
    }
