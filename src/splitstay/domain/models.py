"""Records read from the external booking service.

The booking service owns these records; the core only parses what it needs
from the JSON payloads (camelCase on the wire).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any

from splitstay.domain.dates import StayRange, parse_day

CONFIRMED = "confirmed"
CANCELLED = "cancelled"
FAILED = "failed"


def _flag(payload: dict[str, Any], key: str) -> bool:
    return payload.get(key) is True


def _unit_id(payload: dict[str, Any]) -> str | None:
    unit = payload.get("unitId")
    if isinstance(unit, dict):
        return unit.get("_id") or unit.get("id")
    return unit


def _unit_name(payload: dict[str, Any]) -> str:
    unit = payload.get("unitId")
    if isinstance(unit, dict):
        return unit.get("name") or unit.get("label") or ""
    return payload.get("unitName") or ""


@dataclass(frozen=True)
class Reservation:
    """One existing stay on a unit, as listed by the calendar endpoint.

    end_date is exclusive: it is the checkout day and stays available to
    the next guest.
    """

    start_date: date
    end_date: date
    deposit_paid: bool = False
    balance_paid: bool = False
    status: str | None = None
    payment_status: str | None = None
    booking_id: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return CANCELLED in (self.status, self.payment_status)

    @property
    def is_active(self) -> bool:
        """Active reservations block their nights for everyone else."""
        if self.is_cancelled:
            return False
        return (
            self.deposit_paid
            or self.balance_paid
            or self.status == CONFIRMED
            or self.payment_status == CONFIRMED
        )

    @property
    def stay(self) -> StayRange:
        return StayRange(self.start_date, self.end_date)

    @classmethod
    def from_api(cls, payload: dict[str, Any], tz_name: str | None = None) -> "Reservation":
        return cls(
            start_date=parse_day(payload["startDate"], tz_name),
            end_date=parse_day(payload["endDate"], tz_name),
            deposit_paid=_flag(payload, "depositPaid"),
            balance_paid=_flag(payload, "balancePaid"),
            status=payload.get("status"),
            payment_status=payload.get("paymentStatus"),
            booking_id=payload.get("bookingId"),
        )


@dataclass(frozen=True)
class BookingRecord:
    """Authoritative booking state held by the booking service."""

    booking_id: str
    unit_id: str | None = None
    unit_name: str = ""
    start_date: date | None = None
    end_date: date | None = None
    deposit_paid: bool = False
    balance_paid: bool = False
    status: str | None = None
    payment_status: str | None = None
    payment_method: str | None = None
    full_amount_cents: int | None = None
    deposit_amount_cents: int | None = None
    balance_amount_cents: int | None = None
    references: dict[str, str] = field(default_factory=dict)

    @property
    def is_cancelled(self) -> bool:
        return CANCELLED in (self.status, self.payment_status)

    @property
    def is_failed(self) -> bool:
        return self.is_cancelled or FAILED in (self.status, self.payment_status)

    @property
    def is_fully_paid(self) -> bool:
        return self.deposit_paid and self.balance_paid

    @property
    def outstanding_balance_cents(self) -> int:
        if self.balance_paid:
            return 0
        if self.balance_amount_cents is not None:
            return self.balance_amount_cents
        if self.full_amount_cents is not None and self.deposit_amount_cents is not None:
            return max(self.full_amount_cents - self.deposit_amount_cents, 0)
        return 0

    @classmethod
    def from_api(cls, payload: dict[str, Any], tz_name: str | None = None) -> "BookingRecord":
        """Parse a booking payload.

        Accepts either the bare booking object or the ``{"booking": {...}}``
        envelope returned by the status endpoints.
        """
        if isinstance(payload.get("booking"), dict):
            payload = payload["booking"]

        start = payload.get("startDate")
        end = payload.get("endDate")
        references = {
            key: str(value)
            for key, value in payload.items()
            if value and (key.endswith("Ref") or key.endswith("TxHash") or key.endswith("Reference"))
        }
        return cls(
            booking_id=payload.get("bookingId") or str(payload.get("_id", "")),
            unit_id=_unit_id(payload),
            unit_name=_unit_name(payload),
            start_date=parse_day(start, tz_name) if start else None,
            end_date=parse_day(end, tz_name) if end else None,
            deposit_paid=_flag(payload, "depositPaid"),
            balance_paid=_flag(payload, "balancePaid"),
            status=payload.get("status"),
            payment_status=payload.get("paymentStatus"),
            payment_method=payload.get("paymentMethod"),
            full_amount_cents=payload.get("fullAmountCents"),
            deposit_amount_cents=payload.get("depositAmountCents"),
            balance_amount_cents=payload.get("balanceAmountCents"),
            references=references,
        )
