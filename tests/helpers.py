"""Shared test helpers for Splitstay tests.

This module contains fakes and helper functions that can be imported by
both conftest.py and individual test files. These are NOT fixtures.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable

import jwt

from splitstay.domain.models import BookingRecord, Reservation
from splitstay.domain.orchestrator import PaymentOrchestrator
from splitstay.domain.poller import ReconciliationPoller
from splitstay.domain.pricing import PaymentPhase
from splitstay.infra.settings import Settings
from splitstay.rails.base import (
    ConfirmationMode,
    ConfirmationStatus,
    LedgerEntry,
    PaymentContext,
    RailInitiation,
)
from splitstay.session import GuestSession

# 12:00 in Nairobi: local today is 2026-03-01
FIXED_NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
TODAY = date(2026, 3, 1)

TOKEN_SECRET = "test-secret-key-for-guest-session-tokens"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def make_token(exp: datetime | None = None, sub: str = "guest-1") -> str:
    """Create an HS256 guest token (the core never verifies the signature)."""
    claims: dict[str, Any] = {"sub": sub}
    if exp is not None:
        claims["exp"] = int(exp.timestamp())
    return jwt.encode(claims, TOKEN_SECRET, algorithm="HS256")


def make_session(clock: Callable[[], datetime] | None = None, **kwargs: Any) -> GuestSession:
    clock = clock or FakeClock()
    session = GuestSession({}, clock=clock, **kwargs)
    session.set_token(make_token(exp=clock() + timedelta(hours=1)))
    return session


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "balance_leg_delay_seconds": 0,
        "poll_interval_seconds": 0,
        "checkout_poll_interval_seconds": 0,
    }
    values.update(overrides)
    return Settings(**values)


def reservation(
    start: date,
    end: date,
    *,
    deposit_paid: bool = True,
    status: str | None = None,
    booking_id: str | None = None,
) -> Reservation:
    return Reservation(
        start_date=start,
        end_date=end,
        deposit_paid=deposit_paid,
        status=status,
        booking_id=booking_id,
    )


class FakeBookingService:
    """In-memory booking service.

    - list_reservations returns the configured reservations.
    - create_or_confirm_booking upserts a record and remembers the call.
      Calls listed in confirm_failures (1-based) raise instead.
    - booking_status replays scripted records (the last one repeats), or
      the stored record.
    """

    def __init__(self, reservations: list[Reservation] | None = None) -> None:
        self.reservations = list(reservations or [])
        self.records: dict[str, BookingRecord] = {}
        self.confirm_calls: list[dict[str, Any]] = []
        self.confirm_failures: dict[int, Exception] = {}
        self.cancel_calls: list[str] = []
        self.status_calls = 0
        self.on_status: Callable[[int], None] | None = None
        self._scripts: dict[str, list[Any]] = {}

    def script(self, booking_id: str, *responses: Any) -> None:
        """Queue booking_status responses (records or exceptions)."""
        self._scripts[booking_id] = list(responses)

    def script_any(self, *responses: Any) -> None:
        """Queue responses for whatever booking ID is polled next."""
        self._scripts["*"] = list(responses)

    def list_reservations(self, unit_id: str) -> list[Reservation]:
        return list(self.reservations)

    def create_or_confirm_booking(self, **kwargs: Any) -> BookingRecord:
        self.confirm_calls.append(kwargs)
        if len(self.confirm_calls) in self.confirm_failures:
            raise self.confirm_failures[len(self.confirm_calls)]
        stay = kwargs["stay"]
        record = BookingRecord(
            booking_id=kwargs["booking_id"],
            unit_id=kwargs["unit_id"],
            start_date=stay.check_in,
            end_date=stay.checkout,
            deposit_paid=kwargs["deposit_paid"],
            balance_paid=kwargs["balance_paid"],
            payment_method=kwargs["rail"],
            full_amount_cents=kwargs["payment"].full_amount_cents,
            deposit_amount_cents=kwargs["payment"].deposit_amount_cents,
        )
        self.records[record.booking_id] = record
        return record

    def booking_status(self, booking_id: str) -> BookingRecord:
        self.status_calls += 1
        if self.on_status is not None:
            self.on_status(self.status_calls)

        queue = self._scripts.get(booking_id) or self._scripts.get("*")
        if queue:
            item = queue.pop(0) if len(queue) > 1 else queue[0]
            if isinstance(item, Exception):
                raise item
            if item.booking_id != booking_id:
                item = replace(item, booking_id=booking_id)
            return item
        return self.records.get(booking_id) or BookingRecord(booking_id=booking_id)

    def find_booking(self, booking_id: str) -> BookingRecord | None:
        return self.records.get(booking_id)

    def cancel_booking(self, booking_id: str) -> BookingRecord:
        self.cancel_calls.append(booking_id)
        record = BookingRecord(booking_id=booking_id, status="cancelled")
        self.records[booking_id] = record
        return record

    def my_bookings(self) -> list[BookingRecord]:
        return list(self.records.values())


class FakeRail:
    """Rail adapter that records calls and answers with configured statuses."""

    def __init__(
        self,
        name: str = "fake",
        mode: ConfirmationMode = ConfirmationMode.DIRECT,
        *,
        confirm_status: ConfirmationStatus | Exception = ConfirmationStatus.PAID,
        fail_on: dict[PaymentPhase, Exception] | None = None,
    ) -> None:
        self.name = name
        self.confirmation_mode = mode
        self.confirm_status = confirm_status
        self.fail_on = dict(fail_on or {})
        self.initiated: list[tuple[int, str, PaymentPhase, PaymentContext]] = []
        self.confirmed: list[tuple[str, PaymentPhase]] = []
        self.confirmed_legs: list[tuple[str, int]] = []

    def initiate(
        self,
        amount_cents: int,
        booking_id: str,
        *,
        phase: PaymentPhase,
        context: PaymentContext,
    ) -> RailInitiation:
        self.initiated.append((amount_cents, booking_id, phase, context))
        if phase in self.fail_on:
            raise self.fail_on[phase]

        reference = f"{self.name}-{phase.value}-{len(self.initiated)}"
        if self.confirmation_mode is ConfirmationMode.REDIRECT:
            return RailInitiation(
                mode=self.confirmation_mode,
                reference=reference,
                redirect_url=f"https://pay.example.com/{reference}",
            )
        if self.confirmation_mode is ConfirmationMode.DIRECT:
            return RailInitiation(mode=self.confirmation_mode, reference=reference, tx_hash=reference)
        if self.confirmation_mode is ConfirmationMode.WALLET:
            return RailInitiation(
                mode=self.confirmation_mode, transaction={"to": "0xcontract", "data": reference}
            )
        return RailInitiation(mode=self.confirmation_mode, reference=booking_id)

    def confirm(
        self, reference: str, *, phase: PaymentPhase, booking_id: str, amount_cents: int
    ) -> ConfirmationStatus:
        self.confirmed.append((reference, phase))
        self.confirmed_legs.append((booking_id, amount_cents))
        if isinstance(self.confirm_status, Exception):
            raise self.confirm_status
        return self.confirm_status

    @property
    def phases(self) -> list[PaymentPhase]:
        return [call[2] for call in self.initiated]


class FakeLedger:
    """PaymentLedger double.

    Each call to token_amount_for reads the next rate (wei per currency
    unit); the last rate repeats. Built payments are remembered; verifying
    a hash marks the phase paid on the entry for the payer.
    """

    def __init__(
        self,
        rates: list[int] | None = None,
        *,
        status: ConfirmationStatus = ConfirmationStatus.PAID,
    ) -> None:
        self.rates = list(rates or [10**15])
        self.status = status
        self.entries: dict[str, LedgerEntry] = {}
        self.built: list[tuple[str, PaymentPhase, int, str]] = []
        self.verified: list[tuple[str, str, PaymentPhase, str]] = []

    def get_entry(self, booking_id: str) -> LedgerEntry | None:
        return self.entries.get(booking_id)

    def token_amount_for(self, amount_cents: int) -> int:
        rate = self.rates.pop(0) if len(self.rates) > 1 else self.rates[0]
        return rate * amount_cents // 100

    def build_payment(
        self, booking_id: str, phase: PaymentPhase, token_amount: int, payer: str
    ) -> dict[str, Any]:
        self.built.append((booking_id, phase, token_amount, payer))
        return {"from": payer, "to": "0x" + "12" * 20, "value": hex(token_amount)}

    def verify_payment(
        self, tx_hash: str, *, booking_id: str, phase: PaymentPhase, payer: str
    ) -> ConfirmationStatus:
        self.verified.append((tx_hash, booking_id, phase, payer))
        if self.status is not ConfirmationStatus.PAID:
            return self.status
        entry = self.entries.get(booking_id) or LedgerEntry(payer=payer)
        if phase is PaymentPhase.DEPOSIT:
            entry = replace(entry, deposit_paid=True)
        else:
            entry = replace(entry, balance_paid=True)
        self.entries[booking_id] = entry
        return ConfirmationStatus.PAID


def make_orchestrator(
    *,
    booking_service: FakeBookingService | None = None,
    rails: dict[str, Any] | None = None,
    session: GuestSession | None = None,
    settings: Settings | None = None,
    clock: FakeClock | None = None,
    sleep: Callable[[float], None] | None = None,
) -> PaymentOrchestrator:
    """Orchestrator wired to fakes, with every wait replaced by a no-op."""
    clock = clock or FakeClock()
    booking_service = booking_service or FakeBookingService()
    settings = settings or make_settings()
    poller = ReconciliationPoller(
        booking_service.booking_status,
        interval_seconds=0,
        max_attempts=settings.poll_max_attempts,
        sleep=lambda seconds: None,
    )
    return PaymentOrchestrator(
        booking_service=booking_service,
        rails=rails if rails is not None else {"fake": FakeRail()},
        session=session or make_session(clock),
        settings=settings,
        poller=poller,
        clock=clock,
        sleep=sleep or (lambda seconds: None),
    )
