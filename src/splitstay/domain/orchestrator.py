"""Two-phase payment state machine.

A draft moves through:

    DRAFT -> DEPOSIT_IN_PROGRESS -> DEPOSIT_CONFIRMED
          -> AWAITING_BALANCE -> BALANCE_IN_PROGRESS -> FULLY_PAID

CANCELLED is reachable from every non-terminal phase. A failed leg returns
the draft to the phase it started from (DRAFT for the deposit,
AWAITING_BALANCE for the balance) and records the error code in
``last_failure``. A confirmed phase is never un-confirmed.

A phase counts as paid only after the rail (or the booking service, for
polled rails) verifies the money movement. Timeouts and partial success
are returned as outcomes; everything else is raised.
"""

from __future__ import annotations

import math
import secrets
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Iterator, Mapping

from splitstay.domain.conflicts import assert_range_free
from splitstay.domain.dates import StayRange, add_days, parse_day
from splitstay.domain.errors import (
    AlreadyPaidError,
    AlreadyPaidOnChainError,
    BookingError,
    CooldownActiveError,
    InvalidRangeError,
    InvalidTransitionError,
    NetworkError,
    NotCancellableError,
    RailRejectedError,
)
from splitstay.domain.models import BookingRecord
from splitstay.domain.poller import PollResult, PollStatus, ReconciliationPoller
from splitstay.domain.pricing import PaymentPhase, PaymentState, PaymentType, price
from splitstay.infra.settings import Settings
from splitstay.infra.time import epoch_millis, local_today, utc_now
from splitstay.observability.correlation import bind_booking_id, unbind_booking_id
from splitstay.observability.logging import get_logger
from splitstay.observability.redaction import safe_log_context
from splitstay.rails.base import (
    ConfirmationMode,
    ConfirmationStatus,
    LedgerRail,
    PaymentContext,
    RailAdapter,
    RailInitiation,
)
from splitstay.session import GuestSession, PendingCheckout

logger = get_logger(__name__)


class OrchestratorPhase(str, Enum):
    DRAFT = "DRAFT"
    DEPOSIT_IN_PROGRESS = "DEPOSIT_IN_PROGRESS"
    DEPOSIT_CONFIRMED = "DEPOSIT_CONFIRMED"
    AWAITING_BALANCE = "AWAITING_BALANCE"
    BALANCE_IN_PROGRESS = "BALANCE_IN_PROGRESS"
    FULLY_PAID = "FULLY_PAID"
    CANCELLED = "CANCELLED"


_P = OrchestratorPhase

_TRANSITIONS: dict[OrchestratorPhase, frozenset[OrchestratorPhase]] = {
    _P.DRAFT: frozenset({_P.DEPOSIT_IN_PROGRESS, _P.CANCELLED}),
    _P.DEPOSIT_IN_PROGRESS: frozenset({_P.DEPOSIT_CONFIRMED, _P.DRAFT, _P.CANCELLED}),
    _P.DEPOSIT_CONFIRMED: frozenset(
        {_P.BALANCE_IN_PROGRESS, _P.AWAITING_BALANCE, _P.FULLY_PAID, _P.CANCELLED}
    ),
    _P.AWAITING_BALANCE: frozenset({_P.BALANCE_IN_PROGRESS, _P.CANCELLED}),
    _P.BALANCE_IN_PROGRESS: frozenset({_P.FULLY_PAID, _P.AWAITING_BALANCE, _P.CANCELLED}),
    _P.FULLY_PAID: frozenset(),
    _P.CANCELLED: frozenset(),
}

_IN_PROGRESS = {
    PaymentPhase.DEPOSIT: _P.DEPOSIT_IN_PROGRESS,
    PaymentPhase.BALANCE: _P.BALANCE_IN_PROGRESS,
}

_REVERT_TO = {
    PaymentPhase.DEPOSIT: _P.DRAFT,
    PaymentPhase.BALANCE: _P.AWAITING_BALANCE,
}


class OutcomeStatus(str, Enum):
    FULLY_PAID = "FULLY_PAID"
    DEPOSIT_CONFIRMED = "DEPOSIT_CONFIRMED"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
    REDIRECT = "REDIRECT"
    PENDING_UNKNOWN = "PENDING_UNKNOWN"
    AWAITING_SIGNATURE = "AWAITING_SIGNATURE"
    ABANDONED = "ABANDONED"
    IGNORED = "IGNORED"


@dataclass(frozen=True)
class PaymentOutcome:
    """Result of an orchestrator operation that did not raise."""

    status: OutcomeStatus
    booking_id: str | None
    phase: PaymentPhase | None
    deposit_paid: bool
    balance_paid: bool
    redirect_url: str | None = None
    rail_reference: str | None = None
    token_amount: int | None = None
    transaction: dict[str, Any] | None = None
    message: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "bookingId": self.booking_id,
            "phase": self.phase.value if self.phase else None,
            "depositPaid": self.deposit_paid,
            "balancePaid": self.balance_paid,
            "redirectUrl": self.redirect_url,
            "reference": self.rail_reference,
            "tokenAmount": str(self.token_amount) if self.token_amount is not None else None,
            "transaction": self.transaction,
            "message": self.message,
        }


@dataclass
class BookingDraft:
    """One in-flight booking on one unit."""

    unit_id: str
    stay: StayRange | None = None
    payment_type: PaymentType = PaymentType.DEPOSIT
    rail: str | None = None
    booking_id: str | None = None
    payment: PaymentState | None = None
    phase: OrchestratorPhase = OrchestratorPhase.DRAFT
    deposit_paid: bool = False
    balance_paid: bool = False
    references: dict[str, str] = field(default_factory=dict)
    last_failure: str | None = None
    last_initiation: RailInitiation | None = None
    guest_phone: str | None = None
    guest_email: str | None = None
    persisted: bool = False
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)


def mint_booking_id(
    unit_id: str,
    wallet_address: str | None = None,
    *,
    now: datetime | None = None,
    nonce: str | None = None,
) -> str:
    """Mint a client-side booking ID.

    Format: ``booking_<epoch-ms>_<unit>_<wallet-prefix|offchain>_<random8>``.
    """
    wallet_part = wallet_address[2:8].lower() if wallet_address else "offchain"
    return f"booking_{epoch_millis(now)}_{unit_id}_{wallet_part}_{nonce or secrets.token_hex(4)}"


def _phase_flag(record: BookingRecord, phase: PaymentPhase) -> bool:
    if phase is PaymentPhase.DEPOSIT:
        return record.deposit_paid
    return record.balance_paid


def _reference_key(phase: PaymentPhase, mode: ConfirmationMode) -> str:
    suffix = "TxHash" if mode in (ConfirmationMode.DIRECT, ConfirmationMode.WALLET) else "Ref"
    return f"{phase.value}{suffix}"


@contextmanager
def _bound(booking_id: str | None) -> Iterator[None]:
    if not booking_id:
        yield
        return
    token = bind_booking_id(booking_id)
    try:
        yield
    finally:
        unbind_booking_id(token)


class PaymentOrchestrator:
    """Drives drafts through the deposit and balance legs.

    Args:
        booking_service: Client with list_reservations, create_or_confirm_booking,
            booking_status, find_booking and cancel_booking.
        rails: Rail adapters by name.
        session: Guest session (token, wallet, pending checkout, cooldown).
        settings: Pricing, cadence and delay settings.
        poller: Status poller; built from settings when omitted.
        clock: Returns the current aware UTC datetime.
        sleep: Wait used for the settlement delay before the balance leg.
    """

    def __init__(
        self,
        *,
        booking_service: Any,
        rails: Mapping[str, RailAdapter],
        session: GuestSession,
        settings: Settings,
        poller: ReconciliationPoller | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._booking_service = booking_service
        self._rails = dict(rails)
        self._session = session
        self._settings = settings
        self._poller = poller or ReconciliationPoller(
            booking_service.booking_status,
            interval_seconds=settings.poll_interval_seconds,
            max_attempts=settings.poll_max_attempts,
        )
        self._clock = clock
        self._sleep = sleep

    # Public operations

    def quote(self, stay: StayRange, payment_type: PaymentType) -> PaymentState:
        return price(
            stay.nights,
            payment_type,
            nightly_rate_cents=self._settings.nightly_rate_cents,
            fixed_deposit_cents=self._settings.fixed_deposit_cents,
        )

    def submit(
        self,
        draft: BookingDraft,
        *,
        payment_type: PaymentType | str | None = None,
        rail: str | None = None,
    ) -> PaymentOutcome:
        """Validate, re-check availability and run the deposit leg.

        Raises:
            AuthExpiredError: Session token missing or expired.
            InvalidRangeError: No selection, lead time not met, or inverted range.
            DateConflictError: The freshly fetched reservations overlap the stay.
            AlreadyPaidError: The draft's deposit is already confirmed.
            AlreadyPaidOnChainError: The ledger already records the deposit.
            CooldownActiveError: A rail action ran too recently.
            RailRejectedError: The payer or the rail declined.
            NetworkError: A remote party could not be reached.
        """
        self._session.require_valid_token()

        if payment_type is not None:
            draft.payment_type = PaymentType(payment_type)
        if rail is not None:
            draft.rail = rail
        stay = self._validate_range(draft)
        adapter = self._rail(draft.rail)

        if draft.phase is _P.CANCELLED:
            raise InvalidTransitionError("Booking was cancelled")

        reservations = self._booking_service.list_reservations(draft.unit_id)
        assert_range_free(
            stay, reservations, exclude_booking_id=draft.booking_id, unit_id=draft.unit_id
        )

        if draft.booking_id is None:
            draft.booking_id = mint_booking_id(
                draft.unit_id, self._session.wallet_address, now=self._clock()
            )
        if draft.deposit_paid:
            raise AlreadyPaidError(
                "Deposit already paid for this booking", meta={"booking_id": draft.booking_id}
            )

        draft.payment = self.quote(stay, draft.payment_type)

        with _bound(draft.booking_id):
            logger.info(
                "booking submitted",
                extra={
                    "extra_fields": safe_log_context(
                        unit_id=draft.unit_id,
                        nights=stay.nights,
                        payment_type=draft.payment_type,
                        rail=adapter.name,
                        amount_cents=draft.payment.amount_to_pay_now_cents,
                    )
                },
            )
            return self._run_phase(draft, PaymentPhase.DEPOSIT, adapter)

    def pay_balance(self, draft: BookingDraft, *, rail: str | None = None) -> PaymentOutcome:
        """Run the balance leg of a draft whose deposit is confirmed.

        Uses the deposit's rail unless another one is given.

        Raises:
            AlreadyPaidError: The balance is already paid.
            InvalidTransitionError: The deposit is not confirmed, or the
                booking was cancelled.
        """
        self._session.require_valid_token()

        if draft.balance_paid:
            raise AlreadyPaidError(
                "Balance already paid for this booking", meta={"booking_id": draft.booking_id}
            )
        if not draft.deposit_paid:
            raise InvalidTransitionError("Deposit must be paid before the balance")
        if draft.phase is _P.CANCELLED:
            raise InvalidTransitionError("Booking was cancelled")

        if rail is not None:
            draft.rail = rail
        adapter = self._rail(draft.rail)
        if draft.payment is None:
            draft.payment = self.quote(self._validate_stay_shape(draft), draft.payment_type)

        with _bound(draft.booking_id):
            return self._run_phase(draft, PaymentPhase.BALANCE, adapter)

    def resume_from_callback(
        self,
        params: Mapping[str, str],
        *,
        draft: BookingDraft | None = None,
    ) -> PaymentOutcome | None:
        """Resume a draft after a hosted-checkout redirect or a wallet signature.

        The booking ID comes from the ``bookingId`` URL parameter, or from
        the pending checkout saved before the redirect. The rail reference
        comes from ``reference``, ``trxref`` or ``session_id``. A reference
        that differs from the one issued for this leg is refused and fails
        the leg; the rail then checks the reference against the booking,
        phase and amount.

        Returns:
            The outcome, or None when there is nothing to resume.

        Raises:
            RailRejectedError: The reference belongs to another leg, or the
                rail declined it.
        """
        pending = self._session.pop_pending_checkout()
        booking_id = params.get("bookingId") or (pending.booking_id if pending else None)
        if not booking_id:
            return None
        if pending is not None and pending.booking_id != booking_id:
            pending = None

        reference = params.get("reference") or params.get("trxref") or params.get("session_id")

        with _bound(booking_id):
            if draft is None:
                draft = self._draft_for_resume(booking_id, pending)
            if draft is None:
                return None

            phase = PaymentPhase.BALANCE if draft.deposit_paid else PaymentPhase.DEPOSIT
            if draft.phase is _P.FULLY_PAID:
                return self._outcome(draft, OutcomeStatus.FULLY_PAID, phase)
            if draft.phase is _P.CANCELLED:
                return self._outcome(draft, OutcomeStatus.IGNORED, phase)

            adapter = self._rail(draft.rail)
            if draft.phase is not _IN_PROGRESS[phase]:
                self._transition(draft, _IN_PROGRESS[phase])

            key = _reference_key(phase, adapter.confirmation_mode)
            expected = pending.reference if pending is not None else draft.references.get(key)
            if reference and expected and reference != expected:
                error = RailRejectedError(
                    "Payment reference does not match this booking",
                    meta={"booking_id": booking_id, "phase": phase.value},
                )
                self._fail(draft, phase, error)
                raise error
            reference = reference or expected
            if reference:
                draft.references[key] = reference

            logger.info(
                "resuming after checkout return",
                extra={"extra_fields": safe_log_context(phase=phase, has_reference=bool(reference))},
            )

            status = ConfirmationStatus.PENDING
            if reference:
                try:
                    status = adapter.confirm(
                        reference,
                        phase=phase,
                        booking_id=booking_id,
                        amount_cents=self._leg_amount(draft, phase),
                    )
                except NetworkError as e:
                    logger.warning(
                        "payment verification unreachable, falling back to polling",
                        extra={"extra_fields": safe_log_context(error=e.code)},
                    )
                except RailRejectedError as e:
                    self._fail(draft, phase, e)
                    raise

            if status is ConfirmationStatus.PAID:
                return self._confirm_phase(draft, phase, adapter)
            if status is ConfirmationStatus.FAILED:
                error = RailRejectedError("Payment expired or failed")
                self._fail(draft, phase, error)
                raise error

            result = self._poller.poll(
                booking_id,
                lambda record: _phase_flag(record, phase),
                interval_seconds=self._settings.checkout_poll_interval_seconds,
                max_attempts=self._settings.checkout_poll_max_attempts,
                cancel_event=draft.cancel_event,
            )
            return self._after_poll(draft, phase, adapter, result)

    def reconcile(self, draft: BookingDraft) -> PaymentOutcome:
        """Check once more on a leg whose outcome was unknown.

        A leg with a stored checkout or transaction reference is asked of
        its rail first; otherwise the booking service is polled once.
        """
        if draft.phase is _P.DEPOSIT_IN_PROGRESS:
            phase = PaymentPhase.DEPOSIT
        elif draft.phase is _P.BALANCE_IN_PROGRESS:
            phase = PaymentPhase.BALANCE
        else:
            raise InvalidTransitionError(f"Nothing to reconcile in phase {draft.phase.value}")

        adapter = self._rail(draft.rail)
        with _bound(draft.booking_id):
            reference = draft.references.get(_reference_key(phase, adapter.confirmation_mode))
            if reference and adapter.confirmation_mode is not ConfirmationMode.POLL:
                try:
                    status = adapter.confirm(
                        reference,
                        phase=phase,
                        booking_id=draft.booking_id,
                        amount_cents=self._leg_amount(draft, phase),
                    )
                except NetworkError:
                    status = ConfirmationStatus.PENDING
                except RailRejectedError as e:
                    self._fail(draft, phase, e)
                    raise
                if status is ConfirmationStatus.PAID:
                    return self._confirm_phase(draft, phase, adapter)
                if status is ConfirmationStatus.FAILED:
                    error = RailRejectedError("Payment expired or failed")
                    self._fail(draft, phase, error)
                    raise error

            result = self._poller.poll(
                draft.booking_id,
                lambda record: _phase_flag(record, phase),
                interval_seconds=0,
                max_attempts=1,
                cancel_event=draft.cancel_event,
            )
            return self._after_poll(draft, phase, adapter, result)

    def reconcile_booking(self, booking_id: str) -> PaymentOutcome | None:
        """Re-check the open leg of a stored booking.

        This is how a guest whose push payment timed out learns whether the
        money arrived.

        Returns:
            The outcome, or None when the booking service has no such booking.

        Raises:
            AuthExpiredError: Session token missing or expired.
        """
        self._session.require_valid_token()

        record = self._booking_service.find_booking(booking_id)
        if record is None:
            return None
        draft = self.draft_from_record(record)

        with _bound(booking_id):
            if draft.phase is _P.FULLY_PAID:
                return self._outcome(draft, OutcomeStatus.FULLY_PAID, PaymentPhase.BALANCE)
            if draft.phase is _P.CANCELLED:
                return self._outcome(draft, OutcomeStatus.IGNORED, None)

            phase = PaymentPhase.BALANCE if draft.deposit_paid else PaymentPhase.DEPOSIT
            self._transition(draft, _IN_PROGRESS[phase])
            return self.reconcile(draft)

    def decline_pending(self, booking_id: str) -> None:
        """Fail the leg waiting on the guest's wallet after they declined to sign.

        Raises:
            RailRejectedError: Always, once the leg is failed.
            InvalidTransitionError: No signature was pending for the booking.
        """
        pending = self._session.pop_pending_checkout()
        if pending is None or pending.booking_id != booking_id:
            raise InvalidTransitionError("No payment is waiting for a signature")

        draft = self._draft_for_resume(booking_id, pending)
        phase = PaymentPhase(pending.phase)
        error = RailRejectedError("Transaction was declined in the wallet")
        with _bound(booking_id):
            self._fail(draft, phase, error)
        raise error

    def abandon(self, draft: BookingDraft) -> None:
        """Stop any polling for the draft. No other side effects."""
        draft.cancel_event.set()
        with _bound(draft.booking_id):
            logger.info("polling abandoned by guest")

    def cancel(self, draft: BookingDraft) -> BookingDraft:
        """Cancel a draft or booking that is not fully paid.

        Raises:
            NotCancellableError: The booking is fully paid.
        """
        self._session.require_valid_token()

        if draft.phase is _P.FULLY_PAID or (draft.deposit_paid and draft.balance_paid):
            raise NotCancellableError("Fully paid bookings cannot be cancelled")
        if draft.phase is _P.CANCELLED:
            return draft

        draft.cancel_event.set()
        with _bound(draft.booking_id):
            if draft.booking_id and (draft.persisted or draft.phase is not _P.DRAFT):
                self._booking_service.cancel_booking(draft.booking_id)
            self._transition(draft, _P.CANCELLED)
            self._session.clear_pending_checkout()
            logger.info("booking cancelled")
        return draft

    def draft_from_record(self, record: BookingRecord, *, rail: str | None = None) -> BookingDraft:
        """Rebuild a draft from the booking service's authoritative record."""
        stay = None
        if record.start_date and record.end_date:
            stay = StayRange(record.start_date, record.end_date)

        if record.is_cancelled:
            phase = _P.CANCELLED
        elif record.is_fully_paid:
            phase = _P.FULLY_PAID
        elif record.deposit_paid:
            phase = _P.AWAITING_BALANCE
        else:
            phase = _P.DRAFT

        payment = None
        if record.full_amount_cents is not None and record.deposit_amount_cents is not None:
            nights = stay.nights if stay else 1
            payment = PaymentState(
                nights=nights,
                full_amount_cents=record.full_amount_cents,
                deposit_amount_cents=record.deposit_amount_cents,
                balance_amount_cents=max(
                    record.full_amount_cents - record.deposit_amount_cents, 0
                ),
                payment_type=PaymentType.DEPOSIT,
                amount_to_pay_now_cents=record.deposit_amount_cents,
            )
        elif stay is not None and stay.nights >= 1:
            payment = self.quote(stay, PaymentType.DEPOSIT)

        return BookingDraft(
            unit_id=record.unit_id or "",
            stay=stay,
            payment_type=PaymentType.DEPOSIT,
            rail=rail or record.payment_method,
            booking_id=record.booking_id,
            payment=payment,
            phase=phase,
            deposit_paid=record.deposit_paid,
            balance_paid=record.balance_paid,
            references=dict(record.references),
            persisted=True,
        )

    # Phase execution

    def _run_phase(
        self,
        draft: BookingDraft,
        phase: PaymentPhase,
        adapter: RailAdapter,
        *,
        enforce_cooldown: bool = True,
    ) -> PaymentOutcome:
        if draft.booking_id is None:
            raise InvalidTransitionError("Draft has no booking ID")
        amount = self._leg_amount(draft, phase)

        if enforce_cooldown:
            self._check_cooldown()
        if isinstance(adapter, LedgerRail):
            self._guard_ledger(adapter, draft, phase)

        draft.cancel_event.clear()
        self._transition(draft, _IN_PROGRESS[phase])
        self._session.mark_transaction(self._clock().timestamp())

        try:
            initiation = adapter.initiate(
                amount, draft.booking_id, phase=phase, context=self._context(draft)
            )
        except BookingError as e:
            self._fail(draft, phase, e)
            raise

        draft.last_initiation = initiation
        if initiation.reference:
            draft.references[_reference_key(phase, initiation.mode)] = initiation.reference

        logger.info(
            "payment leg initiated",
            extra={
                "extra_fields": safe_log_context(
                    phase=phase, rail=adapter.name, mode=initiation.mode, amount_cents=amount
                )
            },
        )

        if initiation.mode in (ConfirmationMode.REDIRECT, ConfirmationMode.WALLET):
            self._session.remember_pending_checkout(
                PendingCheckout(
                    booking_id=draft.booking_id,
                    unit_id=draft.unit_id,
                    check_in=draft.stay.check_in.isoformat(),
                    checkout=draft.stay.checkout.isoformat(),
                    payment_type=draft.payment_type.value,
                    phase=phase.value,
                    rail=adapter.name,
                    reference=initiation.reference,
                    timestamp=self._clock().timestamp(),
                )
            )
            if initiation.mode is ConfirmationMode.WALLET:
                return self._outcome(
                    draft,
                    OutcomeStatus.AWAITING_SIGNATURE,
                    phase,
                    transaction=initiation.transaction,
                    token_amount=initiation.token_amount,
                )
            return self._outcome(
                draft,
                OutcomeStatus.REDIRECT,
                phase,
                redirect_url=initiation.redirect_url,
                rail_reference=initiation.reference,
            )

        if initiation.mode is ConfirmationMode.POLL:
            result = self._poller.poll(
                draft.booking_id,
                lambda record: _phase_flag(record, phase),
                cancel_event=draft.cancel_event,
            )
            return self._after_poll(draft, phase, adapter, result)

        reference = initiation.tx_hash or initiation.reference or ""
        try:
            status = adapter.confirm(
                reference, phase=phase, booking_id=draft.booking_id, amount_cents=amount
            )
        except BookingError as e:
            self._fail(draft, phase, e)
            raise

        if status is ConfirmationStatus.PAID:
            return self._confirm_phase(
                draft, phase, adapter, token_amount=initiation.token_amount
            )
        if status is ConfirmationStatus.FAILED:
            error = RailRejectedError("Transaction failed on chain", meta={"phase": phase.value})
            self._fail(draft, phase, error)
            raise error
        return self._outcome(
            draft,
            OutcomeStatus.PENDING_UNKNOWN,
            phase,
            rail_reference=reference,
            token_amount=initiation.token_amount,
            message="Transaction sent but not yet confirmed",
        )

    def _after_poll(
        self,
        draft: BookingDraft,
        phase: PaymentPhase,
        adapter: RailAdapter,
        result: PollResult,
    ) -> PaymentOutcome:
        if result.status is PollStatus.RESOLVED:
            return self._confirm_phase(draft, phase, adapter)

        if result.status is PollStatus.FAILED:
            if draft.phase is _P.CANCELLED:
                return self._outcome(draft, OutcomeStatus.IGNORED, phase)
            error = RailRejectedError("Payment was cancelled or failed", meta={"phase": phase.value})
            self._fail(draft, phase, error)
            raise error

        if result.status is PollStatus.ABANDONED:
            return self._outcome(draft, OutcomeStatus.ABANDONED, phase)

        return self._outcome(
            draft,
            OutcomeStatus.PENDING_UNKNOWN,
            phase,
            message=f"Payment not confirmed after {result.attempts} checks",
        )

    def _confirm_phase(
        self,
        draft: BookingDraft,
        phase: PaymentPhase,
        adapter: RailAdapter,
        *,
        token_amount: int | None = None,
    ) -> PaymentOutcome:
        if draft.phase is _P.CANCELLED:
            logger.warning(
                "confirmation arrived after cancellation, ignored",
                extra={"extra_fields": safe_log_context(phase=phase)},
            )
            return self._outcome(draft, OutcomeStatus.IGNORED, phase)

        if phase is PaymentPhase.DEPOSIT:
            draft.deposit_paid = True
            self._transition(draft, _P.DEPOSIT_CONFIRMED)
            draft.last_failure = None
            note = self._record_confirmed(draft)
            logger.info("deposit confirmed")
            return self._after_deposit(draft, adapter, token_amount, note)

        draft.balance_paid = True
        self._transition(draft, _P.FULLY_PAID)
        draft.last_failure = None
        note = self._record_confirmed(draft)
        logger.info("balance confirmed")
        return self._outcome(
            draft, OutcomeStatus.FULLY_PAID, phase, token_amount=token_amount, message=note
        )

    def _after_deposit(
        self,
        draft: BookingDraft,
        adapter: RailAdapter,
        token_amount: int | None,
        note: str | None = None,
    ) -> PaymentOutcome:
        if draft.payment is None:
            raise InvalidTransitionError("Draft has no price")

        if draft.payment.balance_amount_cents == 0:
            draft.balance_paid = True
            self._transition(draft, _P.FULLY_PAID)
            note = self._record_confirmed(draft) or note
            return self._outcome(
                draft, OutcomeStatus.FULLY_PAID, PaymentPhase.DEPOSIT, message=note
            )

        if draft.payment_type is not PaymentType.FULL:
            self._transition(draft, _P.AWAITING_BALANCE)
            return self._outcome(
                draft,
                OutcomeStatus.DEPOSIT_CONFIRMED,
                PaymentPhase.DEPOSIT,
                token_amount=token_amount,
                message=note,
            )

        # Let the deposit settle before the second leg
        self._sleep(self._settings.balance_leg_delay_seconds)
        if draft.cancel_event.is_set():
            self._transition(draft, _P.AWAITING_BALANCE)
            return self._outcome(
                draft,
                OutcomeStatus.DEPOSIT_CONFIRMED,
                PaymentPhase.DEPOSIT,
                message="Balance leg skipped; pay the balance later",
            )

        try:
            return self._run_phase(draft, PaymentPhase.BALANCE, adapter, enforce_cooldown=False)
        except BookingError as e:
            if draft.balance_paid:
                logger.warning(
                    "error after confirmed balance",
                    extra={"extra_fields": safe_log_context(error=e.code)},
                )
                return self._outcome(
                    draft, OutcomeStatus.FULLY_PAID, PaymentPhase.BALANCE, message=str(e)
                )
            if draft.phase is _P.DEPOSIT_CONFIRMED:
                self._transition(draft, _P.AWAITING_BALANCE)
            draft.last_failure = e.code
            logger.warning(
                "balance leg failed after confirmed deposit",
                extra={"extra_fields": safe_log_context(error=e.code)},
            )
            return self._outcome(
                draft,
                OutcomeStatus.PARTIAL_SUCCESS,
                PaymentPhase.BALANCE,
                message=f"Deposit confirmed, balance payment failed: {e}",
            )

    # Helpers

    def _record_confirmed(self, draft: BookingDraft) -> str | None:
        """Record a confirmed leg with the booking service.

        The money has moved, so a failed write never un-confirms the leg.
        It is logged, kept in ``last_failure`` and reported as a note.
        """
        try:
            self._record_with_service(draft)
        except BookingError as e:
            draft.last_failure = e.code
            logger.warning(
                "confirmed payment not recorded with booking service",
                extra={"extra_fields": safe_log_context(error=e.code)},
            )
            return "Payment confirmed; booking record update pending"
        return None

    def _leg_amount(self, draft: BookingDraft, phase: PaymentPhase) -> int:
        if draft.payment is None:
            raise InvalidTransitionError("Draft has no price")
        return draft.payment.leg_amount_cents(phase)

    def _record_with_service(self, draft: BookingDraft) -> None:
        record = self._booking_service.create_or_confirm_booking(
            booking_id=draft.booking_id,
            unit_id=draft.unit_id,
            stay=draft.stay,
            payment=draft.payment,
            rail=draft.rail,
            deposit_paid=draft.deposit_paid,
            balance_paid=draft.balance_paid,
            references=draft.references,
            wallet_address=self._session.wallet_address,
            guest_phone=draft.guest_phone,
        )
        draft.persisted = True
        # Confirmed flags only ever move forward
        draft.deposit_paid = draft.deposit_paid or record.deposit_paid
        draft.balance_paid = draft.balance_paid or record.balance_paid

    def _guard_ledger(self, rail: LedgerRail, draft: BookingDraft, phase: PaymentPhase) -> None:
        entry = rail.get_ledger_entry(draft.booking_id)
        if entry is None:
            return
        if phase is PaymentPhase.DEPOSIT and entry.deposit_paid:
            logger.warning("ledger already records the deposit, nothing sent")
            raise AlreadyPaidOnChainError(
                "This booking already has a deposit on-chain",
                meta={"booking_id": draft.booking_id},
            )
        if phase is PaymentPhase.BALANCE and entry.balance_paid:
            logger.warning("ledger already records the balance, nothing sent")
            raise AlreadyPaidOnChainError(
                "The balance has already been paid on-chain",
                meta={"booking_id": draft.booking_id},
            )

    def _check_cooldown(self) -> None:
        last = self._session.last_transaction_at
        if last is None:
            return
        remaining = self._settings.transaction_cooldown_seconds - (
            self._clock().timestamp() - last
        )
        if remaining > 0:
            raise CooldownActiveError(math.ceil(remaining))

    def _fail(self, draft: BookingDraft, phase: PaymentPhase, error: BookingError) -> None:
        draft.last_failure = error.code
        if draft.phase is _IN_PROGRESS[phase]:
            self._transition(draft, _REVERT_TO[phase])
        logger.warning(
            "payment leg failed",
            extra={"extra_fields": safe_log_context(phase=phase, error=error.code)},
        )

    def _transition(self, draft: BookingDraft, target: OrchestratorPhase) -> None:
        if target not in _TRANSITIONS[draft.phase]:
            raise InvalidTransitionError(
                f"Cannot move from {draft.phase.value} to {target.value}",
                meta={"from": draft.phase.value, "to": target.value},
            )
        draft.phase = target

    def _rail(self, name: str | None) -> RailAdapter:
        if not name:
            raise RailRejectedError("Please select a payment method")
        try:
            return self._rails[name]
        except KeyError:
            raise RailRejectedError(f"Unsupported payment method: {name}") from None

    def _context(self, draft: BookingDraft) -> PaymentContext:
        return PaymentContext(
            unit_id=draft.unit_id,
            check_in=draft.stay.check_in,
            checkout=draft.stay.checkout,
            currency=self._settings.currency,
            guest_phone=draft.guest_phone,
            guest_email=draft.guest_email,
            wallet_address=self._session.wallet_address,
        )

    def _today(self) -> date:
        return local_today(self._settings.timezone, self._clock())

    def _validate_stay_shape(self, draft: BookingDraft) -> StayRange:
        stay = draft.stay
        if stay is None:
            raise InvalidRangeError("Please select check-in and check-out dates")
        if stay.checkout <= stay.check_in:
            raise InvalidRangeError("Check-out must be after check-in")
        return stay

    def _validate_range(self, draft: BookingDraft) -> StayRange:
        stay = self._validate_stay_shape(draft)
        earliest = add_days(self._today(), self._settings.min_lead_days)
        if stay.check_in < earliest:
            raise InvalidRangeError(
                f"Check-in must be at least {self._settings.min_lead_days} day(s) from today",
                meta={"earliest": earliest.isoformat()},
            )
        return stay

    def _draft_for_resume(
        self, booking_id: str, pending: PendingCheckout | None
    ) -> BookingDraft | None:
        if pending is not None:
            stay = StayRange(parse_day(pending.check_in), parse_day(pending.checkout))
            payment_type = PaymentType(pending.payment_type)
            phase = PaymentPhase(pending.phase)
            return BookingDraft(
                unit_id=pending.unit_id,
                stay=stay,
                payment_type=payment_type,
                rail=pending.rail,
                booking_id=booking_id,
                payment=self.quote(stay, payment_type),
                phase=_IN_PROGRESS[phase],
                deposit_paid=phase is PaymentPhase.BALANCE,
            )

        record = self._booking_service.booking_status(booking_id)
        return self.draft_from_record(record)

    def _outcome(
        self,
        draft: BookingDraft,
        status: OutcomeStatus,
        phase: PaymentPhase | None,
        **kwargs: Any,
    ) -> PaymentOutcome:
        return PaymentOutcome(
            status=status,
            booking_id=draft.booking_id,
            phase=phase,
            deposit_paid=draft.deposit_paid,
            balance_paid=draft.balance_paid,
            **kwargs,
        )
