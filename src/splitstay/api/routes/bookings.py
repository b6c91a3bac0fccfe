"""Booking and payment endpoints.

Provides:
- POST /bookings/quote: validate a stay against availability and price it
- POST /bookings: submit a draft and run the deposit leg
- POST /bookings/{booking_id}/balance: run the balance leg
- POST /bookings/{booking_id}/cancel: cancel a booking that is not fully paid
- GET /bookings/checkout/return: hosted-checkout return (resume)
- POST /bookings/{booking_id}/transaction: hash of a wallet-signed payment, or a decline
- GET /bookings/{booking_id}/status: re-check an open leg (e.g. a timed-out push)
- GET /bookings/mine: the guest's bookings, filtered

Domain errors are turned into JSON responses by the app's exception
handlers.
"""

from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from splitstay.api.deps import (
    get_booking_service,
    get_guest_session,
    get_orchestrator,
    get_settings,
)
from splitstay.clients.booking_service import BookingServiceClient
from splitstay.domain.availability import AvailabilityIndex
from splitstay.domain.booking_views import booking_summary, filter_bookings, split_upcoming
from splitstay.domain.dates import StayRange
from splitstay.domain.errors import InvalidRangeError, InvalidTransitionError
from splitstay.domain.orchestrator import (
    BookingDraft,
    OutcomeStatus,
    PaymentOrchestrator,
    PaymentOutcome,
)
from splitstay.domain.pricing import PaymentType
from splitstay.domain.selection import SelectionEngine
from splitstay.infra.settings import Settings
from splitstay.infra.time import local_today
from splitstay.observability.logging import get_logger
from splitstay.observability.redaction import safe_log_context
from splitstay.session import GuestSession

router = APIRouter(prefix="/bookings", tags=["bookings"])

logger = get_logger(__name__)


class QuoteRequest(BaseModel):
    unit_id: str
    check_in: date
    checkout: date | None = None
    payment_type: PaymentType = PaymentType.DEPOSIT


class CreateBookingRequest(BaseModel):
    """Request body for submitting a booking draft."""

    unit_id: str
    check_in: date
    checkout: date
    payment_type: PaymentType = PaymentType.DEPOSIT
    rail: str
    guest_phone: str | None = None
    guest_email: str | None = None
    booking_id: str | None = None


class PayBalanceRequest(BaseModel):
    rail: str | None = None
    guest_phone: str | None = None
    guest_email: str | None = None


class WalletTransactionRequest(BaseModel):
    """What the guest's wallet did with the prepared transaction."""

    tx_hash: str | None = None
    declined: bool = False


def _outcome_response(outcome: PaymentOutcome) -> JSONResponse:
    status_code = 202 if outcome.status is OutcomeStatus.PENDING_UNKNOWN else 200
    return JSONResponse(status_code=status_code, content=outcome.as_dict())


def _not_found(code: str, detail: str) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": code, "detail": detail})


@router.post("/quote")
def quote_booking(
    body: QuoteRequest,
    booking_service: BookingServiceClient = Depends(get_booking_service),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings),
) -> dict:
    """Validate a typed stay range and price it.

    A missing or non-positive checkout is moved to the day after check-in.
    """
    today = local_today(settings.timezone)
    engine = SelectionEngine(
        AvailabilityIndex.from_reservations(booking_service.list_reservations(body.unit_id)),
        today=lambda: today,
    )
    state = engine.enter_manual(body.check_in, body.checkout)
    stay = state.as_range()
    payment = orchestrator.quote(stay, body.payment_type)

    return {
        "unitId": body.unit_id,
        **stay.as_dict(),
        "currency": settings.currency,
        **payment.as_dict(),
        "balanceDueLaterCents": payment.balance_due_later_cents,
    }


@router.post("")
def create_booking(
    body: CreateBookingRequest,
    booking_service: BookingServiceClient = Depends(get_booking_service),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Submit a booking and pay the first leg.

    Resending the same ``booking_id`` is idempotent: a booking whose
    deposit is already recorded is refused instead of charged twice.
    """
    if body.checkout <= body.check_in:
        raise InvalidRangeError("Check-out must be after check-in")

    draft = BookingDraft(
        unit_id=body.unit_id,
        stay=StayRange(body.check_in, body.checkout),
        payment_type=body.payment_type,
        rail=body.rail,
        booking_id=body.booking_id,
        guest_phone=body.guest_phone,
        guest_email=body.guest_email,
    )
    if body.booking_id:
        record = booking_service.find_booking(body.booking_id)
        if record is not None:
            draft.deposit_paid = record.deposit_paid
            draft.balance_paid = record.balance_paid

    outcome = orchestrator.submit(draft)
    logger.info(
        "booking submission finished",
        extra={
            "extra_fields": safe_log_context(
                booking_id=outcome.booking_id, status=outcome.status
            )
        },
    )
    return _outcome_response(outcome)


@router.post("/{booking_id}/balance")
def pay_balance(
    booking_id: str,
    body: PayBalanceRequest,
    booking_service: BookingServiceClient = Depends(get_booking_service),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    record = booking_service.booking_status(booking_id)
    draft = orchestrator.draft_from_record(record)
    draft.guest_phone = body.guest_phone
    draft.guest_email = body.guest_email

    outcome = orchestrator.pay_balance(draft, rail=body.rail)
    return _outcome_response(outcome)


@router.post("/{booking_id}/cancel")
def cancel_booking(
    booking_id: str,
    booking_service: BookingServiceClient = Depends(get_booking_service),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> dict:
    record = booking_service.booking_status(booking_id)
    draft = orchestrator.draft_from_record(record)
    orchestrator.cancel(draft)
    return {"bookingId": booking_id, "status": "cancelled"}


@router.get("/checkout/return")
def checkout_return(
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Hosted-checkout return URL: verify the payment and resume the draft."""
    outcome = orchestrator.resume_from_callback(dict(request.query_params))
    if outcome is None:
        return _not_found("nothing_to_resume", "No pending checkout found")
    return _outcome_response(outcome)


@router.get("/mine")
def my_bookings(
    status_filter: str = Query(default="all", alias="filter"),
    search: str = Query(default=""),
    session: GuestSession = Depends(get_guest_session),
    booking_service: BookingServiceClient = Depends(get_booking_service),
    settings: Settings = Depends(get_settings),
) -> dict:
    session.require_valid_token()
    today = local_today(settings.timezone)

    records = filter_bookings(
        booking_service.my_bookings(), today, status_filter=status_filter, search=search
    )
    groups = split_upcoming(records, today)
    return {
        "upcoming": [booking_summary(r, today) for r in groups.upcoming],
        "previous": [booking_summary(r, today) for r in groups.previous],
        "count": len(records),
    }


@router.post("/{booking_id}/transaction")
def wallet_transaction(
    booking_id: str,
    body: WalletTransactionRequest,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Verify the hash of a wallet-signed payment, or fail the leg on a decline."""
    if body.declined:
        orchestrator.decline_pending(booking_id)
    if not body.tx_hash:
        raise InvalidTransitionError("Send the transaction hash or declined=true")

    outcome = orchestrator.resume_from_callback(
        {"bookingId": booking_id, "reference": body.tx_hash}
    )
    if outcome is None:
        return _not_found("nothing_to_resume", "No pending payment found")
    return _outcome_response(outcome)


@router.get("/{booking_id}/status")
def booking_payment_status(
    booking_id: str,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Re-check the open leg of a booking and report where it stands."""
    outcome = orchestrator.reconcile_booking(booking_id)
    if outcome is None:
        return _not_found("booking_not_found", "No such booking")
    return _outcome_response(outcome)
