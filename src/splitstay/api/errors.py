"""Mapping of domain errors to HTTP responses.

Body shape: {"error": <code>, "detail": <message>}. Cooldown adds
``waitSeconds``; an already-paid leg adds ``status: "already_paid"`` and the
``bookingId``.
"""

from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse

from splitstay.domain.errors import (
    AlreadyPaidError,
    AuthExpiredError,
    BookingError,
    BookingNetworkError,
    CooldownActiveError,
    DateConflictError,
    InvalidRangeError,
    RailNetworkError,
    RailRejectedError,
)
from splitstay.domain.selection import SelectionRejected
from splitstay.observability.logging import get_logger
from splitstay.observability.redaction import safe_log_context

logger = get_logger(__name__)

# First match wins; subclasses before their bases
_STATUS_BY_ERROR: tuple[tuple[type[BookingError], int], ...] = (
    (InvalidRangeError, 400),
    (RailRejectedError, 400),
    (AuthExpiredError, 401),
    (CooldownActiveError, 429),
    (DateConflictError, 409),
    (BookingNetworkError, 502),
    (RailNetworkError, 504),
)


def status_for(exc: BookingError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    # AlreadyPaid, InvalidTransition, NotCancellable
    return 409


def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    status_code = status_for(exc)
    logger.warning(
        "request failed",
        extra={
            "extra_fields": safe_log_context(
                path=request.url.path, error=exc.code, status=status_code
            )
        },
    )
    content: dict = {"error": exc.code, "detail": str(exc)}
    headers = None
    if isinstance(exc, CooldownActiveError):
        content["waitSeconds"] = exc.wait_seconds
        headers = {"Retry-After": str(exc.wait_seconds)}
    elif isinstance(exc, AlreadyPaidError):
        content["status"] = "already_paid"
        content["bookingId"] = exc.meta.get("booking_id")
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def selection_rejected_handler(request: Request, exc: SelectionRejected) -> JSONResponse:
    status_code = 400 if exc.reason_code == "past_date" else 409
    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.reason_code,
            "detail": str(exc),
            "date": exc.day.isoformat() if exc.day else None,
        },
    )
