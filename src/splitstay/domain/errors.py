"""Booking and payment error taxonomy.

Every error carries a stable ``code`` that the HTTP layer returns to the
client. Validation errors are raised before any network call and leave
state untouched; rail and network errors only ever revert the phase that
was in progress.
"""

from __future__ import annotations

from datetime import date


class BookingError(Exception):
    """Base class for all booking and payment errors."""

    code = "booking_error"

    def __init__(self, message: str, *, meta: dict | None = None) -> None:
        self.meta = meta or {}
        super().__init__(message)


class InvalidRangeError(BookingError):
    """Stay range is missing, in the past, inverted, or has zero nights."""

    code = "invalid_range"


class DateConflictError(BookingError):
    """Requested nights overlap an active reservation."""

    code = "date_conflict"

    def __init__(
        self,
        check_in: date,
        checkout: date,
        *,
        conflicting_booking_id: str | None = None,
        existing_start: date | None = None,
        existing_end: date | None = None,
    ) -> None:
        self.check_in = check_in
        self.checkout = checkout
        self.conflicting_booking_id = conflicting_booking_id
        self.existing_start = existing_start
        self.existing_end = existing_end
        detail = f"Stay {check_in} to {checkout} conflicts with an existing booking"
        if existing_start is not None and existing_end is not None:
            detail += f" ({existing_start} to {existing_end})"
        super().__init__(detail)


class AlreadyPaidError(BookingError):
    """The requested payment phase has already been confirmed."""

    code = "already_paid"


class AlreadyPaidOnChainError(AlreadyPaidError):
    """The on-chain ledger already records this phase for the booking."""

    code = "already_paid_on_chain"


class RailRejectedError(BookingError):
    """The payer or the rail declined (wallet prompt refused, card or push declined)."""

    code = "rail_rejected"


class NetworkError(BookingError):
    """A remote party could not be reached or answered unexpectedly."""

    code = "network_error"


class RailNetworkError(NetworkError):
    """A payment rail could not be reached or could not confirm."""

    code = "rail_unreachable"


class BookingNetworkError(NetworkError):
    """The booking service could not be reached or answered unexpectedly."""

    code = "booking_service_unreachable"


class CooldownActiveError(BookingError):
    """A rail-initiating action was attempted too soon after the previous one."""

    code = "cooldown_active"

    def __init__(self, wait_seconds: int) -> None:
        self.wait_seconds = wait_seconds
        super().__init__(f"Please wait {wait_seconds} seconds before the next transaction")


class AuthExpiredError(BookingError):
    """The guest's session token is missing, malformed or expired."""

    code = "auth_expired"


class InvalidTransitionError(BookingError):
    """The payment state machine does not allow the requested step."""

    code = "invalid_transition"


class NotCancellableError(BookingError):
    """The booking is fully paid and can no longer be cancelled here."""

    code = "not_cancellable"
