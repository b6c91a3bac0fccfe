"""HTTP client for the external booking service.

The booking service owns reservations and booking records. This client
maps its HTTP answers onto the booking error taxonomy:

    409 {"error": "already_paid"} -> AlreadyPaidError
    409 on a dated request        -> DateConflictError
    409 on any other request      -> InvalidTransitionError
    400 / 422                     -> InvalidRangeError
    401                           -> AuthExpiredError
    transport error / 5xx         -> BookingNetworkError

Security: bearer tokens and guest contact data are never logged.
"""

from __future__ import annotations

from typing import Any, Callable

import requests

from splitstay.domain.dates import StayRange
from splitstay.domain.errors import (
    AlreadyPaidError,
    AuthExpiredError,
    BookingNetworkError,
    DateConflictError,
    InvalidRangeError,
    InvalidTransitionError,
)
from splitstay.domain.models import BookingRecord, Reservation
from splitstay.domain.pricing import PaymentState
from splitstay.observability.correlation import CORRELATION_ID_HEADER, get_correlation_id
from splitstay.observability.logging import get_logger
from splitstay.observability.redaction import safe_log_context

logger = get_logger(__name__)


class BookingServiceClient:
    """Client for the booking service REST API.

    Args:
        base_url: Service base URL (no trailing slash needed).
        token_provider: Returns the guest's bearer token, or None.
        timeout: Per-request timeout in seconds.
        tz_name: Timezone used to turn ISO timestamps into calendar days.
        http: requests-compatible session (injectable for tests).
    """

    def __init__(
        self,
        base_url: str,
        token_provider: Callable[[], str | None] = lambda: None,
        *,
        timeout: int = 15,
        tz_name: str | None = None,
        http: Any = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._timeout = timeout
        self._tz_name = tz_name
        self._http = http or requests.Session()

    def _headers(self, *, auth: bool) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if auth:
            token = self._token_provider()
            if token:
                headers["Authorization"] = f"Bearer {token}"
        cid = get_correlation_id()
        if cid:
            headers[CORRELATION_ID_HEADER] = cid
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        payload: dict | None = None,
        auth: bool = True,
        stay: StayRange | None = None,
        allow_missing: bool = False,
    ) -> dict[str, Any] | None:
        url = f"{self._base_url}{path}"
        try:
            response = self._http.request(
                method,
                url,
                json=payload,
                headers=self._headers(auth=auth),
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            logger.error(
                "booking service unreachable",
                extra={"extra_fields": safe_log_context(path=path, error=type(e).__name__)},
            )
            raise BookingNetworkError("Booking service unreachable") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {"data": data}

        status = response.status_code
        if status < 400:
            return data
        if status == 404 and allow_missing:
            return None

        error = data.get("error") or data.get("message") or ""
        logger.warning(
            "booking service error",
            extra={"extra_fields": safe_log_context(path=path, status=status, error=error)},
        )
        if status == 409 and error == "already_paid":
            raise AlreadyPaidError("Booking is already paid", meta={"status": status})
        if status == 409:
            if stay is None:
                raise InvalidTransitionError(error or "Booking is not in a state that allows this")
            raise DateConflictError(stay.check_in, stay.checkout)
        if status in (400, 422):
            raise InvalidRangeError(error or "Booking service rejected the dates")
        if status == 401:
            raise AuthExpiredError("Session expired, please log in again")
        raise BookingNetworkError(
            error or f"Booking service error ({status})", meta={"status": status}
        )

    def list_reservations(self, unit_id: str) -> list[Reservation]:
        """Fetch the unit's reservation list (calendar endpoint, no auth)."""
        data = self._request("GET", f"/api/calendar/{unit_id}", auth=False)
        return [Reservation.from_api(item, self._tz_name) for item in data.get("bookings", [])]

    def create_or_confirm_booking(
        self,
        *,
        booking_id: str,
        unit_id: str,
        stay: StayRange,
        payment: PaymentState,
        rail: str,
        deposit_paid: bool,
        balance_paid: bool,
        references: dict[str, str] | None = None,
        wallet_address: str | None = None,
        guest_phone: str | None = None,
    ) -> BookingRecord:
        """Create the booking record or update its paid flags.

        Idempotent on booking_id: the service upserts.
        """
        payload: dict[str, Any] = {
            "bookingId": booking_id,
            "unitId": unit_id,
            **stay.as_dict(),
            "paymentMethod": rail,
            "depositPaid": deposit_paid,
            "balancePaid": balance_paid,
            **payment.as_dict(),
            **(references or {}),
        }
        if wallet_address:
            payload["walletAddress"] = wallet_address
        if guest_phone:
            payload["guestPhone"] = guest_phone

        data = self._request("POST", "/api/book/confirm", payload=payload, stay=stay)
        logger.info(
            "booking confirmed with service",
            extra={
                "extra_fields": safe_log_context(
                    booking_id=booking_id,
                    deposit_paid=deposit_paid,
                    balance_paid=balance_paid,
                )
            },
        )
        if not data.get("booking") and not data.get("bookingId"):
            return BookingRecord(
                booking_id=booking_id,
                unit_id=unit_id,
                start_date=stay.check_in,
                end_date=stay.checkout,
                deposit_paid=deposit_paid,
                balance_paid=balance_paid,
                payment_method=rail,
            )
        return BookingRecord.from_api(data, self._tz_name)

    def booking_status(self, booking_id: str) -> BookingRecord:
        data = self._request("GET", f"/api/book/status/{booking_id}")
        return BookingRecord.from_api(data, self._tz_name)

    def find_booking(self, booking_id: str) -> BookingRecord | None:
        """Like booking_status, but None when the service does not know the ID."""
        data = self._request("GET", f"/api/book/status/{booking_id}", allow_missing=True)
        if data is None:
            return None
        return BookingRecord.from_api(data, self._tz_name)

    def cancel_booking(self, booking_id: str) -> BookingRecord:
        data = self._request("POST", f"/api/book/cancel/{booking_id}")
        if not data.get("booking") and not data.get("bookingId"):
            return BookingRecord(booking_id=booking_id, status="cancelled")
        return BookingRecord.from_api(data, self._tz_name)

    def my_bookings(self) -> list[BookingRecord]:
        """List the authenticated guest's bookings."""
        data = self._request("GET", "/api/book/my")
        items = data.get("bookings")
        if items is None:
            items = data.get("data") or []
        return [BookingRecord.from_api(item, self._tz_name) for item in items]
