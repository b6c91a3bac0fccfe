"""Push-payment rail (M-Pesa STK push through the payments backend).

The backend sends a payment prompt to the guest's phone and flips the
booking's paid flags once the mobile-money callback arrives. Confirmation
is therefore asynchronous: the orchestrator polls the booking status.

Security: NEVER log the guest phone number. Only redacted context.
"""

from __future__ import annotations

from typing import Any, Callable

import requests

from splitstay.domain.errors import AuthExpiredError, RailNetworkError, RailRejectedError
from splitstay.domain.pricing import PaymentPhase
from splitstay.observability.correlation import CORRELATION_ID_HEADER, get_correlation_id
from splitstay.observability.logging import get_logger
from splitstay.observability.redaction import safe_log_context
from splitstay.rails.base import (
    ConfirmationMode,
    ConfirmationStatus,
    PaymentContext,
    RailInitiation,
)

logger = get_logger(__name__)

DEFAULT_COUNTRY_CODE = "254"


def normalize_phone(phone: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Normalize a guest phone number to E.164.

    Examples (country_code="254"):
        "0712345678"    -> "+254712345678"
        "254712345678"  -> "+254712345678"
        "712345678"     -> "+254712345678"
        "+254712345678" -> unchanged

    Raises:
        RailRejectedError: If the number is empty.
    """
    phone = "".join(phone.split())
    if not phone:
        raise RailRejectedError("Guest phone number is required for push payments")
    if phone.startswith("+"):
        return phone
    if phone.startswith(country_code):
        return f"+{phone}"
    if phone.startswith("0"):
        return f"+{country_code}{phone[1:]}"
    return f"+{country_code}{phone}"


class PushPaymentRail:
    """STK push rail over the payments backend HTTP API.

    Args:
        base_url: Payments backend base URL.
        token_provider: Returns the guest's bearer token.
        country_code: Dialling code used for local phone numbers.
        timeout: Per-request timeout in seconds.
        http: requests-compatible session (injectable for tests).
    """

    name = "mpesa"
    confirmation_mode = ConfirmationMode.POLL

    def __init__(
        self,
        base_url: str,
        token_provider: Callable[[], str | None],
        *,
        country_code: str = DEFAULT_COUNTRY_CODE,
        timeout: int = 15,
        http: Any = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._country_code = country_code
        self._timeout = timeout
        self._http = http or requests.Session()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        token = self._token_provider()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        cid = get_correlation_id()
        if cid:
            headers[CORRELATION_ID_HEADER] = cid
        return headers

    def _send(self, method: str, path: str, payload: dict | None = None) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            response = self._http.request(
                method, url, json=payload, headers=self._headers(), timeout=self._timeout
            )
        except requests.RequestException as e:
            logger.error(
                "push backend unreachable",
                extra={"extra_fields": safe_log_context(path=path, error=type(e).__name__)},
            )
            raise RailNetworkError("Payments backend unreachable") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code == 401:
            raise AuthExpiredError("Session expired, please log in again")
        if 400 <= response.status_code < 500:
            logger.warning(
                "push payment rejected",
                extra={"extra_fields": safe_log_context(path=path, status=response.status_code)},
            )
            raise RailRejectedError(
                data.get("error") or "Push payment was rejected",
                meta={"status": response.status_code},
            )
        if response.status_code >= 500:
            raise RailNetworkError(
                "Payments backend error", meta={"status": response.status_code}
            )
        return data

    def initiate(
        self,
        amount_cents: int,
        booking_id: str,
        *,
        phase: PaymentPhase,
        context: PaymentContext,
    ) -> RailInitiation:
        """Send the STK push for one leg.

        Returns:
            RailInitiation whose reference is the backend's booking reference,
            used for status polling.

        Raises:
            RailRejectedError: Missing phone, or the backend declined.
            RailNetworkError: Backend unreachable or 5xx.
        """
        phone = normalize_phone(context.guest_phone or "", self._country_code)

        if phase is PaymentPhase.DEPOSIT:
            path = "/api/payments/mpesa/initiate"
            payload = {
                "bookingId": booking_id,
                "unitId": context.unit_id,
                "startDate": context.check_in.isoformat(),
                "endDate": context.checkout.isoformat(),
                "amountCents": amount_cents,
                "currency": context.currency,
                "guestPhone": phone,
            }
        else:
            path = "/api/payments/mpesa/balance"
            payload = {
                "bookingId": booking_id,
                "amountCents": amount_cents,
                "guestPhone": phone,
            }

        data = self._send("POST", path, payload)
        reference = data.get("bookingId") or booking_id

        logger.info(
            "push payment initiated",
            extra={
                "extra_fields": safe_log_context(
                    booking_id=booking_id, phase=phase, amount_cents=amount_cents
                )
            },
        )
        return RailInitiation(mode=self.confirmation_mode, reference=reference)

    def confirm(
        self,
        reference: str,
        *,
        phase: PaymentPhase,
        booking_id: str,
        amount_cents: int,
    ) -> ConfirmationStatus:
        """Read the push status for a reference.

        Raises:
            RailRejectedError: The status belongs to another booking.
        """
        data = self._send("GET", f"/api/payments/mpesa/status/{reference}")
        booking = data.get("booking") or {}

        reported_id = booking.get("bookingId") or booking.get("_id")
        if reported_id is not None and reported_id != booking_id:
            raise RailRejectedError(
                "Payment status belongs to another booking",
                meta={"booking_id": booking_id},
            )

        flag = "depositPaid" if phase is PaymentPhase.DEPOSIT else "balancePaid"
        if booking.get(flag) is True:
            return ConfirmationStatus.PAID
        if booking.get("status") in ("cancelled", "failed") or booking.get(
            "paymentStatus"
        ) in ("cancelled", "failed"):
            return ConfirmationStatus.FAILED
        return ConfirmationStatus.PENDING
