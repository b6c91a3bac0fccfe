"""Hosted-checkout rail on Stripe Checkout.

The guest is redirected to a Stripe-hosted page and returns to our
checkout return URL with ``bookingId`` and ``reference`` (the session ID)
in the query string. One session per booking and phase, keyed by a
deterministic idempotency key, so a re-submitted draft gets the same
session back instead of a second charge.
"""

from __future__ import annotations

from typing import Any, Callable
from urllib.parse import urlencode

import stripe

from splitstay.domain.errors import RailNetworkError, RailRejectedError
from splitstay.domain.pricing import PaymentPhase
from splitstay.observability.correlation import get_correlation_id
from splitstay.observability.logging import get_logger
from splitstay.observability.redaction import safe_log_context
from splitstay.rails.base import (
    ConfirmationMode,
    ConfirmationStatus,
    PaymentContext,
    RailInitiation,
)
from splitstay.stripe.client import StripeClient

logger = get_logger(__name__)


def checkout_idempotency_key(booking_id: str, phase: PaymentPhase) -> str:
    return f"booking:{booking_id}:{PaymentPhase(phase).value}:checkout_session"


def build_success_url(return_url: str, booking_id: str) -> str:
    """Append bookingId and Stripe's session placeholder to the return URL.

    ``{CHECKOUT_SESSION_ID}`` must reach Stripe unencoded so it can be
    substituted with the real session ID.
    """
    sep = "&" if "?" in return_url else "?"
    query = urlencode({"bookingId": booking_id})
    return f"{return_url}{sep}{query}&reference={{CHECKOUT_SESSION_ID}}"


class HostedCheckoutRail:
    """Stripe Checkout rail.

    Args:
        return_url: Our checkout return endpoint.
        cancel_url: Page shown when the guest abandons the hosted checkout.
        client_factory: Builds the StripeClient wrapper (tests pass a fake).
    """

    name = "stripe"
    confirmation_mode = ConfirmationMode.REDIRECT

    def __init__(
        self,
        *,
        return_url: str,
        cancel_url: str,
        client_factory: Callable[[], Any] = StripeClient,
    ) -> None:
        self._return_url = return_url
        self._cancel_url = cancel_url
        self._client_factory = client_factory
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    def initiate(
        self,
        amount_cents: int,
        booking_id: str,
        *,
        phase: PaymentPhase,
        context: PaymentContext,
    ) -> RailInitiation:
        """Create (or fetch, by idempotency key) the Checkout Session.

        Raises:
            RailRejectedError: Stripe refused the request.
            RailNetworkError: Stripe unreachable.
        """
        phase = PaymentPhase(phase)
        try:
            session = self._get_client().create_checkout_session(
                amount_cents=amount_cents,
                currency=context.currency,
                idempotency_key=checkout_idempotency_key(booking_id, phase),
                success_url=build_success_url(self._return_url, booking_id),
                cancel_url=self._cancel_url,
                product_name=f"Stay {context.check_in.isoformat()} to {context.checkout.isoformat()} ({phase.value})",
                metadata={
                    "booking_id": booking_id,
                    "unit_id": context.unit_id,
                    "phase": phase.value,
                },
                client_reference_id=booking_id,
                customer_email=context.guest_email,
                correlation_id=get_correlation_id() or None,
            )
        except stripe.APIConnectionError as e:
            raise RailNetworkError("Checkout provider unreachable") from e
        except stripe.StripeError as e:
            logger.warning(
                "checkout session rejected",
                extra={"extra_fields": safe_log_context(booking_id=booking_id, phase=phase)},
            )
            raise RailRejectedError("Checkout provider rejected the payment") from e

        return RailInitiation(
            mode=self.confirmation_mode,
            reference=session["session_id"],
            redirect_url=session["url"],
        )

    def confirm(
        self,
        reference: str,
        *,
        phase: PaymentPhase,
        booking_id: str,
        amount_cents: int,
    ) -> ConfirmationStatus:
        """Map the Checkout Session state to a confirmation status.

        The session must carry this booking and phase in its metadata and
        charge exactly ``amount_cents``; a paid session for anything else
        proves nothing about this leg.

        Raises:
            RailRejectedError: Session unknown or issued for another leg.
            RailNetworkError: Stripe unreachable.
        """
        phase = PaymentPhase(phase)
        try:
            session = self._get_client().retrieve_checkout_session(
                reference, correlation_id=get_correlation_id() or None
            )
        except stripe.APIConnectionError as e:
            raise RailNetworkError("Checkout provider unreachable") from e
        except stripe.StripeError as e:
            raise RailRejectedError("Checkout session could not be verified") from e

        metadata = session.get("metadata") or {}
        if (
            metadata.get("booking_id") != booking_id
            or metadata.get("phase") != phase.value
            or session.get("amount_total") != amount_cents
        ):
            logger.warning(
                "checkout session does not match leg",
                extra={
                    "extra_fields": safe_log_context(
                        booking_id=booking_id,
                        phase=phase,
                        session_booking_id=metadata.get("booking_id"),
                        session_phase=metadata.get("phase"),
                    )
                },
            )
            raise RailRejectedError("Checkout session does not belong to this payment")

        if session.get("payment_status") == "paid":
            return ConfirmationStatus.PAID
        if session.get("status") == "expired":
            return ConfirmationStatus.FAILED
        return ConfirmationStatus.PENDING
