"""Thin wrapper around Stripe SDK.

Purpose:
- Encapsulate Stripe API calls so rail code doesn't import stripe.* directly.
- Accept idempotency_key for safe retries.
- Never log full Stripe payloads (only IDs + correlation metadata).
"""

from __future__ import annotations

import os
from typing import Any

import stripe

from splitstay.observability.logging import get_logger
from splitstay.observability.redaction import safe_log_context

logger = get_logger(__name__)


class StripeClient:
    """Wrapper for Stripe Checkout operations.

    Usage:
        client = StripeClient()  # reads STRIPE_SECRET_KEY from env
        session = client.create_checkout_session(
            amount_cents=500,
            currency="kes",
            idempotency_key="booking:booking_1_u1_offchain_ab12cd34:deposit:checkout_session",
            success_url="https://example.com/return?bookingId=...",
            cancel_url="https://example.com/cancel",
        )
        print(session["session_id"], session["url"])
    """

    def __init__(self, api_key: str | None = None) -> None:
        """Initialize the Stripe client.

        Args:
            api_key: Stripe secret key. Defaults to STRIPE_SECRET_KEY env var.

        Raises:
            RuntimeError: If no API key is provided or found in environment.
        """
        self._api_key = api_key or os.environ.get("STRIPE_SECRET_KEY")
        if not self._api_key:
            raise RuntimeError(
                "Stripe API key not provided. "
                "Set STRIPE_SECRET_KEY or pass api_key parameter."
            )

    def create_checkout_session(
        self,
        *,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        success_url: str,
        cancel_url: str,
        product_name: str = "Stay booking",
        metadata: dict[str, str] | None = None,
        client_reference_id: str | None = None,
        customer_email: str | None = None,
        correlation_id: str | None = None,
    ) -> dict[str, Any]:
        """Create a Stripe Checkout Session.

        Args:
            amount_cents: Amount in minor units.
            currency: Currency code (e.g., 'kes', 'usd').
            idempotency_key: Idempotency key for safe retries.
            success_url: Redirect URL on success.
            cancel_url: Redirect URL on cancel.
            product_name: Line item label shown on the hosted page.
            metadata: Optional metadata to attach to session.
            client_reference_id: Our booking ID, echoed back by Stripe.
            customer_email: Optional guest e-mail to prefill.
            correlation_id: Optional correlation ID for logging.

        Returns:
            Dict with session_id, url, status, payment_status, amount_total
            and metadata.
        """
        client = stripe.StripeClient(self._api_key)

        params: dict[str, Any] = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "unit_amount": amount_cents,
                        "product_data": {"name": product_name},
                    },
                    "quantity": 1,
                }
            ],
            "success_url": success_url,
            "cancel_url": cancel_url,
        }

        if metadata:
            params["metadata"] = metadata
        if client_reference_id:
            params["client_reference_id"] = client_reference_id
        if customer_email:
            params["customer_email"] = customer_email

        session = client.v1.checkout.sessions.create(
            params=params,
            options={"idempotency_key": idempotency_key},
        )

        # Log only IDs, never full payload
        logger.info(
            "stripe_checkout_session_created",
            extra={
                "extra_fields": safe_log_context(
                    session_id=session.id, correlation_id=correlation_id
                )
            },
        )

        return _session_dict(session)

    def retrieve_checkout_session(
        self,
        session_id: str,
        *,
        correlation_id: str | None = None,
    ) -> dict[str, Any]:
        """Retrieve an existing Checkout Session.

        Args:
            session_id: The Stripe session ID.
            correlation_id: Optional correlation ID for logging.

        Returns:
            Dict with session_id, url, status and payment_status.
        """
        client = stripe.StripeClient(self._api_key)

        session = client.v1.checkout.sessions.retrieve(session_id)

        logger.info(
            "stripe_checkout_session_retrieved",
            extra={
                "extra_fields": safe_log_context(
                    session_id=session.id, correlation_id=correlation_id
                )
            },
        )

        return _session_dict(session)


def _session_dict(session: Any) -> dict[str, Any]:
    return {
        "session_id": session.id,
        "url": session.url,
        "status": session.status,
        "payment_status": session.payment_status,
        "client_reference_id": session.client_reference_id,
        "amount_total": session.amount_total,
        "metadata": dict(session.metadata or {}),
    }
