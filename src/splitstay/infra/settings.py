"""Runtime settings for pricing, payment rails and reconciliation.

All values come from environment variables with defaults matching the
production deployment. Settings are immutable; build a new instance with
dataclasses.replace() in tests.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    """Resolved configuration.

    Attributes:
        nightly_rate_cents: Flat per-night rate in minor units.
        fixed_deposit_cents: Deposit charged on the first leg.
        currency: ISO currency code used by all fiat rails.
        timezone: IANA timezone of the rental units (calendar days).
        min_lead_days: Check-in must be at least this many days after today.
        booking_api_base: Base URL of the external booking service.
        push_api_base: Base URL of the push-payment backend.
        phone_country_code: Default dialling code for guest phone numbers.
        poll_interval_seconds: Fixed wait between push-payment status polls.
        poll_max_attempts: Push-payment polls before giving up (unknown state).
        checkout_poll_interval_seconds: Wait between polls after a checkout return.
        checkout_poll_max_attempts: Polls after a checkout return.
        transaction_cooldown_seconds: Minimum gap between rail-initiating actions.
        balance_leg_delay_seconds: Settlement wait between the deposit leg and
            the balance leg of a pay-in-full flow.
        pending_checkout_ttl_seconds: How long a pending checkout can be resumed.
        checkout_return_url: Page the hosted checkout returns to.
        checkout_cancel_url: Page the hosted checkout returns to on cancel.
        chain_rpc_url: JSON-RPC endpoint of the chain hosting the payment contract.
        chain_id: Expected chain ID (transfers on any other chain are refused).
        chain_contract_address: Payment contract address.
        chain_confirmations: Blocks to wait before a transfer counts as paid.
        chain_receipt_timeout_seconds: Max wait for a transfer receipt.
        http_timeout_seconds: Timeout for outbound HTTP calls.
    """

    nightly_rate_cents: int = 800
    fixed_deposit_cents: int = 500
    currency: str = "KES"
    timezone: str = "Africa/Nairobi"
    min_lead_days: int = 1
    booking_api_base: str = "http://localhost:5000"
    push_api_base: str = "http://localhost:5000"
    phone_country_code: str = "254"
    poll_interval_seconds: float = 3.0
    poll_max_attempts: int = 40
    checkout_poll_interval_seconds: float = 2.0
    checkout_poll_max_attempts: int = 20
    transaction_cooldown_seconds: float = 10.0
    balance_leg_delay_seconds: float = 8.0
    pending_checkout_ttl_seconds: int = 600
    checkout_return_url: str = "http://localhost:8000/bookings/checkout/return"
    checkout_cancel_url: str = "http://localhost:8000/bookings/checkout/cancelled"
    chain_rpc_url: str = "https://rpc-amoy.polygon.technology/"
    chain_id: int = 80002
    chain_contract_address: str = ""
    chain_confirmations: int = 2
    chain_receipt_timeout_seconds: int = 180
    http_timeout_seconds: int = 15


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from e


def load_settings() -> Settings:
    """Build Settings from environment variables.

    Raises:
        RuntimeError: If a numeric variable cannot be parsed or the deposit
            or nightly rate is not positive.
    """
    defaults = Settings()
    settings = Settings(
        nightly_rate_cents=_env_int("NIGHTLY_RATE_CENTS", defaults.nightly_rate_cents),
        fixed_deposit_cents=_env_int("FIXED_DEPOSIT_CENTS", defaults.fixed_deposit_cents),
        currency=os.environ.get("BOOKING_CURRENCY", defaults.currency),
        timezone=os.environ.get("PROPERTY_TIMEZONE", defaults.timezone),
        min_lead_days=_env_int("MIN_LEAD_DAYS", defaults.min_lead_days),
        booking_api_base=os.environ.get("BOOKING_API_BASE", defaults.booking_api_base).rstrip("/"),
        push_api_base=os.environ.get("PUSH_API_BASE", defaults.push_api_base).rstrip("/"),
        phone_country_code=os.environ.get("PHONE_COUNTRY_CODE", defaults.phone_country_code),
        poll_interval_seconds=_env_float("POLL_INTERVAL_SECONDS", defaults.poll_interval_seconds),
        poll_max_attempts=_env_int("POLL_MAX_ATTEMPTS", defaults.poll_max_attempts),
        checkout_poll_interval_seconds=_env_float(
            "CHECKOUT_POLL_INTERVAL_SECONDS", defaults.checkout_poll_interval_seconds
        ),
        checkout_poll_max_attempts=_env_int(
            "CHECKOUT_POLL_MAX_ATTEMPTS", defaults.checkout_poll_max_attempts
        ),
        transaction_cooldown_seconds=_env_float(
            "TRANSACTION_COOLDOWN_SECONDS", defaults.transaction_cooldown_seconds
        ),
        balance_leg_delay_seconds=_env_float(
            "BALANCE_LEG_DELAY_SECONDS", defaults.balance_leg_delay_seconds
        ),
        pending_checkout_ttl_seconds=_env_int(
            "PENDING_CHECKOUT_TTL_SECONDS", defaults.pending_checkout_ttl_seconds
        ),
        checkout_return_url=os.environ.get("CHECKOUT_RETURN_URL", defaults.checkout_return_url),
        checkout_cancel_url=os.environ.get("CHECKOUT_CANCEL_URL", defaults.checkout_cancel_url),
        chain_rpc_url=os.environ.get("CHAIN_RPC_URL", defaults.chain_rpc_url),
        chain_id=_env_int("CHAIN_ID", defaults.chain_id),
        chain_contract_address=os.environ.get(
            "CHAIN_CONTRACT_ADDRESS", defaults.chain_contract_address
        ),
        chain_confirmations=_env_int("CHAIN_CONFIRMATIONS", defaults.chain_confirmations),
        chain_receipt_timeout_seconds=_env_int(
            "CHAIN_RECEIPT_TIMEOUT_SECONDS", defaults.chain_receipt_timeout_seconds
        ),
        http_timeout_seconds=_env_int("HTTP_TIMEOUT_SECONDS", defaults.http_timeout_seconds),
    )

    if settings.nightly_rate_cents <= 0 or settings.fixed_deposit_cents <= 0:
        raise RuntimeError("NIGHTLY_RATE_CENTS and FIXED_DEPOSIT_CENTS must be positive")

    return settings
