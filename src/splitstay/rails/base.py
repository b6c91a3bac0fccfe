"""Common interface for payment rails.

The orchestrator only ever branches on ``confirmation_mode`` and on the
ledger capability (``LedgerRail``), never on a rail's name.

Confirmation modes:
- POLL: money moves out of band; the booking service flips the paid flag
  and the orchestrator polls for it.
- REDIRECT: the guest leaves for a hosted page and comes back through the
  checkout return callback.
- DIRECT: the transfer is confirmed synchronously by the rail itself.
- WALLET: the guest signs a prepared transaction in their own wallet and
  hands back the transaction hash, which the rail verifies.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from splitstay.domain.pricing import PaymentPhase


class ConfirmationMode(str, Enum):
    POLL = "POLL"
    REDIRECT = "REDIRECT"
    DIRECT = "DIRECT"
    WALLET = "WALLET"


class ConfirmationStatus(str, Enum):
    PAID = "PAID"
    PENDING = "PENDING"
    FAILED = "FAILED"


@dataclass(frozen=True)
class PaymentContext:
    """Guest and stay details some rails need to start a payment."""

    unit_id: str
    check_in: date
    checkout: date
    currency: str = "KES"
    guest_phone: str | None = None
    guest_email: str | None = None
    wallet_address: str | None = None


@dataclass(frozen=True)
class RailInitiation:
    """What a rail returned when a leg was started.

    Attributes:
        mode: Confirmation mode of the rail that produced this initiation.
        reference: Rail-side reference (push reference, checkout session ID).
        redirect_url: Hosted page the guest must visit (REDIRECT only).
        tx_hash: Transaction hash of a sent transfer (DIRECT only).
        transaction: Unsigned transaction for the guest to sign (WALLET only).
        token_amount: Amount in the rail's own unit (wei for on-chain),
            converted at initiation time.
    """

    mode: ConfirmationMode
    reference: str | None = None
    redirect_url: str | None = None
    tx_hash: str | None = None
    transaction: dict[str, Any] | None = None
    token_amount: int | None = None


@dataclass(frozen=True)
class LedgerEntry:
    """Per-booking payment record held by an on-chain ledger."""

    deposit_paid: bool = False
    balance_paid: bool = False
    deposit_amount: int = 0
    balance_amount: int = 0
    payer: str | None = None


@runtime_checkable
class RailAdapter(Protocol):
    name: str
    confirmation_mode: ConfirmationMode

    def initiate(
        self,
        amount_cents: int,
        booking_id: str,
        *,
        phase: PaymentPhase,
        context: PaymentContext,
    ) -> RailInitiation: ...

    def confirm(
        self,
        reference: str,
        *,
        phase: PaymentPhase,
        booking_id: str,
        amount_cents: int,
    ) -> ConfirmationStatus:
        """Report whether ``reference`` paid ``amount_cents`` for this booking and phase.

        Raises:
            RailRejectedError: The reference belongs to another booking,
                phase or amount.
        """
        ...


@runtime_checkable
class LedgerRail(Protocol):
    """Capability of rails backed by an authoritative ledger."""

    def get_ledger_entry(self, booking_id: str) -> LedgerEntry | None: ...
