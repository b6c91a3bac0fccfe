"""On-chain rail: guest-signed payable contract calls confirmed by block depth.

The fiat amount is converted to the token amount at initiation time with
the ledger's current rate; nothing is locked between a quote and a send.
The rail prepares the transaction, the guest's wallet signs and sends it,
and the returned hash comes back through ``confirm``.
"""

from __future__ import annotations

from typing import Callable

from splitstay.chain.ledger import PaymentLedger
from splitstay.domain.errors import RailRejectedError
from splitstay.domain.pricing import PaymentPhase
from splitstay.observability.logging import get_logger
from splitstay.observability.redaction import safe_log_context
from splitstay.rails.base import (
    ConfirmationMode,
    ConfirmationStatus,
    LedgerEntry,
    PaymentContext,
    RailInitiation,
)

logger = get_logger(__name__)


class OnChainRail:
    """Rail over a PaymentLedger.

    Exposes ``get_ledger_entry`` so the orchestrator can refuse to prepare a
    second transfer for a phase the ledger already records.

    Args:
        ledger: Contract gateway.
        wallet_provider: Returns the guest's connected wallet address, or
            None when no wallet is connected.
    """

    name = "crypto"
    confirmation_mode = ConfirmationMode.WALLET

    def __init__(self, ledger: PaymentLedger, wallet_provider: Callable[[], str | None]) -> None:
        self._ledger = ledger
        self._wallet_provider = wallet_provider

    def _wallet(self) -> str:
        wallet = self._wallet_provider()
        if not wallet:
            raise RailRejectedError("Connect a wallet to pay on-chain")
        return wallet

    def get_ledger_entry(self, booking_id: str) -> LedgerEntry | None:
        return self._ledger.get_entry(booking_id)

    def initiate(
        self,
        amount_cents: int,
        booking_id: str,
        *,
        phase: PaymentPhase,
        context: PaymentContext,
    ) -> RailInitiation:
        payer = self._wallet()
        token_amount = self._ledger.token_amount_for(amount_cents)
        transaction = self._ledger.build_payment(booking_id, phase, token_amount, payer)
        logger.info(
            "on-chain payment prepared",
            extra={
                "extra_fields": safe_log_context(
                    booking_id=booking_id,
                    phase=phase,
                    amount_cents=amount_cents,
                    token_amount=str(token_amount),
                    wallet=payer,
                )
            },
        )
        return RailInitiation(
            mode=self.confirmation_mode,
            transaction=transaction,
            token_amount=token_amount,
        )

    def confirm(
        self,
        reference: str,
        *,
        phase: PaymentPhase,
        booking_id: str,
        amount_cents: int,
    ) -> ConfirmationStatus:
        return self._ledger.verify_payment(
            reference, booking_id=booking_id, phase=phase, payer=self._wallet()
        )
