"""Stay pricing: flat nightly rate plus a fixed deposit.

MVP: one currency, no seasonal rates, no taxes.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from splitstay.domain.errors import InvalidRangeError

DEFAULT_NIGHTLY_RATE_CENTS = 800
DEFAULT_FIXED_DEPOSIT_CENTS = 500


class PaymentType(str, Enum):
    DEPOSIT = "DEPOSIT"
    FULL = "FULL"


class PaymentPhase(str, Enum):
    """Which installment a money movement settles."""

    DEPOSIT = "deposit"
    BALANCE = "balance"


@dataclass(frozen=True)
class PaymentState:
    """Amounts for one draft, in minor units.

    balance_amount_cents is always max(full - deposit, 0), whatever the
    payment type: a pay-in-full booking still records the deposit/balance
    split for downstream accounting.
    """

    nights: int
    full_amount_cents: int
    deposit_amount_cents: int
    balance_amount_cents: int
    payment_type: PaymentType
    amount_to_pay_now_cents: int

    @property
    def balance_due_later_cents(self) -> int:
        """Balance left after the now-payment (zero when paying in full)."""
        if self.payment_type is PaymentType.FULL:
            return 0
        return self.balance_amount_cents

    def leg_amount_cents(self, phase: PaymentPhase) -> int:
        """Amount charged by a single rail leg."""
        if phase is PaymentPhase.DEPOSIT:
            return self.deposit_amount_cents
        return self.balance_amount_cents

    def as_dict(self) -> dict:
        return {
            "nights": self.nights,
            "fullAmountCents": self.full_amount_cents,
            "depositAmountCents": self.deposit_amount_cents,
            "balanceAmountCents": self.balance_amount_cents,
            "paymentType": self.payment_type.value,
            "amountToPayNowCents": self.amount_to_pay_now_cents,
        }


def price(
    nights: int,
    payment_type: PaymentType,
    *,
    nightly_rate_cents: int = DEFAULT_NIGHTLY_RATE_CENTS,
    fixed_deposit_cents: int = DEFAULT_FIXED_DEPOSIT_CENTS,
) -> PaymentState:
    """Price a stay.

    Pure and deterministic: the same inputs always produce an equal
    PaymentState, which lets a reloaded draft detect drift by comparison.

    Args:
        nights: Number of nights (at least one).
        payment_type: Pay the deposit now, or the full amount now.
        nightly_rate_cents: Flat per-night rate.
        fixed_deposit_cents: Fixed first installment.

    Raises:
        InvalidRangeError: If nights is less than one.
    """
    if nights < 1:
        raise InvalidRangeError("Minimum 1 night required", meta={"nights": nights})

    payment_type = PaymentType(payment_type)
    full_amount = nights * nightly_rate_cents
    balance_amount = max(full_amount - fixed_deposit_cents, 0)

    if payment_type is PaymentType.FULL:
        amount_now = full_amount
    else:
        amount_now = fixed_deposit_cents

    return PaymentState(
        nights=nights,
        full_amount_cents=full_amount,
        deposit_amount_cents=fixed_deposit_cents,
        balance_amount_cents=balance_amount,
        payment_type=payment_type,
        amount_to_pay_now_cents=amount_now,
    )
