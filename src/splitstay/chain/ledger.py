"""On-chain payment ledger gateway (web3.py).

The payment contract keeps one record per booking, keyed by
keccak256(booking_id):

    getPayment(bytes32) -> (renter, depositAmount, balanceAmount,
        refundedAmount, depositPaidAt, balancePaidAt, lastRefundAt,
        depositPaid, balancePaid, remainingRefundable)

It reverts with "Booking does not exist" for unknown bookings. The
contract's ``maticPerUSD`` rate is read when a payment is built and never
cached, so two payments for the same fiat amount can carry different token
amounts.

The server holds no key. Payments are built unsigned for the guest's own
wallet; the hash the wallet returns is verified against the receipt, the
calldata and the contract record before a leg counts as paid.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Protocol

from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound

from splitstay.domain.errors import RailNetworkError, RailRejectedError
from splitstay.domain.pricing import PaymentPhase
from splitstay.observability.logging import get_logger
from splitstay.observability.redaction import safe_log_context
from splitstay.rails.base import ConfirmationStatus, LedgerEntry

logger = get_logger(__name__)

PAYMENT_CONTRACT_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "getPayment",
        "stateMutability": "view",
        "inputs": [{"name": "bookingId", "type": "bytes32"}],
        "outputs": [
            {"name": "renter", "type": "address"},
            {"name": "depositAmount", "type": "uint256"},
            {"name": "balanceAmount", "type": "uint256"},
            {"name": "refundedAmount", "type": "uint256"},
            {"name": "depositPaidAt", "type": "uint256"},
            {"name": "balancePaidAt", "type": "uint256"},
            {"name": "lastRefundAt", "type": "uint256"},
            {"name": "depositPaid", "type": "bool"},
            {"name": "balancePaid", "type": "bool"},
            {"name": "remainingRefundable", "type": "uint256"},
        ],
    },
    {
        "type": "function",
        "name": "maticPerUSD",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "payDeposit",
        "stateMutability": "payable",
        "inputs": [{"name": "bookingId", "type": "bytes32"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "payBalance",
        "stateMutability": "payable",
        "inputs": [{"name": "bookingId", "type": "bytes32"}],
        "outputs": [],
    },
]

_UNKNOWN_BOOKING = "Booking does not exist"


def booking_key(booking_id: str) -> bytes:
    """Contract key for a booking: keccak256 of the UTF-8 booking ID."""
    return Web3.keccak(text=booking_id)


def payment_function(phase: PaymentPhase) -> str:
    return "payDeposit" if PaymentPhase(phase) is PaymentPhase.DEPOSIT else "payBalance"


def _same_address(a: str | None, b: str | None) -> bool:
    return a is not None and b is not None and a.lower() == b.lower()


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return Web3.to_bytes(hexstr=value)


class PaymentLedger(Protocol):
    """Gateway to an authoritative per-booking payment ledger."""

    def get_entry(self, booking_id: str) -> LedgerEntry | None: ...

    def token_amount_for(self, amount_cents: int) -> int: ...

    def build_payment(
        self, booking_id: str, phase: PaymentPhase, token_amount: int, payer: str
    ) -> dict[str, Any]: ...

    def verify_payment(
        self, tx_hash: str, *, booking_id: str, phase: PaymentPhase, payer: str
    ) -> ConfirmationStatus: ...


class Web3PaymentLedger:
    """PaymentLedger over a JSON-RPC node and the booking payment contract.

    Args:
        w3: Connected Web3 instance.
        contract_address: Payment contract address.
        chain_id: Expected chain ID; payments on any other chain are refused.
        confirmations: Blocks a receipt must be buried under to count as paid.
        receipt_timeout: Max seconds to wait for a receipt, and separately
            for the confirmation depth.
        sleep: Wait function between confirmation-depth checks.
    """

    def __init__(
        self,
        w3: Web3,
        *,
        contract_address: str,
        chain_id: int = 80002,
        confirmations: int = 2,
        receipt_timeout: int = 180,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._w3 = w3
        self._contract_address = Web3.to_checksum_address(contract_address)
        self._contract = w3.eth.contract(address=self._contract_address, abi=PAYMENT_CONTRACT_ABI)
        self._chain_id = chain_id
        self._confirmations = confirmations
        self._receipt_timeout = receipt_timeout
        self._sleep = sleep

    @classmethod
    def from_rpc(cls, rpc_url: str, **kwargs: Any) -> "Web3PaymentLedger":
        return cls(Web3(Web3.HTTPProvider(rpc_url)), **kwargs)

    @property
    def contract_address(self) -> str:
        return self._contract_address

    def _ensure_chain(self) -> None:
        actual = self._w3.eth.chain_id
        if actual != self._chain_id:
            raise RailRejectedError(
                f"Wrong network: expected chain {self._chain_id}, got {actual}",
                meta={"expected": self._chain_id, "actual": actual},
            )

    def _payment_data(self, booking_id: str, phase: PaymentPhase) -> str:
        return self._contract.encode_abi(payment_function(phase), args=[booking_key(booking_id)])

    def _block_number(self) -> int:
        try:
            return self._w3.eth.block_number
        except (OSError, ValueError) as e:
            raise RailNetworkError("Ledger unreachable") from e

    def _wait_for_depth(self, block_number: int) -> bool:
        """Wait until ``block_number`` has the configured confirmations.

        Returns:
            False if the node did not reach the depth within receipt_timeout
            checks.
        """
        target = block_number + self._confirmations - 1
        for _ in range(self._receipt_timeout):
            if self._block_number() >= target:
                return True
            self._sleep(1.0)
        return self._block_number() >= target

    def get_entry(self, booking_id: str) -> LedgerEntry | None:
        """Read the contract record for a booking.

        Returns:
            LedgerEntry, or None if the contract has no record for it.

        Raises:
            RailNetworkError: If the node cannot be queried.
        """
        try:
            raw = self._contract.functions.getPayment(booking_key(booking_id)).call()
        except ContractLogicError as e:
            if _UNKNOWN_BOOKING in str(e):
                return None
            raise RailNetworkError("Ledger read reverted") from e
        except (OSError, ValueError) as e:
            raise RailNetworkError("Ledger unreachable") from e

        payer = raw[0]
        if int(payer, 16) == 0 and not raw[7]:
            return None
        return LedgerEntry(
            deposit_paid=bool(raw[7]),
            balance_paid=bool(raw[8]),
            deposit_amount=int(raw[1]),
            balance_amount=int(raw[2]),
            payer=payer,
        )

    def token_amount_for(self, amount_cents: int) -> int:
        """Convert a fiat amount (minor units) to wei at the current rate."""
        try:
            wei_per_unit = int(self._contract.functions.maticPerUSD().call())
        except (ContractLogicError, OSError, ValueError) as e:
            raise RailNetworkError("Could not read the conversion rate") from e
        return wei_per_unit * amount_cents // 100

    def build_payment(
        self, booking_id: str, phase: PaymentPhase, token_amount: int, payer: str
    ) -> dict[str, Any]:
        """Build the unsigned payDeposit / payBalance call for the guest's wallet.

        Quantities are 0x-hex, ready for ``eth_sendTransaction``.

        Raises:
            RailRejectedError: Wrong chain, insufficient funds, or the
                contract would revert.
            RailNetworkError: The node could not be reached.
        """
        self._ensure_chain()

        fn = getattr(self._contract.functions, payment_function(phase))(booking_key(booking_id))
        try:
            funds = self._w3.eth.get_balance(payer)
            gas = fn.estimate_gas({"from": payer, "value": token_amount})
            gas_price = self._w3.eth.gas_price
        except ContractLogicError as e:
            raise RailRejectedError("Transaction would fail on the payment contract") from e
        except (OSError, ValueError) as e:
            raise RailNetworkError("Ledger unreachable") from e

        if funds < token_amount + gas * gas_price:
            raise RailRejectedError(
                "Insufficient wallet balance",
                meta={"needed": token_amount + gas * gas_price, "available": funds},
            )

        logger.info(
            "ledger payment built",
            extra={
                "extra_fields": safe_log_context(
                    booking_id=booking_id, phase=phase, wallet=payer, token_amount=str(token_amount)
                )
            },
        )
        return {
            "from": payer,
            "to": self._contract_address,
            "data": self._payment_data(booking_id, phase),
            "value": Web3.to_hex(token_amount),
            "gas": Web3.to_hex(gas + 50_000),
            "chainId": Web3.to_hex(self._chain_id),
        }

    def verify_payment(
        self, tx_hash: str, *, booking_id: str, phase: PaymentPhase, payer: str
    ) -> ConfirmationStatus:
        """Check that ``tx_hash`` is this booking's payment for ``phase``.

        Returns:
            PAID once the transaction is buried under ``confirmations``
            blocks and the contract records the phase for ``payer``; FAILED
            on a reverted receipt; PENDING if no receipt or depth arrived in
            time.

        Raises:
            RailRejectedError: The transaction was sent by someone else, to
                another contract, or for another booking or phase.
            RailNetworkError: The node could not be reached.
        """
        phase = PaymentPhase(phase)
        try:
            receipt = self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._receipt_timeout
            )
        except (TimeExhausted, TransactionNotFound):
            return ConfirmationStatus.PENDING
        except (OSError, ValueError) as e:
            raise RailNetworkError("Ledger unreachable") from e

        if receipt["status"] != 1:
            return ConfirmationStatus.FAILED

        try:
            tx = self._w3.eth.get_transaction(tx_hash)
        except (OSError, ValueError) as e:
            raise RailNetworkError("Ledger unreachable") from e

        if (
            not _same_address(tx["from"], payer)
            or not _same_address(tx.get("to"), self._contract_address)
            or _as_bytes(tx["input"]) != _as_bytes(self._payment_data(booking_id, phase))
        ):
            logger.warning(
                "transaction is not the booking payment",
                extra={
                    "extra_fields": safe_log_context(
                        booking_id=booking_id, phase=phase, tx_hash=tx_hash, wallet=payer
                    )
                },
            )
            raise RailRejectedError("Transaction does not pay for this booking")

        if not self._wait_for_depth(receipt["blockNumber"]):
            return ConfirmationStatus.PENDING

        entry = self.get_entry(booking_id)
        paid = entry is not None and (
            entry.deposit_paid if phase is PaymentPhase.DEPOSIT else entry.balance_paid
        )
        if not paid or not _same_address(entry.payer, payer):
            raise RailRejectedError("Ledger does not record this payment")
        return ConfirmationStatus.PAID
