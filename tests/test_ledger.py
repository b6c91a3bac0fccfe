"""Tests for the on-chain payment ledger gateway (node mocked)."""

from unittest.mock import MagicMock, PropertyMock

import pytest
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from splitstay.chain.ledger import Web3PaymentLedger, booking_key
from splitstay.domain.errors import RailNetworkError, RailRejectedError
from splitstay.domain.pricing import PaymentPhase
from splitstay.rails.base import ConfirmationStatus

CONTRACT = "0x" + "12" * 20
PAYER = "0x" + "ab" * 20
ZERO = "0x" + "00" * 20
OTHER = "0x" + "cd" * 20
CALLDATA = {"payDeposit": "0xd0d0" + "11" * 32, "payBalance": "0xba1a" + "11" * 32}


def _ledger(**kwargs):
    w3 = MagicMock()
    contract = MagicMock()
    contract.encode_abi.side_effect = lambda fn_name, args: CALLDATA[fn_name]
    w3.eth.contract.return_value = contract
    w3.eth.chain_id = 80002
    w3.eth.gas_price = 30
    w3.eth.get_balance.return_value = 10**21
    ledger = Web3PaymentLedger(
        w3, contract_address=CONTRACT, sleep=lambda s: None, **kwargs
    )
    return ledger, w3, contract


def _payment_row(deposit_paid=True, balance_paid=False, payer=PAYER):
    return (payer, 10**16, 0, 0, 1_772_355_600, 0, 0, deposit_paid, balance_paid, 10**16)


class TestBookingKey:
    def test_keccak_of_booking_id(self):
        assert booking_key("b1") == Web3.keccak(text="b1")


class TestGetEntry:
    def test_reads_payment(self):
        ledger, _, contract = _ledger()
        contract.functions.getPayment.return_value.call.return_value = _payment_row()

        entry = ledger.get_entry("b1")

        assert entry.deposit_paid
        assert not entry.balance_paid
        assert entry.deposit_amount == 10**16
        assert entry.payer == PAYER
        contract.functions.getPayment.assert_called_once_with(booking_key("b1"))

    def test_unknown_booking_reverts(self):
        ledger, _, contract = _ledger()
        contract.functions.getPayment.return_value.call.side_effect = ContractLogicError(
            "execution reverted: Booking does not exist"
        )
        assert ledger.get_entry("b1") is None

    def test_zero_payer_means_no_record(self):
        ledger, _, contract = _ledger()
        contract.functions.getPayment.return_value.call.return_value = _payment_row(
            deposit_paid=False, payer=ZERO
        )
        assert ledger.get_entry("b1") is None

    def test_node_unreachable(self):
        ledger, _, contract = _ledger()
        contract.functions.getPayment.return_value.call.side_effect = OSError("refused")
        with pytest.raises(RailNetworkError):
            ledger.get_entry("b1")


class TestTokenAmount:
    def test_converts_at_current_rate(self):
        ledger, _, contract = _ledger()
        contract.functions.maticPerUSD.return_value.call.return_value = 2 * 10**15
        assert ledger.token_amount_for(500) == 10**16

    def test_rate_read_every_time(self):
        ledger, _, contract = _ledger()
        contract.functions.maticPerUSD.return_value.call.side_effect = [10**15, 3 * 10**15]
        assert ledger.token_amount_for(100) == 10**15
        assert ledger.token_amount_for(100) == 3 * 10**15


class TestBuildPayment:
    def _prepare(self, contract, fn_name="payDeposit"):
        fn = getattr(contract.functions, fn_name).return_value
        fn.estimate_gas.return_value = 100_000
        return fn

    def test_unsigned_transaction_for_guest_wallet(self):
        ledger, w3, contract = _ledger()
        fn = self._prepare(contract)

        tx = ledger.build_payment("b1", PaymentPhase.DEPOSIT, 10**16, PAYER)

        contract.functions.payDeposit.assert_called_once_with(booking_key("b1"))
        fn.estimate_gas.assert_called_once_with({"from": PAYER, "value": 10**16})
        w3.eth.get_balance.assert_called_once_with(PAYER)
        assert tx == {
            "from": PAYER,
            "to": Web3.to_checksum_address(CONTRACT),
            "data": CALLDATA["payDeposit"],
            "value": hex(10**16),
            "gas": hex(150_000),
            "chainId": hex(80002),
        }
        w3.eth.send_raw_transaction.assert_not_called()

    def test_balance_uses_pay_balance(self):
        ledger, _, contract = _ledger()
        self._prepare(contract, "payBalance")

        tx = ledger.build_payment("b1", PaymentPhase.BALANCE, 10**16, PAYER)

        contract.functions.payBalance.assert_called_once_with(booking_key("b1"))
        assert tx["data"] == CALLDATA["payBalance"]

    def test_wrong_chain(self):
        ledger, w3, contract = _ledger()
        w3.eth.chain_id = 1
        with pytest.raises(RailRejectedError, match="Wrong network"):
            ledger.build_payment("b1", PaymentPhase.DEPOSIT, 10**16, PAYER)
        contract.functions.payDeposit.return_value.estimate_gas.assert_not_called()

    def test_insufficient_funds(self):
        ledger, w3, contract = _ledger()
        self._prepare(contract)
        w3.eth.get_balance.return_value = 10**16  # no room for gas
        with pytest.raises(RailRejectedError, match="Insufficient"):
            ledger.build_payment("b1", PaymentPhase.DEPOSIT, 10**16, PAYER)

    def test_contract_would_revert(self):
        ledger, _, contract = _ledger()
        fn = self._prepare(contract)
        fn.estimate_gas.side_effect = ContractLogicError("execution reverted: Deposit already paid")
        with pytest.raises(RailRejectedError):
            ledger.build_payment("b1", PaymentPhase.DEPOSIT, 10**16, PAYER)

    def test_node_unreachable(self):
        ledger, w3, _ = _ledger()
        w3.eth.get_balance.side_effect = OSError("refused")
        with pytest.raises(RailNetworkError):
            ledger.build_payment("b1", PaymentPhase.DEPOSIT, 10**16, PAYER)


class TestVerifyPayment:
    def _mined(self, w3, contract, *, status=1, sender=PAYER, to=CONTRACT, fn_name="payDeposit", row=None):
        w3.eth.wait_for_transaction_receipt.return_value = {"status": status, "blockNumber": 100}
        w3.eth.get_transaction.return_value = {
            "from": sender,
            "to": Web3.to_checksum_address(to),
            "input": bytes.fromhex(CALLDATA[fn_name][2:]),
        }
        w3.eth.block_number = 101
        contract.functions.getPayment.return_value.call.return_value = row or _payment_row()

    def _verify(self, ledger, phase=PaymentPhase.DEPOSIT, payer=PAYER):
        return ledger.verify_payment("0xabc", booking_id="b1", phase=phase, payer=payer)

    def test_paid_after_confirmations(self):
        ledger, w3, contract = _ledger(confirmations=2)
        self._mined(w3, contract)
        assert self._verify(ledger) is ConfirmationStatus.PAID

    def test_payer_compared_case_insensitively(self):
        ledger, w3, contract = _ledger()
        self._mined(w3, contract, sender=PAYER.upper().replace("0X", "0x"))
        assert self._verify(ledger) is ConfirmationStatus.PAID

    def test_reverted(self):
        ledger, w3, contract = _ledger()
        self._mined(w3, contract, status=0)
        assert self._verify(ledger) is ConfirmationStatus.FAILED

    def test_no_receipt_in_time(self):
        ledger, w3, _ = _ledger()
        w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("no receipt")
        assert self._verify(ledger) is ConfirmationStatus.PENDING

    def test_sent_by_another_wallet(self):
        ledger, w3, contract = _ledger()
        self._mined(w3, contract, sender=OTHER)
        with pytest.raises(RailRejectedError):
            self._verify(ledger)

    def test_sent_to_another_contract(self):
        ledger, w3, contract = _ledger()
        self._mined(w3, contract, to=OTHER)
        with pytest.raises(RailRejectedError):
            self._verify(ledger)

    def test_deposit_transaction_does_not_pay_balance(self):
        ledger, w3, contract = _ledger()
        self._mined(w3, contract, row=_payment_row(deposit_paid=True, balance_paid=True))
        with pytest.raises(RailRejectedError):
            self._verify(ledger, phase=PaymentPhase.BALANCE)

    def test_ledger_payer_must_be_guest(self):
        ledger, w3, contract = _ledger()
        self._mined(w3, contract, row=_payment_row(payer=OTHER))
        with pytest.raises(RailRejectedError):
            self._verify(ledger)

    def test_ledger_without_the_phase(self):
        ledger, w3, contract = _ledger()
        self._mined(w3, contract, row=_payment_row(deposit_paid=False))
        with pytest.raises(RailRejectedError):
            self._verify(ledger)

    def test_stalled_node_gives_up_waiting_for_depth(self):
        sleeps = []
        ledger, w3, contract = _ledger(confirmations=3, receipt_timeout=5)
        ledger._sleep = sleeps.append
        self._mined(w3, contract)
        w3.eth.block_number = 100

        assert self._verify(ledger) is ConfirmationStatus.PENDING
        assert len(sleeps) == 5

    def test_depth_reached_while_waiting(self):
        ledger, w3, contract = _ledger(confirmations=3)
        self._mined(w3, contract)
        type(w3.eth).block_number = PropertyMock(side_effect=[100, 101, 102])

        assert self._verify(ledger) is ConfirmationStatus.PAID

    def test_node_lost_while_waiting_for_depth(self):
        ledger, w3, contract = _ledger(confirmations=3)
        self._mined(w3, contract)
        type(w3.eth).block_number = PropertyMock(side_effect=OSError("refused"))

        with pytest.raises(RailNetworkError):
            self._verify(ledger)
