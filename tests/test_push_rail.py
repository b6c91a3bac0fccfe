"""Tests for the push-payment rail (payments backend mocked)."""

from datetime import date
from unittest.mock import MagicMock

import pytest
import requests

from splitstay.domain.errors import AuthExpiredError, RailNetworkError, RailRejectedError
from splitstay.domain.pricing import PaymentPhase
from splitstay.rails.base import ConfirmationMode, ConfirmationStatus, PaymentContext
from splitstay.rails.push import PushPaymentRail, normalize_phone

CONTEXT = PaymentContext(
    unit_id="u1",
    check_in=date(2026, 3, 10),
    checkout=date(2026, 3, 13),
    guest_phone="0712 345 678",
)


def _response(status_code=200, body=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body if body is not None else {}
    return response


def _rail(response=None, token="guest-token"):
    http = MagicMock()
    http.request.return_value = response or _response()
    rail = PushPaymentRail("https://pay.example.com/", lambda: token, http=http)
    return rail, http


class TestNormalizePhone:
    @pytest.mark.parametrize(
        "raw",
        ["0712345678", "254712345678", "712345678", "+254712345678", "0712 345 678"],
    )
    def test_variants(self, raw):
        assert normalize_phone(raw) == "+254712345678"

    def test_other_country_code(self):
        assert normalize_phone("0803123456", "234") == "+234803123456"

    def test_empty_rejected(self):
        with pytest.raises(RailRejectedError):
            normalize_phone("  ")


class TestInitiate:
    def test_deposit_request(self):
        rail, http = _rail(_response(200, {"bookingId": "b1", "status": "pending"}))

        initiation = rail.initiate(500, "b1", phase=PaymentPhase.DEPOSIT, context=CONTEXT)

        assert initiation.mode is ConfirmationMode.POLL
        assert initiation.reference == "b1"

        args, kwargs = http.request.call_args
        assert args == ("POST", "https://pay.example.com/api/payments/mpesa/initiate")
        assert kwargs["json"] == {
            "bookingId": "b1",
            "unitId": "u1",
            "startDate": "2026-03-10",
            "endDate": "2026-03-13",
            "amountCents": 500,
            "currency": "KES",
            "guestPhone": "+254712345678",
        }
        assert kwargs["headers"]["Authorization"] == "Bearer guest-token"
        assert kwargs["timeout"] == 15

    def test_balance_request(self):
        rail, http = _rail()

        rail.initiate(1900, "b1", phase=PaymentPhase.BALANCE, context=CONTEXT)

        args, kwargs = http.request.call_args
        assert args[1].endswith("/api/payments/mpesa/balance")
        assert kwargs["json"] == {
            "bookingId": "b1",
            "amountCents": 1900,
            "guestPhone": "+254712345678",
        }

    def test_missing_phone(self):
        rail, http = _rail()
        context = PaymentContext(unit_id="u1", check_in=date(2026, 3, 10), checkout=date(2026, 3, 13))

        with pytest.raises(RailRejectedError):
            rail.initiate(500, "b1", phase=PaymentPhase.DEPOSIT, context=context)
        http.request.assert_not_called()

    def test_declined(self):
        rail, _ = _rail(_response(400, {"error": "Insufficient funds"}))
        with pytest.raises(RailRejectedError, match="Insufficient funds"):
            rail.initiate(500, "b1", phase=PaymentPhase.DEPOSIT, context=CONTEXT)

    def test_unauthorized(self):
        rail, _ = _rail(_response(401))
        with pytest.raises(AuthExpiredError):
            rail.initiate(500, "b1", phase=PaymentPhase.DEPOSIT, context=CONTEXT)

    def test_server_error(self):
        rail, _ = _rail(_response(503))
        with pytest.raises(RailNetworkError):
            rail.initiate(500, "b1", phase=PaymentPhase.DEPOSIT, context=CONTEXT)

    def test_unreachable(self):
        rail, http = _rail()
        http.request.side_effect = requests.ConnectionError("refused")
        with pytest.raises(RailNetworkError):
            rail.initiate(500, "b1", phase=PaymentPhase.DEPOSIT, context=CONTEXT)


class TestConfirm:
    def test_paid_deposit(self):
        rail, http = _rail(_response(200, {"booking": {"depositPaid": True}}))

        assert rail.confirm("b1", phase=PaymentPhase.DEPOSIT, booking_id="b1", amount_cents=500) is ConfirmationStatus.PAID
        args, _ = http.request.call_args
        assert args == ("GET", "https://pay.example.com/api/payments/mpesa/status/b1")

    def test_deposit_paid_balance_pending(self):
        rail, _ = _rail(_response(200, {"booking": {"depositPaid": True, "balancePaid": False}}))
        assert rail.confirm("b1", phase=PaymentPhase.BALANCE, booking_id="b1", amount_cents=1900) is ConfirmationStatus.PENDING

    def test_cancelled(self):
        rail, _ = _rail(_response(200, {"booking": {"paymentStatus": "cancelled"}}))
        assert rail.confirm("b1", phase=PaymentPhase.DEPOSIT, booking_id="b1", amount_cents=500) is ConfirmationStatus.FAILED

    def test_status_for_another_booking_rejected(self):
        rail, _ = _rail(_response(200, {"booking": {"bookingId": "b2", "depositPaid": True}}))
        with pytest.raises(RailRejectedError):
            rail.confirm("b2", phase=PaymentPhase.DEPOSIT, booking_id="b1", amount_cents=500)
