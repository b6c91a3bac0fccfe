"""Per-guest session surface.

Keys persisted in the backing store:

    userToken              bearer token issued by the booking service
    walletAddress          connected wallet address, if any
    pendingCheckoutBooking JSON snapshot of a redirect in flight (TTL)
    calendarMonthOffset    month the calendar widget is showing
    lastTransactionAt      epoch seconds of the last rail-initiating action

The store is any MutableMapping (a plain dict in tests, a server-side
session in the HTTP layer). The token is re-checked for expiry before
every privileged action.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, MutableMapping

import jwt

from splitstay.domain.errors import AuthExpiredError
from splitstay.infra.time import utc_now
from splitstay.observability.logging import get_logger
from splitstay.observability.redaction import safe_log_context

logger = get_logger(__name__)

TOKEN_KEY = "userToken"
WALLET_KEY = "walletAddress"
PENDING_CHECKOUT_KEY = "pendingCheckoutBooking"
MONTH_OFFSET_KEY = "calendarMonthOffset"
LAST_TRANSACTION_KEY = "lastTransactionAt"

DEFAULT_PENDING_TTL_SECONDS = 600


@dataclass(frozen=True)
class PendingCheckout:
    """Snapshot needed to resume a draft after a hosted-checkout redirect."""

    booking_id: str
    unit_id: str
    check_in: str
    checkout: str
    payment_type: str
    phase: str
    rail: str
    reference: str | None
    timestamp: float

    def to_json(self) -> str:
        data = asdict(self)
        return json.dumps(
            {
                "bookingId": data["booking_id"],
                "unitId": data["unit_id"],
                "checkIn": data["check_in"],
                "checkout": data["checkout"],
                "paymentType": data["payment_type"],
                "phase": data["phase"],
                "rail": data["rail"],
                "reference": data["reference"],
                "timestamp": data["timestamp"],
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "PendingCheckout":
        data = json.loads(raw)
        return cls(
            booking_id=data["bookingId"],
            unit_id=data["unitId"],
            check_in=data["checkIn"],
            checkout=data["checkout"],
            payment_type=data["paymentType"],
            phase=data["phase"],
            rail=data["rail"],
            reference=data.get("reference"),
            timestamp=float(data["timestamp"]),
        )


class GuestSession:
    """Session accessors with token expiry and pending-checkout TTL checks.

    Args:
        store: Backing mapping; a fresh dict when omitted.
        clock: Returns the current aware UTC datetime.
        pending_ttl_seconds: Lifetime of a pending checkout snapshot.
    """

    def __init__(
        self,
        store: MutableMapping[str, str] | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        pending_ttl_seconds: int = DEFAULT_PENDING_TTL_SECONDS,
    ) -> None:
        self._store: MutableMapping[str, str] = store if store is not None else {}
        self._clock = clock
        self._pending_ttl = timedelta(seconds=pending_ttl_seconds)

    @property
    def store(self) -> MutableMapping[str, str]:
        return self._store

    # Token

    @property
    def token(self) -> str | None:
        return self._store.get(TOKEN_KEY) or None

    def set_token(self, token: str | None) -> None:
        if token:
            self._store[TOKEN_KEY] = token
        else:
            self._store.pop(TOKEN_KEY, None)

    def require_valid_token(self) -> str:
        """Return the token if present and unexpired.

        The signature is verified by the booking service; here only the
        ``exp`` claim is checked so an expired session fails before any
        payment is attempted.

        Raises:
            AuthExpiredError: Token missing, malformed or expired.
        """
        token = self.token
        if not token:
            raise AuthExpiredError("Please log in to continue")

        try:
            claims = jwt.decode(token, options={"verify_signature": False})
        except jwt.PyJWTError as e:
            self.set_token(None)
            raise AuthExpiredError("Session token is invalid, please log in again") from e

        exp = claims.get("exp")
        if exp is not None and float(exp) < self._clock().timestamp():
            logger.info("session token expired")
            self.set_token(None)
            raise AuthExpiredError("Session expired, please log in again")
        return token

    # Wallet

    @property
    def wallet_address(self) -> str | None:
        return self._store.get(WALLET_KEY) or None

    def set_wallet_address(self, address: str | None) -> None:
        if address:
            self._store[WALLET_KEY] = address
        else:
            self._store.pop(WALLET_KEY, None)

    # Calendar month offset

    @property
    def month_offset(self) -> int:
        raw = self._store.get(MONTH_OFFSET_KEY)
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            return 0

    def set_month_offset(self, offset: int) -> None:
        self._store[MONTH_OFFSET_KEY] = str(offset)

    # Transaction cooldown

    @property
    def last_transaction_at(self) -> float | None:
        raw = self._store.get(LAST_TRANSACTION_KEY)
        try:
            return float(raw) if raw is not None else None
        except ValueError:
            return None

    def mark_transaction(self, at: float) -> None:
        self._store[LAST_TRANSACTION_KEY] = str(at)

    # Pending checkout

    def remember_pending_checkout(self, pending: PendingCheckout) -> None:
        self._store[PENDING_CHECKOUT_KEY] = pending.to_json()
        logger.info(
            "pending checkout saved",
            extra={
                "extra_fields": safe_log_context(booking_id=pending.booking_id, phase=pending.phase)
            },
        )

    def peek_pending_checkout(self) -> PendingCheckout | None:
        """Return the pending checkout if present and younger than the TTL.

        Expired or unreadable snapshots are discarded.
        """
        raw = self._store.get(PENDING_CHECKOUT_KEY)
        if not raw:
            return None
        try:
            pending = PendingCheckout.from_json(raw)
        except (ValueError, KeyError, TypeError):
            logger.warning("discarding unreadable pending checkout")
            self._store.pop(PENDING_CHECKOUT_KEY, None)
            return None

        age = self._clock().timestamp() - pending.timestamp
        if age > self._pending_ttl.total_seconds():
            logger.info(
                "pending checkout expired",
                extra={"extra_fields": safe_log_context(booking_id=pending.booking_id)},
            )
            self._store.pop(PENDING_CHECKOUT_KEY, None)
            return None
        return pending

    def pop_pending_checkout(self) -> PendingCheckout | None:
        pending = self.peek_pending_checkout()
        self._store.pop(PENDING_CHECKOUT_KEY, None)
        return pending

    def clear_pending_checkout(self) -> None:
        self._store.pop(PENDING_CHECKOUT_KEY, None)
