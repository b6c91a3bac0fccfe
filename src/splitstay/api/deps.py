"""Request-scoped wiring for the HTTP surface.

Everything the routes need is built here and injected with Depends, so
tests swap any piece through ``app.dependency_overrides``.

Guest session data lives server-side, keyed by a hash of the bearer token
(never the token itself). The registry lives on ``app.state``.
"""

from __future__ import annotations

import hashlib
import threading
import time
from collections import OrderedDict
from functools import lru_cache
from typing import Callable

import jwt
from fastapi import Depends, Header, Request

from splitstay.chain.ledger import Web3PaymentLedger
from splitstay.clients.booking_service import BookingServiceClient
from splitstay.domain.orchestrator import PaymentOrchestrator
from splitstay.infra.settings import Settings, load_settings
from splitstay.observability.logging import get_logger
from splitstay.rails.base import RailAdapter
from splitstay.rails.checkout import HostedCheckoutRail
from splitstay.rails.onchain import OnChainRail
from splitstay.rails.push import PushPaymentRail
from splitstay.session import GuestSession

logger = get_logger(__name__)

_ANONYMOUS = "anonymous"
DEFAULT_MAX_SESSIONS = 10_000


class SessionRegistry:
    """In-memory session stores keyed by token hash.

    A store is dropped once its token's ``exp`` has passed, and the least
    recently used store goes when more than ``max_sessions`` are held.

    Args:
        max_sessions: Upper bound on stores kept.
        clock: Returns the current epoch seconds.
    """

    def __init__(
        self,
        *,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._stores: OrderedDict[str, dict[str, str]] = OrderedDict()
        self._expiry: dict[str, float] = {}
        self._max_sessions = max_sessions
        self._clock = clock
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._stores)

    def store_for(self, token: str | None) -> dict[str, str]:
        key = hashlib.sha256(token.encode()).hexdigest() if token else _ANONYMOUS
        with self._lock:
            self._prune_expired()
            store = self._stores.get(key)
            if store is None:
                store = self._stores[key] = {}
                exp = _token_expiry(token)
                if exp is not None:
                    self._expiry[key] = exp
            self._stores.move_to_end(key)
            while len(self._stores) > self._max_sessions:
                evicted, _ = self._stores.popitem(last=False)
                self._expiry.pop(evicted, None)
            return store

    def _prune_expired(self) -> None:
        now = self._clock()
        for key in [k for k, exp in self._expiry.items() if exp <= now]:
            self._stores.pop(key, None)
            del self._expiry[key]

    def clear(self) -> None:
        with self._lock:
            self._stores.clear()
            self._expiry.clear()


def _token_expiry(token: str | None) -> float | None:
    if not token:
        return None
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    exp = claims.get("exp")
    return float(exp) if isinstance(exp, (int, float)) else None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


def get_session_registry(request: Request) -> SessionRegistry:
    """Get the app's session registry (allows override in tests)."""
    return request.app.state.session_registry


def _bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def get_guest_session(
    authorization: str | None = Header(default=None),
    x_wallet_address: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
    registry: SessionRegistry = Depends(get_session_registry),
) -> GuestSession:
    token = _bearer(authorization)
    session = GuestSession(
        registry.store_for(token),
        pending_ttl_seconds=settings.pending_checkout_ttl_seconds,
    )
    session.set_token(token)
    if x_wallet_address:
        session.set_wallet_address(x_wallet_address)
    return session


def get_booking_service(
    session: GuestSession = Depends(get_guest_session),
    settings: Settings = Depends(get_settings),
) -> BookingServiceClient:
    return BookingServiceClient(
        settings.booking_api_base,
        lambda: session.token,
        timeout=settings.http_timeout_seconds,
        tz_name=settings.timezone,
    )


def build_rails(settings: Settings, session: GuestSession) -> dict[str, RailAdapter]:
    """Build every rail the deployment is configured for.

    The on-chain rail is only offered when a contract address is configured;
    the guest signs with the wallet sent in X-Wallet-Address.
    """
    rails: dict[str, RailAdapter] = {
        PushPaymentRail.name: PushPaymentRail(
            settings.push_api_base,
            lambda: session.token,
            country_code=settings.phone_country_code,
            timeout=settings.http_timeout_seconds,
        ),
        HostedCheckoutRail.name: HostedCheckoutRail(
            return_url=settings.checkout_return_url,
            cancel_url=settings.checkout_cancel_url,
        ),
    }

    if settings.chain_contract_address:
        ledger = Web3PaymentLedger.from_rpc(
            settings.chain_rpc_url,
            contract_address=settings.chain_contract_address,
            chain_id=settings.chain_id,
            confirmations=settings.chain_confirmations,
            receipt_timeout=settings.chain_receipt_timeout_seconds,
        )
        rails[OnChainRail.name] = OnChainRail(ledger, lambda: session.wallet_address)
    return rails


def get_rails(
    session: GuestSession = Depends(get_guest_session),
    settings: Settings = Depends(get_settings),
) -> dict[str, RailAdapter]:
    return build_rails(settings, session)


def get_orchestrator(
    session: GuestSession = Depends(get_guest_session),
    booking_service: BookingServiceClient = Depends(get_booking_service),
    rails: dict[str, RailAdapter] = Depends(get_rails),
    settings: Settings = Depends(get_settings),
) -> PaymentOrchestrator:
    return PaymentOrchestrator(
        booking_service=booking_service,
        rails=rails,
        session=session,
        settings=settings,
    )
