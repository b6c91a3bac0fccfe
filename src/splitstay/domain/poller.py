"""Bounded status polling against the booking service.

A poll waits, fetches the booking, and stops at the first of:
- predicate(record) is true          -> RESOLVED
- record reports cancelled / failed  -> FAILED
- max_attempts exhausted             -> TIMED_OUT (unknown, not a failure)
- caller set the cancel event        -> ABANDONED

A failed fetch counts as an attempt and polling continues.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from splitstay.domain.errors import NetworkError
from splitstay.domain.models import BookingRecord
from splitstay.observability.logging import get_logger
from splitstay.observability.redaction import safe_log_context

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 3.0
DEFAULT_MAX_ATTEMPTS = 40


class PollStatus(str, Enum):
    RESOLVED = "resolved"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class PollResult:
    status: PollStatus
    attempts: int
    record: BookingRecord | None = None


class ReconciliationPoller:
    """Fixed-interval poller.

    Args:
        fetch_status: Callable returning the current BookingRecord for an ID.
        interval_seconds: Default wait before each fetch.
        max_attempts: Default number of fetches.
        sleep: Wait function; defaults to waiting on the cancel event (or
            time.sleep when no event is given). Tests inject a no-op.
    """

    def __init__(
        self,
        fetch_status: Callable[[str], BookingRecord],
        *,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._fetch_status = fetch_status
        self._interval = interval_seconds
        self._max_attempts = max_attempts
        self._sleep = sleep

    def _wait(self, seconds: float, cancel_event: threading.Event | None) -> bool:
        """Wait one interval. Returns True if the caller abandoned polling."""
        if cancel_event is not None and cancel_event.is_set():
            return True
        if self._sleep is not None:
            self._sleep(seconds)
        elif cancel_event is not None:
            return cancel_event.wait(seconds)
        else:
            time.sleep(seconds)
        return cancel_event is not None and cancel_event.is_set()

    def poll(
        self,
        booking_id: str,
        predicate: Callable[[BookingRecord], bool],
        *,
        interval_seconds: float | None = None,
        max_attempts: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> PollResult:
        """Poll until the predicate holds, the booking fails, or attempts run out.

        Args:
            booking_id: Identifier passed to fetch_status.
            predicate: Success condition on the fetched record
                (e.g. ``lambda r: r.balance_paid``).
            interval_seconds: Override of the default interval.
            max_attempts: Override of the default attempt budget.
            cancel_event: Set by the caller to abandon polling.

        Returns:
            PollResult with the terminal status, attempts used and last record.
        """
        interval = self._interval if interval_seconds is None else interval_seconds
        budget = self._max_attempts if max_attempts is None else max_attempts
        last_record: BookingRecord | None = None

        for attempt in range(1, budget + 1):
            if self._wait(interval, cancel_event):
                logger.info(
                    "poll abandoned",
                    extra={"extra_fields": safe_log_context(booking_id=booking_id, attempt=attempt)},
                )
                return PollResult(PollStatus.ABANDONED, attempt - 1, last_record)

            try:
                record = self._fetch_status(booking_id)
            except NetworkError as e:
                logger.warning(
                    "poll attempt failed",
                    extra={
                        "extra_fields": safe_log_context(
                            booking_id=booking_id, attempt=attempt, error=e.code
                        )
                    },
                )
                continue

            last_record = record
            if predicate(record):
                logger.info(
                    "poll resolved",
                    extra={"extra_fields": safe_log_context(booking_id=booking_id, attempt=attempt)},
                )
                return PollResult(PollStatus.RESOLVED, attempt, record)

            if record.is_failed:
                logger.info(
                    "poll observed failed booking",
                    extra={
                        "extra_fields": safe_log_context(
                            booking_id=booking_id,
                            attempt=attempt,
                            status=record.status,
                            payment_status=record.payment_status,
                        )
                    },
                )
                return PollResult(PollStatus.FAILED, attempt, record)

        logger.warning(
            "poll timed out",
            extra={"extra_fields": safe_log_context(booking_id=booking_id, attempts=budget)},
        )
        return PollResult(PollStatus.TIMED_OUT, budget, last_record)
