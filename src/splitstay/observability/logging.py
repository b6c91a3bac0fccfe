"""Structured JSON logging with correlation and booking context.

Each line is one JSON object on stdout. The correlation ID of the current
request and the booking ID bound by the payment flow are attached
automatically; callers add their own fields with
``extra={"extra_fields": safe_log_context(...)}``.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from .correlation import get_booking_id, get_correlation_id

LOG_LEVEL_ENV = "SPLITSTAY_LOG_LEVEL"


class JsonFormatter(logging.Formatter):
    """JSON formatter that includes correlation ID and bound booking ID."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            log_obj["correlationId"] = correlation_id

        booking_id = get_booking_id()
        if booking_id:
            log_obj["bookingId"] = booking_id

        if record.exc_info:
            log_obj["errorType"] = record.exc_info[0].__name__ if record.exc_info[0] else None
            log_obj["exception"] = self.formatException(record.exc_info)

        extra_fields = getattr(record, "extra_fields", None)
        if extra_fields:
            log_obj.update(extra_fields)

        return json.dumps(log_obj, default=str)


def _level_from_env() -> int:
    name = os.environ.get(LOG_LEVEL_ENV, "INFO").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def get_logger(name: str) -> logging.Logger:
    """Get a logger configured for JSON output.

    The level comes from SPLITSTAY_LOG_LEVEL (default INFO); an unknown
    level name falls back to INFO.
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
        logger.setLevel(_level_from_env())
        logger.propagate = False

    return logger
