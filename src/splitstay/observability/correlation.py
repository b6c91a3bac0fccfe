"""Correlation and booking context for request tracing."""

import uuid
from contextvars import ContextVar, Token

# Context variables - accessible across nested calls within one request
correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
booking_id_var: ContextVar[str] = ContextVar("booking_id", default="")

CORRELATION_ID_HEADER = "X-Correlation-ID"


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return str(uuid.uuid4())


def get_correlation_id() -> str:
    """Get current correlation ID from context."""
    return correlation_id_var.get()


def set_correlation_id(cid: str) -> Token[str]:
    """Set correlation ID in context."""
    return correlation_id_var.set(cid)


def reset_correlation_id(token: Token[str]) -> None:
    """Reset correlation ID to previous value."""
    correlation_id_var.reset(token)


def get_booking_id() -> str:
    """Get the booking ID bound to the current payment flow, if any."""
    return booking_id_var.get()


def bind_booking_id(booking_id: str) -> Token[str]:
    """Bind a booking ID so every log line of the flow carries it."""
    return booking_id_var.set(booking_id)


def unbind_booking_id(token: Token[str]) -> None:
    """Restore the booking ID binding that was active before bind_booking_id."""
    booking_id_var.reset(token)
