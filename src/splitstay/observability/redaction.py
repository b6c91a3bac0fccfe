"""Redaction helpers for safe logging. Guest and wallet data must pass through these."""

import re
from enum import Enum
from typing import Any

# Patterns that should never appear in logs
_WALLET_PATTERN = re.compile(r"0x[a-fA-F0-9]{40,64}")
_PHONE_PATTERN = re.compile(r"(?<!\w)\+?\d[\d\s\-()]{8,}\d(?!\w)")
_EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_BEARER_PATTERN = re.compile(r"Bearer\s+\S+")

_REDACTED = "[REDACTED]"


def redact_string(value: str) -> str:
    """Redact PII and credential patterns from a string.

    Wallet addresses and transaction hashes are masked to their first six
    characters so log lines can still be correlated with a block explorer.
    """
    result = _BEARER_PATTERN.sub(f"Bearer {_REDACTED}", value)
    result = _WALLET_PATTERN.sub(lambda m: f"{m.group(0)[:6]}…", result)
    result = _PHONE_PATTERN.sub(_REDACTED, result)
    result = _EMAIL_PATTERN.sub(_REDACTED, result)
    return result


def redact_value(value: Any) -> str:
    """Redact any value for safe logging. Returns string representation."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        # For dicts, only log keys (structure), never values
        return f"dict(keys={list(value.keys())})"
    if isinstance(value, (list, tuple, set, frozenset)):
        return f"list(len={len(value)})"
    # Anything else: only the type name
    return f"<{type(value).__name__}>"


def safe_log_context(**kwargs: Any) -> dict[str, str]:
    """Build a context dict safe for logging. All values are redacted."""
    return {k: redact_value(v) for k, v in kwargs.items()}
