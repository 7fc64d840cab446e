from __future__ import annotations

from copy import deepcopy
from typing import Any, Dict, Iterable


SENSITIVE_KEYS: Iterable[str] = [
    "email",
    "phone",
    "born_on",
    "card",
    "cvc",
    "cvv",
    "secret",
    "token",
    "identity_documents",
    "authorization",
    "payment_method",
]

REDACTED = "***REDACTED***"


def _is_sensitive_key(key: str) -> bool:
    lower = key.lower()
    return any(marker in lower for marker in SENSITIVE_KEYS)


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: REDACTED if _is_sensitive_key(str(k)) else _redact(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_redact(v) for v in value]
    if isinstance(value, tuple):
        return tuple(_redact(v) for v in value)
    return value


def redact_sensitive_fields(payload: Any) -> Any:
    """Return a deep redacted copy of a provider request/response body.

    Any key containing a sensitive marker (case-insensitive substring) is
    replaced with "***REDACTED***". The original payload is not mutated.
    """

    if payload is None:
        return {}
    return _redact(deepcopy(payload))
