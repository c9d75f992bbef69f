"""Credential redaction for log output."""

from __future__ import annotations

from typing import Any, Mapping

REDACTED = "***"

SENSITIVE_KEYS = frozenset({"token", "pwd", "password", "gapi_pwd", "gapiPwd"})


def redact_for_logging(obj: Any) -> Any:
    """Return a copy of `obj` with credential values masked, recursing into containers."""
    if isinstance(obj, Mapping):
        return {
            key: (REDACTED if key in SENSITIVE_KEYS and value else redact_for_logging(value))
            for key, value in obj.items()
        }
    if isinstance(obj, (list, tuple)):
        return [redact_for_logging(item) for item in obj]
    return obj


__all__ = ["REDACTED", "SENSITIVE_KEYS", "redact_for_logging"]
