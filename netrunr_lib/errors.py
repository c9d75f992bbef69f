"""
netrunr_lib/errors.py

Typed errors for the gateway client.

Two layers:
- GatewayStatusError and subclasses wrap a non-success reply envelope
  (admission or wire errors that carry a numeric `result`).
- GapiTransportError / GapiTimeoutError cover failures with no envelope.

The callback API never raises these; it hands the envelope to the error
continuation. The async API (`GatewayClient.async_execute`) returns them in a
failed `Result`.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

from .const import GapiStatus


class GapiError(Exception):
    """Base class for all netrunr_lib errors."""


class GatewayStatusError(GapiError):
    """A reply (or admission check) finished with a non-success status."""

    def __init__(
        self,
        status: int,
        message: Optional[str] = None,
        *,
        reply: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.status = int(status)
        self.reply: dict[str, Any] = dict(reply) if reply is not None else {"result": self.status}
        super().__init__(message or f"Gateway returned status {self.status}.")


class GapiBadRequest(GatewayStatusError):
    """400: malformed request or no active transport."""


class GapiAuthError(GatewayStatusError):
    """401: not authenticated, or credentials rejected."""


class GapiConflictError(GatewayStatusError):
    """409: an operation for the same target is already outstanding."""


class GapiInvalidArgument(GatewayStatusError):
    """406/441/442/443: missing or invalid call parameters."""


class GapiNotConnectedError(GatewayStatusError):
    """504: the transport (or device) is not connected."""


class GapiTransportError(GapiError):
    """The underlying HTTP or pub/sub channel failed."""


class GapiTimeoutError(GapiError):
    """A caller-imposed timeout expired while awaiting a reply."""


_STATUS_ERRORS: dict[int, type[GatewayStatusError]] = {
    GapiStatus.BAD_REQUEST: GapiBadRequest,
    GapiStatus.AUTHENTICATION_ERROR: GapiAuthError,
    GapiStatus.CONFLICT: GapiConflictError,
    GapiStatus.PARAMETERS_NOT_ACCEPTABLE: GapiInvalidArgument,
    GapiStatus.PARAMETER_MISSING: GapiInvalidArgument,
    GapiStatus.PARAMETER_VALUE_NOT_VALID: GapiInvalidArgument,
    GapiStatus.UNEXPECTED_INTERNAL_CONDITION: GapiInvalidArgument,
    GapiStatus.NO_CONNECTION: GapiNotConnectedError,
}


def error_for_reply(reply: Any) -> GapiError:
    """Map an error envelope (or anything else the error path produced) to an exception."""
    if isinstance(reply, Mapping):
        status = reply.get("result")
        if isinstance(status, int) and not isinstance(status, bool):
            cls = _STATUS_ERRORS.get(status, GatewayStatusError)
            detail = reply.get("error") or reply.get("value")
            message = f"Gateway returned status {status}" + (f": {detail}" if detail else ".")
            return cls(status, message, reply=reply)
        return GapiTransportError(f"Transport failure: {dict(reply)!r}")
    return GapiTransportError(f"Transport failure: {reply!r}")


__all__ = [
    "GapiError",
    "GatewayStatusError",
    "GapiBadRequest",
    "GapiAuthError",
    "GapiConflictError",
    "GapiInvalidArgument",
    "GapiNotConnectedError",
    "GapiTransportError",
    "GapiTimeoutError",
    "error_for_reply",
]
