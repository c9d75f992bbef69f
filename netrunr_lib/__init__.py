"""Client session layer for the netrunr BLE gateway API."""

from __future__ import annotations

from .client import GatewayClient, Result
from .const import LIBRARY_VERSION, Channel, Endpoint, GapiCommand, GapiEvent, GapiStatus
from .errors import (
    GapiAuthError,
    GapiBadRequest,
    GapiConflictError,
    GapiError,
    GapiInvalidArgument,
    GapiNotConnectedError,
    GapiTimeoutError,
    GapiTransportError,
    GatewayStatusError,
)
from .http import AiohttpChannel, HttpChannel
from .mqtt import PahoChannel, PubSubChannel
from .redact import redact_for_logging
from .session import Session, SessionState
from .types import (
    ClientConfig,
    Continuation,
    EventMessage,
    MessageKind,
    ReportMessage,
    RequestReply,
    StreamKind,
    TransportKind,
)

__version__ = LIBRARY_VERSION

__all__ = [
    "AiohttpChannel",
    "Channel",
    "ClientConfig",
    "Continuation",
    "Endpoint",
    "EventMessage",
    "GapiAuthError",
    "GapiBadRequest",
    "GapiCommand",
    "GapiConflictError",
    "GapiError",
    "GapiEvent",
    "GapiInvalidArgument",
    "GapiNotConnectedError",
    "GapiStatus",
    "GapiTimeoutError",
    "GapiTransportError",
    "GatewayClient",
    "GatewayStatusError",
    "HttpChannel",
    "MessageKind",
    "PahoChannel",
    "PubSubChannel",
    "ReportMessage",
    "RequestReply",
    "Result",
    "Session",
    "SessionState",
    "StreamKind",
    "TransportKind",
    "redact_for_logging",
]
