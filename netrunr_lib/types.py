"""Public types for netrunr_lib: configuration, continuations and decoded messages."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Union

from .const import (
    DEFAULT_HOST,
    DEFAULT_HTTP_PORT,
    DEFAULT_HTTPS_PORT,
    DEFAULT_PORT,
    GapiCommand,
    GapiStatus,
    STREAM_END,
    WILDCARD_TARGET,
)

Reply = dict[str, Any]
Callback = Callable[[Reply], None]


class TransportKind(str, Enum):
    """Primary transport selection."""

    POLLING = "http"
    PUBSUB = "ws"


class StreamKind(str, Enum):
    """Callback registry entry kinds."""

    REQUEST = "request"
    EVENT = "event"
    REPORT = "report"
    NOTIFICATION = "notification"


@dataclass(frozen=True, slots=True)
class ClientConfig:
    """
    Immutable client configuration.

    Provided once at construction; `GatewayClient.config()` replaces it
    wholesale while the transport is down.
    """

    host: str = DEFAULT_HOST
    http_port: int = DEFAULT_HTTP_PORT
    https_port: int = DEFAULT_HTTPS_PORT
    port: int = DEFAULT_PORT
    use_ssl: bool = True
    reject_unauthorized: bool = True
    transport: TransportKind = TransportKind.PUBSUB
    legacy_describe: bool = False
    event_stream: bool = False
    notify_interval_s: float = 5.0
    logger_name: Optional[str] = None

    @property
    def active_http_port(self) -> int:
        return self.https_port if self.use_ssl else self.http_port


@dataclass(slots=True)
class Continuation:
    """
    A success/error continuation pair.

    Either slot may be None; `invoke` returns False when the selected slot is
    empty so callers can tell a delivered result from a dropped one.
    """

    success: Optional[Callback] = None
    error: Optional[Callback] = None

    def __bool__(self) -> bool:
        return self.success is not None or self.error is not None

    def invoke(self, ok: bool, reply: Reply) -> bool:
        fn = self.success if ok else self.error
        if fn is None:
            return False
        fn(reply)
        return True


def normalize_target(value: Any) -> Optional[str]:
    """Lower-case a device id and unify its separators; empty means no target."""
    if value is None or value == "" or value == 0:
        return None
    text = str(value).strip().lower()
    if not text:
        return None
    if text == WILDCARD_TARGET:
        return WILDCARD_TARGET
    return text.replace("-", ":")


def status_of(reply: Mapping[str, Any]) -> Optional[int]:
    status = reply.get("result")
    if isinstance(status, bool) or not isinstance(status, int):
        return None
    return status


def is_success(reply: Mapping[str, Any], *, accept_exists: bool = False) -> bool:
    status = status_of(reply)
    if status == GapiStatus.SUCCESS:
        return True
    return accept_exists and status == GapiStatus.CONNECTION_EXISTS


# -------------------------
# Decoded inbound messages
# -------------------------

class MessageKind(str, Enum):
    REPLY = "reply"
    EVENT = "event"
    REPORT = "report"


@dataclass(frozen=True, slots=True)
class GatewayMessage:
    kind: MessageKind
    status: int
    target: Optional[str]
    raw: Mapping[str, Any] = field(repr=False)

    @property
    def ok(self) -> bool:
        return self.status == GapiStatus.SUCCESS


@dataclass(frozen=True, slots=True)
class RequestReply(GatewayMessage):
    command: Optional[int] = None

    @property
    def opcode(self) -> Optional[GapiCommand]:
        if self.command is None:
            return None
        try:
            return GapiCommand(self.command)
        except ValueError:
            return None


@dataclass(frozen=True, slots=True)
class EventMessage(GatewayMessage):
    event: int = 0

    @property
    def is_stream_end(self) -> bool:
        return self.event == STREAM_END


@dataclass(frozen=True, slots=True)
class ReportMessage(GatewayMessage):
    report: int = 0

    @property
    def is_stream_end(self) -> bool:
        return self.report == STREAM_END


DecodedMessage = Union[RequestReply, EventMessage, ReportMessage]


def _int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


def decode_message(obj: Any) -> Optional[DecodedMessage]:
    """
    Decode one inbound envelope.

    Returns None for anything that is not a classifiable envelope: non-objects,
    and command echoes (our own publishes reflected back, which carry no
    `result`). The `report` field wins over `event` when both are present.
    """
    if not isinstance(obj, Mapping):
        return None
    status = _int_or_none(obj.get("result"))
    if not status:
        return None
    target = normalize_target(obj.get("node"))
    if obj.get("report") is not None:
        return ReportMessage(
            kind=MessageKind.REPORT,
            status=status,
            target=target,
            raw=obj,
            report=_int_or_none(obj.get("report")) or 0,
        )
    if obj.get("event") is not None:
        return EventMessage(
            kind=MessageKind.EVENT,
            status=status,
            target=target,
            raw=obj,
            event=_int_or_none(obj.get("event")) or 0,
        )
    return RequestReply(
        kind=MessageKind.REPLY,
        status=status,
        target=target,
        raw=obj,
        command=_int_or_none(obj.get("c")),
    )


__all__ = [
    "Callback",
    "ClientConfig",
    "Continuation",
    "DecodedMessage",
    "EventMessage",
    "GatewayMessage",
    "MessageKind",
    "Reply",
    "ReportMessage",
    "RequestReply",
    "StreamKind",
    "TransportKind",
    "decode_message",
    "is_success",
    "normalize_target",
    "status_of",
]
