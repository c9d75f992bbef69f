"""
netrunr_lib/commands.py

Static command tables.

- ENDPOINT_OPCODES: forward table, polling endpoint -> the pub/sub opcodes that
  implement it.
- RESPONSE_ENDPOINTS: reverse table, opcode -> endpoint, derived from the
  forward table. Used by the polling adapter to recover the endpoint a reply
  belongs to; replies only echo the opcode (`c`).
- COMMANDS: per-operation admission metadata for the facade.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

from .const import Channel, Endpoint, GapiCommand

C = GapiCommand

ENDPOINT_OPCODES: dict[Endpoint, tuple[GapiCommand, ...]] = {
    Endpoint.LIST: (C.GAP_PASSIVE, C.GAP_ACTIVE),
    Endpoint.SHOW: (C.GAP_ISENABLED, C.GAP_NODE),
    Endpoint.CONNECT: (C.GAP_CONNECT,),
    Endpoint.DISCONNECT: (C.GAP_ENABLE,),
    Endpoint.SERVICES: (C.GATT_SERVICES, C.GATT_SERVICES_PRIMARY_UUID),
    Endpoint.CHARACTERISTICS: (C.GATT_SERVICE_CHARS, C.GATT_CHARS_UUID, C.GATT_CHARS_CHAR),
    Endpoint.DESCRIPTORS: (C.GATT_CHARS_CHAR_DESCS, C.GATT_DESCS_DESC),
    Endpoint.READ: (
        C.GATT_CHARS_CHAR_READ,
        C.GATT_CHARS_READ_UUID,
        C.GATT_CHARS_CHAR_READ_LONG,
        C.GATT_DESCS_DESC_READ,
    ),
    Endpoint.WRITE: (
        C.GATT_CHARS_CHAR_WRITE,
        C.GATT_CHARS_CHAR_WRITE_LONG,
        C.GATT_DESCS_DESC_WRITE,
        C.GATT_DESCS_DESC_WRITE_LONG,
    ),
    Endpoint.WRITE_NORESPONSE: (C.GATT_CHARS_CHAR_WRITE_NORESPONSE,),
    Endpoint.SUBSCRIBE: (C.GATT_CHARS_CHAR_NOTIFY_ON, C.GATT_CHARS_CHAR_INDICATE_ON),
    Endpoint.UNSUBSCRIBE: (C.GATT_CHARS_CHAR_NOTIFY_OFF, C.GATT_CHARS_CHAR_INDICATE_OFF),
    Endpoint.PAIR: (C.PAIR,),
    Endpoint.CONFIGURATION: (C.CONFIGURE,),
    Endpoint.ECHO: (C.NO_COMMAND,),
    Endpoint.VERSION: (C.VERSION,),
    Endpoint.DEBUG: (C.DEBUG,),
    Endpoint.UPLOAD: (C.UPLOAD,),
    Endpoint.ADVERTISE: (C.ADVERTISE,),
    Endpoint.REBOOT: (C.REBOOT,),
}

# Event-stream toggles are issued by both subscribe and unsubscribe, so they
# have no single owning endpoint and stay out of the reverse table.
STREAM_TOGGLE_OPCODES = frozenset(
    {C.GATT_CHARS_CHAR_SUBSCRIBE_INDICATE, C.GATT_CHARS_CHAR_SUBSCRIBE_NOTIFY}
)


def _build_reverse(table: Mapping[Endpoint, tuple[GapiCommand, ...]]) -> dict[GapiCommand, Endpoint]:
    reverse: dict[GapiCommand, Endpoint] = {}
    for endpoint, opcodes in table.items():
        for opcode in opcodes:
            if opcode in reverse:
                raise ValueError(
                    f"opcode {opcode.name} maps to both {reverse[opcode].value} and {endpoint.value}"
                )
            reverse[opcode] = endpoint
    return reverse


RESPONSE_ENDPOINTS: dict[GapiCommand, Endpoint] = _build_reverse(ENDPOINT_OPCODES)


def endpoint_for_reply(reply: Mapping[str, Any]) -> Optional[Endpoint]:
    """
    Recover the polling endpoint a reply belongs to.

    Event and report deliveries always belong to the event poll. Otherwise the
    echoed opcode is looked up in the reverse table; unknown or missing
    opcodes return None.
    """
    if reply.get("report") is not None or reply.get("event") is not None:
        return Endpoint.EVENT
    code = reply.get("c")
    if isinstance(code, bool) or code is None:
        return None
    try:
        return RESPONSE_ENDPOINTS.get(GapiCommand(int(code)))
    except (TypeError, ValueError):
        return None


def channel_for_endpoint(endpoint: Endpoint) -> Channel:
    """Channel suffix appended to the gateway id of an authenticated polling call."""
    if endpoint is Endpoint.EVENT:
        return Channel.EVENT_IN
    if endpoint in (Endpoint.REPORT, Endpoint.NOTIFIED):
        return Channel.REPORT_IN
    return Channel.DATA_IN


# -------------------------
# Facade command table
# -------------------------

class GuardScope(str, Enum):
    """Which Serialization Guard key an operation holds while outstanding."""

    GLOBAL = "global"   # always the gateway-wide flag
    TARGET = "target"   # the device flag, or the global flag when no device is named
    NONE = "none"       # stream registrations; never serialized


@dataclass(frozen=True, slots=True)
class CommandSpec:
    key: str
    endpoint: Endpoint
    scope: GuardScope
    accept_exists: bool = False
    suppress_errors: bool = False
    stream: bool = False


COMMANDS: dict[str, CommandSpec] = {
    spec.key: spec
    for spec in (
        CommandSpec("scan", Endpoint.LIST, GuardScope.GLOBAL),
        CommandSpec("connect", Endpoint.CONNECT, GuardScope.TARGET, accept_exists=True),
        CommandSpec("disconnect", Endpoint.DISCONNECT, GuardScope.TARGET, accept_exists=True),
        CommandSpec("show", Endpoint.SHOW, GuardScope.TARGET),
        CommandSpec("services", Endpoint.SERVICES, GuardScope.TARGET),
        CommandSpec("characteristics", Endpoint.CHARACTERISTICS, GuardScope.TARGET),
        CommandSpec("descriptors", Endpoint.DESCRIPTORS, GuardScope.TARGET),
        CommandSpec("read", Endpoint.READ, GuardScope.TARGET),
        CommandSpec("write", Endpoint.WRITE, GuardScope.TARGET),
        CommandSpec("write_no_response", Endpoint.WRITE_NORESPONSE, GuardScope.TARGET),
        CommandSpec("subscribe", Endpoint.SUBSCRIBE, GuardScope.TARGET),
        CommandSpec("unsubscribe", Endpoint.UNSUBSCRIBE, GuardScope.TARGET, suppress_errors=True),
        CommandSpec("pair", Endpoint.PAIR, GuardScope.GLOBAL),
        CommandSpec("configuration", Endpoint.CONFIGURATION, GuardScope.GLOBAL),
        CommandSpec("echo", Endpoint.ECHO, GuardScope.GLOBAL),
        CommandSpec("version", Endpoint.VERSION, GuardScope.GLOBAL),
        CommandSpec("debug", Endpoint.DEBUG, GuardScope.GLOBAL),
        CommandSpec("upload", Endpoint.UPLOAD, GuardScope.GLOBAL),
        CommandSpec("advertise", Endpoint.ADVERTISE, GuardScope.GLOBAL),
        CommandSpec("reboot", Endpoint.REBOOT, GuardScope.GLOBAL),
        CommandSpec("event", Endpoint.EVENT, GuardScope.NONE, stream=True),
        CommandSpec("report", Endpoint.REPORT, GuardScope.NONE, stream=True),
        CommandSpec("notified", Endpoint.NOTIFIED, GuardScope.NONE, stream=True),
    )
}


__all__ = [
    "COMMANDS",
    "CommandSpec",
    "ENDPOINT_OPCODES",
    "GuardScope",
    "RESPONSE_ENDPOINTS",
    "STREAM_TOGGLE_OPCODES",
    "channel_for_endpoint",
    "endpoint_for_reply",
]
