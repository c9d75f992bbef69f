"""
Request generators: pure argument normalizers and validators.

Each generator takes the caller's flat argument mapping and returns a fresh
wire payload. Invalid input raises GapiInvalidArgument carrying the status the
caller should see. Generators never touch session state.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

from .const import (
    SM_BONDING,
    SM_MITM,
    SM_SECURE,
    WILDCARD_TARGET,
    WRITE_LONG_THRESHOLD,
    GapiStatus,
)
from .errors import GapiInvalidArgument
from .types import normalize_target

Payload = dict[str, Any]

_UUID_KEYS = ("suuid", "cuuid", "uuid")

# 0x2803, the <<Characteristic>> declaration type, little-endian
CHARACTERISTIC_DECLARATION_UUID = "0328"

PAIR_OP_START = 1
PAIR_OP_LIST = 2
PAIR_OPS = (0, 1, 2, 3)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _invalid(status: GapiStatus, message: str) -> GapiInvalidArgument:
    return GapiInvalidArgument(status, message)


def normalize_uuid(value: Any) -> str:
    return str(value).lower().replace("-", "")


def generator_default_args(args: Optional[Mapping[str, Any]]) -> Payload:
    """Copy caller args, map `did` onto `node` and normalize ids and UUIDs."""
    payload: Payload = dict(args or {})
    node = payload.get("node") or payload.get("did")
    target = normalize_target(node)
    if target is None:
        payload.pop("node", None)
    else:
        payload["node"] = target
    if payload.get("did"):
        payload["did"] = normalize_target(payload["did"])
    for key in _UUID_KEYS:
        if payload.get(key):
            payload[key] = normalize_uuid(payload[key])
    return payload


def target_of(payload: Mapping[str, Any]) -> Optional[str]:
    """The device a payload addresses; the wildcard counts as no device."""
    target = normalize_target(payload.get("node"))
    if target == WILDCARD_TARGET:
        return None
    return target


def generator_scan(args: Optional[Mapping[str, Any]]) -> Payload:
    payload: Payload = dict(args or {})
    if "active" in payload:
        if not payload["active"]:
            del payload["active"]
            payload["passive"] = 1
    elif "passive" in payload:
        if not payload["passive"]:
            del payload["passive"]
            payload["active"] = 1
    else:
        payload["passive"] = 1
    if payload.get("period") is None:
        raise _invalid(GapiStatus.PARAMETER_MISSING, "scan requires a period")
    return payload


def generator_connect(args: Optional[Mapping[str, Any]]) -> Payload:
    payload = generator_default_args(args)
    payload.setdefault("dtype", 0)
    payload.setdefault("interval_min", 16)
    payload.setdefault("interval_max", 160)
    payload.setdefault("latency", 4)
    if "timeout" not in payload:
        # supervision timeout in 10 ms units: three connection events at max
        # interval (1.25 ms units), rounded up, plus margin
        supervision = (1 + payload["latency"]) * payload["interval_max"] * 1.25 * 3
        payload["timeout"] = int((supervision + 9) / 10 + 3)
    payload.setdefault("wait", 15)
    return payload


def generator_disconnect(args: Optional[Mapping[str, Any]]) -> Payload:
    payload = generator_default_args(args)
    if payload.get("node") == WILDCARD_TARGET:
        del payload["node"]
    payload["enable"] = 0
    return payload


def generator_show(args: Optional[Mapping[str, Any]]) -> Payload:
    payload = generator_default_args(args)
    if payload.get("node") == WILDCARD_TARGET:
        del payload["node"]
    payload["enable"] = 1
    return payload


def generator_services(args: Optional[Mapping[str, Any]]) -> Payload:
    return generator_default_args(args)


def _check_handle_range(payload: Mapping[str, Any]) -> None:
    sh = payload.get("sh")
    eh = payload.get("eh")
    if not _is_int(sh) or not _is_int(eh) or sh <= 0 or eh <= 0 or eh < sh:
        raise _invalid(
            GapiStatus.PARAMETERS_NOT_ACCEPTABLE,
            f"handle range must satisfy 0 < sh <= eh (got sh={sh!r}, eh={eh!r})",
        )


def _check_exclusive(payload: Mapping[str, Any], keys: tuple[str, ...]) -> int:
    present = sum(1 for key in keys if payload.get(key) is not None)
    if present > 1:
        raise _invalid(
            GapiStatus.PARAMETERS_NOT_ACCEPTABLE,
            f"only one of {', '.join(keys)} may be given",
        )
    return present


def generator_characteristics(args: Optional[Mapping[str, Any]], *, legacy: bool = False) -> Payload:
    payload = generator_default_args(args)
    if legacy:
        if not _check_exclusive(payload, ("sh", "cuuid", "ch")):
            raise _invalid(GapiStatus.PARAMETER_MISSING, "one of sh, cuuid or ch is required")
        return payload
    _check_handle_range(payload)
    if not payload.get("uuid"):
        payload["uuid"] = CHARACTERISTIC_DECLARATION_UUID
    return payload


def generator_descriptors(args: Optional[Mapping[str, Any]], *, legacy: bool = False) -> Payload:
    payload = generator_default_args(args)
    if legacy:
        if not _check_exclusive(payload, ("ch", "dh")):
            raise _invalid(GapiStatus.PARAMETER_MISSING, "one of ch or dh is required")
        return payload
    _check_handle_range(payload)
    if not payload.get("uuid"):
        payload["uuid"] = ""
    return payload


def _require_handle(payload: Mapping[str, Any], op: str) -> None:
    if not payload.get("ch") and not payload.get("dh"):
        raise _invalid(GapiStatus.PARAMETER_MISSING, f"{op} requires ch or dh")


def generator_read(args: Optional[Mapping[str, Any]]) -> Payload:
    payload = generator_default_args(args)
    _require_handle(payload, "read")
    return payload


def is_long_value(payload: Mapping[str, Any]) -> bool:
    value = payload.get("value")
    return bool(value) and len(str(value)) > WRITE_LONG_THRESHOLD


def generator_write(args: Optional[Mapping[str, Any]]) -> Payload:
    payload = generator_default_args(args)
    _require_handle(payload, "write")
    if is_long_value(payload):
        payload["long"] = 1
    return payload


def generator_write_no_response(args: Optional[Mapping[str, Any]]) -> Payload:
    payload = generator_default_args(args)
    payload["noresponse"] = 1
    return payload


def generator_subscribe(args: Optional[Mapping[str, Any]]) -> Payload:
    payload = generator_default_args(args)
    if not payload.get("ch"):
        raise _invalid(GapiStatus.PARAMETER_MISSING, "subscribe requires ch")
    return payload


def generator_unsubscribe(args: Optional[Mapping[str, Any]]) -> Payload:
    payload = generator_default_args(args)
    if not payload.get("ch"):
        raise _invalid(GapiStatus.PARAMETER_MISSING, "unsubscribe requires ch")
    return payload


def generator_pair(args: Optional[Mapping[str, Any]], *, legacy: bool = False) -> Payload:
    payload = generator_default_args(args)
    if legacy:
        payload.setdefault("op", PAIR_OP_LIST)
        for key in ("bonding", "secure", "mitm", "oob"):
            payload.setdefault(key, 0)
    else:
        op = payload.setdefault("op", PAIR_OP_LIST)
        if op not in PAIR_OPS or not _is_int(op):
            raise _invalid(GapiStatus.PARAMETER_VALUE_NOT_VALID, f"pairing op must be one of {PAIR_OPS} (got {op!r})")
        if op == PAIR_OP_START:
            _shape_pair_start(payload)
    if payload.get("op") == PAIR_OP_LIST:
        payload.pop("node", None)
    return payload


def _shape_pair_start(payload: Payload) -> None:
    payload.setdefault("iocap", 0x03)
    payload.setdefault("oob", 0)
    auth = 0
    if payload.get("bonding"):
        auth |= SM_BONDING
    if payload.get("mitm"):
        auth |= SM_MITM
    if payload.get("secure"):
        auth |= SM_SECURE
    payload["auth"] = auth
    payload.setdefault("key_max", 16)
    payload.setdefault("key_value", "")
    if isinstance(payload["key_value"], str):
        payload["key_length"] = len(payload["key_value"])
    payload.setdefault("init", 0)
    payload.setdefault("resp", 0)

    bounds = (
        ("iocap", 0x04),
        ("key_max", 16),
        ("key_length", 16),
        ("init", 7),
        ("resp", 7),
    )
    for key, upper in bounds:
        value = payload.get(key)
        if not _is_int(value) or value > upper:
            raise _invalid(GapiStatus.PARAMETER_VALUE_NOT_VALID, f"{key} must be an int <= {upper} (got {value!r})")
    if not _is_int(payload["oob"]):
        raise _invalid(GapiStatus.PARAMETER_VALUE_NOT_VALID, f"oob must be an int (got {payload['oob']!r})")
    key_value = payload["key_value"]
    if not isinstance(key_value, str) or len(key_value) > 16:
        raise _invalid(GapiStatus.PARAMETER_VALUE_NOT_VALID, "key_value must be a string of at most 16 characters")


def generator_passthrough(args: Optional[Mapping[str, Any]]) -> Payload:
    """Gateway-wide commands (configuration, echo, version, ...) send args as given."""
    return dict(args or {})


def generator_stream(args: Optional[Mapping[str, Any]]) -> tuple[Payload, str]:
    """
    Event/report registration: returns the payload and the registry target.

    A `did` is required; `"*"` registers the wildcard continuation.
    """
    payload: Payload = dict(args or {})
    target = normalize_target(payload.get("did"))
    if target is None:
        raise _invalid(GapiStatus.PARAMETER_MISSING, "stream registration requires did")
    payload["did"] = target
    return payload, target


def generator_notified(args: Optional[Mapping[str, Any]]) -> tuple[Payload, str]:
    payload = generator_default_args(args)
    return payload, payload.get("node") or WILDCARD_TARGET


__all__ = [
    "CHARACTERISTIC_DECLARATION_UUID",
    "generator_characteristics",
    "generator_connect",
    "generator_default_args",
    "generator_descriptors",
    "generator_disconnect",
    "generator_notified",
    "generator_pair",
    "generator_passthrough",
    "generator_read",
    "generator_scan",
    "generator_services",
    "generator_show",
    "generator_stream",
    "generator_subscribe",
    "generator_unsubscribe",
    "generator_write",
    "generator_write_no_response",
    "is_long_value",
    "normalize_uuid",
    "target_of",
]
