"""
netrunr_lib/const.py

Wire-level constants shared by both transports: result status codes, command
opcodes, asynchronous event codes, security-manager flags, channel ids and the
polling endpoint paths.
"""

from __future__ import annotations

from enum import Enum, IntEnum

LIBRARY_VERSION = "1.1.6"


class GapiStatus(IntEnum):
    """Numeric `result` values carried by every gateway reply."""

    SUCCESS = 200
    BAD_REQUEST = 400
    AUTHENTICATION_ERROR = 401
    FORBIDDEN_REQUEST = 403
    REQUEST_NOT_FOUND = 404
    METHOD_NOT_ALLOWED = 405
    PARAMETERS_NOT_ACCEPTABLE = 406
    CONFLICT = 409
    REQUEST_PRECONDITION_FAILED = 412
    PARAMETER_MISSING = 441
    PARAMETER_VALUE_NOT_VALID = 442
    UNEXPECTED_INTERNAL_CONDITION = 443
    INTERNAL_ERROR = 500
    NO_CONNECTION = 504
    CONNECTION_EXISTS = 505
    OUT_OF_RESOURCES = 507


class GapiCommand(IntEnum):
    """Pub/sub opcodes (`c` field). Gaps are reserved by the gateway."""

    GAP_PASSIVE = 0
    GAP_ACTIVE = 1
    GAP_ISENABLED = 2
    GAP_NODE = 3
    GAP_CONNECT = 4
    GAP_ENABLE = 5
    GAP_NAME = 6
    GATT_NODES = 7
    GATT_NODES_NODE = 8
    GATT_SERVICES = 9
    GATT_SERVICES_PRIMARY = 10
    GATT_SERVICES_PRIMARY_UUID = 11
    GATT_SERVICES_SERVICE = 12
    GATT_SERVICE_CHARS = 13
    GATT_CHARS_UUID = 14
    GATT_CHARS_CHAR = 15
    GATT_CHARS_CHAR_INDICATE_ON = 16
    GATT_CHARS_CHAR_INDICATE_OFF = 17
    GATT_CHARS_CHAR_NOTIFY_ON = 18
    GATT_CHARS_CHAR_NOTIFY_OFF = 19
    GATT_CHARS_CHAR_READ = 20
    GATT_CHARS_READ_UUID = 21
    GATT_CHARS_CHAR_READ_LONG = 22
    GATT_CHARS_READ_MULTIPLE = 23
    GATT_CHARS_CHAR_READ_INDICATE = 24
    GATT_CHARS_CHAR_READ_NOTIFY = 25
    GATT_CHARS_CHAR_SUBSCRIBE_INDICATE = 26
    GATT_CHARS_CHAR_SUBSCRIBE_NOTIFY = 27
    GATT_CHARS_CHAR_WRITE = 28
    GATT_CHARS_CHAR_WRITE_LONG = 29
    GATT_CHARS_CHAR_WRITE_NORESPONSE = 30
    GATT_CHARS_CHAR_WRITE_RELIABLE = 31
    GATT_CHARS_CHAR_DESCS = 32
    GATT_DESCS_DESC = 33
    GATT_DESCS_DESC_READ = 34
    GATT_DESCS_DESC_WRITE = 35
    GATT_DESCS_DESC_WRITE_LONG = 36
    PAIR = 41
    CONFIGURE = 51
    NO_COMMAND = 55
    VERSION = 56
    DEBUG = 57
    UPLOAD = 58
    ADVERTISE = 59
    REBOOT = 60
    NONE = 999


class GapiEvent(IntEnum):
    """Asynchronous event codes (`event` field); not every code is emitted."""

    DISCONNECT = 1
    COMMAND_COMPLETE = 2
    COMMAND_STATUS = 3
    HARDWARE_ERROR = 4
    READ_RSSI = 5
    READ_CHANNEL_MAP = 6
    CONNECTION_COMPLETE = 7
    ADVERTISING_REPORT = 8
    LE_CONNECTION_UPDATE_COMPLETE = 9
    LE_CONNECTION_CANCEL = 10
    LE_READ_REMOTE_FEATURES_COMPLETE = 11
    LE_LTK_REQUEST = 12
    LE_REMOTE_CONNECTION_PARAMETER_REQUEST = 13
    LE_DATA_LENGTH_CHANGE = 14
    LE_READ_LOCAL_P256_KEY_COMPLETE = 15
    LE_GENERATE_DHKEY_COMPLETE = 16
    LE_ENHANCED_CONNECTION_COMPLETE = 17
    LE_DIRECT_ADVERTISING_REPORT = 18
    ENCRYPT_CHANGE = 19
    ENCRYPTION_KEY_REFRESH_COMPLETE = 20
    PAIRING_COMPLETE = 32
    SECURITY_REQUEST = 37
    REQUEST_ERROR = 38
    SCAN_ENABLE = 39
    TRANSMIT_POWER = 40
    AUTHEN_KEY = 41
    PAIR_REQUEST = 42


# Security manager AuthReq bits
SM_BONDING = 1
SM_MITM = 4
SM_SECURE = 8

# Event/report stream terminator
STREAM_END = -1

# Wildcard target for event/report subscriptions
WILDCARD_TARGET = "*"


class Channel(str, Enum):
    """Per-gateway sub-channel ids; topics are `<gwid>/<channel>`."""

    ADMIN = "0"
    DATA_IN = "1"
    DATA_OUT = "2"
    REPORT_IN = "3"
    REPORT_OUT = "4"
    EVENT_IN = "5"
    EVENT_OUT = "6"


class Endpoint(str, Enum):
    """Polling transport endpoint paths."""

    CREATE = "/c1/create"
    LOGIN = "/c1/login"
    LOGOUT = "/c1/logout"
    AUTH = "/c1/auth"
    GATEWAY = "/c1/gateway"
    CLOSE = "/c1/close"
    LIST = "/c1/list"
    CONNECT = "/c1/connect"
    DISCONNECT = "/c1/disconnect"
    SHOW = "/c1/show"
    SERVICES = "/c1/services"
    CHARACTERISTICS = "/c1/characteristics"
    DESCRIPTORS = "/c1/descriptors"
    READ = "/c1/read"
    WRITE = "/c1/write"
    WRITE_NORESPONSE = "/c1/writenoresponse"
    SUBSCRIBE = "/c1/subscribe"
    UNSUBSCRIBE = "/c1/unsubscribe"
    NOTIFIED = "/c1/notified"
    EVENT = "/c1/event"
    REPORT = "/c1/report"
    PAIR = "/c1/pair"
    CONFIGURATION = "/c1/configuration"
    VERSION = "/c1/version"
    DEBUG = "/c1/debug"
    UPLOAD = "/c1/upload"
    ADVERTISE = "/c1/advertise"
    REBOOT = "/c1/reboot"
    ECHO = "/c1/echo"


# Endpoints that never carry tid/token/gwid
NON_AUTHENTICATABLE = frozenset({Endpoint.LOGIN, Endpoint.CREATE})

# Endpoints whose replies are stream deliveries rather than single replies
STREAM_ENDPOINTS = frozenset({Endpoint.EVENT, Endpoint.REPORT, Endpoint.NOTIFIED})

DEFAULT_HOST = "gw.axiomware.com"
DEFAULT_HTTP_PORT = 80
DEFAULT_HTTPS_PORT = 443
DEFAULT_PORT = 9002
PLAIN_WS_PORT = 9001
WRITE_LONG_THRESHOLD = 20
