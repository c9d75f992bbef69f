"""
netrunr_lib/pubsub.py

PubSub wire adapter: every command is an integer opcode plus flat arguments,
published as JSON on `<gwid>/1` (or a caller `topic`). Replies arrive on the
admin, data-out, report-out and event-out channels and are correlated by the
`node` they carry.

Continuation tables (all owned here, keyed by normalized target):
- persistent: the default continuation for a target's directed replies
- one-shot: consumed by the next directed reply, ahead of the persistent one;
  compound commands use it to intercept an intermediate acknowledgement
- non-directed: a single slot for replies that name no target
"""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Optional

from .const import Channel, GapiCommand, GapiStatus
from .dispatcher import Dispatcher
from .mqtt import PubSubChannel
from .redact import redact_for_logging
from .session import Session
from .types import Callback, Continuation, EventMessage, ReportMessage, normalize_target

logger = logging.getLogger(__name__)

C = GapiCommand

CLIENT_ID_PREFIX = "ws_"
REPLY_CHANNELS = (Channel.ADMIN, Channel.DATA_OUT, Channel.REPORT_OUT, Channel.EVENT_OUT)

NOT_CONNECTED_REPLY = {
    "result": int(GapiStatus.NO_CONNECTION),
    "value": "transport is not connected. Please login again.",
}

# opcodes for commands that take the flat payload as-is
_DIRECT_OPCODES: dict[str, GapiCommand] = {
    "connect": C.GAP_CONNECT,
    "write_no_response": C.GATT_CHARS_CHAR_WRITE_NORESPONSE,
    "pair": C.PAIR,
    "configuration": C.CONFIGURE,
    "echo": C.NO_COMMAND,
    "version": C.VERSION,
    "debug": C.DEBUG,
    "upload": C.UPLOAD,
    "advertise": C.ADVERTISE,
    "reboot": C.REBOOT,
}


class PubSubAdapter:
    def __init__(self, session: Session, channel: PubSubChannel, dispatcher: Dispatcher) -> None:
        self._session = session
        self._channel = channel
        self._dispatcher = dispatcher

        self.connected = False
        self.subscribed = False
        self._persistent: dict[str, Continuation] = {}
        self._oneshot: dict[str, Continuation] = {}
        self._non_directed = Continuation()

    @property
    def data_topic(self) -> str:
        return f"{self._session.gwid}/{Channel.DATA_IN.value}"

    # -------------------------
    # Wire
    # -------------------------

    def call(
        self,
        opcode: GapiCommand,
        payload: Mapping[str, Any],
        success: Optional[Callback],
        error: Optional[Callback],
    ) -> bool:
        if not self.connected:
            if error is not None:
                error(dict(NOT_CONNECTED_REPLY))
            return False

        message = dict(payload)
        node = normalize_target(message.get("node"))
        if node:
            if success is not None or error is not None:
                self._oneshot[node] = Continuation(success=success, error=error)
            elif node in self._oneshot:
                logger.debug("One-shot continuation already set for %s", node)
        else:
            self._non_directed = Continuation(success=success, error=error)

        message["c"] = int(opcode)
        topic = message.pop("topic", None) or self.data_topic
        logger.debug("Publish %s %s", topic, redact_for_logging(message))
        return self._channel.publish(topic, json.dumps(message))

    def _register(self, payload: Mapping[str, Any], success: Optional[Callback], error: Optional[Callback]) -> None:
        node = normalize_target(payload.get("node"))
        if node:
            self._persistent[node] = Continuation(success=success, error=error)

    def on_message(self, topic: str, data: bytes | str) -> None:
        try:
            obj = json.loads(data)
        except ValueError:
            logger.debug("Unparseable message on %s dropped", topic)
            return
        msg = self._dispatcher.classify(obj)
        if msg is None:
            # command echo or malformed envelope
            return
        logger.debug("Message on %s: %s", topic, redact_for_logging(obj))

        if isinstance(msg, (ReportMessage, EventMessage)):
            self._dispatcher.dispatch_stream(msg)
            return

        node = msg.target
        if not node:
            entry, self._non_directed = self._non_directed, Continuation()
            if not self._dispatcher.invoke(entry, msg.ok, obj):
                logger.debug("Non-directed reply with no continuation dropped")
            return

        oneshot = self._oneshot.get(node)
        if oneshot is not None and (oneshot.success if msg.ok else oneshot.error) is not None:
            del self._oneshot[node]
            self._dispatcher.invoke(oneshot, msg.ok, obj)
            return
        if not self._dispatcher.invoke(self._persistent.get(node), msg.ok, obj):
            logger.debug("Directed reply for %s with no continuation dropped", node)

    # -------------------------
    # Gateway operations
    # -------------------------

    def execute(self, key: str, payload: dict[str, Any], success: Callback, error: Callback) -> None:
        self._register(payload, success, error)
        handler = getattr(self, f"_op_{key}", None)
        if handler is not None:
            handler(payload, success, error)
            return
        self.call(_DIRECT_OPCODES[key], payload, success, error)

    def _op_scan(self, payload: dict[str, Any], success: Callback, error: Callback) -> None:
        opcode = C.GAP_ACTIVE if payload.get("active") else C.GAP_PASSIVE
        self.call(opcode, payload, success, error)

    def _op_show(self, payload: dict[str, Any], success: Callback, error: Callback) -> None:
        opcode = C.GAP_NODE if payload.get("node") else C.GAP_ISENABLED
        self.call(opcode, payload, success, error)

    def _op_disconnect(self, payload: dict[str, Any], success: Callback, error: Callback) -> None:
        def done(fn: Callback) -> Callback:
            def on_reply(reply: dict[str, Any]) -> None:
                self.cleanup_connection(reply)
                fn(reply)

            return on_reply

        self.call(C.GAP_ENABLE, payload, done(success), done(error))

    def _op_services(self, payload: dict[str, Any], success: Callback, error: Callback) -> None:
        if payload.get("suuid") or payload.get("uuid"):
            if payload.get("suuid"):
                payload["uuid"] = payload["suuid"]
            payload.pop("suuid", None)
            payload["primary"] = 1
            self.call(C.GATT_SERVICES_PRIMARY_UUID, payload, success, error)
        else:
            self.call(C.GATT_SERVICES, payload, success, error)

    def _op_characteristics(self, payload: dict[str, Any], success: Callback, error: Callback) -> None:
        if not self._session.config.legacy_describe:
            # uuid is the <<Characteristic>> declaration type or a characteristic UUID
            self.call(C.GATT_CHARS_UUID, payload, success, error)
        elif payload.get("sh") is not None:
            payload["service"] = payload.pop("sh")
            self.call(C.GATT_SERVICE_CHARS, payload, success, error)
        elif payload.get("cuuid") is not None:
            payload["uuid"] = payload.pop("cuuid")
            self.call(C.GATT_CHARS_UUID, payload, success, error)
        else:
            self.call(C.GATT_CHARS_CHAR, payload, success, error)

    def _op_descriptors(self, payload: dict[str, Any], success: Callback, error: Callback) -> None:
        if not self._session.config.legacy_describe:
            opcode = C.GATT_DESCS_DESC if payload.get("uuid") else C.GATT_CHARS_CHAR_DESCS
        else:
            opcode = C.GATT_CHARS_CHAR_DESCS if payload.get("ch") else C.GATT_DESCS_DESC
        self.call(opcode, payload, success, error)

    def _op_read(self, payload: dict[str, Any], success: Callback, error: Callback) -> None:
        opcode = C.GATT_CHARS_CHAR_READ if payload.get("ch") else C.GATT_DESCS_DESC_READ
        self.call(opcode, payload, success, error)

    def _op_write(self, payload: dict[str, Any], success: Callback, error: Callback) -> None:
        long = bool(payload.get("long"))
        if payload.get("ch"):
            opcode = C.GATT_CHARS_CHAR_WRITE_LONG if long else C.GATT_CHARS_CHAR_WRITE
        else:
            opcode = C.GATT_DESCS_DESC_WRITE_LONG if long else C.GATT_DESCS_DESC_WRITE
        self.call(opcode, payload, success, error)

    def _op_subscribe(self, payload: dict[str, Any], success: Callback, error: Callback) -> None:
        notify = payload.get("notify") == 1
        if notify:
            opcode = C.GATT_CHARS_CHAR_NOTIFY_ON
        else:
            opcode = C.GATT_CHARS_CHAR_INDICATE_ON
            payload["indicate"] = 1

        def enabled(reply: dict[str, Any]) -> None:
            if reply.get("result") != GapiStatus.SUCCESS:
                error(reply)
                return
            self._toggle_event_stream(payload, notify, True, success, error)

        self.call(opcode, payload, enabled, error)

    def _op_unsubscribe(self, payload: dict[str, Any], success: Callback, error: Callback) -> None:
        notify = payload.get("notify") == 1
        if notify:
            opcode = C.GATT_CHARS_CHAR_NOTIFY_OFF
            payload["notify"] = 0
            payload.pop("indicate", None)
        else:
            opcode = C.GATT_CHARS_CHAR_INDICATE_OFF
            payload["indicate"] = 0
            payload.pop("notify", None)

        def disabled(reply: dict[str, Any]) -> None:
            self._toggle_event_stream(payload, notify, False, success, error)

        self.call(opcode, payload, disabled, error)

    def _toggle_event_stream(
        self,
        payload: Mapping[str, Any],
        notify: bool,
        enable: bool,
        success: Callback,
        error: Callback,
    ) -> None:
        message: dict[str, Any] = {"node": payload.get("node"), "ch": payload.get("ch"), "event": int(enable)}
        if notify:
            opcode = C.GATT_CHARS_CHAR_SUBSCRIBE_NOTIFY
            message["notify"] = 1
        else:
            opcode = C.GATT_CHARS_CHAR_SUBSCRIBE_INDICATE
            message["indicate"] = 1
        self.call(opcode, message, success, error)

    def cleanup_connection(self, reply: Mapping[str, Any]) -> None:
        node = normalize_target(reply.get("node"))
        if not node:
            return
        self._persistent.pop(node, None)
        self._oneshot.pop(node, None)

    # -------------------------
    # Streams
    # -------------------------

    def start_stream(self, payload: Mapping[str, Any]) -> bool:
        # event/report channels are subscribed for the whole connection
        return False

    def stop_stream(self) -> None:
        return None

    def notified(self, payload: Mapping[str, Any]) -> bool:
        # notifications arrive as directed messages on data-out
        return False

    def stop_notified(self) -> None:
        return None

    # -------------------------
    # Lifecycle
    # -------------------------

    def open(self, success: Callback, error: Callback) -> None:
        if self.connected and self.subscribed:
            success({})
            return
        session = self._session
        gwid = session.gwid
        acked: set[Channel] = set()
        failed = False

        def fail(reason: str) -> None:
            nonlocal failed
            failed = True
            self.reset()
            self._channel.close(lambda: None)
            error({"result": int(GapiStatus.BAD_REQUEST), "error": reason})

        def on_ack(channel: Channel) -> Callback:
            def ack(ok: bool) -> None:
                if failed:
                    return
                if not ok:
                    fail(f"subscribe to {gwid}/{channel.value} refused")
                    return
                acked.add(channel)
                if len(acked) == len(REPLY_CHANNELS):
                    logger.debug("Subscribed to %d reply channels", len(acked))
                    self.subscribed = True
                    success({})

            return ack

        def established() -> None:
            self.connected = True
            for channel in REPLY_CHANNELS:
                if failed:
                    return
                self._channel.subscribe(f"{gwid}/{channel.value}", on_ack(channel))

        def open_error(reason: str) -> None:
            if not failed:
                fail(reason)

        self._channel.open(
            CLIENT_ID_PREFIX + gwid,
            session.gapi_user,
            session.gapi_pwd,
            on_established=established,
            on_message=self.on_message,
            on_lost=self.on_connection_lost,
            on_error=open_error,
        )

    def on_connection_lost(self, reason: str = "") -> None:
        logger.warning("Pub/sub connection lost: %s", reason or "unknown")
        self.connected = False
        self.subscribed = False
        self._persistent.clear()
        self._oneshot.clear()
        entry, self._non_directed = self._non_directed, Continuation()
        reply = dict(NOT_CONNECTED_REPLY)
        if reason:
            reply["error"] = reason
        self._dispatcher.invoke(entry, False, reply)

    def close(self, success: Callback, error: Callback) -> None:
        self.reset()
        self._channel.close(lambda: success({}), lambda reason: error({"result": int(GapiStatus.BAD_REQUEST), "error": reason}))

    def reset(self) -> None:
        self.connected = False
        self.subscribed = False
        self._persistent.clear()
        self._oneshot.clear()
        self._non_directed = Continuation()


__all__ = ["CLIENT_ID_PREFIX", "NOT_CONNECTED_REPLY", "PubSubAdapter", "REPLY_CHANNELS"]
