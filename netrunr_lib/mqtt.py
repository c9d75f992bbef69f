"""
Pub/sub channel used by the pub/sub adapter.

`PahoChannel` speaks MQTT over websockets to the gateway broker. paho runs its
network loop on its own thread; every callback is handed back to the asyncio
loop with `call_soon_threadsafe`, so the adapter and the session tables are
only ever touched from the loop thread.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
from typing import Any, Callable, Optional, Protocol

import paho.mqtt.client as mqtt

from .const import PLAIN_WS_PORT

logger = logging.getLogger(__name__)

WS_PATH = "/mqtt"
KEEPALIVE_S = 60


class PubSubChannel(Protocol):
    def open(
        self,
        client_id: str,
        username: str,
        password: str,
        *,
        on_established: Callable[[], None],
        on_message: Callable[[str, bytes], None],
        on_lost: Callable[[str], None],
        on_error: Callable[[str], None],
    ) -> None: ...

    def subscribe(self, topic: str, on_ack: Callable[[bool], None]) -> None: ...

    def publish(self, topic: str, payload: str) -> bool: ...

    def close(self, on_closed: Callable[[], None], on_failure: Optional[Callable[[str], None]] = None) -> None: ...

    @property
    def connected(self) -> bool: ...


class PahoChannel:
    """paho-mqtt websocket client bound to one asyncio loop."""

    def __init__(
        self,
        host: str,
        port: int,
        *,
        use_ssl: bool = True,
        reject_unauthorized: bool = True,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._host = host
        self._port = port
        self._use_tls = use_ssl and port != PLAIN_WS_PORT
        self._reject_unauthorized = reject_unauthorized
        self._loop = loop
        self._client: Optional[mqtt.Client] = None
        self._connected = False
        self._closing = False

        self._on_established: Optional[Callable[[], None]] = None
        self._on_message: Optional[Callable[[str, bytes], None]] = None
        self._on_lost: Optional[Callable[[str], None]] = None
        self._on_error: Optional[Callable[[str], None]] = None
        self._on_closed: Optional[Callable[[], None]] = None
        self._pending_acks: dict[int, Callable[[bool], None]] = {}

    @property
    def connected(self) -> bool:
        return self._connected

    def open(
        self,
        client_id: str,
        username: str,
        password: str,
        *,
        on_established: Callable[[], None],
        on_message: Callable[[str, bytes], None],
        on_lost: Callable[[str], None],
        on_error: Callable[[str], None],
    ) -> None:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._on_established = on_established
        self._on_message = on_message
        self._on_lost = on_lost
        self._on_error = on_error
        self._closing = False

        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            transport="websockets",
        )
        client.ws_set_options(path=WS_PATH)
        if self._use_tls:
            client.tls_set(cert_reqs=ssl.CERT_REQUIRED if self._reject_unauthorized else ssl.CERT_NONE)
            client.tls_insecure_set(not self._reject_unauthorized)
        client.username_pw_set(username, password)
        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_subscribe = self._on_subscribe
        client.on_message = self._on_message_cb
        self._client = client

        scheme = "wss" if self._use_tls else "ws"
        logger.debug("Connecting %s://%s:%s%s as %s", scheme, self._host, self._port, WS_PATH, client_id)
        try:
            client.connect_async(self._host, self._port, KEEPALIVE_S)
        except (OSError, ValueError) as exc:
            logger.warning("MQTT connect failed: %s", exc)
            self._client = None
            on_error(str(exc))
            return
        client.loop_start()

    def subscribe(self, topic: str, on_ack: Callable[[bool], None]) -> None:
        if self._client is None:
            on_ack(False)
            return
        rc, mid = self._client.subscribe(topic, qos=0)
        if rc != mqtt.MQTT_ERR_SUCCESS or mid is None:
            logger.warning("MQTT subscribe to %s failed: rc=%s", topic, rc)
            on_ack(False)
            return
        self._pending_acks[mid] = on_ack

    def publish(self, topic: str, payload: str) -> bool:
        if self._client is None:
            return False
        info = self._client.publish(topic, payload=payload, qos=0)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning("MQTT publish to %s failed with code: %s", topic, info.rc)
            return False
        return True

    def close(self, on_closed: Callable[[], None], on_failure: Optional[Callable[[str], None]] = None) -> None:
        client = self._client
        if client is None:
            on_closed()
            return
        self._closing = True
        self._on_closed = on_closed
        rc = client.disconnect()
        if rc != mqtt.MQTT_ERR_SUCCESS and not self._connected:
            # never connected; no disconnect callback will follow
            self._finish_close()
            return
        if rc != mqtt.MQTT_ERR_SUCCESS:
            self._closing = False
            self._on_closed = None
            if on_failure is not None:
                on_failure(f"disconnect failed: rc={rc}")

    # ---- paho network-thread callbacks ----

    def _marshal(self, fn: Callable[..., None], *args: Any) -> None:
        assert self._loop is not None
        self._loop.call_soon_threadsafe(fn, *args)

    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        if reason_code.is_failure:
            self._marshal(self._handle_error, f"connection refused: {reason_code}")
        else:
            self._marshal(self._handle_established)

    def _on_connect_fail(self, client: mqtt.Client, userdata: Any) -> None:
        self._marshal(self._handle_error, "connection failed")

    def _on_disconnect(
        self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None
    ) -> None:
        self._marshal(self._handle_disconnect, str(reason_code))

    def _on_subscribe(
        self, client: mqtt.Client, userdata: Any, mid: int, reason_codes: Any, properties: Any = None
    ) -> None:
        ok = not any(getattr(code, "is_failure", False) for code in reason_codes)
        self._marshal(self._handle_suback, mid, ok)

    def _on_message_cb(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        self._marshal(self._handle_message, msg.topic, msg.payload)

    # ---- loop-thread handlers ----

    def _handle_established(self) -> None:
        self._connected = True
        logger.debug("MQTT connected")
        if self._on_established is not None:
            self._on_established()

    def _handle_error(self, reason: str) -> None:
        logger.warning("MQTT error: %s", reason)
        was_connected = self._connected
        self._stop_client()
        if was_connected:
            if self._on_lost is not None:
                self._on_lost(reason)
        elif self._on_error is not None:
            self._on_error(reason)

    def _handle_disconnect(self, reason: str) -> None:
        if self._closing:
            self._finish_close()
            return
        logger.warning("MQTT disconnected: %s", reason)
        was_connected = self._connected
        self._stop_client()
        if was_connected:
            if self._on_lost is not None:
                self._on_lost(reason)
        elif self._on_error is not None:
            self._on_error(reason)

    def _handle_suback(self, mid: int, ok: bool) -> None:
        on_ack = self._pending_acks.pop(mid, None)
        if on_ack is None:
            logger.debug("Unexpected SUBACK mid=%s", mid)
            return
        on_ack(ok)

    def _handle_message(self, topic: str, payload: bytes) -> None:
        if self._on_message is not None:
            self._on_message(topic, payload)

    def _finish_close(self) -> None:
        on_closed = self._on_closed
        self._on_closed = None
        self._closing = False
        self._stop_client()
        logger.debug("MQTT closed")
        if on_closed is not None:
            on_closed()

    def _stop_client(self) -> None:
        self._connected = False
        self._pending_acks.clear()
        client = self._client
        self._client = None
        if client is not None:
            client.loop_stop()


__all__ = ["PahoChannel", "PubSubChannel"]
