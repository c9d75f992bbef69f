"""
netrunr_lib/polling.py

Polling wire adapter: every command is a POST to a named endpoint.

Replies carry no request id. The adapter keys each outstanding request by
`(target, endpoint)` when it is sent and, when a reply arrives, recovers the
endpoint from the echoed opcode (commands.endpoint_for_reply) and the target
from the reply's `node`, retrying with an empty target for broadcast replies.

Events and reports share one self re-arming poll on /c1/event. The legacy
notification stream re-polls /c1/notified at a fixed interval.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .commands import COMMANDS, channel_for_endpoint, endpoint_for_reply
from .const import NON_AUTHENTICATABLE, STREAM_ENDPOINTS, Endpoint, GapiStatus
from .dispatcher import Dispatcher
from .generators import target_of
from .http import ChannelHandle, HttpChannel
from .redact import redact_for_logging
from .session import Session
from .types import Callback, EventMessage, ReportMessage, RequestReply, is_success

logger = logging.getLogger(__name__)

RequestKey = tuple[str, Endpoint]


@dataclass(slots=True)
class _PendingRequest:
    success: Optional[Callback]
    error: Optional[Callback]
    handle: Optional[ChannelHandle] = None


def _call(fn: Optional[Callback], reply: dict[str, Any]) -> None:
    if fn is not None:
        fn(reply)


class PollingAdapter:
    def __init__(
        self,
        session: Session,
        channel: HttpChannel,
        dispatcher: Dispatcher,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._session = session
        self._channel = channel
        self._dispatcher = dispatcher
        self._loop = loop

        self._requests: dict[RequestKey, _PendingRequest] = {}

        self.polling = False
        self.streaming = False
        self._poll_args: dict[str, Any] = {}
        self._poll_seq = 0
        self._poll_handle: Optional[ChannelHandle] = None

        self.notifying = False
        self._notify_args: dict[str, Any] = {}
        self._notify_timer: Optional[asyncio.TimerHandle] = None

    # -------------------------
    # Wire
    # -------------------------

    @property
    def base_url(self) -> str:
        cfg = self._session.config
        scheme = "https" if cfg.use_ssl else "http"
        return f"{scheme}://{cfg.host}:{cfg.active_http_port}"

    def build_form(self, endpoint: Endpoint, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Copy `payload` and add session credentials unless the endpoint is pre-auth."""
        form = dict(payload)
        if endpoint in NON_AUTHENTICATABLE:
            return form
        session = self._session
        if not form.get("tid"):
            form["tid"] = session.tid
        if not form.get("token"):
            form["token"] = session.token
        gwid = form.get("gwid") or session.gwid
        form["gwid"] = f"{gwid}/{channel_for_endpoint(endpoint).value}"
        return form

    def call(
        self,
        endpoint: Endpoint,
        payload: Mapping[str, Any],
        on_response: Callback,
        on_failure: Callback,
        *,
        stream: bool = False,
    ) -> ChannelHandle:
        form = self.build_form(endpoint, payload)
        logger.debug("POST %s %s", endpoint.value, redact_for_logging(form))
        return self._channel.post(
            self.base_url + endpoint.value,
            form,
            stream=stream,
            on_response=on_response,
            on_failure=on_failure,
        )

    # -------------------------
    # Request/response correlation
    # -------------------------

    def request(
        self,
        endpoint: Endpoint,
        payload: Mapping[str, Any],
        success: Optional[Callback],
        error: Optional[Callback],
    ) -> None:
        key: RequestKey = (target_of(payload) or "", endpoint)
        if key in self._requests:
            logger.debug("Replacing outstanding request for %s %r", endpoint.value, key[0])
        pending = _PendingRequest(success=success, error=error)
        self._requests[key] = pending
        pending.handle = self.call(
            endpoint,
            payload,
            lambda raw: self._on_response(key, pending, raw),
            lambda reply: self._on_failure(key, pending, reply),
        )

    def pending_keys(self) -> list[RequestKey]:
        return list(self._requests)

    def _lookup(self, target: Optional[str], endpoint: Endpoint) -> Optional[RequestKey]:
        if target and (target, endpoint) in self._requests:
            return (target, endpoint)
        if ("", endpoint) in self._requests:
            return ("", endpoint)
        return None

    def _on_response(self, sent_key: RequestKey, sent: _PendingRequest, raw: dict[str, Any]) -> None:
        logger.debug("Reply for %s: %s", sent_key[1].value, redact_for_logging(raw))
        msg = self._dispatcher.classify(raw)
        if msg is None:
            self._on_failure(sent_key, sent, {"result": int(GapiStatus.BAD_REQUEST), "error": "empty reply"})
            return

        endpoint = endpoint_for_reply(raw) or sent_key[1]
        if isinstance(msg, (EventMessage, ReportMessage)):
            # a stream delivery on a request connection; the poll owns these
            self._dispatcher.dispatch_stream(msg)
            return

        key = self._lookup(msg.target, endpoint)
        if key is None and (msg.target is None or not msg.ok) and self._requests.get(sent_key) is sent:
            # an error or unaddressed reply on this POST belongs to the request it carried
            key = sent_key
        if key is None:
            logger.debug("No outstanding request for %s %r; reply dropped", endpoint.value, msg.target)
            return
        if raw.get("notifications") and endpoint not in STREAM_ENDPOINTS:
            logger.debug("Notification reply on %s request; ignored", endpoint.value)
            return
        pending = self._requests.pop(key)
        _call(pending.success, raw)

    def _on_failure(self, sent_key: RequestKey, sent: _PendingRequest, reply: dict[str, Any]) -> None:
        if self._requests.get(sent_key) is not sent:
            logger.debug("Unattributable failure for %s: %s", sent_key[1].value, reply.get("error") or reply)
            return
        del self._requests[sent_key]
        _call(sent.error, reply)

    # -------------------------
    # Gateway operations
    # -------------------------

    def execute(self, key: str, payload: dict[str, Any], success: Callback, error: Callback) -> None:
        endpoint = COMMANDS[key].endpoint
        if key == "scan":
            # a rejected token surfaces first on scan; forget it
            def checked(fn: Callback) -> Callback:
                def on_reply(reply: dict[str, Any]) -> None:
                    if reply.get("result") == GapiStatus.AUTHENTICATION_ERROR:
                        self._session.clear_auth()
                    fn(reply)

                return on_reply

            self.request(endpoint, payload, checked(success), checked(error))
            return
        if key in ("disconnect", "unsubscribe"):
            self.stop_notified()
        self.request(endpoint, payload, success, error)

    # -------------------------
    # Event/report poll
    # -------------------------

    def start_stream(self, payload: Mapping[str, Any]) -> bool:
        """Start the shared event/report poll; returns False if it is already running."""
        if self.polling:
            logger.debug("Already polling; request ignored")
            return False
        self.polling = True
        self._poll_args = {k: v for k, v in payload.items() if k not in ("did", "node")}
        self._issue_poll()
        return True

    def stop_stream(self) -> None:
        if not self.polling and self._poll_handle is None:
            return
        self.polling = False
        self._close_poll()

    def _issue_poll(self) -> None:
        self._poll_seq += 1
        seq = self._poll_seq
        stream = self._session.config.event_stream
        self.streaming = stream
        previous = self._poll_handle
        self._poll_handle = self.call(
            Endpoint.EVENT,
            self._poll_args,
            lambda raw: self._on_poll_reply(seq, raw),
            lambda reply: self._on_poll_failure(seq, reply),
            stream=stream,
        )
        if previous is not None:
            previous.cancel()

    def _close_poll(self) -> None:
        self._poll_seq += 1
        self.streaming = False
        handle, self._poll_handle = self._poll_handle, None
        if handle is not None:
            handle.cancel()

    def _on_poll_reply(self, seq: int, raw: dict[str, Any]) -> None:
        if seq != self._poll_seq:
            logger.debug("Reply from a superseded poll dropped")
            return
        msg = self._dispatcher.classify(raw)
        if isinstance(msg, (EventMessage, ReportMessage)):
            if msg.is_stream_end:
                self.streaming = False
            self._dispatcher.dispatch_stream(msg)
        elif isinstance(msg, RequestReply) and not msg.ok:
            self._on_poll_failure(seq, raw)
            return
        elif not raw:
            # request finished (long-poll timeout or end of event stream)
            self.streaming = False
        else:
            logger.debug("Non-stream reply on event poll ignored: %s", redact_for_logging(raw))

        # the continuation may have stopped or restarted the poll
        if seq == self._poll_seq and self.polling and not self.streaming:
            self._issue_poll()

    def _on_poll_failure(self, seq: int, reply: dict[str, Any]) -> None:
        if seq != self._poll_seq:
            logger.debug("Failure from a superseded poll dropped")
            return
        logger.warning("Event poll failed: %s", reply.get("error") or reply.get("result"))
        self.polling = False
        self._close_poll()
        self._dispatcher.dispatch_stream_failure(reply)

    # -------------------------
    # Legacy notifications
    # -------------------------

    def notified(self, payload: Mapping[str, Any]) -> bool:
        if self.notifying:
            logger.debug("Already notifying; request ignored")
            return False
        self.notifying = True
        self._notify_args = dict(payload)
        self._notify()
        return True

    def stop_notified(self) -> None:
        self.notifying = False
        if self._notify_timer is not None:
            self._notify_timer.cancel()
            self._notify_timer = None

    def _notify(self) -> None:
        self._notify_timer = None
        if not self.notifying:
            return
        self.request(Endpoint.NOTIFIED, self._notify_args, self._on_notify_reply, self._on_notify_failure)

    def _on_notify_reply(self, reply: dict[str, Any]) -> None:
        self._dispatcher.dispatch_notification(reply, ok=is_success(reply, accept_exists=True))
        if self.notifying:
            loop = self._loop or asyncio.get_running_loop()
            self._notify_timer = loop.call_later(self._session.config.notify_interval_s, self._notify)

    def _on_notify_failure(self, reply: dict[str, Any]) -> None:
        self.notifying = False
        self._dispatcher.dispatch_notification(reply, ok=False)

    # -------------------------
    # Accounts and lifecycle
    # -------------------------

    def account(
        self,
        endpoint: Endpoint,
        payload: Mapping[str, Any],
        success: Callback,
        error: Callback,
        *,
        require_token: bool = False,
    ) -> ChannelHandle:
        """Account/gateway-status calls; not correlated, one reply per POST."""

        def on_response(reply: dict[str, Any]) -> None:
            if require_token and not reply.get("token"):
                error(reply)
            elif require_token or is_success(reply):
                success(reply)
            else:
                error(reply)

        return self.call(endpoint, payload, on_response, error)

    def open(self, success: Callback, error: Callback) -> None:
        success({})

    def close(self, success: Callback, error: Callback) -> None:
        session = self._session

        def closed(reply: dict[str, Any]) -> None:
            self.reset()
            success({})

        self.call(Endpoint.CLOSE, {"token": session.token, "gwid": session.gwid}, closed, error)

    def reset(self) -> None:
        """Abort the poll, stop notifications and forget outstanding requests."""
        self.stop_stream()
        self.stop_notified()
        for pending in self._requests.values():
            if pending.handle is not None:
                pending.handle.cancel()
        self._requests.clear()


__all__ = ["PollingAdapter"]
