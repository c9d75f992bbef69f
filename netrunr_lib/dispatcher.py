"""
netrunr_lib/dispatcher.py

Response router shared by both wire adapters.

- classify(): decode an inbound envelope once, at the transport boundary.
- dispatch_stream(): deliver an event/report to its target's persistent
  continuation, falling back to the wildcard entry; a disconnect event also
  frees the named device's Serialization Guard lock.
- invoke(): run a caller continuation, isolating the router from exceptions
  raised inside it.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from .const import WILDCARD_TARGET, GapiEvent
from .session import Session
from .types import (
    Continuation,
    DecodedMessage,
    EventMessage,
    ReportMessage,
    StreamKind,
    decode_message,
    is_success,
    normalize_target,
)

logger = logging.getLogger(__name__)


class Dispatcher:
    def __init__(self, session: Session, *, log: Optional[logging.Logger] = None) -> None:
        self._session = session
        self._log = log or logger
        self._continuation_error_types: set[type] = set()

    @staticmethod
    def classify(obj: Any) -> Optional[DecodedMessage]:
        return decode_message(obj)

    def invoke(self, continuation: Optional[Continuation], ok: bool, reply: Mapping[str, Any]) -> bool:
        """Run the ok/error slot of `continuation`; returns True if a slot ran."""
        if continuation is None:
            return False
        try:
            return continuation.invoke(ok, dict(reply))
        except Exception as exc:  # noqa: BLE001
            exc_type = type(exc)
            if exc_type not in self._continuation_error_types:
                self._continuation_error_types.add(exc_type)
                self._log.warning("Continuation failed: %s", exc_type.__name__, exc_info=True)
            else:
                self._log.debug("Continuation failed again: %s", exc_type.__name__)
            return True

    def dispatch_stream(self, msg: DecodedMessage) -> bool:
        if isinstance(msg, ReportMessage):
            kind = StreamKind.REPORT
        elif isinstance(msg, EventMessage):
            kind = StreamKind.EVENT
        else:
            raise TypeError(f"not a stream message: {msg!r}")

        # unlock before delivery so the continuation may re-issue a command
        if kind is StreamKind.EVENT and msg.event == GapiEvent.DISCONNECT:
            self._on_disconnect_event(msg.target)

        found = self._session.registry.resolve_stream(msg.target, kind)
        if found is None:
            self._log.debug("No %s continuation for %r; dropped", kind.value, msg.target)
            return False
        _, entry = found
        return self.invoke(entry, msg.ok, msg.raw)

    def dispatch_notification(self, reply: Mapping[str, Any], *, ok: Optional[bool] = None) -> bool:
        """Deliver a legacy notification reply to the NOTIFICATION continuation."""
        target = normalize_target(reply.get("node"))
        found = self._session.registry.resolve_stream(target, StreamKind.NOTIFICATION)
        if found is None:
            self._log.debug("No notification continuation for %r; dropped", target)
            return False
        _, entry = found
        return self.invoke(entry, is_success(reply) if ok is None else ok, reply)

    def dispatch_stream_failure(self, reply: Mapping[str, Any]) -> bool:
        """A failed event poll has no target; report it to the wildcard error slots."""
        delivered = False
        for kind in (StreamKind.EVENT, StreamKind.REPORT):
            entry = self._session.registry.resolve(WILDCARD_TARGET, kind)
            delivered = self.invoke(entry, False, reply) or delivered
        if not delivered:
            self._log.warning("Event poll failed with no wildcard continuation: %s", reply.get("error") or reply)
        return delivered

    def _on_disconnect_event(self, target: Optional[str]) -> None:
        if not target or target == WILDCARD_TARGET:
            return
        self._session.connected_ids.discard(target)
        if self._session.guard.release(target):
            self._log.debug("Released %s after disconnect event", target)


__all__ = ["Dispatcher"]
