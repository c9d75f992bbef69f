"""
Gateway client Session.

One Session per logical client. It owns everything the request correlation
engine mutates:
- credentials (user, tid, token, gateway id and the gateway ids the account may use)
- connection state and device bookkeeping
- the Serialization Guard and the Callback Registry

Adapters and the dispatcher receive the Session by reference; nothing else
keeps its own copy of these tables.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .guard import SerializationGuard
from .registry import CallbackRegistry
from .types import ClientConfig, TransportKind

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Transport lifecycle: closed -> opening -> open -> closed."""

    CLOSED = "closed"
    OPENING = "opening"
    OPEN = "open"


@dataclass
class Session:
    config: ClientConfig = field(default_factory=ClientConfig)

    user: str = ""
    tid: Optional[str] = None
    token: Optional[str] = None
    gwid: str = ""
    gwids: list[str] = field(default_factory=list)
    gapi_user: str = ""
    gapi_pwd: str = ""
    logged_in: bool = False

    state: SessionState = SessionState.CLOSED
    transport: Optional[TransportKind] = None
    connected_ids: set[str] = field(default_factory=set)

    guard: SerializationGuard = field(default_factory=SerializationGuard)
    registry: CallbackRegistry = field(default_factory=CallbackRegistry)

    def is_auth(self) -> bool:
        return bool(self.user and self.token)

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN and self.transport is not None

    def apply_credentials(self, **values: Any) -> None:
        """
        Store credentials returned by login/auth or passed to `config`.

        Pub/sub credentials follow the account ones unless given explicitly.
        """
        if "user" in values:
            self.user = values["user"] or ""
        if "tid" in values:
            self.tid = values["tid"]
        if "token" in values:
            self.token = values["token"]
        if "gwid" in values:
            self.gwid = values["gwid"] or ""

        if "gapi_user" in values:
            self.gapi_user = values["gapi_user"] or ""
        elif self.user:
            self.gapi_user = self.user
        if "gapi_pwd" in values:
            self.gapi_pwd = values["gapi_pwd"] or ""
        elif "token" in values:
            self.gapi_pwd = values["token"] or ""

    def set_gateway_ids(self, gwid: Any) -> Optional[str]:
        """Record the gateway ids from a login/auth reply; returns the default one."""
        if isinstance(gwid, (list, tuple)):
            self.gwids = [str(item) for item in gwid]
        elif gwid:
            self.gwids = [str(gwid)]
        else:
            self.gwids = []
        return self.gwids[0] if self.gwids else None

    def clear_auth(self) -> None:
        self.tid = None
        self.token = None

    def reset(self) -> None:
        """Drop transport state: registries, locks and device bookkeeping."""
        logger.debug(
            "Session reset (busy=%s, pending=%d)",
            self.guard.busy_targets(),
            self.registry.pending_count(),
        )
        self.state = SessionState.CLOSED
        self.transport = None
        self.connected_ids.clear()
        self.registry.clear_all()
        self.guard.reset()


__all__ = ["Session", "SessionState"]
