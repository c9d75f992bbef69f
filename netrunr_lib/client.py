"""
Session facade for the netrunr gateway.

GatewayClient is the public command surface. It wraps the Session, the
Serialization Guard, the Callback Registry and the two wire adapters with:
- one method per gateway operation, each taking `(args, success, error)`
- admission checks in a fixed order (auth, transport, guard, arguments)
- exactly-once delivery to the caller's continuations
- an awaitable wrapper returning structured `Result`s
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, Mapping, Optional, TypeVar, Union

from .commands import COMMANDS, CommandSpec, GuardScope
from .const import LIBRARY_VERSION, Endpoint, GapiStatus
from .dispatcher import Dispatcher
from .errors import (
    GapiBadRequest,
    GapiError,
    GapiInvalidArgument,
    GapiTimeoutError,
    error_for_reply,
)
from .generators import (
    generator_characteristics,
    generator_connect,
    generator_default_args,
    generator_descriptors,
    generator_disconnect,
    generator_notified,
    generator_pair,
    generator_passthrough,
    generator_read,
    generator_scan,
    generator_services,
    generator_show,
    generator_stream,
    generator_subscribe,
    generator_unsubscribe,
    generator_write,
    generator_write_no_response,
    target_of,
)
from .http import AiohttpChannel, HttpChannel
from .mqtt import PahoChannel, PubSubChannel
from .polling import PollingAdapter
from .pubsub import PubSubAdapter
from .session import Session, SessionState
from .types import (
    Callback,
    ClientConfig,
    Continuation,
    Reply,
    StreamKind,
    TransportKind,
    is_success,
    normalize_target,
    status_of,
)

T = TypeVar("T")

Args = Optional[Mapping[str, Any]]
WireAdapter = Union[PollingAdapter, PubSubAdapter]


@dataclass(frozen=True, slots=True)
class Result(Generic[T]):
    ok: bool
    data: Optional[T] = None
    error: Optional[BaseException] = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(ok=True, data=value, error=None)

    @classmethod
    def failure(cls, error: BaseException) -> "Result[T]":
        return cls(ok=False, data=None, error=error)

    def unwrap(self) -> T:
        if self.ok:
            return self.data  # type: ignore[return-value]
        if self.error is not None:
            raise self.error
        raise GapiError("Unknown error.")


__all__ = ["GatewayClient", "Result"]


_GENERATORS: dict[str, Callable[..., dict[str, Any]]] = {
    "scan": generator_scan,
    "connect": generator_connect,
    "disconnect": generator_disconnect,
    "show": generator_show,
    "services": generator_services,
    "characteristics": generator_characteristics,
    "descriptors": generator_descriptors,
    "read": generator_read,
    "write": generator_write,
    "write_no_response": generator_write_no_response,
    "subscribe": generator_subscribe,
    "unsubscribe": generator_unsubscribe,
    "pair": generator_pair,
}

# generators with an older describe/pairing variant
_LEGACY_AWARE = frozenset({"characteristics", "descriptors", "pair"})

_STREAM_KINDS = {"event": StreamKind.EVENT, "report": StreamKind.REPORT}

_GATEWAY_STATUS = {
    "online": "connected",
    "registered": "registered_this",
    "existing": "registered_other",
}

ACCOUNT_COMMANDS = frozenset({"create", "login", "logout", "auth", *_GATEWAY_STATUS})


class _PendingCall:
    """Completion for one admitted operation; runs at most once."""

    __slots__ = ("_client", "spec", "target", "lease", "entry", "done")

    def __init__(self, client: "GatewayClient", spec: CommandSpec, target: Optional[str], lease: Optional[int]) -> None:
        self._client = client
        self.spec = spec
        self.target = target
        self.lease = lease
        self.entry: Optional[Continuation] = None
        self.done = False

    def complete(self, reply: Reply) -> None:
        client = self._client
        if self.done:
            client._log.debug("Duplicate completion for %s %r ignored", self.spec.key, self.target)
            return
        self.done = True
        session = client.session
        session.guard.release(self.target, self.lease)

        ok = is_success(reply, accept_exists=self.spec.accept_exists)
        key = self.spec.key
        if key == "connect" and ok:
            node = normalize_target(reply.get("node")) or self.target
            if node:
                session.connected_ids.add(node)
        elif key == "show" and ok and self.target is None:
            if normalize_target(reply.get("node")) not in (None, "*"):
                client._log.debug("Gateway-wide show answered for a device: %s", reply.get("node"))
                ok = False
        elif self.spec.suppress_errors and not ok:
            client._log.debug("%s error suppressed: %s", key, status_of(reply))
            ok = True

        entry = session.registry.resolve(self.target, StreamKind.REQUEST, expected=self.entry)
        if entry is None:
            client._log.debug("Reply for superseded %s %r dropped", key, self.target)
            return
        client._dispatcher.invoke(entry, ok, reply)


class GatewayClient:
    """
    Gateway client facade.

    Every operation returns immediately with a status: 200 when the request
    was admitted, otherwise the admission error that was also delivered to
    `error`. The outcome of an admitted request arrives later through exactly
    one of `success` or `error`.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        http_channel: Optional[HttpChannel] = None,
        pubsub_channel: Optional[PubSubChannel] = None,
        logger: Optional[logging.Logger] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._log = logger or logging.getLogger(__name__)
        if logger is None and config is not None and config.logger_name:
            self._log = logging.getLogger(config.logger_name)
        self.session = Session(config=config or ClientConfig())
        self._loop = loop
        self._dispatcher = Dispatcher(self.session, log=self._log)

        self._owns_http_channel = http_channel is None
        if http_channel is None:
            http_channel = AiohttpChannel(verify_ssl=self.session.config.reject_unauthorized)
        self._http_channel = http_channel
        self._pubsub_channel = pubsub_channel

        self._http = PollingAdapter(self.session, http_channel, self._dispatcher, loop=loop)
        self._pubsub: Optional[PubSubAdapter] = None
        self._adapter: Optional[WireAdapter] = None

    # -------------------------
    # State
    # -------------------------

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def is_open(self) -> bool:
        return self.session.is_open

    @property
    def connected_ids(self) -> frozenset[str]:
        return frozenset(self.session.connected_ids)

    @staticmethod
    def version_sdk() -> str:
        return LIBRARY_VERSION

    def is_auth(self) -> bool:
        return self.session.is_auth()

    def clear_auth(self) -> None:
        self.session.clear_auth()

    def config(self, **values: Any) -> bool:
        """
        Reconfigure the client while no transport is open.

        Accepts ClientConfig fields plus credentials (`user`, `tid`, `token`,
        `gapi_user`, `gapi_pwd`) and a `gwid` from the last login/auth reply.
        Returns False (and changes nothing) on any rejected value.
        """
        session = self.session
        if not values or session.state is not SessionState.CLOSED:
            return False

        if "transport" in values:
            try:
                values["transport"] = TransportKind(values["transport"])
            except ValueError:
                self._log.warning("Unknown transport kind: %r", values["transport"])
                return False
        if "gwid" in values and values["gwid"] not in session.gwids:
            self._log.warning("Gateway id %r is not one of this account's gateways", values["gwid"])
            return False

        fields = {f.name for f in dataclasses.fields(ClientConfig)}
        config_values = {k: v for k, v in values.items() if k in fields}
        credentials = {k: v for k, v in values.items() if k not in fields}
        unknown = set(credentials) - {"user", "tid", "token", "gwid", "gapi_user", "gapi_pwd"}
        if unknown:
            self._log.warning("Unknown configuration keys: %s", ", ".join(sorted(unknown)))
            return False

        if config_values:
            session.config = dataclasses.replace(session.config, **config_values)
            if self._owns_http_channel and isinstance(self._http_channel, AiohttpChannel):
                self._http_channel.verify_ssl = session.config.reject_unauthorized
        if credentials:
            session.apply_credentials(**credentials)
        return True

    # -------------------------
    # Admission and delivery
    # -------------------------

    def _deliver(self, success: Optional[Callback], error: Optional[Callback], ok: bool, reply: Reply) -> None:
        self._dispatcher.invoke(Continuation(success=success, error=error), ok, reply)

    def _reject(self, error: Optional[Callback], status: GapiStatus | int, message: Optional[str] = None) -> int:
        reply: Reply = {"result": int(status)}
        if message:
            reply["error"] = message
        self._deliver(None, error, False, reply)
        return int(status)

    def _admit_transport(self, error: Optional[Callback]) -> tuple[Optional[WireAdapter], int]:
        """Return the open adapter, or None and the status already reported to `error`."""
        if not self.session.is_auth():
            return None, self._reject(error, GapiStatus.AUTHENTICATION_ERROR)
        if self._adapter is None or not self.session.is_open:
            return None, self._reject(error, GapiStatus.BAD_REQUEST)
        return self._adapter, int(GapiStatus.SUCCESS)

    def _generate(self, key: str, args: Args) -> dict[str, Any]:
        generator = _GENERATORS.get(key, generator_passthrough)
        if key in _LEGACY_AWARE:
            return generator(args, legacy=self.session.config.legacy_describe)
        return generator(args)

    def _guard_target(self, spec: CommandSpec, args: Args) -> Optional[str]:
        if spec.scope is GuardScope.TARGET:
            return target_of(generator_default_args(args))
        return None

    def _execute(self, key: str, args: Args, success: Optional[Callback], error: Optional[Callback]) -> int:
        spec = COMMANDS[key]
        adapter, status = self._admit_transport(error)
        if adapter is None:
            return status

        session = self.session
        target = self._guard_target(spec, args)
        if not session.guard.try_acquire(target):
            return self._reject(error, GapiStatus.CONFLICT)
        lease = session.guard.lease(target)

        try:
            payload = self._generate(key, args)
        except GapiInvalidArgument as exc:
            session.guard.release(target, lease)
            return self._reject(error, exc.status, str(exc))

        if key == "disconnect":
            # the device may already be gone even if the request fails
            if target is None:
                session.connected_ids.clear()
            else:
                session.connected_ids.discard(target)

        pending = _PendingCall(self, spec, target, lease)
        pending.entry = session.registry.register(target, StreamKind.REQUEST, success, error)
        adapter.execute(key, payload, pending.complete, pending.complete)
        return int(GapiStatus.SUCCESS)

    # -------------------------
    # Gateway operations
    # -------------------------

    def scan(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        """List advertising devices for `period` seconds; passive unless `active` is set."""
        return self._execute("scan", args, success, error)

    def connect(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        return self._execute("connect", args, success, error)

    def disconnect(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        """Disconnect `did`, or every device when no id (or `*`) is given."""
        return self._execute("disconnect", args, success, error)

    def show(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        return self._execute("show", args, success, error)

    def services(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        return self._execute("services", args, success, error)

    def characteristics(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        return self._execute("characteristics", args, success, error)

    def descriptors(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        return self._execute("descriptors", args, success, error)

    def read(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        return self._execute("read", args, success, error)

    def write(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        return self._execute("write", args, success, error)

    def write_no_response(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        return self._execute("write_no_response", args, success, error)

    def subscribe(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        """Enable notifications (`notify=1`) or indications on `ch`."""
        return self._execute("subscribe", args, success, error)

    def unsubscribe(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        """Disable notifications or indications; wire errors are reported as success."""
        return self._execute("unsubscribe", args, success, error)

    def pair(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        return self._execute("pair", args, success, error)

    def configuration(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        return self._execute("configuration", args, success, error)

    def echo(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        return self._execute("echo", args, success, error)

    def version(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        return self._execute("version", args, success, error)

    def debug(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        return self._execute("debug", args, success, error)

    def upload(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        return self._execute("upload", args, success, error)

    def advertise(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        return self._execute("advertise", args, success, error)

    def reboot(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        return self._execute("reboot", args, success, error)

    # -------------------------
    # Streams
    # -------------------------

    def event(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        """
        Register (or, with no continuations, clear) the event stream for `did`.

        `did="*"` registers the catch-all continuation for events whose device
        has no registration of its own.
        """
        return self._stream("event", args, success, error)

    def report(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        return self._stream("report", args, success, error)

    def _stream(self, key: str, args: Args, success: Optional[Callback], error: Optional[Callback]) -> int:
        adapter, status = self._admit_transport(error)
        if adapter is None:
            return status
        try:
            payload, target = generator_stream(args)
        except GapiInvalidArgument as exc:
            return self._reject(error, exc.status, str(exc))

        registry = self.session.registry
        kind = _STREAM_KINDS[key]
        if success is not None or error is not None:
            registry.register(target, kind, success, error)
            adapter.start_stream(payload)
        else:
            registry.clear(target, kind)
            if not registry.pending_count(StreamKind.EVENT) and not registry.pending_count(StreamKind.REPORT):
                adapter.stop_stream()
        return int(GapiStatus.SUCCESS)

    def notified(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        """Legacy notification stream for `did` (or every device)."""
        adapter, status = self._admit_transport(error)
        if adapter is None:
            return status
        payload, target = generator_notified(args)
        registry = self.session.registry
        if success is not None or error is not None:
            registry.register(target, StreamKind.NOTIFICATION, success, error)
            adapter.notified(payload)
        else:
            registry.clear(target, StreamKind.NOTIFICATION)
            if not registry.pending_count(StreamKind.NOTIFICATION):
                adapter.stop_notified()
        return int(GapiStatus.SUCCESS)

    # -------------------------
    # Transport lifecycle
    # -------------------------

    def _pubsub_adapter(self) -> PubSubAdapter:
        if self._pubsub is None:
            channel = self._pubsub_channel
            if channel is None:
                cfg = self.session.config
                channel = PahoChannel(
                    cfg.host,
                    cfg.port,
                    use_ssl=cfg.use_ssl,
                    reject_unauthorized=cfg.reject_unauthorized,
                    loop=self._loop,
                )
            self._pubsub = PubSubAdapter(self.session, channel, self._dispatcher)
        return self._pubsub

    def open(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        """Open the HTTP adapter, then the pub/sub adapter when it is the selected transport."""
        session = self.session
        if self._adapter is not None or session.state is not SessionState.CLOSED:
            return self._reject(error, GapiStatus.BAD_REQUEST)

        kind = session.config.transport
        adapter: WireAdapter = self._http if kind is TransportKind.POLLING else self._pubsub_adapter()
        self._adapter = adapter
        session.state = SessionState.OPENING
        self._log.debug("Opening %s transport", kind.value)

        def opened(reply: Reply) -> None:
            if self._adapter is not adapter:
                return
            session.state = SessionState.OPEN
            session.transport = kind
            self._log.debug("Transport open")
            self._deliver(success, error, True, reply)

        def failed(reply: Reply) -> None:
            if self._adapter is adapter and session.state is SessionState.OPENING:
                session.state = SessionState.CLOSED
                session.transport = None
                self._adapter = None
            self._log.warning("Transport open failed: %s", reply.get("error") or reply.get("result"))
            self._deliver(success, error, False, reply)

        def http_opened(reply: Reply) -> None:
            if adapter is self._http:
                opened(reply)
            else:
                adapter.open(opened, failed)

        self._http.open(http_opened, failed)
        return int(GapiStatus.SUCCESS)

    def close(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        """Close the transport; all registrations, locks and pending calls are discarded."""
        adapter, status = self._admit_close(error)
        if adapter is None:
            return status

        def closed(reply: Reply) -> None:
            if adapter is not self._http:
                self._http.reset()
            self.session.reset()
            self._adapter = None
            self._pubsub = None
            self._log.debug("Transport closed")
            self._deliver(success, None, True, reply)

        def failed(reply: Reply) -> None:
            self._deliver(None, error, False, reply)

        adapter.close(closed, failed)
        return int(GapiStatus.SUCCESS)

    def _admit_close(self, error: Optional[Callback]) -> tuple[Optional[WireAdapter], int]:
        if not self.session.is_auth():
            return None, self._reject(error, GapiStatus.AUTHENTICATION_ERROR)
        if self._adapter is None:
            return None, self._reject(error, GapiStatus.BAD_REQUEST)
        return self._adapter, int(GapiStatus.SUCCESS)

    # -------------------------
    # Accounts
    # -------------------------

    def create(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        self._http.account(
            Endpoint.CREATE,
            dict(args or {}),
            lambda reply: self._deliver(success, error, True, reply),
            lambda reply: self._deliver(success, error, False, reply),
        )
        return int(GapiStatus.SUCCESS)

    def login(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        """Log in with `user`/`pwd`; stores the token and the account's gateway ids."""
        payload = dict(args or {})
        session = self.session

        def logged_in(reply: Reply) -> None:
            session.apply_credentials(user=payload.get("user"), tid=reply.get("tid"), token=reply.get("token"))
            default_gwid = session.set_gateway_ids(reply.get("gwid"))
            if default_gwid:
                session.apply_credentials(gwid=default_gwid)
            session.logged_in = True
            self._deliver(success, error, True, reply)

        self._http.account(
            Endpoint.LOGIN,
            payload,
            logged_in,
            lambda reply: self._deliver(success, error, False, reply),
            require_token=True,
        )
        return int(GapiStatus.SUCCESS)

    def logout(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        session = self.session
        if not session.logged_in:
            return self._reject(error, GapiStatus.AUTHENTICATION_ERROR, "Not logged in")
        payload = dict(args or {})
        payload["token"] = session.token

        def logged_out(reply: Reply) -> None:
            session.clear_auth()
            session.logged_in = False
            self._deliver(success, error, True, reply)

        self._http.account(
            Endpoint.LOGOUT,
            payload,
            logged_out,
            lambda reply: self._deliver(success, error, False, reply),
        )
        return int(GapiStatus.SUCCESS)

    def auth(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        """
        Validate credentials.

        With `user` and `pwd` (or `token`) the gateway validates them and the
        returned token is stored. Otherwise the stored token is checked locally.
        """
        payload = dict(args or {})
        session = self.session

        if payload.get("user") and (payload.get("pwd") or payload.get("token")):
            def authenticated(reply: Reply) -> None:
                session.apply_credentials(user=payload.get("user"), tid=reply.get("tid"), token=reply.get("token"))
                default_gwid = session.set_gateway_ids(reply.get("gwid"))
                session.apply_credentials(gwid=default_gwid or "")
                self._deliver(success, error, True, reply)

            def rejected(reply: Reply) -> None:
                if status_of(reply) in (None, GapiStatus.SUCCESS):
                    reply = {"result": int(GapiStatus.AUTHENTICATION_ERROR)}
                self._deliver(success, error, False, reply)

            self._http.account(Endpoint.AUTH, payload, authenticated, rejected, require_token=True)
            return int(GapiStatus.SUCCESS)

        if session.token:
            self._deliver(success, error, True, {"tid": session.tid, "token": session.token, "gwid": session.gwid})
            return int(GapiStatus.SUCCESS)
        return self._reject(error, GapiStatus.AUTHENTICATION_ERROR, "Not authenticated")

    def online(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        return self._gateway_status("online", args, success, error)

    def registered(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        return self._gateway_status("registered", args, success, error)

    def existing(self, args: Args = None, success: Optional[Callback] = None, error: Optional[Callback] = None) -> int:
        return self._gateway_status("existing", args, success, error)

    def _gateway_status(self, key: str, args: Args, success: Optional[Callback], error: Optional[Callback]) -> int:
        payload = dict(args or {})
        payload["c"] = _GATEWAY_STATUS[key]
        self._http.account(
            Endpoint.GATEWAY,
            payload,
            lambda reply: self._deliver(success, error, True, reply),
            lambda reply: self._deliver(success, error, False, reply),
        )
        return int(GapiStatus.SUCCESS)

    # -------------------------
    # Async wrappers
    # -------------------------

    async def _await_reply(
        self,
        op: Callable[[Args, Optional[Callback], Optional[Callback]], int],
        args: Args,
        timeout_s: Optional[float],
        name: str,
    ) -> Result[Reply]:
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[Reply] = loop.create_future()

        def on_success(reply: Reply) -> None:
            if not fut.done():
                fut.set_result(reply)

        def on_error(reply: Reply) -> None:
            if not fut.done():
                fut.set_exception(error_for_reply(reply))

        op(args, on_success, on_error)
        try:
            if timeout_s is None:
                reply = await fut
            else:
                reply = await asyncio.wait_for(fut, timeout_s)
        except asyncio.TimeoutError:
            return Result.failure(GapiTimeoutError(f"{name} timed out after {timeout_s}s."))
        except GapiError as exc:
            return Result.failure(exc)
        return Result.success(reply)

    async def async_execute(
        self,
        command_key: str,
        /,
        *,
        timeout_s: Optional[float] = None,
        **params: Any,
    ) -> Result[Reply]:
        """
        Run one request/response or account command and await its reply.

        Stream registrations (event, report, notified) are long-lived and are
        not available here; use the callback methods.
        """
        spec = COMMANDS.get(command_key)
        if command_key in ACCOUNT_COMMANDS:
            op = getattr(self, command_key)
        elif spec is not None and not spec.stream:
            op = getattr(self, spec.key)
        else:
            return Result.failure(
                GapiBadRequest(GapiStatus.BAD_REQUEST, f"Unknown command_key={command_key!r}")
            )
        return await self._await_reply(op, params, timeout_s, command_key)

    async def async_open(self, *, timeout_s: Optional[float] = None) -> Result[Reply]:
        return await self._await_reply(self.open, None, timeout_s, "open")

    async def async_close(self, *, timeout_s: Optional[float] = None) -> Result[Reply]:
        result = await self._await_reply(self.close, None, timeout_s, "close")
        if self._owns_http_channel and self._adapter is None:
            await self._http_channel.close()
        return result
