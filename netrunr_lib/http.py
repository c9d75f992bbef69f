"""
HTTP channel used by the polling adapter.

The adapter only needs "POST this form, call me back with each JSON reply";
`AiohttpChannel` provides that on top of aiohttp. Replies arrive either as a
single JSON body, or, for event-stream requests, as one `data:` event per JSON
object followed by `{}` when the server ends the stream. Failures are reported
as an envelope `{"result": 400, "error": ...}`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Mapping, Optional, Protocol

import aiohttp

from .const import GapiStatus

logger = logging.getLogger(__name__)

ReplyHandler = Callable[[dict[str, Any]], None]


class ChannelHandle(Protocol):
    def cancel(self) -> None: ...


class HttpChannel(Protocol):
    def post(
        self,
        url: str,
        form: Mapping[str, Any],
        *,
        stream: bool,
        on_response: ReplyHandler,
        on_failure: ReplyHandler,
    ) -> ChannelHandle: ...

    async def close(self) -> None: ...


def failure_envelope(exc: BaseException | str) -> dict[str, Any]:
    return {"result": int(GapiStatus.BAD_REQUEST), "error": str(exc)}


def encode_form(form: Mapping[str, Any]) -> dict[str, str]:
    """Flatten a payload into form fields; None is omitted and booleans become 0/1."""
    fields: dict[str, str] = {}
    for key, value in form.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = int(value)
        elif isinstance(value, (dict, list)):
            value = json.dumps(value)
        fields[key] = str(value)
    return fields


class _TaskHandle:
    def __init__(self, task: asyncio.Task[None]) -> None:
        self._task = task

    def cancel(self) -> None:
        if not self._task.done():
            self._task.cancel()

    @property
    def done(self) -> bool:
        return self._task.done()


class AiohttpChannel:
    """
    HTTP channel backed by an `aiohttp.ClientSession`.

    A caller-provided session is used as-is and left open by `close()`;
    otherwise one is created on first use and owned by the channel.
    """

    def __init__(
        self,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        verify_ssl: bool = True,
        request_timeout_s: Optional[float] = None,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self.verify_ssl = verify_ssl
        self._timeout = aiohttp.ClientTimeout(total=request_timeout_s)
        self._tasks: set[asyncio.Task[None]] = set()

    def post(
        self,
        url: str,
        form: Mapping[str, Any],
        *,
        stream: bool,
        on_response: ReplyHandler,
        on_failure: ReplyHandler,
    ) -> _TaskHandle:
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._post(url, encode_form(form), stream, on_response, on_failure))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return _TaskHandle(task)

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _post(
        self,
        url: str,
        fields: dict[str, str],
        stream: bool,
        on_response: ReplyHandler,
        on_failure: ReplyHandler,
    ) -> None:
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        if stream:
            headers["Accept"] = "text/event-stream"
        session = await self._ensure_session()
        try:
            async with session.post(url, data=fields, headers=headers, ssl=self.verify_ssl) as resp:
                if stream:
                    await self._read_event_stream(resp, on_response)
                else:
                    text = await resp.text()
                    on_response(_decode_body(text))
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.debug("POST %s failed: %s", url, exc)
            on_failure(failure_envelope(str(exc) or type(exc).__name__))
        except ValueError as exc:
            logger.debug("POST %s returned invalid JSON: %s", url, exc)
            on_failure(failure_envelope(f"invalid JSON reply: {exc}"))

    @staticmethod
    async def _read_event_stream(resp: aiohttp.ClientResponse, on_response: ReplyHandler) -> None:
        buffered: list[str] = []
        async for raw_line in resp.content:
            line = raw_line.decode("utf-8").rstrip("\r\n")
            if line.startswith("data:"):
                buffered.append(line[5:].lstrip())
                continue
            if not line and buffered:
                on_response(_decode_body("\n".join(buffered)))
                buffered.clear()
        if buffered:
            on_response(_decode_body("\n".join(buffered)))
        # an empty object marks the end of the stream
        on_response({})

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


def _decode_body(text: str) -> dict[str, Any]:
    text = text.strip()
    if not text:
        return {}
    obj = json.loads(text)
    if not isinstance(obj, dict):
        raise ValueError(f"expected a JSON object, got {type(obj).__name__}")
    return obj


__all__ = ["AiohttpChannel", "ChannelHandle", "HttpChannel", "encode_form", "failure_envelope"]
