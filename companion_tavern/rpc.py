"""Correlation-based remote calls over a reply-less message channel.

The client side posts envelopes

    {"type": "CALL", "id": "<correlation id>", "endpoint": "ns.method", "params": {...}}

and waits for an inbound ``{"id", "data"?, "error"?}`` carrying the same id.
Whoever owns the underlying transport (a WebSocket, an in-process queue)
forwards every inbound message to ``RemoteCallClient.dispatch``.

A call always settles exactly once: with the reply payload, or with ``None``
on error reply, timeout, post failure or disconnect. ``None`` means "this
channel could not service the call" and is not an exception.

``ProxyHost`` is the other end: it serves CALL envelopes against a host API
object and answers through a reply callback. ``LoopbackBridge`` wires the two
together in one process.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

logger = logging.getLogger(__name__)

DEFAULT_CALL_TIMEOUT = 120.0


def resolve_path(obj: Any, path: str) -> Any:
    """Follow a dotted path through attributes or mapping keys.

    Returns None as soon as a segment is missing.
    """
    current = obj
    for name in path.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(name)
        else:
            current = getattr(current, name, None)
    return current


class MessagePort(Protocol):
    def post(self, message: dict[str, Any]) -> None: ...


@dataclass
class PendingCall:
    id: str
    issued_at: float
    timeout_handle: asyncio.TimerHandle
    future: asyncio.Future


# ---------------------------------------------------------------------------
# Client side
# ---------------------------------------------------------------------------

class RemoteCallClient:
    def __init__(self, port: MessagePort) -> None:
        self._port = port
        self._pending: dict[str, PendingCall] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def call(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        timeout: float = DEFAULT_CALL_TIMEOUT,
    ) -> Any | None:
        loop = asyncio.get_running_loop()
        call_id = f"rpc_{endpoint}_{uuid.uuid4().hex}"
        future: asyncio.Future = loop.create_future()
        handle = loop.call_later(timeout, self._expire, call_id)
        self._pending[call_id] = PendingCall(call_id, loop.time(), handle, future)

        envelope = {"type": "CALL", "id": call_id, "endpoint": endpoint, "params": params or {}}
        try:
            self._port.post(envelope)
        except Exception:
            logger.warning("remote call %s could not be posted", endpoint, exc_info=True)
            self._settle(call_id, None)

        try:
            return await future
        finally:
            # No-op when already settled; covers cancellation of the waiter.
            self._settle(call_id, None)

    def dispatch(self, message: Any) -> bool:
        """Feed one inbound message. Returns True if it settled a pending call."""
        if not isinstance(message, Mapping):
            return False
        call_id = message.get("id")
        if not isinstance(call_id, str) or call_id not in self._pending:
            return False

        if message.get("error"):
            logger.debug("remote call %s failed: %s", call_id, message["error"])
            value = None
        elif "data" in message:
            value = message["data"]
        else:
            value = dict(message)
        return self._settle(call_id, value)

    def close(self) -> None:
        """Settle every outstanding call with None, e.g. when the port disconnects."""
        for call_id in list(self._pending):
            self._settle(call_id, None)

    def _expire(self, call_id: str) -> None:
        if self._settle(call_id, None):
            logger.debug("remote call %s timed out", call_id)

    def _settle(self, call_id: str, value: Any) -> bool:
        entry = self._pending.pop(call_id, None)
        if entry is None:
            return False
        entry.timeout_handle.cancel()
        if not entry.future.done():
            entry.future.set_result(value)
        return True


# ---------------------------------------------------------------------------
# Host side
# ---------------------------------------------------------------------------

class ProxyError(Exception):
    """Raised by ProxyHost when an endpoint cannot be served."""


class ProxyHost:
    """Serves CALL envelopes against ``api``; answers through ``reply``."""

    def __init__(self, api: Any, reply: Callable[[dict[str, Any]], None]) -> None:
        self._api = api
        self._reply = reply

    async def handle(self, message: Any) -> None:
        if not isinstance(message, Mapping) or message.get("type") != "CALL":
            return
        call_id = message.get("id")
        endpoint = message.get("endpoint") or ""
        try:
            data = await self._invoke(endpoint, message.get("params") or {})
        except Exception as e:
            logger.warning("proxy call %s failed: %s", endpoint, e)
            self._reply({"id": call_id, "error": str(e) or type(e).__name__})
            return
        self._reply({"id": call_id, "data": data})

    async def _invoke(self, endpoint: str, params: dict[str, Any]) -> Any:
        if self._api is None:
            raise ProxyError("API not available")
        parts = endpoint.split(".")
        if len(parts) != 2 or not all(parts):
            raise ProxyError(f"Invalid endpoint format: {endpoint}")
        method = resolve_path(self._api, endpoint)
        if not callable(method):
            raise ProxyError(f"{endpoint} is not available")
        result = method(params)
        if inspect.isawaitable(result):
            result = await result
        return result


class LoopbackBridge:
    """A client and a host talking through the event loop, no real transport."""

    def __init__(self, api: Any) -> None:
        self.client = RemoteCallClient(self)
        self.host = ProxyHost(api, reply=self.client.dispatch)
        self._tasks: set[asyncio.Task] = set()

    def post(self, message: dict[str, Any]) -> None:
        task = asyncio.get_running_loop().create_task(self.host.handle(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
