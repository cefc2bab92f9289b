"""Transport resolution: which generation channel can serve this turn.

Preference order, first usable wins:

1. A capability object reachable in the injected context chain (current
   frame, then up to ``max_depth`` ancestors).
2. The remote proxy, but only after a short side-effect-free probe answers.
3. The directly configured HTTP endpoint.

``resolve()`` never raises; it returns ``NO_CHANNEL`` when nothing is usable.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, Protocol

from companion_tavern.channels import Channel, LocalDirect, PayloadStyle, RemoteProxy
from companion_tavern.rpc import RemoteCallClient, resolve_path

logger = logging.getLogger(__name__)


class ContextFrame(Protocol):
    """One execution context in the chain. Either method may raise on a boundary."""

    def capability(self, name: str) -> Any: ...

    def parent(self) -> ContextFrame | None: ...


class DictFrame:
    """A context frame backed by a plain mapping of capability objects."""

    def __init__(self, capabilities: Mapping[str, Any] | None = None, parent: ContextFrame | None = None) -> None:
        self._capabilities = dict(capabilities or {})
        self._parent = parent

    def capability(self, name: str) -> Any:
        return self._capabilities.get(name)

    def parent(self) -> ContextFrame | None:
        return self._parent


@dataclass(frozen=True)
class CapabilitySpec:
    name: str  # object name looked up in each frame
    method: str  # dotted path to the generate method on that object
    style: PayloadStyle = "st_api"


DEFAULT_CAPABILITIES = (
    CapabilitySpec("ST_API", "prompt.generate", "st_api"),
    CapabilitySpec("TavernHelper", "generate", "helper"),
)


class _NoChannel:
    name = "none"

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NO_CHANNEL"


NO_CHANNEL = _NoChannel()


class TransportResolver:
    def __init__(
        self,
        context: ContextFrame | None = None,
        remote: RemoteCallClient | None = None,
        endpoint: Channel | None = None,
        *,
        capabilities: tuple[CapabilitySpec, ...] = DEFAULT_CAPABILITIES,
        max_depth: int = 5,
        probe_timeout: float = 1.2,
    ) -> None:
        self.context = context
        self.remote = remote
        self.endpoint = endpoint
        self._capabilities = capabilities
        self._max_depth = max_depth
        self._probe_timeout = probe_timeout

    # ------------------------------------------------------------------
    # Direct capability discovery
    # ------------------------------------------------------------------

    def find_direct(self) -> LocalDirect | None:
        frame = self.context
        depth = 0
        while frame is not None and depth <= self._max_depth:
            channel = self._inspect(frame, depth)
            if channel is not None:
                return channel
            try:
                frame = frame.parent()
            except Exception as e:
                logger.debug("context walk stopped at depth %d: %s", depth, e)
                return None
            depth += 1
        return None

    def _inspect(self, frame: ContextFrame, depth: int) -> LocalDirect | None:
        for entry in self._capabilities:
            try:
                owner = frame.capability(entry.name)
                method = resolve_path(owner, entry.method) if owner is not None else None
            except Exception as e:
                logger.debug("context frame at depth %d not inspectable: %s", depth, e)
                return None
            if callable(method):
                logger.debug("found %s.%s at depth %d", entry.name, entry.method, depth)
                return LocalDirect(f"{entry.name}.{entry.method}", method, entry.style)
        return None

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def candidates(self) -> AsyncIterator[Channel]:
        """Yield every usable channel in preference order."""
        direct = self.find_direct()
        if direct is not None:
            yield direct

        if self.remote is not None:
            proxy = RemoteProxy(self.remote, self._probe_timeout)
            if await self._available(proxy):
                yield proxy

        if self.endpoint is not None and await self._available(self.endpoint):
            yield self.endpoint

    async def resolve(self) -> Channel | _NoChannel:
        async with aclosing(self.candidates()) as channels:
            async for channel in channels:
                return channel
        return NO_CHANNEL

    async def _available(self, channel: Channel) -> bool:
        try:
            return await channel.is_available()
        except Exception as e:
            logger.warning("availability check for %s failed: %s", channel.name, e)
            return False
