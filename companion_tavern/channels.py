"""Generation channels.

A channel is anything that accepts a GenerationRequest and eventually yields
text. Three variants exist, in order of preference:

    LocalDirect   - a generation capability object found in the host context
    RemoteProxy   - the same capability reached through correlated messages
    HttpEndpoint  - an OpenAI-compatible endpoint configured with credentials

Every variant raises TransportUnavailable when it cannot service a request so
the orchestrator can move on to the next one, and EmptyGeneration when it
answered with nothing.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Mapping
from typing import Any, Literal, Protocol

from companion_tavern.config import EndpointConfig
from companion_tavern.errors import EmptyGeneration, TransportUnavailable
from companion_tavern.llm import LLM, HttpLLM, LLMError
from companion_tavern.models import GenerationRequest
from companion_tavern.rpc import RemoteCallClient

logger = logging.getLogger(__name__)

PayloadStyle = Literal["st_api", "helper"]

GENERATE_ENDPOINT = "prompt.generate"
# Read-only call used to check that someone is listening on the other side.
PROBE_ENDPOINT = "ui.listSettingsPanels"


class Channel(Protocol):
    name: str

    async def is_available(self) -> bool: ...

    async def invoke(self, request: GenerationRequest, timeout: float) -> str: ...


# ---------------------------------------------------------------------------
# Payload shapes understood by host capabilities
# ---------------------------------------------------------------------------

def st_api_payload(request: GenerationRequest, timeout: float) -> dict[str, Any]:
    """Background generation that injects our system text and replaces chat history."""
    return {
        "writeToChat": False,
        "stream": False,
        "timeoutMs": int(timeout * 1000),
        "extraBlocks": [{"role": "system", "content": request.system_text, "index": 0}],
        "chatHistory": {
            "replace": [
                {"role": t.role, "content": t.content} for t in request.history
            ] + [{"role": "user", "content": request.user_turn}],
        },
        "preset": {"mode": "current"},
        "worldBook": {"mode": "current"},
    }


def helper_payload(request: GenerationRequest) -> dict[str, Any]:
    """The helper only takes the user input; the host supplies everything else."""
    return {"user_input": request.user_turn, "should_stream": False}


def extract_text(result: Any) -> str | None:
    """Pull generated text out of whatever a capability returned."""
    if isinstance(result, str):
        return result
    if isinstance(result, Mapping):
        text = result.get("text")
        if isinstance(text, str):
            return text
    return None


def _checked_text(channel: str, result: Any) -> str:
    text = extract_text(result)
    if text is None:
        raise TransportUnavailable(channel, "no text in result")
    if not text.strip():
        raise EmptyGeneration(f"{channel} returned an empty generation")
    return text


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------

class LocalDirect:
    """Calls a capability method found directly in the context chain."""

    def __init__(self, name: str, method: Callable[..., Any], style: PayloadStyle = "st_api") -> None:
        self.name = name
        self._method = method
        self._style = style

    async def is_available(self) -> bool:
        return callable(self._method)

    async def invoke(self, request: GenerationRequest, timeout: float) -> str:
        if self._style == "helper":
            payload = helper_payload(request)
        else:
            payload = st_api_payload(request, timeout)
        logger.debug("direct call %s style=%s", self.name, self._style)
        try:
            result = self._method(payload)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout)
        except asyncio.TimeoutError as e:
            raise TransportUnavailable(self.name, f"timed out after {timeout}s") from e
        except Exception as e:
            raise TransportUnavailable(self.name, str(e) or type(e).__name__) from e
        return _checked_text(self.name, result)


class RemoteProxy:
    """Reaches the host capability through the correlation client."""

    name = "remote-proxy"

    def __init__(self, client: RemoteCallClient, probe_timeout: float = 1.2) -> None:
        self._client = client
        self._probe_timeout = probe_timeout

    async def is_available(self) -> bool:
        answer = await self._client.call(PROBE_ENDPOINT, {}, self._probe_timeout)
        return answer is not None

    async def invoke(self, request: GenerationRequest, timeout: float) -> str:
        result = await self._client.call(
            GENERATE_ENDPOINT, st_api_payload(request, timeout), timeout
        )
        if result is None:
            raise TransportUnavailable(self.name, "no reply from remote proxy")
        return _checked_text(self.name, result)


class HttpEndpoint:
    """Directly configured endpoint + credential."""

    name = "http-endpoint"

    def __init__(self, endpoint: EndpointConfig, timeout: float = 120.0, llm: LLM | None = None) -> None:
        self._endpoint = endpoint
        self._llm = llm or HttpLLM(
            provider_url=endpoint.api_base,
            api_key=endpoint.api_key,
            provider_format=endpoint.provider_format,
            model=endpoint.model,
            temperature=endpoint.temperature,
            timeout=timeout,
        )

    async def is_available(self) -> bool:
        return self._endpoint.configured

    async def invoke(self, request: GenerationRequest, timeout: float) -> str:
        try:
            text = await asyncio.wait_for(self._llm(request), timeout)
        except asyncio.TimeoutError as e:
            raise TransportUnavailable(self.name, f"timed out after {timeout}s") from e
        except LLMError as e:
            raise TransportUnavailable(self.name, str(e)) from e
        return _checked_text(self.name, text)
