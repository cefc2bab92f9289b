"""LLM client: HTTP connection to a chat-completion backend.

The HTTP endpoint channel wraps an LLM callable matching the protocol:

    async def __call__(self, request: GenerationRequest) -> str: ...

Two implementations are provided:

    HttpLLM   - real HTTP client, supports OpenAI-compatible chat completions
                 and KoboldCpp. Selected by provider_format.
    EchoLLM   - answers with a minimal structured reply that echoes the user
                 turn. Useful for smoke-testing the turn wiring without a
                 running model.
"""

from __future__ import annotations

import json
import logging
from typing import Literal, Protocol

import httpx

from companion_tavern.errors import EmptyGeneration
from companion_tavern.models import GenerationRequest

logger = logging.getLogger(__name__)

# Rough chars-per-token ratio used to size the completion budget.
_CHARS_PER_TOKEN = 3
_BASE_COMPLETION_TOKENS = 8000
_MAX_COMPLETION_TOKENS = 32000

_FINISH_REASONS = {
    "length": "the token limit was reached before any text was produced",
    "content_filter": "the provider's content filter blocked the response",
    "stop": "the model stopped without producing any text",
}


# ---------------------------------------------------------------------------
# Protocol: every LLM implementation must match this signature
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(self, request: GenerationRequest) -> str: ...


def estimate_max_tokens(request: GenerationRequest) -> int:
    """Completion budget: a fixed base plus half the estimated prompt size."""
    prompt_chars = sum(len(m["content"]) for m in request.to_messages())
    prompt_tokens = prompt_chars // _CHARS_PER_TOKEN
    return min(_MAX_COMPLETION_TOKENS, _BASE_COMPLETION_TOKENS + prompt_tokens // 2)


def explain_empty(finish_reason: str | None) -> str:
    reason = _FINISH_REASONS.get(finish_reason or "", "the backend returned no text")
    return f"Empty generation ({finish_reason or 'unknown'}): {reason}"


# ---------------------------------------------------------------------------
# HttpLLM: connects to a real backend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["openai", "koboldcpp"]


class HttpLLM:
    """Async HTTP client for chat-completion backends.

    Supported formats:
      "openai"     - POST {base}/chat/completions  {"model", "messages", ...}
                     Response: {"choices": [{"message": {"content": "..."}}]}
      "koboldcpp"  - POST {base}/api/v1/generate   {"prompt": ...}
                     Response: {"results": [{"text": "..."}]}

    Args:
        provider_url:    Base URL of the backend, e.g. "https://api.openai.com/v1".
        api_key:         Bearer token, or empty string if not required.
        provider_format: Wire format to use. Defaults to "openai".
        model:           Model identifier, used only by the openai format.
        temperature:     Sampling temperature.
        timeout:         HTTP timeout in seconds. Defaults to 120.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "openai",
        model: str = "",
        temperature: float = 0.8,
        timeout: float = 120.0,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._temperature = temperature
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(self, request: GenerationRequest) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "koboldcpp":
            prompt = "\n\n".join(
                f"{m['role']}: {m['content']}" for m in request.to_messages()
            )
            return f"{self._base_url}/api/v1/generate", {"prompt": prompt}

        body: dict = {
            "messages": request.to_messages(),
            "temperature": self._temperature,
            "max_tokens": estimate_max_tokens(request),
            "stream": False,
        }
        if self._model:
            body["model"] = self._model
        return f"{self._base_url}/chat/completions", body

    def _parse_response(self, data: dict) -> str:
        """Extract the completion text from the response body."""
        if self._format == "koboldcpp":
            results = data.get("results")
            if not results or not isinstance(results[0], dict) or not isinstance(results[0].get("text"), str):
                raise LLMError("Unexpected response format from KoboldCpp backend")
            return results[0]["text"]

        choices = data.get("choices")
        if not choices or not isinstance(choices[0], dict) or "message" not in choices[0]:
            raise LLMError("Unexpected response format from OpenAI-compatible backend")
        choice = choices[0]
        message = choice["message"] or {}
        if not isinstance(message, dict):
            raise LLMError("Unexpected response format from OpenAI-compatible backend")
        text = message.get("content") or message.get("reasoning_content") or ""
        if not isinstance(text, str):
            raise LLMError("Unexpected message content type from OpenAI-compatible backend")
        usage = data.get("usage") or {}
        if not text.strip() or usage.get("completion_tokens") == 0:
            raise EmptyGeneration(explain_empty(choice.get("finish_reason")))
        return text

    async def __call__(self, request: GenerationRequest) -> str:
        url, body = self._build_request(request)
        logger.debug(
            "llm call url=%s messages=%d max_tokens=%s",
            url, len(request.history) + 2, body.get("max_tokens"),
        )

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"LLM backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise LLMError(f"LLM backend request failed: {e}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise LLMError(f"LLM backend at {self._base_url} returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise LLMError("Unexpected response format from LLM backend")
        text = self._parse_response(data)
        logger.debug("llm response len=%d", len(text))
        return text


# ---------------------------------------------------------------------------
# EchoLLM: structured echo of the user turn; no network calls
# ---------------------------------------------------------------------------

class EchoLLM:
    """Replies with ``{"reply": <user turn>, "status": {}}``.

    Lets you verify that assembly, parsing, merging and storage writes work
    end-to-end without a running model.
    """

    async def __call__(self, request: GenerationRequest) -> str:
        logger.debug("EchoLLM user_turn_len=%d", len(request.user_turn))
        return json.dumps({"reply": request.user_turn, "status": {}})


# ---------------------------------------------------------------------------
# LLMError: raised by HttpLLM for all connection and protocol failures
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or returns an error."""
