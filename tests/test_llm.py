"""Tests for companion_tavern.llm: HttpLLM and EchoLLM."""

import json
import pytest
import httpx
from unittest.mock import AsyncMock, MagicMock, patch

from companion_tavern.errors import EmptyGeneration
from companion_tavern.llm import EchoLLM, HttpLLM, LLMError, estimate_max_tokens, explain_empty
from companion_tavern.models import ChatTurn, GenerationRequest


def _request(user_turn: str = "hello") -> GenerationRequest:
    return GenerationRequest(
        system_text="sys",
        history=(ChatTurn(role="user", content="hi"),),
        user_turn=user_turn,
    )


def _mock_response(body: dict, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body
    resp.raise_for_status = MagicMock(
        side_effect=None if status < 400 else httpx.HTTPStatusError(
            "", request=MagicMock(), response=resp
        )
    )
    return resp


def _openai_body(content, finish_reason: str = "stop", completion_tokens: int = 12) -> dict:
    return {
        "choices": [{"message": {"content": content}, "finish_reason": finish_reason}],
        "usage": {"completion_tokens": completion_tokens},
    }


# ---------------------------------------------------------------------------
# EchoLLM
# ---------------------------------------------------------------------------

class TestEchoLLM:
    async def test_replies_with_user_turn(self) -> None:
        result = await EchoLLM()(_request("hello world"))
        assert json.loads(result) == {"reply": "hello world", "status": {}}


# ---------------------------------------------------------------------------
# HttpLLM: OpenAI format
# ---------------------------------------------------------------------------

class TestHttpLLMOpenAI:
    @pytest.fixture
    def llm(self) -> HttpLLM:
        return HttpLLM(provider_url="https://api.example.com/v1/", api_key="secret", model="m-1")

    async def test_happy_path(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_openai_body("She waves.")))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await llm(_request())
        assert result == "She waves."

    async def test_posts_messages_to_chat_completions(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_openai_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm(_request())
        assert mock_post.call_args[0][0] == "https://api.example.com/v1/chat/completions"
        body = mock_post.call_args.kwargs["json"]
        assert body["model"] == "m-1"
        assert body["stream"] is False
        assert body["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "hi"},
            {"role": "user", "content": "hello"},
        ]
        assert body["max_tokens"] == estimate_max_tokens(_request())

    async def test_bearer_token(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_openai_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm(_request())
        assert mock_post.call_args.kwargs["headers"]["Authorization"] == "Bearer secret"

    async def test_model_omitted_when_unset(self) -> None:
        llm = HttpLLM(provider_url="http://localhost:8080/v1")
        mock_post = AsyncMock(return_value=_mock_response(_openai_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm(_request())
        assert "model" not in mock_post.call_args.kwargs["json"]
        assert "Authorization" not in mock_post.call_args.kwargs["headers"]

    async def test_falls_back_to_reasoning_content(self, llm: HttpLLM) -> None:
        body = {"choices": [{"message": {"content": None, "reasoning_content": "thinking aloud"}}]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            assert await llm(_request()) == "thinking aloud"

    async def test_empty_content_explains_finish_reason(self, llm: HttpLLM) -> None:
        body = _openai_body("", finish_reason="length", completion_tokens=0)
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(EmptyGeneration, match="length"):
                await llm(_request())

    async def test_zero_completion_tokens_is_empty(self, llm: HttpLLM) -> None:
        body = _openai_body("stale", completion_tokens=0)
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(EmptyGeneration):
                await llm(_request())

    async def test_unexpected_shape_raises(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"error": "nope"}))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="Unexpected response format"):
                await llm(_request())

    async def test_http_error_raises_llm_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({}, status=500))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="HTTP 500"):
                await llm(_request())

    async def test_connect_error_raises_llm_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="Cannot connect"):
                await llm(_request())

    async def test_timeout_raises_llm_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(side_effect=httpx.ReadTimeout("slow"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="timed out"):
                await llm(_request())

    @pytest.mark.parametrize("error", [
        httpx.ReadError("connection reset"),
        httpx.RemoteProtocolError("peer closed connection"),
    ])
    async def test_other_transport_errors_raise_llm_error(self, llm: HttpLLM, error) -> None:
        mock_post = AsyncMock(side_effect=error)
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="request failed"):
                await llm(_request())

    async def test_non_json_body_raises_llm_error(self, llm: HttpLLM) -> None:
        resp = _mock_response({})
        resp.json.side_effect = json.JSONDecodeError("Expecting value", "<html>", 0)
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
            with pytest.raises(LLMError, match="non-JSON body"):
                await llm(_request())

    @pytest.mark.parametrize("body", [
        ["not", "an", "object"],
        {"choices": ["oops"]},
        {"choices": [{"message": "plain string"}]},
        {"choices": [{"message": {"content": [{"type": "text", "text": "hi"}]}}]},
    ])
    async def test_odd_shapes_raise_llm_error(self, llm: HttpLLM, body) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response(body))):
            with pytest.raises(LLMError):
                await llm(_request())


# ---------------------------------------------------------------------------
# HttpLLM: KoboldCpp format
# ---------------------------------------------------------------------------

class TestHttpLLMKoboldCpp:
    @pytest.fixture
    def llm(self) -> HttpLLM:
        return HttpLLM(provider_url="http://localhost:5001", provider_format="koboldcpp")

    async def test_happy_path(self, llm: HttpLLM) -> None:
        body = {"results": [{"text": "The cafe is quiet."}]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await llm(_request())
        assert result == "The cafe is quiet."
        assert mock_post.call_args[0][0] == "http://localhost:5001/api/v1/generate"

    async def test_flattens_messages_into_prompt(self, llm: HttpLLM) -> None:
        body = {"results": [{"text": "ok"}]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm(_request())
        sent = mock_post.call_args.kwargs["json"]
        assert sent == {"prompt": "system: sys\n\nuser: hi\n\nuser: hello"}

    async def test_unexpected_shape_raises(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"results": []}))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError):
                await llm(_request())


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def test_max_tokens_grows_with_prompt():
    small = estimate_max_tokens(_request())
    big = estimate_max_tokens(_request("x" * 30000))
    assert small == 8001
    assert big > small


def test_max_tokens_is_capped():
    assert estimate_max_tokens(_request("x" * 300000)) == 32000


def test_explain_empty_unknown_reason():
    assert "unknown" in explain_empty(None)
    assert "content filter" in explain_empty("content_filter")
