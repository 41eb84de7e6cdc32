"""Tests for story_driver.llm — HttpLLM, EchoLLM and build_llm."""

import pytest
import httpx
from unittest.mock import AsyncMock, MagicMock, patch

from story_driver.llm import EchoLLM, HttpLLM, LLMError, build_llm


# ---------------------------------------------------------------------------
# EchoLLM
# ---------------------------------------------------------------------------

class TestEchoLLM:
    async def test_returns_fixed_reply(self) -> None:
        llm = EchoLLM("Aye.")
        assert await llm("talk_control", "anything at all") == "Aye."

    async def test_default_reply(self) -> None:
        assert await EchoLLM()("talk_control", "x") == "(no model configured)"


# ---------------------------------------------------------------------------
# HttpLLM — KoboldCpp format
# ---------------------------------------------------------------------------

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


class TestHttpLLMKoboldCpp:
    @pytest.fixture
    def llm(self) -> HttpLLM:
        return HttpLLM(provider_url="http://localhost:5001", api_key="", max_tokens=120)

    async def test_happy_path(self, llm: HttpLLM) -> None:
        body = {"results": [{"text": "Lute strums a chord."}]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await llm("talk_control", "Say hello.")
        assert result == "Lute strums a chord."

    async def test_posts_to_generate_url(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("talk_control", "prompt")
        assert mock_post.call_args[0][0] == "http://localhost:5001/api/v1/generate"

    async def test_sends_prompt_and_length(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("talk_control", "my prompt")
        assert mock_post.call_args.kwargs["json"] == {"prompt": "my prompt", "max_length": 120}

    async def test_bearer_token_sent_when_api_key_set(self) -> None:
        llm = HttpLLM(provider_url="http://localhost:5001", api_key="secret")
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("talk_control", "prompt")
        assert mock_post.call_args.kwargs["headers"].get("Authorization") == "Bearer secret"

    async def test_no_auth_header_when_no_api_key(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("talk_control", "prompt")
        assert "Authorization" not in mock_post.call_args.kwargs["headers"]

    async def test_trailing_slash_stripped_from_url(self) -> None:
        llm = HttpLLM(provider_url="http://localhost:5001/")
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("talk_control", "prompt")
        assert mock_post.call_args[0][0] == "http://localhost:5001/api/v1/generate"

    async def test_connect_error_raises_llm_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="Cannot connect"):
                await llm("talk_control", "prompt")

    async def test_timeout_raises_llm_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(side_effect=httpx.TimeoutException("timeout"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="timed out"):
                await llm("talk_control", "prompt")

    async def test_http_error_raises_llm_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({}, status=503))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="HTTP 503"):
                await llm("talk_control", "prompt")

    async def test_malformed_response_raises_llm_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"unexpected": "format"}))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="Unexpected response format"):
                await llm("talk_control", "prompt")


# ---------------------------------------------------------------------------
# HttpLLM — OpenAI format
# ---------------------------------------------------------------------------

class TestHttpLLMOpenAI:
    @pytest.fixture
    def llm(self) -> HttpLLM:
        return HttpLLM(
            provider_url="http://localhost:8080",
            provider_format="openai",
            model="mistral-7b",
        )

    async def test_posts_to_completions_url(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"choices": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("talk_control", "prompt")
        assert mock_post.call_args[0][0] == "http://localhost:8080/v1/completions"

    async def test_sends_model_and_max_tokens(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"choices": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("talk_control", "prompt")
        sent_body = mock_post.call_args.kwargs["json"]
        assert sent_body["model"] == "mistral-7b"
        assert sent_body["max_tokens"] == 200

    async def test_malformed_response_raises_llm_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": "kobold format"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="Unexpected response format"):
                await llm("talk_control", "prompt")


# ---------------------------------------------------------------------------
# build_llm
# ---------------------------------------------------------------------------

class TestBuildLLM:
    def test_echo_without_provider_url(self, monkeypatch) -> None:
        monkeypatch.delenv("LLM_PROVIDER_URL", raising=False)
        assert isinstance(build_llm(), EchoLLM)

    def test_http_with_provider_url(self, monkeypatch) -> None:
        monkeypatch.setenv("LLM_PROVIDER_URL", "http://localhost:5001")
        monkeypatch.setenv("LLM_PROVIDER_FORMAT", "bogus")
        assert isinstance(build_llm(), HttpLLM)
