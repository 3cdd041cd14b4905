"""Tests for the Gemini provider over a mocked transport."""

from __future__ import annotations

import json

import httpx
import pytest

from cognitive_coach.config import ModelConfig
from cognitive_coach.models.base import (
    ErrorCode,
    GenerationConfig,
    ModelConnectionError,
    RunTier,
    resolve_timeout_seconds,
)
from cognitive_coach.models.gemini_provider import GeminiProvider, extract_json_payload

BASE_URL = "https://gemini.test/v1beta"


def _candidate(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def _provider(handler, *, api_key: str = "test-key") -> tuple[GeminiProvider, list]:
    requests: list[httpx.Request] = []

    def recording(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(recording), base_url=BASE_URL)
    return GeminiProvider(ModelConfig(api_key=api_key), client=client), requests


class TestExtractJsonPayload:
    def test_bare_json(self):
        assert extract_json_payload('{"a": 1}') == {"a": 1}

    def test_fenced_json(self):
        assert extract_json_payload('```json\n[1, 2]\n```') == [1, 2]

    def test_json_inside_prose(self):
        assert extract_json_payload('Here you go: {"goal": "x"} Enjoy!') == {"goal": "x"}

    @pytest.mark.parametrize("text", ["", "no json here", "{broken"])
    def test_unparseable(self, text):
        with pytest.raises(ValueError):
            extract_json_payload(text)


class TestTimeouts:
    def test_tier_budgets(self):
        assert resolve_timeout_seconds(RunTier.LITE) == 20.0
        assert resolve_timeout_seconds(RunTier.PRO) == 90.0
        assert resolve_timeout_seconds("Review") == 180.0

    def test_heavy_stage_gets_more_but_is_capped(self):
        assert resolve_timeout_seconds(RunTier.PRO, "s1") == 135.0
        assert resolve_timeout_seconds(RunTier.REVIEW, "s3") == 180.0

    def test_unknown_tier_defaults_to_pro(self):
        assert resolve_timeout_seconds("Ultra") == 90.0


class TestGeminiProvider:
    @pytest.mark.asyncio
    async def test_generate_json_success(self):
        provider, requests = _provider(
            lambda r: httpx.Response(200, json=_candidate('{"status": "clarified"}')),
        )
        result = await provider.generate_json(
            "prompt", GenerationConfig(temperature=0.6, max_output_tokens=100), RunTier.LITE,
        )
        assert result.ok
        assert result.data == {"status": "clarified"}

        request = requests[0]
        assert request.url.path.endswith("/models/gemini-2.5-flash-lite:generateContent")
        assert request.headers["x-goog-api-key"] == "test-key"
        body = json.loads(request.content)
        assert body["contents"][0]["parts"][0]["text"] == "prompt"
        assert body["generationConfig"] == {
            "temperature": 0.6,
            "maxOutputTokens": 100,
            "responseMimeType": "application/json",
        }

    @pytest.mark.asyncio
    async def test_generate_text_has_no_mime_type(self):
        provider, requests = _provider(lambda r: httpx.Response(200, json=_candidate("Hi")))
        result = await provider.generate_text("prompt", GenerationConfig())
        assert result.ok
        assert result.text == "Hi"
        assert "responseMimeType" not in json.loads(requests[0].content)["generationConfig"]

    @pytest.mark.asyncio
    async def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("GOOGLE_AI_API_KEY", raising=False)
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        provider, requests = _provider(lambda r: httpx.Response(200), api_key="")
        result = await provider.generate_json("prompt", GenerationConfig())
        assert not result.ok
        assert result.error == ErrorCode.NO_API_KEY
        assert requests == []

    @pytest.mark.asyncio
    async def test_api_key_from_environment(self, monkeypatch):
        monkeypatch.delenv("GOOGLE_AI_API_KEY", raising=False)
        monkeypatch.setenv("GEMINI_API_KEY", "env-key")
        provider, requests = _provider(
            lambda r: httpx.Response(200, json=_candidate("ok")), api_key="",
        )
        await provider.generate_text("prompt", GenerationConfig())
        assert requests[0].headers["x-goog-api-key"] == "env-key"

    @pytest.mark.asyncio
    async def test_rate_limit(self):
        provider, _ = _provider(lambda r: httpx.Response(429, text="quota"))
        result = await provider.generate_json("prompt", GenerationConfig())
        assert result.error == ErrorCode.RATE_LIMIT
        assert "429" in result.error_message

    @pytest.mark.asyncio
    async def test_server_error(self):
        provider, _ = _provider(lambda r: httpx.Response(503, text="unavailable"))
        result = await provider.generate_json("prompt", GenerationConfig())
        assert result.error == ErrorCode.API_ERROR
        assert result.detail == "HTTP 503"

    @pytest.mark.asyncio
    async def test_empty_candidates(self):
        provider, _ = _provider(lambda r: httpx.Response(200, json={"candidates": []}))
        result = await provider.generate_json("prompt", GenerationConfig())
        assert result.error == ErrorCode.EMPTY_RESPONSE

    @pytest.mark.asyncio
    async def test_non_object_envelope(self):
        provider, _ = _provider(lambda r: httpx.Response(200, json=[1, 2]))
        result = await provider.generate_json("prompt", GenerationConfig())
        assert result.error == ErrorCode.PARSE_ERROR
        assert result.detail == "provider returned an unexpected envelope"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {"candidates": "x"},
        {"candidates": ["x"]},
        {"candidates": [{"content": {"parts": "x"}}]},
    ])
    async def test_malformed_candidates(self, body):
        provider, _ = _provider(lambda r: httpx.Response(200, json=body))
        result = await provider.generate_json("prompt", GenerationConfig())
        assert result.error == ErrorCode.EMPTY_RESPONSE

    @pytest.mark.asyncio
    async def test_unparseable_json(self):
        provider, _ = _provider(
            lambda r: httpx.Response(200, json=_candidate("I cannot answer that")),
        )
        result = await provider.generate_json("prompt", GenerationConfig())
        assert result.error == ErrorCode.PARSE_ERROR
        assert result.raw == "I cannot answer that"

    @pytest.mark.asyncio
    async def test_transport_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        provider, _ = _provider(handler)
        result = await provider.generate_json("prompt", GenerationConfig())
        assert result.error == ErrorCode.TIMEOUT

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        provider, _ = _provider(handler)
        result = await provider.generate_json("prompt", GenerationConfig())
        assert result.error == ErrorCode.API_ERROR

    @pytest.mark.asyncio
    async def test_count_tokens(self):
        provider, requests = _provider(lambda r: httpx.Response(200, json={"totalTokens": 42}))
        assert await provider.count_tokens("hello") == 42
        assert requests[0].url.path.endswith(":countTokens")

    @pytest.mark.asyncio
    async def test_count_tokens_failure_raises(self):
        provider, _ = _provider(lambda r: httpx.Response(500))
        with pytest.raises(ModelConnectionError):
            await provider.count_tokens("hello")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{"tokens": 3}, [42]])
    async def test_count_tokens_unexpected_body_raises(self, body):
        provider, _ = _provider(lambda r: httpx.Response(200, json=body))
        with pytest.raises(ModelConnectionError, match="unexpected body"):
            await provider.count_tokens("hello")

    def test_model_for_tier(self):
        provider, _ = _provider(lambda r: httpx.Response(200))
        assert provider.model_for_tier(RunTier.REVIEW) == "gemini-2.5-pro"
        assert provider.model_for_tier(None) == "gemini-2.5-pro"
        assert provider.model_for_tier("bogus") == "gemini-2.5-pro"
        assert provider.model_for_tier("Lite") == "gemini-2.5-flash-lite"

    def test_repr_hides_api_key(self):
        assert "secret-key" not in repr(ModelConfig(api_key="secret-key"))
