"""Gemini model provider.

Talks to the Gemini REST API (``generateContent`` / ``countTokens``) and
translates every failure into an ``ErrorCode`` so callers never parse
provider-specific payloads themselves.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from typing import Any

import httpx

from cognitive_coach.config import ModelConfig
from cognitive_coach.models.base import (
    ErrorCode,
    GenerationConfig,
    GenerationResult,
    ModelConnectionError,
    ModelProvider,
    RunTier,
    resolve_timeout_seconds,
)

logger = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


def extract_json_payload(text: str) -> Any:
    """Parse a JSON value out of model text.

    Accepts bare JSON, fenced ```json blocks, and JSON surrounded by prose.
    Raises ``ValueError`` when nothing parseable is found.
    """
    value = str(text or "").strip()
    if not value:
        raise ValueError("empty text")

    fenced = _FENCE_PATTERN.match(value)
    if fenced:
        value = fenced.group(1).strip()

    try:
        return json.loads(value)
    except json.JSONDecodeError:
        pass

    starts = [idx for idx in (value.find("{"), value.find("[")) if idx >= 0]
    if not starts:
        raise ValueError("no JSON object or array in response")
    start = min(starts)
    closer = "}" if value[start] == "{" else "]"
    end = value.rfind(closer)
    if end <= start:
        raise ValueError("unterminated JSON in response")
    try:
        return json.loads(value[start:end + 1])
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid JSON: {e}") from e


class GeminiProvider(ModelProvider):
    """Provider for the Gemini ``generateContent`` endpoint."""

    def __init__(
        self,
        config: ModelConfig,
        *,
        client: httpx.AsyncClient | None = None,
    ):
        self._config = config
        self._api_key = config.resolved_api_key()
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=httpx.Timeout(_client_timeout()),
        )
        self._owns_client = client is None

    @property
    def name(self) -> str:
        return f"gemini:{self._config.pro_model}"

    def model_for_tier(self, tier: RunTier | str | None) -> str:
        try:
            resolved = RunTier(tier) if tier else RunTier.PRO
        except ValueError:
            resolved = RunTier.PRO
        if resolved == RunTier.LITE:
            return self._config.lite_model
        if resolved == RunTier.REVIEW:
            return self._config.review_model
        return self._config.pro_model

    async def generate_json(
        self,
        prompt: str,
        config: GenerationConfig,
        tier: RunTier | str | None = None,
        stage: str | None = None,
    ) -> GenerationResult:
        if config.response_mime_type is None:
            config = GenerationConfig(
                temperature=config.temperature,
                max_output_tokens=config.max_output_tokens,
                response_mime_type="application/json",
            )
        result = await self._generate(prompt, config, tier, stage)
        if not result.ok:
            return result
        try:
            data = extract_json_payload(result.text)
        except ValueError as e:
            logger.debug("Gemini JSON parse failed (stage=%s): %s", stage, e)
            return GenerationResult.failure(
                ErrorCode.PARSE_ERROR,
                detail=f"JSON parse failed: {e}",
                raw=result.text,
            )
        return GenerationResult.success(data, text=result.text, raw=result.raw)

    async def generate_text(
        self,
        prompt: str,
        config: GenerationConfig,
        tier: RunTier | str | None = None,
        stage: str | None = None,
    ) -> GenerationResult:
        return await self._generate(prompt, config, tier, stage)

    async def count_tokens(self, text: str) -> int:
        if not self._api_key:
            raise ModelConnectionError("Gemini API key is not configured")
        model = self.model_for_tier(RunTier.PRO)
        try:
            response = await self._client.post(
                f"/models/{model}:countTokens",
                headers={"x-goog-api-key": self._api_key},
                json={"contents": [{"role": "user", "parts": [{"text": text}]}]},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ModelConnectionError(f"countTokens failed: {e}", original=e) from e
        try:
            payload = response.json()
            return int(payload["totalTokens"])
        except (ValueError, TypeError, KeyError) as e:
            raise ModelConnectionError(f"countTokens returned an unexpected body: {e}") from e

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _generate(
        self,
        prompt: str,
        config: GenerationConfig,
        tier: RunTier | str | None,
        stage: str | None,
    ) -> GenerationResult:
        if not self._api_key:
            return GenerationResult.failure(
                ErrorCode.NO_API_KEY,
                detail="Set GOOGLE_AI_API_KEY or GEMINI_API_KEY",
            )

        model = self.model_for_tier(tier)
        timeout = resolve_timeout_seconds(tier, stage)
        generation_config: dict[str, Any] = {
            "temperature": config.temperature,
            "maxOutputTokens": config.max_output_tokens,
        }
        if config.response_mime_type:
            generation_config["responseMimeType"] = config.response_mime_type
        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }

        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.post(
                    f"/models/{model}:generateContent",
                    headers={"x-goog-api-key": self._api_key},
                    json=body,
                ),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning(
                "Gemini call timed out after %.0fs (model=%s, stage=%s)",
                timeout, model, stage,
            )
            return GenerationResult.failure(
                ErrorCode.TIMEOUT, detail=f"timeout after {timeout:.0f}s",
            )
        except httpx.HTTPError as e:
            logger.warning("Gemini transport error (model=%s): %s", model, e)
            return GenerationResult.failure(ErrorCode.API_ERROR, detail=str(e))

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.debug(
            "Gemini response status=%d model=%s stage=%s latency_ms=%d",
            response.status_code, model, stage, elapsed_ms,
        )

        if response.status_code == 429:
            return GenerationResult.failure(
                ErrorCode.RATE_LIMIT,
                detail="rate limit (HTTP 429)",
                raw=response.text[:200],
            )
        if response.status_code >= 400:
            return GenerationResult.failure(
                ErrorCode.API_ERROR,
                detail=f"HTTP {response.status_code}",
                raw=response.text[:200],
            )

        try:
            payload = response.json()
        except ValueError:
            return GenerationResult.failure(
                ErrorCode.PARSE_ERROR,
                detail="provider returned non-JSON envelope",
                raw=response.text[:200],
            )
        if not isinstance(payload, dict):
            return GenerationResult.failure(
                ErrorCode.PARSE_ERROR,
                detail="provider returned an unexpected envelope",
                raw=response.text[:200],
            )

        text = self._extract_text(payload)
        if not text.strip():
            return GenerationResult.failure(
                ErrorCode.EMPTY_RESPONSE,
                detail="model returned no text",
                raw=json.dumps(payload)[:200],
            )
        return GenerationResult.success(text=text, raw=text)

    @staticmethod
    def _extract_text(payload: dict) -> str:
        candidates = payload.get("candidates")
        if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
            return ""
        content = candidates[0].get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            return ""
        fragments = [
            str(part.get("text", ""))
            for part in parts
            if isinstance(part, dict) and part.get("text")
        ]
        return "".join(fragments).strip()


def _client_timeout() -> float:
    # Transport ceiling sits above the largest per-call budget.
    return resolve_timeout_seconds(RunTier.REVIEW, "s1") + 10.0
