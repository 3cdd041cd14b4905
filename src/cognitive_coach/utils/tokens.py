"""Unified token estimation.

Single source of truth for the character-ratio heuristic used on every hot
path, plus a cache-backed exact count for reporting. The ratios are tuned
for mixed Chinese/English text and are approximations, not a tokenizer.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cognitive_coach.models.base import ModelProvider

logger = logging.getLogger(__name__)

CJK_CHARS_PER_TOKEN = 1.5
OTHER_CHARS_PER_TOKEN = 4.0

_CJK_PATTERN = re.compile(r"[\u4e00-\u9fff]")


def estimate_tokens(
    text: str,
    *,
    cjk_chars_per_token: float = CJK_CHARS_PER_TOKEN,
    other_chars_per_token: float = OTHER_CHARS_PER_TOKEN,
) -> int:
    """Estimate token count from character classes. Returns 0 for empty text.

    Deterministic and monotonic in text length, so budget checks and cache
    keys built on it are reproducible.
    """
    if not text:
        return 0
    cjk = len(_CJK_PATTERN.findall(text))
    other = len(text) - cjk
    return math.ceil(cjk / cjk_chars_per_token + other / other_chars_per_token)


def estimate_messages_tokens(messages: Iterable[object], **ratios: float) -> int:
    """Estimate tokens of message contents joined by newlines."""
    text = "\n".join(str(getattr(m, "content", "") or "") for m in messages)
    return estimate_tokens(text, **ratios)


@dataclass(frozen=True)
class TokenComparison:
    real: int
    heuristic: int
    difference: int
    percent_diff: float


@dataclass
class _CountEntry:
    tokens: int
    stored_at: float


class TokenCounter:
    """Exact token counts from the provider tokenizer, memoized.

    Falls back to the heuristic whenever the provider is missing or fails;
    ``count`` never raises.
    """

    CACHE_TTL_SECONDS = 60 * 60
    MAX_CACHE_SIZE = 1000

    def __init__(
        self,
        provider: ModelProvider | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        cjk_chars_per_token: float = CJK_CHARS_PER_TOKEN,
        other_chars_per_token: float = OTHER_CHARS_PER_TOKEN,
    ):
        self._provider = provider
        self._clock = clock
        self._ratios = {
            "cjk_chars_per_token": cjk_chars_per_token,
            "other_chars_per_token": other_chars_per_token,
        }
        self._cache: dict[str, _CountEntry] = {}

    def heuristic(self, text: str) -> int:
        return estimate_tokens(text, **self._ratios)

    def count_sync(self, text: str) -> int:
        return self.heuristic(text)

    async def count_exact(self, text: str) -> int:
        """Uncached provider count with heuristic fallback."""
        if not text:
            return 0
        if self._provider is not None:
            try:
                return int(await self._provider.count_tokens(text))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.debug("Real tokenizer failed, using heuristic: %s", e)
        return self.heuristic(text)

    async def count(self, text: str) -> int:
        if not text:
            return 0
        now = self._clock()
        cached = self._cache.get(text)
        if cached is not None and now - cached.stored_at < self.CACHE_TTL_SECONDS:
            return cached.tokens

        tokens = await self.count_exact(text)

        if text not in self._cache and len(self._cache) >= self.MAX_CACHE_SIZE:
            oldest = min(self._cache, key=lambda key: self._cache[key].stored_at)
            del self._cache[oldest]
        self._cache[text] = _CountEntry(tokens=tokens, stored_at=self._clock())
        return tokens

    async def count_batch(self, texts: list[str]) -> list[int]:
        if not texts:
            return []
        return list(await asyncio.gather(*(self.count(text) for text in texts)))

    async def compare(self, text: str) -> TokenComparison:
        real = await self.count_exact(text)
        heuristic = self.heuristic(text)
        difference = abs(real - heuristic)
        percent = (difference / real) * 100 if real > 0 else 0.0
        return TokenComparison(
            real=real,
            heuristic=heuristic,
            difference=difference,
            percent_diff=percent,
        )

    def clean(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        expired = [
            key for key, entry in self._cache.items()
            if now - entry.stored_at > self.CACHE_TTL_SECONDS
        ]
        for key in expired:
            del self._cache[key]
        if expired:
            logger.debug("Cleaned token cache: %d entries", len(expired))
        return len(expired)

    def stats(self) -> dict[str, int]:
        return {
            "size": len(self._cache),
            "max_size": self.MAX_CACHE_SIZE,
            "ttl_seconds": self.CACHE_TTL_SECONDS,
        }
