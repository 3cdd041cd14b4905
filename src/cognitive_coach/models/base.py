"""Abstract model interface.

The core consumes exactly one external capability: "generate a JSON value
or a block of text from a prompt". Providers implement this interface and
report failures as a structured ``ErrorCode`` instead of raising, so the
retry engine can classify them without parsing provider wire formats.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from cognitive_coach.exceptions import ModelError


class RunTier(StrEnum):
    """Quality/latency/cost profile for a generation call."""

    LITE = "Lite"
    PRO = "Pro"
    REVIEW = "Review"


class ErrorCode(StrEnum):
    """Failure codes reported by model providers."""

    NO_API_KEY = "NO_API_KEY"
    EMPTY_RESPONSE = "EMPTY_RESPONSE"
    PARSE_ERROR = "PARSE_ERROR"
    SCHEMA_VALIDATION_ERROR = "SCHEMA_VALIDATION_ERROR"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    API_ERROR = "API_ERROR"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class GenerationConfig:
    """Per-call sampling configuration."""

    temperature: float = 0.8
    max_output_tokens: int = 8192
    response_mime_type: str | None = None


@dataclass
class GenerationResult:
    """Outcome of one provider call.

    ``ok`` results carry ``data`` (parsed JSON) or ``text``; failures carry
    an ``error`` code and, when available, the ``raw`` provider output.
    """

    ok: bool
    data: Any = None
    text: str = ""
    error: ErrorCode | None = None
    detail: str = ""
    raw: str = ""

    @classmethod
    def success(cls, data: Any = None, *, text: str = "", raw: str = "") -> GenerationResult:
        return cls(ok=True, data=data, text=text, raw=raw)

    @classmethod
    def failure(
        cls,
        error: ErrorCode,
        *,
        detail: str = "",
        raw: str = "",
    ) -> GenerationResult:
        return cls(ok=False, error=error, detail=detail, raw=raw)

    @property
    def error_message(self) -> str:
        """Error code plus detail, as consumed by the text classifiers."""
        if self.ok:
            return ""
        code = str(self.error or ErrorCode.UNKNOWN)
        return f"{code}: {self.detail}" if self.detail else code


# Seconds; heavier stages get more headroom, capped at the review budget.
_TIER_TIMEOUT_SECONDS: dict[RunTier, float] = {
    RunTier.LITE: 20.0,
    RunTier.PRO: 90.0,
    RunTier.REVIEW: 180.0,
}
_HEAVY_STAGES = {"s1", "s3"}
_MAX_TIMEOUT_SECONDS = 180.0


def resolve_timeout_seconds(tier: RunTier | str | None, stage: str | None = None) -> float:
    """Return the wall-clock budget for one generation call."""
    try:
        resolved = RunTier(tier) if tier else RunTier.PRO
    except ValueError:
        resolved = RunTier.PRO
    timeout = _TIER_TIMEOUT_SECONDS[resolved]
    if stage and stage.lower() in _HEAVY_STAGES:
        timeout *= 1.5
    return min(timeout, _MAX_TIMEOUT_SECONDS)


class ModelProvider(ABC):
    """Abstract base class for generation collaborators."""

    @abstractmethod
    async def generate_json(
        self,
        prompt: str,
        config: GenerationConfig,
        tier: RunTier | str | None = None,
        stage: str | None = None,
    ) -> GenerationResult:
        """Generate and parse a JSON value."""
        ...

    @abstractmethod
    async def generate_text(
        self,
        prompt: str,
        config: GenerationConfig,
        tier: RunTier | str | None = None,
        stage: str | None = None,
    ) -> GenerationResult:
        """Generate free text; ``result.text`` holds the output."""
        ...

    async def count_tokens(self, text: str) -> int:
        """Exact token count from the provider tokenizer.

        Providers without a tokenizer endpoint raise; callers fall back to
        the heuristic estimator.
        """
        raise NotImplementedError(f"{self.name} has no tokenizer endpoint")

    async def close(self) -> None:
        """Release transport resources."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable provider name."""
        ...


class ModelConnectionError(ModelError):
    """Raised when a model API call fails due to network or server issues.

    Wraps the underlying httpx/transport error with a user-friendly
    message and preserves the original exception for debugging.
    """

    def __init__(self, message: str, original: Exception | None = None):
        super().__init__(message)
        self.original = original
