"""Configuration loader for CognitiveCoach.

Loads from coach.toml with sensible defaults when file is absent.
Configuration is loaded once at startup and passed via dependency injection.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from cognitive_coach.exceptions import CoachError

STAGES = ("s0", "s1", "s2", "s3", "s4")


class ConfigError(CoachError):
    """Raised when configuration loading or validation fails."""


@dataclass(frozen=True)
class ModelConfig:
    """Configuration for the LLM collaborator."""

    provider: str = "gemini"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    api_key: str = ""
    lite_model: str = "gemini-2.5-flash-lite"
    pro_model: str = "gemini-2.5-pro"
    review_model: str = "gemini-2.5-pro"
    max_output_tokens: int = 65536

    def resolved_api_key(self) -> str:
        """Explicit key first, then the conventional environment variables."""
        if self.api_key.strip():
            return self.api_key.strip()
        for name in ("GOOGLE_AI_API_KEY", "GEMINI_API_KEY"):
            value = os.environ.get(name, "").strip()
            if value:
                return value
        return ""

    def __repr__(self) -> str:
        key_display = f"***{self.api_key[-4:]}" if self.api_key else ""
        return (
            f"ModelConfig(provider={self.provider!r}, pro_model={self.pro_model!r}, "
            f"base_url={self.base_url!r}, api_key={key_display!r})"
        )


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 10000
    backoff_multiplier: float = 2.0
    temperature_decay: float = 0.2
    rate_limit_delay_ms: int = 60000


@dataclass(frozen=True)
class ContextConfig:
    max_tokens: int = 3000
    recent_turns_to_keep: int = 3
    summary_max_tokens: int = 500
    key_point_threshold: int = 4
    cjk_chars_per_token: float = 1.5
    other_chars_per_token: float = 4.0


@dataclass(frozen=True)
class StageCacheConfig:
    name: str
    max: int = 100
    ttl_seconds: float = 3600.0


def _default_stage_caches() -> dict[str, StageCacheConfig]:
    # Progress analysis changes fast; frameworks are stable.
    return {
        "s0": StageCacheConfig(name="S0-GoalRefinement", max=50, ttl_seconds=30 * 60),
        "s1": StageCacheConfig(name="S1-KnowledgeFramework", max=100, ttl_seconds=60 * 60),
        "s2": StageCacheConfig(name="S2-SystemDynamics", max=100, ttl_seconds=60 * 60),
        "s3": StageCacheConfig(name="S3-ActionPlan", max=100, ttl_seconds=60 * 60),
        "s4": StageCacheConfig(name="S4-Progress", max=200, ttl_seconds=15 * 60),
    }


@dataclass(frozen=True)
class CacheConfig:
    maintenance_interval_seconds: float = 120.0
    cleanup_interval_seconds: float = 300.0
    memory_pressure_bytes: int = 100 * 1024 * 1024
    stages: dict[str, StageCacheConfig] = field(default_factory=_default_stage_caches)


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(frozen=True)
class Config:
    """Top-level CognitiveCoach configuration."""

    model: ModelConfig = field(default_factory=ModelConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _as_int(value: object, default: int, *, low: int, high: int | None = None) -> int:
    try:
        parsed = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    parsed = max(low, parsed)
    if high is not None:
        parsed = min(high, parsed)
    return parsed


def _as_float(value: object, default: float, *, low: float) -> float:
    try:
        parsed = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    return max(low, parsed)


def _parse_stage_caches(data: dict) -> dict[str, StageCacheConfig]:
    stages = _default_stage_caches()
    for stage, stage_data in data.items():
        key = str(stage).lower()
        if key not in stages or not isinstance(stage_data, dict):
            continue
        base = stages[key]
        stages[key] = StageCacheConfig(
            name=str(stage_data.get("name", base.name)),
            max=_as_int(stage_data.get("max", base.max), base.max, low=1),
            ttl_seconds=_as_float(
                stage_data.get("ttl_seconds", base.ttl_seconds),
                base.ttl_seconds,
                low=1.0,
            ),
        )
    return stages


def load_config(path: Path | None = None) -> Config:
    """Load configuration from a TOML file.

    If path is None, searches for coach.toml in current directory then
    ~/.cognitive_coach/. Returns default config if no file is found.
    """
    if path is None:
        candidates = [
            Path.cwd() / "coach.toml",
            Path.home() / ".cognitive_coach" / "coach.toml",
        ]
        for candidate in candidates:
            if candidate.exists():
                path = candidate
                break

    if path is None or not path.exists():
        return Config()

    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e

    model_data = raw.get("model", {})
    defaults = ModelConfig()
    model = ModelConfig(
        provider=model_data.get("provider", defaults.provider),
        base_url=model_data.get("base_url", defaults.base_url),
        api_key=model_data.get("api_key", ""),
        lite_model=model_data.get("lite_model", defaults.lite_model),
        pro_model=model_data.get("pro_model", defaults.pro_model),
        review_model=model_data.get("review_model", defaults.review_model),
        max_output_tokens=_as_int(
            model_data.get("max_output_tokens", defaults.max_output_tokens),
            defaults.max_output_tokens,
            low=1,
        ),
    )
    if model.provider != "gemini":
        raise ConfigError(f"Unsupported model provider: {model.provider!r}")

    retry_data = raw.get("retry", {})
    retry = RetryConfig(
        max_retries=_as_int(retry_data.get("max_retries", 3), 3, low=1, high=10),
        initial_delay_ms=_as_int(retry_data.get("initial_delay_ms", 1000), 1000, low=0),
        max_delay_ms=_as_int(retry_data.get("max_delay_ms", 10000), 10000, low=0),
        backoff_multiplier=_as_float(
            retry_data.get("backoff_multiplier", 2.0), 2.0, low=1.0,
        ),
        temperature_decay=_as_float(
            retry_data.get("temperature_decay", 0.2), 0.2, low=0.0,
        ),
        rate_limit_delay_ms=_as_int(
            retry_data.get("rate_limit_delay_ms", 60000), 60000, low=0,
        ),
    )

    ctx_data = raw.get("context", {})
    context = ContextConfig(
        max_tokens=_as_int(ctx_data.get("max_tokens", 3000), 3000, low=1),
        recent_turns_to_keep=_as_int(
            ctx_data.get("recent_turns_to_keep", 3), 3, low=1,
        ),
        summary_max_tokens=_as_int(
            ctx_data.get("summary_max_tokens", 500), 500, low=1,
        ),
        key_point_threshold=_as_int(
            ctx_data.get("key_point_threshold", 4), 4, low=1,
        ),
        cjk_chars_per_token=_as_float(
            ctx_data.get("cjk_chars_per_token", 1.5), 1.5, low=0.1,
        ),
        other_chars_per_token=_as_float(
            ctx_data.get("other_chars_per_token", 4.0), 4.0, low=0.1,
        ),
    )

    cache_data = raw.get("cache", {})
    stages_data = cache_data.get("stages", {})
    cache = CacheConfig(
        maintenance_interval_seconds=_as_float(
            cache_data.get("maintenance_interval_seconds", 120.0), 120.0, low=1.0,
        ),
        cleanup_interval_seconds=_as_float(
            cache_data.get("cleanup_interval_seconds", 300.0), 300.0, low=1.0,
        ),
        memory_pressure_bytes=_as_int(
            cache_data.get("memory_pressure_bytes", 100 * 1024 * 1024),
            100 * 1024 * 1024,
            low=1,
        ),
        stages=_parse_stage_caches(stages_data if isinstance(stages_data, dict) else {}),
    )

    log_data = raw.get("logging", {})
    logging_cfg = LoggingConfig(level=str(log_data.get("level", "INFO")).upper())

    return Config(
        model=model,
        retry=retry,
        context=context,
        cache=cache,
        logging=logging_cfg,
    )
