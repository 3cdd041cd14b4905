"""Adaptive retry engine for structured generation.

Wraps a provider call in a bounded, strictly sequential retry loop. Each
failed attempt is classified, the prompt is repaired for the observed
symptom, the temperature is lowered, and the loop backs off exponentially
with jitter before trying again. Callers always receive a terminal
``RetryResult``; only cancellation and truly unexpected errors propagate.

A validator passes by returning a truthy value. It may also raise
``ValueError`` (pydantic's ``ValidationError`` included) to report which
fields were wrong, which feeds the missing-field prompt repair.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from cognitive_coach.config import RetryConfig
from cognitive_coach.models.base import (
    ErrorCode,
    GenerationConfig,
    GenerationResult,
    ModelProvider,
    RunTier,
)
from cognitive_coach.recovery.errors import (
    ErrorContext,
    ErrorType,
    analyze_error_context,
    describe_error,
    to_error_type,
)
from cognitive_coach.recovery.prompt_repair import adjust_prompt_based_on_error

logger = logging.getLogger(__name__)

Validator = Callable[[Any], Any]
Scorer = Callable[[Any], float]
Sleep = Callable[[float], Awaitable[Any]]

INITIAL_TEMPERATURE = 0.8
MIN_TEMPERATURE = 0.3
JITTER_RATIO = 0.1
BEST_OF_MAX_RETRIES = 2


@dataclass(frozen=True)
class RetryOptions:
    """Retry policy for one generation call. Delays are in milliseconds."""

    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 10000
    backoff_multiplier: float = 2.0
    temperature_decay: float = 0.2
    rate_limit_delay_ms: int = 60000
    max_output_tokens: int = 65536
    on_retry: Callable[[int, str], None] | None = field(default=None, compare=False)

    @classmethod
    def from_config(
        cls,
        config: RetryConfig,
        *,
        max_output_tokens: int = 65536,
    ) -> RetryOptions:
        return cls(
            max_retries=max(1, config.max_retries),
            initial_delay_ms=max(0, config.initial_delay_ms),
            max_delay_ms=max(0, config.max_delay_ms),
            backoff_multiplier=max(1.0, config.backoff_multiplier),
            temperature_decay=max(0.0, config.temperature_decay),
            rate_limit_delay_ms=max(0, config.rate_limit_delay_ms),
            max_output_tokens=max_output_tokens,
        )

    def with_max_retries(self, max_retries: int) -> RetryOptions:
        return RetryOptions(
            max_retries=max_retries,
            initial_delay_ms=self.initial_delay_ms,
            max_delay_ms=self.max_delay_ms,
            backoff_multiplier=self.backoff_multiplier,
            temperature_decay=self.temperature_decay,
            rate_limit_delay_ms=self.rate_limit_delay_ms,
            max_output_tokens=self.max_output_tokens,
            on_retry=self.on_retry,
        )


@dataclass
class RetryResult:
    """Terminal outcome of a retry loop.

    Successes carry ``data`` (parsed JSON or text). Failures carry the last
    error message, its classification and severity context; they are final
    and must not be retried by the caller.
    """

    ok: bool
    attempts: int
    data: Any = None
    error: str = ""
    error_type: ErrorType | None = None
    error_code: ErrorCode | None = None
    error_context: ErrorContext | None = None

    @classmethod
    def success(cls, data: Any, attempts: int) -> RetryResult:
        return cls(ok=True, data=data, attempts=attempts)


@dataclass
class BestOfResult:
    ok: bool
    data: Any = None
    score: float = 0.0
    error: str = ""


def temperature_for_attempt(attempt: int, decay: float = 0.2) -> float:
    """Sampling temperature for a 1-based attempt, floored at 0.3."""
    return max(MIN_TEMPERATURE, INITIAL_TEMPERATURE - (attempt - 1) * decay)


def calculate_delay(
    attempt: int,
    options: RetryOptions | None = None,
    *,
    rand: Callable[[], float] = random.random,
) -> int:
    """Backoff in ms: ``min(initial * multiplier**(attempt-1), max)`` plus up to 10% jitter."""
    opts = options or RetryOptions()
    delay = min(
        opts.initial_delay_ms * (opts.backoff_multiplier ** (attempt - 1)),
        opts.max_delay_ms,
    )
    return math.floor(delay + delay * JITTER_RATIO * rand())


def _run_validator(validator: Validator, data: Any) -> str | None:
    """Return None when ``data`` is acceptable, else the failure message."""
    try:
        accepted = validator(data)
    except ValueError as e:
        return f"Validation failed: {e}"
    return None if accepted else "Validation failed"


def _notify_retry(options: RetryOptions, attempt: int, error: str) -> None:
    if options.on_retry is not None:
        options.on_retry(attempt, error)
    else:
        logger.warning("Retry attempt %d due to: %s", attempt, error)


async def _backoff(
    attempt: int,
    options: RetryOptions,
    context: ErrorContext | None,
    sleep: Sleep,
) -> None:
    if attempt >= options.max_retries:
        return
    delay_ms = calculate_delay(attempt, options)
    if context is not None:
        delay_ms = math.floor(delay_ms * context.delay_multiplier)
    if delay_ms > 0:
        await sleep(delay_ms / 1000)


async def _retry_loop(
    invoke: Callable[[str, GenerationConfig], Awaitable[GenerationResult]],
    accept: Callable[[GenerationResult], tuple[Any, ErrorCode | None, str]],
    prompt: str,
    options: RetryOptions,
    stage: str | None,
    sleep: Sleep,
    label: str,
) -> RetryResult:
    current_prompt = prompt
    last_error = ""
    last_type: ErrorType | None = None
    last_code: ErrorCode | None = None
    context: ErrorContext | None = None
    attempt = 0

    for attempt in range(1, options.max_retries + 1):
        config = GenerationConfig(
            temperature=temperature_for_attempt(attempt, options.temperature_decay),
            max_output_tokens=options.max_output_tokens,
        )
        try:
            result = await invoke(current_prompt, config)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = describe_error(e)
            last_code = None
            last_type = to_error_type(e)
        else:
            value, last_code, last_error = accept(result)
            if last_code is None:
                if attempt > 1:
                    logger.info("%s succeeded on attempt %d (stage=%s)", label, attempt, stage)
                return RetryResult.success(value, attempt)
            last_type = to_error_type(last_code, last_error)

        context = analyze_error_context(current_prompt, last_error, attempt)

        if last_code == ErrorCode.NO_API_KEY:
            logger.error("%s aborted, model API key is not configured", label)
            break

        if last_type == ErrorType.RATE_LIMIT:
            logger.warning(
                "%s rate limited on attempt %d/%d (stage=%s)",
                label, attempt, options.max_retries, stage,
            )
            if attempt < options.max_retries and options.rate_limit_delay_ms > 0:
                await sleep(options.rate_limit_delay_ms / 1000)
            continue

        current_prompt = adjust_prompt_based_on_error(
            current_prompt, last_type, last_error, attempt, stage,
        )
        _notify_retry(options, attempt, last_error)
        await _backoff(attempt, options, context, sleep)

    logger.warning(
        "%s failed after %d attempt(s) (stage=%s): %s",
        label, attempt, stage, last_error,
    )
    return RetryResult(
        ok=False,
        attempts=attempt,
        error=last_error,
        error_type=last_type,
        error_code=last_code,
        error_context=context,
    )


async def generate_json_with_retry(
    provider: ModelProvider,
    prompt: str,
    validator: Validator,
    options: RetryOptions | None = None,
    tier: RunTier | str | None = None,
    stage: str | None = None,
    *,
    sleep: Sleep = asyncio.sleep,
) -> RetryResult:
    """Generate JSON accepted by ``validator`` within ``max_retries`` calls."""
    opts = options or RetryOptions()

    async def invoke(current: str, config: GenerationConfig) -> GenerationResult:
        return await provider.generate_json(current, config, tier, stage)

    def accept(result: GenerationResult) -> tuple[Any, ErrorCode | None, str]:
        if not result.ok:
            return None, result.error or ErrorCode.UNKNOWN, result.error_message
        problem = _run_validator(validator, result.data)
        if problem is not None:
            return None, ErrorCode.SCHEMA_VALIDATION_ERROR, problem
        return result.data, None, ""

    return await _retry_loop(invoke, accept, prompt, opts, stage, sleep, "JSON generation")


async def generate_text_with_retry(
    provider: ModelProvider,
    prompt: str,
    options: RetryOptions | None = None,
    tier: RunTier | str | None = None,
    stage: str | None = None,
    *,
    sleep: Sleep = asyncio.sleep,
) -> RetryResult:
    """Plain-text sibling of ``generate_json_with_retry``; blank text fails."""
    opts = options or RetryOptions()

    async def invoke(current: str, config: GenerationConfig) -> GenerationResult:
        return await provider.generate_text(current, config, tier, stage)

    def accept(result: GenerationResult) -> tuple[Any, ErrorCode | None, str]:
        if not result.ok:
            return None, result.error or ErrorCode.UNKNOWN, result.error_message
        if not result.text.strip():
            return None, ErrorCode.EMPTY_RESPONSE, "EMPTY_RESPONSE: Empty response"
        return result.text, None, ""

    return await _retry_loop(invoke, accept, prompt, opts, stage, sleep, "Text generation")


async def generate_best_of(
    provider: ModelProvider,
    prompts: Sequence[str],
    validator: Validator,
    scorer: Scorer,
    tier: RunTier | str | None = None,
    *,
    options: RetryOptions | None = None,
    stage: str | None = None,
    sleep: Sleep = asyncio.sleep,
) -> BestOfResult:
    """Run prompt variants concurrently and keep the best-scoring success.

    Each variant gets its own retry budget of two attempts. Ties keep the
    earliest variant.
    """
    opts = (options or RetryOptions()).with_max_retries(BEST_OF_MAX_RETRIES)
    outcomes = await asyncio.gather(
        *(
            generate_json_with_retry(
                provider, prompt, validator, opts, tier, stage, sleep=sleep,
            )
            for prompt in prompts
        ),
        return_exceptions=True,
    )

    best: BestOfResult | None = None
    for index, outcome in enumerate(outcomes):
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, BaseException):
            logger.warning("Best-of variant %d raised: %s", index, outcome)
            continue
        if not outcome.ok:
            continue
        score = float(scorer(outcome.data))
        if best is None or score > best.score:
            best = BestOfResult(ok=True, data=outcome.data, score=score)

    if best is None:
        return BestOfResult(ok=False, error="All attempts failed to generate valid results")
    return best
