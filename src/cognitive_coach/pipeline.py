"""Stage generation pipeline.

One call turns a stage prompt (plus optional conversation) into a
validated artifact: compact the conversation, consult the stage cache,
generate with adaptive retries on a miss, run the quality gates, and
store the accepted result.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from cognitive_coach.cache.ai_cache import AIResponseCache
from cognitive_coach.cache.service import CacheKeyGenerator
from cognitive_coach.engine.context_manager import (
    ChatMessage,
    CompactionResult,
    ContextManager,
    MessageRole,
)
from cognitive_coach.engine.quality_gates import (
    QualityGateContext,
    QualityGateResult,
    run_quality_gates,
)
from cognitive_coach.engine.schemas import stage_validator
from cognitive_coach.exceptions import GenerationFailedError, QualityGateError
from cognitive_coach.models.base import ModelProvider, RunTier
from cognitive_coach.recovery.retry import RetryOptions, Validator, generate_json_with_retry

logger = logging.getLogger(__name__)


@dataclass
class StageOutcome:
    stage: str
    data: Any
    from_cache: bool
    attempts: int = 0
    quality: QualityGateResult | None = None
    compaction: CompactionResult | None = None


def render_history(messages: Sequence[ChatMessage]) -> str:
    lines = []
    for message in messages:
        if message.role == MessageRole.SYSTEM:
            lines.append(message.content)
        else:
            speaker = "User" if message.role == MessageRole.USER else "AI"
            lines.append(f"{speaker}: {message.content}")
    return "<conversation_history>\n" + "\n\n".join(lines) + "\n</conversation_history>"


class StageRunner:
    """Runs one coaching stage end to end."""

    def __init__(
        self,
        provider: ModelProvider,
        *,
        context_manager: ContextManager,
        cache: AIResponseCache,
        retry_options: RetryOptions | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self._provider = provider
        self._context_manager = context_manager
        self._cache = cache
        self._retry_options = retry_options or RetryOptions()
        self._sleep = sleep
        self._clock = clock

    async def run(
        self,
        stage: str,
        prompt: str,
        *,
        messages: Sequence[ChatMessage] | None = None,
        context: Mapping[str, Any] | None = None,
        user_id: str | None = None,
        gate_context: QualityGateContext | None = None,
        tier: RunTier | str | None = None,
        validator: Validator | None = None,
        ttl_seconds: float | None = None,
    ) -> StageOutcome:
        """Produce the artifact for ``stage``.

        Raises ``GenerationFailedError`` when retries are exhausted and
        ``QualityGateError`` when the artifact has blocking issues; neither
        outcome is cached.
        """
        key_stage = stage.lower()
        compaction = None
        full_prompt = prompt
        if messages:
            compaction = await self._context_manager.smart_compact(messages)
            full_prompt = f"{prompt}\n\n{render_history(compaction.compacted_messages)}"

        key = CacheKeyGenerator.generate_for_prompt(
            key_stage, full_prompt, context, user_id, now=self._clock(),
        )
        check = validator or stage_validator(key_stage)
        generated: dict[str, Any] = {}

        async def generate() -> Any:
            result = await generate_json_with_retry(
                self._provider,
                full_prompt,
                check,
                self._retry_options,
                tier,
                key_stage,
                sleep=self._sleep,
            )
            if not result.ok:
                raise GenerationFailedError(
                    f"{stage} generation failed after {result.attempts} attempt(s): "
                    f"{result.error}",
                    error=result.error,
                    attempts=result.attempts,
                    error_context=result.error_context,
                )
            quality = run_quality_gates(key_stage, result.data, gate_context)
            if not quality.passed:
                raise QualityGateError(
                    f"{stage} output blocked by {len(quality.blockers)} quality issue(s)",
                    quality.issues,
                )
            generated["attempts"] = result.attempts
            generated["quality"] = quality
            return result.data

        data = await self._cache.get_or_generate(key_stage, key, generate, ttl_seconds)
        from_cache = not generated
        logger.debug("Stage %s served from %s", stage, "cache" if from_cache else "model")
        return StageOutcome(
            stage=key_stage,
            data=data,
            from_cache=from_cache,
            attempts=generated.get("attempts", 0),
            quality=generated.get("quality"),
            compaction=compaction,
        )
