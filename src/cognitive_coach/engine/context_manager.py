"""Conversation compaction under a token budget.

Keeps the most recent turns verbatim, preserves information-dense earlier
messages ("key turning points") verbatim, and folds the remaining early
messages into a short model-written summary. Every early message is either
preserved or summarized, never both and never silently dropped.

Key-point scoring is a regex and length heuristic for information density,
tuned for mixed Chinese/English text. It is not a semantic model; the
threshold and weights are tunable configuration.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from cognitive_coach.config import ContextConfig
from cognitive_coach.models.base import GenerationConfig, ModelProvider, RunTier
from cognitive_coach.utils.tokens import TokenCounter, estimate_tokens

logger = logging.getLogger(__name__)


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class ChatMessage:
    """One conversation turn. Never mutated; compaction builds new lists."""

    id: str
    role: str
    content: str
    timestamp: float = 0.0
    metadata: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], index: int = 0) -> ChatMessage:
        role = str(data.get("role", MessageRole.USER))
        if role not in {r.value for r in MessageRole}:
            raise ValueError(f"Unknown message role: {role!r}")
        return cls(
            id=str(data.get("id") or f"msg-{index}"),
            role=role,
            content=str(data.get("content", "")),
            timestamp=float(data.get("timestamp", 0) or 0),
            metadata=data.get("metadata"),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.metadata is not None:
            payload["metadata"] = self.metadata
        return payload


@dataclass(frozen=True)
class CompactionOptions:
    """Per-call overrides; ``None`` means the configured default."""

    max_tokens: float | None = None
    recent_turns_to_keep: int | None = None
    summary_max_tokens: int | None = None


@dataclass
class CompactionResult:
    compacted_messages: list[ChatMessage]
    summary: str
    original_tokens: int
    compacted_tokens: int
    compression_ratio: float
    was_compacted: bool
    key_points_preserved: int = 0
    summarized_messages: int = 0
    used_fallback_summary: bool = False


# Weighted pattern groups; a message scores each group at most once.
_CRITICAL_PATTERNS = [
    re.compile(r"必须|一定|不能|只|仅|exclusively|must|cannot|only", re.IGNORECASE),
    re.compile(r"约束|限制|边界|constraint|limitation|boundary", re.IGNORECASE),
    re.compile(r"确认|明确|clarify|confirm", re.IGNORECASE),
]
_CONCRETE_PATTERNS = [
    re.compile(r"\d+\s*(周|月|年|天|小时|week|month|year|day|hour)", re.IGNORECASE),
    re.compile(r"\d+\s*(元|块|万|预算|dollar|budget)", re.IGNORECASE),
    re.compile(r"每天|每周|每月|daily|weekly|monthly", re.IGNORECASE),
]
_GENERAL_PATTERNS = [
    re.compile(r"重要|关键|核心|优先|important|key|priority", re.IGNORECASE),
    re.compile(r"目标|目的|goal|purpose|objective", re.IGNORECASE),
]

CRITICAL_WEIGHT = 3
CONCRETE_WEIGHT = 2
GENERAL_WEIGHT = 1
USER_ROLE_WEIGHT = 1
LONG_MESSAGE_CHARS = 150
VERY_LONG_MESSAGE_CHARS = 300

SMART_NO_COMPACT_BELOW = 1000
SMART_MEDIUM_ABOVE = 3000
SMART_HEAVY_ABOVE = 5000

_SUMMARY_TEMPERATURE = 0.3
_FALLBACK_EXCERPTS = 3
_FALLBACK_EXCERPT_CHARS = 50


def score_message(message: ChatMessage) -> int:
    """Information-density score used to pick key turning points."""
    content = message.content or ""
    score = 0
    if message.role == MessageRole.USER:
        score += USER_ROLE_WEIGHT
    if any(p.search(content) for p in _CRITICAL_PATTERNS):
        score += CRITICAL_WEIGHT
    if any(p.search(content) for p in _CONCRETE_PATTERNS):
        score += CONCRETE_WEIGHT
    if any(p.search(content) for p in _GENERAL_PATTERNS):
        score += GENERAL_WEIGHT
    if len(content) > LONG_MESSAGE_CHARS:
        score += 1
    if len(content) > VERY_LONG_MESSAGE_CHARS:
        score += 1
    return score


class ContextManager:
    """Token estimation and history compaction for one process.

    ``provider`` writes the summary of compressible messages. Without a
    provider, or when the provider fails, a deterministic summary built
    from message counts and excerpts is used instead.
    """

    def __init__(
        self,
        provider: ModelProvider | None = None,
        *,
        config: ContextConfig | None = None,
        token_counter: TokenCounter | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._provider = provider
        self._config = config or ContextConfig()
        self._ratios = {
            "cjk_chars_per_token": self._config.cjk_chars_per_token,
            "other_chars_per_token": self._config.other_chars_per_token,
        }
        self._token_counter = token_counter or TokenCounter(provider, **self._ratios)
        self._clock = clock

    @property
    def config(self) -> ContextConfig:
        return self._config

    def estimate_tokens(self, text: str) -> int:
        return estimate_tokens(text, **self._ratios)

    async def estimate_tokens_accurate(self, text: str) -> int:
        """Provider tokenizer count, cached; falls back to the heuristic."""
        return await self._token_counter.count(text)

    def estimate_messages_tokens(self, messages: Sequence[ChatMessage]) -> int:
        return self.estimate_tokens("\n".join(m.content for m in messages))

    def should_compact(
        self,
        messages: Sequence[ChatMessage],
        max_tokens: float | None = None,
    ) -> bool:
        limit = self._config.max_tokens if max_tokens is None else max_tokens
        estimated = self.estimate_messages_tokens(messages)
        needed = estimated > limit
        logger.debug(
            "Compaction check: messages=%d tokens=%d max=%s compact=%s",
            len(messages), estimated, limit, needed,
        )
        return needed

    def identify_key_turning_points(self, messages: Sequence[ChatMessage]) -> set[int]:
        """Indices of messages scoring at or above the key-point threshold."""
        threshold = self._config.key_point_threshold
        indices = {
            index for index, message in enumerate(messages)
            if score_message(message) >= threshold
        }
        if messages:
            logger.debug(
                "Key turning points: %d of %d (%.1f%%)",
                len(indices), len(messages), 100.0 * len(indices) / len(messages),
            )
        return indices

    async def compact_history(
        self,
        messages: Sequence[ChatMessage],
        options: CompactionOptions | None = None,
    ) -> CompactionResult:
        """Compact ``messages`` to summary + key points + recent turns.

        Returns the input unchanged (``was_compacted=False``) when it is
        within budget, when there are no early messages to compact, or when
        compaction would not reduce the estimated token count.
        """
        opts = options or CompactionOptions()
        max_tokens = self._config.max_tokens if opts.max_tokens is None else opts.max_tokens
        recent_turns = (
            self._config.recent_turns_to_keep
            if opts.recent_turns_to_keep is None else opts.recent_turns_to_keep
        )
        summary_max_tokens = (
            self._config.summary_max_tokens
            if opts.summary_max_tokens is None else opts.summary_max_tokens
        )

        original = list(messages)
        original_tokens = self.estimate_messages_tokens(original)

        if not self.should_compact(original, max_tokens):
            return self._unchanged(original, original_tokens)

        keep = max(0, recent_turns) * 2
        split = max(0, len(original) - keep)
        early, recent = original[:split], original[split:]
        if not early:
            return self._unchanged(original, original_tokens)

        logger.info(
            "Compacting history: messages=%d tokens=%d recent_turns=%d",
            len(original), original_tokens, recent_turns,
        )

        key_indices = {i for i in self.identify_key_turning_points(original) if i < split}
        key_points = [m for i, m in enumerate(early) if i in key_indices]
        to_summarize = [m for i, m in enumerate(early) if i not in key_indices]

        logger.info(
            "Separated early messages: total=%d key_points=%d to_summarize=%d",
            len(early), len(key_points), len(to_summarize),
        )

        summary_text = ""
        used_fallback = False
        if to_summarize:
            summary_text, used_fallback = await self._summarize(
                to_summarize, summary_max_tokens,
            )

        result = self._assemble(
            summary_text, to_summarize, key_points, recent, original_tokens,
            used_fallback,
        )
        if result.compacted_tokens > original_tokens and to_summarize and not used_fallback:
            logger.warning(
                "Model summary grew the transcript (%d > %d tokens), using fallback summary",
                result.compacted_tokens, original_tokens,
            )
            result = self._assemble(
                self.fallback_summary(to_summarize), to_summarize, key_points,
                recent, original_tokens, True,
            )
        if result.compacted_tokens > original_tokens:
            logger.warning(
                "Compaction would not reduce tokens (%d > %d), keeping history as is",
                result.compacted_tokens, original_tokens,
            )
            return self._unchanged(original, original_tokens)

        logger.info(
            "Compaction completed: messages %d -> %d, tokens %d -> %d (%.1f%%), "
            "key_points=%d",
            len(original), len(result.compacted_messages), original_tokens,
            result.compacted_tokens, result.compression_ratio * 100, len(key_points),
        )
        return result

    async def smart_compact(
        self,
        messages: Sequence[ChatMessage],
        target_tokens: float | None = None,
    ) -> CompactionResult:
        """Compact with a recent-turn count chosen from the current volume.

        More history keeps fewer recent turns verbatim and leans on the
        summary instead.
        """
        current = self.estimate_messages_tokens(messages)
        if current < SMART_NO_COMPACT_BELOW:
            return await self.compact_history(messages, CompactionOptions(max_tokens=math.inf))

        if current > SMART_HEAVY_ABOVE:
            recent_turns = 2
        elif current > SMART_MEDIUM_ABOVE:
            recent_turns = 3
        else:
            recent_turns = 4

        return await self.compact_history(
            messages,
            CompactionOptions(
                max_tokens=target_tokens or self._config.max_tokens,
                recent_turns_to_keep=recent_turns,
            ),
        )

    async def batch_compact(
        self,
        conversations: Sequence[Sequence[ChatMessage]],
        options: CompactionOptions | None = None,
    ) -> list[CompactionResult]:
        results = list(await asyncio.gather(
            *(self.compact_history(messages, options) for messages in conversations)
        ))
        total_original = sum(r.original_tokens for r in results)
        total_compacted = sum(r.compacted_tokens for r in results)
        logger.info(
            "Batch compaction completed: conversations=%d tokens %d -> %d",
            len(results), total_original, total_compacted,
        )
        return results

    def fallback_summary(self, messages: Sequence[ChatMessage]) -> str:
        """Deterministic summary: message counts plus early user excerpts."""
        user_messages = [m for m in messages if m.role == MessageRole.USER]
        assistant_count = sum(1 for m in messages if m.role == MessageRole.ASSISTANT)
        excerpts = "; ".join(
            m.content[:_FALLBACK_EXCERPT_CHARS]
            for m in user_messages[:_FALLBACK_EXCERPTS]
        )
        return (
            f"The conversation had {len(messages)} messages "
            f"({len(user_messages)} from the user, {assistant_count} from the AI).\n"
            f"Main topics: {excerpts}..."
        )

    def _unchanged(self, messages: list[ChatMessage], tokens: int) -> CompactionResult:
        return CompactionResult(
            compacted_messages=messages,
            summary="",
            original_tokens=tokens,
            compacted_tokens=tokens,
            compression_ratio=1.0,
            was_compacted=False,
        )

    def _assemble(
        self,
        summary_text: str,
        summarized: list[ChatMessage],
        key_points: list[ChatMessage],
        recent: list[ChatMessage],
        original_tokens: int,
        used_fallback: bool,
    ) -> CompactionResult:
        compacted: list[ChatMessage] = []
        summary_content = ""
        if summarized:
            now = self._clock()
            summary_content = (
                "<conversation_summary>\n"
                f"Summary of {len(summarized)} earlier messages:\n\n"
                f"{summary_text}\n"
                "</conversation_summary>"
            )
            compacted.append(ChatMessage(
                id=f"summary-{int(now * 1000)}",
                role=MessageRole.SYSTEM.value,
                content=summary_content,
                timestamp=now,
                metadata={"type": "info"},
            ))
        compacted.extend(key_points)
        compacted.extend(recent)
        compacted_tokens = self.estimate_messages_tokens(compacted)
        return CompactionResult(
            compacted_messages=compacted,
            summary=summary_content,
            original_tokens=original_tokens,
            compacted_tokens=compacted_tokens,
            compression_ratio=compacted_tokens / original_tokens if original_tokens else 1.0,
            was_compacted=True,
            key_points_preserved=len(key_points),
            summarized_messages=len(summarized),
            used_fallback_summary=used_fallback,
        )

    async def _summarize(
        self,
        messages: list[ChatMessage],
        max_tokens: int,
    ) -> tuple[str, bool]:
        """Return ``(summary, used_fallback)``; never raises except on cancel."""
        if self._provider is None:
            logger.debug("No summary provider configured, using fallback summary")
            return self.fallback_summary(messages), True

        prompt = _build_summary_prompt(messages, max_tokens)
        try:
            result = await self._provider.generate_text(
                prompt,
                GenerationConfig(
                    temperature=_SUMMARY_TEMPERATURE,
                    max_output_tokens=max_tokens,
                ),
                RunTier.PRO,
                "s0",
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Summary generation raised, using fallback: %s", e)
            return self.fallback_summary(messages), True

        if not result.ok or not result.text.strip():
            logger.warning(
                "Summary generation failed (%s), using fallback",
                result.error_message or "empty summary",
            )
            return self.fallback_summary(messages), True
        return result.text.strip(), False


def _build_summary_prompt(messages: list[ChatMessage], max_tokens: int) -> str:
    transcript = "\n\n".join(
        f"{'User' if m.role == MessageRole.USER else 'AI'}: {m.content}"
        for m in messages
    )
    return (
        "Write a concise summary of the conversation below.\n\n"
        "Requirements:\n"
        "1. Keep the key information: the user's main questions, important "
        "clarifications and confirmed facts\n"
        "2. Skip repetition and filler\n"
        "3. Stay objective and write in the third person\n"
        f"4. Stay within {max_tokens} tokens\n\n"
        f"Conversation:\n{transcript}\n\n"
        "Summary:"
    )
