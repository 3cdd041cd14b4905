"""Per-stage token budgets.

Plans a turn's token spend before the call is made and suggests how to
stay under budget (compact history, drop examples, shorten the prompt).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum

from cognitive_coach.utils.tokens import estimate_tokens

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageBudget:
    max_per_turn: int
    max_total: int
    warning_threshold: int


DEFAULT_STAGE_BUDGETS: dict[str, StageBudget] = {
    "stage0": StageBudget(max_per_turn=2000, max_total=8000, warning_threshold=6000),
    "stage1": StageBudget(max_per_turn=4000, max_total=6000, warning_threshold=5000),
    "stage2": StageBudget(max_per_turn=3000, max_total=5000, warning_threshold=4000),
}


@dataclass(frozen=True)
class TokenBreakdown:
    system_prompt: int = 0
    context: int = 0
    examples: int = 0
    user_input: int = 0


@dataclass(frozen=True)
class TokenEstimate:
    prompt_tokens: int
    estimated_output_tokens: int
    breakdown: TokenBreakdown = field(default_factory=TokenBreakdown)

    @property
    def total(self) -> int:
        return self.prompt_tokens + self.estimated_output_tokens


@dataclass(frozen=True)
class BudgetStatus:
    stage: str
    used: int
    remaining: int
    max_total: int
    utilization_rate: float
    is_near_limit: bool


class OptimizationAction(StrEnum):
    PROCEED = "proceed"
    COMPACT_NOW = "compact_now"
    REDUCE_EXAMPLES = "reduce_examples"
    USE_SHORTER_PROMPT = "use_shorter_prompt"


@dataclass(frozen=True)
class OptimizationStrategy:
    action: OptimizationAction
    reason: str
    expected_savings: int
    priority: str  # low | medium | high


@dataclass(frozen=True)
class StageUsageStats:
    total: int = 0
    avg: float = 0.0
    max: int = 0


class TokenBudgetManager:
    """Tracks per-session usage against fixed stage budgets."""

    def __init__(self, budgets: dict[str, StageBudget] | None = None):
        self._budgets = dict(budgets or DEFAULT_STAGE_BUDGETS)
        self._usage: dict[str, dict[str, int]] = {}

    @property
    def stages(self) -> tuple[str, ...]:
        return tuple(self._budgets)

    def get_stage_budget(self, stage: str) -> StageBudget:
        try:
            return self._budgets[stage]
        except KeyError:
            raise KeyError(f"Unknown budget stage: {stage!r}") from None

    def get_remaining_budget(self, stage: str, session_id: str = "default") -> BudgetStatus:
        budget = self.get_stage_budget(stage)
        used = self._usage.get(session_id, {}).get(stage, 0)
        return BudgetStatus(
            stage=stage,
            used=used,
            remaining=max(0, budget.max_total - used),
            max_total=budget.max_total,
            utilization_rate=used / budget.max_total if budget.max_total else 1.0,
            is_near_limit=used >= budget.warning_threshold,
        )

    def estimate_turn(
        self,
        *,
        system_prompt_tokens: int = 0,
        context_text: str = "",
        examples_tokens: int = 0,
        user_input_text: str = "",
        estimated_output_tokens: int = 0,
    ) -> TokenEstimate:
        """Estimate one turn from its parts using the heuristic counter."""
        context = estimate_tokens(context_text)
        user_input = estimate_tokens(user_input_text)
        return TokenEstimate(
            prompt_tokens=system_prompt_tokens + context + examples_tokens + user_input,
            estimated_output_tokens=estimated_output_tokens,
            breakdown=TokenBreakdown(
                system_prompt=system_prompt_tokens,
                context=context,
                examples=examples_tokens,
                user_input=user_input,
            ),
        )

    def suggest_optimization(
        self,
        estimate: TokenEstimate,
        budget: BudgetStatus,
    ) -> OptimizationStrategy:
        breakdown = estimate.breakdown
        warning = self.get_stage_budget(budget.stage).warning_threshold

        if estimate.total > budget.remaining:
            if breakdown.context > estimate.prompt_tokens * 0.5:
                return OptimizationStrategy(
                    action=OptimizationAction.COMPACT_NOW,
                    reason=(
                        f"Conversation history uses {breakdown.context} tokens; "
                        "compaction typically saves 40-60%"
                    ),
                    expected_savings=int(breakdown.context * 0.5),
                    priority="high",
                )
            if breakdown.examples > 500:
                savings = int(breakdown.examples * 0.5)
                return OptimizationStrategy(
                    action=OptimizationAction.REDUCE_EXAMPLES,
                    reason=(
                        f"Examples use {breakdown.examples} tokens; "
                        f"dropping some saves about {savings}"
                    ),
                    expected_savings=savings,
                    priority="high",
                )
            return OptimizationStrategy(
                action=OptimizationAction.USE_SHORTER_PROMPT,
                reason="Budget about to be exceeded; use the shorter prompt variant",
                expected_savings=300,
                priority="high",
            )

        if budget.used + estimate.total > warning:
            if breakdown.context > 1500:
                return OptimizationStrategy(
                    action=OptimizationAction.COMPACT_NOW,
                    reason="History is long; compact early to avoid exceeding the budget",
                    expected_savings=int(breakdown.context * 0.5),
                    priority="medium",
                )
            if breakdown.examples > 600:
                return OptimizationStrategy(
                    action=OptimizationAction.REDUCE_EXAMPLES,
                    reason="Close to the budget limit; use fewer examples",
                    expected_savings=int(breakdown.examples * 0.3),
                    priority="medium",
                )

        return OptimizationStrategy(
            action=OptimizationAction.PROCEED,
            reason=f"Budget sufficient, {budget.remaining} tokens remaining",
            expected_savings=0,
            priority="low",
        )

    def track_session_usage(self, session_id: str, stage: str, tokens: int) -> None:
        budget = self.get_stage_budget(stage)
        usage = self._usage.setdefault(session_id, {name: 0 for name in self._budgets})
        usage[stage] += tokens
        logger.debug(
            "Session %s stage %s usage +%d -> %d",
            session_id, stage, tokens, usage[stage],
        )
        if usage[stage] > budget.max_total:
            logger.warning(
                "Session %s exceeded %s budget: %d > %d",
                session_id, stage, usage[stage], budget.max_total,
            )

    def clear_session_usage(self, session_id: str) -> None:
        self._usage.pop(session_id, None)

    def get_usage_stats(self) -> dict:
        sessions = list(self._usage.values())
        by_stage: dict[str, StageUsageStats] = {}
        for stage in self._budgets:
            totals = [usage.get(stage, 0) for usage in sessions]
            total = sum(totals)
            by_stage[stage] = StageUsageStats(
                total=total,
                avg=total / len(sessions) if sessions else 0.0,
                max=max(totals, default=0),
            )
        return {"total_sessions": len(sessions), "by_stage": by_stage}

    def should_compact_now(self, stage: str, session_id: str, estimate: TokenEstimate) -> bool:
        strategy = self.suggest_optimization(
            estimate, self.get_remaining_budget(stage, session_id),
        )
        return strategy.action == OptimizationAction.COMPACT_NOW and strategy.priority == "high"

    def get_recommended_example_count(
        self,
        stage: str,
        session_id: str,
        default_count: int,
    ) -> int:
        utilization = self.get_remaining_budget(stage, session_id).utilization_rate
        if utilization < 0.5:
            return default_count
        if utilization > 0.8:
            return max(1, int(default_count * 0.5))
        return max(1, default_count - 1)

    def check_budget(
        self,
        stage: str,
        session_id: str,
        estimate: TokenEstimate,
    ) -> tuple[bool, OptimizationStrategy, BudgetStatus]:
        """Return ``(can_proceed, strategy, budget)`` for the next turn."""
        budget = self.get_remaining_budget(stage, session_id)
        strategy = self.suggest_optimization(estimate, budget)
        return strategy.action == OptimizationAction.PROCEED, strategy, budget
