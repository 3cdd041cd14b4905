"""Pydantic models for the structured artifacts of each coaching stage.

All models reject unknown fields. Field names follow the camelCase wire
format through aliases; Python code may use either name.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import AnyUrl, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


Confidence = Annotated[float, Field(ge=0, le=1)]


class Evidence(_Strict):
    source: str
    url: AnyUrl | None = None
    date: str | None = None
    scope: str | None = None


class _Attributed(_Strict):
    evidence: list[Evidence] | None = None
    confidence: Confidence | None = None
    applicability: str | None = None


# --- S0 goal refinement ---


class Recommendation(_Strict):
    category: str
    examples: list[str]
    description: str


class S0RefineGoal(_Attributed):
    status: Literal["clarification_needed", "clarified", "recommendations_provided"]
    ai_question: str | None = None
    goal: str | None = None
    recommendations: list[Recommendation] | None = None


# --- S1 knowledge framework ---


class FrameworkNode(_Attributed):
    id: str
    title: str
    summary: str
    children: list[FrameworkNode] | None = None


KnowledgeFramework = TypeAdapter(list[FrameworkNode])


# --- S2 system dynamics ---


class SystemNode(_Strict):
    id: str
    title: str


class SystemDynamics(_Attributed):
    mermaid_chart: str = Field(alias="mermaidChart")
    metaphor: str
    nodes: list[SystemNode] | None = None


# --- S3 action plan and strategy DSL ---


class Trigger(_Strict):
    metric_id: str = Field(alias="metricId")
    comparator: Literal[">", ">=", "<", "<=", "==", "trend_down", "trend_up"]
    threshold: float | str
    window: str


class DiagnosisStep(_Strict):
    id: str
    description: str
    check: str | None = None


class StrategyOption(_Strict):
    id: Literal["A", "B", "C"]
    steps: list[str]
    benefits: list[str]
    risks: list[str] | None = None
    suitable_for: list[str] | None = Field(default=None, alias="suitableFor")


class RecoveryWindow(_Strict):
    window: str
    review_metric_ids: list[str] = Field(alias="reviewMetricIds")


class StopLoss(_Strict):
    condition: str
    action: str


class MetricSpec(_Attributed):
    metric_id: str = Field(alias="metricId")
    what: str
    why: str
    triggers: list[Trigger] = Field(min_length=1)
    diagnosis: list[DiagnosisStep] = Field(min_length=1)
    options: list[StrategyOption] = Field(min_length=1)
    recovery: RecoveryWindow
    stop_loss: StopLoss = Field(alias="stopLoss")


class StrategySpec(_Strict):
    metrics: list[MetricSpec] = Field(min_length=1)
    evidence: list[Evidence] | None = None
    confidence: Confidence | None = None


class ActionItem(_Strict):
    id: str
    text: str
    is_completed: bool = Field(alias="isCompleted")


class MissingEvidence(_Strict):
    metric_id: str = Field(alias="metricId")
    what: str
    voi_reason: str


class ActionPlanResponse(_Attributed):
    action_plan: list[ActionItem] = Field(alias="actionPlan")
    kpis: list[str]
    strategy_spec: StrategySpec | None = Field(default=None, alias="strategySpec")
    pov_tags: list[str] | None = Field(default=None, alias="povTags")
    requires_human_review: bool | None = Field(default=None, alias="requiresHumanReview")
    telemetry: Any = None
    missing_evidence_top3: list[MissingEvidence] | None = Field(
        default=None, alias="missingEvidenceTop3",
    )
    review_window: str | None = Field(default=None, alias="reviewWindow")


# --- S4 progress analysis ---


class AnalyzeProgress(_Attributed):
    analysis: str
    suggestions: list[str]
    encouragement: str | None = None
    referenced_metric_ids: list[str] | None = Field(
        default=None, alias="referencedMetricIds",
    )


STAGE_ADAPTERS: dict[str, TypeAdapter] = {
    "s0": TypeAdapter(S0RefineGoal),
    "s1": KnowledgeFramework,
    "s2": TypeAdapter(SystemDynamics),
    "s3": TypeAdapter(ActionPlanResponse),
    "s4": TypeAdapter(AnalyzeProgress),
}


def validate_stage_output(stage: str, data: Any) -> Any:
    """Parse ``data`` as the artifact of ``stage``.

    Raises ``pydantic.ValidationError`` (a ``ValueError``) on mismatch and
    ``KeyError`` for an unknown stage.
    """
    key = stage.lower()
    if key not in STAGE_ADAPTERS:
        raise KeyError(f"Unknown stage: {stage!r}")
    return STAGE_ADAPTERS[key].validate_python(data)


def stage_validator(stage: str):
    """Validator callable for the retry engine: truthy or raises ``ValueError``."""
    key = stage.lower()
    if key not in STAGE_ADAPTERS:
        raise KeyError(f"Unknown stage: {stage!r}")

    def validate(data: Any) -> bool:
        STAGE_ADAPTERS[key].validate_python(data)
        return True

    return validate


def format_validation_error(error: ValidationError) -> str:
    """Join error messages as ``path: message`` pairs."""
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        message = item.get("msg", "invalid")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "schema error"
