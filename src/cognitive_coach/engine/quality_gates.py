"""Quality gates for generated stage artifacts.

Gates run on the raw, unvalidated model output:

- schema: the artifact must parse as its stage model (blocker)
- coverage/consistency: ids carried over from earlier stages must reappear,
  with a tolerance for small frameworks
- actionability: every strategy metric needs triggers, diagnosis steps,
  options, a recovery window and a stop-loss (blocker)
- evidence: missing evidence is advisory (warn)

An artifact passes iff no blocker issue was found.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import ValidationError

from cognitive_coach.engine.schemas import format_validation_error, validate_stage_output

logger = logging.getLogger(__name__)


class IssueSeverity(StrEnum):
    BLOCKER = "blocker"
    WARN = "warn"


class IssueArea(StrEnum):
    SCHEMA = "schema"
    COVERAGE = "coverage"
    CONSISTENCY = "consistency"
    EVIDENCE = "evidence"
    ACTIONABILITY = "actionability"


@dataclass(frozen=True)
class QualityIssue:
    severity: IssueSeverity
    area: IssueArea
    hint: str
    target_path: str

    def to_dict(self) -> dict[str, str]:
        return {
            "severity": str(self.severity),
            "area": str(self.area),
            "hint": self.hint,
            "targetPath": self.target_path,
        }


@dataclass
class QualityGateResult:
    passed: bool
    issues: list[QualityIssue] = field(default_factory=list)

    @property
    def blockers(self) -> list[QualityIssue]:
        return [i for i in self.issues if i.severity == IssueSeverity.BLOCKER]

    @property
    def warnings(self) -> list[QualityIssue]:
        return [i for i in self.issues if i.severity == IssueSeverity.WARN]


@dataclass
class QualityGateContext:
    """Artifacts of earlier stages used for cross-stage checks.

    ``framework`` is the S1 node tree, ``nodes`` the S2 system nodes and
    ``strategy_metrics`` the S3 strategy metrics (dicts with ``metricId``).
    """

    framework: Any = None
    nodes: list[dict[str, Any]] | None = None
    strategy_metrics: list[dict[str, Any]] | None = None


# Small frameworks tolerate one missing id; otherwise >10% missing blocks.
SMALL_FRAMEWORK_SIZE = 8
SMALL_FRAMEWORK_TOLERANCE = 1
MAX_MISSING_RATIO = 0.10
MIN_POV_TAGS = 2

_WHITESPACE = re.compile(r"\s+")
_NON_ID_CHARS = re.compile(r"[^a-z0-9\-]")


def normalize_id(value: str) -> str:
    """Canonical id for cross-stage matching: lowercase, dash-separated."""
    text = _WHITESPACE.sub("-", str(value).strip().lower())
    return _NON_ID_CHARS.sub("-", text)


def classify_coverage_severity(total_ids: int, missing_count: int) -> IssueSeverity:
    if missing_count == 0:
        return IssueSeverity.WARN
    if total_ids <= SMALL_FRAMEWORK_SIZE and missing_count <= SMALL_FRAMEWORK_TOLERANCE:
        return IssueSeverity.WARN
    ratio = missing_count / total_ids if total_ids > 0 else 1.0
    return IssueSeverity.BLOCKER if ratio > MAX_MISSING_RATIO else IssueSeverity.WARN


def extract_framework_ids(framework: Any) -> list[str]:
    """Collect node ids from a framework tree, children included."""
    ids: list[str] = []

    def walk(node: Any) -> None:
        if not isinstance(node, dict):
            return
        if isinstance(node.get("id"), str):
            ids.append(node["id"])
        children = node.get("children")
        if isinstance(children, list):
            for child in children:
                walk(child)

    if isinstance(framework, list):
        for node in framework:
            walk(node)
    else:
        walk(framework)
    return ids


def _ordered_unique(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


def _check_framework_coverage(
    output: dict, framework: Any, issues: list[QualityIssue],
) -> None:
    nodes = output.get("nodes")
    if not isinstance(nodes, list):
        return
    framework_ids = _ordered_unique([normalize_id(i) for i in extract_framework_ids(framework)])
    node_ids = {
        normalize_id(n["id"]) for n in nodes
        if isinstance(n, dict) and isinstance(n.get("id"), str)
    }
    missing = [i for i in framework_ids if i not in node_ids]
    if not missing:
        return
    severity = classify_coverage_severity(len(framework_ids), len(missing))
    issues.append(QualityIssue(
        severity=severity,
        area=IssueArea.CONSISTENCY if severity == IssueSeverity.BLOCKER else IssueArea.COVERAGE,
        hint=(
            f"Framework ids not found in S2.nodes: {', '.join(missing)} "
            f"({len(missing)}/{len(framework_ids)} missing)"
        ),
        target_path="nodes",
    ))


def _check_metric_references(
    output: dict, strategy_metrics: list[dict[str, Any]], issues: list[QualityIssue],
) -> None:
    referenced = output.get("referencedMetricIds")
    if not isinstance(referenced, list):
        return
    known = {
        normalize_id(m["metricId"]) for m in strategy_metrics
        if isinstance(m, dict) and isinstance(m.get("metricId"), str)
    }
    unknown = [str(i) for i in referenced if normalize_id(str(i)) not in known]
    if unknown:
        issues.append(QualityIssue(
            severity=IssueSeverity.WARN,
            area=IssueArea.CONSISTENCY,
            hint=f"S4 references unknown metric ids: {', '.join(unknown)}",
            target_path="referencedMetricIds",
        ))


def _check_strategy(
    output: dict, nodes: list[dict[str, Any]] | None, issues: list[QualityIssue],
) -> None:
    spec = output.get("strategySpec")
    metrics = spec.get("metrics") if isinstance(spec, dict) else None
    if not isinstance(metrics, list):
        return
    metrics = [m for m in metrics if isinstance(m, dict)]

    if nodes:
        node_ids = _ordered_unique([
            normalize_id(n["id"]) for n in nodes
            if isinstance(n, dict) and isinstance(n.get("id"), str)
        ])
        metric_ids = {normalize_id(str(m.get("metricId", ""))) for m in metrics}
        uncovered = [i for i in node_ids if i not in metric_ids]
        if uncovered:
            issues.append(QualityIssue(
                severity=IssueSeverity.BLOCKER,
                area=IssueArea.COVERAGE,
                hint=f"Uncovered nodes: {', '.join(uncovered)}",
                target_path="strategySpec.metrics",
            ))

    required = (
        ("triggers", "metric requires at least 1 trigger", True),
        ("diagnosis", "metric requires at least 1 diagnosis step", True),
        ("options", "metric requires options (A/B/C)", True),
        ("recovery", "metric requires recovery window", False),
        ("stopLoss", "metric requires stopLoss", False),
    )
    for metric in metrics:
        path = f"strategySpec.metrics({metric.get('metricId')})"
        for key, hint, is_list in required:
            value = metric.get(key)
            present = isinstance(value, list) and len(value) > 0 if is_list else bool(value)
            if not present:
                issues.append(QualityIssue(
                    severity=IssueSeverity.BLOCKER,
                    area=IssueArea.ACTIONABILITY,
                    hint=hint,
                    target_path=f"{path}.{key}",
                ))
        if not metric.get("evidence"):
            issues.append(QualityIssue(
                severity=IssueSeverity.WARN,
                area=IssueArea.EVIDENCE,
                hint="evidence is recommended",
                target_path=f"{path}.evidence",
            ))

    pov_tags = output.get("povTags")
    if not isinstance(pov_tags, list) or len(pov_tags) < MIN_POV_TAGS:
        issues.append(QualityIssue(
            severity=IssueSeverity.WARN,
            area=IssueArea.CONSISTENCY,
            hint="At least two POVs are recommended",
            target_path="povTags",
        ))


def run_quality_gates(
    stage: str,
    output: Any,
    context: QualityGateContext | None = None,
) -> QualityGateResult:
    """Check a stage artifact; ``passed`` is False iff a blocker was found."""
    key = stage.lower()
    ctx = context or QualityGateContext()
    issues: list[QualityIssue] = []

    try:
        validate_stage_output(key, output)
    except ValidationError as e:
        issues.append(QualityIssue(
            severity=IssueSeverity.BLOCKER,
            area=IssueArea.SCHEMA,
            hint=format_validation_error(e),
            target_path=stage.upper(),
        ))

    if isinstance(output, dict):
        if key == "s2" and ctx.framework:
            _check_framework_coverage(output, ctx.framework, issues)
        if key == "s3":
            _check_strategy(output, ctx.nodes, issues)
        if key == "s4" and ctx.strategy_metrics:
            _check_metric_references(output, ctx.strategy_metrics, issues)

    result = QualityGateResult(
        passed=not any(i.severity == IssueSeverity.BLOCKER for i in issues),
        issues=issues,
    )
    if not result.passed:
        logger.info(
            "Quality gate blocked %s: %d blocker(s), %d warning(s)",
            stage, len(result.blockers), len(result.warnings),
        )
    elif issues:
        logger.debug("Quality gate passed %s with %d warning(s)", stage, len(issues))
    return result
