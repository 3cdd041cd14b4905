"""Error classification for adaptive retries.

Classifies failed generations into a small taxonomy so the retry engine can
repair the prompt for the actual symptom instead of blindly repeating it.
``to_error_type`` is the only place that maps provider error codes or free
text onto that taxonomy; update it when upstream error wording changes.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum, StrEnum

from cognitive_coach.models.base import ErrorCode


class ErrorType(Enum):
    """Failure classes with different recovery strategies."""

    EMPTY_RESPONSE = "EMPTY_RESPONSE"
    PARSE_ERROR = "PARSE_ERROR"
    SCHEMA_VALIDATION_ERROR = "SCHEMA_VALIDATION_ERROR"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    UNKNOWN = "UNKNOWN"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class ErrorContext:
    """Heuristic read on how bad a failure is and what to change."""

    severity: Severity = Severity.MEDIUM
    patterns: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    @property
    def delay_multiplier(self) -> float:
        if self.severity == Severity.HIGH:
            return 2.0
        if self.severity == Severity.LOW:
            return 0.5
        return 1.0


@dataclass
class ErrorClassification:
    """An error type together with its severity context."""

    type: ErrorType
    severity: Severity
    patterns: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class MissingField:
    field: str
    description: str


# First match wins; the taxonomy is a function of the message alone.
_PATTERNS: list[tuple[re.Pattern, ErrorType]] = [
    (re.compile(r"EMPTY_RESPONSE|empty response", re.IGNORECASE), ErrorType.EMPTY_RESPONSE),
    (re.compile(r"PARSE_ERROR|JSON", re.IGNORECASE), ErrorType.PARSE_ERROR),
    (re.compile(r"schema|validation", re.IGNORECASE), ErrorType.SCHEMA_VALIDATION_ERROR),
    (re.compile(r"timeout|timed out", re.IGNORECASE), ErrorType.TIMEOUT),
    (
        re.compile(r"rate[ _-]?limit|\b429\b|too many requests", re.IGNORECASE),
        ErrorType.RATE_LIMIT,
    ),
]

_CODE_TO_TYPE: dict[ErrorCode, ErrorType] = {
    ErrorCode.EMPTY_RESPONSE: ErrorType.EMPTY_RESPONSE,
    ErrorCode.PARSE_ERROR: ErrorType.PARSE_ERROR,
    ErrorCode.SCHEMA_VALIDATION_ERROR: ErrorType.SCHEMA_VALIDATION_ERROR,
    ErrorCode.TIMEOUT: ErrorType.TIMEOUT,
    ErrorCode.RATE_LIMIT: ErrorType.RATE_LIMIT,
}

FIELD_DESCRIPTIONS: dict[str, str] = {
    "status": "Current processing status (clarification_needed/clarified/recommendations_provided)",
    "ai_question": "Question to ask the user for clarification",
    "goal": "Refined learning goal statement",
    "recommendations": "Array of categorized learning recommendations",
    "mermaidChart": 'Mermaid diagram syntax starting with "graph TD"',
    "metaphor": "Vivid comparison to explain the learning process",
    "actionPlan": "Array of executable action steps",
    "kpis": "Array of measurable key performance indicators",
    "analysis": "Detailed progress analysis",
    "suggestions": "Array of actionable improvement recommendations",
    "encouragement": "Motivational closing message",
}


def describe_error(error: str | BaseException) -> str:
    """Message text used for classification; exceptions include their type."""
    if isinstance(error, BaseException):
        message = str(error)
        name = type(error).__name__
        return f"{name}: {message}" if message else name
    return str(error or "")


def analyze_error(error: str | BaseException) -> ErrorType:
    """Classify an error message by string patterns; UNKNOWN if none match."""
    text = describe_error(error)
    if not text:
        return ErrorType.UNKNOWN
    for pattern, error_type in _PATTERNS:
        if pattern.search(text):
            return error_type
    return ErrorType.UNKNOWN


def to_error_type(
    error: ErrorCode | str | BaseException | None,
    detail: str | None = None,
) -> ErrorType:
    """Translate a structured provider code, or fall back to text matching.

    Codes without a dedicated error type (``API_ERROR``, ``UNKNOWN``) are
    refined from ``detail`` when one is given.
    """
    if isinstance(error, ErrorCode):
        mapped = _CODE_TO_TYPE.get(error)
        if mapped is not None:
            return mapped
        return analyze_error(detail) if detail else ErrorType.UNKNOWN
    if error is None:
        return analyze_error(detail) if detail else ErrorType.UNKNOWN
    return analyze_error(error)


def analyze_error_context(
    prompt: str,
    error_details: str | None = None,
    attempt_number: int | None = None,
) -> ErrorContext:
    """Estimate failure severity and suggested remedies.

    Severity escalates with repeated symptoms: JSON problems are "high"
    from the third attempt on. Later matches override earlier severity.
    """
    del prompt  # kept for call-site symmetry with prompt repair
    context = ErrorContext()
    if not error_details:
        return context

    if "JSON" in error_details or "parse" in error_details:
        context.patterns.append("json_formatting")
        context.recommendations.extend([
            "Simplify JSON structure",
            "Add explicit format example",
        ])
        context.severity = (
            Severity.HIGH if attempt_number and attempt_number > 2 else Severity.MEDIUM
        )

    if "required" in error_details or "missing" in error_details:
        context.patterns.append("missing_fields")
        context.recommendations.extend([
            "Emphasize required fields",
            "Provide field descriptions",
        ])
        context.severity = Severity.HIGH

    if "length" in error_details or "token" in error_details:
        context.patterns.append("content_length")
        context.recommendations.extend([
            "Request more concise response",
            "Break into smaller parts",
        ])
        context.severity = Severity.LOW

    return context


def extract_missing_fields(error_details: str | None = None) -> list[MissingField]:
    """Best-effort scan for known field names mentioned as required."""
    if not error_details or "required" not in error_details:
        return []
    return [
        MissingField(field=name, description=description)
        for name, description in FIELD_DESCRIPTIONS.items()
        if name in error_details
    ]


def classify(
    error: ErrorCode | str | BaseException,
    *,
    prompt: str = "",
    details: str | None = None,
    attempt: int = 1,
) -> ErrorClassification:
    """Full classification record for one failure."""
    error_type = to_error_type(error, details)
    if details is None:
        details = str(error) if isinstance(error, ErrorCode) else describe_error(error)
    context = analyze_error_context(prompt, details, attempt)
    return ErrorClassification(
        type=error_type,
        severity=context.severity,
        patterns=list(context.patterns),
        recommendations=list(context.recommendations),
    )
