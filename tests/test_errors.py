"""Tests for error classification."""

from __future__ import annotations

import asyncio

import pytest

from cognitive_coach.models.base import ErrorCode
from cognitive_coach.recovery.errors import (
    ErrorType,
    MissingField,
    Severity,
    analyze_error,
    analyze_error_context,
    classify,
    describe_error,
    extract_missing_fields,
    to_error_type,
)


class TestAnalyzeError:
    @pytest.mark.parametrize("message,expected", [
        ("EMPTY_RESPONSE: model returned no text", ErrorType.EMPTY_RESPONSE),
        ("Got an empty response", ErrorType.EMPTY_RESPONSE),
        ("PARSE_ERROR: unexpected token", ErrorType.PARSE_ERROR),
        ("Unexpected end of JSON input", ErrorType.PARSE_ERROR),
        ("Schema mismatch on field goal", ErrorType.SCHEMA_VALIDATION_ERROR),
        ("Validation failed", ErrorType.SCHEMA_VALIDATION_ERROR),
        ("Request timeout after 90s", ErrorType.TIMEOUT),
        ("rate limit exceeded", ErrorType.RATE_LIMIT),
        ("HTTP 429 Too Many Requests", ErrorType.RATE_LIMIT),
        ("something odd happened", ErrorType.UNKNOWN),
        ("", ErrorType.UNKNOWN),
    ])
    def test_patterns(self, message, expected):
        assert analyze_error(message) == expected

    def test_case_insensitive(self):
        assert analyze_error("json parse failure") == ErrorType.PARSE_ERROR
        assert analyze_error("TIMED OUT") == ErrorType.TIMEOUT

    def test_first_match_wins(self):
        # Mentions both JSON and validation; parse errors take precedence.
        assert analyze_error("JSON validation failed") == ErrorType.PARSE_ERROR
        assert analyze_error("empty response while parsing JSON") == ErrorType.EMPTY_RESPONSE

    def test_total_over_arbitrary_text(self):
        for text in ["", "   ", "🙂", "x" * 10_000, "null"]:
            assert isinstance(analyze_error(text), ErrorType)

    def test_accepts_exceptions(self):
        assert analyze_error(asyncio.TimeoutError()) == ErrorType.TIMEOUT
        assert analyze_error(ValueError("bad JSON")) == ErrorType.PARSE_ERROR


class TestDescribeError:
    def test_string_passes_through(self):
        assert describe_error("boom") == "boom"

    def test_exception_includes_type_name(self):
        assert describe_error(RuntimeError("boom")) == "RuntimeError: boom"

    def test_exception_without_message(self):
        assert describe_error(KeyError()) == "KeyError"


class TestToErrorType:
    @pytest.mark.parametrize("code,expected", [
        (ErrorCode.EMPTY_RESPONSE, ErrorType.EMPTY_RESPONSE),
        (ErrorCode.PARSE_ERROR, ErrorType.PARSE_ERROR),
        (ErrorCode.SCHEMA_VALIDATION_ERROR, ErrorType.SCHEMA_VALIDATION_ERROR),
        (ErrorCode.TIMEOUT, ErrorType.TIMEOUT),
        (ErrorCode.RATE_LIMIT, ErrorType.RATE_LIMIT),
        (ErrorCode.API_ERROR, ErrorType.UNKNOWN),
        (ErrorCode.NO_API_KEY, ErrorType.UNKNOWN),
    ])
    def test_structured_codes(self, code, expected):
        assert to_error_type(code) == expected

    def test_code_wins_over_detail(self):
        assert to_error_type(ErrorCode.TIMEOUT, "JSON broken") == ErrorType.TIMEOUT

    def test_api_error_refined_from_detail(self):
        assert to_error_type(ErrorCode.API_ERROR, "HTTP 429") == ErrorType.RATE_LIMIT

    def test_text_fallback(self):
        assert to_error_type("request timed out") == ErrorType.TIMEOUT

    def test_none(self):
        assert to_error_type(None) == ErrorType.UNKNOWN


class TestAnalyzeErrorContext:
    def test_no_details_is_medium(self):
        context = analyze_error_context("prompt")
        assert context.severity == Severity.MEDIUM
        assert context.patterns == []
        assert context.delay_multiplier == 1.0

    def test_json_problem_is_medium_early(self):
        context = analyze_error_context("p", "JSON parse failed", 1)
        assert context.severity == Severity.MEDIUM
        assert "json_formatting" in context.patterns
        assert "Add explicit format example" in context.recommendations

    def test_json_problem_escalates_after_two_attempts(self):
        context = analyze_error_context("p", "JSON parse failed", 3)
        assert context.severity == Severity.HIGH
        assert context.delay_multiplier == 2.0

    def test_missing_fields_are_high(self):
        context = analyze_error_context("p", "field goal is required", 1)
        assert context.severity == Severity.HIGH
        assert context.patterns == ["missing_fields"]

    def test_length_problem_is_low(self):
        context = analyze_error_context("p", "output exceeded token limit", 1)
        assert context.severity == Severity.LOW
        assert context.delay_multiplier == 0.5

    def test_later_match_overrides_severity(self):
        context = analyze_error_context("p", "required field missing, token length", 1)
        assert context.patterns == ["missing_fields", "content_length"]
        assert context.severity == Severity.LOW


class TestExtractMissingFields:
    def test_requires_required_keyword(self):
        assert extract_missing_fields("goal is invalid") == []

    def test_finds_known_fields(self):
        fields = extract_missing_fields("Missing required: goal, kpis")
        names = [f.field for f in fields]
        assert names == ["goal", "kpis"]
        assert all(isinstance(f, MissingField) for f in fields)

    def test_empty(self):
        assert extract_missing_fields(None) == []


class TestClassify:
    def test_combines_type_and_context(self):
        result = classify("JSON parse failed", attempt=3)
        assert result.type == ErrorType.PARSE_ERROR
        assert result.severity == Severity.HIGH
        assert "json_formatting" in result.patterns

    def test_structured_code_with_details(self):
        result = classify(
            ErrorCode.SCHEMA_VALIDATION_ERROR, details="goal is required",
        )
        assert result.type == ErrorType.SCHEMA_VALIDATION_ERROR
        assert result.severity == Severity.HIGH
