"""CognitiveCoach exception hierarchy.

Provides a structured exception tree so catch blocks can be specific
and callers can distinguish between different failure modes.
"""

from __future__ import annotations


class CoachError(Exception):
    """Base for all CognitiveCoach exceptions."""


class ModelError(CoachError):
    """Provider connection, timeout, parse failures."""


class GenerationFailedError(CoachError):
    """Raised when a stage generation exhausted its retry budget."""

    def __init__(
        self,
        message: str,
        *,
        error: str = "",
        attempts: int = 0,
        error_context: object | None = None,
    ):
        super().__init__(message)
        self.error = error
        self.attempts = attempts
        self.error_context = error_context


class QualityGateError(CoachError):
    """Raised when a generated artifact has blocking quality issues."""

    def __init__(self, message: str, issues: list | None = None):
        super().__init__(message)
        self.issues = list(issues or [])


class CacheError(CoachError):
    """Cache misuse, e.g. an unknown stage partition."""
