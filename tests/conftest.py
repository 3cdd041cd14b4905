"""Shared test fixtures for CognitiveCoach."""

from __future__ import annotations

from pathlib import Path

import pytest

from fakes import FakeClock, FakeProvider, SleepRecorder, make_conversation

from cognitive_coach.config import Config, ContextConfig, RetryConfig
from cognitive_coach.engine.context_manager import ChatMessage


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def config() -> Config:
    """Test configuration with fast retries and a small context budget."""
    return Config(
        retry=RetryConfig(max_retries=3, initial_delay_ms=10, max_delay_ms=100),
        context=ContextConfig(max_tokens=300, recent_turns_to_keep=3, summary_max_tokens=100),
    )


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture
def long_conversation() -> list[ChatMessage]:
    """Twenty turns (forty messages), well over a 300-token budget."""
    return make_conversation(20, filler="Some extra detail " * 5)
