"""Tests for CLI entry point."""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from fakes import FakeProvider, make_conversation

from cognitive_coach import runtime
from cognitive_coach.__main__ import cli
from cognitive_coach.models.base import ErrorCode, GenerationResult

PASSING_PLAN = {
    "actionPlan": [{"id": "1", "text": "Practice", "isCompleted": False}],
    "kpis": ["hours"],
    "strategySpec": {"metrics": [{
        "metricId": "hours",
        "what": "Hours",
        "why": "Volume",
        "triggers": [{"metricId": "hours", "comparator": "<", "threshold": 3, "window": "7d"}],
        "diagnosis": [{"id": "d1", "description": "Look at the calendar"}],
        "options": [{"id": "A", "steps": ["Block time"], "benefits": ["Focus"]}],
        "recovery": {"window": "14d", "reviewMetricIds": ["hours"]},
        "stopLoss": {"condition": "Flat for a month", "action": "Re-plan"},
    }]},
}


@pytest.fixture(autouse=True)
def clean_environment(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.delenv("GOOGLE_AI_API_KEY", raising=False)
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)


def _write_json(path, payload):
    path.write_text(json.dumps(payload))
    return path


class TestCLI:
    """Test CLI commands."""

    def test_help(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "CognitiveCoach" in result.output

    def test_version(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_bad_config(self, tmp_path):
        config_file = tmp_path / "broken.toml"
        config_file.write_text("[retry\n")
        result = CliRunner().invoke(cli, ["--config", str(config_file), "estimate", "x"])
        assert result.exit_code == 1
        assert "Configuration error" in result.output


class TestEstimate:
    def test_text_argument(self):
        result = CliRunner().invoke(cli, ["estimate", "abcd"])
        assert result.exit_code == 0
        assert result.output.strip() == "1"

    def test_file(self, tmp_path):
        text_file = tmp_path / "text.txt"
        text_file.write_text("a" * 40)
        result = CliRunner().invoke(cli, ["estimate", "--file", str(text_file)])
        assert result.output.strip() == "10"

    def test_requires_input(self):
        result = CliRunner().invoke(cli, ["estimate"])
        assert result.exit_code == 1


class TestCompact:
    def test_uses_fallback_summary_without_key(self, tmp_path):
        messages = [m.to_dict() for m in make_conversation(10, filler="detail " * 10)]
        path = _write_json(tmp_path / "conversation.json", messages)
        result = CliRunner().invoke(
            cli, ["compact", str(path), "--max-tokens", "100", "--recent-turns", "2"],
        )
        assert result.exit_code == 0, result.output
        payload = json.loads(result.output)
        assert payload["was_compacted"] is True
        assert payload["used_fallback_summary"] is True
        assert payload["compacted_messages"][-1]["id"] == "a9"
        assert len(payload["compacted_messages"]) == 5

    def test_short_conversation_unchanged(self, tmp_path):
        path = _write_json(tmp_path / "conversation.json", {
            "messages": [{"role": "user", "content": "Hi"}],
        })
        result = CliRunner().invoke(cli, ["compact", str(path)])
        assert json.loads(result.output)["was_compacted"] is False

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "conversation.json"
        path.write_text("not json")
        result = CliRunner().invoke(cli, ["compact", str(path)])
        assert result.exit_code == 1
        assert "Invalid JSON" in result.output


class TestGate:
    def test_pass(self, tmp_path):
        path = _write_json(tmp_path / "plan.json", PASSING_PLAN)
        result = CliRunner().invoke(cli, ["gate", "s3", str(path)])
        assert result.exit_code == 0
        assert "S3 passed" in result.output
        assert "[warn] evidence" in result.output

    def test_blocked_by_uncovered_nodes(self, tmp_path):
        plan = _write_json(tmp_path / "plan.json", PASSING_PLAN)
        context = _write_json(tmp_path / "context.json", {
            "nodes": [{"id": "hours", "title": "Hours"}, {"id": "sleep", "title": "Sleep"}],
        })
        result = CliRunner().invoke(cli, ["gate", "S3", str(plan), "--context", str(context)])
        assert result.exit_code == 1
        assert "Uncovered nodes: sleep" in result.output
        assert "S3 blocked" in result.output

    def test_unknown_stage(self, tmp_path):
        path = _write_json(tmp_path / "plan.json", {})
        result = CliRunner().invoke(cli, ["gate", "s9", str(path)])
        assert result.exit_code != 0


class TestBudget:
    def test_reports_decision(self):
        result = CliRunner().invoke(
            cli, ["budget", "stage0", "--system-tokens", "100", "--output-tokens", "50"],
        )
        assert result.exit_code == 0
        payload = json.loads(result.output)
        assert payload["canProceed"] is True
        assert payload["estimate"]["total"] == 150
        assert payload["budget"]["stage"] == "stage0"
        assert payload["strategy"]["action"] == "proceed"

    def test_unknown_stage(self):
        result = CliRunner().invoke(cli, ["budget", "stage9"])
        assert result.exit_code == 1
        assert "Unknown budget stage" in result.output


class TestCacheHealth:
    def test_reports_every_stage(self):
        result = CliRunner().invoke(cli, ["cache-health"])
        assert result.exit_code == 0
        payload = json.loads(result.output)
        assert set(payload["cache_details"]) == {"s0", "s1", "s2", "s3", "s4"}
        assert payload["total_items"] == 0


class TestGenerate:
    def test_requires_api_key(self, tmp_path):
        prompt = tmp_path / "prompt.txt"
        prompt.write_text("Refine my goal")
        result = CliRunner().invoke(cli, ["generate", "s0", str(prompt)])
        assert result.exit_code == 1
        assert "No API key configured" in result.output

    def _patch_provider(self, monkeypatch, provider):
        monkeypatch.setenv("GOOGLE_AI_API_KEY", "test-key")
        monkeypatch.setattr(runtime, "GeminiProvider", lambda model_config: provider)
        monkeypatch.setattr(runtime, "_services", None)
        monkeypatch.setattr(runtime, "_shutdown_callbacks", [])
        # Pretend the process hooks exist so no real signal handlers are installed.
        monkeypatch.setattr(runtime, "_hooks_registered", True)

    def test_prints_artifact(self, tmp_path, monkeypatch):
        provider = FakeProvider([GenerationResult.success({"status": "clarified", "goal": "x"})])
        self._patch_provider(monkeypatch, provider)
        prompt = tmp_path / "prompt.txt"
        prompt.write_text("Refine my goal")
        result = CliRunner().invoke(cli, ["generate", "s0", str(prompt)])
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == {"status": "clarified", "goal": "x"}
        assert provider.closed

    def test_uses_process_services(self, tmp_path, monkeypatch):
        provider = FakeProvider([GenerationResult.success({"status": "clarified", "goal": "x"})])
        self._patch_provider(monkeypatch, provider)
        prompt = tmp_path / "prompt.txt"
        prompt.write_text("Refine my goal")
        result = CliRunner().invoke(cli, ["generate", "s0", str(prompt)])
        assert result.exit_code == 0, result.output
        assert len(runtime._shutdown_callbacks) == 1
        assert runtime._services is None

    def test_generation_failure_exits(self, tmp_path, monkeypatch):
        provider = FakeProvider(default=GenerationResult.failure(ErrorCode.NO_API_KEY))
        self._patch_provider(monkeypatch, provider)
        prompt = tmp_path / "prompt.txt"
        prompt.write_text("Refine my goal")
        result = CliRunner().invoke(cli, ["generate", "s0", str(prompt)])
        assert result.exit_code == 1
        assert "Generation failed" in result.output
        assert len(provider.calls) == 1
