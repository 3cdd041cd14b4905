"""Tests for process-entry wiring and shutdown hooks."""

from __future__ import annotations

import logging
import signal

import pytest

from fakes import FakeProvider

from cognitive_coach import runtime
from cognitive_coach.config import Config
from cognitive_coach.recovery.rate_limit import build_rate_key
from cognitive_coach.runtime import CoachServices


@pytest.fixture
def isolated_hooks(monkeypatch):
    """Keep hook registration away from the real interpreter state."""
    registered = {"atexit": [], "signals": []}
    monkeypatch.setattr(runtime, "_hooks_registered", False)
    monkeypatch.setattr(runtime, "_shutdown_callbacks", [])
    monkeypatch.setattr(runtime, "_services", None)
    monkeypatch.setattr(runtime.atexit, "register", lambda *a: registered["atexit"].append(a))
    monkeypatch.setattr(
        runtime.signal, "signal", lambda signum, handler: registered["signals"].append(signum),
    )
    monkeypatch.setattr(runtime.sys, "excepthook", runtime.sys.excepthook)
    return registered


class TestCoachServices:
    def test_build_wires_collaborators(self):
        provider = FakeProvider()
        services = CoachServices.build(Config(), provider=provider)
        assert services.provider is provider
        assert services.cache.stages == ("s0", "s1", "s2", "s3", "s4")
        assert services.retry_options.max_retries == 3
        assert services.retry_options.max_output_tokens == 65536
        assert services.budget.stages == ("stage0", "stage1", "stage2")
        services.shutdown()

    def test_shutdown_is_idempotent(self, caplog):
        services = CoachServices.build(Config(), provider=FakeProvider())
        services.shutdown()
        with caplog.at_level(logging.WARNING):
            services.shutdown()
        assert services.cache.is_destroyed()
        assert "already destroyed" not in caplog.text

    def test_rate_limiter_is_shared_per_process(self):
        services = CoachServices.build(Config(), provider=FakeProvider())
        key = build_rate_key("10.0.0.1", "/api/generate")
        assert all(services.rate_limiter.check(key, limit=2).allowed for _ in range(2))
        assert services.rate_limiter.check(key, limit=2).allowed is False
        services.shutdown()

    @pytest.mark.asyncio
    async def test_aclose_closes_provider(self):
        provider = FakeProvider()
        services = CoachServices.build(Config(), provider=provider)
        await services.aclose()
        assert provider.closed
        assert services.cache.is_destroyed()

    @pytest.mark.asyncio
    async def test_cache_maintenance_runs_until_shutdown(self):
        services = CoachServices.build(Config(), provider=FakeProvider())
        assert not services.cache.maintenance_running

        async def generate():
            return {"status": "clarified"}

        await services.cache.get_or_generate("s0", "k", generate)
        assert services.cache.maintenance_running
        await services.aclose()
        assert not services.cache.maintenance_running


class TestShutdownHooks:
    def test_registers_once(self, isolated_hooks):
        assert runtime.register_shutdown_hooks(lambda: None) is True
        assert runtime.register_shutdown_hooks(lambda: None) is False
        assert len(isolated_hooks["atexit"]) == 1
        assert isolated_hooks["signals"] == [signal.SIGTERM, signal.SIGINT]

    def test_callbacks_run_once(self, isolated_hooks):
        calls = []
        callback = lambda: calls.append(1)  # noqa: E731
        runtime.register_shutdown_hooks(callback)
        runtime.register_shutdown_hooks(callback)
        runtime._run_shutdown_callbacks("test")
        runtime._run_shutdown_callbacks("test")
        assert calls == [1]

    def test_failing_callback_does_not_block_others(self, isolated_hooks, caplog):
        calls = []

        def broken():
            raise RuntimeError("boom")

        runtime.register_shutdown_hooks(broken)
        runtime.register_shutdown_hooks(lambda: calls.append(1))
        with caplog.at_level(logging.ERROR):
            runtime._run_shutdown_callbacks("test")
        assert calls == [1]
        assert "Shutdown callback failed" in caplog.text

    def test_signal_handler_chains_previous(self, isolated_hooks):
        seen = []
        runtime.register_shutdown_hooks(lambda: seen.append("cleanup"))
        handler = runtime._chained_signal_handler(lambda signum, frame: seen.append(signum))
        handler(signal.SIGTERM, None)
        assert seen == ["cleanup", signal.SIGTERM]

    def test_excepthook_cleans_up_and_chains(self, isolated_hooks, monkeypatch):
        seen = []
        monkeypatch.setattr(runtime.sys, "excepthook", lambda *args: seen.append("previous"))
        runtime.register_shutdown_hooks(lambda: seen.append("cleanup"))
        error = ValueError("x")
        runtime.sys.excepthook(ValueError, error, None)
        assert seen == ["cleanup", "previous"]


class TestGetServices:
    def test_returns_singleton(self, isolated_hooks):
        config = Config()
        first = runtime.get_services(config)
        second = runtime.get_services()
        assert first is second
        assert first.config is config
        runtime.reset_services()
        assert first.cache.is_destroyed()

    def test_reset_without_services(self, isolated_hooks):
        runtime.reset_services()


class TestConfigureLogging:
    def test_sets_root_level(self):
        root = logging.getLogger()
        previous = root.level
        try:
            runtime.configure_logging("debug")
            assert root.level == logging.DEBUG
            runtime.configure_logging("nonsense")
            assert root.level == logging.INFO
        finally:
            root.setLevel(previous)
