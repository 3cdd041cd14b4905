"""Process-entry wiring.

Library code receives its collaborators explicitly. This module is the one
place that builds them from configuration, keeps a process-wide instance
for entry points that need one, and tears it down on exit.
"""

from __future__ import annotations

import atexit
import logging
import os
import signal
import sys
import threading
from collections.abc import Callable
from dataclasses import dataclass

from cognitive_coach.cache.ai_cache import AIResponseCache
from cognitive_coach.config import Config, load_config
from cognitive_coach.engine.context_manager import ContextManager
from cognitive_coach.engine.token_budget import TokenBudgetManager
from cognitive_coach.models.base import ModelProvider
from cognitive_coach.models.gemini_provider import GeminiProvider
from cognitive_coach.recovery.rate_limit import RateLimiter
from cognitive_coach.recovery.retry import RetryOptions
from cognitive_coach.utils.tokens import TokenCounter

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_lock = threading.Lock()
_services: CoachServices | None = None
_hooks_registered = False
_shutdown_callbacks: list[Callable[[], None]] = []


@dataclass
class CoachServices:
    """Long-lived collaborators shared by one process."""

    config: Config
    provider: ModelProvider
    token_counter: TokenCounter
    context_manager: ContextManager
    cache: AIResponseCache
    budget: TokenBudgetManager
    # Per-client request windows for an HTTP front end, keyed by build_rate_key.
    rate_limiter: RateLimiter
    retry_options: RetryOptions

    @classmethod
    def build(
        cls,
        config: Config | None = None,
        *,
        provider: ModelProvider | None = None,
    ) -> CoachServices:
        cfg = config or Config()
        model = provider or GeminiProvider(cfg.model)
        ratios = {
            "cjk_chars_per_token": cfg.context.cjk_chars_per_token,
            "other_chars_per_token": cfg.context.other_chars_per_token,
        }
        counter = TokenCounter(model, **ratios)
        return cls(
            config=cfg,
            provider=model,
            token_counter=counter,
            context_manager=ContextManager(model, config=cfg.context, token_counter=counter),
            cache=AIResponseCache(cfg.cache),
            budget=TokenBudgetManager(),
            rate_limiter=RateLimiter(),
            retry_options=RetryOptions.from_config(
                cfg.retry, max_output_tokens=cfg.model.max_output_tokens,
            ),
        )

    def shutdown(self) -> None:
        """Stop background work and drop cached data. Safe to call twice."""
        if not self.cache.is_destroyed():
            self.cache.destroy()

    async def aclose(self) -> None:
        self.shutdown()
        await self.provider.close()


def configure_logging(level: str = "INFO") -> None:
    """Apply the configured level to the root logger once, at process entry."""
    resolved = logging.getLevelName(str(level).upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logging.basicConfig(level=resolved, format=_LOG_FORMAT)
    logging.getLogger().setLevel(resolved)


def get_services(config: Config | None = None) -> CoachServices:
    """Process-wide services, built on first use.

    ``config`` only applies to the first call; later calls return the
    existing instance.
    """
    global _services
    with _lock:
        if _services is None:
            cfg = config or load_config()
            _services = CoachServices.build(cfg)
            register_shutdown_hooks(_services.shutdown)
            logger.debug("Built process services")
        return _services


def reset_services() -> None:
    """Shut down and forget the process-wide services."""
    global _services
    with _lock:
        services, _services = _services, None
    if services is not None:
        services.shutdown()


def register_shutdown_hooks(callback: Callable[[], None]) -> bool:
    """Run ``callback`` at exit, on SIGTERM/SIGINT and on uncaught exceptions.

    Hooks are installed at most once per process; later calls only add
    the callback. Returns True when the hooks were installed by this call.
    """
    global _hooks_registered
    if callback not in _shutdown_callbacks:
        _shutdown_callbacks.append(callback)
    if _hooks_registered:
        return False
    _hooks_registered = True

    atexit.register(_run_shutdown_callbacks, "exit")
    for signum in (signal.SIGTERM, signal.SIGINT):
        try:
            previous = signal.getsignal(signum)
            signal.signal(signum, _chained_signal_handler(previous))
        except ValueError:
            # Signal handlers can only be installed from the main thread.
            logger.debug("Skipping %s handler outside the main thread", signum)

    previous_hook = sys.excepthook

    def excepthook(exc_type, exc, tb):
        logger.error("Uncaught exception, cleaning up before exit", exc_info=(exc_type, exc, tb))
        _run_shutdown_callbacks("uncaught exception")
        previous_hook(exc_type, exc, tb)

    sys.excepthook = excepthook
    logger.debug("Shutdown hooks registered")
    return True


def _chained_signal_handler(previous):
    def handler(signum, frame):
        _run_shutdown_callbacks(f"signal {signum}")
        if callable(previous):
            previous(signum, frame)
        elif previous == signal.SIG_DFL:
            signal.signal(signum, signal.SIG_DFL)
            os.kill(os.getpid(), signum)

    return handler


def _run_shutdown_callbacks(reason: str) -> None:
    callbacks = list(_shutdown_callbacks)
    _shutdown_callbacks.clear()
    if callbacks:
        logger.info("Shutting down (%s), releasing resources", reason)
    for callback in callbacks:
        try:
            callback()
        except Exception:
            logger.exception("Shutdown callback failed")
