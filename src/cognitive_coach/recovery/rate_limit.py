"""In-memory fixed-window rate limiter keyed by caller and path.

Best-effort and process-local: counters live in this process only.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 60
DEFAULT_WINDOW_SECONDS = 60.0


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after: int | None = None


@dataclass
class _Counter:
    count: int
    reset_at: float


def build_rate_key(ip: str | None, path: str) -> str:
    return f"{ip or 'unknown'}:{path}"


class RateLimiter:
    """Fixed-window counters.

    ``check`` reads and updates a counter without awaiting, so concurrent
    tasks on one event loop cannot interleave inside it.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._counters: dict[str, _Counter] = {}

    def check(
        self,
        key: str,
        limit: int = DEFAULT_LIMIT,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
    ) -> RateLimitDecision:
        now = self._clock()
        counter = self._counters.get(key)
        if counter is None or counter.reset_at <= now:
            self._counters[key] = _Counter(count=1, reset_at=now + window_seconds)
            return RateLimitDecision(allowed=True)
        if counter.count < limit:
            counter.count += 1
            return RateLimitDecision(allowed=True)
        retry_after = max(0, math.ceil(counter.reset_at - now))
        logger.debug("Rate limit hit for %s, retry after %ds", key, retry_after)
        return RateLimitDecision(allowed=False, retry_after=retry_after)

    def cleanup(self) -> int:
        """Drop counters whose window has ended; returns how many."""
        now = self._clock()
        expired = [key for key, counter in self._counters.items() if counter.reset_at <= now]
        for key in expired:
            del self._counters[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._counters)
