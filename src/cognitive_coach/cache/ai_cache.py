"""Per-stage response caches and memoizing wrappers for async calls."""

from __future__ import annotations

import functools
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from cognitive_coach.cache.service import (
    CacheHealth,
    CacheKeyGenerator,
    CacheService,
    CacheStats,
    MaintenanceTask,
    MemoryMonitor,
)
from cognitive_coach.config import CacheConfig
from cognitive_coach.exceptions import CacheError

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOW_VALUE_HIT_RATE = 0.2
LOW_VALUE_MIN_SIZE = 10
GLOBAL_MEMORY_WARNING_BYTES = 100 * 1024 * 1024
GLOBAL_LOW_HIT_RATE = 0.4


@dataclass
class GlobalCacheHealth:
    overall_status: str
    cache_details: dict[str, CacheHealth]
    total_items: int
    total_memory_estimate: int
    average_hit_rate: float
    recommendations: list[str] = field(default_factory=list)


class AIResponseCache:
    """One ``CacheService`` per workflow stage (``s0`` .. ``s4``).

    Stage names are case-insensitive. Unknown stages are ignored unless
    ``strict`` is set, in which case they raise ``CacheError``. With
    ``auto_maintenance`` the periodic maintenance task starts on the first
    ``get_or_generate`` call, since it needs a running event loop.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        *,
        monitor: MemoryMonitor | None = None,
        clock: Callable[[], float] = time.monotonic,
        strict: bool = False,
        auto_maintenance: bool = True,
    ):
        self._config = config or CacheConfig()
        self._auto_maintenance = auto_maintenance
        self._monitor = monitor or MemoryMonitor(
            threshold_bytes=self._config.memory_pressure_bytes,
            cleanup_interval_seconds=self._config.cleanup_interval_seconds,
            clock=clock,
        )
        self._strict = strict
        self._caches: dict[str, CacheService] = {
            stage: CacheService(
                stage_config.name,
                max_items=stage_config.max,
                ttl_seconds=stage_config.ttl_seconds,
                monitor=self._monitor,
                clock=clock,
            )
            for stage, stage_config in self._config.stages.items()
        }
        self._maintenance: MaintenanceTask | None = None
        self._destroyed = False

    @property
    def stages(self) -> tuple[str, ...]:
        return tuple(self._caches)

    def cache_for(self, stage: str) -> CacheService | None:
        cache = self._caches.get(stage.lower())
        if cache is None and self._strict:
            raise CacheError(f"Unknown cache stage: {stage!r}")
        return cache

    def get(self, stage: str, key: str) -> Any:
        cache = self.cache_for(stage)
        return cache.get(key) if cache is not None else None

    def set(self, stage: str, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        cache = self.cache_for(stage)
        if cache is not None:
            cache.set(key, value, ttl_seconds)

    async def get_or_generate(
        self,
        stage: str,
        key: str,
        generator: Callable[[], Awaitable[T]],
        ttl_seconds: float | None = None,
    ) -> T:
        """Return the cached value, or await ``generator`` and store its result."""
        if self._auto_maintenance and not self.maintenance_running and not self._destroyed:
            self.start_maintenance()
        cached_value = self.get(stage, key)
        if cached_value is not None:
            return cached_value
        value = await generator()
        self.set(stage, key, value, ttl_seconds)
        return value

    def invalidate(self, stage: str, key: str | None = None) -> None:
        cache = self.cache_for(stage)
        if cache is None:
            return
        if key:
            cache.delete(key)
        else:
            cache.clear()

    def get_all_stats(self) -> dict[str, CacheStats]:
        return {stage: cache.get_stats() for stage, cache in self._caches.items()}

    def get_global_health_status(self) -> GlobalCacheHealth:
        details: dict[str, CacheHealth] = {}
        total_items = 0
        total_memory = 0
        total_hits = 0
        total_requests = 0
        for stage, cache in self._caches.items():
            details[stage] = cache.get_health_status()
            stats = cache.get_stats()
            total_items += stats.size
            total_memory += stats.memory_usage.estimated if stats.memory_usage else 0
            total_hits += stats.hits
            total_requests += stats.hits + stats.misses

        average_hit_rate = total_hits / total_requests if total_requests else 0.0
        critical = sum(1 for d in details.values() if d.status == "critical")
        warning = sum(1 for d in details.values() if d.status == "warning")

        overall = "healthy"
        recommendations: list[str] = []
        if critical:
            overall = "critical"
            recommendations.append(f"{critical} cache(s) in critical state need attention now")
        elif warning:
            overall = "warning"
            recommendations.append(f"{warning} cache(s) need attention")
        if total_memory > GLOBAL_MEMORY_WARNING_BYTES:
            recommendations.append("Total cache memory is high; reduce items or shorten TTLs")
        if average_hit_rate < GLOBAL_LOW_HIT_RATE:
            recommendations.append("Overall hit rate is low; review the caching strategy")

        return GlobalCacheHealth(
            overall_status=overall,
            cache_details=details,
            total_items=total_items,
            total_memory_estimate=total_memory,
            average_hit_rate=average_hit_rate,
            recommendations=recommendations,
        )

    def perform_global_cleanup(self) -> None:
        logger.info("Starting global cache cleanup")
        for cache in self._caches.values():
            cache.force_cleanup()
        logger.info("Global cache cleanup completed")

    def perform_maintenance(self) -> None:
        for cache in self._caches.values():
            cache.perform_maintenance()

    def cleanup_low_value_items(self) -> list[str]:
        """Clear stages whose hit rate is poor despite holding entries."""
        cleared = []
        for stage, stats in self.get_all_stats().items():
            if stats.hit_rate < LOW_VALUE_HIT_RATE and stats.size > LOW_VALUE_MIN_SIZE:
                logger.info(
                    "Clearing low-value cache %s (hit rate %.2f)", stage, stats.hit_rate,
                )
                self._caches[stage].clear()
                cleared.append(stage)
        return cleared

    @property
    def maintenance_running(self) -> bool:
        return self._maintenance is not None and self._maintenance.running

    def start_maintenance(self) -> MaintenanceTask:
        """Start periodic maintenance on the running event loop."""
        if self._maintenance is None:
            self._maintenance = MaintenanceTask(
                self._config.maintenance_interval_seconds,
                self.perform_maintenance,
                name="ai-response-cache-maintenance",
            )
        self._maintenance.start()
        return self._maintenance

    def destroy(self) -> None:
        if self._destroyed:
            logger.warning("AIResponseCache already destroyed")
            return
        if self._maintenance is not None:
            self._maintenance.stop()
            self._maintenance = None
        for cache in self._caches.values():
            cache.destroy()
        self._caches.clear()
        self._destroyed = True
        logger.info("AIResponseCache destroyed")

    def is_destroyed(self) -> bool:
        return self._destroyed


def _wrap(
    cache: AIResponseCache,
    stage: str,
    func: Callable[..., Awaitable[Any]],
    ttl_seconds: float | None,
    condition: Callable[..., bool] | None,
) -> Callable[..., Awaitable[Any]]:
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        if condition is not None and not condition(*args, **kwargs):
            return await func(*args, **kwargs)
        key = CacheKeyGenerator.generate(
            f"{stage}:{func.__name__}", {"args": list(args), "kwargs": kwargs},
        )
        return await cache.get_or_generate(
            stage, key, lambda: func(*args, **kwargs), ttl_seconds,
        )

    return wrapper


def cached(
    cache: AIResponseCache,
    stage: str,
    ttl_seconds: float | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Memoize an async callable in ``cache`` under a key derived from its arguments."""

    def decorator(func):
        return _wrap(cache, stage, func, ttl_seconds, None)

    return decorator


def cached_if(
    cache: AIResponseCache,
    stage: str,
    condition: Callable[..., bool],
    ttl_seconds: float | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Like ``cached``, but calls where ``condition(*args)`` is false bypass the cache."""

    def decorator(func):
        return _wrap(cache, stage, func, ttl_seconds, condition)

    return decorator
