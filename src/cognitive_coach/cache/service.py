"""Bounded in-memory cache with TTL, size accounting and memory-pressure cleanup.

``CacheService`` is an LRU map: reads refresh recency (and, by default,
the entry's age), inserts evict the least recently used entries while the
item count or the estimated byte size is over its limit. Background
maintenance runs as a cancellable asyncio task (``MaintenanceTask``)
instead of a timer, and halves the cache when the process is under
memory pressure.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import psutil

logger = logging.getLogger(__name__)

AVG_ITEM_BYTES = 5 * 1024
MAX_CACHE_BYTES = 50 * 1024 * 1024
DEFAULT_ITEM_BYTES = 1000
ITEM_OVERHEAD_BYTES = 200

PROMPT_PREFIX_CHARS = 200
TIME_BUCKET_SECONDS = 5 * 60
KEY_CONTEXT_FIELDS = (
    "userGoal",
    "decisionType",
    "runTier",
    "riskPreference",
    "seed",
    "iterationCount",
    "frameworkSize",
)


def _stable_json(data: Any) -> str:
    return json.dumps(
        data, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str,
    )


class CacheKeyGenerator:
    """Deterministic cache keys: ``prefix:`` plus 16 hex chars of SHA-256."""

    @staticmethod
    def generate(prefix: str, data: Any) -> str:
        digest = hashlib.sha256(_stable_json(data).encode("utf-8")).hexdigest()[:16]
        return f"{prefix}:{digest}"

    @classmethod
    def generate_for_prompt(
        cls,
        stage: str,
        prompt: str,
        context: Mapping[str, Any] | None = None,
        user_id: str | None = None,
        *,
        now: float | None = None,
    ) -> str:
        """Key for a stage prompt.

        Identical requests within one 5-minute bucket collide on purpose;
        stage, user and the selected context fields are always part of the key.
        """
        timestamp = time.time() if now is None else now
        data = {
            "stage": stage,
            "prompt": prompt[:PROMPT_PREFIX_CHARS],
            "context": cls.extract_key_context(context or {}),
            "userId": user_id or "anonymous",
            "timestamp": int(timestamp // TIME_BUCKET_SECONDS),
        }
        return cls.generate("prompt", data)

    @staticmethod
    def extract_key_context(context: Mapping[str, Any]) -> dict[str, Any]:
        return {
            name: context[name]
            for name in KEY_CONTEXT_FIELDS
            if name in context and context[name] is not None
        }


def _read_rss_bytes() -> int | None:
    """Resident set size of this process, or None when it cannot be read."""
    try:
        return psutil.Process().memory_info().rss
    except psutil.Error as e:
        logger.debug("Cannot read process memory: %s", e)
        return None


class MemoryMonitor:
    """Process memory check shared by all caches of one process."""

    def __init__(
        self,
        *,
        threshold_bytes: int = 100 * 1024 * 1024,
        cleanup_interval_seconds: float = 300.0,
        usage_reader: Callable[[], int | None] = _read_rss_bytes,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._threshold = threshold_bytes
        self._interval = cleanup_interval_seconds
        self._reader = usage_reader
        self._clock = clock
        self._last_cleanup = clock()

    def memory_usage(self) -> int | None:
        return self._reader()

    def is_memory_pressure(self) -> bool:
        usage = self.memory_usage()
        return usage is not None and usage > self._threshold

    def should_trigger_cleanup(self) -> bool:
        elapsed = self._clock() - self._last_cleanup
        return elapsed > self._interval or self.is_memory_pressure()

    def mark_cleanup(self) -> None:
        self._last_cleanup = self._clock()


class MaintenanceTask:
    """Periodic background callback that can be stopped at shutdown.

    ``start`` needs a running event loop; ``stop`` is idempotent. Errors in
    the callback are logged and do not end the loop.
    """

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], Any],
        *,
        name: str = "cache-maintenance",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._interval = interval_seconds
        self._callback = callback
        self._name = name
        self._sleep = sleep
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self._name)
        logger.debug("Started %s every %.0fs", self._name, self._interval)

    def stop(self) -> None:
        if self._task is None:
            return
        if not self._task.done():
            self._task.cancel()
        self._task = None
        logger.info("Stopped %s", self._name)

    async def _run(self) -> None:
        while True:
            await self._sleep(self._interval)
            try:
                self._callback()
            except Exception:
                logger.exception("%s callback failed", self._name)


@dataclass(frozen=True)
class MemoryUsage:
    estimated: int
    percentage: float


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    hit_rate: float = 0.0
    size: int = 0
    max_size: int = 0
    memory_usage: MemoryUsage | None = None


@dataclass
class CacheHealth:
    status: str  # healthy | warning | critical
    memory_pressure: bool
    hit_rate: float
    size: int
    max_size: int
    recommendations: list[str] = field(default_factory=list)


@dataclass
class _Entry:
    value: Any
    size: int
    ttl: float
    expires_at: float


def estimate_size(value: Any) -> int:
    """Rough in-memory size: two bytes per JSON char plus a fixed overhead."""
    try:
        return len(json.dumps(value, ensure_ascii=False)) * 2 + ITEM_OVERHEAD_BYTES
    except (TypeError, ValueError):
        return DEFAULT_ITEM_BYTES


class CacheService:
    """LRU cache bounded by item count, estimated bytes and per-entry TTL."""

    def __init__(
        self,
        name: str,
        *,
        max_items: int = 100,
        ttl_seconds: float = 3600.0,
        update_age_on_get: bool = True,
        monitor: MemoryMonitor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self._max = max_items if max_items > 0 else 100
        self._ttl = ttl_seconds if ttl_seconds > 0 else 3600.0
        self._update_age_on_get = update_age_on_get
        self._monitor = monitor or MemoryMonitor()
        self._clock = clock
        self._max_bytes = min(self._max * AVG_ITEM_BYTES, MAX_CACHE_BYTES)
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._total_bytes = 0
        self._stats = CacheStats(max_size=self._max)
        self._maintenance: MaintenanceTask | None = None

    @property
    def max_size_bytes(self) -> int:
        return self._max_bytes

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list[str]:
        """Keys from least to most recently used."""
        return list(self._entries)

    def get(self, key: str) -> Any:
        entry = self._live_entry(key)
        if entry is None:
            self._stats.misses += 1
            logger.debug("Cache miss in %s: %s", self.name, key)
        else:
            self._entries.move_to_end(key)
            if self._update_age_on_get:
                entry.expires_at = self._clock() + entry.ttl
            self._stats.hits += 1
            logger.debug("Cache hit in %s: %s", self.name, key)
        self._update_hit_rate()
        return entry.value if entry is not None else None

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        size = estimate_size(value)
        if key in self._entries:
            self._remove(key)
        if size > self._max_bytes:
            logger.debug(
                "Value for %s in %s too large to cache (%d > %d bytes)",
                key, self.name, size, self._max_bytes,
            )
            return
        ttl = ttl_seconds if ttl_seconds and ttl_seconds > 0 else self._ttl
        self._entries[key] = _Entry(
            value=value, size=size, ttl=ttl, expires_at=self._clock() + ttl,
        )
        self._total_bytes += size
        self._stats.sets += 1
        logger.debug("Cache set in %s: %s (ttl=%.0fs)", self.name, key, ttl)
        self._evict_to_limits()

    def has(self, key: str) -> bool:
        return self._live_entry(key) is not None

    def delete(self, key: str) -> bool:
        if key not in self._entries:
            return False
        self._remove(key)
        self._stats.deletes += 1
        logger.debug("Cache delete in %s: %s", self.name, key)
        return True

    def clear(self) -> None:
        self._entries.clear()
        self._total_bytes = 0
        logger.info("Cache cleared: %s", self.name)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for key in expired:
            self._evict(key, "expired")
        return len(expired)

    def perform_maintenance(self) -> None:
        if self._monitor.should_trigger_cleanup():
            self._trigger_cleanup("maintenance")
            self._monitor.mark_cleanup()

    def force_cleanup(self) -> None:
        self._trigger_cleanup("manual")
        logger.info("Manual cache cleanup completed for %s", self.name)

    def start_maintenance(self, interval_seconds: float = 120.0) -> MaintenanceTask:
        if self._maintenance is None:
            self._maintenance = MaintenanceTask(
                interval_seconds, self.perform_maintenance, name=f"{self.name}-maintenance",
            )
        self._maintenance.start()
        return self._maintenance

    def destroy(self) -> None:
        if self._maintenance is not None:
            self._maintenance.stop()
            self._maintenance = None
        self._entries.clear()
        self._total_bytes = 0
        logger.info("Cache destroyed: %s", self.name)

    def get_stats(self) -> CacheStats:
        self._stats.size = len(self._entries)
        self._stats.memory_usage = MemoryUsage(
            estimated=self._total_bytes,
            percentage=(self._total_bytes / self._max_bytes) * 100 if self._max_bytes else 0.0,
        )
        return CacheStats(**vars(self._stats))

    def get_health_status(self) -> CacheHealth:
        stats = self.get_stats()
        memory_pressure = self._monitor.is_memory_pressure()
        utilization = stats.size / stats.max_size if stats.max_size else 0.0
        recommendations: list[str] = []
        status = "healthy"
        if memory_pressure or utilization > 0.9:
            status = "critical"
            recommendations.append("Reduce cache size or clean up more often")
        elif utilization > 0.7 or stats.hit_rate < 0.3:
            status = "warning"
            if utilization > 0.7:
                recommendations.append("Cache utilization is high, watch memory usage")
            if stats.hit_rate < 0.3:
                recommendations.append("Cache hit rate is low, review the caching strategy")
        return CacheHealth(
            status=status,
            memory_pressure=memory_pressure,
            hit_rate=stats.hit_rate,
            size=stats.size,
            max_size=stats.max_size,
            recommendations=recommendations,
        )

    def _live_entry(self, key: str) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            self._evict(key, "expired")
            return None
        return entry

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._total_bytes -= entry.size

    def _evict(self, key: str, reason: str) -> None:
        self._remove(key)
        self._stats.deletes += 1
        logger.debug("Cache eviction in %s: %s (%s)", self.name, key, reason)

    def _evict_to_limits(self) -> None:
        while self._entries and (
            len(self._entries) > self._max or self._total_bytes > self._max_bytes
        ):
            oldest = next(iter(self._entries))
            self._evict(oldest, "evict")

    def _trigger_cleanup(self, reason: str) -> None:
        self.purge_expired()
        if not self._monitor.is_memory_pressure():
            return
        before = len(self._entries)
        target = before // 2
        while len(self._entries) > target:
            self._evict(next(iter(self._entries)), "memory")
        logger.info(
            "Emergency cache cleanup in %s (%s): removed=%d remaining=%d",
            self.name, reason, before - len(self._entries), len(self._entries),
        )

    def _update_hit_rate(self) -> None:
        total = self._stats.hits + self._stats.misses
        self._stats.hit_rate = self._stats.hits / total if total else 0.0
