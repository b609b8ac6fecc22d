"""
Process-local TTL cache.

A read-through accelerator only: every lookup has a store-backed fallback and
nothing that must reflect the store (alert or reminder status) is cached.
Expired entries are evicted lazily on access and in bulk by `cleanup()`,
which the monitoring service runs on a timer.
"""

import threading
import time
from collections.abc import Callable, Hashable
from datetime import date
from typing import Any

import structlog
from pydantic import BaseModel

from core.config import CacheConfig

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]


class CacheStats(BaseModel):
    name: str
    size: int
    hits: int
    misses: int
    sets: int
    evictions: int

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0


class TTLCache:
    """Key/value store where each entry carries its own expiry instant."""

    def __init__(self, name: str, default_ttl_seconds: float, clock: Clock = time.monotonic) -> None:
        if default_ttl_seconds <= 0:
            raise ValueError("default_ttl_seconds must be positive")
        self.name = name
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, tuple[Any, float]] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._evictions = 0

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return default
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                self._evictions += 1
                self._misses += 1
                return default
            self._hits += 1
            return value

    def set(self, key: Hashable, value: Any, ttl_seconds: float | None = None) -> None:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive")
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)
            self._sets += 1

    def has(self, key: Hashable) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and self._clock() < entry[1]

    def delete_prefix(self, prefix: str) -> int:
        """Drop every string key starting with `prefix`."""
        with self._lock:
            doomed = [k for k in self._entries if isinstance(k, str) and k.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def cleanup(self) -> int:
        """Evict all expired entries; returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
            for key in expired:
                del self._entries[key]
            self._evictions += len(expired)
        if expired:
            logger.debug("cache_entries_evicted", cache=self.name, count=len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                name=self.name,
                size=len(self._entries),
                hits=self._hits,
                misses=self._misses,
                sets=self._sets,
                evictions=self._evictions,
            )


def daily_key(subject_id: str, day: date) -> str:
    return f"{subject_id}_{day.isoformat()}"


def iso_week_key(subject_id: str, day: date) -> str:
    year, week, _ = day.isocalendar()
    return f"{subject_id}_{year}-W{week:02d}"


def ownership_key(subject_id: str, owner_id: str) -> str:
    return f"ownership:{subject_id}:{owner_id}"


def dedup_cache_key(subject_id: str, medicine_name: str, dose_time: str, dose_date: str) -> str:
    return f"dedup:{subject_id}:{medicine_name}:{dose_time}:{dose_date}"


class CacheRegistry:
    """The three namespaced caches, each with its own TTL."""

    def __init__(self, config: CacheConfig, clock: Clock = time.monotonic) -> None:
        self.ownership = TTLCache("ownership", config.ownership_ttl_seconds, clock)
        self.dedup = TTLCache("dedup", config.dedup_ttl_seconds, clock)
        self.rollup = TTLCache("rollup", config.rollup_ttl_seconds, clock)

    @property
    def caches(self) -> tuple[TTLCache, ...]:
        return (self.ownership, self.dedup, self.rollup)

    def cleanup(self) -> int:
        return sum(cache.cleanup() for cache in self.caches)

    def clear(self) -> None:
        for cache in self.caches:
            cache.clear()

    def stats(self) -> dict[str, CacheStats]:
        return {cache.name: cache.stats() for cache in self.caches}
