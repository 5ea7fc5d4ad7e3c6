"""Per-model response cache with TTL expiry."""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_TTL = 30.0  # seconds
DEFAULT_MAX_ENTRIES = 500
DEFAULT_SWEEP_INTERVAL = 60.0  # seconds


@dataclass
class CacheStats:
    """Cache statistics."""

    hit_count: int = 0
    miss_count: int = 0
    expired_count: int = 0
    entry_count: int = 0


@dataclass(frozen=True)
class CacheEntry:
    """A cached response. Never mutated; a new put replaces the entry."""

    key: str
    model: str
    value: str
    created_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl


def compute_prompt_key(model: str, prompt: str) -> str:
    """Compute the cache key for a model/prompt pair.

    Args:
        model: Model name
        prompt: Prompt text (including any prepended context)

    Returns:
        Hash string in format "sha256:..."
    """
    content = f"{model}\n{prompt}".encode("utf-8")
    return f"sha256:{hashlib.sha256(content).hexdigest()}"


class ResponseCache:
    """In-memory response cache keyed by (model, prompt) with lazy TTL expiry."""

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the cache.

        Args:
            default_ttl: TTL in seconds used when put() gets none
            max_entries: Maximum number of entries before oldest-first eviction
            sweep_interval: Minimum seconds between opportunistic sweeps
            clock: Monotonic time source (injectable for tests)
        """
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._stats = CacheStats()
        self._last_sweep = clock()

    def get(self, model: str, prompt: str) -> str | None:
        """Retrieve a cached response.

        Args:
            model: Model name
            prompt: Prompt text

        Returns:
            Cached value, or None if missing or expired
        """
        key = compute_prompt_key(model, prompt)
        now = self._clock()

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.miss_count += 1
                return None

            if entry.is_expired(now):
                del self._entries[key]
                self._stats.expired_count += 1
                self._stats.miss_count += 1
                return None

            self._stats.hit_count += 1
            return entry.value

    def put(self, model: str, prompt: str, value: str, ttl: float | None = None) -> str:
        """Store a response.

        Args:
            model: Model name
            prompt: Prompt text
            value: Response text
            ttl: Time-to-live in seconds (defaults to default_ttl)

        Returns:
            The cache key the value was stored under
        """
        key = compute_prompt_key(model, prompt)
        now = self._clock()
        entry = CacheEntry(
            key=key,
            model=model,
            value=value,
            created_at=now,
            ttl=self.default_ttl if ttl is None else ttl,
        )

        with self._lock:
            self._entries[key] = entry
            if now - self._last_sweep >= self.sweep_interval:
                self._sweep_locked(now)
            if len(self._entries) > self.max_entries:
                self._evict_oldest(len(self._entries) - self.max_entries)

        logger.debug(f"Cached response for {model} under {key[:20]}...")
        return key

    def sweep(self) -> int:
        """Remove all expired entries.

        Returns:
            Number of entries removed
        """
        with self._lock:
            return self._sweep_locked(self._clock())

    def invalidate(self, model: str, prompt: str) -> None:
        """Remove a single entry."""
        key = compute_prompt_key(model, prompt)
        with self._lock:
            self._entries.pop(key, None)

    def clear(self, model: str | None = None) -> None:
        """Clear all entries, or only those of one model."""
        with self._lock:
            if model is None:
                self._entries = {}
                self._stats = CacheStats()
            else:
                self._entries = {k: e for k, e in self._entries.items() if e.model != model}

        logger.info(f"Response cache cleared{f' for {model}' if model else ''}")

    def stats(self) -> CacheStats:
        """Get cache statistics."""
        with self._lock:
            return CacheStats(
                hit_count=self._stats.hit_count,
                miss_count=self._stats.miss_count,
                expired_count=self._stats.expired_count,
                entry_count=len(self._entries),
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _sweep_locked(self, now: float) -> int:
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        self._stats.expired_count += len(expired)
        self._last_sweep = now
        if expired:
            logger.debug(f"Swept {len(expired)} expired cache entries")
        return len(expired)

    def _evict_oldest(self, count: int) -> None:
        oldest = sorted(self._entries.values(), key=lambda e: e.created_at)[:count]
        for entry in oldest:
            del self._entries[entry.key]
        logger.debug(f"Evicted {count} oldest cache entries")
