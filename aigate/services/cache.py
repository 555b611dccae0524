"""
ContentCache - Content-addressed cache of generated outputs with read-time expiry.

Features:
- Keys are a stable hash over the normalized prompt and optional context
- Only COMPLETED entries written within max_age_hours count as hits
- Upserts are last-writer-wins; nothing sweeps expired rows
- Pluggable store (in-memory here, SQL in aigate.datastore.repositories)
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from aigate.utils import normalize_prompt, stable_hash

T = TypeVar("T")


class CacheStatus(str, Enum):
    """Lifecycle of a cached generation."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class CacheEntry:
    """A single cache entry with metadata."""

    key: str
    value: Any
    created_at: datetime
    status: CacheStatus
    owner_id: str | None = None

    def is_fresh(self, max_age: timedelta, now: datetime) -> bool:
        """Check if entry was written within max_age."""
        return now - self.created_at <= max_age


class CacheStore(ABC):
    """Persistence behind ContentCache."""

    @abstractmethod
    async def get(self, key: str) -> CacheEntry | None: ...

    @abstractmethod
    async def upsert(self, entry: CacheEntry) -> None: ...


class MemoryCacheStore(CacheStore):
    """In-process store with LRU eviction."""

    def __init__(self, max_size: int = 1000):
        self._memory: dict[str, CacheEntry] = {}
        self._max_size = max_size
        self._lock = asyncio.Lock()
        self.evictions = 0

    async def get(self, key: str) -> CacheEntry | None:
        async with self._lock:
            return self._memory.get(key)

    async def upsert(self, entry: CacheEntry) -> None:
        async with self._lock:
            # LRU eviction if at capacity
            if len(self._memory) >= self._max_size and entry.key not in self._memory:
                self._evict_oldest()
            self._memory[entry.key] = entry

    def __len__(self) -> int:
        return len(self._memory)

    def _evict_oldest(self) -> None:
        """Evict the oldest entry (LRU)."""
        if not self._memory:
            return

        oldest_key = min(
            self._memory.keys(),
            key=lambda k: self._memory[k].created_at,
        )
        del self._memory[oldest_key]
        self.evictions += 1


class ContentCache:
    """
    Cache of prior generations keyed by content hash.

    Usage:
        cache = ContentCache(MemoryCacheStore())
        key = cache.generate_key(prompt, context={"task": "comment_response"})

        cached = await cache.get(key, max_age_hours=24)
        if cached is not None:
            return cached

        value = await generate()
        await cache.set(key, value, owner_id=user_id)
    """

    def __init__(
        self,
        store: CacheStore | None = None,
        default_max_age_hours: float = 24.0,
        clock: Callable[[], datetime] = datetime.now,
        debug: bool = False,
    ):
        self._store = store or MemoryCacheStore()
        self._default_max_age_hours = default_max_age_hours
        self._clock = clock
        self._debug = debug
        self._stats = CacheStats()

    @staticmethod
    def generate_key(prompt: str, context: dict[str, Any] | None = None) -> str:
        """Generate a stable cache key from the prompt and optional context."""
        material: dict[str, Any] = {"prompt": normalize_prompt(prompt)}
        if context:
            material["context"] = context
        return stable_hash(material)

    async def get(self, key: str, max_age_hours: float | None = None) -> Any | None:
        """
        Get value from cache.

        Returns the payload of a COMPLETED entry written within max_age_hours,
        None otherwise. Store failures are reported as misses.
        """
        max_age = timedelta(
            hours=max_age_hours
            if max_age_hours is not None
            else self._default_max_age_hours
        )

        try:
            entry = await self._store.get(key)
        except Exception as e:
            logger.warning(f"Cache read failed for {key[:12]}...: {e}")
            self._stats.errors += 1
            self._stats.misses += 1
            return None

        if entry is None:
            self._stats.misses += 1
            self._log(f"MISS: {key[:12]}...")
            return None

        if entry.status != CacheStatus.COMPLETED:
            self._stats.misses += 1
            self._log(f"NOT READY ({entry.status.value}): {key[:12]}...")
            return None

        if not entry.is_fresh(max_age, self._clock()):
            self._stats.expired += 1
            self._stats.misses += 1
            self._log(f"EXPIRED: {key[:12]}...")
            return None

        self._stats.hits += 1
        self._log(f"HIT: {key[:12]}...")
        return entry.value

    async def set(
        self,
        key: str,
        value: Any,
        owner_id: str | None = None,
        status: CacheStatus = CacheStatus.COMPLETED,
    ) -> None:
        """Upsert a value; the latest write wins."""
        entry = CacheEntry(
            key=key,
            value=value,
            created_at=self._clock(),
            status=status,
            owner_id=owner_id,
        )
        await self._store.upsert(entry)
        self._stats.writes += 1
        self._log(f"SET: {key[:12]}... ({status.value})")

    async def mark_failed(self, key: str, owner_id: str | None = None) -> None:
        """Record a failed generation so readers never treat it as a hit."""
        await self.set(key, None, owner_id=owner_id, status=CacheStatus.FAILED)

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[T]],
        max_age_hours: float | None = None,
        owner_id: str | None = None,
    ) -> T:
        """Return the cached value, or compute, store and return a fresh one."""
        cached = await self.get(key, max_age_hours)
        if cached is not None:
            return cached

        value = await compute()
        try:
            await self.set(key, value, owner_id=owner_id)
        except Exception as e:
            # The computed value is still good; only the cache write is lost
            logger.warning(f"Cache write failed for {key[:12]}...: {e}")
            self._stats.errors += 1
        return value

    def get_stats(self) -> "CacheStats":
        """Get cache statistics."""
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[ContentCache] {message}")


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    expired: int = 0
    writes: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "expired": self.expired,
            "writes": self.writes,
            "errors": self.errors,
            "hit_rate": f"{self.hit_rate:.2%}",
        }
