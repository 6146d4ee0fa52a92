"""Catalog cache with hard expiry and a stale-read fallback path."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Protocol

from .config import Settings
from .models import CacheEntry

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class CacheStore(Protocol):
    """Key-value store with TTL semantics backing the catalog cache.

    ``get`` hides entries whose ``expires_at`` has passed; ``get_stale``
    still returns them while the store retains them. ``sweep`` deletes entries
    whose stale window has passed and returns how many it removed.
    """

    async def get(self, key: str) -> CacheEntry | None: ...

    async def get_stale(self, key: str) -> CacheEntry | None: ...

    async def set(self, key: str, entry: CacheEntry) -> None: ...

    async def sweep(self) -> int: ...

    async def close(self) -> None: ...

    def stats(self) -> dict[str, Any]: ...


def build_cache_key(config_hash: str, catalog_key: str, bucket: str) -> str:
    """Return ``catalog:{hash}:{content_type}-{variant}:{bucket}``."""

    return f"catalog:{config_hash}:{catalog_key}:{bucket}"


class MemoryCacheStore:
    """In-process LRU store.

    Expired entries stay readable through :meth:`get_stale` for
    ``stale_ttl`` seconds past expiry and are dropped lazily on access, when
    the LRU bound is hit, or by :meth:`sweep`.
    """

    def __init__(
        self,
        *,
        max_size: int = 1_000,
        stale_ttl: float = 86_400,
        clock: Clock = time.time,
    ) -> None:
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._max_size = max(1, max_size)
        self._stale_ttl = stale_ttl
        self._clock = clock
        self._hits = 0
        self._misses = 0
        self._stale_hits = 0
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None or not entry.is_fresh(self._clock()):
            self._misses += 1
            return None
        self._entries.move_to_end(key)
        self._hits += 1
        return entry

    async def get_stale(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at + self._stale_ttl:
            del self._entries[key]
            return None
        self._stale_hits += 1
        return entry

    async def set(self, key: str, entry: CacheEntry) -> None:
        self._entries[key] = entry
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_size:
            self._entries.popitem(last=False)
            self._evictions += 1

    def purge_expired(self) -> int:
        """Drop entries that are past their stale window."""

        now = self._clock()
        expired = [
            key
            for key, entry in self._entries.items()
            if now >= entry.expires_at + self._stale_ttl
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def sweep(self) -> int:
        return self.purge_expired()

    async def close(self) -> None:
        self._entries.clear()

    def stats(self) -> dict[str, Any]:
        return {
            "backend": "memory",
            "size": len(self._entries),
            "maxSize": self._max_size,
            "hits": self._hits,
            "misses": self._misses,
            "staleHits": self._stale_hits,
            "evictions": self._evictions,
        }


class CatalogCache:
    """Best-effort facade over a :class:`CacheStore`.

    A store outage never fails a request: read errors count as misses and
    write errors are logged and dropped. The optional background sweeper
    calls the store's ``sweep`` so no backend grows without bound.
    """

    def __init__(self, store: CacheStore) -> None:
        self._store = store
        self._sweeper: asyncio.Task[None] | None = None

    @property
    def store(self) -> CacheStore:
        return self._store

    async def get(self, key: str) -> CacheEntry | None:
        try:
            return await self._store.get(key)
        except Exception as exc:
            logger.warning("Cache read failed for %s: %s", key, exc)
            return None

    async def get_stale(self, key: str) -> CacheEntry | None:
        try:
            return await self._store.get_stale(key)
        except Exception as exc:
            logger.warning("Stale cache read failed for %s: %s", key, exc)
            return None

    async def set(self, key: str, entry: CacheEntry) -> None:
        try:
            await self._store.set(key, entry)
        except Exception as exc:
            logger.warning("Cache write failed for %s: %s", key, exc)

    def start_sweeper(self, interval: float) -> None:
        """Periodically delete entries past their stale window."""

        if interval <= 0 or self._sweeper is not None:
            return
        self._sweeper = asyncio.create_task(self._sweep_forever(interval))

    @property
    def sweeping(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    async def sweep(self) -> int:
        try:
            removed = await self._store.sweep()
        except Exception as exc:
            logger.warning("Cache sweep failed: %s", exc)
            return 0
        if removed:
            logger.debug("Cache sweep removed %s expired entries", removed)
        return removed

    async def _sweep_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.sweep()

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        await self._store.close()

    def stats(self) -> dict[str, Any]:
        try:
            return self._store.stats()
        except Exception as exc:
            logger.warning("Cache stats unavailable: %s", exc)
            return {}


def create_cache_store(settings: Settings) -> CacheStore:
    """Build the store selected by ``CACHE_BACKEND``."""

    if settings.cache_backend == "redis":
        from .services.redis_cache import RedisCacheStore

        return RedisCacheStore.from_url(
            settings.redis_url, stale_ttl=settings.cache_stale_ttl_seconds
        )
    if settings.cache_backend == "sql":
        from .database import Database
        from .services.sql_cache import SqlCacheStore

        return SqlCacheStore(
            Database(settings.database_url),
            stale_ttl=settings.cache_stale_ttl_seconds,
        )
    return MemoryCacheStore(
        max_size=settings.cache_max_size,
        stale_ttl=settings.cache_stale_ttl_seconds,
    )
