"""Redis-backed catalog cache store."""

from __future__ import annotations

import logging
import math
import time
from typing import Any, Callable

from pydantic import ValidationError
from redis import asyncio as aioredis

from ..models import CacheEntry

logger = logging.getLogger(__name__)


class RedisCacheStore:
    """Store cache entries as JSON with a Redis TTL covering the stale window.

    Redis removes keys once the stale window has passed; freshness is decided
    here from ``expires_at`` so stale reads keep working until then.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        *,
        stale_ttl: float = 86_400,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = client
        self._stale_ttl = stale_ttl
        self._clock = clock
        self._hits = 0
        self._misses = 0
        self._stale_hits = 0

    @classmethod
    def from_url(cls, url: str, *, stale_ttl: float = 86_400) -> "RedisCacheStore":
        client = aioredis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
        )
        return cls(client, stale_ttl=stale_ttl)

    async def _load(self, key: str) -> CacheEntry | None:
        raw = await self._redis.get(key)
        if raw is None:
            return None
        try:
            return CacheEntry.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding malformed cache entry at %s", key)
            return None

    async def get(self, key: str) -> CacheEntry | None:
        entry = await self._load(key)
        if entry is None or not entry.is_fresh(self._clock()):
            self._misses += 1
            return None
        self._hits += 1
        return entry

    async def get_stale(self, key: str) -> CacheEntry | None:
        entry = await self._load(key)
        if entry is not None:
            self._stale_hits += 1
        return entry

    async def set(self, key: str, entry: CacheEntry) -> None:
        retention = entry.expires_at - self._clock() + self._stale_ttl
        await self._redis.set(
            key,
            entry.model_dump_json(),
            ex=max(1, math.ceil(retention)),
        )

    async def sweep(self) -> int:
        # Redis expires keys itself once the stale window has passed.
        return 0

    async def close(self) -> None:
        await self._redis.aclose()

    def stats(self) -> dict[str, Any]:
        return {
            "backend": "redis",
            "hits": self._hits,
            "misses": self._misses,
            "staleHits": self._stale_hits,
        }
