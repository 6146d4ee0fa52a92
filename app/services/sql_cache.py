"""SQL-backed catalog cache store built on the async SQLAlchemy engine."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

from sqlalchemy import delete

from ..database import Database
from ..db_models import CacheRecord
from ..models import CacheEntry

logger = logging.getLogger(__name__)


class SqlCacheStore:
    """Keep cache entries in a single table; rows outlive expiry by ``stale_ttl``."""

    def __init__(
        self,
        database: Database,
        *,
        stale_ttl: float = 86_400,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._database = database
        self._stale_ttl = stale_ttl
        self._clock = clock
        self._schema_ready = False
        self._schema_lock: asyncio.Lock | None = None
        self._hits = 0
        self._misses = 0
        self._stale_hits = 0

    async def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        if self._schema_lock is None:
            self._schema_lock = asyncio.Lock()
        async with self._schema_lock:
            if not self._schema_ready:
                await self._database.create_all()
                self._schema_ready = True

    async def _load(self, key: str) -> CacheEntry | None:
        await self._ensure_schema()
        async with self._database.session() as session:
            record = await session.get(CacheRecord, key)
        if record is None:
            return None
        if self._clock() >= record.expires_at + self._stale_ttl:
            return None
        return CacheEntry(
            catalog=record.catalog,
            generated_at=record.generated_at,
            expires_at=record.expires_at,
            config_hash=record.config_hash,
        )

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
        await self._ensure_schema()
        async with self._database.session() as session:
            await session.merge(
                CacheRecord(
                    key=key,
                    config_hash=entry.config_hash,
                    catalog=entry.catalog,
                    generated_at=entry.generated_at,
                    expires_at=entry.expires_at,
                )
            )
            await session.commit()

    async def sweep(self) -> int:
        """Delete rows whose stale window has passed."""

        await self._ensure_schema()
        cutoff = self._clock() - self._stale_ttl
        async with self._database.session() as session:
            result = await session.execute(
                delete(CacheRecord).where(CacheRecord.expires_at <= cutoff)
            )
            await session.commit()
        removed = result.rowcount or 0
        if removed:
            logger.debug("Removed %s expired cache rows", removed)
        return removed

    async def close(self) -> None:
        await self._database.dispose()

    def stats(self) -> dict[str, Any]:
        return {
            "backend": "sql",
            "hits": self._hits,
            "misses": self._misses,
            "staleHits": self._stale_hits,
        }
