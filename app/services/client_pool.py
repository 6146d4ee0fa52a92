"""Reusable upstream HTTP clients keyed by a hash of the caller's API key."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from ..utils import hash_api_key

logger = logging.getLogger(__name__)

ClientT = TypeVar("ClientT")

# Longer than any generation can hold on to a borrowed client.
RETIRE_GRACE_SECONDS = 300.0


@dataclass(slots=True)
class _PoolEntry(Generic[ClientT]):
    client: ClientT
    last_used: float


async def _aclose(client: Any) -> None:
    await client.aclose()


class ClientPool(Generic[ClientT]):
    """Borrowable clients with idle-TTL and LRU eviction.

    Evicting a client only drops it from the lookup map. Callers may still
    hold it for an in-flight request, so the pool parks it and closes it once
    ``retire_grace`` seconds have passed, or on :meth:`dispose`. Callers must
    not close borrowed clients. Raw API keys are never stored, only their
    hashes.
    """

    def __init__(
        self,
        factory: Callable[[str], ClientT],
        *,
        max_size: int = 100,
        idle_ttl: float = 3_600,
        retire_grace: float = RETIRE_GRACE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        closer: Callable[[ClientT], Awaitable[None]] = _aclose,
    ) -> None:
        self._factory = factory
        self._max_size = max(1, max_size)
        self._idle_ttl = idle_ttl
        self._retire_grace = retire_grace
        self._clock = clock
        self._closer = closer
        self._entries: OrderedDict[str, _PoolEntry[ClientT]] = OrderedDict()
        self._retired: list[tuple[float, ClientT]] = []
        self._created = 0
        self._evicted = 0

    def __len__(self) -> int:
        return len(self._entries)

    async def acquire(self, api_key: str) -> ClientT:
        """Return the client for ``api_key``, creating it if needed."""

        # The map is only mutated between awaits, so concurrent callers for
        # the same key always see a single client.
        now = self._clock()
        self._retire_idle(now)

        key = hash_api_key(api_key, prefix="client")
        entry = self._entries.get(key)
        if entry is not None:
            entry.last_used = now
            self._entries.move_to_end(key)
            client = entry.client
        else:
            while len(self._entries) >= self._max_size:
                _, oldest = self._entries.popitem(last=False)
                self._retire(oldest.client, now)
            client = self._factory(api_key)
            self._entries[key] = _PoolEntry(client=client, last_used=now)
            self._created += 1

        await self._close_retired(now)
        return client

    def _retire(self, client: ClientT, now: float) -> None:
        self._evicted += 1
        self._retired.append((now, client))

    def _retire_idle(self, now: float) -> None:
        stale = [
            key
            for key, entry in self._entries.items()
            if now - entry.last_used >= self._idle_ttl
        ]
        for key in stale:
            self._retire(self._entries.pop(key).client, now)

    async def _close_retired(self, now: float) -> None:
        due = [
            client
            for retired_at, client in self._retired
            if now - retired_at >= self._retire_grace
        ]
        if not due:
            return
        self._retired = [
            (retired_at, client)
            for retired_at, client in self._retired
            if now - retired_at < self._retire_grace
        ]
        for client in due:
            await self._close(client)

    async def _close(self, client: ClientT) -> None:
        try:
            await self._closer(client)
        except Exception as exc:
            logger.warning("Failed to close pooled client: %s", exc)

    async def dispose(self) -> None:
        """Close and forget every pooled and retired client."""

        clients = [entry.client for entry in self._entries.values()]
        clients.extend(client for _, client in self._retired)
        self._entries.clear()
        self._retired.clear()
        for client in clients:
            await self._close(client)

    def stats(self) -> dict[str, int]:
        return {
            "size": len(self._entries),
            "maxSize": self._max_size,
            "retired": len(self._retired),
            "created": self._created,
            "evicted": self._evicted,
        }
