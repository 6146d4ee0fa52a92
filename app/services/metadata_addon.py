"""Title resolution against Cinemeta-compatible add-ons."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Sequence
from urllib.parse import quote

import httpx

from ..models import Recommendation
from ..utils import dedup_key, normalize_title, slugify

logger = logging.getLogger(__name__)

POSTER_FALLBACK_URL = "https://images.metahub.space/poster/medium/{id}/img"
BATCH_SIZE = 5
MIN_MATCH_SCORE = 50
LOOKUP_CACHE_TTL = 24 * 60 * 60
LOOKUP_CACHE_SIZE = 5_000


class MetadataUnavailableError(RuntimeError):
    """Raised when no lookup in a batch could reach the metadata add-on."""


@dataclass(slots=True)
class MetadataMatch:
    """Represents the useful fields returned from a metadata lookup."""

    id: str
    title: str
    type: str
    year: int | None = None
    poster: str | None = None


def _match_key(value: str) -> str:
    return slugify(normalize_title(value))


def score_candidate(title: str, year: int | None, meta: dict[str, Any]) -> int:
    """Score how well a search result matches the requested title and year."""

    target = _match_key(title)
    candidate = _match_key(str(meta.get("name") or ""))
    if not target or not candidate:
        return 0

    score = 0
    if candidate == target:
        score += 100
    elif target in candidate or candidate in target:
        score += 50

    candidate_year = MetadataAddonClient._parse_year(
        meta.get("releaseInfo") or meta.get("year")
    )
    if year is not None and candidate_year is not None:
        if candidate_year == year:
            score += 30
        elif abs(candidate_year - year) == 1:
            score += 15
    return score


class MetadataAddonClient:
    """Wrapper around Cinemeta-compatible catalog search endpoints."""

    _SEARCH_PATH = "/catalog/{type}/top/search={query}.json"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = http_client
        self._base_url = self._normalize_base_url(base_url) or ""
        self._semaphore = asyncio.Semaphore(8)
        self._clock = clock
        self._cache: OrderedDict[tuple[str, str, int | None], tuple[float, MetadataMatch | None]] = (
            OrderedDict()
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def lookup(
        self,
        title: str,
        *,
        content_type: str,
        year: int | None = None,
    ) -> MetadataMatch | None:
        """Return the best metadata match for the given title/year."""

        try:
            return await self._lookup(title, content_type=content_type, year=year)
        except httpx.HTTPError as exc:
            logger.warning("Metadata add-on lookup failed for %s: %s", title, exc)
            return None

    async def resolve_batch(
        self,
        items: Sequence[Recommendation],
        *,
        content_type: str,
    ) -> dict[str, MetadataMatch]:
        """Resolve recommendations in groups of five.

        The result maps each resolved item's ``dedup_key(title, year)`` to its
        match, so remakes sharing a title stay apart; unresolved items are
        simply absent. Raises :class:`MetadataUnavailableError` when every
        lookup failed to reach the add-on.
        """

        resolved: dict[str, MetadataMatch] = {}
        failures = 0
        for start in range(0, len(items), BATCH_SIZE):
            group = items[start : start + BATCH_SIZE]
            results = await asyncio.gather(
                *(
                    self._lookup(item.title, content_type=content_type, year=item.year)
                    for item in group
                ),
                return_exceptions=True,
            )
            for item, result in zip(group, results):
                if isinstance(result, Exception):
                    failures += 1
                    logger.warning(
                        "Metadata add-on lookup failed for %s: %s", item.title, result
                    )
                    continue
                if result is not None:
                    resolved.setdefault(dedup_key(item.title, item.year), result)

        if items and failures == len(items):
            raise MetadataUnavailableError(
                f"Metadata add-on unreachable for all {failures} lookups"
            )
        return resolved

    async def _lookup(
        self,
        title: str,
        *,
        content_type: str,
        year: int | None,
    ) -> MetadataMatch | None:
        normalized_title = (title or "").strip()
        if not normalized_title:
            return None

        cache_key = (content_type, _match_key(normalized_title), year)
        cached = self._cache.get(cache_key)
        if cached is not None:
            expires_at, match = cached
            if self._clock() < expires_at:
                return match
            del self._cache[cache_key]

        metas = await self._search(normalized_title, content_type)
        match = self._select_best_match(normalized_title, year, metas, content_type)
        self._remember(cache_key, match)
        return match

    async def _search(self, title: str, content_type: str) -> list[Any]:
        path = self._SEARCH_PATH.format(type=content_type, query=quote(title, safe=""))
        url = f"{self._base_url}{path}"

        max_attempts = 2
        for attempt in range(1, max_attempts + 1):
            try:
                async with self._semaphore:
                    response = await self._client.get(url)
                response.raise_for_status()
                break
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if status == 402 and attempt < max_attempts:
                    await asyncio.sleep(0.1)
                    continue
                if status == 404:
                    return []
                raise

        payload = response.json()
        metas = payload.get("metas") if isinstance(payload, dict) else None
        if not isinstance(metas, list):
            return []
        return metas

    def _remember(
        self, key: tuple[str, str, int | None], match: MetadataMatch | None
    ) -> None:
        self._cache[key] = (self._clock() + LOOKUP_CACHE_TTL, match)
        self._cache.move_to_end(key)
        while len(self._cache) > LOOKUP_CACHE_SIZE:
            self._cache.popitem(last=False)

    def _select_best_match(
        self,
        title: str,
        year: int | None,
        metas: list[Any],
        content_type: str,
    ) -> MetadataMatch | None:
        best: dict[str, Any] | None = None
        best_score = 0
        for meta in metas:
            if not isinstance(meta, dict):
                continue
            score = score_candidate(title, year, meta)
            if score > best_score:
                best, best_score = meta, score
        if best is None or best_score < MIN_MATCH_SCORE:
            return None

        match_id = str(best.get("imdb_id") or best.get("id") or "").strip()
        if not match_id:
            return None
        poster = self._ensure_url(best.get("poster")) or POSTER_FALLBACK_URL.format(
            id=match_id
        )
        return MetadataMatch(
            id=match_id,
            title=str(best.get("name") or title),
            type=str(best.get("type") or content_type),
            year=self._parse_year(best.get("releaseInfo") or best.get("year")),
            poster=poster,
        )

    @staticmethod
    def _parse_year(value: Any) -> int | None:
        if isinstance(value, int):
            return value
        if not value:
            return None
        match = re.search(r"(19|20|21)\d{2}", str(value))
        if not match:
            return None
        year = int(match.group(0))
        if 1900 <= year <= 2100:
            return year
        return None

    @staticmethod
    def _ensure_url(value: Any) -> str | None:
        if isinstance(value, str) and value.startswith("http"):
            return value
        return None

    @staticmethod
    def _normalize_base_url(value: str | None) -> str | None:
        if not value:
            return None
        normalized = value.strip()
        if not normalized:
            return None
        normalized = normalized.split("?", 1)[0].rstrip("/")
        lowered = normalized.lower()
        for suffix in ("/manifest.json", "/manifest"):
            if lowered.endswith(suffix):
                normalized = normalized[: -len(suffix)].rstrip("/")
                break
        return normalized or None
