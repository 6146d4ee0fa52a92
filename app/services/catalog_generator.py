"""Catalog generation pipeline: cache, coalescing, AI call, title resolution."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from ..cache import CatalogCache, build_cache_key
from ..catalogs import (
    SEARCH_KEY,
    SEARCH_TTL_SECONDS,
    CatalogVariant,
    enabled_catalogs,
    is_search_catalog,
    variant_from_catalog_id,
)
from ..config import Settings
from ..crypto import InvalidTokenError, decrypt_config, encrypt_config
from ..errors import (
    InvalidConfigurationError,
    ProviderTimeoutError,
    classify_exception,
    placeholder_label,
)
from ..models import (
    PLACEHOLDER_POSTER_PATH,
    CacheEntry,
    ContentType,
    Recommendation,
    ResolvedItem,
    UserConfig,
    catalog_response,
    config_hash,
    placeholder_catalog,
)
from ..prompts import build_catalog_prompt, build_search_prompt
from ..signals import (
    ContextSignals,
    WeatherProvider,
    collect_context_signals,
    generate_context_signals,
    temporal_bucket,
)
from ..utils import dedup_key, normalize_search_query
from .metadata_addon import MetadataAddonClient, MetadataUnavailableError
from .providers import GenerationOverrides, KeyValidation, ProviderFactory
from .rpdb import enhance_posters
from .single_flight import SingleFlight

logger = logging.getLogger(__name__)

FAILURE_MEMORY_LIMIT = 1_000
# Search results do not depend on the temporal bucket.
SEARCH_BUCKET = "search"

Catalog = dict[str, Any]


@dataclass(slots=True)
class _Failure:
    until: float
    error: Exception


@dataclass(frozen=True, slots=True)
class CatalogRequest:
    """Everything needed to generate or look up one catalog."""

    config: UserConfig
    content_type: ContentType
    variant: CatalogVariant
    requested_at: datetime
    bucket: str
    config_hash: str
    cache_key: str

    @property
    def batch_key(self) -> str:
        return f"{self.config_hash}-{self.bucket}"


@dataclass(frozen=True, slots=True)
class SearchRequest:
    """A natural-language search for one content type."""

    config: UserConfig
    content_type: ContentType
    query: str
    requested_at: datetime
    config_hash: str
    cache_key: str


class CatalogService:
    """Serve AI catalogs from cache, generating at most once per cache key.

    The first miss for a configuration and temporal bucket also starts a
    batch that generates every other enabled catalog, each cached under its
    own key, so the sibling requests Stremio sends next join that work
    instead of starting their own.
    """

    def __init__(
        self,
        settings: Settings,
        providers: ProviderFactory,
        metadata_client: MetadataAddonClient,
        cache: CatalogCache,
        *,
        weather: WeatherProvider | None = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings
        self._providers = providers
        self._metadata_client = metadata_client
        self._cache = cache
        self._weather = weather
        self._clock = clock
        self._monotonic = monotonic
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._inflight: SingleFlight[Catalog] = SingleFlight()
        self._batches: SingleFlight[int] = SingleFlight()
        self._failures: dict[str, _Failure] = {}
        self._placeholder_poster = (
            f"{str(settings.base_url).rstrip('/')}{PLACEHOLDER_POSTER_PATH}"
            if settings.base_url
            else None
        )

    async def start(self) -> None:
        """Launch background maintenance for the cache."""

        self._cache.start_sweeper(self._settings.cache_sweep_interval_seconds)

    async def stop(self) -> None:
        """Cancel pending generations, then release the cache and pooled clients."""

        await self._batches.cancel_all()
        await self._inflight.cancel_all()
        await self._cache.close()
        await self._providers.dispose()

    def stats(self) -> dict[str, Any]:
        return {
            "cache": self._cache.stats(),
            "providers": self._providers.stats(),
            "inflight": len(self._inflight),
            "batches": len(self._batches),
        }

    def decode_config(self, token: str | None) -> UserConfig:
        """Decrypt and validate a config token.

        Raises :class:`InvalidConfigurationError` without any decoding detail.
        """

        try:
            payload = decrypt_config(token, self._settings.config_secret)
            return UserConfig.model_validate(payload)
        except (InvalidTokenError, ValidationError) as exc:
            logger.info("Rejected configuration token: %s", type(exc).__name__)
            raise InvalidConfigurationError("Invalid configuration") from exc

    def encode_config(self, config: UserConfig) -> str:
        payload = config.model_dump(mode="json", by_alias=True, exclude_none=True)
        return encrypt_config(payload, self._settings.config_secret)

    async def validate_api_key(
        self, provider: str, api_key: str, model: str | None = None
    ) -> KeyValidation:
        client = await self._providers.for_key(provider, api_key, model)
        return await client.validate_api_key()

    async def get_catalog(
        self, token: str | None, content_type: ContentType, catalog_id: str
    ) -> Catalog:
        """Return the catalog for an encrypted config token."""

        config = self.decode_config(token)
        return await self.catalog_for_config(config, content_type, catalog_id)

    async def get_search(
        self, token: str | None, content_type: ContentType, query: str
    ) -> Catalog:
        """Return AI search results for an encrypted config token."""

        config = self.decode_config(token)
        return await self.search_for_config(config, content_type, query)

    def build_request(
        self,
        config: UserConfig,
        content_type: ContentType,
        catalog_id: str,
        *,
        requested_at: datetime | None = None,
    ) -> CatalogRequest:
        return self._request_for(
            config,
            content_type,
            variant_from_catalog_id(catalog_id),
            requested_at or self._now(),
        )

    def _request_for(
        self,
        config: UserConfig,
        content_type: ContentType,
        variant: CatalogVariant,
        requested_at: datetime,
    ) -> CatalogRequest:
        signals = generate_context_signals(config, now=requested_at)
        bucket = temporal_bucket(signals)
        hashed = config_hash(config, bucket)
        return CatalogRequest(
            config=config,
            content_type=content_type,
            variant=variant,
            requested_at=requested_at,
            bucket=bucket,
            config_hash=hashed,
            cache_key=build_cache_key(hashed, f"{content_type}-{variant.key}", bucket),
        )

    def build_search_request(
        self, config: UserConfig, content_type: ContentType, query: str
    ) -> SearchRequest | None:
        """Describe a search, or return ``None`` when the query has no words."""

        normalized = normalize_search_query(query)
        if not normalized:
            return None
        hashed = config_hash(config, SEARCH_BUCKET)
        return SearchRequest(
            config=config,
            content_type=content_type,
            query=query.strip(),
            requested_at=self._now(),
            config_hash=hashed,
            cache_key=build_cache_key(hashed, f"{content_type}-{SEARCH_KEY}", normalized),
        )

    async def catalog_for_config(
        self, config: UserConfig, content_type: ContentType, catalog_id: str
    ) -> Catalog:
        # Search catalogs only answer requests that carry a query.
        if not config.includes(content_type) or is_search_catalog(catalog_id):
            return catalog_response([])

        request = self.build_request(config, content_type, catalog_id)
        key = request.cache_key

        cached = await self._cache.get(key)
        if cached is not None and cached.config_hash == request.config_hash:
            logger.debug("Cache hit for %s", key)
            return cached.catalog

        failure = self._recent_failure(key)
        if failure is not None:
            logger.info("Skipping generation for %s during failure backoff", key)
            return await self._fallback(key, content_type, failure.error)

        if self._settings.batch_generation:
            self._batches.task_for(request.batch_key, lambda: self._generate_batch(request))
        return await self._join(
            key,
            config,
            lambda: self._generate(key, config, self._generate_catalog(request)),
            lambda error: self._fallback(key, content_type, error),
        )

    async def search_for_config(
        self, config: UserConfig, content_type: ContentType, query: str
    ) -> Catalog:
        """Answer a natural-language search with resolved titles of one type."""

        request = (
            self.build_search_request(config, content_type, query)
            if config.includes(content_type)
            else None
        )
        if request is None:
            return catalog_response([])
        key = request.cache_key

        cached = await self._cache.get(key)
        if cached is not None and cached.config_hash == request.config_hash:
            logger.debug("Search cache hit for %s", key)
            return cached.catalog

        failure = self._recent_failure(key)
        if failure is not None:
            return await self._search_fallback(key, failure.error)

        return await self._join(
            key,
            config,
            lambda: self._generate(key, config, self._generate_search(request)),
            lambda error: self._search_fallback(key, error),
        )

    async def _join(
        self,
        key: str,
        config: UserConfig,
        factory: Callable[[], Awaitable[Catalog]],
        fallback: Callable[[Exception], Awaitable[Catalog]],
    ) -> Catalog:
        """Wait for the shared generation of ``key`` up to the request timeout."""

        timeout = min(float(config.request_timeout), self._settings.max_request_timeout)
        try:
            return await self._inflight.run(key, factory, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Generation of %s timed out after %ss", key, timeout)
            error: Exception = ProviderTimeoutError(
                f"Catalog generation exceeded {timeout}s", provider=config.ai_provider
            )
            return await fallback(error)
        except Exception as exc:
            return await fallback(exc)

    async def _generate(
        self, key: str, config: UserConfig, work: Awaitable[Catalog]
    ) -> Catalog:
        try:
            catalog = await work
        except Exception as exc:
            classified = classify_exception(exc, provider=config.ai_provider)
            logger.error(
                "Generation failed for %s (%s): %r", key, classified.category.value, exc
            )
            self._remember_failure(key, exc)
            raise
        self._failures.pop(key, None)
        return catalog

    async def _generate_batch(self, request: CatalogRequest) -> int:
        """Generate the other enabled catalogs that are neither cached nor running."""

        config = request.config
        siblings: list[CatalogRequest] = []
        for content_type, variant in enabled_catalogs(config):
            sibling = self._request_for(config, content_type, variant, request.requested_at)
            key = sibling.cache_key
            if key in self._inflight or self._recent_failure(key) is not None:
                continue
            cached = await self._cache.get(key)
            if cached is not None and cached.config_hash == sibling.config_hash:
                continue
            siblings.append(sibling)
        if not siblings:
            return 0

        signals = await collect_context_signals(
            config, self._weather, now=request.requested_at
        )
        tasks = []
        for sibling in siblings:
            # A request for this key may have started while the cache was read.
            if sibling.cache_key in self._inflight:
                continue
            tasks.append(
                self._inflight.task_for(
                    sibling.cache_key,
                    lambda sibling=sibling: self._generate(
                        sibling.cache_key,
                        config,
                        self._generate_catalog(sibling, signals),
                    ),
                )
            )
        if not tasks:
            return 0

        logger.info("Batch %s generating %s catalogs", request.batch_key, len(tasks))
        results = await asyncio.gather(*tasks, return_exceptions=True)
        failed = sum(1 for result in results if isinstance(result, BaseException))
        logger.info(
            "Batch %s finished: %s generated, %s failed",
            request.batch_key,
            len(tasks) - failed,
            failed,
        )
        return len(tasks) - failed

    async def _generate_catalog(
        self, request: CatalogRequest, signals: ContextSignals | None = None
    ) -> Catalog:
        config = request.config
        variant = request.variant
        count = variant.count_for(config)

        if signals is None:
            signals = await collect_context_signals(
                config, self._weather, now=request.requested_at
            )
        prompt = build_catalog_prompt(
            config, signals, request.content_type, variant, count
        )
        provider = await self._providers.create(config)
        result = await provider.generate_recommendations(
            config,
            signals,
            request.content_type,
            count,
            prompt,
            GenerationOverrides(temperature=variant.temperature),
        )
        logger.info(
            "Generated %s/%s via %s (%s, search=%s)",
            request.content_type,
            variant.key,
            result.metadata.provider,
            result.metadata.model,
            result.metadata.search_used,
        )

        metas = await self._resolve(result.items, config, request.content_type, count)
        catalog = catalog_response(metas)
        if metas:
            await self._store(
                request.cache_key, catalog, request.config_hash, variant.ttl_seconds
            )
        return catalog

    async def _generate_search(self, request: SearchRequest) -> Catalog:
        config = request.config
        count = config.catalog_size

        signals = await collect_context_signals(
            config, self._weather, now=request.requested_at
        )
        prompt = build_search_prompt(
            config, signals, request.content_type, request.query, count
        )
        provider = await self._providers.create(config)
        result = await provider.generate_recommendations(
            config, signals, request.content_type, count, prompt
        )
        logger.info(
            "Searched %s for %r via %s: %s items",
            request.content_type,
            request.query,
            result.metadata.provider,
            result.metadata.item_count,
        )

        metas = await self._resolve(result.items, config, request.content_type, count)
        catalog = catalog_response(metas)
        if metas:
            await self._store(
                request.cache_key, catalog, request.config_hash, SEARCH_TTL_SECONDS
            )
        return catalog

    async def _store(self, key: str, catalog: Catalog, hashed: str, ttl: float) -> None:
        generated_at = self._clock()
        await self._cache.set(
            key,
            CacheEntry(
                catalog=catalog,
                generated_at=generated_at,
                expires_at=generated_at + ttl,
                config_hash=hashed,
            ),
        )

    async def _resolve(
        self,
        items: list[Recommendation],
        config: UserConfig,
        content_type: ContentType,
        count: int,
    ) -> list[dict[str, object]]:
        """Resolve titles and assemble metas in the model's ranking order."""

        try:
            matches = await self._metadata_client.resolve_batch(
                items, content_type=content_type
            )
        except MetadataUnavailableError as exc:
            logger.warning("Title resolution unavailable: %s", exc)
            return []

        resolved: list[ResolvedItem] = []
        seen_ids: set[str] = set()
        for item in items:
            match = matches.get(dedup_key(item.title, item.year))
            if match is None or match.id in seen_ids:
                continue
            if match.type != content_type:
                logger.debug(
                    "Dropping %s: resolved as %s, wanted %s",
                    item.title,
                    match.type,
                    content_type,
                )
                continue
            seen_ids.add(match.id)
            resolved.append(
                ResolvedItem(
                    recommendation=item,
                    imdb_id=match.id,
                    name=match.title,
                    content_type=content_type,
                    year=match.year,
                    poster=match.poster,
                )
            )

        metas = [
            item.to_meta(show_explanations=config.show_explanations)
            for item in resolved[:count]
        ]
        if config.rpdb_api_key:
            metas = enhance_posters(
                metas, config.rpdb_api_key, base_url=str(self._settings.rpdb_api_url)
            )
        return metas

    async def _fallback(
        self, key: str, content_type: ContentType, error: Exception
    ) -> Catalog:
        """Serve the stale entry for the key, or a placeholder explaining the failure."""

        stale = await self._cache.get_stale(key)
        if stale is not None:
            logger.info("Serving stale catalog for %s", key)
            return stale.catalog
        return placeholder_catalog(
            placeholder_label(error), content_type, poster=self._placeholder_poster
        )

    async def _search_fallback(self, key: str, error: Exception) -> Catalog:
        """Serve stale search results, or an empty result list."""

        stale = await self._cache.get_stale(key)
        if stale is not None:
            logger.info("Serving stale search results for %s", key)
            return stale.catalog
        logger.info("Search %s failed: %s", key, placeholder_label(error))
        return catalog_response([])

    def _recent_failure(self, key: str) -> _Failure | None:
        failure = self._failures.get(key)
        if failure is None:
            return None
        if self._monotonic() >= failure.until:
            del self._failures[key]
            return None
        return failure

    def _remember_failure(self, key: str, error: Exception) -> None:
        window = self._settings.failure_backoff_seconds
        if window <= 0:
            return
        now = self._monotonic()
        if len(self._failures) >= FAILURE_MEMORY_LIMIT:
            expired = [k for k, failure in self._failures.items() if failure.until <= now]
            for expired_key in expired:
                del self._failures[expired_key]
            if len(self._failures) >= FAILURE_MEMORY_LIMIT:
                self._failures.pop(next(iter(self._failures)))
        self._failures[key] = _Failure(until=now + window, error=error)
