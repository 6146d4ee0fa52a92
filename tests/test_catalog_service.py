from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, cast

import pytest

from app.cache import CatalogCache, MemoryCacheStore
from app.config import Settings
from app.database import Database
from app.errors import InvalidConfigurationError, RateLimitError
from app.models import CacheEntry, Recommendation, UserConfig
from app.services.catalog_generator import CatalogService
from app.services.metadata_addon import (
    MetadataAddonClient,
    MetadataMatch,
    MetadataUnavailableError,
)
from app.services.providers import (
    GenerationOverrides,
    ProviderFactory,
    ProviderMetadata,
    ProviderResult,
)
from app.services.sql_cache import SqlCacheStore
from app.utils import dedup_key

NOW = datetime(2024, 10, 15, 19, 0, tzinfo=timezone.utc)
MOVIES = "nowpicks-movies-main"


class Clock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class StubProvider:
    """Returns canned recommendations, optionally gated on an event."""

    def __init__(self, owner: "StubProviders") -> None:
        self._owner = owner

    async def generate_recommendations(
        self,
        config: UserConfig,
        context: Any,
        content_type: str,
        count: int,
        prompt: str,
        overrides: GenerationOverrides | None = None,
    ) -> ProviderResult:
        owner = self._owner
        owner.calls += 1
        owner.last_overrides = overrides
        owner.prompts.append(prompt)
        if owner.gate is not None:
            await owner.gate.wait()
        if owner.error is not None:
            raise owner.error
        return ProviderResult(
            items=list(owner.items),
            metadata=ProviderMetadata(
                provider=config.ai_provider,
                model=config.model,
                search_used=False,
                duration_ms=1,
                item_count=len(owner.items),
            ),
        )


class StubProviders:
    def __init__(self, items: list[Recommendation]) -> None:
        self.items = items
        self.calls = 0
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.last_overrides: GenerationOverrides | None = None
        self.prompts: list[str] = []
        self.disposed = False

    async def create(self, config: UserConfig) -> StubProvider:
        return StubProvider(self)

    async def dispose(self) -> None:
        self.disposed = True

    def stats(self) -> dict[str, object]:
        return {"pools": {}, "breakers": {}}


class StubMetadata:
    def __init__(self, matches: dict[str, MetadataMatch]) -> None:
        self.matches = matches
        self.unavailable = False

    async def resolve_batch(
        self, items: list[Recommendation], *, content_type: str
    ) -> dict[str, MetadataMatch]:
        if self.unavailable:
            raise MetadataUnavailableError("down")
        return {
            dedup_key(item.title, item.year): self.matches[item.title]
            for item in items
            if item.title in self.matches
        }


ITEMS = [
    Recommendation(title="Arrival", year=2016, reason="Thoughtful evening sci-fi"),
    Recommendation(title="Dark", year=2017, reason="Moody and twisty"),
    Recommendation(title="Heat", year=1995, reason="A classic heist"),
]

MATCHES = {
    "Arrival": MetadataMatch(id="tt2543164", title="Arrival", type="movie", year=2016, poster="https://img.test/arrival.jpg"),
    "Dark": MetadataMatch(id="tt5753856", title="Dark", type="series", year=2017),
    "Heat": MetadataMatch(id="tt0113277", title="Heat", type="movie", year=1995),
}


def _config(**overrides: Any) -> UserConfig:
    values: dict[str, Any] = {"geminiApiKey": "g-key"}
    values.update(overrides)
    return UserConfig.model_validate(values)


def _service(
    providers: StubProviders,
    metadata: StubMetadata | None = None,
    **settings_overrides: Any,
) -> tuple[CatalogService, Clock, Clock]:
    clock = Clock()
    monotonic = Clock(0.0)
    # Single-catalog behaviour unless a test opts into batches.
    settings_overrides.setdefault("BATCH_GENERATION", False)
    settings = Settings(_env_file=None, **settings_overrides)
    service = CatalogService(
        settings,
        cast(ProviderFactory, providers),
        cast(MetadataAddonClient, metadata or StubMetadata(MATCHES)),
        CatalogCache(MemoryCacheStore(clock=clock)),
        clock=clock,
        monotonic=monotonic,
        now=lambda: NOW,
    )
    return service, clock, monotonic


def test_catalog_keeps_model_order_and_drops_wrong_types() -> None:
    providers = StubProviders(ITEMS)
    service, _, _ = _service(providers)

    catalog = asyncio.run(service.catalog_for_config(_config(), "movie", MOVIES))

    assert [meta["id"] for meta in catalog["metas"]] == ["tt2543164", "tt0113277"]
    first = catalog["metas"][0]
    assert first["type"] == "movie"
    assert first["poster"] == "https://img.test/arrival.jpg"
    assert first["releaseInfo"] == "2016"
    assert first["description"] == "Thoughtful evening sci-fi"


def test_concurrent_requests_share_one_generation() -> None:
    providers = StubProviders(ITEMS)
    providers.gate = asyncio.Event()
    service, _, _ = _service(providers)
    config = _config()

    async def runner() -> list[dict[str, Any]]:
        requests = [
            asyncio.create_task(service.catalog_for_config(config, "movie", MOVIES))
            for _ in range(5)
        ]
        await asyncio.sleep(0)
        providers.gate.set()
        return await asyncio.gather(*requests)

    results = asyncio.run(runner())

    assert providers.calls == 1
    assert all(result == results[0] for result in results)


def test_fresh_cache_hits_skip_the_provider() -> None:
    providers = StubProviders(ITEMS)
    service, _, _ = _service(providers)
    config = _config()

    async def runner() -> tuple[dict[str, Any], dict[str, Any]]:
        first = await service.catalog_for_config(config, "movie", MOVIES)
        second = await service.catalog_for_config(config, "movie", MOVIES)
        return first, second

    first, second = asyncio.run(runner())

    assert first == second
    assert providers.calls == 1


def test_disabled_content_type_returns_empty_catalog() -> None:
    providers = StubProviders(ITEMS)
    service, _, _ = _service(providers)

    catalog = asyncio.run(
        service.catalog_for_config(_config(includeSeries=False), "series", "nowpicks-series-main")
    )

    assert catalog == {"metas": []}
    assert providers.calls == 0


def test_variant_temperature_reaches_the_provider() -> None:
    providers = StubProviders(ITEMS)
    service, _, _ = _service(providers)

    asyncio.run(service.catalog_for_config(_config(), "movie", "nowpicks-movies-greats"))

    assert providers.last_overrides == GenerationOverrides(temperature=0.4)


def test_failure_without_cache_serves_placeholder() -> None:
    providers = StubProviders(ITEMS)
    providers.error = RateLimitError("429", provider="gemini")
    service, _, _ = _service(providers)

    catalog = asyncio.run(service.catalog_for_config(_config(), "movie", MOVIES))

    assert len(catalog["metas"]) == 1
    placeholder = catalog["metas"][0]
    assert placeholder["name"] == "⚠️ Rate Limited"
    assert placeholder["type"] == "movie"
    assert placeholder["id"].startswith("nowpicks-error-")


def test_failure_after_expiry_serves_stale_catalog() -> None:
    providers = StubProviders(ITEMS)
    service, clock, _ = _service(providers)
    config = _config()

    async def runner() -> tuple[dict[str, Any], dict[str, Any]]:
        fresh = await service.catalog_for_config(config, "movie", MOVIES)
        clock.now += 2 * 60 * 60
        providers.error = RateLimitError("429", provider="gemini")
        stale = await service.catalog_for_config(config, "movie", MOVIES)
        return fresh, stale

    fresh, stale = asyncio.run(runner())

    assert stale == fresh
    assert providers.calls == 2


def test_recent_failures_are_not_retried_immediately() -> None:
    providers = StubProviders(ITEMS)
    providers.error = RateLimitError("429", provider="gemini")
    service, _, monotonic = _service(providers, FAILURE_BACKOFF_SECONDS=60)
    config = _config()

    async def runner() -> dict[str, Any]:
        await service.catalog_for_config(config, "movie", MOVIES)
        await service.catalog_for_config(config, "movie", MOVIES)
        assert providers.calls == 1
        monotonic.now += 61
        providers.error = None
        return await service.catalog_for_config(config, "movie", MOVIES)

    recovered = asyncio.run(runner())

    assert providers.calls == 2
    assert recovered["metas"][0]["id"] == "tt2543164"


def test_timeout_serves_placeholder_while_generation_finishes() -> None:
    providers = StubProviders(ITEMS)
    providers.gate = asyncio.Event()
    service, _, _ = _service(providers, MAX_REQUEST_TIMEOUT=0.05)
    config = _config()

    async def runner() -> tuple[dict[str, Any], dict[str, Any]]:
        timed_out = await service.catalog_for_config(config, "movie", MOVIES)
        providers.gate.set()
        while len(service._inflight):
            await asyncio.sleep(0)
        cached = await service.catalog_for_config(config, "movie", MOVIES)
        return timed_out, cached

    timed_out, cached = asyncio.run(runner())

    assert timed_out["metas"][0]["name"] == "⚠️ Timeout"
    assert [meta["id"] for meta in cached["metas"]] == ["tt2543164", "tt0113277"]
    assert providers.calls == 1


def test_empty_catalogs_are_not_cached() -> None:
    providers = StubProviders(ITEMS)
    metadata = StubMetadata(MATCHES)
    metadata.unavailable = True
    service, _, _ = _service(providers, metadata)
    config = _config()

    async def runner() -> tuple[dict[str, Any], dict[str, Any]]:
        first = await service.catalog_for_config(config, "movie", MOVIES)
        metadata.unavailable = False
        second = await service.catalog_for_config(config, "movie", MOVIES)
        return first, second

    first, second = asyncio.run(runner())

    assert first == {"metas": []}
    assert len(second["metas"]) == 2
    assert providers.calls == 2


def test_explanations_can_be_hidden() -> None:
    providers = StubProviders(ITEMS)
    service, _, _ = _service(providers)

    catalog = asyncio.run(
        service.catalog_for_config(_config(showExplanations=False), "movie", MOVIES)
    )

    assert all("description" not in meta for meta in catalog["metas"])


def test_rpdb_key_swaps_posters() -> None:
    providers = StubProviders(ITEMS)
    service, _, _ = _service(providers)

    catalog = asyncio.run(
        service.catalog_for_config(_config(rpdbApiKey="t1-abc"), "movie", MOVIES)
    )

    assert catalog["metas"][0]["poster"] == (
        "https://api.ratingposterdb.com/t1-abc/imdb/poster-default/tt2543164.jpg"
    )


def test_token_round_trip_and_rejection() -> None:
    providers = StubProviders(ITEMS)
    service, _, _ = _service(providers)
    config = _config(excludedGenres=["Horror"], country="gb")

    token = service.encode_config(config)

    assert service.decode_config(token) == config
    with pytest.raises(InvalidConfigurationError):
        service.decode_config(token[:-6] + "abcdef")
    with pytest.raises(InvalidConfigurationError):
        asyncio.run(service.get_catalog("garbage", "movie", MOVIES))
    assert providers.calls == 0


def test_catalog_key_changes_with_preferences() -> None:
    service, _, _ = _service(StubProviders(ITEMS))

    base = service.build_request(_config(), "movie", MOVIES)
    other_key = service.build_request(_config(geminiApiKey="other"), "movie", MOVIES)
    other_genres = service.build_request(_config(excludedGenres=["Horror"]), "movie", MOVIES)
    series = service.build_request(_config(), "series", "nowpicks-series-main")

    assert base.cache_key == other_key.cache_key
    assert base.cache_key != other_genres.cache_key
    assert base.cache_key != series.cache_key
    assert base.cache_key.startswith(f"catalog:{base.config_hash}:movie-main:")


def test_stop_releases_cache_and_providers() -> None:
    providers = StubProviders(ITEMS)
    service, _, _ = _service(providers)

    async def runner() -> None:
        await service.start()
        await service.stop()

    asyncio.run(runner())

    assert providers.disposed


def test_start_schedules_sql_cache_sweeps(tmp_path: Path) -> None:
    clock = Clock()
    store = SqlCacheStore(
        Database(f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}"), stale_ttl=10, clock=clock
    )
    service = CatalogService(
        Settings(_env_file=None, CACHE_SWEEP_INTERVAL=0.01),
        cast(ProviderFactory, StubProviders(ITEMS)),
        cast(MetadataAddonClient, StubMetadata(MATCHES)),
        CatalogCache(store),
        clock=clock,
    )

    async def runner() -> int:
        await store.set(
            "catalog:dead",
            CacheEntry(
                catalog={"metas": []},
                generated_at=clock.now - 100,
                expires_at=clock.now - 90,
                config_hash="dead",
            ),
        )
        await service.start()
        await asyncio.sleep(0.2)
        leftover = await store.sweep()
        await service.stop()
        return leftover

    assert asyncio.run(runner()) == 0


def test_first_miss_generates_every_enabled_catalog_in_one_batch() -> None:
    providers = StubProviders(ITEMS)
    providers.gate = asyncio.Event()
    service, _, _ = _service(providers, BATCH_GENERATION=True)
    config = _config()

    async def runner() -> tuple[dict[str, Any], dict[str, Any], int]:
        first = asyncio.create_task(service.catalog_for_config(config, "movie", MOVIES))
        for _ in range(100):
            if len(service._inflight) >= 10:
                break
            await asyncio.sleep(0)
        sibling = asyncio.create_task(
            service.catalog_for_config(config, "series", "nowpicks-series-binge")
        )
        await asyncio.sleep(0)
        providers.gate.set()
        main, binge = await first, await sibling
        while len(service._batches):
            await asyncio.sleep(0)
        calls = providers.calls
        await service.catalog_for_config(config, "movie", "nowpicks-movies-greats")
        return main, binge, calls

    main, binge, calls = asyncio.run(runner())

    assert calls == 10
    assert providers.calls == 10
    assert [meta["id"] for meta in main["metas"]] == ["tt2543164", "tt0113277"]
    assert [meta["id"] for meta in binge["metas"]] == ["tt5753856"]


def test_batch_skips_catalogs_that_are_still_cached() -> None:
    providers = StubProviders(ITEMS)
    service, clock, _ = _service(providers, BATCH_GENERATION=True)
    config = _config(includeSeries=False)

    async def runner() -> None:
        await service.catalog_for_config(config, "movie", MOVIES)
        while len(service._batches) or len(service._inflight):
            await asyncio.sleep(0)

    asyncio.run(runner())
    assert providers.calls == 5

    # Main, discover and comfort expire after an hour; hidden and greats live on.
    clock.now += 2 * 60 * 60
    asyncio.run(runner())
    assert providers.calls == 8


def test_search_resolves_results_and_caches_by_normalized_query() -> None:
    providers = StubProviders(ITEMS)
    service, _, _ = _service(providers)
    config = _config()

    async def runner() -> tuple[dict[str, Any], dict[str, Any]]:
        first = await service.search_for_config(config, "movie", "  Heist movies!! ")
        second = await service.search_for_config(config, "movie", "heist   MOVIES")
        return first, second

    first, second = asyncio.run(runner())

    assert [meta["id"] for meta in first["metas"]] == ["tt2543164", "tt0113277"]
    assert second == first
    assert providers.calls == 1
    assert providers.prompts[0].startswith('USER SEARCH: "Heist movies!!"')
    assert providers.last_overrides is None
    request = service.build_search_request(config, "movie", "Heist movies!!")
    assert request is not None
    assert request.cache_key.endswith(":movie-search:heist movies")


def test_search_failure_returns_empty_results() -> None:
    providers = StubProviders(ITEMS)
    providers.error = RateLimitError("429", provider="gemini")
    service, _, _ = _service(providers)

    result = asyncio.run(service.search_for_config(_config(), "series", "slow burn"))

    assert result == {"metas": []}


def test_blank_search_and_search_catalog_without_query_are_empty() -> None:
    providers = StubProviders(ITEMS)
    service, _, _ = _service(providers)
    config = _config()

    async def runner() -> tuple[dict[str, Any], dict[str, Any]]:
        blank = await service.search_for_config(config, "movie", " ?! ")
        bare = await service.catalog_for_config(config, "movie", "nowpicks-movies-search")
        return blank, bare

    assert asyncio.run(runner()) == ({"metas": []}, {"metas": []})
    assert providers.calls == 0


class KeyedMetadata:
    """Answers by ``dedup_key`` so same-title releases can differ."""

    def __init__(self, matches: dict[str, MetadataMatch]) -> None:
        self.matches = matches

    async def resolve_batch(
        self, items: list[Recommendation], *, content_type: str
    ) -> dict[str, MetadataMatch]:
        return dict(self.matches)


def test_same_title_recommendations_resolve_by_year() -> None:
    remake = Recommendation(title="Dune", year=2021)
    original = Recommendation(title="Dune", year=1984)
    providers = StubProviders([remake, original])
    metadata = KeyedMetadata(
        {
            dedup_key("Dune", 2021): MetadataMatch(
                id="tt1160419", title="Dune", type="movie", year=2021
            ),
            dedup_key("Dune", 1984): MetadataMatch(
                id="tt0087182", title="Dune", type="movie", year=1984
            ),
        }
    )
    service, _, _ = _service(providers, metadata)

    catalog = asyncio.run(service.catalog_for_config(_config(), "movie", MOVIES))

    assert [meta["id"] for meta in catalog["metas"]] == ["tt1160419", "tt0087182"]


def test_placeholder_poster_is_served_by_the_addon() -> None:
    providers = StubProviders(ITEMS)
    providers.error = RateLimitError("429", provider="gemini")
    service, _, _ = _service(providers, BASE_URL="https://picks.example")

    catalog = asyncio.run(service.catalog_for_config(_config(), "movie", MOVIES))

    assert catalog["metas"][0]["poster"] == "https://picks.example/images/placeholder.svg"


def test_stats_report_cache_and_inflight_counts() -> None:
    providers = StubProviders(ITEMS)
    service, _, _ = _service(providers)

    asyncio.run(service.catalog_for_config(_config(), "movie", MOVIES))
    stats = service.stats()

    assert stats["cache"]["backend"] == "memory"
    assert stats["cache"]["size"] == 1
    assert stats["providers"] == {"pools": {}, "breakers": {}}
    assert stats["inflight"] == 0
