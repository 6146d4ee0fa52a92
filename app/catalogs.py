"""Catalog variant definitions shown in the Stremio manifest."""

from __future__ import annotations

from dataclasses import dataclass

from .models import CONTENT_TYPES, ContentType, UserConfig

CATALOG_ID_PREFIX = "nowpicks"
DEFAULT_VARIANT = "main"
SEARCH_KEY = "search"


@dataclass(frozen=True)
class CatalogVariant:
    """Generation parameters and cache lifetime for one catalog lane."""

    key: str
    title: str
    description: str
    content_types: tuple[ContentType, ...]
    ttl_seconds: int
    item_count: int | None = None
    temperature: float | None = None

    def count_for(self, config: UserConfig) -> int:
        return self.item_count or config.catalog_size


HOUR = 60 * 60

CATALOG_VARIANTS: tuple[CatalogVariant, ...] = (
    CatalogVariant(
        key="main",
        title="For Now",
        description="Picks tuned to your time of day, season and weather.",
        content_types=CONTENT_TYPES,
        ttl_seconds=HOUR,
    ),
    CatalogVariant(
        key="discover",
        title="Surprise Me",
        description="Unexpected titles outside your usual taste.",
        content_types=CONTENT_TYPES,
        ttl_seconds=HOUR,
        item_count=15,
        temperature=1.1,
    ),
    CatalogVariant(
        key="comfort",
        title="Comfort Picks",
        description="Feel-good, rewatchable favourites.",
        content_types=("movie",),
        ttl_seconds=HOUR,
        item_count=15,
        temperature=0.6,
    ),
    CatalogVariant(
        key="easy",
        title="Easy Watching",
        description="Light, low-stakes series for winding down.",
        content_types=("series",),
        ttl_seconds=2 * HOUR,
        item_count=15,
        temperature=0.6,
    ),
    CatalogVariant(
        key="binge",
        title="Binge-Worthy",
        description="Addictive series with strong hooks.",
        content_types=("series",),
        ttl_seconds=4 * HOUR,
        item_count=15,
        temperature=0.7,
    ),
    CatalogVariant(
        key="hidden",
        title="Hidden Gems",
        description="Acclaimed titles most people have never heard of.",
        content_types=CONTENT_TYPES,
        ttl_seconds=24 * HOUR,
        item_count=15,
        temperature=0.9,
    ),
    CatalogVariant(
        key="greats",
        title="All-Time Greats",
        description="Essential classics and masterpieces.",
        content_types=("movie",),
        ttl_seconds=48 * HOUR,
        item_count=15,
        temperature=0.4,
    ),
)

SEARCH_TTL_SECONDS = HOUR

VARIANTS_BY_KEY: dict[str, CatalogVariant] = {
    variant.key: variant for variant in CATALOG_VARIANTS
}


def _plural(content_type: ContentType) -> str:
    return "movies" if content_type == "movie" else "series"


def catalog_id(content_type: ContentType, variant: CatalogVariant) -> str:
    return f"{CATALOG_ID_PREFIX}-{_plural(content_type)}-{variant.key}"


def search_catalog_id(content_type: ContentType) -> str:
    return f"{CATALOG_ID_PREFIX}-{_plural(content_type)}-{SEARCH_KEY}"


def is_search_catalog(value: str) -> bool:
    return value.rsplit("-", 1)[-1].lower() == SEARCH_KEY


def variant_from_catalog_id(value: str) -> CatalogVariant:
    """Pick the variant whose key the catalog id ends with (``main`` otherwise)."""

    suffix = value.rsplit("-", 1)[-1].lower()
    return VARIANTS_BY_KEY.get(suffix, VARIANTS_BY_KEY[DEFAULT_VARIANT])


def enabled_catalogs(config: UserConfig) -> list[tuple[ContentType, CatalogVariant]]:
    """Return every generated (non-search) catalog the config turns on."""

    return [
        (content_type, variant)
        for content_type in CONTENT_TYPES
        if config.includes(content_type)
        for variant in CATALOG_VARIANTS
        if content_type in variant.content_types
    ]


def manifest_catalogs(config: UserConfig | None = None) -> list[dict[str, object]]:
    """Return manifest catalog entries for the enabled content types.

    Each type gets its generated lanes followed by an AI search catalog that
    Stremio only queries with a ``search`` extra.
    """

    catalogs: list[dict[str, object]] = []
    for content_type in CONTENT_TYPES:
        if config is not None and not config.includes(content_type):
            continue
        label = "Movies" if content_type == "movie" else "Series"
        for variant in CATALOG_VARIANTS:
            if content_type not in variant.content_types:
                continue
            catalogs.append(
                {
                    "type": content_type,
                    "id": catalog_id(content_type, variant),
                    "name": f"{variant.title} {label}",
                    "extra": [],
                }
            )
        catalogs.append(
            {
                "type": content_type,
                "id": search_catalog_id(content_type),
                "name": f"AI Search {label}",
                "extra": [{"name": "search", "isRequired": True}],
            }
        )
    return catalogs
