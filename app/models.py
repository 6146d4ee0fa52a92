"""Pydantic models describing user configuration and catalog payloads."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

ContentType = Literal["movie", "series"]
ProviderName = Literal["gemini", "openai", "perplexity", "openrouter"]

CONTENT_TYPES: tuple[ContentType, ...] = ("movie", "series")

VALID_GENRES: tuple[str, ...] = (
    "Action",
    "Adventure",
    "Animation",
    "Comedy",
    "Crime",
    "Documentary",
    "Drama",
    "Family",
    "Fantasy",
    "History",
    "Horror",
    "Music",
    "Mystery",
    "Romance",
    "Science Fiction",
    "Thriller",
    "War",
    "Western",
)

MIN_RECOMMENDATION_YEAR = 1900


class WeatherLocation(BaseModel):
    """Coordinates used to look up the current weather."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, max_length=120)
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    country: str | None = None


class UserConfig(BaseModel):
    """Per-request preferences decoded from the encrypted config token."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="ignore",
    )

    ai_provider: ProviderName = Field(
        default="gemini",
        validation_alias=AliasChoices("aiProvider", "ai_provider", "provider"),
    )
    gemini_api_key: str | None = None
    gemini_model: str = "gemini-2.5-flash"
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    perplexity_api_key: str | None = None
    perplexity_model: str = "sonar-pro"
    openrouter_api_key: str | None = None
    openrouter_model: str = "google/gemini-2.5-flash-lite"
    rpdb_api_key: str | None = None

    timezone: str = "UTC"
    country: str = Field(default="US", min_length=2, max_length=2)
    weather_location: WeatherLocation | None = None
    enable_weather_context: bool = False

    include_movies: bool = True
    include_series: bool = True
    excluded_genres: tuple[str, ...] = ()
    min_rating: float | None = Field(default=None, ge=0, le=10)
    novelty_bias: int = Field(default=50, ge=0, le=100)
    popularity_bias: int = Field(default=50, ge=0, le=100)
    show_explanations: bool = True

    catalog_size: int = Field(default=20, ge=5, le=50)
    request_timeout: int = Field(default=30, ge=10, le=120)

    @field_validator(
        "gemini_api_key",
        "openai_api_key",
        "perplexity_api_key",
        "openrouter_api_key",
        "rpdb_api_key",
        mode="before",
    )
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return value

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    @field_validator("country")
    @classmethod
    def _upper_country(cls, value: str) -> str:
        return value.upper()

    @field_validator("excluded_genres", mode="before")
    @classmethod
    def _validate_genres(cls, value: object) -> object:
        if value is None:
            return ()
        if isinstance(value, str):
            value = [part.strip() for part in value.split(",") if part.strip()]
        if not isinstance(value, (list, tuple)):
            raise ValueError("excludedGenres must be a list of genre names")
        unknown = [genre for genre in value if genre not in VALID_GENRES]
        if unknown:
            raise ValueError(f"Unknown genres: {', '.join(map(str, unknown))}")
        return tuple(dict.fromkeys(value))

    @model_validator(mode="after")
    def _require_provider_key(self) -> "UserConfig":
        if not self.api_key:
            raise ValueError(f"An API key is required for provider {self.ai_provider}")
        if not (self.include_movies or self.include_series):
            raise ValueError("At least one content type must be enabled")
        return self

    @property
    def api_key(self) -> str | None:
        return getattr(self, f"{self.ai_provider}_api_key")

    @property
    def model(self) -> str:
        return getattr(self, f"{self.ai_provider}_model")

    def includes(self, content_type: str) -> bool:
        if content_type == "movie":
            return self.include_movies
        if content_type == "series":
            return self.include_series
        return False

    def fingerprint(self) -> dict[str, Any]:
        """Return the fields that influence generated catalogs.

        Provider keys and the request timeout never change the output, so they
        are left out; the RPDB key is kept because poster URLs embed it.
        """

        excluded = {
            "gemini_api_key",
            "openai_api_key",
            "perplexity_api_key",
            "openrouter_api_key",
            "request_timeout",
        }
        return self.model_dump(mode="json", exclude=excluded)


def config_hash(config: UserConfig, bucket: str) -> str:
    """Hash a configuration together with its temporal bucket.

    Cache reads and writes must call this with the same inputs; the result is
    stored on every cache entry.
    """

    payload = json.dumps(
        {"config": config.fingerprint(), "bucket": bucket},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def max_recommendation_year() -> int:
    return datetime.now(timezone.utc).year + 2


class Recommendation(BaseModel):
    """A single title suggested by the AI provider."""

    model_config = ConfigDict(frozen=True)

    title: str = Field(min_length=1)
    year: int
    reason: str | None = None

    @field_validator("title", mode="before")
    @classmethod
    def _strip_title(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("year")
    @classmethod
    def _validate_year(cls, value: int) -> int:
        if value < MIN_RECOMMENDATION_YEAR or value > max_recommendation_year():
            raise ValueError(f"Year {value} is outside the supported range")
        return value

    @field_validator("reason", mode="before")
    @classmethod
    def _blank_reason(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value


@dataclass(slots=True)
class ResolvedItem:
    """A recommendation joined with the metadata service's answer."""

    recommendation: Recommendation
    imdb_id: str
    name: str
    content_type: ContentType
    year: int | None = None
    poster: str | None = None

    def to_meta(self, *, show_explanations: bool) -> dict[str, object]:
        """Return a Stremio-compatible meta preview."""

        meta: dict[str, object] = {
            "id": self.imdb_id,
            "type": self.content_type,
            "name": self.name,
        }
        if self.poster:
            meta["poster"] = self.poster
        if self.year:
            meta["releaseInfo"] = str(self.year)
        if show_explanations and self.recommendation.reason:
            meta["description"] = self.recommendation.reason
        return meta


class CacheEntry(BaseModel):
    """A generated catalog together with its freshness window."""

    model_config = ConfigDict(populate_by_name=True)

    catalog: dict[str, Any]
    generated_at: float = Field(
        validation_alias=AliasChoices("generated_at", "generatedAt")
    )
    expires_at: float = Field(validation_alias=AliasChoices("expires_at", "expiresAt"))
    config_hash: str = Field(validation_alias=AliasChoices("config_hash", "configHash"))

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


def catalog_response(metas: list[dict[str, object]]) -> dict[str, Any]:
    """Wrap meta previews in the catalog response envelope."""

    return {"metas": metas}


PLACEHOLDER_POSTER_PATH = "/images/placeholder.svg"


def placeholder_catalog(
    label: str,
    content_type: str,
    *,
    detail: str | None = None,
    poster: str | None = None,
) -> dict[str, Any]:
    """Return a single-item catalog that explains why nothing was generated.

    ``poster`` is normally the add-on's own placeholder image; without a
    public base URL the item is sent without artwork.
    """

    meta: dict[str, object] = {
        "id": f"nowpicks-error-{label.lower().replace(' ', '-')}",
        "type": content_type,
        "name": f"⚠️ {label}",
        "description": detail
        or "Recommendations are temporarily unavailable. Please try again later.",
    }
    if poster:
        meta["poster"] = poster
    return catalog_response([meta])
