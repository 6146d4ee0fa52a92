"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_CONFIG_SECRET = "nowpicks-development-secret"


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="NowPicks", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=7000, alias="PORT")
    base_url: HttpUrl | None = Field(default=None, alias="BASE_URL")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", alias="LOG_LEVEL"
    )

    config_secret: str = Field(
        default=DEFAULT_CONFIG_SECRET,
        alias="CONFIG_SECRET",
        validation_alias=AliasChoices("CONFIG_SECRET", "SECRET_KEY"),
        min_length=16,
    )

    cache_backend: Literal["memory", "redis", "sql"] = Field(
        default="memory", alias="CACHE_BACKEND"
    )
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    database_url: str = Field(
        default="sqlite+aiosqlite:///./nowpicks-cache.db", alias="DATABASE_URL"
    )
    cache_max_size: int = Field(default=1_000, alias="CACHE_MAX_SIZE", ge=1)
    cache_stale_ttl_seconds: int = Field(
        default=86_400, alias="CACHE_STALE_TTL", ge=0
    )
    cache_sweep_interval_seconds: float = Field(
        default=300, alias="CACHE_SWEEP_INTERVAL", ge=0
    )

    metadata_addon_url: HttpUrl = Field(
        default="https://v3-cinemeta.strem.io",
        alias="METADATA_ADDON_URL",
        validation_alias=AliasChoices("METADATA_ADDON_URL", "CINEMETA_API_URL"),
    )
    rpdb_api_url: HttpUrl = Field(
        default="https://api.ratingposterdb.com", alias="RPDB_API_URL"
    )
    weather_api_url: HttpUrl = Field(
        default="https://api.open-meteo.com/v1", alias="WEATHER_API_URL"
    )
    gemini_api_url: HttpUrl = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        alias="GEMINI_API_URL",
    )
    openai_api_url: HttpUrl = Field(
        default="https://api.openai.com/v1", alias="OPENAI_API_URL"
    )
    perplexity_api_url: HttpUrl = Field(
        default="https://api.perplexity.ai", alias="PERPLEXITY_API_URL"
    )
    openrouter_api_url: HttpUrl = Field(
        default="https://openrouter.ai/api/v1", alias="OPENROUTER_API_URL"
    )

    retry_max_attempts: int = Field(default=3, alias="RETRY_MAX_ATTEMPTS", ge=1, le=10)
    retry_base_delay: float = Field(default=1.0, alias="RETRY_BASE_DELAY", ge=0)
    retry_max_delay: float = Field(default=10.0, alias="RETRY_MAX_DELAY", ge=0)
    breaker_failure_threshold: int = Field(
        default=5, alias="BREAKER_FAILURE_THRESHOLD", ge=1
    )
    breaker_cooldown_seconds: float = Field(
        default=30.0, alias="BREAKER_COOLDOWN", ge=0
    )

    client_pool_size: int = Field(default=100, alias="CLIENT_POOL_SIZE", ge=1)
    client_idle_ttl_seconds: int = Field(
        default=3_600, alias="CLIENT_IDLE_TTL", ge=1
    )
    max_request_timeout: float = Field(
        default=120.0, alias="MAX_REQUEST_TIMEOUT", gt=0
    )
    failure_backoff_seconds: float = Field(
        default=60.0, alias="FAILURE_BACKOFF_SECONDS", ge=0
    )
    batch_generation: bool = Field(default=True, alias="BATCH_GENERATION")

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @model_validator(mode="after")
    def _require_production_secret(self) -> "Settings":
        """Refuse to run production with the bundled development secret."""

        if (
            self.environment == "production"
            and self.config_secret == DEFAULT_CONFIG_SECRET
        ):
            raise ValueError("CONFIG_SECRET must be set in production")
        if self.retry_max_delay < self.retry_base_delay:
            raise ValueError("RETRY_MAX_DELAY must not be lower than RETRY_BASE_DELAY")
        return self

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
