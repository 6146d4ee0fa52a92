"""Select and construct the provider variant named by a user's configuration."""

from __future__ import annotations

import asyncio

import httpx

from ...config import Settings
from ...models import ProviderName, UserConfig
from ...resilience import BreakerRegistry, RetryPolicy, Sleep
from ..client_pool import ClientPool
from .base import RecommendationProvider
from .gemini import GeminiProvider
from .openai import OpenAIProvider
from .openrouter import OpenRouterProvider
from .perplexity import PerplexityProvider

PROVIDERS: dict[str, type[RecommendationProvider]] = {
    "gemini": GeminiProvider,
    "openai": OpenAIProvider,
    "perplexity": PerplexityProvider,
    "openrouter": OpenRouterProvider,
}

DEFAULT_MODELS: dict[str, str] = {
    name: UserConfig.model_fields[f"{name}_model"].default for name in PROVIDERS
}


def provider_base_url(name: str, settings: Settings) -> str:
    urls = {
        "gemini": settings.gemini_api_url,
        "openai": settings.openai_api_url,
        "perplexity": settings.perplexity_api_url,
        "openrouter": settings.openrouter_api_url,
    }
    return str(urls[name]).rstrip("/")


def build_client_pools(settings: Settings) -> dict[str, ClientPool[httpx.AsyncClient]]:
    """Create one pool of authenticated HTTP clients per provider."""

    pools: dict[str, ClientPool[httpx.AsyncClient]] = {}
    for name, provider_cls in PROVIDERS.items():
        base_url = provider_base_url(name, settings)

        def factory(
            api_key: str,
            *,
            _cls: type[RecommendationProvider] = provider_cls,
            _base_url: str = base_url,
        ) -> httpx.AsyncClient:
            return httpx.AsyncClient(
                base_url=_base_url,
                headers=_cls.client_headers(api_key),
                timeout=httpx.Timeout(60.0, connect=10.0),
            )

        pools[name] = ClientPool(
            factory,
            max_size=settings.client_pool_size,
            idle_ttl=settings.client_idle_ttl_seconds,
        )
    return pools


class ProviderFactory:
    """Build provider instances around pooled clients and shared breakers."""

    def __init__(
        self,
        settings: Settings,
        pools: dict[str, ClientPool[httpx.AsyncClient]],
        breakers: BreakerRegistry,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._pools = pools
        self._breakers = breakers
        self._sleep = sleep
        self._retry_policy = RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

    @property
    def breakers(self) -> BreakerRegistry:
        return self._breakers

    async def create(self, config: UserConfig) -> RecommendationProvider:
        """Return the variant selected by ``config.ai_provider``."""

        api_key = config.api_key
        if not api_key:
            raise ValueError(f"No API key configured for {config.ai_provider}")
        return await self.for_key(config.ai_provider, api_key, config.model)

    async def for_key(
        self, provider: ProviderName | str, api_key: str, model: str | None = None
    ) -> RecommendationProvider:
        provider_cls = PROVIDERS.get(provider)
        if provider_cls is None:
            raise ValueError(f"Unsupported provider: {provider}")
        client = await self._pools[provider].acquire(api_key)
        return provider_cls(
            model=model or DEFAULT_MODELS[provider],
            http_client=client,
            breaker=self._breakers.get(provider),
            retry_policy=self._retry_policy,
            sleep=self._sleep,
        )

    async def dispose(self) -> None:
        for pool in self._pools.values():
            await pool.dispose()

    def stats(self) -> dict[str, object]:
        return {
            "pools": {name: pool.stats() for name, pool in self._pools.items()},
            "breakers": self._breakers.snapshot(),
        }
