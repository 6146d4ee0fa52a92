"""AI provider variants behind a single recommendation interface."""

from __future__ import annotations

from .base import (
    GenerationOverrides,
    KeyValidation,
    ProviderMetadata,
    ProviderResult,
    RecommendationProvider,
    dedupe_recommendations,
    parse_recommendations,
)
from .factory import PROVIDERS, ProviderFactory, build_client_pools

__all__ = [
    "GenerationOverrides",
    "KeyValidation",
    "PROVIDERS",
    "ProviderFactory",
    "ProviderMetadata",
    "ProviderResult",
    "RecommendationProvider",
    "build_client_pools",
    "dedupe_recommendations",
    "parse_recommendations",
]
