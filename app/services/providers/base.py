"""Shared plumbing for the AI recommendation providers."""

from __future__ import annotations

import abc
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, ClassVar, Iterable, Mapping

import httpx
from pydantic import ValidationError

from ...errors import (
    EmptyResponseError,
    ErrorCategory,
    ProviderError,
    SchemaError,
    classify_exception,
    classify_http_error,
    user_message,
)
from ...models import ContentType, Recommendation, UserConfig
from ...resilience import CircuitBreaker, RetryPolicy, Sleep, retry
from ...signals import ContextSignals
from ...utils import dedup_key, extract_json_object

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are NowPicks, a film and television expert who recommends titles that fit "
    "the viewer's current moment. You always respond with a single JSON object that "
    "matches the requested schema and never include commentary outside JSON."
)


def recommendation_schema(include_reason: bool = True) -> dict[str, Any]:
    """JSON schema for the ``{"items": [...]}`` payload we ask models for."""

    properties: dict[str, Any] = {
        "title": {
            "type": "string",
            "description": "Exact movie/series title as shown on IMDb",
        },
        "year": {
            "type": "integer",
            "description": "Release year (for series, first air date year)",
        },
    }
    required = ["title", "year"]
    if include_reason:
        properties["reason"] = {
            "type": "string",
            "description": "Brief explanation of why this recommendation fits",
        }
        required.append("reason")
    return {
        "type": "object",
        "properties": {
            "items": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": properties,
                    "required": required,
                    "additionalProperties": False,
                },
            }
        },
        "required": ["items"],
        "additionalProperties": False,
    }


@dataclass(frozen=True, slots=True)
class GenerationOverrides:
    """Per-call tweaks, typically chosen by the catalog variant."""

    temperature: float | None = None
    max_output_tokens: int | None = None


@dataclass(slots=True)
class ProviderMetadata:
    provider: str
    model: str
    search_used: bool
    duration_ms: int
    item_count: int
    dropped_count: int = 0


@dataclass(slots=True)
class ProviderResult:
    items: list[Recommendation]
    metadata: ProviderMetadata


@dataclass(frozen=True, slots=True)
class KeyValidation:
    valid: bool
    error: str | None = None


def dedupe_recommendations(items: Iterable[Recommendation]) -> list[Recommendation]:
    """Drop repeated titles, keeping the first occurrence and the original order."""

    seen: set[str] = set()
    unique: list[Recommendation] = []
    for item in items:
        key = dedup_key(item.title, item.year)
        if key in seen:
            continue
        seen.add(key)
        unique.append(item)
    return unique


def parse_recommendations(
    text: str | None, *, provider: str | None = None
) -> tuple[list[Recommendation], int]:
    """Parse model output into validated recommendations.

    Returns the valid items and the number of dropped ones. Raises
    :class:`SchemaError` when nothing usable remains.
    """

    if text is None or not text.strip():
        raise EmptyResponseError("Provider returned an empty response", provider=provider)
    try:
        payload = extract_json_object(text)
    except ValueError as exc:
        raise SchemaError(str(exc), provider=provider) from exc

    raw_items = payload.get("items")
    if raw_items is None:
        raw_items = payload.get("recommendations")
    if not isinstance(raw_items, list) or not raw_items:
        raise SchemaError("Response did not contain any items", provider=provider)

    items: list[Recommendation] = []
    dropped = 0
    for raw_item in raw_items:
        try:
            items.append(Recommendation.model_validate(raw_item))
        except ValidationError:
            dropped += 1
    if not items:
        raise SchemaError(
            f"All {dropped} items failed validation", provider=provider
        )
    if dropped:
        logger.info("Dropped %s invalid recommendations from %s", dropped, provider)
    return items, dropped


def default_max_tokens(count: int) -> int:
    return max(2_000, min(12_000, 900 + count * 60))


class RecommendationProvider(abc.ABC):
    """Capability interface the catalog pipeline talks to.

    Subclasses describe how to build a structured-output request and how to
    pull the text back out of the response. The HTTP call runs inside the
    retry helper, and the whole retry sequence counts as one breaker trial.
    """

    name: ClassVar[str]
    search_used: ClassVar[bool] = False

    def __init__(
        self,
        *,
        model: str,
        http_client: httpx.AsyncClient,
        breaker: CircuitBreaker,
        retry_policy: RetryPolicy | None = None,
        default_temperature: float = 0.7,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.model = model
        self._client = http_client
        self._breaker = breaker
        self._retry_policy = retry_policy or RetryPolicy()
        self._default_temperature = default_temperature
        self._sleep = sleep

    @staticmethod
    @abc.abstractmethod
    def client_headers(api_key: str) -> dict[str, str]:
        """Headers baked into the pooled HTTP client for ``api_key``."""

    @abc.abstractmethod
    def build_request(
        self,
        prompt: str,
        *,
        content_type: ContentType,
        temperature: float,
        max_output_tokens: int,
        include_reason: bool,
    ) -> tuple[str, dict[str, Any]]:
        """Return the request path and JSON body for a generation call."""

    @abc.abstractmethod
    def extract_text(self, payload: Mapping[str, Any]) -> str | None:
        """Return the generated text from a decoded response body."""

    @abc.abstractmethod
    async def _check_key(self) -> None:
        """Issue the cheapest authenticated request the upstream offers."""

    async def generate_recommendations(
        self,
        config: UserConfig,
        context: ContextSignals,
        content_type: ContentType,
        count: int,
        prompt: str,
        overrides: GenerationOverrides | None = None,
    ) -> ProviderResult:
        overrides = overrides or GenerationOverrides()
        temperature = (
            overrides.temperature
            if overrides.temperature is not None
            else self._default_temperature
        )
        path, body = self.build_request(
            prompt,
            content_type=content_type,
            temperature=temperature,
            max_output_tokens=overrides.max_output_tokens or default_max_tokens(count),
            include_reason=config.show_explanations,
        )

        started = time.perf_counter()
        payload = await self._breaker.call(
            retry,
            lambda: self._post(path, body),
            self._retry_policy,
            sleep=self._sleep,
        )
        items, dropped = parse_recommendations(
            self.extract_text(payload), provider=self.name
        )
        unique = dedupe_recommendations(items)
        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "%s returned %s %s recommendations (%s dropped, %s duplicates) in %sms for %s",
            self.name,
            len(unique),
            content_type,
            dropped,
            len(items) - len(unique),
            duration_ms,
            context.time_of_day,
        )
        return ProviderResult(
            items=unique,
            metadata=ProviderMetadata(
                provider=self.name,
                model=self.model,
                search_used=self.search_used,
                duration_ms=duration_ms,
                item_count=len(unique),
                dropped_count=dropped,
            ),
        )

    async def validate_api_key(self) -> KeyValidation:
        """Check the key with a minimal request; never raises for API errors."""

        try:
            await self._check_key()
        except ProviderError as exc:
            return KeyValidation(valid=False, error=user_message(exc.category, self.name))
        except httpx.HTTPError as exc:
            category = classify_exception(exc, provider=self.name).category
            return KeyValidation(valid=False, error=user_message(category, self.name))
        return KeyValidation(valid=True)

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        response = await self._send("POST", path, json=body)
        try:
            payload = response.json()
        except ValueError as exc:
            raise SchemaError("Provider returned a non-JSON body", provider=self.name) from exc
        if not isinstance(payload, dict):
            raise SchemaError("Provider returned an unexpected body", provider=self.name)
        return payload

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise classify_exception(exc, provider=self.name) from exc
        if response.status_code >= 400:
            error = classify_http_error(
                response.status_code,
                response.text,
                provider=self.name,
                headers=response.headers,
            )
            if error.category is not ErrorCategory.RATE_LIMIT:
                logger.warning("%s request failed: %s", self.name, error)
            raise error
        return response
