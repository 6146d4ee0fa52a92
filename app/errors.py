"""Error taxonomy shared by the AI providers and the catalog pipeline.

Every upstream failure is mapped onto a small set of categories. The category
decides whether the retry helper tries again, whether the circuit breaker
counts the failure, and which placeholder title a client eventually sees.
"""

from __future__ import annotations

import asyncio
import re
from enum import Enum
from typing import Mapping

import httpx


class ErrorCategory(str, Enum):
    AUTH = "auth"
    RATE_LIMIT = "rate-limit"
    QUOTA = "quota"
    MODEL = "model"
    NETWORK = "network"
    TIMEOUT = "timeout"
    SERVER = "server"
    SCHEMA = "schema"
    UNKNOWN = "unknown"


RETRYABLE_CATEGORIES = frozenset(
    {
        ErrorCategory.RATE_LIMIT,
        ErrorCategory.NETWORK,
        ErrorCategory.TIMEOUT,
        ErrorCategory.SERVER,
    }
)
BREAKER_CATEGORIES = RETRYABLE_CATEGORIES | {ErrorCategory.QUOTA}

PLACEHOLDER_LABELS: dict[ErrorCategory, str] = {
    ErrorCategory.AUTH: "Invalid API Key",
    ErrorCategory.RATE_LIMIT: "Rate Limited",
    ErrorCategory.QUOTA: "Quota Exceeded",
    ErrorCategory.MODEL: "Model Unavailable",
    ErrorCategory.NETWORK: "Connection Error",
    ErrorCategory.TIMEOUT: "Timeout",
    ErrorCategory.SERVER: "Service Unavailable",
    ErrorCategory.SCHEMA: "Invalid Response",
    ErrorCategory.UNKNOWN: "Something Went Wrong",
}

PROVIDER_NAMES = {
    "gemini": "Gemini",
    "openai": "OpenAI",
    "perplexity": "Perplexity",
    "openrouter": "OpenRouter",
}


class InvalidConfigurationError(Exception):
    """Raised when a request carries a configuration token we cannot use."""


class ProviderError(Exception):
    """Base class for failures raised while talking to an AI provider."""

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.category in RETRYABLE_CATEGORIES

    @property
    def counts_toward_breaker(self) -> bool:
        return self.category in BREAKER_CATEGORIES


class AuthError(ProviderError):
    category = ErrorCategory.AUTH


class RateLimitError(ProviderError):
    category = ErrorCategory.RATE_LIMIT


class QuotaError(ProviderError):
    category = ErrorCategory.QUOTA


class ModelUnavailableError(ProviderError):
    category = ErrorCategory.MODEL


class NetworkError(ProviderError):
    category = ErrorCategory.NETWORK


class ProviderTimeoutError(ProviderError):
    category = ErrorCategory.TIMEOUT


class ServerError(ProviderError):
    category = ErrorCategory.SERVER


class SchemaError(ProviderError):
    category = ErrorCategory.SCHEMA


class EmptyResponseError(SchemaError):
    """The provider answered without any text to parse."""


class UnknownProviderError(ProviderError):
    category = ErrorCategory.UNKNOWN


class CircuitOpenError(ProviderError):
    """Raised without touching the network while a breaker is open."""

    category = ErrorCategory.SERVER

    @property
    def retryable(self) -> bool:
        return False

    @property
    def counts_toward_breaker(self) -> bool:
        return False


_CATEGORY_ERRORS: dict[ErrorCategory, type[ProviderError]] = {
    ErrorCategory.AUTH: AuthError,
    ErrorCategory.RATE_LIMIT: RateLimitError,
    ErrorCategory.QUOTA: QuotaError,
    ErrorCategory.MODEL: ModelUnavailableError,
    ErrorCategory.NETWORK: NetworkError,
    ErrorCategory.TIMEOUT: ProviderTimeoutError,
    ErrorCategory.SERVER: ServerError,
    ErrorCategory.SCHEMA: SchemaError,
    ErrorCategory.UNKNOWN: UnknownProviderError,
}

# Order matters: billing markers must win over the generic "quota" wording
# that Gemini uses for plain rate limiting.
_MESSAGE_PATTERNS: tuple[tuple[tuple[str, ...], ErrorCategory], ...] = (
    (
        ("unauthorized", "invalid_api_key", "api_key_invalid", "incorrect api key",
         "invalid api key", "permission_denied", "forbidden"),
        ErrorCategory.AUTH,
    ),
    (
        ("insufficient_quota", "billing", "payment", "insufficient credits"),
        ErrorCategory.QUOTA,
    ),
    (
        ("rate_limit", "rate limit", "too many requests", "resource exhausted",
         "resource_exhausted", "quota"),
        ErrorCategory.RATE_LIMIT,
    ),
    (("model_not_found", "model not found", "not found"), ErrorCategory.MODEL),
    (("timeout", "timed out", "etimedout"), ErrorCategory.TIMEOUT),
    (
        ("enotfound", "econnrefused", "econnreset", "connection", "network"),
        ErrorCategory.NETWORK,
    ),
    (("overloaded", "unavailable", "internal error"), ErrorCategory.SERVER),
)

_RETRY_IN_RE = re.compile(r"retry in (\d+(?:\.\d+)?)\s*s", re.IGNORECASE)
_RETRY_DELAY_RE = re.compile(r'"retryDelay"\s*:\s*"(\d+(?:\.\d+)?)s"')


def category_for_status(status_code: int, body: str = "") -> ErrorCategory | None:
    """Return the category implied by an HTTP status, if it is conclusive."""

    lowered = body.lower()
    if status_code in (401, 403):
        return ErrorCategory.AUTH
    if status_code == 402:
        return ErrorCategory.QUOTA
    if status_code == 404:
        return ErrorCategory.MODEL
    if status_code == 408:
        return ErrorCategory.TIMEOUT
    if status_code == 429:
        if "insufficient_quota" in lowered or "billing" in lowered:
            return ErrorCategory.QUOTA
        return ErrorCategory.RATE_LIMIT
    if status_code >= 500:
        return ErrorCategory.SERVER
    return None


def category_for_message(message: str) -> ErrorCategory:
    lowered = message.lower()
    for patterns, category in _MESSAGE_PATTERNS:
        if any(pattern in lowered for pattern in patterns):
            return category
    return ErrorCategory.UNKNOWN


def extract_retry_after(
    body: str = "", headers: Mapping[str, str] | None = None
) -> float | None:
    """Return the retry delay advertised by the upstream, in seconds."""

    if headers:
        raw = headers.get("retry-after") or headers.get("Retry-After")
        if raw:
            try:
                return max(0.0, float(raw))
            except ValueError:
                pass
    for pattern in (_RETRY_DELAY_RE, _RETRY_IN_RE):
        match = pattern.search(body)
        if match:
            return float(match.group(1))
    return None


def classify_http_error(
    status_code: int,
    body: str,
    *,
    provider: str | None = None,
    headers: Mapping[str, str] | None = None,
) -> ProviderError:
    """Build the typed error for a failed upstream HTTP response."""

    category = category_for_status(status_code, body)
    if category is None:
        category = category_for_message(body)
    error_cls = _CATEGORY_ERRORS[category]
    retry_after = None
    if category is ErrorCategory.RATE_LIMIT:
        retry_after = extract_retry_after(body, headers)
    message = f"HTTP {status_code}: {body[:500]}" if body else f"HTTP {status_code}"
    return error_cls(
        message,
        provider=provider,
        status_code=status_code,
        retry_after=retry_after,
    )


def classify_exception(exc: BaseException, *, provider: str | None = None) -> ProviderError:
    """Map any exception raised around a provider call onto the taxonomy."""

    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return ProviderTimeoutError(str(exc) or "Request timed out", provider=provider)
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ProviderTimeoutError("Request timed out", provider=provider)
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        return classify_http_error(
            response.status_code,
            response.text,
            provider=provider,
            headers=response.headers,
        )
    if isinstance(exc, httpx.TransportError):
        return NetworkError(str(exc) or type(exc).__name__, provider=provider)
    message = str(exc) or type(exc).__name__
    error_cls = _CATEGORY_ERRORS[category_for_message(message)]
    return error_cls(message, provider=provider)


def is_retryable(exc: BaseException) -> bool:
    """Return True when retrying the failed operation could succeed."""

    return classify_exception(exc).retryable


def placeholder_label(exc: BaseException) -> str:
    """Return the short human-readable title for a terminal failure."""

    return PLACEHOLDER_LABELS[classify_exception(exc).category]


def user_message(category: ErrorCategory, provider: str | None = None) -> str:
    """Return a user-facing explanation for an API key validation failure."""

    name = PROVIDER_NAMES.get(provider or "", "AI")
    messages = {
        ErrorCategory.AUTH: f"Invalid API key. Please check your {name} API key.",
        ErrorCategory.RATE_LIMIT: "Rate limit exceeded. Please wait a moment and try again.",
        ErrorCategory.QUOTA: f"Billing issue with your {name} account. Please check your subscription.",
        ErrorCategory.MODEL: "The selected model is not available. Please try a different model.",
        ErrorCategory.NETWORK: "Network error. Please check your internet connection.",
        ErrorCategory.TIMEOUT: "Request timed out. The API might be busy, please try again.",
        ErrorCategory.SERVER: f"{name} service is temporarily unavailable. Please try again later.",
        ErrorCategory.SCHEMA: f"{name} returned an unexpected response.",
    }
    return messages.get(
        category,
        "Could not validate API key. Please verify your key and try again.",
    )
