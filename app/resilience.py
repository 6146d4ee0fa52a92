"""Retry and circuit breaker primitives for flaky upstream APIs."""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from .errors import CircuitOpenError, classify_exception, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded exponential backoff settings."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0

    def delay_for(self, attempt: int) -> float:
        """Return the pause that follows the given (1-based) failed attempt."""

        return min(self.max_delay, self.base_delay * 2 ** (attempt - 1))


async def retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    should_retry: Callable[[BaseException], bool] = is_retryable,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the policy gives up.

    Only failures accepted by ``should_retry`` are attempted again. When the
    last attempt fails the original exception propagates unchanged so callers
    can still classify the real cause.
    """

    policy = policy or RetryPolicy()
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as exc:
            if attempt >= policy.max_attempts or not should_retry(exc):
                raise
            delay = policy.delay_for(attempt)
            hint = getattr(exc, "retry_after", None)
            if isinstance(hint, (int, float)) and hint > 0:
                delay = min(policy.max_delay, float(hint))
            logger.warning(
                "Attempt %s/%s failed (%s); retrying in %.2fs",
                attempt,
                policy.max_attempts,
                exc,
                delay,
            )
            await sleep(delay)
            attempt += 1


def with_retry(
    policy: RetryPolicy,
    *,
    should_retry: Callable[[BaseException], bool] = is_retryable,
    sleep: Sleep = asyncio.sleep,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorate a coroutine function so every call goes through :func:`retry`."""

    def decorator(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await retry(
                lambda: fn(*args, **kwargs),
                policy,
                should_retry=should_retry,
                sleep=sleep,
            )

        return wrapper

    return decorator


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


def _counts_as_failure(exc: BaseException) -> bool:
    return classify_exception(exc).counts_toward_breaker


class CircuitBreaker:
    """Fail fast while an upstream keeps failing.

    The breaker opens after ``failure_threshold`` consecutive counted failures
    and rejects calls with :class:`CircuitOpenError` until ``cooldown``
    seconds have passed. It then lets exactly one trial call through; the
    trial's outcome either closes the breaker or re-opens it.

    Errors that prove the upstream answered (bad key, malformed output) are
    not counted and reset the failure streak like a success would. Every
    transition bumps a generation counter, and a call admitted under an older
    generation finishes without touching the state. State changes never
    await, so they are atomic on the event loop.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        cooldown: float = 30.0,
        clock: Clock = time.monotonic,
        is_failure: Callable[[BaseException], bool] = _counts_as_failure,
    ) -> None:
        self.name = name
        self._failure_threshold = max(1, failure_threshold)
        self._cooldown = cooldown
        self._clock = clock
        self._is_failure = is_failure
        self._state = CircuitState.CLOSED
        self._generation = 0
        self._failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        self._refresh()
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    def reset(self) -> None:
        self._transition(CircuitState.CLOSED)
        self._failures = 0
        self._trial_in_flight = False

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Invoke ``fn`` as one trial, or raise without calling it."""

        generation, trial = self._admit()
        try:
            result = await fn(*args, **kwargs)
        except Exception as exc:
            if self._is_failure(exc):
                self._record_failure(generation, trial)
            else:
                self._record_success(generation, trial)
            raise
        else:
            self._record_success(generation, trial)
            return result
        finally:
            if trial and self._generation == generation:
                self._trial_in_flight = False

    def _transition(self, state: CircuitState) -> None:
        self._state = state
        self._generation += 1

    def _refresh(self) -> None:
        if (
            self._state is CircuitState.OPEN
            and self._clock() - self._opened_at >= self._cooldown
        ):
            self._transition(CircuitState.HALF_OPEN)
            self._trial_in_flight = False
            logger.info("Circuit %s half-open; admitting a trial call", self.name)

    def _admit(self) -> tuple[int, bool]:
        self._refresh()
        if self._state is CircuitState.OPEN:
            raise CircuitOpenError(
                f"Circuit for {self.name} is open", provider=self.name
            )
        if self._state is CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(
                    f"Circuit for {self.name} is awaiting a trial result",
                    provider=self.name,
                )
            self._trial_in_flight = True
            return self._generation, True
        return self._generation, False

    def _owns_state(self, generation: int, trial: bool) -> bool:
        # Only the half-open trial, or a call admitted during the current
        # closed period, may move the breaker.
        if generation != self._generation:
            return False
        if trial:
            return self._state is CircuitState.HALF_OPEN
        return self._state is CircuitState.CLOSED

    def _record_success(self, generation: int, trial: bool) -> None:
        if not self._owns_state(generation, trial):
            return
        if trial:
            logger.info("Circuit %s closed after successful trial", self.name)
            self._transition(CircuitState.CLOSED)
        self._failures = 0

    def _record_failure(self, generation: int, trial: bool) -> None:
        if not self._owns_state(generation, trial):
            return
        self._failures += 1
        if trial or self._failures >= self._failure_threshold:
            logger.warning(
                "Circuit %s opened after %s consecutive failures",
                self.name,
                self._failures,
            )
            self._transition(CircuitState.OPEN)
            self._opened_at = self._clock()


def with_circuit_breaker(
    breaker: CircuitBreaker,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorate a coroutine function so each call is one breaker trial."""

    def decorator(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await breaker.call(fn, *args, **kwargs)

        return wrapper

    return decorator


class BreakerRegistry:
    """Process-wide breakers, one per provider."""

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        cooldown: float = 30.0,
        clock: Clock = time.monotonic,
    ) -> None:
        self._failure_threshold = failure_threshold
        self._cooldown = cooldown
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                failure_threshold=self._failure_threshold,
                cooldown=self._cooldown,
                clock=self._clock,
            )
            self._breakers[name] = breaker
        return breaker

    def snapshot(self) -> dict[str, str]:
        return {name: breaker.state.value for name, breaker in self._breakers.items()}
