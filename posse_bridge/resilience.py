"""Guards around calls to remote services.

The publish path goes through a per-service CircuitBreaker so a PDS outage
fails fast instead of stacking up timeouts. The importer paces page fetches
with a shared RateLimiter and wraps each fetch in retry(). Post creation is
never retried here because it is not idempotent.

Only TransientError trips a breaker or triggers a retry. Protocol
rejections propagate untouched.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, TypeVar

from posse_bridge.errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(TransientError):
    """The breaker for a service is refusing calls until reset_at."""

    def __init__(self, service: str, reset_at: float) -> None:
        self.service = service
        self.reset_at = reset_at
        super().__init__(f"{service} unavailable, circuit open until {reset_at:.1f}")


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    half_open_max_calls: int = 1


class CircuitBreaker:
    """Consecutive-failure breaker for one remote service.

    After failure_threshold transient failures in a row the breaker opens
    and rejects calls with CircuitOpenError. Once reset_timeout has passed
    it lets half_open_max_calls trial calls through; a successful trial closes
    it again and a failed one reopens it.
    """

    def __init__(
        self,
        service: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.service = service
        self._cfg = config or CircuitBreakerConfig()
        self._now = clock or time.monotonic
        self._guard = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trials = 0

    def _move_to(self, state: CircuitState) -> None:
        if state is self._state:
            return
        logger.info("Circuit for %s: %s -> %s", self.service, self._state.value, state.value)
        self._state = state
        if state is CircuitState.OPEN:
            self._opened_at = self._now()
        elif state is CircuitState.HALF_OPEN:
            self._trials = 0

    def _refresh(self) -> CircuitState:
        cooled = self._now() - self._opened_at >= self._cfg.reset_timeout
        if self._state is CircuitState.OPEN and cooled:
            self._move_to(CircuitState.HALF_OPEN)
        return self._state

    @property
    def state(self) -> CircuitState:
        with self._guard:
            return self._refresh()

    @property
    def failure_count(self) -> int:
        return self._failures

    def _admit(self) -> None:
        with self._guard:
            state = self._refresh()
            if state is CircuitState.CLOSED:
                return
            if state is CircuitState.HALF_OPEN and self._trials < self._cfg.half_open_max_calls:
                self._trials += 1
                return
            raise CircuitOpenError(self.service, self._opened_at + self._cfg.reset_timeout)

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        self._admit()
        try:
            result = func(*args, **kwargs)
        except TransientError:
            self._record_failure()
            raise
        self._record_success()
        return result

    def _record_success(self) -> None:
        with self._guard:
            self._failures = 0
            self._move_to(CircuitState.CLOSED)

    def _record_failure(self) -> None:
        with self._guard:
            self._failures += 1
            trial = self._state is CircuitState.HALF_OPEN
            if trial or self._failures >= self._cfg.failure_threshold:
                if self._state is not CircuitState.OPEN:
                    logger.warning("%s failed %d time(s) in a row, opening circuit",
                                   self.service, self._failures)
                self._move_to(CircuitState.OPEN)

    def reset(self) -> None:
        with self._guard:
            self._failures = 0
            self._trials = 0
            self._move_to(CircuitState.CLOSED)


class RateLimitExceeded(TransientError):
    """No capacity is left and the caller asked not to wait."""

    def __init__(self, retry_after: float) -> None:
        super().__init__(f"Request budget spent, next slot in {retry_after:.1f}s",
                         retry_after=retry_after)


@dataclass
class RateLimiterConfig:
    tokens_per_second: float = 1.0
    max_tokens: float = 1.0
    initial_tokens: float | None = None  # None starts with a full bucket


class RateLimiter:
    """Token bucket shared by concurrent callers.

    A blocking acquire reserves its tokens up front, possibly driving the
    balance below zero, and then sleeps outside the lock until the
    reservation is covered. Concurrent workers therefore queue up one
    interval apart without serializing on the lock itself.
    """

    def __init__(
        self,
        config: RateLimiterConfig | None = None,
        clock: Callable[[], float] | None = None,
        sleep_func: Callable[[float], None] | None = None,
    ) -> None:
        cfg = config or RateLimiterConfig()
        self._rate = cfg.tokens_per_second
        self._capacity = cfg.max_tokens
        self._balance = cfg.max_tokens if cfg.initial_tokens is None else cfg.initial_tokens
        self._now = clock or time.monotonic
        self._sleep = sleep_func or time.sleep
        self._guard = threading.Lock()
        self._stamp = self._now()

    def _top_up(self) -> None:
        now = self._now()
        earned = (now - self._stamp) * self._rate
        self._balance = min(self._capacity, self._balance + earned)
        self._stamp = now

    def acquire(self, tokens: float = 1.0, block: bool = True) -> bool:
        """Spend tokens, waiting for them unless block is False.

        Raises RateLimitExceeded instead of waiting when block is False.
        """
        with self._guard:
            self._top_up()
            shortfall = tokens - self._balance
            if shortfall > 0 and not block:
                raise RateLimitExceeded(shortfall / self._rate)
            self._balance -= tokens

        if shortfall > 0:
            logger.debug("Rate limited, waiting %.2fs", shortfall / self._rate)
            self._sleep(shortfall / self._rate)
        return True

    @property
    def available_tokens(self) -> float:
        with self._guard:
            self._top_up()
            return max(0.0, self._balance)


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True
    retryable_exceptions: tuple[type[Exception], ...] = (TransientError,)

    def backoff(self, attempt: int, hint: float | None = None) -> float:
        """Delay before the attempt following `attempt` (1-based).

        A server-provided Retry-After hint raises the floor; max_delay caps
        the result either way.
        """
        delay = self.base_delay * self.multiplier ** (attempt - 1)
        if self.jitter:
            delay *= random.uniform(0.5, 1.0)
        if hint:
            delay = max(delay, hint)
        return min(delay, self.max_delay)


class RetryError(TransientError):
    """Every attempt failed with a retryable error."""

    def __init__(self, attempts: int, last_error: Exception) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")


def retry(
    func: Callable[..., T],
    config: RetryConfig | None = None,
    sleep_func: Callable[[float], None] | None = None,
    *args: Any,
    **kwargs: Any,
) -> T:
    """Call func(*args, **kwargs) until it succeeds or attempts run out.

    Non-retryable exceptions propagate on first sight. When the last
    attempt fails, RetryError wraps the final exception.
    """
    cfg = config or RetryConfig()
    pause = sleep_func or time.sleep

    attempt = 1
    while True:
        try:
            return func(*args, **kwargs)
        except cfg.retryable_exceptions as exc:
            if attempt >= cfg.max_attempts:
                raise RetryError(attempt, exc) from exc
            delay = cfg.backoff(attempt, getattr(exc, "retry_after", None))
            logger.info("Attempt %d/%d failed (%s), retrying in %.1fs",
                        attempt, cfg.max_attempts, exc, delay)
        pause(delay)
        attempt += 1
