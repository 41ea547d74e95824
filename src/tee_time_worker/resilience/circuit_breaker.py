"""Circuit breaker guarding calls into an unreliable dependency.

States:
- CLOSED: calls pass through; consecutive failures are counted.
- OPEN: calls are rejected with ``CircuitBreakerOpenError`` until the reset
  timeout elapses.
- HALF_OPEN: trial phase; ``success_threshold`` consecutive successes close
  the circuit, any failure opens it again.

Breaker state lives in process memory only and is lost on restart. Whether a
breaker protects a single call or a whole dependency is decided by its
lifetime: build one per call for isolation, or keep one per dependency in a
``CircuitBreakerRegistry`` for the life of the process so failures in one
request protect the next.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

from tee_time_worker.resilience.retry import RetryOptions, with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True, slots=True)
class CircuitBreakerOptions:
    """Breaker thresholds."""

    failure_threshold: int = 5
    reset_timeout_ms: float = 60_000
    success_threshold: int = 2


class CircuitBreakerOpenError(RuntimeError):
    """Raised when an open breaker rejects a call without running it."""

    def __init__(self, name: str, retry_in_ms: float) -> None:
        super().__init__(f"Circuit breaker '{name}' is open")
        self.name = name
        self.retry_in_ms = retry_in_ms


class CircuitBreaker(Generic[T]):
    """Stateful guard around one asynchronous operation.

    ``execute()`` runs the operation given at construction. A breaker kept
    for a whole dependency can instead gate arbitrary calls to it with
    ``call(operation)``; all calls then share one state.
    """

    def __init__(
        self,
        operation: Callable[[], Awaitable[T]] | None = None,
        options: CircuitBreakerOptions | None = None,
        *,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.operation = operation
        self.options = options or CircuitBreakerOptions()
        self.name = name
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.next_attempt_at = clock()

    async def execute(self) -> T:
        """Run the wrapped operation if the circuit allows it."""

        if self.operation is None:
            raise TypeError(f"Circuit breaker '{self.name}' has no wrapped operation")
        return await self.call(self.operation)

    async def call(self, operation: Callable[[], Awaitable[R]]) -> R:
        if self.state == CircuitState.OPEN:
            now = self._clock()
            if now < self.next_attempt_at:
                raise CircuitBreakerOpenError(
                    self.name,
                    retry_in_ms=(self.next_attempt_at - now) * 1000.0,
                )
            self._transition(CircuitState.HALF_OPEN)
            self.success_count = 0

        try:
            result = await operation()
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        """Force the breaker back to CLOSED with cleared counters."""

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.next_attempt_at = self._clock()

    def _on_success(self) -> None:
        self.failure_count = 0
        if self.state != CircuitState.HALF_OPEN:
            return
        self.success_count += 1
        if self.success_count >= self.options.success_threshold:
            self._transition(CircuitState.CLOSED)
            self.success_count = 0

    def _on_failure(self) -> None:
        self.failure_count += 1
        self.success_count = 0
        if (
            self.state == CircuitState.HALF_OPEN
            or self.failure_count >= self.options.failure_threshold
        ):
            self.next_attempt_at = self._clock() + self.options.reset_timeout_ms / 1000.0
            self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        previous = self.state
        self.state = new_state
        if new_state == CircuitState.OPEN:
            logger.warning(
                "Circuit breaker OPEN name=%s from=%s failures=%d reset_timeout_ms=%d",
                self.name,
                previous.value,
                self.failure_count,
                round(self.options.reset_timeout_ms),
            )
        elif new_state != previous:
            logger.info(
                "Circuit breaker %s name=%s from=%s",
                new_state.value.upper(),
                self.name,
                previous.value,
            )


class CircuitBreakerRegistry:
    """Process-local breakers, one per named dependency."""

    def __init__(
        self,
        options: CircuitBreakerOptions | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.options = options or CircuitBreakerOptions()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker[Any]] = {}

    def get(self, name: str, options: CircuitBreakerOptions | None = None) -> CircuitBreaker[Any]:
        """Return the breaker for ``name``, creating it on first use."""

        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                options=options or self.options,
                name=name,
                clock=self._clock,
            )
            self._breakers[name] = breaker
        return breaker

    def states(self) -> dict[str, CircuitState]:
        return {name: breaker.state for name, breaker in sorted(self._breakers.items())}


async def with_retry_and_circuit_breaker(
    operation: Callable[[], Awaitable[T]],
    retry_options: RetryOptions | None = None,
    breaker_options: CircuitBreakerOptions | None = None,
    *,
    breaker: CircuitBreaker[Any] | None = None,
) -> T:
    """Retry ``operation`` with every attempt gated by a circuit breaker.

    Without ``breaker`` a fresh breaker is built for this call alone, which
    isolates requests from each other but gives no protection across calls.
    Pass a long-lived breaker (for example from ``CircuitBreakerRegistry``)
    to share state. Once the breaker opens mid-sequence the remaining
    attempts fail fast with ``CircuitBreakerOpenError``.
    """

    gate = breaker or CircuitBreaker(operation, breaker_options)
    return await with_retry(lambda: gate.call(operation), retry_options)
