"""Resilience primitives: retry with backoff and circuit breaking."""

from tee_time_worker.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    CircuitBreakerOptions,
    CircuitBreakerRegistry,
    CircuitState,
    with_retry_and_circuit_breaker,
)
from tee_time_worker.resilience.retry import RetryOptions, compute_backoff_delay_ms, with_retry

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerOpenError",
    "CircuitBreakerOptions",
    "CircuitBreakerRegistry",
    "CircuitState",
    "RetryOptions",
    "compute_backoff_delay_ms",
    "with_retry",
    "with_retry_and_circuit_breaker",
]
