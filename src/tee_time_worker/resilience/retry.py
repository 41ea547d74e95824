"""Retry with capped exponential backoff for flaky asynchronous calls."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[object]]


def _always_retryable(_: BaseException) -> bool:
    return True


@dataclass(frozen=True, slots=True)
class RetryOptions:
    """Retry budget and backoff curve for one ``with_retry`` call.

    ``max_retries`` counts retries, not attempts: the operation runs at most
    ``max_retries + 1`` times.
    """

    max_retries: int = 3
    base_delay_ms: float = 1_000
    max_delay_ms: float = 10_000
    backoff_multiplier: float = 2.0
    jitter: bool = True
    is_retryable: Callable[[BaseException], bool] = _always_retryable


def compute_backoff_delay_ms(
    retry_index: int,
    options: RetryOptions,
    *,
    rng: random.Random | None = None,
) -> float:
    """Delay before retry ``retry_index`` (0 for the first retry).

    Never exceeds ``options.max_delay_ms``, however large the index.
    """

    try:
        delay = options.base_delay_ms * (options.backoff_multiplier**retry_index)
    except OverflowError:
        delay = options.max_delay_ms
    delay = min(delay, options.max_delay_ms)
    if options.jitter:
        delay *= (rng or random).uniform(0.5, 1.0)
    return delay


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None,
    *,
    sleep: Sleep = asyncio.sleep,
    rng: random.Random | None = None,
) -> T:
    """Await ``operation`` until it succeeds or the retry budget is spent.

    Errors rejected by ``options.is_retryable`` propagate immediately. When
    every attempt fails the last error is re-raised as is, so callers can
    inspect the original exception type.
    """

    opts = options or RetryOptions()
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as error:
            if not opts.is_retryable(error) or attempt >= opts.max_retries:
                raise
            delay_ms = compute_backoff_delay_ms(attempt, opts, rng=rng)
            attempt += 1
            logger.warning(
                "Retry attempt %d/%d after %dms: %s",
                attempt,
                opts.max_retries,
                round(delay_ms),
                error,
            )
            await sleep(delay_ms / 1000.0)
