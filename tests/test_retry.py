from __future__ import annotations

import asyncio
import logging
import random

import allure
import pytest

from tee_time_worker.resilience.retry import RetryOptions, compute_backoff_delay_ms, with_retry

pytestmark = [
    allure.epic("Resilience"),
    allure.feature("Retry Backoff"),
]


class _SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def test_always_failing_operation_uses_exponential_delays_then_reraises_original() -> None:
    error = ConnectionError("llm unavailable")
    calls = 0

    async def operation() -> str:
        nonlocal calls
        calls += 1
        raise error

    sleep = _SleepRecorder()
    options = RetryOptions(max_retries=3, base_delay_ms=1000, backoff_multiplier=2, jitter=False)

    with pytest.raises(ConnectionError) as exc_info:
        asyncio.run(with_retry(operation, options, sleep=sleep))

    assert exc_info.value is error
    assert calls == 4
    assert sleep.delays == [1.0, 2.0, 4.0]


def test_success_after_transient_failures_returns_result() -> None:
    outcomes = [TimeoutError("slow"), TimeoutError("slow again"), "ok"]

    async def operation() -> str:
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    sleep = _SleepRecorder()
    result = asyncio.run(
        with_retry(operation, RetryOptions(jitter=False, base_delay_ms=10), sleep=sleep),
    )

    assert result == "ok"
    assert sleep.delays == [0.01, 0.02]


def test_non_retryable_error_propagates_without_consuming_budget() -> None:
    calls = 0

    async def operation() -> None:
        nonlocal calls
        calls += 1
        raise ValueError("bad request")

    sleep = _SleepRecorder()
    options = RetryOptions(
        max_retries=5,
        is_retryable=lambda error: not isinstance(error, ValueError),
    )

    with pytest.raises(ValueError, match="bad request"):
        asyncio.run(with_retry(operation, options, sleep=sleep))

    assert calls == 1
    assert sleep.delays == []


def test_zero_retries_runs_operation_once() -> None:
    calls = 0

    async def operation() -> None:
        nonlocal calls
        calls += 1
        raise RuntimeError("boom")

    sleep = _SleepRecorder()
    with pytest.raises(RuntimeError):
        asyncio.run(with_retry(operation, RetryOptions(max_retries=0), sleep=sleep))

    assert calls == 1
    assert sleep.delays == []


def test_backoff_delay_is_capped_by_max_delay() -> None:
    options = RetryOptions(
        base_delay_ms=1000,
        max_delay_ms=5000,
        backoff_multiplier=2,
        jitter=False,
    )

    delays = [compute_backoff_delay_ms(index, options) for index in range(5)]

    assert delays == [1000, 2000, 4000, 5000, 5000]


def test_jitter_keeps_delay_between_half_and_full_value() -> None:
    options = RetryOptions(base_delay_ms=1000, max_delay_ms=100_000, jitter=True)
    rng = random.Random(7)

    for index in range(6):
        full = 1000 * 2**index
        delay = compute_backoff_delay_ms(index, options, rng=rng)
        assert 0.5 * full <= delay <= full


def test_each_retry_emits_warning(caplog: pytest.LogCaptureFixture) -> None:
    async def operation() -> None:
        raise OSError("reset by peer")

    with caplog.at_level(logging.WARNING, logger="tee_time_worker.resilience.retry"):
        with pytest.raises(OSError):
            asyncio.run(
                with_retry(
                    operation,
                    RetryOptions(max_retries=2, jitter=False),
                    sleep=_SleepRecorder(),
                ),
            )

    messages = [record.getMessage() for record in caplog.records]
    assert messages == [
        "Retry attempt 1/2 after 1000ms: reset by peer",
        "Retry attempt 2/2 after 2000ms: reset by peer",
    ]


def test_huge_retry_index_is_capped_instead_of_overflowing() -> None:
    float_options = RetryOptions(base_delay_ms=1000, max_delay_ms=5000, jitter=False)
    int_options = RetryOptions(
        base_delay_ms=1000.0,
        max_delay_ms=5000,
        backoff_multiplier=3,
        jitter=False,
    )

    assert compute_backoff_delay_ms(1100, float_options) == 5000
    assert compute_backoff_delay_ms(10_000, int_options) == 5000
    assert 2500 <= compute_backoff_delay_ms(5000, RetryOptions(max_delay_ms=5000)) <= 5000
