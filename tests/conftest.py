"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import timedelta
from pathlib import Path

import pytest

from tee_time_worker.config import Settings
from tee_time_worker.jobs.models import JobRunnerContext, ScheduledJobUpdate
from tee_time_worker.jobs.repository import ScheduledJobRepository
from tee_time_worker.resilience import CircuitBreakerRegistry
from tee_time_worker.storage.common import utc_now


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[ScheduledJobRepository]:
    repo = ScheduledJobRepository(tmp_path / "jobs.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def context(repository: ScheduledJobRepository) -> JobRunnerContext:
    return JobRunnerContext(
        repository=repository,
        settings=Settings(db_path=repository.db_path),
        breakers=CircuitBreakerRegistry(),
    )


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def make_due(repository: ScheduledJobRepository) -> Callable[[str], None]:
    """Move a pending job's run_at into the past without changing status."""

    def _make_due(job_id: str) -> None:
        assert repository.update(
            job_id,
            ScheduledJobUpdate(run_at=utc_now() - timedelta(seconds=1)),
        )

    return _make_due
