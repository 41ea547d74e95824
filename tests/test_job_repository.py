from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest

from tee_time_worker.jobs.errors import InvalidTransitionError, JobNotFoundError
from tee_time_worker.jobs.models import (
    ScheduledJobCreate,
    ScheduledJobStatus,
    ScheduledJobUpdate,
)
from tee_time_worker.jobs.repository import ScheduledJobRepository
from tee_time_worker.storage.common import utc_now

pytestmark = [
    allure.epic("Scheduled Jobs"),
    allure.feature("Job Repository"),
]


def _enqueue_due(repository: ScheduledJobRepository, job_id: str, *, minutes_ago: int = 1) -> None:
    repository.enqueue(
        ScheduledJobCreate(
            job_type="reminder",
            job_id=job_id,
            booking_id=f"booking-{job_id}",
            run_at=utc_now() - timedelta(minutes=minutes_ago),
        ),
    )


def test_enqueue_creates_pending_job_with_zero_attempts(repository) -> None:
    job = repository.enqueue(
        ScheduledJobCreate(
            job_type="follow_up",
            booking_id="b-42",
            payload={"channel": "sms", "minutes_before": 30},
        ),
    )

    assert job.status == ScheduledJobStatus.PENDING
    assert job.attempts == 0
    assert job.last_error is None
    assert job.payload == {"channel": "sms", "minutes_before": 30}
    assert job.run_at.tzinfo is not None

    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.booking_id == "b-42"


def test_claim_marks_jobs_processing_and_increments_attempts(repository) -> None:
    _enqueue_due(repository, "job-1")

    claimed = repository.claim_due(10)

    assert [job.job_id for job in claimed] == ["job-1"]
    assert claimed[0].status == ScheduledJobStatus.PROCESSING
    assert claimed[0].attempts == 1

    stored = repository.get_job("job-1")
    assert stored is not None
    assert stored.status == ScheduledJobStatus.PROCESSING
    assert stored.attempts == 1


def test_claim_returns_oldest_due_first_and_respects_limit(repository) -> None:
    _enqueue_due(repository, "newer", minutes_ago=1)
    _enqueue_due(repository, "oldest", minutes_ago=30)
    _enqueue_due(repository, "middle", minutes_ago=10)

    first = repository.claim_due(2)
    second = repository.claim_due(2)

    assert [job.job_id for job in first] == ["oldest", "middle"]
    assert [job.job_id for job in second] == ["newer"]


def test_claim_skips_future_and_non_pending_jobs(repository) -> None:
    repository.enqueue(
        ScheduledJobCreate(
            job_type="reminder",
            job_id="future",
            run_at=utc_now() + timedelta(hours=1),
        ),
    )
    _enqueue_due(repository, "due")
    repository.claim_due(10)

    assert repository.claim_due(10) == []
    future = repository.get_job("future")
    assert future is not None
    assert future.status == ScheduledJobStatus.PENDING
    assert future.attempts == 0


def test_claim_with_non_positive_limit_is_noop(repository) -> None:
    _enqueue_due(repository, "job-1")

    assert repository.claim_due(0) == []
    assert repository.claim_due(-3) == []


def test_claim_clears_previous_error(repository) -> None:
    _enqueue_due(repository, "job-1")
    claimed = repository.claim_due(1)[0]
    assert repository.update(
        claimed.job_id,
        ScheduledJobUpdate(
            status=ScheduledJobStatus.PENDING,
            last_error="smtp timeout",
            run_at=claimed.run_at + timedelta(seconds=1),
        ),
    )
    pending = repository.get_job("job-1")
    assert pending is not None
    assert pending.last_error == "smtp timeout"

    reclaimed = repository.claim_due(1)

    assert reclaimed[0].attempts == 2
    assert reclaimed[0].last_error is None


def test_concurrent_claimers_never_share_a_job(tmp_path: Path) -> None:
    db_path = tmp_path / "shared.db"
    seed = ScheduledJobRepository(db_path)
    seed.init_schema()
    for index in range(40):
        _enqueue_due(seed, f"job-{index:02d}")

    results: list[list[str]] = []
    lock = threading.Lock()
    barrier = threading.Barrier(4)

    def worker() -> None:
        repo = ScheduledJobRepository(db_path)
        try:
            barrier.wait()
            mine: list[str] = []
            while True:
                batch = repo.claim_due(3)
                if not batch:
                    break
                mine.extend(job.job_id for job in batch)
            with lock:
                results.append(mine)
        finally:
            repo.close()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    claimed = [job_id for batch in results for job_id in batch]
    assert len(results) == 4
    assert len(claimed) == 40
    assert len(set(claimed)) == 40
    assert all(
        job.attempts == 1
        for job in seed.list_jobs(status=ScheduledJobStatus.PROCESSING, limit=100)
    )
    seed.close()


def test_update_completes_processing_job(repository) -> None:
    _enqueue_due(repository, "job-1")
    repository.claim_due(1)

    updated = repository.update(
        "job-1",
        ScheduledJobUpdate(status=ScheduledJobStatus.COMPLETED, clear_last_error=True),
    )

    assert updated is True
    job = repository.get_job("job-1")
    assert job is not None
    assert job.status == ScheduledJobStatus.COMPLETED
    assert job.attempts == 1


@pytest.mark.parametrize(
    ("status", "target"),
    [
        (ScheduledJobStatus.PENDING, ScheduledJobStatus.COMPLETED),
        (ScheduledJobStatus.PENDING, ScheduledJobStatus.PROCESSING),
        (ScheduledJobStatus.COMPLETED, ScheduledJobStatus.FAILED),
        (ScheduledJobStatus.FAILED, ScheduledJobStatus.COMPLETED),
    ],
)
def test_update_rejects_transitions_outside_state_machine(
    repository,
    status: ScheduledJobStatus,
    target: ScheduledJobStatus,
) -> None:
    _enqueue_due(repository, "job-1")
    if status != ScheduledJobStatus.PENDING:
        repository.claim_due(1)
        repository.update("job-1", ScheduledJobUpdate(status=status, last_error="x"))

    with pytest.raises(InvalidTransitionError):
        repository.update("job-1", ScheduledJobUpdate(status=target))


def test_requeue_requires_later_run_at(repository) -> None:
    _enqueue_due(repository, "job-1")
    claimed = repository.claim_due(1)[0]

    with pytest.raises(InvalidTransitionError, match="requires a new run_at"):
        repository.update("job-1", ScheduledJobUpdate(status=ScheduledJobStatus.PENDING))

    with pytest.raises(InvalidTransitionError, match="must be later"):
        repository.update(
            "job-1",
            ScheduledJobUpdate(status=ScheduledJobStatus.PENDING, run_at=claimed.run_at),
        )

    later = utc_now() + timedelta(minutes=1)
    assert repository.update(
        "job-1",
        ScheduledJobUpdate(status=ScheduledJobStatus.PENDING, last_error="boom", run_at=later),
    )
    job = repository.get_job("job-1")
    assert job is not None
    assert job.status == ScheduledJobStatus.PENDING
    assert job.run_at == later
    assert job.attempts == 1


def test_update_missing_job_raises(repository) -> None:
    with pytest.raises(JobNotFoundError, match="Job not found: nope"):
        repository.update("nope", ScheduledJobUpdate(status=ScheduledJobStatus.COMPLETED))


def test_stale_processing_jobs_are_recovered(repository) -> None:
    _enqueue_due(repository, "stale")
    repository.claim_due(1)

    assert repository.recover_stale_processing(stale_after=timedelta(hours=1)) == []

    recovered = repository.recover_stale_processing(stale_after=timedelta(0))

    assert [job.job_id for job in recovered] == ["stale"]
    assert recovered[0].status == ScheduledJobStatus.PENDING
    assert recovered[0].attempts == 1
    assert recovered[0].last_error == "Recovered stale processing job"
    assert [job.job_id for job in repository.claim_due(1)] == ["stale"]


def test_manual_retry_requeues_failed_job_only(repository) -> None:
    _enqueue_due(repository, "job-1")
    repository.claim_due(1)

    with pytest.raises(InvalidTransitionError, match="Only failed jobs"):
        repository.retry_job(job_id="job-1")

    repository.update(
        "job-1",
        ScheduledJobUpdate(status=ScheduledJobStatus.FAILED, last_error="gave up"),
    )
    job = repository.retry_job(job_id="job-1")

    assert job.status == ScheduledJobStatus.PENDING
    assert job.attempts == 1
    assert job.last_error == "gave up"

    with pytest.raises(JobNotFoundError):
        repository.retry_job(job_id="missing")


def test_job_details_include_event_trail(repository) -> None:
    _enqueue_due(repository, "job-1")
    claimed = repository.claim_due(1)[0]
    repository.update(
        "job-1",
        ScheduledJobUpdate(
            status=ScheduledJobStatus.PENDING,
            last_error="boom",
            run_at=claimed.run_at + timedelta(minutes=1),
        ),
    )
    repository.claim_due(1)
    repository.update("job-1", ScheduledJobUpdate(status=ScheduledJobStatus.COMPLETED))

    details = repository.get_job_details(job_id="job-1")

    assert details is not None
    assert details.job.status == ScheduledJobStatus.COMPLETED
    assert [event.event_type for event in details.events] == [
        "enqueued",
        "claimed",
        "retry_scheduled",
        "claimed",
        "completed",
    ]
    assert details.events[2].details["error"] == "boom"
    assert details.events[3].details == {"attempts": 2}
    assert repository.get_job_details(job_id="missing") is None


def test_count_by_status_reports_every_status(repository) -> None:
    _enqueue_due(repository, "a")
    _enqueue_due(repository, "b")
    repository.enqueue(
        ScheduledJobCreate(job_type="reminder", run_at=utc_now() + timedelta(days=1)),
    )
    repository.claim_due(1)

    counts = repository.count_by_status()

    assert counts == {
        ScheduledJobStatus.PENDING: 2,
        ScheduledJobStatus.PROCESSING: 1,
        ScheduledJobStatus.COMPLETED: 0,
        ScheduledJobStatus.FAILED: 0,
    }


def test_list_jobs_filters_by_status(repository) -> None:
    _enqueue_due(repository, "a", minutes_ago=5)
    _enqueue_due(repository, "b")
    repository.claim_due(1)

    processing = repository.list_jobs(status=ScheduledJobStatus.PROCESSING)
    everything = repository.list_jobs(limit=10)

    assert [job.job_id for job in processing] == ["a"]
    assert {job.job_id for job in everything} == {"a", "b"}


def test_delete_finished_before_keeps_active_jobs(repository) -> None:
    _enqueue_due(repository, "done", minutes_ago=5)
    _enqueue_due(repository, "waiting")
    repository.claim_due(1)
    repository.update("done", ScheduledJobUpdate(status=ScheduledJobStatus.COMPLETED))

    assert repository.delete_finished_before(datetime(2000, 1, 1, tzinfo=UTC)) == 0

    deleted = repository.delete_finished_before(utc_now() + timedelta(seconds=1))

    assert deleted == 1
    assert repository.get_job("done") is None
    assert repository.get_job("waiting") is not None


def test_enqueued_job_details_are_readable_immediately(repository) -> None:
    job = repository.enqueue(ScheduledJobCreate(job_type="reminder", booking_id="b-1"))

    details = repository.get_job_details(job_id=job.job_id)

    assert details is not None
    assert details.job.status == ScheduledJobStatus.PENDING
    assert [event.event_type for event in details.events] == ["enqueued"]
    assert details.events[0].status_to == ScheduledJobStatus.PENDING
    assert details.events[0].details == {"job_type": "reminder"}


def test_outcome_from_lost_claim_is_rejected_after_reclaim(repository) -> None:
    _enqueue_due(repository, "slow")
    first = repository.claim_due(1)[0]
    repository.recover_stale_processing(stale_after=timedelta(0))
    second = repository.claim_due(1)[0]
    assert second.attempts == first.attempts + 1

    accepted = repository.update(
        first.job_id,
        ScheduledJobUpdate(
            status=ScheduledJobStatus.COMPLETED,
            clear_last_error=True,
            claimed_attempts=first.attempts,
        ),
    )

    assert accepted is False
    job = repository.get_job("slow")
    assert job is not None
    assert job.status == ScheduledJobStatus.PROCESSING
    assert job.attempts == 2

    assert repository.update(
        second.job_id,
        ScheduledJobUpdate(
            status=ScheduledJobStatus.COMPLETED,
            clear_last_error=True,
            claimed_attempts=second.attempts,
        ),
    )


def test_outcome_from_lost_claim_is_rejected_before_reclaim(repository) -> None:
    _enqueue_due(repository, "slow")
    first = repository.claim_due(1)[0]
    repository.recover_stale_processing(stale_after=timedelta(0))

    accepted = repository.update(
        first.job_id,
        ScheduledJobUpdate(
            status=ScheduledJobStatus.FAILED,
            last_error="late",
            claimed_attempts=first.attempts,
        ),
    )

    assert accepted is False
    job = repository.get_job("slow")
    assert job is not None
    assert job.status == ScheduledJobStatus.PENDING
    assert job.last_error == "Recovered stale processing job"
