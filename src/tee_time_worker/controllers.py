"""Controllers for worker CLI commands."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from tee_time_worker.config import Settings
from tee_time_worker.jobs.executor import run_scheduled_jobs
from tee_time_worker.jobs.models import ScheduledJobCreate, ScheduledJobStatus
from tee_time_worker.jobs.repository import ScheduledJobRepository
from tee_time_worker.retention import run_retention_cleanup
from tee_time_worker.storage.common import utc_now
from tee_time_worker.worker import build_context, run_worker


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for the long-running worker."""

    db_path: Path | None


@dataclass(slots=True)
class WorkerTickCommand:
    """CLI input for a single scheduled-jobs pass."""

    db_path: Path | None
    batch_size: int | None = None


@dataclass(slots=True)
class JobEnqueueCommand:
    """CLI input for job enqueue."""

    db_path: Path | None
    job_type: str
    run_in_seconds: int
    booking_id: str | None
    payload: str | None


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobInspectCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobStatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class RetentionCommand:
    db_path: Path | None
    days: int | None


class WorkerCliController:
    """Builds settings and repositories for each CLI command."""

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        asyncio.run(run_worker(settings))
        return ["Worker stopped."]

    def tick(self, command: WorkerTickCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.batch_size is not None:
            settings.worker.job_batch_size = command.batch_size
        with _repository(settings) as repository:
            summary = asyncio.run(run_scheduled_jobs(build_context(settings, repository)))
        return [
            "Tick summary: "
            f"claimed={summary.claimed} completed={summary.completed} "
            f"retried={summary.retried} failed={summary.failed} "
            f"recovered={summary.recovered}",
        ]

    def enqueue(self, command: JobEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        payload = _parse_payload(command.payload)
        with _repository(settings) as repository:
            job = repository.enqueue(
                ScheduledJobCreate(
                    job_type=command.job_type,
                    booking_id=command.booking_id,
                    payload=payload,
                    run_at=utc_now() + timedelta(seconds=command.run_in_seconds),
                ),
            )
        return [
            f"Job enqueued: {job.job_id}",
            f"Type: {job.job_type}",
            f"Run at: {job.run_at.isoformat()}",
        ]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            jobs = repository.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} type={job.job_type} status={job.status.value} "
                f"attempts={job.attempts} run_at={job.run_at.isoformat()}",
            )
        return lines

    def inspect_job(self, command: JobInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(job_id=command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Type: {job.job_type}",
            f"Status: {job.status.value}",
            f"Attempts: {job.attempts}",
            f"Run at: {job.run_at.isoformat()}",
            f"Booking: {job.booking_id or '-'}",
            f"Error: {job.last_error or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def retry_job(self, command: JobInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.retry_job(job_id=command.job_id)
        return [f"Job re-queued: {command.job_id}"]

    def stats(self, command: JobStatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            counts = repository.count_by_status()
        return [f"{status.value}={count}" for status, count in counts.items()]

    def retention(self, command: RetentionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        days = command.days if command.days is not None else settings.retention_days
        with _repository(settings) as repository:
            result = run_retention_cleanup(repository, retention_days=days)
        if result.cutoff is None:
            return [f"Retention disabled (days={days})."]
        return [
            f"Retention cutoff: {result.cutoff.isoformat()}",
            f"Deleted jobs: {result.scheduled_jobs}",
        ]


def _parse_status(value: str | None) -> ScheduledJobStatus | None:
    if value is None:
        return None
    try:
        return ScheduledJobStatus(value)
    except ValueError as error:
        raise ValueError(f"Unsupported job status: {value!r}") from error


def _parse_payload(raw: str | None) -> dict[str, object]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"Payload must be a JSON object: {error}") from error
    if not isinstance(parsed, dict):
        raise ValueError("Payload must be a JSON object.")
    return parsed


@contextmanager
def _repository(settings: Settings) -> Iterator[ScheduledJobRepository]:
    repository = ScheduledJobRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
