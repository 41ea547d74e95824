"""CLI entrypoint for tee-time-worker."""

from __future__ import annotations

import logging
from pathlib import Path

import rich_click as click

from tee_time_worker import __version__
from tee_time_worker.config import Settings
from tee_time_worker.controllers import (
    JobEnqueueCommand,
    JobInspectCommand,
    JobListCommand,
    JobStatsCommand,
    RetentionCommand,
    WorkerCliController,
    WorkerRunCommand,
    WorkerTickCommand,
)
from tee_time_worker.jobs.errors import InvalidTransitionError, JobNotFoundError
from tee_time_worker.jobs.handlers import JobType
from tee_time_worker.jobs.models import ScheduledJobStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = WorkerCliController()


@click.group()
@click.version_option(version=__version__, prog_name="tee-time-worker")
def tee_time_worker() -> None:
    """Background job worker CLI."""

    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=Settings.from_env().log_level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )


@tee_time_worker.group()
def worker() -> None:
    """Worker process commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def worker_run(db_path: Path | None) -> None:
    """Run interval tasks until SIGINT/SIGTERM."""

    _emit_lines(CONTROLLER.run_worker(WorkerRunCommand(db_path=db_path)))


@worker.command("tick")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--batch-size",
    type=click.IntRange(min=1),
    default=None,
    help="Override WORKER_JOB_BATCH_SIZE for this pass.",
)
def worker_tick(db_path: Path | None, batch_size: int | None) -> None:
    """Claim and run one batch of due jobs."""

    _emit_lines(CONTROLLER.tick(WorkerTickCommand(db_path=db_path, batch_size=batch_size)))


@tee_time_worker.group()
def jobs() -> None:
    """Scheduled job queue commands."""


@jobs.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--job-type",
    type=click.Choice([job_type.value for job_type in JobType], case_sensitive=False),
    required=True,
    help="Handler selector.",
)
@click.option(
    "--run-in-seconds",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Delay before the job becomes due.",
)
@click.option("--booking-id", default=None, help="Optional booking reference.")
@click.option("--payload", default=None, help="Handler payload as a JSON object.")
def jobs_enqueue(
    db_path: Path | None,
    job_type: str,
    run_in_seconds: int,
    booking_id: str | None,
    payload: str | None,
) -> None:
    """Add a pending job to the queue."""

    try:
        lines = CONTROLLER.enqueue(
            JobEnqueueCommand(
                db_path=db_path,
                job_type=job_type.lower(),
                run_in_seconds=run_in_seconds,
                booking_id=booking_id,
                payload=payload,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in ScheduledJobStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Maximum rows to show.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent jobs."""

    _emit_lines(
        CONTROLLER.list_jobs(
            JobListCommand(
                db_path=db_path,
                status=status.lower() if status else None,
                limit=limit,
            ),
        ),
    )


@jobs.command("inspect")
@click.argument("job_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def jobs_inspect(job_id: str, db_path: Path | None) -> None:
    """Show one job with its event trail."""

    _emit_lines(CONTROLLER.inspect_job(JobInspectCommand(db_path=db_path, job_id=job_id)))


@jobs.command("retry")
@click.argument("job_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def jobs_retry(job_id: str, db_path: Path | None) -> None:
    """Re-queue a permanently failed job."""

    try:
        lines = CONTROLLER.retry_job(JobInspectCommand(db_path=db_path, job_id=job_id))
    except (InvalidTransitionError, JobNotFoundError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@jobs.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def jobs_stats(db_path: Path | None) -> None:
    """Count jobs by status."""

    _emit_lines(CONTROLLER.stats(JobStatsCommand(db_path=db_path)))


@tee_time_worker.group()
def retention() -> None:
    """Retention commands."""


@retention.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--days",
    type=int,
    default=None,
    help="Override RETENTION_DAYS; 0 or less disables cleanup.",
)
def retention_run(db_path: Path | None, days: int | None) -> None:
    """Delete finished jobs older than the retention window."""

    _emit_lines(CONTROLLER.retention(RetentionCommand(db_path=db_path, days=days)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    tee_time_worker()
