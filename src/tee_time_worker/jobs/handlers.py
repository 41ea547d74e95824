"""Job handlers keyed by job type."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from enum import Enum

from tee_time_worker.jobs.errors import UnknownJobTypeError
from tee_time_worker.jobs.models import JobRunnerContext, ScheduledJobView

logger = logging.getLogger(__name__)

JobHandler = Callable[[ScheduledJobView, JobRunnerContext], Awaitable[None]]


class JobType(str, Enum):
    REMINDER = "reminder"
    FOLLOW_UP = "follow_up"
    RETENTION = "retention"


async def handle_reminder_job(job: ScheduledJobView, _context: JobRunnerContext) -> None:
    logger.info(
        "Scheduled reminder job handled job_id=%s job_type=%s booking_id=%s",
        job.job_id,
        job.job_type,
        job.booking_id,
    )


async def handle_follow_up_job(job: ScheduledJobView, _context: JobRunnerContext) -> None:
    logger.info(
        "Scheduled follow-up job handled job_id=%s job_type=%s booking_id=%s",
        job.job_id,
        job.job_type,
        job.booking_id,
    )


async def handle_retention_job(job: ScheduledJobView, _context: JobRunnerContext) -> None:
    logger.info(
        "Scheduled retention job handled job_id=%s job_type=%s",
        job.job_id,
        job.job_type,
    )


JOB_HANDLERS: dict[JobType, JobHandler] = {
    JobType.REMINDER: handle_reminder_job,
    JobType.FOLLOW_UP: handle_follow_up_job,
    JobType.RETENTION: handle_retention_job,
}


def ensure_handlers_cover_job_types(handlers: dict[JobType, JobHandler]) -> None:
    """Raise if any job type has no handler registered."""

    missing = [job_type.value for job_type in JobType if job_type not in handlers]
    if missing:
        raise RuntimeError(f"No handler registered for job types: {', '.join(missing)}")


ensure_handlers_cover_job_types(JOB_HANDLERS)


async def run_scheduled_job(job: ScheduledJobView, context: JobRunnerContext) -> None:
    """Dispatch ``job`` to the handler for its type."""

    try:
        job_type = JobType(job.job_type)
    except ValueError as error:
        raise UnknownJobTypeError(job.job_type) from error
    await JOB_HANDLERS[job_type](job, context)
