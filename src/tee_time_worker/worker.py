"""Worker process wiring: tasks, context and the scheduler lifecycle."""

from __future__ import annotations

import asyncio
import logging

from tee_time_worker.config import Settings
from tee_time_worker.jobs.executor import run_reports, run_scheduled_jobs
from tee_time_worker.jobs.models import JobRunnerContext
from tee_time_worker.jobs.repository import ScheduledJobRepository
from tee_time_worker.resilience import CircuitBreakerOptions, CircuitBreakerRegistry
from tee_time_worker.retention import run_retention_cleanup
from tee_time_worker.scheduler import IntervalScheduler, IntervalTask

logger = logging.getLogger(__name__)

LLM_DEPENDENCY = "llm"


async def _run_retention(context: JobRunnerContext) -> None:
    await asyncio.to_thread(
        run_retention_cleanup,
        context.repository,
        retention_days=context.settings.retention_days,
    )


def build_worker_tasks(settings: Settings) -> list[IntervalTask]:
    return [
        IntervalTask(
            name="scheduled-jobs",
            every_ms=settings.worker.scheduled_interval_ms,
            run=run_scheduled_jobs,
        ),
        IntervalTask(
            name="report-generation",
            every_ms=settings.worker.reports_interval_ms,
            run=run_reports,
        ),
        IntervalTask(
            name="retention-cleanup",
            every_ms=settings.worker.retention_interval_ms,
            run=_run_retention,
        ),
    ]


def build_context(settings: Settings, repository: ScheduledJobRepository) -> JobRunnerContext:
    """Context shared by all tasks; breakers live as long as the process."""

    breakers = CircuitBreakerRegistry(
        CircuitBreakerOptions(
            failure_threshold=settings.llm_breaker.failure_threshold,
            reset_timeout_ms=settings.llm_breaker.reset_timeout_ms,
            success_threshold=settings.llm_breaker.success_threshold,
        ),
    )
    breakers.get(LLM_DEPENDENCY)
    return JobRunnerContext(repository=repository, settings=settings, breakers=breakers)


async def run_worker(settings: Settings) -> None:
    """Run the worker until SIGINT/SIGTERM."""

    repository = ScheduledJobRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        scheduler = IntervalScheduler(
            build_context(settings, repository),
            build_worker_tasks(settings),
            shutdown_grace_ms=settings.worker.shutdown_grace_ms,
        )
        await scheduler.run_until_signalled()
    finally:
        repository.close()
    logger.info("Worker stopped")
