"""Claim -> run -> record loop for scheduled jobs.

Store calls are blocking SQLite work (busy timeouts included), so the
executor runs them in worker threads and the event loop keeps serving
other interval tasks and signals meanwhile.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.exc import OperationalError, SQLAlchemyError

from tee_time_worker.jobs.errors import InvalidTransitionError, JobNotFoundError
from tee_time_worker.jobs.handlers import JobHandler, run_scheduled_job
from tee_time_worker.jobs.models import (
    JobRunnerContext,
    JobRunSummary,
    RetryPolicy,
    ScheduledJobStatus,
    ScheduledJobUpdate,
    ScheduledJobView,
)
from tee_time_worker.resilience.retry import RetryOptions, compute_backoff_delay_ms, with_retry
from tee_time_worker.storage.common import utc_now

logger = logging.getLogger(__name__)


def _is_transient_store_error(error: BaseException) -> bool:
    return isinstance(error, OperationalError)


# Outcome writes that hit a locked or busy database are retried before the
# row is left in processing for stale recovery.
OUTCOME_WRITE_RETRY = RetryOptions(
    max_retries=3,
    base_delay_ms=100,
    max_delay_ms=1_000,
    is_retryable=_is_transient_store_error,
)


def compute_retry_delay_ms(attempts: int, policy: RetryPolicy) -> float:
    """Requeue delay after the ``attempts``-th failed run.

    ``attempts`` already counts the run that just failed, so the first retry
    uses exponent 0: ``min(base * multiplier ** (attempts - 1), max)``.
    """

    return compute_backoff_delay_ms(
        max(attempts - 1, 0),
        RetryOptions(
            base_delay_ms=policy.base_delay_ms,
            max_delay_ms=policy.max_delay_ms,
            backoff_multiplier=policy.backoff_multiplier,
            jitter=False,
        ),
    )


class JobExecutor:
    """Claims due jobs and drives each one to its next state."""

    def __init__(  # noqa: PLR0913
        self,
        context: JobRunnerContext,
        *,
        batch_size: int,
        retry_policy: RetryPolicy,
        stale_processing_ms: int = 0,
        handler: JobHandler = run_scheduled_job,
        clock: Callable[[], datetime] = utc_now,
        outcome_write_retry: RetryOptions = OUTCOME_WRITE_RETRY,
    ) -> None:
        self.context = context
        self.batch_size = batch_size
        self.retry_policy = retry_policy
        self.stale_processing_ms = stale_processing_ms
        self.handler = handler
        self.outcome_write_retry = outcome_write_retry
        self._clock = clock

    async def run_due_jobs(self) -> JobRunSummary:
        """Process one batch of due jobs sequentially."""

        summary = JobRunSummary()
        repository = self.context.repository
        if self.stale_processing_ms > 0:
            recovered = await asyncio.to_thread(
                repository.recover_stale_processing,
                stale_after=timedelta(milliseconds=self.stale_processing_ms),
            )
            for job in recovered:
                logger.warning(
                    "Recovered stale processing job job_id=%s job_type=%s attempts=%d",
                    job.job_id,
                    job.job_type,
                    job.attempts,
                )
            summary.recovered = len(recovered)

        jobs = await asyncio.to_thread(repository.claim_due, self.batch_size)
        summary.claimed = len(jobs)
        for job in jobs:
            outcome = await self.run_job(job)
            if outcome == ScheduledJobStatus.COMPLETED:
                summary.completed += 1
            elif outcome == ScheduledJobStatus.PENDING:
                summary.retried += 1
            elif outcome == ScheduledJobStatus.FAILED:
                summary.failed += 1
        return summary

    async def run_job(self, job: ScheduledJobView) -> ScheduledJobStatus | None:
        """Run a claimed job and persist its outcome.

        Returns the status written, or ``None`` when the outcome could not be
        recorded: either the claim was lost to another worker, or the store
        kept failing and the row is left for stale recovery.
        """

        try:
            await self.handler(job, self.context)
        except Exception as error:  # noqa: BLE001
            return await self._record_failure(job, _error_message(error))

        if not await self._persist(
            job,
            ScheduledJobUpdate(status=ScheduledJobStatus.COMPLETED, clear_last_error=True),
        ):
            return None
        logger.info(
            "Scheduled job completed job_id=%s job_type=%s attempts=%d",
            job.job_id,
            job.job_type,
            job.attempts,
        )
        return ScheduledJobStatus.COMPLETED

    async def _record_failure(
        self,
        job: ScheduledJobView,
        message: str,
    ) -> ScheduledJobStatus | None:
        if job.attempts >= self.retry_policy.max_attempts:
            if not await self._persist(
                job,
                ScheduledJobUpdate(status=ScheduledJobStatus.FAILED, last_error=message),
            ):
                return None
            logger.error(
                "Scheduled job failed permanently job_id=%s job_type=%s attempts=%d error=%s",
                job.job_id,
                job.job_type,
                job.attempts,
                message,
            )
            return ScheduledJobStatus.FAILED

        delay_ms = compute_retry_delay_ms(job.attempts, self.retry_policy)
        next_run_at = self._clock() + timedelta(milliseconds=delay_ms)
        if not await self._persist(
            job,
            ScheduledJobUpdate(
                status=ScheduledJobStatus.PENDING,
                last_error=message,
                run_at=next_run_at,
            ),
        ):
            return None
        logger.warning(
            "Scheduled job rescheduled after failure job_id=%s job_type=%s attempts=%d "
            "delay_ms=%d error=%s",
            job.job_id,
            job.job_type,
            job.attempts,
            round(delay_ms),
            message,
        )
        return ScheduledJobStatus.PENDING

    async def _persist(self, job: ScheduledJobView, changes: ScheduledJobUpdate) -> bool:
        changes.claimed_attempts = job.attempts
        repository = self.context.repository
        try:
            updated = await with_retry(
                lambda: asyncio.to_thread(repository.update, job.job_id, changes),
                self.outcome_write_retry,
            )
        except (InvalidTransitionError, JobNotFoundError, SQLAlchemyError):
            logger.exception(
                "Failed to record job outcome job_id=%s job_type=%s attempts=%d",
                job.job_id,
                job.job_type,
                job.attempts,
            )
            return False
        if not updated:
            logger.warning(
                "Job changed concurrently, outcome dropped job_id=%s job_type=%s attempts=%d",
                job.job_id,
                job.job_type,
                job.attempts,
            )
        return updated


async def run_scheduled_jobs(context: JobRunnerContext) -> JobRunSummary:
    """Interval task entry point: one executor pass with configured policy."""

    settings = context.settings
    executor = JobExecutor(
        context,
        batch_size=settings.worker.job_batch_size,
        retry_policy=RetryPolicy(
            max_attempts=settings.retry.max_attempts,
            base_delay_ms=settings.retry.base_delay_ms,
            backoff_multiplier=settings.retry.backoff_multiplier,
            max_delay_ms=settings.retry.max_delay_ms,
        ),
        stale_processing_ms=settings.worker.stale_processing_ms,
    )
    summary = await executor.run_due_jobs()
    if summary.claimed or summary.recovered:
        logger.info(
            "Scheduled jobs tick claimed=%d completed=%d retried=%d failed=%d recovered=%d",
            summary.claimed,
            summary.completed,
            summary.retried,
            summary.failed,
            summary.recovered,
        )
    return summary


async def run_reports(context: JobRunnerContext) -> None:
    """Report-generation tick: log queue depth and dependency health."""

    counts = await asyncio.to_thread(context.repository.count_by_status)
    breakers = ",".join(
        f"{name}:{state.value}" for name, state in context.breakers.states().items()
    )
    logger.info(
        "Report generation tick pending=%d processing=%d completed=%d failed=%d breakers=%s",
        counts[ScheduledJobStatus.PENDING],
        counts[ScheduledJobStatus.PROCESSING],
        counts[ScheduledJobStatus.COMPLETED],
        counts[ScheduledJobStatus.FAILED],
        breakers or "-",
    )


def _error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__
