"""Retention cleanup for finished scheduled jobs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from tee_time_worker.jobs.repository import ScheduledJobRepository
from tee_time_worker.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetentionCleanupResult:
    retention_days: int
    cutoff: datetime | None
    scheduled_jobs: int = 0


def retention_cutoff(now: datetime, retention_days: int) -> datetime | None:
    """Oldest ``updated_at`` kept, or ``None`` when retention is disabled."""

    if retention_days <= 0:
        return None
    return now - timedelta(days=retention_days)


def run_retention_cleanup(
    repository: ScheduledJobRepository,
    *,
    retention_days: int,
    now: datetime | None = None,
) -> RetentionCleanupResult:
    """Delete completed and failed jobs older than the retention window.

    Pending and processing jobs are never touched.
    """

    cutoff = retention_cutoff(now or utc_now(), retention_days)
    if cutoff is None:
        logger.info("Retention cleanup skipped retention_days=%d", retention_days)
        return RetentionCleanupResult(retention_days=retention_days, cutoff=None)

    deleted = repository.delete_finished_before(cutoff)
    logger.info(
        "Retention cleanup done retention_days=%d cutoff=%s scheduled_jobs=%d",
        retention_days,
        cutoff.isoformat(),
        deleted,
    )
    return RetentionCleanupResult(
        retention_days=retention_days,
        cutoff=cutoff,
        scheduled_jobs=deleted,
    )
