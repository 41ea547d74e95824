"""Domain models for the scheduled job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from tee_time_worker.config import Settings
    from tee_time_worker.jobs.repository import ScheduledJobRepository
    from tee_time_worker.resilience import CircuitBreakerRegistry


class ScheduledJobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Transitions written through ``ScheduledJobRepository.update``. Claiming
# (pending -> processing) happens only inside ``claim_due``.
ALLOWED_UPDATE_TRANSITIONS: dict[ScheduledJobStatus, frozenset[ScheduledJobStatus]] = {
    ScheduledJobStatus.PENDING: frozenset(),
    ScheduledJobStatus.PROCESSING: frozenset(
        {
            ScheduledJobStatus.COMPLETED,
            ScheduledJobStatus.PENDING,
            ScheduledJobStatus.FAILED,
        },
    ),
    ScheduledJobStatus.COMPLETED: frozenset(),
    ScheduledJobStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset({ScheduledJobStatus.COMPLETED, ScheduledJobStatus.FAILED})


@dataclass(slots=True)
class ScheduledJobCreate:
    """Input payload for enqueuing a job."""

    job_type: str
    job_id: str | None = None
    booking_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    run_at: datetime | None = None


@dataclass(slots=True)
class ScheduledJobUpdate:
    """Partial update applied by id; ``updated_at`` is always refreshed.

    ``claimed_attempts`` fences the write to one claim: the update is
    dropped unless the row still carries the attempt count the caller
    claimed it with.
    """

    status: ScheduledJobStatus | None = None
    last_error: str | None = None
    clear_last_error: bool = False
    run_at: datetime | None = None
    claimed_attempts: int | None = None


@dataclass(slots=True)
class ScheduledJobView:
    """Readable job view for the executor and CLI."""

    job_id: str
    job_type: str
    booking_id: str | None
    payload: dict[str, Any]
    status: ScheduledJobStatus
    attempts: int
    run_at: datetime
    last_error: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class ScheduledJobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: ScheduledJobStatus | None
    status_to: ScheduledJobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ScheduledJobDetails:
    """Job details with event stream."""

    job: ScheduledJobView
    events: list[ScheduledJobEventView]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Requeue policy applied by the executor after a handler failure."""

    max_attempts: int = 5
    base_delay_ms: int = 60_000
    backoff_multiplier: float = 2.0
    max_delay_ms: int = 3_600_000


@dataclass(slots=True)
class JobRunSummary:
    """Per-tick counters for logs and CLI reporting."""

    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    recovered: int = 0


@dataclass(slots=True)
class JobRunnerContext:
    """Execution context shared by interval tasks and job handlers."""

    repository: ScheduledJobRepository
    settings: Settings
    breakers: CircuitBreakerRegistry
