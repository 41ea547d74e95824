"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, col, select

from tee_time_worker.jobs.errors import InvalidTransitionError, JobNotFoundError
from tee_time_worker.jobs.models import (
    ALLOWED_UPDATE_TRANSITIONS,
    TERMINAL_STATUSES,
    ScheduledJobCreate,
    ScheduledJobDetails,
    ScheduledJobEventView,
    ScheduledJobStatus,
    ScheduledJobUpdate,
    ScheduledJobView,
)
from tee_time_worker.storage.alembic_runner import upgrade_head
from tee_time_worker.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from tee_time_worker.storage.sqlmodel_models import ScheduledJobEventRow, ScheduledJobRow

logger = logging.getLogger(__name__)

CLAIM_CONFLICT_RETRIES = 5
CLAIM_CONFLICT_BACKOFF_SECONDS = 0.05

_EVENT_BY_STATUS = {
    ScheduledJobStatus.COMPLETED: "completed",
    ScheduledJobStatus.PENDING: "retry_scheduled",
    ScheduledJobStatus.FAILED: "failed",
}

_JOBS = ScheduledJobRow.__table__  # type: ignore[attr-defined]


class ScheduledJobRepository:
    """Queue persistence facade for scheduled jobs."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue(self, payload: ScheduledJobCreate) -> ScheduledJobView:
        """Create a pending job with zero attempts."""

        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            row = ScheduledJobRow(
                id=job_id,
                job_type=payload.job_type,
                booking_id=payload.booking_id,
                payload_json=json.dumps(payload.payload, ensure_ascii=False, sort_keys=True),
                status=ScheduledJobStatus.PENDING.value,
                attempts=0,
                run_at=to_db_datetime(payload.run_at or now),
                last_error=None,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            # Events reference the job row; no relationship orders the inserts.
            session.flush()
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="enqueued",
                status_from=None,
                status_to=ScheduledJobStatus.PENDING,
                details={"job_type": payload.job_type},
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def claim_due(self, limit: int) -> list[ScheduledJobView]:
        """Atomically claim up to ``limit`` due jobs for this worker.

        One conditional UPDATE selects the oldest due pending rows, moves
        them to processing, bumps ``attempts`` and clears ``last_error``.
        SQLite takes the write lock before the statement reads anything, so
        concurrent claimers are serialised and never see the same row as
        pending; engines with row locks get ``FOR UPDATE SKIP LOCKED`` on
        the subquery instead.
        """

        if limit <= 0:
            return []

        # Blocking: waits out busy_timeout and conflict backoff. Async
        # callers run it through ``asyncio.to_thread``.
        for conflict in range(CLAIM_CONFLICT_RETRIES + 1):
            try:
                return self._claim_due_once(limit)
            except OperationalError as error:
                if "locked" not in str(error).lower() or conflict >= CLAIM_CONFLICT_RETRIES:
                    raise
                logger.warning(
                    "Claim conflict, retrying attempt=%d/%d: %s",
                    conflict + 1,
                    CLAIM_CONFLICT_RETRIES,
                    error,
                )
                time.sleep(CLAIM_CONFLICT_BACKOFF_SECONDS * (conflict + 1))
        return []

    def _claim_due_once(self, limit: int) -> list[ScheduledJobView]:
        now = to_db_datetime(utc_now())
        due_ids = (
            select(_JOBS.c.id)
            .where(
                _JOBS.c.status == ScheduledJobStatus.PENDING.value,
                _JOBS.c.run_at <= now,
            )
            .order_by(_JOBS.c.run_at.asc(), _JOBS.c.created_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        statement = (
            sa_update(_JOBS)
            .where(
                _JOBS.c.id.in_(due_ids),
                _JOBS.c.status == ScheduledJobStatus.PENDING.value,
            )
            .values(
                status=ScheduledJobStatus.PROCESSING.value,
                attempts=_JOBS.c.attempts + 1,
                last_error=None,
                updated_at=now,
            )
            .returning(*_JOBS.c)
        )
        with Session(self.engine) as session:
            rows = session.exec(statement).mappings().all()  # type: ignore[call-overload]
            claimed = sorted(
                (_mapping_to_job_view(row) for row in rows),
                key=lambda job: (job.run_at, job.created_at),
            )
            for job in claimed:
                self._add_event(
                    session=session,
                    job_id=job.job_id,
                    event_type="claimed",
                    status_from=ScheduledJobStatus.PENDING,
                    status_to=ScheduledJobStatus.PROCESSING,
                    details={"attempts": job.attempts},
                )
            session.commit()
        return claimed

    def update(self, job_id: str, changes: ScheduledJobUpdate) -> bool:
        """Apply a partial update by id.

        Returns ``False`` when the row changed concurrently between read and
        write, or when ``changes.claimed_attempts`` no longer matches the
        processing claim on the row (the claim was recovered as stale and
        possibly re-claimed). Status changes outside the state machine raise
        ``InvalidTransitionError``; a requeue must move ``run_at`` forward.
        """

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(ScheduledJobRow).where(ScheduledJobRow.id == job_id),
            ).one_or_none()
            if row is None:
                raise JobNotFoundError(job_id)

            current = ScheduledJobStatus(row.status)
            attempts = row.attempts
            if changes.claimed_attempts is not None and (
                current != ScheduledJobStatus.PROCESSING or attempts != changes.claimed_attempts
            ):
                logger.warning(
                    "Claim lost, update dropped job_id=%s status=%s attempts=%d "
                    "claimed_attempts=%d",
                    job_id,
                    current.value,
                    attempts,
                    changes.claimed_attempts,
                )
                return False
            target = changes.status
            if target is not None and target != current:
                if target not in ALLOWED_UPDATE_TRANSITIONS[current]:
                    raise InvalidTransitionError(
                        f"Job {job_id}: transition {current.value} -> {target.value} "
                        "is not allowed.",
                    )
                if target == ScheduledJobStatus.PENDING:
                    _require_future_run_at(
                        job_id=job_id,
                        previous=to_utc_aware_datetime(row.run_at),
                        requested=changes.run_at,
                    )

            values: dict[str, Any] = {"updated_at": to_db_datetime(now)}
            if target is not None:
                values["status"] = target.value
            if changes.clear_last_error:
                values["last_error"] = None
            elif changes.last_error is not None:
                values["last_error"] = changes.last_error
            if changes.run_at is not None:
                values["run_at"] = to_db_datetime(changes.run_at)

            result = session.exec(
                sa_update(ScheduledJobRow)
                .where(
                    col(ScheduledJobRow.id) == job_id,
                    col(ScheduledJobRow.status) == current.value,
                    col(ScheduledJobRow.attempts) == attempts,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False

            details: dict[str, object] = {"attempts": attempts}
            if changes.run_at is not None:
                details["run_at"] = to_utc_aware_datetime(changes.run_at).isoformat()
            if changes.last_error is not None:
                details["error"] = changes.last_error
            event_type = "updated"
            if target is not None and target != current:
                event_type = _EVENT_BY_STATUS[target]
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=current,
                status_to=target or current,
                details=details,
            )
            session.commit()
            return True

    def recover_stale_processing(self, *, stale_after: timedelta) -> list[ScheduledJobView]:
        """Requeue processing jobs whose owner stopped reporting.

        A worker that dies between claim and update leaves its rows in
        processing forever; once ``updated_at`` is older than ``stale_after``
        they go back to pending for another claim. Attempts are untouched.

        Nothing refreshes ``updated_at`` while a handler runs, so
        ``stale_after`` must exceed the longest handler runtime. A slower
        owner loses its claim: its outcome write is rejected by the
        ``claimed_attempts`` fence in ``update``.
        """

        now = utc_now()
        cutoff = to_db_datetime(now - stale_after)
        recovered_ids: list[str] = []
        with Session(self.engine) as session:
            stale_rows = session.exec(
                select(ScheduledJobRow)
                .where(
                    ScheduledJobRow.status == ScheduledJobStatus.PROCESSING.value,
                    ScheduledJobRow.updated_at < cutoff,
                )
                .order_by(col(ScheduledJobRow.updated_at).asc()),
            ).all()
            for row in stale_rows:
                job_id = row.id
                result = session.exec(
                    sa_update(ScheduledJobRow)
                    .where(
                        col(ScheduledJobRow.id) == job_id,
                        col(ScheduledJobRow.status) == ScheduledJobStatus.PROCESSING.value,
                        col(ScheduledJobRow.updated_at) < cutoff,
                    )
                    .values(
                        status=ScheduledJobStatus.PENDING.value,
                        run_at=to_db_datetime(now),
                        last_error="Recovered stale processing job",
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="stale_recovered",
                    status_from=ScheduledJobStatus.PROCESSING,
                    status_to=ScheduledJobStatus.PENDING,
                    details={"stale_after_seconds": int(stale_after.total_seconds())},
                )
                recovered_ids.append(job_id)
            session.commit()

        recovered = (self.get_job(job_id) for job_id in recovered_ids)
        return [job for job in recovered if job is not None]

    def retry_job(self, *, job_id: str) -> ScheduledJobView:
        """Manual operator requeue for a permanently failed job."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(ScheduledJobRow).where(ScheduledJobRow.id == job_id),
            ).one_or_none()
            if row is None:
                raise JobNotFoundError(job_id)
            if row.status != ScheduledJobStatus.FAILED.value:
                raise InvalidTransitionError(
                    f"Only failed jobs can be retried manually, got {row.status}.",
                )
            result = session.exec(
                sa_update(ScheduledJobRow)
                .where(
                    col(ScheduledJobRow.id) == job_id,
                    col(ScheduledJobRow.status) == ScheduledJobStatus.FAILED.value,
                )
                .values(
                    status=ScheduledJobStatus.PENDING.value,
                    run_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidTransitionError(
                    "Job state changed concurrently while retrying; "
                    f"please retry command (job_id={job_id}).",
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="manual_retry",
                status_from=ScheduledJobStatus.FAILED,
                status_to=ScheduledJobStatus.PENDING,
                details={"attempts": row.attempts},
            )
            session.commit()

        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def delete_finished_before(self, cutoff: datetime) -> int:
        """Delete completed/failed jobs last touched before ``cutoff``."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(ScheduledJobRow).where(
                    col(ScheduledJobRow.status).in_([status.value for status in TERMINAL_STATUSES]),
                    col(ScheduledJobRow.updated_at) < to_db_datetime(cutoff),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def get_job(self, job_id: str) -> ScheduledJobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ScheduledJobRow).where(ScheduledJobRow.id == job_id),
            ).one_or_none()
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        status: ScheduledJobStatus | None = None,
        limit: int = 50,
    ) -> list[ScheduledJobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(ScheduledJobRow)
            if status is not None:
                statement = statement.where(ScheduledJobRow.status == status.value)
            rows = session.exec(
                statement.order_by(col(ScheduledJobRow.created_at).desc()).limit(limit),
            ).all()
            return [_to_job_view(row) for row in rows]

    def count_by_status(self) -> dict[ScheduledJobStatus, int]:
        counts = {status: 0 for status in ScheduledJobStatus}
        with Session(self.engine) as session:
            rows = session.exec(
                select(ScheduledJobRow.status, func.count()).group_by(ScheduledJobRow.status),
            ).all()
        for status, count in rows:
            counts[ScheduledJobStatus(status)] = int(count)
        return counts

    def get_job_details(self, *, job_id: str) -> ScheduledJobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            row = session.exec(
                select(ScheduledJobRow).where(ScheduledJobRow.id == job_id),
            ).one_or_none()
            if row is None:
                return None
            job = _to_job_view(row)
            event_rows = session.exec(
                select(ScheduledJobEventRow)
                .where(ScheduledJobEventRow.job_id == job_id)
                .order_by(col(ScheduledJobEventRow.id).asc()),
            ).all()
            events = [_to_event_view(event_row) for event_row in event_rows]

        return ScheduledJobDetails(job=job, events=events)

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: ScheduledJobStatus | None,
        status_to: ScheduledJobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            ScheduledJobEventRow(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _require_future_run_at(
    *,
    job_id: str,
    previous: datetime,
    requested: datetime | None,
) -> None:
    if requested is None:
        raise InvalidTransitionError(f"Job {job_id}: requeue requires a new run_at.")
    if to_utc_aware_datetime(requested) <= previous:
        raise InvalidTransitionError(
            f"Job {job_id}: requeue run_at {requested.isoformat()} must be later than "
            f"{previous.isoformat()}.",
        )


def _decode_payload(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def _parse_db_datetime(value: datetime | str) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    return to_utc_aware_datetime(value)


def _mapping_to_job_view(row: Any) -> ScheduledJobView:
    return ScheduledJobView(
        job_id=row["id"],
        job_type=row["job_type"],
        booking_id=row["booking_id"],
        payload=_decode_payload(row["payload_json"]),
        status=ScheduledJobStatus(row["status"]),
        attempts=int(row["attempts"]),
        run_at=_parse_db_datetime(row["run_at"]),
        last_error=row["last_error"],
        created_at=_parse_db_datetime(row["created_at"]),
        updated_at=_parse_db_datetime(row["updated_at"]),
    )


def _to_job_view(row: ScheduledJobRow) -> ScheduledJobView:
    return ScheduledJobView(
        job_id=row.id,
        job_type=row.job_type,
        booking_id=row.booking_id,
        payload=_decode_payload(row.payload_json),
        status=ScheduledJobStatus(row.status),
        attempts=row.attempts,
        run_at=to_utc_aware_datetime(row.run_at),
        last_error=row.last_error,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_event_view(row: ScheduledJobEventRow) -> ScheduledJobEventView:
    details: dict[str, Any] = {}
    if row.details_json:
        parsed = json.loads(row.details_json)
        if isinstance(parsed, dict):
            details = parsed
    return ScheduledJobEventView(
        event_id=row.id or 0,
        job_id=row.job_id,
        event_type=row.event_type,
        status_from=ScheduledJobStatus(row.status_from) if row.status_from is not None else None,
        status_to=ScheduledJobStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        details=details,
    )
