"""SQLModel ORM tables for the scheduled job store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class ScheduledJobRow(SQLModel, table=True):
    __tablename__ = "scheduled_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_scheduled_jobs_due", "status", "run_at"),)

    id: str = Field(primary_key=True)
    job_type: str = Field(index=True)
    booking_id: str | None = Field(default=None, index=True)
    payload_json: str | None = Field(default=None, sa_column=Column(Text))
    status: str
    attempts: int = Field(default=0)
    run_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ScheduledJobEventRow(SQLModel, table=True):
    __tablename__ = "scheduled_job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_scheduled_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("scheduled_jobs.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
