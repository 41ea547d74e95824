"""Create scheduled job queue and its event trail."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "scheduled_jobs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("job_type", sa.String(), nullable=False),
        sa.Column("booking_id", sa.String(), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_scheduled_jobs_job_type", "scheduled_jobs", ["job_type"], unique=False)
    op.create_index(
        "ix_scheduled_jobs_booking_id",
        "scheduled_jobs",
        ["booking_id"],
        unique=False,
    )
    op.create_index(
        "idx_scheduled_jobs_due",
        "scheduled_jobs",
        ["status", "run_at"],
        unique=False,
    )

    op.create_table(
        "scheduled_job_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["scheduled_jobs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_scheduled_job_events_job_id",
        "scheduled_job_events",
        ["job_id"],
        unique=False,
    )
    op.create_index(
        "idx_scheduled_job_events_job_time",
        "scheduled_job_events",
        ["job_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_scheduled_job_events_job_time", table_name="scheduled_job_events")
    op.drop_index("ix_scheduled_job_events_job_id", table_name="scheduled_job_events")
    op.drop_table("scheduled_job_events")
    op.drop_index("idx_scheduled_jobs_due", table_name="scheduled_jobs")
    op.drop_index("ix_scheduled_jobs_booking_id", table_name="scheduled_jobs")
    op.drop_index("ix_scheduled_jobs_job_type", table_name="scheduled_jobs")
    op.drop_table("scheduled_jobs")
