from pathlib import Path

import allure
from sqlalchemy import text

from tee_time_worker.jobs.repository import ScheduledJobRepository

pytestmark = [
    allure.epic("Scheduled Jobs"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = ScheduledJobRepository(tmp_path / "migrations.db")
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version"),
        ).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table'
                  AND name IN ('scheduled_jobs', 'scheduled_job_events')
                ORDER BY name
                """,
            ),
        ).scalars().all()
        indexes = connection.execute(
            text(
                "SELECT name FROM sqlite_master "
                "WHERE type = 'index' AND tbl_name = 'scheduled_jobs'",
            ),
        ).scalars().all()
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()

    assert version == "20261018_0001"
    assert tables == ["scheduled_job_events", "scheduled_jobs"]
    assert "idx_scheduled_jobs_due" in indexes
    assert str(journal_mode).lower() == "wal"
    repository.close()
