from pathlib import Path

import allure
from sqlalchemy import text

from media_tasks.orchestrator.repository import JobRepository

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Durable Job Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "migrations.db")
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalars()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table' AND name IN ('jobs', 'job_events')
                ORDER BY name
                """,
            ),
        ).scalars()
        indexes = connection.execute(
            text("SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = 'jobs'"),
        ).scalars()

        assert list(version) == ["20261019_0001"]
        assert list(tables) == ["job_events", "jobs"]
        assert "uq_jobs_kind_handle_processing" in set(indexes)
    repository.close()
