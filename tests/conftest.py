"""Shared test fixtures."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from media_tasks.config import KindSettings, Settings
from media_tasks.orchestrator.notifier import ChangeNotifier
from media_tasks.orchestrator.repository import JobRepository
from media_tasks.orchestrator.services import OrchestratorService
from media_tasks.providers.scripted import ScriptedAdapter
from media_tasks.storage.common import utc_now


@dataclass(slots=True)
class FakeClock:
    """Manually advanced UTC clock."""

    current: datetime

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(current=utc_now().replace(microsecond=0))


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "jobs.db",
        results_dir=tmp_path / "results",
        kinds={
            "dub": KindSettings(
                kind="dub",
                adapter="scripted",
                poll_interval_seconds=5.0,
                timeout_seconds=600,
                max_retries=3,
            ),
            "watermark-remove": KindSettings(
                kind="watermark-remove",
                adapter="scripted",
                poll_interval_seconds=2.0,
                timeout_seconds=300,
                max_retries=0,
            ),
        },
    )


@pytest.fixture()
def repository(settings: Settings):
    repo = JobRepository(settings.db_path)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def adapter() -> ScriptedAdapter:
    return ScriptedAdapter()


@pytest.fixture()
def notifier() -> ChangeNotifier:
    return ChangeNotifier()


@pytest.fixture()
def service(
    repository: JobRepository,
    settings: Settings,
    adapter: ScriptedAdapter,
    notifier: ChangeNotifier,
    clock: FakeClock,
) -> OrchestratorService:
    return OrchestratorService(
        repository=repository,
        settings=settings,
        adapters={kind: adapter for kind in settings.kinds},
        notifier=notifier,
        clock=clock,
    )
