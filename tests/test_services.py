from __future__ import annotations

import threading
import time

import allure
import pytest

from media_tasks.config import Settings
from media_tasks.orchestrator.errors import JobNotFoundError
from media_tasks.orchestrator.models import JobChange, JobStatus, RemoteState
from media_tasks.orchestrator.repository import JobRepository
from media_tasks.orchestrator.runtime import open_service
from media_tasks.orchestrator.services import OrchestratorService
from media_tasks.providers.base import PollResult
from media_tasks.providers.scripted import ScriptedAdapter

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Service Facade"),
]


class _ClosingAdapter(ScriptedAdapter):
    __slots__ = ("closed",)

    def __init__(self) -> None:
        super().__init__()
        self.closed = 0

    def close(self) -> None:
        self.closed += 1


def test_read_is_owner_scoped(service: OrchestratorService) -> None:
    job_id = service.submit("alice", "dub", "clip.mp4")

    view = service.read(job_id, "alice")

    assert view.status == JobStatus.PROCESSING
    with pytest.raises(JobNotFoundError):
        service.read(job_id, "bob")


def test_reconcile_returns_only_owner_jobs(service: OrchestratorService) -> None:
    first = service.submit("alice", "dub", "a.mp4")
    service.submit("bob", "dub", "b.mp4")
    second = service.submit("alice", "dub", "sync:c")

    jobs = service.reconcile("alice")

    assert {job.job_id for job in jobs} == {first, second}
    assert {job.status for job in jobs} == {JobStatus.PROCESSING, JobStatus.COMPLETED}


def test_parked_retry_reads_as_processing_for_owner(service: OrchestratorService) -> None:
    job_id = service.submit("alice", "dub", "fail:429:slow down")

    public = service.read(job_id, "alice")
    internal = service.repository.get(job_id)

    assert internal.status == JobStatus.QUEUED_RETRY
    assert internal.error is not None
    assert public.status == JobStatus.PROCESSING
    assert public.error_kind is None
    assert public.error_message is None
    assert [job.status for job in service.reconcile("alice")] == [JobStatus.PROCESSING]
    assert [job.status for job in service.list_jobs(status=JobStatus.QUEUED_RETRY)] == [
        JobStatus.QUEUED_RETRY,
    ]


def test_unsubscribed_handler_gets_nothing(service: OrchestratorService) -> None:
    seen = []
    subscription = service.subscribe("alice", seen.append)
    subscription.unsubscribe()

    service.submit("alice", "dub", "clip.mp4")

    assert seen == []


def test_close_releases_each_adapter_once(
    repository: JobRepository,
    settings: Settings,
) -> None:
    shared = _ClosingAdapter()
    service = OrchestratorService(
        repository=repository,
        settings=settings,
        adapters={kind: shared for kind in settings.kinds},
    )

    service.close()

    assert shared.closed == 1


def test_open_service_migrates_and_closes(settings: Settings) -> None:
    adapter = _ClosingAdapter()

    with open_service(settings, adapters={kind: adapter for kind in settings.kinds}) as service:
        job_id = service.submit("alice", "watermark-remove", "https://cdn.test/v.mp4")
        assert service.read(job_id, "alice").status == JobStatus.PROCESSING

    assert adapter.closed == 1
    assert settings.db_path.exists()


def test_notifications_follow_commit_order_under_a_racing_poller(
    service: OrchestratorService,
    adapter: ScriptedAdapter,
    clock,
) -> None:
    adapter.queue_poll(PollResult(state=RemoteState.DONE, result_ref="/results/a.mp3"))
    poller_thread = threading.Thread(target=lambda: service.poll_once(clock()))
    slow: list[JobStatus] = []
    other: list[JobStatus] = []

    def _slow_handler(change: JobChange) -> None:
        if change.status == JobStatus.PROCESSING and not slow:
            poller_thread.start()
            time.sleep(0.3)
        slow.append(change.status)

    service.subscribe("alice", _slow_handler)
    service.subscribe("alice", lambda change: other.append(change.status))

    service.submit("alice", "dub", "clip.mp4")
    poller_thread.join(timeout=5)

    assert slow == [JobStatus.PROCESSING, JobStatus.COMPLETED]
    assert other in (
        [JobStatus.PROCESSING, JobStatus.COMPLETED],
        [JobStatus.COMPLETED],
    )
