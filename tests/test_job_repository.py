from __future__ import annotations

import threading
from datetime import timedelta
import allure
import pytest

from media_tasks.orchestrator.errors import (
    InvalidTransitionError,
    InvariantViolationError,
    JobConflictError,
    JobNotFoundError,
)
from media_tasks.orchestrator.models import ErrorKind, JobCreate, JobError, JobStatus
from media_tasks.orchestrator.repository import JobRepository
from media_tasks.orchestrator.state_machine import (
    JobPatch,
    claim_patch,
    completed_patch,
    dispatched_patch,
    failed_patch,
    progress_patch,
    requeue_patch,
)
from media_tasks.storage.common import utc_now

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Job Store"),
]


def _create(repository: JobRepository, *, owner_id: str = "alice", max_retries: int = 3):
    return repository.create(
        JobCreate(
            owner_id=owner_id,
            kind="dub",
            input_ref="/videos/a.mp4",
            max_retries=max_retries,
        ),
    )


def _dispatch(repository: JobRepository, job, handle: str = "remote-1"):
    return repository.update(
        job.job_id,
        dispatched_patch(remote_handle=handle, now=utc_now(), expected_duration_seconds=30),
        expected_status=job.status,
        expected_version=job.version,
    )


def test_create_and_get_roundtrip(repository: JobRepository) -> None:
    job = _create(repository)

    loaded = repository.get(job.job_id)
    assert loaded.status == JobStatus.PENDING
    assert loaded.version == 1
    assert loaded.retry_count == 0
    assert loaded.max_retries == 3
    assert loaded.result_ref is None
    assert loaded.error is None
    assert loaded.created_at.tzinfo is not None


def test_get_hides_jobs_of_other_owners(repository: JobRepository) -> None:
    job = _create(repository, owner_id="alice")

    with pytest.raises(JobNotFoundError):
        repository.get(job.job_id, owner_id="bob")
    with pytest.raises(JobNotFoundError):
        repository.get("missing-job")


def test_update_bumps_version_and_records_event(repository: JobRepository) -> None:
    job = _create(repository)

    processing = _dispatch(repository, job)

    assert processing.status == JobStatus.PROCESSING
    assert processing.version == 2
    assert processing.remote_handle == "remote-1"
    assert processing.expected_duration_seconds == 30
    assert processing.dispatched_at is not None

    details = repository.get_job_details(job.job_id)
    assert [event.event_type for event in details.events] == ["created", "dispatched"]
    assert details.events[1].status_from == JobStatus.PENDING
    assert details.events[1].status_to == JobStatus.PROCESSING
    assert details.events[1].details == {"remote_handle": "remote-1"}


def test_update_with_stale_status_raises_conflict(repository: JobRepository) -> None:
    job = _create(repository)
    _dispatch(repository, job)

    with pytest.raises(JobConflictError) as error:
        repository.update(
            job.job_id,
            failed_patch(error=JobError(ErrorKind.CANCELLED, "stop"), now=utc_now()),
            expected_status=JobStatus.PENDING,
        )

    assert error.value.current_status == JobStatus.PROCESSING
    assert repository.get(job.job_id).status == JobStatus.PROCESSING


def test_update_with_stale_version_raises_conflict(repository: JobRepository) -> None:
    job = _create(repository)
    processing = _dispatch(repository, job)
    repository.update(
        job.job_id,
        progress_patch(progress=10, phase="detecting", notify=True),
        expected_status=JobStatus.PROCESSING,
        expected_version=processing.version,
    )

    with pytest.raises(JobConflictError):
        repository.update(
            job.job_id,
            progress_patch(progress=20, phase="transcribing", notify=True),
            expected_status=JobStatus.PROCESSING,
            expected_version=processing.version,
        )
    assert repository.get(job.job_id).progress == 10


def test_terminal_jobs_have_no_outgoing_transitions(repository: JobRepository) -> None:
    job = _create(repository)
    processing = _dispatch(repository, job)
    completed = repository.update(
        job.job_id,
        completed_patch(result_ref="/results/a.mp3", now=utc_now()),
        expected_status=processing.status,
    )
    assert completed.completed_at is not None
    assert completed.progress == 100

    with pytest.raises(InvalidTransitionError):
        repository.update(
            job.job_id,
            failed_patch(error=JobError(ErrorKind.CANCELLED, "late"), now=utc_now()),
            expected_status=JobStatus.COMPLETED,
        )
    with pytest.raises(InvalidTransitionError):
        repository.update(
            job.job_id,
            completed_patch(result_ref="/results/b.mp3", now=utc_now()),
            expected_status=JobStatus.PENDING,
        )


def test_invariants_are_checked_before_writing(repository: JobRepository) -> None:
    job = _create(repository, max_retries=1)

    with pytest.raises(InvariantViolationError):
        repository.update(
            job.job_id,
            JobPatch(status=JobStatus.FAILED, values={"completed_at": utc_now()}, event_type="bad"),
            expected_status=JobStatus.PENDING,
        )

    parked = repository.update(
        job.job_id,
        requeue_patch(
            error=JobError(ErrorKind.RATE_LIMIT, "HTTP 429"),
            run_after=utc_now(),
            unknown_error_count=0,
        ),
        expected_status=JobStatus.PENDING,
    )
    assert parked.error == JobError(ErrorKind.RATE_LIMIT, "HTTP 429")
    assert parked.result_ref is None

    with pytest.raises(InvariantViolationError):
        repository.update(
            job.job_id,
            claim_patch(retry_count=2, lease_until=utc_now()),
            expected_status=JobStatus.QUEUED_RETRY,
        )
    assert repository.get(job.job_id).retry_count == 0


def test_remote_handle_is_unique_among_processing_jobs_of_a_kind(
    repository: JobRepository,
) -> None:
    first = _create(repository)
    second = _create(repository)
    _dispatch(repository, first, handle="shared")

    with pytest.raises(InvariantViolationError):
        _dispatch(repository, second, handle="shared")
    assert repository.get(second.job_id).status == JobStatus.PENDING


def test_list_by_status_filters_due_jobs(repository: JobRepository) -> None:
    now = utc_now()
    due = _create(repository)
    later = _create(repository)
    for job, run_after in ((due, now - timedelta(seconds=1)), (later, now + timedelta(hours=1))):
        repository.update(
            job.job_id,
            requeue_patch(
                error=JobError(ErrorKind.TRANSIENT_NETWORK, "HTTP 503"),
                run_after=run_after,
                unknown_error_count=0,
            ),
            expected_status=JobStatus.PENDING,
        )

    parked = repository.list_by_status(JobStatus.QUEUED_RETRY)
    ready = repository.list_by_status(JobStatus.QUEUED_RETRY, due_before=now)

    assert {job.job_id for job in parked} == {due.job_id, later.job_id}
    assert [job.job_id for job in ready] == [due.job_id]


def test_list_jobs_filters_by_owner_and_status(repository: JobRepository) -> None:
    first = _create(repository, owner_id="alice")
    _create(repository, owner_id="bob")
    _dispatch(repository, first)

    assert [job.job_id for job in repository.list_jobs(owner_id="alice")] == [first.job_id]
    assert len(repository.list_jobs(status=JobStatus.PENDING)) == 1
    assert len(repository.list_jobs()) == 2


def test_concurrent_writers_never_lose_updates(repository: JobRepository) -> None:
    job = _create(repository)
    processing = _dispatch(repository, job)
    start = threading.Event()
    outcomes: list[str] = []
    lock = threading.Lock()

    def _writer(index: int) -> None:
        local = JobRepository(repository.db_path, busy_timeout_ms=10_000)
        try:
            start.wait(timeout=5)
            local.update(
                job.job_id,
                progress_patch(progress=index, phase=f"phase-{index}", notify=False),
                expected_status=JobStatus.PROCESSING,
                expected_version=processing.version,
            )
            result = "ok"
        except JobConflictError:
            result = "conflict"
        finally:
            local.close()
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=_writer, args=(index,)) for index in range(1, 9)]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=30)

    assert outcomes.count("ok") == 1
    assert outcomes.count("conflict") == 7
    final = repository.get(job.job_id)
    assert final.version == processing.version + 1
    events = repository.get_job_details(job.job_id).events
    assert [event.event_type for event in events].count("progress") == 1
