from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from media_tasks.orchestrator.errors import InvalidTransitionError, SubmissionRejectedError
from media_tasks.orchestrator.models import ErrorKind, JobChange, JobStatus
from media_tasks.orchestrator.repository import JobRepository
from media_tasks.orchestrator.services import OrchestratorService
from media_tasks.providers.base import ProviderError, SubmitResult
from media_tasks.providers.scripted import ScriptedAdapter

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Task Dispatch"),
]


@pytest.mark.parametrize(
    ("kind", "input_ref", "message"),
    [
        ("dub", "", "input_ref must not be empty"),
        ("dub", "   ", "input_ref must not be empty"),
        ("resize", "/videos/a.mp4", "Unknown job kind"),
    ],
)
def test_invalid_submissions_are_rejected_without_a_record(
    service: OrchestratorService,
    repository: JobRepository,
    adapter: ScriptedAdapter,
    kind: str,
    input_ref: str,
    message: str,
) -> None:
    with pytest.raises(SubmissionRejectedError, match=message) as error:
        service.submit("alice", kind, input_ref)

    assert error.value.kind == ErrorKind.INVALID_INPUT
    assert repository.list_jobs() == []
    assert adapter.calls == []


def test_adapter_input_validation_rejects_synchronously(
    service: OrchestratorService,
    repository: JobRepository,
    adapter: ScriptedAdapter,
) -> None:
    adapter.rejected_inputs["ftp://nope"] = "Input must be an http(s) URL"

    with pytest.raises(SubmissionRejectedError, match="http"):
        service.submit("alice", "dub", "ftp://nope")

    assert repository.list_jobs() == []
    assert adapter.calls_to("submit") == []


def test_successful_submit_moves_job_to_processing(
    service: OrchestratorService,
    adapter: ScriptedAdapter,
) -> None:
    changes: list[JobChange] = []
    service.subscribe("alice", changes.append)
    adapter.queue_submit(SubmitResult(remote_handle="dub-123", expected_duration_seconds=90))

    job_id = service.submit("alice", "dub", "/videos/a.mp4")

    job = service.repository.get(job_id)
    assert job.status == JobStatus.PROCESSING
    assert job.remote_handle == "dub-123"
    assert job.expected_duration_seconds == 90
    assert [change.status for change in changes] == [JobStatus.PROCESSING]
    assert service.read(job_id, "alice").to_dict()["status"] == "processing"


def test_rate_limited_submit_is_parked_for_retry(
    service: OrchestratorService,
    adapter: ScriptedAdapter,
    clock,
) -> None:
    changes: list[JobChange] = []
    service.subscribe("alice", changes.append)
    adapter.queue_submit(ProviderError("HTTP 429: Too Many Requests", status_code=429))

    job_id = service.submit("alice", "dub", "/videos/a.mp4")

    job = service.repository.get(job_id)
    assert job.status == JobStatus.QUEUED_RETRY
    assert job.retry_count == 0
    assert job.error is not None
    assert job.error.kind == ErrorKind.RATE_LIMIT
    backoff = timedelta(seconds=service.settings.sweeper.retry_base_seconds)
    assert job.run_after == clock() + backoff
    assert not any(change.terminal for change in changes)
    assert [(change.status, change.error_kind) for change in changes] == [
        (JobStatus.PROCESSING, None),
    ]
    public = service.read(job_id, "alice")
    assert public.status == JobStatus.PROCESSING
    assert public.error_kind is None
    assert public.retry_count == 0


def test_auth_failure_fails_job_with_terminal_notification(
    service: OrchestratorService,
    adapter: ScriptedAdapter,
) -> None:
    changes: list[JobChange] = []
    service.subscribe("alice", changes.append)
    adapter.queue_submit(ProviderError("ElevenLabs API key not configured"))

    job_id = service.submit("alice", "dub", "/videos/a.mp4")

    job = service.repository.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error is not None
    assert job.error.kind == ErrorKind.AUTH_CONFIG
    assert job.error.message == "ElevenLabs API key not configured"
    assert job.completed_at is not None
    assert [change.terminal for change in changes] == [True]


def test_retryable_failure_without_retry_budget_fails_immediately(
    service: OrchestratorService,
    adapter: ScriptedAdapter,
) -> None:
    adapter.queue_submit(ProviderError("HTTP 503", status_code=503))

    job_id = service.submit("alice", "watermark-remove", "https://example.com/v.mp4")

    job = service.repository.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error is not None
    assert job.error.kind == ErrorKind.TRANSIENT_NETWORK


def test_inline_result_completes_job_right_after_dispatch(
    service: OrchestratorService,
    adapter: ScriptedAdapter,
) -> None:
    changes: list[JobChange] = []
    service.subscribe("alice", changes.append)
    adapter.queue_submit(SubmitResult(remote_handle="g-1", result_ref="/results/g-1.txt"))

    job_id = service.submit("alice", "dub", "/videos/a.mp4")

    job = service.repository.get(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.result_ref == "/results/g-1.txt"
    assert [change.status for change in changes] == [JobStatus.PROCESSING, JobStatus.COMPLETED]


def test_unexpected_adapter_exception_is_classified_unknown(
    service: OrchestratorService,
    adapter: ScriptedAdapter,
) -> None:
    adapter.queue_submit(KeyError("dubbing_id"))

    job_id = service.submit("alice", "dub", "/videos/a.mp4")

    job = service.repository.get(job_id)
    assert job.status == JobStatus.QUEUED_RETRY
    assert job.error is not None
    assert job.error.kind == ErrorKind.UNKNOWN
    assert job.unknown_error_count == 1


def test_cancel_processing_job_forwards_remote_cancel(
    service: OrchestratorService,
    adapter: ScriptedAdapter,
) -> None:
    changes: list[JobChange] = []
    job_id = service.submit("alice", "dub", "/videos/a.mp4")
    handle = service.repository.get(job_id).remote_handle
    service.subscribe("alice", changes.append)

    public = service.cancel(job_id, "alice")

    assert public.status == JobStatus.FAILED
    assert public.error_kind == ErrorKind.CANCELLED
    assert public.error_message == "Cancelled by request"
    assert adapter.cancelled == [handle]
    assert [change.terminal for change in changes] == [True]
    events = service.details(job_id).events
    assert events[-1].event_type == "cancelled"


def test_cancel_parked_job_and_reject_cancel_of_terminal_job(
    service: OrchestratorService,
    adapter: ScriptedAdapter,
) -> None:
    adapter.queue_submit(ProviderError("HTTP 429", status_code=429))
    job_id = service.submit("alice", "dub", "/videos/a.mp4")

    service.cancel(job_id, "alice")

    assert adapter.cancelled == []
    with pytest.raises(InvalidTransitionError):
        service.cancel(job_id, "alice")


def test_remote_cancel_errors_do_not_block_cancellation(
    service: OrchestratorService,
    adapter: ScriptedAdapter,
    monkeypatch,
) -> None:
    job_id = service.submit("alice", "dub", "/videos/a.mp4")

    def _broken_cancel(self, kind: str, remote_handle: str) -> bool:
        raise ProviderError("HTTP 500", status_code=500)

    monkeypatch.setattr(ScriptedAdapter, "cancel", _broken_cancel)

    assert service.cancel(job_id).status == JobStatus.FAILED
