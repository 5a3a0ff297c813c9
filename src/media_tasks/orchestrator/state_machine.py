"""Job transition graph, invariants, and patch builders."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime

from media_tasks.orchestrator.errors import InvalidTransitionError, InvariantViolationError
from media_tasks.orchestrator.models import ALLOWED_TRANSITIONS, JobError, JobStatus


@dataclass(slots=True)
class JobPatch:
    """One guarded transition: target status, column values, audit event."""

    status: JobStatus
    values: dict[str, object]
    event_type: str
    details: dict[str, object] = field(default_factory=dict)
    notify: bool = True


def ensure_transition_allowed(
    job_id: str,
    *,
    status_from: JobStatus,
    status_to: JobStatus,
) -> None:
    if status_to not in ALLOWED_TRANSITIONS[status_from]:
        raise InvalidTransitionError(job_id, status_from=status_from, status_to=status_to)


def validate_invariants(job_id: str, fields: Mapping[str, object]) -> None:
    """Raise if a (merged) job row would break the record invariants."""

    status = JobStatus(str(fields["status"]))
    has_result = fields.get("result_ref") is not None
    has_error = fields.get("error_kind") is not None or fields.get("error_message") is not None

    if has_result and has_error:
        raise InvariantViolationError(f"Job {job_id} cannot carry both result and error.")
    if status == JobStatus.COMPLETED and not has_result:
        raise InvariantViolationError(f"Completed job {job_id} must have result_ref.")
    if status in {JobStatus.FAILED, JobStatus.QUEUED_RETRY}:
        if fields.get("error_kind") is None or not fields.get("error_message"):
            raise InvariantViolationError(
                f"Job {job_id} in {status.value} must carry error kind and message.",
            )
        if has_result:
            raise InvariantViolationError(f"Job {job_id} in {status.value} has result_ref.")
    if status in {JobStatus.PENDING, JobStatus.PROCESSING} and (has_result or has_error):
        raise InvariantViolationError(
            f"Job {job_id} in {status.value} must not carry result or error.",
        )
    if status == JobStatus.PROCESSING and not fields.get("remote_handle"):
        raise InvariantViolationError(f"Processing job {job_id} must have remote_handle.")

    retry_count = int(fields.get("retry_count") or 0)
    max_retries = int(fields.get("max_retries") or 0)
    if retry_count < 0 or retry_count > max_retries:
        raise InvariantViolationError(
            f"Job {job_id} retry_count={retry_count} outside 0..{max_retries}.",
        )
    if status.is_terminal and fields.get("completed_at") is None:
        raise InvariantViolationError(f"Terminal job {job_id} must have completed_at.")


def dispatched_patch(
    *,
    remote_handle: str,
    now: datetime,
    expected_duration_seconds: int | None,
) -> JobPatch:
    return JobPatch(
        status=JobStatus.PROCESSING,
        values={
            "remote_handle": remote_handle,
            "dispatched_at": now,
            "expected_duration_seconds": expected_duration_seconds,
            "progress": None,
            "progress_phase": None,
            "error_kind": None,
            "error_message": None,
            "run_after": None,
        },
        event_type="dispatched",
        details={"remote_handle": remote_handle},
    )


def progress_patch(*, progress: int | None, phase: str | None, notify: bool) -> JobPatch:
    return JobPatch(
        status=JobStatus.PROCESSING,
        values={"progress": progress, "progress_phase": phase},
        event_type="progress",
        details={"progress": progress, "phase": phase},
        notify=notify,
    )


def completed_patch(*, result_ref: str, now: datetime) -> JobPatch:
    return JobPatch(
        status=JobStatus.COMPLETED,
        values={
            "result_ref": result_ref,
            "progress": 100,
            "error_kind": None,
            "error_message": None,
            "run_after": None,
            "completed_at": now,
        },
        event_type="completed",
        details={"result_ref": result_ref},
    )


def requeue_patch(
    *,
    error: JobError,
    run_after: datetime,
    unknown_error_count: int,
    retry_count: int | None = None,
) -> JobPatch:
    values: dict[str, object] = {
        "error_kind": error.kind.value,
        "error_message": error.message,
        "run_after": run_after,
        "unknown_error_count": unknown_error_count,
        "progress": None,
        "progress_phase": None,
    }
    if retry_count is not None:
        values["retry_count"] = retry_count
    return JobPatch(
        status=JobStatus.QUEUED_RETRY,
        values=values,
        event_type="retry_queued",
        details={"error_kind": error.kind.value, "run_after": run_after.isoformat()},
    )


def claim_patch(*, retry_count: int, lease_until: datetime) -> JobPatch:
    """Sweeper claim of a parked job before it is re-submitted."""

    return JobPatch(
        status=JobStatus.QUEUED_RETRY,
        values={"retry_count": retry_count, "run_after": lease_until},
        event_type="redispatch_claimed",
        details={"retry_count": retry_count},
        notify=False,
    )


def failed_patch(
    *,
    error: JobError,
    now: datetime,
    unknown_error_count: int | None = None,
) -> JobPatch:
    values: dict[str, object] = {
        "error_kind": error.kind.value,
        "error_message": error.message,
        "result_ref": None,
        "run_after": None,
        "completed_at": now,
    }
    if unknown_error_count is not None:
        values["unknown_error_count"] = unknown_error_count
    return JobPatch(
        status=JobStatus.FAILED,
        values=values,
        event_type="failed",
        details={"error_kind": error.kind.value, "error_message": error.message},
    )
