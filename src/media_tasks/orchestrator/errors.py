"""Exception hierarchy raised by the orchestrator core."""

from __future__ import annotations

from media_tasks.orchestrator.models import ErrorKind, JobStatus


class OrchestratorError(RuntimeError):
    """Base class for orchestrator failures."""


class JobNotFoundError(OrchestratorError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobConflictError(OrchestratorError):
    """Stored status/version no longer matches what the writer expected."""

    def __init__(
        self,
        job_id: str,
        *,
        expected_status: JobStatus,
        current_status: JobStatus,
    ) -> None:
        super().__init__(
            f"Job state changed concurrently (job_id={job_id}, "
            f"expected={expected_status.value}, current={current_status.value}).",
        )
        self.job_id = job_id
        self.expected_status = expected_status
        self.current_status = current_status


class InvalidTransitionError(OrchestratorError):
    def __init__(self, job_id: str, *, status_from: JobStatus, status_to: JobStatus) -> None:
        super().__init__(
            f"Transition {status_from.value} -> {status_to.value} is not allowed "
            f"(job_id={job_id}).",
        )
        self.job_id = job_id
        self.status_from = status_from
        self.status_to = status_to


class InvariantViolationError(OrchestratorError):
    """A write would leave the job record in an inconsistent state."""


class SubmissionRejectedError(OrchestratorError):
    """Synchronous rejection of a submission; no job record is created."""

    def __init__(self, message: str, *, kind: ErrorKind = ErrorKind.INVALID_INPUT) -> None:
        super().__init__(message)
        self.kind = kind
