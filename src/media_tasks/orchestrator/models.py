"""Domain models for the job orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    QUEUED_RETRY = "queued_retry"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def public(self) -> JobStatus:
        """Status shown to owners; a parked retry still reads as processing."""

        return JobStatus.PROCESSING if self == JobStatus.QUEUED_RETRY else self


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset(
        {JobStatus.PROCESSING, JobStatus.QUEUED_RETRY, JobStatus.FAILED},
    ),
    JobStatus.PROCESSING: frozenset(
        {
            JobStatus.PROCESSING,
            JobStatus.COMPLETED,
            JobStatus.QUEUED_RETRY,
            JobStatus.FAILED,
        },
    ),
    JobStatus.QUEUED_RETRY: frozenset(
        {JobStatus.QUEUED_RETRY, JobStatus.PROCESSING, JobStatus.FAILED},
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class ErrorKind(str, Enum):
    """Normalized failure taxonomy used by retry policy."""

    RATE_LIMIT = "rate_limit"
    AUTH_CONFIG = "auth_config"
    TRANSIENT_NETWORK = "transient_network"
    INVALID_INPUT = "invalid_input"
    PROVIDER_FATAL = "provider_fatal"
    UNKNOWN = "unknown"
    CANCELLED = "cancelled"


class RemoteState(str, Enum):
    """Provider-side task state as reported by an adapter poll."""

    PENDING = "remote_pending"
    RUNNING = "remote_running"
    DONE = "remote_done"
    FAILED = "remote_failed"


@dataclass(slots=True, frozen=True)
class JobError:
    """Machine kind plus human-readable message."""

    kind: ErrorKind
    message: str


@dataclass(slots=True)
class JobCreate:
    """Input payload for creating a job record."""

    owner_id: str
    kind: str
    input_ref: str
    max_retries: int = 3
    job_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Full job record as read from the store."""

    job_id: str
    owner_id: str
    kind: str
    input_ref: str
    status: JobStatus
    version: int
    remote_handle: str | None
    progress: int | None
    progress_phase: str | None
    result_ref: str | None
    error: JobError | None
    retry_count: int
    max_retries: int
    unknown_error_count: int
    expected_duration_seconds: int | None
    run_after: datetime | None
    dispatched_at: datetime | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None

    @property
    def public_error(self) -> JobError | None:
        return self.error if self.status == JobStatus.FAILED else None

    def to_public(self) -> JobPublicView:
        """Projection safe to hand to callers (no input or provider internals)."""

        error = self.public_error
        return JobPublicView(
            job_id=self.job_id,
            kind=self.kind,
            status=self.status.public,
            progress=self.progress,
            progress_phase=self.progress_phase,
            result_ref=self.result_ref,
            error_kind=error.kind if error is not None else None,
            error_message=error.message if error is not None else None,
            retry_count=self.retry_count,
            max_retries=self.max_retries,
            created_at=self.created_at,
            updated_at=self.updated_at,
            completed_at=self.completed_at,
        )


@dataclass(slots=True)
class JobPublicView:
    """Read-only job projection exposed to collaborators."""

    job_id: str
    kind: str
    status: JobStatus
    progress: int | None
    progress_phase: str | None
    result_ref: str | None
    error_kind: ErrorKind | None
    error_message: str | None
    retry_count: int
    max_retries: int
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None

    def to_dict(self) -> dict[str, object]:
        return {
            "job_id": self.job_id,
            "kind": self.kind,
            "status": self.status.value,
            "progress": self.progress,
            "progress_phase": self.progress_phase,
            "result_ref": self.result_ref,
            "error_kind": self.error_kind.value if self.error_kind is not None else None,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at is not None else None
            ),
        }


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job with its event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(slots=True, frozen=True)
class JobChange:
    """Notification payload published after a committed transition."""

    job_id: str
    owner_id: str
    status: JobStatus
    version: int = 0
    progress: int | None = None
    progress_phase: str | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_job(cls, job: JobView) -> JobChange:
        error = job.public_error
        return cls(
            job_id=job.job_id,
            owner_id=job.owner_id,
            status=job.status.public,
            version=job.version,
            progress=job.progress,
            progress_phase=job.progress_phase,
            error_kind=error.kind if error is not None else None,
            error_message=error.message if error is not None else None,
        )
