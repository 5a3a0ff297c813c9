"""Durable job store with guarded (compare-and-set) transitions."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from media_tasks.orchestrator.errors import (
    InvariantViolationError,
    JobConflictError,
    JobNotFoundError,
)
from media_tasks.orchestrator.models import (
    ErrorKind,
    JobCreate,
    JobDetails,
    JobError,
    JobEventView,
    JobStatus,
    JobView,
)
from media_tasks.orchestrator.state_machine import (
    JobPatch,
    ensure_transition_allowed,
    validate_invariants,
)
from media_tasks.storage.alembic_runner import upgrade_head
from media_tasks.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from media_tasks.storage.sqlmodel_models import Job, JobEvent

logger = logging.getLogger(__name__)

_JOB_COLUMNS = (
    "status",
    "remote_handle",
    "progress",
    "progress_phase",
    "result_ref",
    "error_kind",
    "error_message",
    "retry_count",
    "max_retries",
    "unknown_error_count",
    "completed_at",
)


class JobRepository:
    """Job persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create(self, payload: JobCreate) -> JobView:
        """Insert a new job in ``pending``."""

        now = to_db_datetime(utc_now())
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            row = Job(
                job_id=job_id,
                owner_id=payload.owner_id,
                kind=payload.kind,
                input_ref=payload.input_ref,
                status=JobStatus.PENDING.value,
                version=1,
                retry_count=0,
                max_retries=payload.max_retries,
                unknown_error_count=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            _add_event(
                session=session,
                job_id=job_id,
                event_type="created",
                status_from=None,
                status_to=JobStatus.PENDING,
                details={"kind": payload.kind, "max_retries": payload.max_retries},
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get(self, job_id: str, *, owner_id: str | None = None) -> JobView:
        """Read one job; a foreign owner sees it as missing."""

        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
        if row is None or (owner_id is not None and row.owner_id != owner_id):
            raise JobNotFoundError(job_id)
        return _to_job_view(row)

    def update(
        self,
        job_id: str,
        patch: JobPatch,
        *,
        expected_status: JobStatus,
        expected_version: int | None = None,
    ) -> JobView:
        """Apply ``patch`` only if the row still has the expected status/version."""

        ensure_transition_allowed(job_id, status_from=expected_status, status_to=patch.status)
        now = utc_now()

        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if row is None:
                raise JobNotFoundError(job_id)
            current_status = JobStatus(row.status)
            if current_status != expected_status or (
                expected_version is not None and row.version != expected_version
            ):
                raise JobConflictError(
                    job_id,
                    expected_status=expected_status,
                    current_status=current_status,
                )

            merged: dict[str, object] = {name: getattr(row, name) for name in _JOB_COLUMNS}
            merged.update(patch.values)
            merged["status"] = patch.status.value
            validate_invariants(job_id, merged)

            values = {
                key: to_db_datetime(value) if isinstance(value, datetime) else value
                for key, value in patch.values.items()
            }
            statement = sa_update(Job).where(
                col(Job.job_id) == job_id,
                col(Job.status) == expected_status.value,
            )
            if expected_version is not None:
                statement = statement.where(col(Job.version) == expected_version)
            try:
                result = session.exec(
                    statement.values(
                        **values,
                        status=patch.status.value,
                        version=col(Job.version) + 1,
                        updated_at=to_db_datetime(now),
                    ),
                )
            except IntegrityError as error:
                session.rollback()
                raise InvariantViolationError(
                    f"Job {job_id} update violates store constraints: {error.orig}",
                ) from error

            if result.rowcount != 1:
                session.rollback()
                latest = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
                if latest is None:
                    raise JobNotFoundError(job_id)
                raise JobConflictError(
                    job_id,
                    expected_status=expected_status,
                    current_status=JobStatus(latest.status),
                )

            _add_event(
                session=session,
                job_id=job_id,
                event_type=patch.event_type,
                status_from=expected_status,
                status_to=patch.status,
                details=patch.details,
            )
            session.commit()
            updated = session.exec(select(Job).where(Job.job_id == job_id)).one()
            view = _to_job_view(updated)

        logger.debug(
            "Job %s %s -> %s (version=%d, event=%s)",
            job_id,
            expected_status.value,
            patch.status.value,
            view.version,
            patch.event_type,
        )
        return view

    def list_by_status(
        self,
        status: JobStatus,
        *,
        owner_id: str | None = None,
        limit: int = 100,
        due_before: datetime | None = None,
    ) -> list[JobView]:
        """Oldest-first jobs in ``status``; ``due_before`` filters on ``run_after``."""

        with Session(self.engine) as session:
            statement = select(Job).where(Job.status == status.value)
            if owner_id is not None:
                statement = statement.where(Job.owner_id == owner_id)
            if due_before is not None:
                statement = statement.where(
                    col(Job.run_after).is_(None)
                    | (col(Job.run_after) <= to_db_datetime(due_before)),
                ).order_by(col(Job.run_after).asc())
            statement = statement.order_by(col(Job.created_at).asc()).limit(limit)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def list_jobs(
        self,
        *,
        owner_id: str | None = None,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, newest first."""

        with Session(self.engine) as session:
            statement = select(Job).order_by(col(Job.created_at).desc()).limit(limit)
            if owner_id is not None:
                statement = statement.where(Job.owner_id == owner_id)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def get_job_details(self, job_id: str, *, owner_id: str | None = None) -> JobDetails:
        """Return job with its event stream."""

        job = self.get(job_id, owner_id=owner_id)
        with Session(self.engine) as session:
            event_rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()

        events: list[JobEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                JobEventView(
                    event_id=row.id or 0,
                    job_id=row.job_id,
                    event_type=row.event_type,
                    status_from=JobStatus(row.status_from) if row.status_from else None,
                    status_to=JobStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return JobDetails(job=job, events=events)


def _add_event(  # noqa: PLR0913
    *,
    session: Session,
    job_id: str,
    event_type: str,
    status_from: JobStatus | None,
    status_to: JobStatus | None,
    details: dict[str, object],
) -> None:
    session.add(
        JobEvent(
            job_id=job_id,
            event_type=event_type,
            status_from=status_from.value if status_from is not None else None,
            status_to=status_to.value if status_to is not None else None,
            details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
            if details
            else None,
            created_at=to_db_datetime(utc_now()),
        ),
    )


def _optional_datetime(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_job_view(row: Job) -> JobView:
    error = None
    if row.error_kind is not None:
        error = JobError(kind=ErrorKind(row.error_kind), message=row.error_message or "")
    return JobView(
        job_id=row.job_id,
        owner_id=row.owner_id,
        kind=row.kind,
        input_ref=row.input_ref,
        status=JobStatus(row.status),
        version=row.version,
        remote_handle=row.remote_handle,
        progress=row.progress,
        progress_phase=row.progress_phase,
        result_ref=row.result_ref,
        error=error,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        unknown_error_count=row.unknown_error_count,
        expected_duration_seconds=row.expected_duration_seconds,
        run_after=_optional_datetime(row.run_after),
        dispatched_at=_optional_datetime(row.dispatched_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        completed_at=_optional_datetime(row.completed_at),
    )
