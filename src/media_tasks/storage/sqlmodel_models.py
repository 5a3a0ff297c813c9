"""SQLModel ORM tables for the job store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, text
from sqlmodel import Field, SQLModel


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_status_run_after", "status", "run_after"),
        Index("idx_jobs_owner_status", "owner_id", "status"),
        Index(
            "uq_jobs_kind_handle_processing",
            "kind",
            "remote_handle",
            unique=True,
            sqlite_where=text("status = 'processing'"),
        ),
    )

    job_id: str = Field(primary_key=True)
    owner_id: str = Field(index=True)
    kind: str = Field(index=True)
    input_ref: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    version: int = Field(default=1)
    remote_handle: str | None = None
    progress: int | None = None
    progress_phase: str | None = None
    result_ref: str | None = Field(default=None, sa_column=Column(Text))
    error_kind: str | None = Field(default=None, index=True)
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    unknown_error_count: int = Field(default=0)
    expected_duration_seconds: int | None = None
    run_after: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    dispatched_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
