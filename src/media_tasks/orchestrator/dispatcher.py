"""Submission path: validate, persist, hand off to the provider."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime

from media_tasks.config import Settings
from media_tasks.orchestrator.errors import (
    InvalidTransitionError,
    JobConflictError,
    SubmissionRejectedError,
)
from media_tasks.orchestrator.failure_classifier import (
    FailureClassification,
    classify_provider_error,
)
from media_tasks.orchestrator.lifecycle import JobLifecycle
from media_tasks.orchestrator.models import ErrorKind, JobCreate, JobError, JobStatus, JobView
from media_tasks.orchestrator.repository import JobRepository
from media_tasks.orchestrator.state_machine import (
    completed_patch,
    dispatched_patch,
    failed_patch,
)
from media_tasks.providers.base import ProviderAdapter, ProviderError, SubmitResult
from media_tasks.storage.common import utc_now

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Cancelled by request"
_CANCEL_ATTEMPTS = 3


class TaskDispatcher:
    """Creates job records and submits them to the adapter for their kind."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        lifecycle: JobLifecycle,
        adapters: Mapping[str, ProviderAdapter],
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.lifecycle = lifecycle
        self.adapters = adapters
        self.settings = settings
        self.clock = clock

    def submit_job(self, owner_id: str, kind: str, input_ref: str) -> JobView:
        """Validate and dispatch a new job; invalid requests never reach the store."""

        if not owner_id or not owner_id.strip():
            raise SubmissionRejectedError("owner_id must not be empty")
        if not input_ref or not input_ref.strip():
            raise SubmissionRejectedError("input_ref must not be empty")
        kind_settings = self.settings.kind_settings(kind)
        adapter = self.adapters.get(kind)
        if kind_settings is None or adapter is None:
            raise SubmissionRejectedError(f"Unknown job kind: {kind!r}")
        rejection = adapter.validate_input(kind, input_ref)
        if rejection:
            raise SubmissionRejectedError(rejection)

        job = self.repository.create(
            JobCreate(
                owner_id=owner_id,
                kind=kind,
                input_ref=input_ref,
                max_retries=kind_settings.max_retries,
            ),
        )
        logger.info("Job %s created (owner=%s, kind=%s)", job.job_id, owner_id, kind)
        dispatched = self.dispatch(job)
        return dispatched if dispatched is not None else self.repository.get(job.job_id)

    def dispatch(self, job: JobView, *, actor: str = "dispatcher") -> JobView | None:
        """Submit ``job`` (``pending`` or claimed ``queued_retry``) to its provider."""

        adapter = self.adapters.get(job.kind)
        kind_settings = self.settings.kind_settings(job.kind)
        if adapter is None or kind_settings is None:
            return self.lifecycle.record_failure(
                job,
                FailureClassification(
                    kind=ErrorKind.AUTH_CONFIG,
                    matched_rule="kind_not_configured",
                ),
                f"Job kind {job.kind!r} is not configured",
                actor=actor,
            )
        options = kind_settings.options

        try:
            submitted = adapter.submit(job.kind, job.input_ref, options)
        except ProviderError as error:
            return self.lifecycle.record_failure(
                job,
                classify_provider_error(error),
                str(error),
                actor=actor,
            )
        except Exception as error:  # noqa: BLE001
            logger.exception(
                "%s: adapter %s crashed submitting job %s",
                actor,
                adapter.name,
                job.job_id,
            )
            return self.lifecycle.record_failure(
                job,
                FailureClassification(kind=ErrorKind.UNKNOWN, matched_rule="unexpected_exception"),
                f"{type(error).__name__}: {error}",
                actor=actor,
            )
        return self._accept(job, submitted, adapter=adapter, actor=actor)

    def cancel_job(self, job_id: str, *, owner_id: str | None = None) -> JobView:
        """Stop tracking a job and mark it failed with kind ``cancelled``."""

        remote_cancelled = False
        for _ in range(_CANCEL_ATTEMPTS):
            job = self.repository.get(job_id, owner_id=owner_id)
            if job.status.is_terminal:
                raise InvalidTransitionError(
                    job_id,
                    status_from=job.status,
                    status_to=JobStatus.FAILED,
                )
            if job.remote_handle and job.status == JobStatus.PROCESSING and not remote_cancelled:
                self._cancel_remote(job)
                remote_cancelled = True

            patch = failed_patch(
                error=JobError(kind=ErrorKind.CANCELLED, message=CANCELLED_MESSAGE),
                now=self.clock(),
            )
            patch.event_type = "cancelled"
            updated = self.lifecycle.transition(job, patch, actor="cancel")
            if updated is not None:
                return updated

        latest = self.repository.get(job_id, owner_id=owner_id)
        raise JobConflictError(job_id, expected_status=job.status, current_status=latest.status)

    def _accept(
        self,
        job: JobView,
        submitted: SubmitResult,
        *,
        adapter: ProviderAdapter,
        actor: str,
    ) -> JobView | None:
        processing = self.lifecycle.transition(
            job,
            dispatched_patch(
                remote_handle=submitted.remote_handle,
                now=self.clock(),
                expected_duration_seconds=submitted.expected_duration_seconds,
            ),
            actor=actor,
            explainable=(JobStatus.PROCESSING,),
        )
        if processing is None:
            # Lost to a concurrent cancel; the remote task has no owner any more.
            self._cancel_remote_handle(adapter, job.kind, submitted.remote_handle, job.job_id)
            return None
        if submitted.result_ref is None:
            return processing
        return self.lifecycle.transition(
            processing,
            completed_patch(result_ref=submitted.result_ref, now=self.clock()),
            actor=actor,
        )

    def _cancel_remote(self, job: JobView) -> None:
        adapter = self.adapters.get(job.kind)
        if adapter is None or job.remote_handle is None:
            return
        self._cancel_remote_handle(adapter, job.kind, job.remote_handle, job.job_id)

    def _cancel_remote_handle(
        self,
        adapter: ProviderAdapter,
        kind: str,
        remote_handle: str,
        job_id: str,
    ) -> None:
        try:
            supported = adapter.cancel(kind, remote_handle)
        except Exception:  # noqa: BLE001
            logger.warning(
                "Remote cancel failed for job %s (handle=%s)",
                job_id,
                remote_handle,
                exc_info=True,
            )
            return
        if not supported:
            logger.info("Adapter %s cannot cancel remote task %s", adapter.name, remote_handle)
