"""Guarded transitions shared by dispatcher, poller and sweeper."""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection
from datetime import datetime, timedelta

from media_tasks.orchestrator.errors import JobConflictError, JobNotFoundError
from media_tasks.orchestrator.failure_classifier import (
    FailureClassification,
    RetryPolicy,
    decide_failure,
)
from media_tasks.orchestrator.models import JobChange, JobError, JobStatus, JobView
from media_tasks.orchestrator.notifier import ChangeNotifier
from media_tasks.orchestrator.repository import JobRepository
from media_tasks.orchestrator.state_machine import JobPatch, failed_patch, requeue_patch
from media_tasks.storage.common import utc_now

logger = logging.getLogger(__name__)


class JobLifecycle:
    """Apply a patch with a status+version guard and publish the change."""

    def __init__(
        self,
        repository: JobRepository,
        notifier: ChangeNotifier,
        *,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.notifier = notifier
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock

    def transition(
        self,
        job: JobView,
        patch: JobPatch,
        *,
        actor: str = "orchestrator",
        explainable: Collection[JobStatus] | None = None,
    ) -> JobView | None:
        """Return the updated job, or ``None`` when another writer got there first.

        ``explainable`` lists statuses the actor expects a competing writer to
        produce; anything else found on conflict is logged as an anomaly.
        """

        try:
            updated = self.repository.update(
                job.job_id,
                patch,
                expected_status=job.status,
                expected_version=job.version,
            )
        except JobConflictError as error:
            self._log_conflict(job, error, actor=actor, explainable=explainable)
            return None
        except JobNotFoundError:
            logger.warning("%s: job %s disappeared during transition", actor, job.job_id)
            return None

        logger.info(
            "%s: job %s %s -> %s (%s)",
            actor,
            job.job_id,
            job.status.value,
            updated.status.value,
            patch.event_type,
        )
        if patch.notify:
            self.notifier.publish(JobChange.from_job(updated))
        return updated

    def record_failure(
        self,
        job: JobView,
        classification: FailureClassification,
        message: str,
        *,
        actor: str,
        explainable: Collection[JobStatus] | None = None,
    ) -> JobView | None:
        """Park the job for the sweeper or fail it, per retry policy and budget."""

        now = self.clock()
        decision = decide_failure(classification.kind, job.unknown_error_count)
        error = JobError(kind=decision.final_kind, message=message or "Provider request failed")
        retry = decision.retry and job.retry_count + 1 <= job.max_retries

        if retry:
            delay = self.retry_policy.delay_seconds(job.retry_count)
            patch = requeue_patch(
                error=error,
                run_after=now + timedelta(seconds=delay),
                unknown_error_count=decision.unknown_error_count,
            )
        else:
            patch = failed_patch(
                error=error,
                now=now,
                unknown_error_count=decision.unknown_error_count,
            )
        patch.details.update(classification.to_event_details())
        if decision.retry and not retry:
            patch.details["retry_budget_exhausted"] = True

        logger.info(
            "%s: job %s failure classified as %s (rule=%s, retry=%s)",
            actor,
            job.job_id,
            decision.final_kind.value,
            classification.matched_rule,
            retry,
        )
        return self.transition(job, patch, actor=actor, explainable=explainable)

    def _log_conflict(
        self,
        job: JobView,
        error: JobConflictError,
        *,
        actor: str,
        explainable: Collection[JobStatus] | None,
    ) -> None:
        current = error.current_status
        if (
            current.is_terminal
            or current == job.status
            or explainable is None
            or current in explainable
        ):
            logger.info(
                "%s: job %s changed concurrently (expected %s, found %s); skipping",
                actor,
                job.job_id,
                job.status.value,
                current.value,
            )
            return
        logger.warning(
            "%s: anomaly for job %s, expected %s but found %s",
            actor,
            job.job_id,
            job.status.value,
            current.value,
        )
