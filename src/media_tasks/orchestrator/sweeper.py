"""Retry sweeper: re-dispatches parked jobs whose backoff has elapsed."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from media_tasks.config import Settings
from media_tasks.orchestrator.dispatcher import TaskDispatcher
from media_tasks.orchestrator.lifecycle import JobLifecycle
from media_tasks.orchestrator.models import ErrorKind, JobError, JobStatus, JobView
from media_tasks.orchestrator.repository import JobRepository
from media_tasks.orchestrator.state_machine import claim_patch, failed_patch
from media_tasks.storage.common import utc_now

logger = logging.getLogger(__name__)

_SWEEP_COMPETITORS = (JobStatus.PROCESSING, JobStatus.QUEUED_RETRY)


@dataclass(slots=True)
class SweepSummary:
    """Counters for one sweep run."""

    scanned: int = 0
    redispatched: int = 0
    requeued: int = 0
    failed: int = 0
    exhausted: int = 0
    deferred: int = 0
    conflicts: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class RetrySweeper:
    """Drain due ``queued_retry`` jobs.

    Each job is claimed before it is re-submitted: the claim bumps
    ``retry_count`` and pushes ``run_after`` out by the claim lease under a
    version guard, so overlapping or back-to-back sweeps never submit the
    same job twice.
    """

    def __init__(
        self,
        *,
        repository: JobRepository,
        lifecycle: JobLifecycle,
        dispatcher: TaskDispatcher,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.lifecycle = lifecycle
        self.dispatcher = dispatcher
        self.settings = settings
        self.clock = clock

    def run_sweep(self, now: datetime | None = None) -> SweepSummary:
        now = now or self.clock()
        summary = SweepSummary()
        jobs = self.repository.list_by_status(
            JobStatus.QUEUED_RETRY,
            due_before=now,
            limit=self.settings.sweeper.batch_limit,
        )
        throttled: set[str] = set()
        for job in jobs:
            summary.scanned += 1
            adapter_name = self._adapter_name(job.kind)
            if adapter_name in throttled:
                summary.deferred += 1
                continue
            rate_limited = False
            try:
                outcome, rate_limited = self._sweep_job(job, now=now)
            except Exception:  # noqa: BLE001
                logger.exception("Sweeping job %s failed", job.job_id)
                outcome = "errors"
            setattr(summary, outcome, getattr(summary, outcome) + 1)
            if rate_limited:
                # Remaining jobs for this provider stay parked until the next sweep.
                logger.info("Provider %s is rate limiting; deferring its jobs", adapter_name)
                throttled.add(adapter_name)

        if summary.scanned:
            logger.info("Retry sweep finished: %s", summary.to_dict())
        return summary

    def _sweep_job(self, job: JobView, *, now: datetime) -> tuple[str, bool]:
        """Outcome counter name, and whether the provider answered with a rate limit."""

        if job.retry_count + 1 > job.max_retries:
            error = job.error or JobError(kind=ErrorKind.UNKNOWN, message="Retry budget exhausted")
            patch = failed_patch(error=error, now=now)
            patch.details["retry_budget_exhausted"] = True
            updated = self.lifecycle.transition(
                job,
                patch,
                actor="sweeper",
                explainable=_SWEEP_COMPETITORS,
            )
            return ("exhausted" if updated is not None else "conflicts"), False

        claimed = self.lifecycle.transition(
            job,
            claim_patch(
                retry_count=job.retry_count + 1,
                lease_until=now + timedelta(seconds=self.settings.sweeper.claim_lease_seconds),
            ),
            actor="sweeper",
            explainable=_SWEEP_COMPETITORS,
        )
        if claimed is None:
            return "conflicts", False

        logger.info(
            "Re-dispatching job %s (attempt %d of %d)",
            claimed.job_id,
            claimed.retry_count,
            claimed.max_retries,
        )
        result = self.dispatcher.dispatch(claimed, actor="sweeper")
        if result is None:
            return "conflicts", False
        if result.status in {JobStatus.PROCESSING, JobStatus.COMPLETED}:
            return "redispatched", False
        rate_limited = result.error is not None and result.error.kind == ErrorKind.RATE_LIMIT
        if result.status == JobStatus.QUEUED_RETRY:
            return "requeued", rate_limited
        return "failed", rate_limited

    def run_loop(self, stop_event: threading.Event, *, max_runs: int | None = None) -> int:
        """Sweep every ``interval_seconds`` until ``stop_event`` is set."""

        runs = 0
        while not stop_event.is_set():
            try:
                self.run_sweep()
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Retry sweep failed; next run in %ss",
                    self.settings.sweeper.interval_seconds,
                )
            runs += 1
            if max_runs is not None and runs >= max_runs:
                break
            stop_event.wait(self.settings.sweeper.interval_seconds)
        return runs

    def _adapter_name(self, kind: str) -> str:
        kind_settings = self.settings.kind_settings(kind)
        return kind_settings.adapter if kind_settings is not None else kind
