"""Status poller: tracks ``processing`` jobs until they reach a terminal state."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from media_tasks.config import KindSettings, Settings
from media_tasks.orchestrator.errors import JobNotFoundError
from media_tasks.orchestrator.failure_classifier import (
    RETRYABLE_KINDS,
    FailureClassification,
    classify_failure,
    classify_provider_error,
)
from media_tasks.orchestrator.lifecycle import JobLifecycle
from media_tasks.orchestrator.models import ErrorKind, JobStatus, JobView, RemoteState
from media_tasks.orchestrator.repository import JobRepository
from media_tasks.orchestrator.state_machine import completed_patch, progress_patch
from media_tasks.providers.base import PollResult, ProviderAdapter, ProviderError
from media_tasks.storage.common import utc_now

logger = logging.getLogger(__name__)

_NO_COMPETITOR_EXPECTED: frozenset[JobStatus] = frozenset()


@dataclass(slots=True)
class PollSummary:
    """Aggregate poller counters for CLI reporting."""

    scanned: int = 0
    polled: int = 0
    progressed: int = 0
    notified: int = 0
    completed: int = 0
    failed: int = 0
    requeued: int = 0
    timed_out: int = 0
    skipped: int = 0
    conflicts: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class StatusPoller:
    """Poll in-flight jobs on a per-kind cadence with bounded concurrency.

    The due schedule and the last-notified progress live in memory only; after a
    restart every ``processing`` job is simply due on the first tick.
    """

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
        self._lock = threading.Lock()
        self._due: dict[str, datetime] = {}
        self._notified: dict[str, tuple[int | None, str | None]] = {}

    def resume(self) -> list[JobView]:
        """Load the in-flight set from the store; every job becomes due now."""

        jobs = self.repository.list_by_status(
            JobStatus.PROCESSING,
            limit=self.settings.poller.batch_limit,
        )
        now = self.clock()
        with self._lock:
            for job in jobs:
                self._due[job.job_id] = now
                self._notified.setdefault(job.job_id, (job.progress, job.progress_phase))
        logger.info("Poller resumed tracking of %d in-flight job(s)", len(jobs))
        return jobs

    def tick(self, now: datetime | None = None) -> PollSummary:
        """Poll every job whose interval has elapsed."""

        now = now or self.clock()
        summary = PollSummary()
        jobs = self.repository.list_by_status(
            JobStatus.PROCESSING,
            limit=self.settings.poller.batch_limit,
        )
        summary.scanned = len(jobs)

        due: list[JobView] = []
        with self._lock:
            active = {job.job_id for job in jobs}
            for job_id in [job_id for job_id in self._due if job_id not in active]:
                self._forget_locked(job_id)
            for job in jobs:
                if self._due.get(job.job_id, now) > now:
                    continue
                due.append(job)
                self._due[job.job_id] = now + timedelta(
                    seconds=self._poll_interval(job.kind),
                )

        if not due:
            return summary

        workers = max(1, min(self.settings.poller.max_concurrency, len(due)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="poller") as pool:
            outcomes = list(pool.map(lambda job: self._poll_safely(job, now), due))

        for outcome in outcomes:
            if outcome == "notified":
                summary.progressed += 1
                summary.notified += 1
            elif outcome == "progressed":
                summary.progressed += 1
            elif hasattr(summary, outcome):
                setattr(summary, outcome, getattr(summary, outcome) + 1)
            if outcome != "skipped":
                summary.polled += 1
        return summary

    def poll_job(self, job: JobView, *, now: datetime | None = None) -> str:
        """Poll one job and apply the outcome; returns the outcome name."""

        now = now or self.clock()
        try:
            current = self.repository.get(job.job_id)
        except JobNotFoundError:
            self.forget(job.job_id)
            return "skipped"
        if current.status != JobStatus.PROCESSING or current.remote_handle is None:
            # Cancelled or finished by another writer since the listing.
            self.forget(job.job_id)
            return "skipped"

        kind_settings = self.settings.kind_settings(current.kind)
        adapter = self.adapters.get(current.kind)
        if kind_settings is None or adapter is None:
            logger.warning("No adapter configured for kind %s (job %s)", current.kind, job.job_id)
            updated = self.lifecycle.record_failure(
                current,
                FailureClassification(
                    kind=ErrorKind.AUTH_CONFIG,
                    matched_rule="kind_not_configured",
                ),
                f"Job kind {current.kind!r} is not configured",
                actor="poller",
                explainable=_NO_COMPETITOR_EXPECTED,
            )
            self.forget(current.job_id)
            return _failure_outcome(updated)

        limit_seconds = _timeout_seconds(current, kind_settings)
        if current.dispatched_at is not None:
            elapsed = (now - current.dispatched_at).total_seconds()
            if elapsed > limit_seconds:
                updated = self.lifecycle.record_failure(
                    current,
                    FailureClassification(
                        kind=ErrorKind.TRANSIENT_NETWORK,
                        matched_rule="tracking_timeout",
                    ),
                    f"Provider did not finish within {limit_seconds}s",
                    actor="poller",
                    explainable=_NO_COMPETITOR_EXPECTED,
                )
                self.forget(current.job_id)
                return "timed_out" if updated is not None else "conflicts"

        try:
            result = adapter.poll(current.kind, current.remote_handle)
            if result.state == RemoteState.DONE and result.result_ref is None:
                result.result_ref = adapter.fetch_result(current.kind, current.remote_handle)
        except ProviderError as error:
            return self._handle_poll_error(current, error)

        if result.state == RemoteState.DONE:
            return self._complete(current, result, now=now)
        if result.state == RemoteState.FAILED:
            classification = classify_failure(result.error_status, result.error_message)
            updated = self.lifecycle.record_failure(
                current,
                classification,
                result.error_message or "Remote task failed",
                actor="poller",
                explainable=_NO_COMPETITOR_EXPECTED,
            )
            self.forget(current.job_id)
            return _failure_outcome(updated)
        return self._record_progress(current, result)

    def forget(self, job_id: str) -> None:
        with self._lock:
            self._forget_locked(job_id)

    def run_loop(self, stop_event: threading.Event, *, max_ticks: int | None = None) -> int:
        """Tick until ``stop_event`` is set or ``max_ticks`` is reached."""

        try:
            self.resume()
        except Exception:  # noqa: BLE001
            logger.exception("Resuming in-flight jobs failed; first tick will pick them up")
        ticks = 0
        while not stop_event.is_set():
            ticks += 1
            try:
                summary = self.tick()
            except Exception:  # noqa: BLE001
                logger.exception("Poll tick %d failed", ticks)
            else:
                if summary.polled:
                    logger.info("Poll tick %d: %s", ticks, summary.to_dict())
            if max_ticks is not None and ticks >= max_ticks:
                break
            stop_event.wait(self.settings.poller.tick_seconds)
        return ticks

    def _poll_safely(self, job: JobView, now: datetime) -> str:
        try:
            return self.poll_job(job, now=now)
        except Exception:  # noqa: BLE001
            logger.exception("Polling job %s failed", job.job_id)
            return "errors"

    def _handle_poll_error(self, job: JobView, error: ProviderError) -> str:
        classification = classify_provider_error(error)
        if classification.kind in RETRYABLE_KINDS or classification.kind == ErrorKind.UNKNOWN:
            logger.warning(
                "Poll of job %s failed (%s), will retry next tick: %s",
                job.job_id,
                classification.kind.value,
                error,
            )
            return "errors"
        updated = self.lifecycle.record_failure(
            job,
            classification,
            str(error),
            actor="poller",
            explainable=_NO_COMPETITOR_EXPECTED,
        )
        self.forget(job.job_id)
        return _failure_outcome(updated)

    def _complete(self, job: JobView, result: PollResult, *, now: datetime) -> str:
        if not result.result_ref:
            return self._handle_poll_error(
                job,
                ProviderError(f"Remote task for job {job.job_id} finished without a result"),
            )
        updated = self.lifecycle.transition(
            job,
            completed_patch(result_ref=result.result_ref, now=now),
            actor="poller",
            explainable=_NO_COMPETITOR_EXPECTED,
        )
        self.forget(job.job_id)
        return "completed" if updated is not None else "conflicts"

    def _record_progress(self, job: JobView, result: PollResult) -> str:
        progress = result.progress if result.progress is not None else job.progress
        if progress is not None and job.progress is not None:
            progress = max(progress, job.progress)
        phase = result.phase or job.progress_phase
        if progress == job.progress and phase == job.progress_phase:
            return "unchanged"

        with self._lock:
            last_progress, last_phase = self._notified.get(
                job.job_id,
                (job.progress, job.progress_phase),
            )
        step = self.settings.poller.progress_notify_step
        notify = (
            phase != last_phase
            or (progress is not None and last_progress is None)
            or (
                progress is not None
                and last_progress is not None
                and abs(progress - last_progress) >= step
            )
        )
        updated = self.lifecycle.transition(
            job,
            progress_patch(progress=progress, phase=phase, notify=notify),
            actor="poller",
            explainable=_NO_COMPETITOR_EXPECTED,
        )
        if updated is None:
            return "conflicts"
        if notify:
            with self._lock:
                self._notified[job.job_id] = (progress, phase)
            return "notified"
        return "progressed"

    def _poll_interval(self, kind: str) -> float:
        kind_settings = self.settings.kind_settings(kind)
        return kind_settings.poll_interval_seconds if kind_settings is not None else 5.0

    def _forget_locked(self, job_id: str) -> None:
        self._due.pop(job_id, None)
        self._notified.pop(job_id, None)


def _timeout_seconds(job: JobView, kind_settings: KindSettings) -> int:
    if job.expected_duration_seconds:
        return min(kind_settings.timeout_seconds, 2 * job.expected_duration_seconds)
    return kind_settings.timeout_seconds


def _failure_outcome(updated: JobView | None) -> str:
    if updated is None:
        return "conflicts"
    return "failed" if updated.status == JobStatus.FAILED else "requeued"
