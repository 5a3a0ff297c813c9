"""Use-case facade over the orchestrator components."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime

from media_tasks.config import Settings
from media_tasks.orchestrator.dispatcher import TaskDispatcher
from media_tasks.orchestrator.failure_classifier import RetryPolicy
from media_tasks.orchestrator.lifecycle import JobLifecycle
from media_tasks.orchestrator.models import JobDetails, JobPublicView, JobStatus, JobView
from media_tasks.orchestrator.notifier import ChangeHandler, ChangeNotifier, Subscription
from media_tasks.orchestrator.poller import PollSummary, StatusPoller
from media_tasks.orchestrator.repository import JobRepository
from media_tasks.orchestrator.sweeper import RetrySweeper, SweepSummary
from media_tasks.providers.base import ProviderAdapter
from media_tasks.storage.common import utc_now

logger = logging.getLogger(__name__)

_RECONCILE_LIMIT = 500


class OrchestratorService:
    """Submission, status, subscription, cancellation and sweep entry points."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        settings: Settings,
        adapters: Mapping[str, ProviderAdapter],
        notifier: ChangeNotifier | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.adapters = adapters
        self.notifier = notifier or ChangeNotifier()
        self.lifecycle = JobLifecycle(
            repository,
            self.notifier,
            retry_policy=RetryPolicy(
                base_seconds=settings.sweeper.retry_base_seconds,
                max_seconds=settings.sweeper.retry_max_seconds,
            ),
            clock=clock,
        )
        self.dispatcher = TaskDispatcher(
            repository=repository,
            lifecycle=self.lifecycle,
            adapters=adapters,
            settings=settings,
            clock=clock,
        )
        self.poller = StatusPoller(
            repository=repository,
            lifecycle=self.lifecycle,
            adapters=adapters,
            settings=settings,
            clock=clock,
        )
        self.sweeper = RetrySweeper(
            repository=repository,
            lifecycle=self.lifecycle,
            dispatcher=self.dispatcher,
            settings=settings,
            clock=clock,
        )

    def submit(self, owner_id: str, kind: str, input_ref: str) -> str:
        """Accept a job and return its id; raises ``SubmissionRejectedError``."""

        return self.dispatcher.submit_job(owner_id, kind, input_ref).job_id

    def read(self, job_id: str, owner_id: str) -> JobPublicView:
        return self.repository.get(job_id, owner_id=owner_id).to_public()

    def subscribe(self, owner_id: str, handler: ChangeHandler) -> Subscription:
        return self.notifier.subscribe(owner_id, handler)

    def reconcile(self, owner_id: str) -> list[JobPublicView]:
        """Current state of the owner's jobs, for clients that (re)subscribe."""

        return [
            job.to_public()
            for job in self.repository.list_jobs(owner_id=owner_id, limit=_RECONCILE_LIMIT)
        ]

    def cancel(self, job_id: str, owner_id: str | None = None) -> JobPublicView:
        return self.dispatcher.cancel_job(job_id, owner_id=owner_id).to_public()

    def run_sweep(self, now: datetime | None = None) -> SweepSummary:
        return self.sweeper.run_sweep(now)

    def poll_once(self, now: datetime | None = None) -> PollSummary:
        return self.poller.tick(now)

    def list_jobs(
        self,
        *,
        owner_id: str | None = None,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        return self.repository.list_jobs(owner_id=owner_id, status=status, limit=limit)

    def details(self, job_id: str) -> JobDetails:
        return self.repository.get_job_details(job_id)

    def close(self) -> None:
        """Release adapter HTTP clients."""

        closed: set[int] = set()
        for adapter in self.adapters.values():
            close = getattr(adapter, "close", None)
            if close is None or id(adapter) in closed:
                continue
            closed.add(id(adapter))
            close()
