"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from media_tasks.config import Settings
from media_tasks.orchestrator.flows import serve_retry_sweep
from media_tasks.orchestrator.models import JobChange, JobPublicView, JobStatus
from media_tasks.orchestrator.runtime import open_service

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SubmitCommand:
    """CLI input for job submission."""

    db_path: Path | None
    owner_id: str
    kind: str
    input_ref: str


@dataclass(slots=True)
class StatusCommand:
    """CLI input for a single job status read."""

    db_path: Path | None
    job_id: str
    owner_id: str
    output_format: str = "table"


@dataclass(slots=True)
class ListJobsCommand:
    """CLI input for job listing."""

    db_path: Path | None
    owner_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectJobCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class CancelJobCommand:
    """CLI input for cancellation."""

    db_path: Path | None
    job_id: str
    owner_id: str | None


@dataclass(slots=True)
class PollCommand:
    db_path: Path | None


@dataclass(slots=True)
class SweepCommand:
    db_path: Path | None
    serve: bool = False


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for the combined poller + sweeper worker."""

    db_path: Path | None
    once: bool
    max_ticks: int | None


class OrchestratorCliController:
    """Coordinates submission, tracking and inspection CLI operations."""

    def submit(self, command: SubmitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_service(settings) as service:
            job_id = service.submit(command.owner_id, command.kind, command.input_ref)
            job = service.read(job_id, command.owner_id)
        return [
            f"Job submitted: job_id={job.job_id} kind={job.kind} status={job.status.value}",
            *_error_lines(job),
        ]

    def status(self, command: StatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_service(settings) as service:
            job = service.read(command.job_id, command.owner_id)
        if command.output_format == "json":
            return [json.dumps(job.to_dict(), ensure_ascii=False, sort_keys=True)]
        return [
            f"Job: {job.job_id}",
            f"Kind: {job.kind}",
            f"Status: {job.status.value}",
            f"Progress: {_format_progress(job.progress, job.progress_phase)}",
            f"Retries: {job.retry_count}/{job.max_retries}",
            f"Result: {job.result_ref or '-'}",
            *_error_lines(job),
        ]

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with open_service(settings) as service:
            jobs = service.list_jobs(
                owner_id=command.owner_id,
                status=status_filter,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} owner={job.owner_id} kind={job.kind} "
                f"status={job.status.value} progress={_format_progress(job.progress, None)} "
                f"retries={job.retry_count}/{job.max_retries}",
            )
        return lines

    def inspect_job(self, command: InspectJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_service(settings) as service:
            details = service.details(command.job_id)

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Owner: {job.owner_id}",
            f"Kind: {job.kind}",
            f"Input: {job.input_ref}",
            f"Status: {job.status.value} (version {job.version})",
            f"Remote handle: {job.remote_handle or '-'}",
            f"Progress: {_format_progress(job.progress, job.progress_phase)}",
            f"Retries: {job.retry_count}/{job.max_retries}",
            f"Run after: {job.run_after.isoformat() if job.run_after else '-'}",
            f"Result: {job.result_ref or '-'}",
            f"Error: {f'{job.error.kind.value}: {job.error.message}' if job.error else '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def cancel_job(self, command: CancelJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_service(settings) as service:
            job = service.cancel(command.job_id, command.owner_id)
        return [f"Job cancelled: {job.job_id} status={job.status.value}"]

    def poll_once(self, command: PollCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_service(settings) as service:
            summary = service.poll_once()
        return [f"Poll summary: {_format_counters(summary.to_dict())}"]

    def sweep(self, command: SweepCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.serve:
            settings.validate()
            serve_retry_sweep(
                db_path=command.db_path,
                interval_seconds=settings.sweeper.interval_seconds,
            )
            return ["Retry sweep deployment stopped."]
        with open_service(settings) as service:
            summary = service.run_sweep()
        return [f"Sweep summary: {_format_counters(summary.to_dict())}"]

    def run_worker(
        self,
        command: WorkerCommand,
        *,
        emit: Callable[[str], None] | None = None,
        stop_event: threading.Event | None = None,
    ) -> list[str]:
        """Run poller and sweeper together; changes are streamed through ``emit``."""

        settings = Settings.from_env(db_path=command.db_path)
        stop = stop_event or threading.Event()
        with open_service(settings) as service:
            subscription = service.notifier.subscribe_all(
                lambda change: emit(_format_change(change)) if emit is not None else None,
            )
            try:
                if command.once:
                    service.poller.resume()
                    poll_summary = service.poll_once()
                    sweep_summary = service.run_sweep()
                    return [
                        f"Poll summary: {_format_counters(poll_summary.to_dict())}",
                        f"Sweep summary: {_format_counters(sweep_summary.to_dict())}",
                    ]

                sweeper_thread = threading.Thread(
                    target=service.sweeper.run_loop,
                    args=(stop,),
                    name="retry-sweeper",
                    daemon=True,
                )
                sweeper_thread.start()
                try:
                    ticks = service.poller.run_loop(stop, max_ticks=command.max_ticks)
                except KeyboardInterrupt:
                    logger.info("Worker interrupted, shutting down")
                    ticks = 0
                finally:
                    stop.set()
                    # An in-flight re-dispatch still needs the adapters open.
                    sweeper_thread.join()
            finally:
                subscription.unsubscribe()
        return [f"Worker stopped after {ticks} poll tick(s)."]

    def kinds(self) -> list[str]:
        settings = Settings.from_env()
        lines = [f"Kinds: {len(settings.kinds)}"]
        for item in settings.kinds.values():
            options = ",".join(f"{key}={value}" for key, value in sorted(item.options.items()))
            lines.append(
                f"  {item.kind} adapter={item.adapter} "
                f"poll={item.poll_interval_seconds:g}s timeout={item.timeout_seconds}s "
                f"max_retries={item.max_retries} options={options or '-'}",
            )
        return lines


def _parse_status(raw: str | None) -> JobStatus | None:
    if raw is None:
        return None
    try:
        return JobStatus(raw.lower())
    except ValueError as error:
        raise ValueError(f"Unsupported status: {raw!r}") from error


def _format_progress(progress: int | None, phase: str | None) -> str:
    value = f"{progress}%" if progress is not None else "-"
    return f"{value} ({phase})" if phase else value


def _format_counters(counters: dict[str, int]) -> str:
    return " ".join(f"{key}={value}" for key, value in counters.items())


def _format_change(change: JobChange) -> str:
    line = (
        f"[{change.owner_id}] {change.job_id} {change.status.value} "
        f"{_format_progress(change.progress, change.progress_phase)}"
    )
    if change.error_kind is not None:
        line += f" error={change.error_kind.value}: {change.error_message}"
    return line


def _error_lines(job: JobPublicView) -> list[str]:
    if job.error_kind is None:
        return []
    return [f"Error: {job.error_kind.value}: {job.error_message}"]
