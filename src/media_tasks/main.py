"""CLI entrypoint for media-tasks."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from media_tasks import __version__
from media_tasks.orchestrator.controllers import (
    CancelJobCommand,
    InspectJobCommand,
    ListJobsCommand,
    OrchestratorCliController,
    PollCommand,
    StatusCommand,
    SubmitCommand,
    SweepCommand,
    WorkerCommand,
)
from media_tasks.orchestrator.errors import OrchestratorError

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

_STATUS_CHOICES = ["pending", "processing", "queued_retry", "completed", "failed"]


@click.group()
@click.version_option(version=__version__, prog_name="media-tasks")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def media_tasks(log_level: str) -> None:
    """Asynchronous media task orchestrator."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@media_tasks.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--owner", "owner_id", required=True, help="Owner id of the job.")
@click.option("--kind", required=True, help="Job kind, see `media-tasks kinds`.")
@click.argument("input_ref")
def submit(db_path: Path | None, owner_id: str, kind: str, input_ref: str) -> None:
    """Submit a job and hand it to its provider."""

    with _user_errors():
        _emit_lines(
            ORCHESTRATOR_CONTROLLER.submit(
                SubmitCommand(
                    db_path=db_path,
                    owner_id=owner_id,
                    kind=kind,
                    input_ref=input_ref,
                ),
            ),
        )


@media_tasks.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--owner", "owner_id", required=True, help="Owner id of the job.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
@click.argument("job_id")
def status(db_path: Path | None, owner_id: str, output_format: str, job_id: str) -> None:
    """Show the public status of one job."""

    with _user_errors():
        _emit_lines(
            ORCHESTRATOR_CONTROLLER.status(
                StatusCommand(
                    db_path=db_path,
                    job_id=job_id,
                    owner_id=owner_id,
                    output_format=output_format.lower(),
                ),
            ),
        )


@media_tasks.command("jobs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--owner", "owner_id", default=None, help="Optional owner filter.")
@click.option(
    "--status",
    type=click.Choice(_STATUS_CHOICES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs(db_path: Path | None, owner_id: str | None, status: str | None, limit: int) -> None:
    """List recent jobs."""

    with _user_errors():
        _emit_lines(
            ORCHESTRATOR_CONTROLLER.list_jobs(
                ListJobsCommand(
                    db_path=db_path,
                    owner_id=owner_id,
                    status=status,
                    limit=limit,
                ),
            ),
        )


@media_tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with its event history."""

    with _user_errors():
        _emit_lines(
            ORCHESTRATOR_CONTROLLER.inspect_job(
                InspectJobCommand(db_path=db_path, job_id=job_id),
            ),
        )


@media_tasks.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--owner", "owner_id", default=None, help="Owner id; other owners' jobs are hidden.")
@click.argument("job_id")
def cancel(db_path: Path | None, owner_id: str | None, job_id: str) -> None:
    """Cancel a pending, processing or parked job."""

    with _user_errors():
        _emit_lines(
            ORCHESTRATOR_CONTROLLER.cancel_job(
                CancelJobCommand(db_path=db_path, job_id=job_id, owner_id=owner_id),
            ),
        )


@media_tasks.command("poll")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def poll(db_path: Path | None) -> None:
    """Poll in-flight jobs once; use `worker` to keep polling."""

    with _user_errors():
        _emit_lines(ORCHESTRATOR_CONTROLLER.poll_once(PollCommand(db_path=db_path)))


@media_tasks.command("sweep")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--serve",
    is_flag=True,
    default=False,
    help="Serve the sweep as a Prefect deployment on MEDIA_TASKS_SWEEP_INTERVAL_SECONDS.",
)
def sweep(db_path: Path | None, serve: bool) -> None:
    """Re-dispatch parked jobs whose backoff elapsed."""

    with _user_errors():
        _emit_lines(ORCHESTRATOR_CONTROLLER.sweep(SweepCommand(db_path=db_path, serve=serve)))


@media_tasks.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run one poll tick and one sweep, or loop until interrupted.",
)
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for poll ticks in loop mode.",
)
def worker(db_path: Path | None, once: bool, max_ticks: int | None) -> None:
    """Run the status poller and retry sweeper."""

    with _user_errors():
        _emit_lines(
            ORCHESTRATOR_CONTROLLER.run_worker(
                WorkerCommand(db_path=db_path, once=once, max_ticks=max_ticks),
                emit=click.echo,
            ),
        )


@media_tasks.command("kinds")
def kinds() -> None:
    """List configured job kinds and their adapters."""

    with _user_errors():
        _emit_lines(ORCHESTRATOR_CONTROLLER.kinds())


@contextmanager
def _user_errors() -> Iterator[None]:
    try:
        yield
    except (OrchestratorError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    media_tasks()
