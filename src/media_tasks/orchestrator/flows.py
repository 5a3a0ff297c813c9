"""Prefect flow for the scheduled retry sweep."""

from __future__ import annotations

import logging
from pathlib import Path

from prefect import flow

from media_tasks.config import Settings
from media_tasks.orchestrator.runtime import open_service

logger = logging.getLogger(__name__)

RETRY_SWEEP_DEPLOYMENT = "media-tasks-retry-sweep"


@flow(name="retry_sweep_flow")
def retry_sweep_flow(db_path: str | None = None) -> dict[str, int]:
    """Run one retry sweep and return its counters."""

    settings = Settings.from_env(db_path=Path(db_path) if db_path else None)
    with open_service(settings) as service:
        summary = service.run_sweep()
    logger.info("Scheduled retry sweep: %s", summary.to_dict())
    return summary.to_dict()


def serve_retry_sweep(*, db_path: Path | None, interval_seconds: int) -> None:
    """Serve the sweep flow on a fixed interval (blocks)."""

    retry_sweep_flow.serve(
        name=RETRY_SWEEP_DEPLOYMENT,
        interval=interval_seconds,
        parameters={"db_path": str(db_path) if db_path is not None else None},
    )
