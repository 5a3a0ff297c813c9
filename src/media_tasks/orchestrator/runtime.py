"""Wiring of settings, store, adapters and service for CLI and flows."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager

from media_tasks.config import Settings
from media_tasks.orchestrator.repository import JobRepository
from media_tasks.orchestrator.services import OrchestratorService
from media_tasks.providers.base import ProviderAdapter
from media_tasks.providers.registry import build_adapters


@contextmanager
def open_service(
    settings: Settings,
    *,
    adapters: Mapping[str, ProviderAdapter] | None = None,
) -> Iterator[OrchestratorService]:
    """Validate settings, migrate the store and yield a ready service."""

    settings.validate()
    repository = JobRepository(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    service = OrchestratorService(
        repository=repository,
        settings=settings,
        adapters=adapters if adapters is not None else build_adapters(settings),
    )
    try:
        yield service
    finally:
        service.close()
        repository.close()
