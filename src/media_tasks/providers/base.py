"""Provider adapter interface."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol

from media_tasks.orchestrator.models import RemoteState


class ProviderError(RuntimeError):
    """Raw provider failure; retryability is decided by the failure classifier."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        network: bool = False,
        timed_out: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.network = network
        self.timed_out = timed_out


@dataclass(slots=True)
class SubmitResult:
    """Accepted remote task; ``result_ref`` is set when the provider answered inline."""

    remote_handle: str
    expected_duration_seconds: int | None = None
    result_ref: str | None = None


@dataclass(slots=True)
class PollResult:
    """Snapshot of a remote task."""

    state: RemoteState
    progress: int | None = None
    phase: str | None = None
    result_ref: str | None = None
    error_message: str | None = None
    error_status: int | None = None


class ProviderAdapter(Protocol):
    """Protocol implemented by provider adapters."""

    name: str

    def validate_input(self, kind: str, input_ref: str) -> str | None:
        """Return a rejection message, or ``None`` when the input is acceptable."""

    def submit(self, kind: str, input_ref: str, options: Mapping[str, str]) -> SubmitResult:
        """Start remote work."""

    def poll(self, kind: str, remote_handle: str) -> PollResult:
        """Report remote state and progress."""

    def fetch_result(self, kind: str, remote_handle: str) -> str:
        """Materialize the finished result and return its reference."""

    def cancel(self, kind: str, remote_handle: str) -> bool:
        """Best-effort remote cancellation; ``False`` when unsupported."""


def clamp_progress(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return max(0, min(100, int(value)))
