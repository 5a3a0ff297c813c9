"""Deterministic in-process adapter for tests and local smoke runs.

Outcomes can be queued explicitly (``queue_submit`` / ``queue_poll``); otherwise
the input reference selects the behaviour:

- ``sync:<anything>``: answered inline, job completes right after dispatch.
- ``fail:<status>:<message>``: submit raises ``ProviderError`` with that status.
- ``network:<anything>``: submit raises a network ``ProviderError``.
- ``remote-fail:<message>``: accepted, then every poll reports remote failure.
- ``running:<anything>``: accepted, polls report running at 50% forever.
- anything else: accepted, first poll reports running, later polls report done.
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TypeVar
from uuid import uuid4

from media_tasks.orchestrator.models import RemoteState
from media_tasks.providers.base import PollResult, ProviderError, SubmitResult

Outcome = SubmitResult | PollResult | Exception
_T = TypeVar("_T")


@dataclass(slots=True)
class ScriptedCall:
    method: str
    kind: str
    argument: str


@dataclass(slots=True)
class ScriptedAdapter:
    """Adapter whose responses are fully predetermined."""

    name: str = "scripted"
    submit_outcomes: deque[Outcome] = field(default_factory=deque)
    poll_outcomes: deque[Outcome] = field(default_factory=deque)
    rejected_inputs: dict[str, str] = field(default_factory=dict)
    calls: list[ScriptedCall] = field(default_factory=list)
    cancelled: list[str] = field(default_factory=list)
    _poll_counts: dict[str, int] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def queue_submit(self, *outcomes: Outcome) -> None:
        self.submit_outcomes.extend(outcomes)

    def queue_poll(self, *outcomes: Outcome) -> None:
        self.poll_outcomes.extend(outcomes)

    def calls_to(self, method: str) -> list[ScriptedCall]:
        with self._lock:
            return [call for call in self.calls if call.method == method]

    def validate_input(self, kind: str, input_ref: str) -> str | None:  # noqa: ARG002
        return self.rejected_inputs.get(input_ref)

    def submit(self, kind: str, input_ref: str, options: Mapping[str, str]) -> SubmitResult:  # noqa: ARG002
        with self._lock:
            self.calls.append(ScriptedCall(method="submit", kind=kind, argument=input_ref))
            queued = self.submit_outcomes.popleft() if self.submit_outcomes else None
        if queued is not None:
            return _resolve(queued, SubmitResult)

        mode, _, rest = input_ref.partition(":")
        if mode == "fail":
            status_raw, _, message = rest.partition(":")
            status = int(status_raw) if status_raw.isdigit() else None
            raise ProviderError(message or f"scripted failure {status_raw}", status_code=status)
        if mode == "network":
            raise ProviderError("scripted network error", network=True)

        handle = f"scripted-{_HANDLE_TAGS.get(mode, 'ok')}-{uuid4().hex[:12]}"
        if mode == "sync":
            return SubmitResult(remote_handle=handle, result_ref=f"scripted://result/{handle}")
        return SubmitResult(remote_handle=handle, expected_duration_seconds=60)

    def poll(self, kind: str, remote_handle: str) -> PollResult:
        with self._lock:
            self.calls.append(ScriptedCall(method="poll", kind=kind, argument=remote_handle))
            queued = self.poll_outcomes.popleft() if self.poll_outcomes else None
            count = self._poll_counts.get(remote_handle, 0) + 1
            self._poll_counts[remote_handle] = count
        if queued is not None:
            return _resolve(queued, PollResult)

        mode = remote_handle.split("-")[1] if remote_handle.startswith("scripted-") else "ok"
        if mode == "remote":
            return PollResult(state=RemoteState.FAILED, error_message="scripted remote failure")
        if mode == "running" or count == 1:
            return PollResult(state=RemoteState.RUNNING, progress=50, phase="processing")
        return PollResult(
            state=RemoteState.DONE,
            progress=100,
            result_ref=f"scripted://result/{remote_handle}",
        )

    def fetch_result(self, kind: str, remote_handle: str) -> str:
        with self._lock:
            self.calls.append(ScriptedCall(method="fetch_result", kind=kind, argument=remote_handle))
        return f"scripted://result/{remote_handle}"

    def cancel(self, kind: str, remote_handle: str) -> bool:
        with self._lock:
            self.calls.append(ScriptedCall(method="cancel", kind=kind, argument=remote_handle))
            self.cancelled.append(remote_handle)
        return True


_HANDLE_TAGS = {"sync": "sync", "running": "running", "remote-fail": "remote"}


def _resolve(outcome: Outcome, expected: type[_T]) -> _T:
    if isinstance(outcome, Exception):
        raise outcome
    if not isinstance(outcome, expected):
        raise TypeError(f"Scripted outcome {outcome!r} is not a {expected.__name__}")
    return outcome
