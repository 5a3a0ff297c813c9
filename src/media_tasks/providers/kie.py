"""KIE AI watermark removal adapter."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any
from urllib.parse import urlparse

import httpx

from media_tasks.orchestrator.models import RemoteState
from media_tasks.providers.base import PollResult, ProviderError, SubmitResult, clamp_progress
from media_tasks.providers.http import ProviderHttpClient

logger = logging.getLogger(__name__)

WATERMARK_MODEL = "sora-watermark-remover"
_DONE_STATES = frozenset({"completed", "success"})
_FAILED_STATES = frozenset({"failed", "error"})


class KieWatermarkAdapter:
    """Watermark removal task; the body ``code`` field carries the real status."""

    name = "kie"

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        timeout_seconds: float,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self._http = ProviderHttpClient(
            base_url=base_url,
            timeout_seconds=timeout_seconds,
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )

    def validate_input(self, kind: str, input_ref: str) -> str | None:  # noqa: ARG002
        parsed = urlparse(input_ref)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            return f"Watermark removal requires an absolute http(s) video URL: {input_ref!r}"
        return None

    def submit(self, kind: str, input_ref: str, options: Mapping[str, str]) -> SubmitResult:  # noqa: ARG002
        self._require_key()
        body = self._http.json(
            "POST",
            "/api/v1/jobs/createTask",
            json={
                "model": options.get("model", WATERMARK_MODEL),
                "input": {"video_url": input_ref},
            },
        )
        data = _unwrap(body, default_message="Failed to create task")
        task_id = data.get("taskId")
        if not task_id:
            raise ProviderError("KIE response is missing taskId")
        logger.info("KIE task %s created", task_id)
        return SubmitResult(remote_handle=str(task_id))

    def poll(self, kind: str, remote_handle: str) -> PollResult:  # noqa: ARG002
        self._require_key()
        data = _unwrap(
            self._http.json("GET", f"/api/v1/jobs/{remote_handle}"),
            default_message="Failed to read task status",
        )
        state = str(data.get("status") or "").lower()
        if state in _DONE_STATES:
            result_url = _result_url(data)
            if result_url is None:
                return PollResult(
                    state=RemoteState.FAILED,
                    phase=state,
                    error_message="Task completed without a result URL",
                )
            return PollResult(
                state=RemoteState.DONE,
                progress=100,
                phase=state,
                result_ref=result_url,
            )
        if state in _FAILED_STATES:
            return PollResult(
                state=RemoteState.FAILED,
                phase=state,
                error_message=str(data.get("error") or data.get("message") or "Processing failed"),
                error_status=_as_int(data.get("errorCode")),
            )
        return PollResult(
            state=RemoteState.RUNNING if state else RemoteState.PENDING,
            progress=clamp_progress(data.get("progress")),
            phase=state or None,
        )

    def fetch_result(self, kind: str, remote_handle: str) -> str:
        result = self.poll(kind, remote_handle)
        if result.state != RemoteState.DONE or result.result_ref is None:
            raise ProviderError(f"KIE task {remote_handle} has no result yet")
        return result.result_ref

    def cancel(self, kind: str, remote_handle: str) -> bool:  # noqa: ARG002
        return False

    def close(self) -> None:
        self._http.close()

    def _require_key(self) -> None:
        if not self.api_key:
            raise ProviderError("KIE AI API key not configured")


def _unwrap(body: dict[str, Any], *, default_message: str) -> dict[str, Any]:
    code = _as_int(body.get("code"))
    if code != 200:
        message = body.get("msg") or body.get("message") or default_message
        raise ProviderError(str(message), status_code=code)
    data = body.get("data")
    if not isinstance(data, dict):
        raise ProviderError("KIE response is missing data")
    return data


def _result_url(data: dict[str, Any]) -> str | None:
    output = data.get("output") if isinstance(data.get("output"), dict) else {}
    for candidate in (
        output.get("video_url"),
        output.get("url"),
        data.get("resultUrl"),
        output.get("videoUrl"),
    ):
        if candidate:
            return str(candidate)
    return None


def _as_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None
