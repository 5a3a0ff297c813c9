"""ElevenLabs dubbing adapter."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path

import httpx

from media_tasks.orchestrator.models import RemoteState
from media_tasks.providers.base import PollResult, ProviderError, SubmitResult
from media_tasks.providers.http import ProviderHttpClient

logger = logging.getLogger(__name__)

PHASE_PROGRESS: dict[str, int] = {
    "detecting": 20,
    "transcribing": 40,
    "translating": 60,
    "dubbing": 80,
    "dubbed": 100,
}
DEFAULT_TARGET_LANG = "en"


class ElevenLabsDubbingAdapter:
    """Video dubbing through ``/v1/dubbing``; the remote handle is the dubbing id."""

    name = "elevenlabs"

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        results_dir: Path,
        timeout_seconds: float,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.results_dir = results_dir
        self._http = ProviderHttpClient(
            base_url=base_url,
            timeout_seconds=timeout_seconds,
            headers={"xi-api-key": api_key},
            transport=transport,
        )

    def validate_input(self, kind: str, input_ref: str) -> str | None:  # noqa: ARG002
        if _is_http_url(input_ref):
            return None
        if not Path(input_ref).is_file():
            return f"Input is neither an http(s) URL nor an existing file: {input_ref}"
        return None

    def submit(self, kind: str, input_ref: str, options: Mapping[str, str]) -> SubmitResult:  # noqa: ARG002
        self._require_key()
        data = {
            "source_lang": options.get("source_lang", "auto"),
            "target_lang": options.get("target_lang", DEFAULT_TARGET_LANG),
            "name": options.get("name", "media-tasks dubbing"),
            "watermark": "false",
            "num_speakers": "0",
        }
        if _is_http_url(input_ref):
            data["source_url"] = input_ref
            payload = self._http.json("POST", "/v1/dubbing", data=data)
        else:
            source = Path(input_ref)
            with source.open("rb") as handle:
                payload = self._http.json(
                    "POST",
                    "/v1/dubbing",
                    data=data,
                    files={"file": (source.name, handle, "video/mp4")},
                )

        dubbing_id = payload.get("dubbing_id")
        if not dubbing_id:
            raise ProviderError("ElevenLabs response is missing dubbing_id")
        expected = payload.get("expected_duration_sec")
        logger.info("ElevenLabs dubbing %s started (%s)", dubbing_id, data["target_lang"])
        return SubmitResult(
            remote_handle=str(dubbing_id),
            expected_duration_seconds=int(expected) if isinstance(expected, int | float) else None,
        )

    def poll(self, kind: str, remote_handle: str) -> PollResult:  # noqa: ARG002
        self._require_key()
        payload = self._http.json("GET", f"/v1/dubbing/{remote_handle}")
        status = str(payload.get("status") or "").lower()
        if status == "dubbed":
            return PollResult(state=RemoteState.DONE, progress=100, phase=status)
        if status == "failed":
            return PollResult(
                state=RemoteState.FAILED,
                phase=status,
                error_message=str(payload.get("error") or "ElevenLabs dubbing failed"),
            )
        return PollResult(
            state=RemoteState.RUNNING if status else RemoteState.PENDING,
            progress=PHASE_PROGRESS.get(status),
            phase=status or None,
        )

    def fetch_result(self, kind: str, remote_handle: str) -> str:  # noqa: ARG002
        self._require_key()
        metadata = self._http.json("GET", f"/v1/dubbing/{remote_handle}")
        languages = metadata.get("target_languages") or [DEFAULT_TARGET_LANG]
        language = str(languages[0])
        response = self._http.request("GET", f"/v1/dubbing/{remote_handle}/audio/{language}")

        self.results_dir.mkdir(parents=True, exist_ok=True)
        target = self.results_dir / f"{remote_handle}_{language}.mp3"
        target.write_bytes(response.content)
        return str(target)

    def cancel(self, kind: str, remote_handle: str) -> bool:  # noqa: ARG002
        self._require_key()
        self._http.request("DELETE", f"/v1/dubbing/{remote_handle}")
        return True

    def close(self) -> None:
        self._http.close()

    def _require_key(self) -> None:
        if not self.api_key:
            raise ProviderError("ElevenLabs API key not configured")


def _is_http_url(value: str) -> bool:
    return value.startswith(("http://", "https://"))
