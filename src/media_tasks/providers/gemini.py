"""Gemini video translation adapter (synchronous provider)."""

from __future__ import annotations

import base64
import logging
import mimetypes
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from uuid import uuid4

import httpx

from media_tasks.orchestrator.models import RemoteState
from media_tasks.providers.base import PollResult, ProviderError, SubmitResult
from media_tasks.providers.http import ProviderHttpClient

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTION = (
    "Transcribe the speech in this video and translate it into {target_language}. "
    "Localize idioms and cultural references for a native audience. "
    "Return only the translated transcript with one paragraph per speaker turn."
)


class GeminiTranslateAdapter:
    """One ``generateContent`` call; the answer is stored locally and returned inline."""

    name = "gemini"

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_key: str,
        base_url: str,
        model: str,
        results_dir: Path,
        timeout_seconds: float,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.results_dir = results_dir
        self._http = ProviderHttpClient(
            base_url=base_url,
            timeout_seconds=timeout_seconds,
            transport=transport,
        )

    def validate_input(self, kind: str, input_ref: str) -> str | None:  # noqa: ARG002
        if not Path(input_ref).is_file():
            return f"Input video file not found: {input_ref}"
        return None

    def submit(self, kind: str, input_ref: str, options: Mapping[str, str]) -> SubmitResult:  # noqa: ARG002
        if not self.api_key:
            raise ProviderError("Gemini API key not configured")
        source = Path(input_ref)
        mime_type = mimetypes.guess_type(source.name)[0] or "video/mp4"
        instruction = options.get("instruction") or DEFAULT_INSTRUCTION.format(
            target_language=options.get("target_language", "English"),
        )
        payload = self._http.json(
            "POST",
            f"/v1beta/models/{self.model}:generateContent",
            params={"key": self.api_key},
            json={
                "contents": [
                    {
                        "parts": [
                            {
                                "inlineData": {
                                    "mimeType": mime_type,
                                    "data": base64.b64encode(source.read_bytes()).decode("ascii"),
                                },
                            },
                            {"text": instruction},
                        ],
                    },
                ],
                "generationConfig": {"temperature": 0.3, "maxOutputTokens": 8192},
            },
        )
        text = _extract_text(payload)

        handle = uuid4().hex
        self.results_dir.mkdir(parents=True, exist_ok=True)
        target = self._result_path(handle)
        target.write_text(text, encoding="utf-8")
        logger.info("Gemini translation %s stored at %s", handle, target)
        return SubmitResult(remote_handle=handle, result_ref=str(target))

    def poll(self, kind: str, remote_handle: str) -> PollResult:  # noqa: ARG002
        target = self._result_path(remote_handle)
        if target.exists():
            return PollResult(state=RemoteState.DONE, progress=100, result_ref=str(target))
        return PollResult(
            state=RemoteState.FAILED,
            error_message=f"Translation result is missing: {target}",
        )

    def fetch_result(self, kind: str, remote_handle: str) -> str:  # noqa: ARG002
        target = self._result_path(remote_handle)
        if not target.exists():
            raise ProviderError(f"Translation result is missing: {target}")
        return str(target)

    def cancel(self, kind: str, remote_handle: str) -> bool:  # noqa: ARG002
        return False

    def close(self) -> None:
        self._http.close()

    def _result_path(self, handle: str) -> Path:
        return self.results_dir / f"{handle}.txt"


def _extract_text(payload: dict[str, Any]) -> str:
    feedback = payload.get("promptFeedback")
    if isinstance(feedback, dict) and feedback.get("blockReason"):
        raise ProviderError(f"Request blocked by safety policy: {feedback['blockReason']}")

    parts: list[str] = []
    for candidate in payload.get("candidates") or []:
        content = candidate.get("content") if isinstance(candidate, dict) else None
        for part in (content or {}).get("parts") or []:
            if isinstance(part, dict) and part.get("text"):
                parts.append(str(part["text"]))
        if parts:
            break
    text = "".join(parts).strip()
    if not text:
        raise ProviderError("Gemini returned an empty response")
    return text
