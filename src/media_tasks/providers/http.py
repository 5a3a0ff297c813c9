"""Shared synchronous HTTP client for provider adapters."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from media_tasks.providers.base import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_USER_AGENT = "media-tasks/0.1 (+https://github.com/andgineer/media-tasks)"
_ERROR_BODY_MAX_CHARS = 500


class ProviderHttpClient:
    """httpx wrapper with bounded timeout that raises ``ProviderError`` on failure."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._timeout = httpx.Timeout(timeout_seconds, connect=10.0)
        base_headers = {"User-Agent": DEFAULT_USER_AGENT}
        if headers:
            base_headers.update(headers)
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=self._timeout,
            headers=base_headers,
            transport=transport,
            follow_redirects=True,
        )

    def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request; non-2xx responses and transport failures raise."""

        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling %s %s", method, path)
            raise ProviderError(f"Request timed out: {method} {path}", timed_out=True) from error
        except httpx.TransportError as error:
            logger.warning("Network error calling %s %s: %s", method, path, error)
            raise ProviderError(f"Network error: {error}", network=True) from error

        if not response.is_success:
            body = response.text[:_ERROR_BODY_MAX_CHARS]
            raise ProviderError(
                f"HTTP {response.status_code}: {body}".strip(),
                status_code=response.status_code,
            )
        return response

    def json(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = self.request(method, path, **kwargs)
        try:
            payload = response.json()
        except ValueError as error:
            raise ProviderError(
                f"Provider returned non-JSON body for {method} {path}",
                status_code=response.status_code,
            ) from error
        if not isinstance(payload, dict):
            raise ProviderError(f"Provider returned unexpected JSON for {method} {path}")
        return payload

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> ProviderHttpClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
