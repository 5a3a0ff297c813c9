"""Deterministic provider failure classification and retry policy."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from media_tasks.orchestrator.models import ErrorKind

if TYPE_CHECKING:
    from media_tasks.providers.base import ProviderError

FAILURE_CLASSIFIER_VERSION = 1

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limited",
    "too many requests",
    "resource_exhausted",
    "quota",
)
_AUTH_CONFIG_PATTERNS: tuple[str, ...] = (
    "not configured",
    "invalid api key",
    "invalid key",
    "unauthorized",
    "forbidden",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "connection reset",
    "timed out",
    "temporarily unavailable",
    "network error",
)
_PROVIDER_FATAL_PATTERNS: tuple[str, ...] = (
    "policy",
    "unsupported",
    "not supported",
)

_AUTH_STATUS_CODES = frozenset({401, 403})
_INVALID_INPUT_STATUS_CODES = frozenset({400, 422})
_FATAL_STATUS_CODES = frozenset({404, 410})

RETRYABLE_KINDS = frozenset({ErrorKind.RATE_LIMIT, ErrorKind.TRANSIENT_NETWORK})


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    kind: ErrorKind
    matched_rule: str
    matched_pattern: str | None = None

    def to_event_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "error_kind": self.kind.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


@dataclass(slots=True)
class FailureDecision:
    """What to do with a classified failure."""

    retry: bool
    final_kind: ErrorKind
    unknown_error_count: int


def classify_failure(
    status_code: int | None,
    message: str | None,
    *,
    network: bool = False,
    timed_out: bool = False,
) -> FailureClassification:
    """Map a raw provider failure onto the error taxonomy.

    Rules are evaluated in order and the first match wins, so a 429 carrying
    "forbidden" in its body is still a rate limit.
    """

    haystack = (message or "").lower()

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if status_code == 429 or pattern is not None:
        return FailureClassification(
            kind=ErrorKind.RATE_LIMIT,
            matched_rule="http_429" if status_code == 429 else "rate_limit_marker",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _AUTH_CONFIG_PATTERNS)
    if status_code in _AUTH_STATUS_CODES or pattern is not None:
        return FailureClassification(
            kind=ErrorKind.AUTH_CONFIG,
            matched_rule=(
                f"http_{status_code}" if status_code in _AUTH_STATUS_CODES else "auth_marker"
            ),
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    is_server_error = status_code is not None and 500 <= status_code <= 599
    if is_server_error or network or timed_out or pattern is not None:
        if is_server_error:
            rule = "http_5xx"
        elif timed_out:
            rule = "timeout"
        elif network:
            rule = "network"
        else:
            rule = "transient_marker"
        return FailureClassification(
            kind=ErrorKind.TRANSIENT_NETWORK,
            matched_rule=rule,
            matched_pattern=pattern,
        )

    if status_code in _INVALID_INPUT_STATUS_CODES:
        return FailureClassification(
            kind=ErrorKind.INVALID_INPUT,
            matched_rule=f"http_{status_code}",
        )

    pattern = _first_match(haystack, _PROVIDER_FATAL_PATTERNS)
    if status_code in _FATAL_STATUS_CODES or pattern is not None:
        return FailureClassification(
            kind=ErrorKind.PROVIDER_FATAL,
            matched_rule=(
                f"http_{status_code}" if status_code in _FATAL_STATUS_CODES else "fatal_marker"
            ),
            matched_pattern=pattern,
        )

    return FailureClassification(kind=ErrorKind.UNKNOWN, matched_rule="fallback_unknown")


def classify_provider_error(error: ProviderError) -> FailureClassification:
    return classify_failure(
        error.status_code,
        str(error),
        network=error.network,
        timed_out=error.timed_out,
    )


def decide_failure(kind: ErrorKind, unknown_error_count: int) -> FailureDecision:
    """Apply retry policy; an unknown failure is retried once, then treated as fatal."""

    if kind in RETRYABLE_KINDS:
        return FailureDecision(
            retry=True,
            final_kind=kind,
            unknown_error_count=unknown_error_count,
        )
    if kind == ErrorKind.UNKNOWN:
        seen = unknown_error_count + 1
        if seen >= 2:
            return FailureDecision(
                retry=False,
                final_kind=ErrorKind.PROVIDER_FATAL,
                unknown_error_count=seen,
            )
        return FailureDecision(retry=True, final_kind=kind, unknown_error_count=seen)
    return FailureDecision(retry=False, final_kind=kind, unknown_error_count=unknown_error_count)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None


@dataclass(slots=True)
class RetryPolicy:
    """Exponential backoff for parked jobs."""

    base_seconds: int = 60
    max_seconds: int = 1_800

    def delay_seconds(self, retry_count: int) -> int:
        return min(self.max_seconds, self.base_seconds * 2 ** max(0, retry_count))
