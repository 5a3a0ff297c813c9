import allure
import pytest

from media_tasks.orchestrator.failure_classifier import (
    RetryPolicy,
    classify_failure,
    classify_provider_error,
    decide_failure,
)
from media_tasks.orchestrator.models import ErrorKind
from media_tasks.providers.base import ProviderError

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Failure Classification"),
]


@pytest.mark.parametrize(
    ("status_code", "message", "expected"),
    [
        (429, "slow down", ErrorKind.RATE_LIMIT),
        (None, "Rate limit exceeded. Please try again later.", ErrorKind.RATE_LIMIT),
        (400, "RESOURCE_EXHAUSTED: quota exceeded", ErrorKind.RATE_LIMIT),
        (401, "bad credentials", ErrorKind.AUTH_CONFIG),
        (403, "", ErrorKind.AUTH_CONFIG),
        (None, "ElevenLabs API key not configured", ErrorKind.AUTH_CONFIG),
        (None, "Invalid API key provided", ErrorKind.AUTH_CONFIG),
        (502, "bad gateway", ErrorKind.TRANSIENT_NETWORK),
        (None, "Connection reset by peer", ErrorKind.TRANSIENT_NETWORK),
        (None, "service temporarily unavailable", ErrorKind.TRANSIENT_NETWORK),
        (400, "video is corrupt", ErrorKind.INVALID_INPUT),
        (422, "missing field", ErrorKind.INVALID_INPUT),
        (404, "no such task", ErrorKind.PROVIDER_FATAL),
        (None, "content violates usage policy", ErrorKind.PROVIDER_FATAL),
        (None, "format not supported", ErrorKind.PROVIDER_FATAL),
        (None, "something odd happened", ErrorKind.UNKNOWN),
        (None, None, ErrorKind.UNKNOWN),
    ],
)
def test_classify_failure_rules(status_code, message, expected) -> None:
    assert classify_failure(status_code, message).kind == expected


def test_rule_order_prefers_rate_limit_over_auth_marker() -> None:
    result = classify_failure(429, "forbidden: too many requests")

    assert result.kind == ErrorKind.RATE_LIMIT
    assert result.matched_rule == "http_429"


def test_network_and_timeout_flags_are_transient() -> None:
    assert classify_failure(None, "boom", network=True).matched_rule == "network"
    assert classify_failure(None, "boom", timed_out=True).matched_rule == "timeout"


def test_classify_provider_error_uses_error_fields() -> None:
    error = ProviderError("HTTP 503: overloaded", status_code=503)

    result = classify_provider_error(error)

    assert result.kind == ErrorKind.TRANSIENT_NETWORK
    assert result.to_event_details()["matched_rule"] == "http_5xx"


def test_decide_failure_retryable_and_fatal_kinds() -> None:
    assert decide_failure(ErrorKind.RATE_LIMIT, 0).retry is True
    assert decide_failure(ErrorKind.TRANSIENT_NETWORK, 0).retry is True
    for kind in (
        ErrorKind.AUTH_CONFIG,
        ErrorKind.INVALID_INPUT,
        ErrorKind.PROVIDER_FATAL,
        ErrorKind.CANCELLED,
    ):
        decision = decide_failure(kind, 0)
        assert decision.retry is False
        assert decision.final_kind == kind


def test_unknown_is_retried_once_then_fatal() -> None:
    first = decide_failure(ErrorKind.UNKNOWN, 0)
    assert first.retry is True
    assert first.final_kind == ErrorKind.UNKNOWN
    assert first.unknown_error_count == 1

    second = decide_failure(ErrorKind.UNKNOWN, first.unknown_error_count)
    assert second.retry is False
    assert second.final_kind == ErrorKind.PROVIDER_FATAL
    assert second.unknown_error_count == 2


def test_retry_policy_backoff_is_exponential_and_capped() -> None:
    policy = RetryPolicy(base_seconds=60, max_seconds=300)

    assert [policy.delay_seconds(count) for count in range(5)] == [60, 120, 240, 300, 300]
