from __future__ import annotations

import random

import allure
import pytest

from workflow_pilot.orchestrator.backend.base import ProviderError, ProviderErrorCategory
from workflow_pilot.orchestrator.errors import StepFailure
from workflow_pilot.orchestrator.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    HandledError,
    backoff_schedule,
    classify,
)
from workflow_pilot.orchestrator.models import Disposition, ErrorCategory
from workflow_pilot.orchestrator.retry import RetryPolicy, call_with_retry

pytestmark = [
    allure.epic("Retry & Error Classifier"),
    allure.feature("Classification and Backoff"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


@pytest.mark.parametrize(
    ("error", "disposition", "category"),
    [
        (
            ProviderError("connection reset", category=ProviderErrorCategory.TRANSIENT),
            Disposition.RETRYABLE,
            ErrorCategory.TRANSPORT,
        ),
        (
            ProviderError("HTTP 429", category=ProviderErrorCategory.RATE_LIMIT),
            Disposition.RETRYABLE,
            ErrorCategory.RATE_LIMIT,
        ),
        (
            ProviderError("slow", category=ProviderErrorCategory.TIMEOUT),
            Disposition.RETRYABLE,
            ErrorCategory.TIMEOUT,
        ),
        (
            ProviderError("HTTP 401", category=ProviderErrorCategory.AUTH),
            Disposition.ESCALATE,
            ErrorCategory.AUTH,
        ),
        (TimeoutError("read"), Disposition.RETRYABLE, ErrorCategory.TIMEOUT),
        (ConnectionResetError("peer"), Disposition.RETRYABLE, ErrorCategory.TRANSPORT),
        (ValueError("bad payload"), Disposition.ESCALATE, ErrorCategory.MALFORMED_INPUT),
        (HandledError("logged upstream"), Disposition.RECOVERABLE, ErrorCategory.HANDLED),
        (RuntimeError("boom"), Disposition.ESCALATE, ErrorCategory.UNKNOWN),
    ],
)
def test_classify_by_error_category(
    error: BaseException,
    disposition: Disposition,
    category: ErrorCategory,
) -> None:
    classified = classify(error)

    assert classified.disposition is disposition
    assert classified.category is category


def test_classify_prefers_billing_text_over_transient_category() -> None:
    error = ProviderError("Quota exceeded for this project", category=ProviderErrorCategory.TRANSIENT)

    classified = classify(error)

    assert classified.disposition is Disposition.ESCALATE
    assert classified.category is ErrorCategory.BILLING_OR_QUOTA
    assert classified.matched_pattern == "quota"


def test_classify_maps_rate_limit_text_of_plain_errors() -> None:
    classified = classify(RuntimeError("HTTP 429 too many requests, please retry"))

    assert classified.disposition is Disposition.RETRYABLE
    assert classified.matched_rule == "rate_limit"
    assert classified.to_details()["classifier_version"] == 1


def test_retryable_error_escalates_after_last_attempt() -> None:
    error = ProviderError("busy", category=ProviderErrorCategory.TRANSIENT)

    assert classify(error, attempt=2, max_attempts=3).disposition is Disposition.RETRYABLE
    exhausted = classify(error, attempt=3, max_attempts=3)
    assert exhausted.disposition is Disposition.ESCALATE
    assert exhausted.matched_rule == "retries_exhausted"


def test_backoff_schedule_is_exponential_and_capped() -> None:
    assert [backoff_schedule(attempt) for attempt in (1, 2, 3)] == [1.0, 2.0, 4.0]
    assert backoff_schedule(10, max_seconds=5.0) == 5.0
    with pytest.raises(ValueError, match="attempt"):
        backoff_schedule(0)


def test_backoff_schedule_jitter_stays_within_twenty_percent() -> None:
    rng = random.Random(7)

    delays = [backoff_schedule(2, jitter=True, rng=rng) for _ in range(50)]

    assert all(1.6 <= delay <= 2.4 for delay in delays)
    assert len(set(delays)) > 1


def test_retry_policy_schedule_lists_delays_between_attempts() -> None:
    assert RetryPolicy(max_attempts=4).schedule() == [1.0, 2.0, 4.0]


def test_call_with_retry_sleeps_per_schedule_then_succeeds() -> None:
    sleeps: list[float] = []
    attempts: list[int] = []

    def _operation(attempt: int) -> str:
        attempts.append(attempt)
        if attempt < 3:
            raise ProviderError("network error", category=ProviderErrorCategory.TRANSIENT)
        return "ok"

    result = call_with_retry(_operation, policy=RetryPolicy(), sleep=sleeps.append)

    assert result == "ok"
    assert attempts == [1, 2, 3]
    assert sleeps == [1.0, 2.0]


def test_call_with_retry_raises_step_failure_when_attempts_exhausted() -> None:
    sleeps: list[float] = []

    def _operation(attempt: int) -> str:
        raise ProviderError("network error", category=ProviderErrorCategory.TRANSIENT)

    with pytest.raises(StepFailure) as raised:
        call_with_retry(_operation, policy=RetryPolicy(max_attempts=3), sleep=sleeps.append)

    assert raised.value.attempts == 3
    assert raised.value.classification.disposition is Disposition.ESCALATE
    assert isinstance(raised.value.__cause__, ProviderError)
    assert sleeps == [1.0, 2.0]


def test_call_with_retry_does_not_retry_escalations_or_after_stop() -> None:
    sleeps: list[float] = []
    calls: list[int] = []

    def _auth(attempt: int) -> str:
        calls.append(attempt)
        raise ProviderError("HTTP 401", category=ProviderErrorCategory.AUTH)

    with pytest.raises(StepFailure):
        call_with_retry(_auth, policy=RetryPolicy(), sleep=sleeps.append)
    assert calls == [1]

    def _transient(attempt: int) -> str:
        calls.append(attempt)
        raise ProviderError("busy", category=ProviderErrorCategory.TRANSIENT)

    calls.clear()
    with pytest.raises(StepFailure):
        call_with_retry(_transient, policy=RetryPolicy(), sleep=sleeps.append, should_stop=lambda: True)
    assert calls == [1]
    assert sleeps == []
