"""Tests for retry classification and backoff."""

import random
from datetime import datetime, timedelta, timezone

import pytest

from taskwright.backoff import RetryPolicy, compute_backoff
from taskwright.config import BackoffConfig
from taskwright.contracts import ErrorClassification, StepFailure
from taskwright.persistence.models import WorkflowStep

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _step(attempts=0, retry_limit=3, retryable=True):
    return WorkflowStep(
        step_id="s1", task_id="t1", name="fetch", position=0,
        attempts=attempts, retry_limit=retry_limit, retryable=retryable,
    )


def _policy(**overrides):
    return RetryPolicy(BackoffConfig(jitter_ratio=0.0, **overrides))


def test_exponential_growth_without_jitter():
    delays = [compute_backoff(n, base=1.0, jitter=0.0) for n in range(5)]
    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0]


def test_delay_is_clamped_to_maximum():
    assert compute_backoff(20, base=1.0, max_delay=300.0, jitter=0.0) == 300.0
    assert compute_backoff(20, base=1.0, max_delay=300.0, jitter=0.5) <= 300.0


def test_jitter_stays_within_ratio():
    rng = random.Random(7)
    for _ in range(50):
        delay = compute_backoff(3, base=1.0, jitter=0.1, rng=rng)
        assert 7.2 <= delay <= 8.8


def test_unclassified_errors_are_retryable():
    classification, retry_after = RetryPolicy.classify(TimeoutError("slow"))
    assert classification == ErrorClassification.RETRYABLE
    assert retry_after is None


def test_retryable_failure_schedules_backoff():
    decision = _policy().decide(_step(attempts=1), ConnectionError("reset"), now=NOW)
    assert decision.retry
    assert decision.attempts == 2
    assert decision.delay_seconds == 2.0
    assert decision.backoff_until == NOW + timedelta(seconds=2)
    assert decision.backoff_type == "exponential"
    assert decision.metadata()["retry_exhausted"] is False


def test_last_attempt_is_exhausted():
    decision = _policy().decide(_step(attempts=2, retry_limit=3), ConnectionError("reset"), now=NOW)
    assert not decision.retry
    assert decision.exhausted
    assert decision.attempts == 3
    assert decision.classification == ErrorClassification.RETRYABLE
    metadata = decision.metadata()
    assert metadata["classification"] == "retryable"
    assert metadata["retry_exhausted"] is True
    assert "backoff_until" not in metadata


def test_permanent_failure_is_never_retried():
    decision = _policy().decide(_step(), StepFailure.permanent("bad input"), now=NOW)
    assert not decision.retry
    assert not decision.exhausted
    assert decision.classification == ErrorClassification.PERMANENT
    assert "bad input" in decision.error


def test_non_retryable_step_fails_permanently():
    decision = _policy().decide(_step(retryable=False), ConnectionError("reset"), now=NOW)
    assert decision.classification == ErrorClassification.PERMANENT
    assert not decision.retry


def test_server_requested_delay_overrides_exponential():
    policy = _policy(max_delay_seconds=60.0)
    decision = policy.decide(_step(), StepFailure.retryable("throttled", retry_after=42), now=NOW)
    assert decision.delay_seconds == 42.0
    assert decision.backoff_type == "server_requested"

    clamped = policy.decide(_step(), StepFailure.retryable("throttled", retry_after=600), now=NOW)
    assert clamped.delay_seconds == 60.0


@pytest.mark.parametrize("limit", [0, 1])
def test_tiny_retry_limits_exhaust_immediately(limit):
    decision = _policy().decide(_step(retry_limit=limit), ConnectionError("reset"), now=NOW)
    assert decision.exhausted
    assert decision.attempts == 1
