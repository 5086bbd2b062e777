"""
Tests for RetryPolicy and attempt_with_policy.

Verifies linear backoff (no delay before the first attempt), retry
exhaustion and that non-retryable errors propagate.
"""

import pytest
from unittest.mock import Mock, patch

from core.retry import AttemptOutcome, RetryPolicy, attempt_with_policy, linear_backoff


class TestLinearBackoff:
    """Delay schedule"""

    def test_delay_grows_linearly(self):
        assert linear_backoff(5.0, 2) == 10.0
        assert linear_backoff(5.0, 3) == 15.0

    def test_no_delay_before_first_attempt(self):
        policy = RetryPolicy(max_attempts=3, base_delay=5.0)
        assert policy.delay_before(1) == 0.0
        assert policy.delay_before(2) == 10.0
        assert policy.delay_before(3) == 15.0

    def test_custom_backoff(self):
        policy = RetryPolicy(base_delay=1.0, backoff=lambda base, attempt: base * 2 ** attempt)
        assert policy.delay_before(3) == 8.0


class TestAttemptWithPolicy:
    """Retry loop behaviour"""

    def test_first_try_success_never_sleeps(self):
        with patch('time.sleep') as mock_sleep:
            outcome = attempt_with_policy(lambda: 42, RetryPolicy())

        assert outcome.succeeded
        assert outcome.value == 42
        assert outcome.attempts == 1
        assert outcome.retries == 0
        mock_sleep.assert_not_called()

    def test_succeeds_after_failures(self):
        operation = Mock(side_effect=[ValueError("boom"), ValueError("boom"), "ok"])
        failures = []

        with patch('time.sleep') as mock_sleep:
            outcome = attempt_with_policy(
                operation,
                RetryPolicy(max_attempts=3, base_delay=5.0),
                on_failure=lambda attempt, exc: failures.append(attempt),
            )

        assert outcome.succeeded
        assert outcome.value == "ok"
        assert outcome.attempts == 3
        assert outcome.retries == 2
        assert failures == [1, 2]
        assert [c.args[0] for c in mock_sleep.call_args_list] == [10.0, 15.0]

    def test_exhausted_attempts_report_failure(self):
        operation = Mock(side_effect=RuntimeError("down"))
        sleeps = []

        outcome = attempt_with_policy(operation, RetryPolicy(max_attempts=3), sleep=sleeps.append)

        assert isinstance(outcome, AttemptOutcome)
        assert not outcome.succeeded
        assert outcome.attempts == 3
        assert len(outcome.errors) == 3
        assert str(outcome.last_error) == "down"
        assert operation.call_count == 3
        assert len(sleeps) == 2

    def test_non_retryable_error_propagates(self):
        policy = RetryPolicy(max_attempts=5, retry_on=(ConnectionError,))
        operation = Mock(side_effect=KeyError("bad payload"))

        with pytest.raises(KeyError):
            attempt_with_policy(operation, policy, sleep=lambda _: None)
        assert operation.call_count == 1
