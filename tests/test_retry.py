"""Tests for backoff and retry helpers."""

from unittest.mock import MagicMock, call

import pytest

from topic_metadata.exceptions import (
    ApiError,
    RateLimitError,
    RetryableStoreError,
    StoreErrorKind,
    TransientApiError,
)
from topic_metadata.retry import (
    RetryPolicy,
    backoff_delay,
    retry_with_backoff,
    with_retry,
)


class TestBackoffDelay:
    """Tests for the shared delay schedule."""

    def test_doubles_per_attempt(self):
        """Should follow base * 2^attempt."""
        assert [backoff_delay(a, initial_delay=1.0, max_delay=100.0) for a in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_caps_at_max_delay(self):
        """Should never exceed max_delay."""
        assert backoff_delay(10, initial_delay=1.0, max_delay=30.0) == 30.0

    def test_rejects_negative_attempt(self):
        """Should reject a negative attempt number."""
        with pytest.raises(ValueError):
            backoff_delay(-1)


class TestWithRetry:
    """Tests for the with_retry decorator."""

    def test_returns_first_success(self, no_sleep):
        """Should not sleep when the first call succeeds."""
        func = MagicMock(return_value="ok")
        func.__name__ = "func"

        assert with_retry(max_attempts=3)(func)() == "ok"
        assert func.call_count == 1
        no_sleep.assert_not_called()

    def test_retries_transient_errors_with_backoff(self, no_sleep):
        """Should sleep 1s then 2s between three attempts."""
        func = MagicMock(side_effect=[TransientApiError("t1"), TransientApiError("t2"), "ok"])
        func.__name__ = "func"

        assert with_retry(max_attempts=3, initial_delay=1.0)(func)() == "ok"
        assert func.call_count == 3
        assert no_sleep.call_args_list == [call(1.0), call(2.0)]

    def test_reraises_after_max_attempts(self, no_sleep):
        """Should raise the last error once attempts are exhausted."""
        func = MagicMock(side_effect=TransientApiError("down"))
        func.__name__ = "func"

        with pytest.raises(TransientApiError):
            with_retry(max_attempts=3)(func)()
        assert func.call_count == 3
        assert no_sleep.call_count == 2

    def test_does_not_retry_other_errors(self, no_sleep):
        """Should propagate non-retryable errors immediately."""
        func = MagicMock(side_effect=ApiError("bad request"))
        func.__name__ = "func"

        with pytest.raises(ApiError):
            with_retry(max_attempts=3)(func)()
        assert func.call_count == 1
        no_sleep.assert_not_called()

    def test_honors_retry_after_hint(self, no_sleep):
        """Should wait the provider's retry_after instead of the schedule."""
        func = MagicMock(side_effect=[RateLimitError(provider="openai", retry_after=7), "ok"])
        func.__name__ = "func"

        with_retry(max_attempts=2, initial_delay=1.0, max_delay=30.0)(func)()
        no_sleep.assert_called_once_with(7.0)

    def test_calls_on_retry_callback(self):
        """Should report each retry with attempt number and delay."""
        on_retry = MagicMock()
        error = TransientApiError("t")
        func = MagicMock(side_effect=[error, "ok"])
        func.__name__ = "func"

        with_retry(max_attempts=2, initial_delay=0.5, on_retry=on_retry)(func)()
        on_retry.assert_called_once_with(error, 1, 0.5)

    def test_rejects_zero_attempts(self):
        """Should refuse a policy that never calls the function."""
        with pytest.raises(ValueError):
            with_retry(max_attempts=0)


class TestRetryPolicy:
    """Tests for the RetryPolicy value object."""

    def test_delay_for_matches_schedule(self):
        """Should expose the same capped schedule as backoff_delay."""
        policy = RetryPolicy(initial_delay=1.0, max_delay=5.0)
        assert [policy.delay_for(a) for a in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_call_retries_only_configured_exceptions(self):
        """Should retry the store error filter but not plain API errors."""
        policy = RetryPolicy(max_attempts=2, retryable_exceptions=(RetryableStoreError,))
        func = MagicMock(side_effect=[RetryableStoreError("upsert", StoreErrorKind.TIMEOUT), "ok"])
        func.__name__ = "func"
        assert policy.call(func, 1, key="v") == "ok"
        func.assert_called_with(1, key="v")

        failing = MagicMock(side_effect=TransientApiError("t"))
        failing.__name__ = "failing"
        with pytest.raises(TransientApiError):
            policy.call(failing)
        assert failing.call_count == 1

    def test_retry_with_backoff_passes_arguments(self):
        """Should forward positional and keyword arguments."""
        func = MagicMock(return_value=3)
        func.__name__ = "func"
        assert retry_with_backoff(func, 1, 2, max_attempts=2, extra=True) == 3
        func.assert_called_once_with(1, 2, extra=True)
