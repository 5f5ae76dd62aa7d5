"""Tests for the retry policy."""

from unittest.mock import MagicMock

import pytest

from flake.retry import RetryPolicy


def test_delays_grow_and_are_capped() -> None:
    """Verifies the exponential schedule honours the cap and the attempt count."""
    policy = RetryPolicy(max_attempts=5, initial_backoff=1.0, multiplier=3.0, max_backoff=5.0)
    assert list(policy.delays()) == [1.0, 3.0, 5.0, 5.0]


def test_call_retries_then_succeeds() -> None:
    """Verifies that a retryable failure is retried after sleeping."""
    sleep = MagicMock()
    func = MagicMock(side_effect=[ConnectionError("down"), "ok"])
    policy = RetryPolicy(max_attempts=3, initial_backoff=2.0, sleep=sleep)

    assert policy.call(func, retry_on=(ConnectionError,)) == "ok"
    assert func.call_count == 2
    sleep.assert_called_once_with(2.0)


def test_call_gives_up_after_max_attempts() -> None:
    """Verifies that the last error propagates once attempts are exhausted."""
    sleep = MagicMock()
    func = MagicMock(side_effect=ConnectionError("down"))
    policy = RetryPolicy(max_attempts=3, initial_backoff=1.0, sleep=sleep)

    with pytest.raises(ConnectionError):
        policy.call(func, retry_on=(ConnectionError,))

    assert func.call_count == 3
    assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]


def test_call_does_not_retry_other_errors() -> None:
    """Verifies that non-retryable errors propagate on the first attempt."""
    sleep = MagicMock()
    func = MagicMock(side_effect=ValueError("bad"))
    policy = RetryPolicy(sleep=sleep)

    with pytest.raises(ValueError):
        policy.call(func, retry_on=(ConnectionError,))

    assert func.call_count == 1
    sleep.assert_not_called()
