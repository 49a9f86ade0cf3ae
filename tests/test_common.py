"""Tests for common.py retry and polling helpers."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import RetryError, poll_until, retry


class TestRetry:
    """Tests for retry."""

    def test_immediate_success(self, clock):
        retry(10, 3, lambda: True)
        assert clock.sleeps == []

    def test_succeeds_after_attempts(self, clock):
        results = iter([False, False, True])

        retry(10, 3, lambda: next(results))

        assert clock.sleeps == [10, 10]

    def test_exhausted(self, clock):
        calls = []

        def never():
            calls.append(1)
            return False

        with pytest.raises(RetryError) as exc_info:
            retry(2, 4, never)

        assert len(calls) == 5
        assert clock.sleeps == [2, 2, 2, 2]
        assert exc_info.value.attempts == 5
        assert exc_info.value.last_error is None

    def test_retry_on_keeps_last_error(self):
        errors = iter([ConnectionError('refused'), ConnectionError('reset')])

        def flaky():
            raise next(errors)

        with pytest.raises(RetryError) as exc_info:
            retry(1, 1, flaky, retry_on=(ConnectionError,))

        assert str(exc_info.value.last_error) == 'reset'
        assert 'reset' in str(exc_info.value)

    def test_retry_on_then_success(self):
        results = iter([ConnectionError('refused'), True])

        def flaky():
            value = next(results)
            if isinstance(value, Exception):
                raise value
            return value

        retry(1, 3, flaky, retry_on=(ConnectionError,))

    def test_other_errors_propagate(self, clock):
        def broken():
            raise KeyError('boom')

        with pytest.raises(KeyError):
            retry(1, 3, broken, retry_on=(ConnectionError,))

        assert clock.sleeps == []

    @pytest.mark.parametrize('max_retries', [0, -1])
    def test_invalid_max_retries(self, max_retries):
        with pytest.raises(ValueError):
            retry(1, max_retries, lambda: True)


class TestPollUntil:
    """Tests for poll_until."""

    def test_immediate(self, clock):
        assert poll_until(lambda: True, timeout=10, interval=1) is True
        assert clock.sleeps == []

    def test_not_immediate_sleeps_first(self, clock):
        assert poll_until(lambda: True, timeout=10, interval=1, immediate=False) is True
        assert clock.sleeps == [1]

    def test_eventually(self, clock):
        results = iter([False, False, True])

        assert poll_until(lambda: next(results), timeout=10, interval=2) is True
        assert clock.sleeps == [2, 2]

    def test_timeout(self, clock):
        start = clock.now

        assert poll_until(lambda: False, timeout=10, interval=3) is False
        assert clock.now - start <= 10

    def test_exception_ends_poll(self):
        def broken():
            raise RuntimeError('boom')

        with pytest.raises(RuntimeError):
            poll_until(broken, timeout=10, interval=1)
