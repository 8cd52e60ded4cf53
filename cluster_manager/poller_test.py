import time

import pytest

from cluster_manager.errors import ConvergenceTimeoutError
from cluster_manager.poller import wait_until


class TestWaitUntil:
    """Tests for the timeout-bounded readiness poller."""

    def test_returns_immediately_when_predicate_holds(self):
        """A predicate that holds on the first call is evaluated once"""
        calls = []

        def predicate():
            calls.append(1)
            return True

        result = wait_until(predicate, timeout=5, interval=1, quiet=True)

        assert result.ready
        assert bool(result) is True
        assert result.attempts == 1
        assert len(calls) == 1
        assert result.elapsed < 1

    def test_stops_polling_at_first_success(self):
        """Polling stops as soon as the predicate first holds"""
        outcomes = iter([False, False, True, False])

        result = wait_until(lambda: next(outcomes), timeout=5, interval=0.01, quiet=True)

        assert result.ready
        assert result.attempts == 3

    def test_never_true_predicate_is_bounded(self):
        """A predicate that never holds returns not-ready within timeout + interval"""
        timeout, interval = 0.3, 0.05
        start = time.monotonic()

        result = wait_until(lambda: False, timeout=timeout, interval=interval, description="never", quiet=True)

        elapsed = time.monotonic() - start
        assert not result.ready
        assert result.attempts >= 2
        assert elapsed <= timeout + interval + 0.25

    def test_probe_errors_count_as_not_ready(self):
        """Probe exceptions from a still-starting resource are treated as not ready"""

        def predicate():
            raise OSError("connection refused")

        result = wait_until(predicate, timeout=0.1, interval=0.02, quiet=True)

        assert not result.ready
        assert result.last_error == "connection refused"

    def test_unexpected_errors_propagate(self):
        """Errors outside the probe error set are not swallowed"""

        def predicate():
            raise ValueError("bug")

        with pytest.raises(ValueError):
            wait_until(predicate, timeout=1, interval=0.01, quiet=True)

    def test_raise_for_timeout(self):
        """raise_for_timeout converts a not-ready result into ConvergenceTimeoutError"""
        result = wait_until(lambda: False, timeout=0.05, interval=0.01, description="registry", quiet=True)

        with pytest.raises(ConvergenceTimeoutError, match="registry"):
            result.raise_for_timeout()

    def test_raise_for_timeout_noop_when_ready(self):
        """raise_for_timeout does nothing for a ready result"""
        wait_until(lambda: True, timeout=1, interval=0.01, quiet=True).raise_for_timeout()
