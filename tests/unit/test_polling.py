"""Tests for the polling helper."""

import pytest

from meshharness.harness.polling import PollingTimeoutError, wait_for_condition


@pytest.mark.unit
class TestWaitForCondition:
    """Poll until true or timeout"""

    def test_returns_when_condition_met(self):
        results = iter([False, False, True])

        assert wait_for_condition(lambda: next(results), timeout=5.0, interval=0.01)

    def test_condition_checked_at_least_once(self):
        calls = []

        def _condition():
            calls.append(1)
            return True

        assert wait_for_condition(_condition, timeout=0.0)
        assert calls == [1]

    def test_timeout_reports_last_error(self):
        def _condition():
            raise ConnectionError("api server not reachable")

        with pytest.raises(PollingTimeoutError) as excinfo:
            wait_for_condition(_condition, timeout=0.02, interval=0.01, description="k3s node")

        assert excinfo.value.description == "k3s node"
        assert isinstance(excinfo.value.last_error, ConnectionError)
        assert "api server not reachable" in str(excinfo.value)

    def test_timeout_error_is_a_timeout(self):
        assert issubclass(PollingTimeoutError, TimeoutError)
