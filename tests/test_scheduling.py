"""Tests for the scheduler and bounded retry."""

from unittest.mock import MagicMock

import pytest

from referral_telemetry.automation.retry import RetryPolicy, RetryTask
from referral_telemetry.core.errors import ConfigurationAbsent, TransportFailure


class TestManualScheduler:
    """Tests for the virtual-time scheduler."""

    def test_call_later_runs_when_due(self, scheduler):
        ran = []
        scheduler.call_later(5, lambda: ran.append(scheduler.now()))

        assert scheduler.advance(4) == 0
        assert scheduler.advance(1) == 1
        assert ran == [5]

    def test_every_repeats_until_cancelled(self, scheduler):
        ticks = []
        handle = scheduler.every(10, lambda: ticks.append(scheduler.now()))

        scheduler.advance(35)
        handle.cancel()
        scheduler.advance(100)

        assert ticks == [10, 20, 30]
        assert scheduler.pending == 0

    def test_cancelled_callback_skipped(self, scheduler):
        callback = MagicMock()
        scheduler.call_later(1, callback).cancel()
        scheduler.advance(5)
        callback.assert_not_called()

    def test_failing_callback_contained(self, scheduler):
        """A callback that raises does not stop the clock."""
        after = MagicMock()
        scheduler.call_later(1, MagicMock(side_effect=RuntimeError("boom")))
        scheduler.call_later(2, after)

        scheduler.advance(2)
        after.assert_called_once()

    def test_wall_clock_follows_virtual_time(self, scheduler):
        scheduler.advance(90)
        assert scheduler.utcnow().isoformat() == "2024-01-01T00:01:30+00:00"

    def test_run_until_idle(self, scheduler):
        callback = MagicMock()
        scheduler.call_later(3, callback)
        scheduler.call_later(7, callback)

        assert scheduler.run_until_idle() == 2
        assert scheduler.next_delay() is None


class TestRetryPolicy:
    """Tests for backoff delays."""

    def test_doubling_from_one_second(self):
        policy = RetryPolicy()
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_custom_base(self):
        assert RetryPolicy(base_delay=0.5).delay_for(3) == 2.0


class TestRetryTask:
    """Tests for RetryTask."""

    def test_success_first_try(self, scheduler):
        on_success = MagicMock()
        task = RetryTask(lambda: "42", RetryPolicy(), scheduler, on_success=on_success).start()

        assert task.succeeded
        assert task.attempts == 1
        on_success.assert_called_once_with("42")

    def test_success_after_failure(self, scheduler):
        operation = MagicMock(side_effect=[TransportFailure("down"), "ok"])
        task = RetryTask(operation, RetryPolicy(), scheduler).start()

        assert not task.done
        scheduler.advance(1)
        assert task.succeeded
        assert task.result == "ok"

    def test_exhaustion(self, scheduler):
        """All attempts failing ends quietly after max_attempts."""
        operation = MagicMock(side_effect=TransportFailure("down"))
        task = RetryTask(operation, RetryPolicy(max_attempts=3), scheduler).start()
        scheduler.run_until_idle()

        assert operation.call_count == 3
        assert task.done
        assert not task.succeeded
        assert isinstance(task.last_error, TransportFailure)

    def test_configuration_absent_not_retried(self, scheduler):
        operation = MagicMock(side_effect=ConfigurationAbsent("no endpoint"))
        task = RetryTask(operation, RetryPolicy(), scheduler).start()

        assert task.done
        assert not task.succeeded
        assert scheduler.pending == 0
        operation.assert_called_once()

    def test_success_handler_error_contained(self, scheduler):
        on_success = MagicMock(side_effect=KeyError("x"))
        task = RetryTask(lambda: 1, RetryPolicy(), scheduler, on_success=on_success).start()
        assert task.succeeded

    @pytest.mark.parametrize("attempts", [1, 2, 5])
    def test_attempt_budget(self, scheduler, attempts):
        operation = MagicMock(side_effect=TransportFailure("down"))
        RetryTask(operation, RetryPolicy(max_attempts=attempts), scheduler).start()
        scheduler.run_until_idle()
        assert operation.call_count == attempts
