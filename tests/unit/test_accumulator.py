"""
Tests for the failure accumulator.
"""

from promoter.accumulator import FailureAccumulator
from promoter.config import CountingPolicy
from promoter.prober import ProbeResult

UP = ProbeResult.ok()
DOWN = ProbeResult.failed("connection refused")


class TestFailureAccumulator:
    """Tests for FailureAccumulator."""

    def test_starts_at_zero(self):
        assert FailureAccumulator().count == 0

    def test_failure_increments_by_one(self):
        accumulator = FailureAccumulator()

        assert accumulator.record_result(DOWN) == 1
        assert accumulator.record_result(DOWN) == 2

    def test_threshold_is_inclusive(self):
        accumulator = FailureAccumulator()
        for _ in range(4):
            accumulator.record_result(DOWN)

        assert accumulator.threshold_crossed(5) is False

        accumulator.record_result(DOWN)
        assert accumulator.threshold_crossed(5) is True

    def test_sticky_success_keeps_count(self):
        """Sticky: fail, fail, succeed leaves the count at 2."""
        accumulator = FailureAccumulator(CountingPolicy.STICKY)

        accumulator.record_result(DOWN)
        accumulator.record_result(DOWN)

        assert accumulator.record_result(UP) == 2

    def test_sticky_interleaved_failures_accumulate(self):
        accumulator = FailureAccumulator(CountingPolicy.STICKY)

        for result in (DOWN, UP, DOWN, UP, DOWN, UP, DOWN, UP, DOWN):
            accumulator.record_result(result)

        assert accumulator.count == 5
        assert accumulator.threshold_crossed(5) is True

    def test_consecutive_success_resets(self):
        accumulator = FailureAccumulator(CountingPolicy.CONSECUTIVE)

        accumulator.record_result(DOWN)
        accumulator.record_result(DOWN)

        assert accumulator.record_result(UP) == 0
        assert accumulator.threshold_crossed(1) is False

    def test_consecutive_interleaved_failures_never_cross(self):
        accumulator = FailureAccumulator(CountingPolicy.CONSECUTIVE)

        for result in (DOWN, UP) * 10:
            accumulator.record_result(result)

        assert accumulator.threshold_crossed(2) is False

    def test_success_on_zero_count(self):
        accumulator = FailureAccumulator(CountingPolicy.CONSECUTIVE)

        assert accumulator.record_result(UP) == 0
