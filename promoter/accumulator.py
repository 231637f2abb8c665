"""
Failure accumulator.

Counts failed probes and answers "has the threshold been crossed?".
Python ints do not wrap, so no overflow handling is needed.
"""

import structlog

from promoter.config import CountingPolicy
from promoter.prober import ProbeResult

logger = structlog.get_logger(__name__)


class FailureAccumulator:
    """
    Failure counter owned by the control loop.

    STICKY (default): a successful probe leaves the count unchanged, so
    failures add up over the whole run even with successes in between.

    CONSECUTIVE: a successful probe resets the count to zero; only an
    unbroken run of failures reaches the threshold.
    """

    def __init__(self, policy: CountingPolicy = CountingPolicy.STICKY):
        self.policy = policy
        self.count = 0

    def record_result(self, result: ProbeResult) -> int:
        """Feed one probe result, return the current count."""
        if not result.reachable:
            self.count += 1
        elif self.policy is CountingPolicy.CONSECUTIVE and self.count:
            logger.info("failure_count_reset", previous=self.count)
            self.count = 0
        return self.count

    def threshold_crossed(self, threshold: int) -> bool:
        return self.count >= threshold
