"""
Exposure Window Calculation

Every edge query is bounded by two limits:
    - the retention boundary (now - retention period), past which edges
      have been, or are about to be, swept
    - the hop window, which looks back `incubation_days` from an anchor

Hop 1 is anchored at the reporter's test date. Deeper hops are anchored
at the timestamp of the edge through which the previous node was
reached, so the window rolls along the chain.
"""

import time
from dataclasses import dataclass

MILLIS_PER_DAY = 24 * 60 * 60 * 1000


def now_millis() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


def days_to_millis(days: int) -> int:
    return days * MILLIS_PER_DAY


def retention_boundary(now_ms: int, retention_days: int) -> int:
    """Oldest timestamp still inside the retention period."""
    return now_ms - days_to_millis(retention_days)


@dataclass(frozen=True)
class ExposureWindow:
    """Closed time range [start, end] in epoch milliseconds."""
    start: int
    end: int

    @property
    def is_empty(self) -> bool:
        return self.start > self.end

    def contains(self, timestamp: int) -> bool:
        return self.start <= timestamp <= self.end


def hop_window(anchor_ms: int, incubation_days: int, retention_start_ms: int) -> ExposureWindow:
    """
    Window for edges discovered through a node anchored at `anchor_ms`.

    Args:
        anchor_ms: Test date (hop 1) or the exposure timestamp of the
            node being expanded
        incubation_days: Lookback length in days
        retention_start_ms: Retention boundary; nothing older is eligible

    Returns:
        [max(anchor - incubation, retention), anchor]
    """
    start = max(anchor_ms - days_to_millis(incubation_days), retention_start_ms)
    return ExposureWindow(start=start, end=anchor_ms)
