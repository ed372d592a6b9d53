"""
Positioning diagnostics: cycle counters, rejection reasons and estimator
histograms.

A scan cycle either produces a position, or is rejected under exactly one
reason code. Malformed cycles are rejected before the pipeline counts them
as scan cycles, so attempted cycles are scan_cycles + malformed_sample.
"""

import logging
import threading
from collections import Counter, deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

import numpy as np

logger = logging.getLogger(__name__)


# Counters every summary reports, even at zero
STANDARD_COUNTERS = (
    'scan_cycles',
    'samples_in',
    'untracked_samples',
    'filter_updates',
    'ekf_updates',
    'position_estimates',
    'positions_clamped',
)

# Rejection reason codes
DROP_REASONS = {
    'malformed_sample': 'Sample failed validation, cycle aborted',
    'insufficient_anchors': 'Fewer than 3 anchors have reported',
    'singular_geometry': 'Trilateration determinant below epsilon',
    'singular_covariance': 'EKF innovation covariance not invertible',
}

DEFAULT_HISTOGRAM_WINDOW = 5000


def _ratio(part: int, whole: int) -> float:
    return part / whole if whole else 0.0


@dataclass
class MetricsSnapshot:
    """Copy of the collector state, with the derived positioning rates."""

    counters: Dict[str, int]
    drop_reasons: Dict[str, int]
    histograms: Dict[str, List[float]]

    def total_dropped(self) -> int:
        return sum(self.drop_reasons.values())

    def cycles_attempted(self) -> int:
        """Scan cycles handed to the pipeline, including malformed ones."""
        return self.counters.get('scan_cycles', 0) + self.drop_reasons.get('malformed_sample', 0)

    def fix_rate(self) -> float:
        """Fraction of attempted cycles that produced a position."""
        return _ratio(self.counters.get('position_estimates', 0), self.cycles_attempted())

    def clamped_share(self) -> float:
        """Fraction of positions pulled back inside the map bounds."""
        return _ratio(self.counters.get('positions_clamped', 0),
                      self.counters.get('position_estimates', 0))

    def rejection_shares(self) -> Dict[str, float]:
        """Per reason, the fraction of attempted cycles it rejected."""
        attempted = self.cycles_attempted()
        return {reason: _ratio(count, attempted)
                for reason, count in self.drop_reasons.items()}


class MetricsCollector:
    """
    Thread-safe positioning diagnostics.

    Histograms keep the most recent histogram_window values only.

    Usage:
        collector = MetricsCollector()
        collector.increment('scan_cycles')
        collector.increment_drop('insufficient_anchors')
        collector.record_histogram('kalman_gain', 0.42)

        print(f"Fix rate: {collector.snapshot().fix_rate():.1%}")
    """

    DROP_REASONS = DROP_REASONS

    def __init__(self, histogram_window: int = DEFAULT_HISTOGRAM_WINDOW):
        if histogram_window < 1:
            raise ValueError(f"histogram_window must be >= 1, got {histogram_window}")

        self.histogram_window = histogram_window
        self._lock = threading.Lock()
        self._counters: Counter = Counter()
        self._drop_reasons: Counter = Counter()
        self._histograms: Dict[str, Deque[float]] = {}

    def increment(self, counter_name: str, value: int = 1):
        with self._lock:
            self._counters[counter_name] += value

    def increment_drop(self, reason: str, value: int = 1):
        """
        Count a rejected cycle under its reason code.

        Unknown reasons are logged and still counted.
        """
        if reason not in DROP_REASONS:
            logger.warning(f"Unknown drop reason '{reason}'")

        with self._lock:
            self._drop_reasons[reason] += value

    def get_counter(self, counter_name: str) -> int:
        with self._lock:
            return self._counters[counter_name]

    def get_drop_count(self, reason: str) -> int:
        with self._lock:
            return self._drop_reasons[reason]

    def record_histogram(self, histogram_name: str, value: float):
        with self._lock:
            window = self._histograms.get(histogram_name)
            if window is None:
                window = deque(maxlen=self.histogram_window)
                self._histograms[histogram_name] = window
            window.append(float(value))

    def get_histogram_stats(self, histogram_name: str) -> Optional[Dict[str, float]]:
        """
        Summary statistics of a histogram window.

        Returns:
            Dict with count, min, max, mean, median, p95; None if empty
        """
        with self._lock:
            window = self._histograms.get(histogram_name)
            if not window:
                return None
            values = np.array(window)

        return {
            'count': len(values),
            'min': float(values.min()),
            'max': float(values.max()),
            'mean': float(values.mean()),
            'median': float(np.median(values)),
            'p95': float(np.percentile(values, 95)),
        }

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            counters = {name: 0 for name in STANDARD_COUNTERS}
            counters.update(self._counters)
            drop_reasons = {reason: 0 for reason in DROP_REASONS}
            drop_reasons.update(self._drop_reasons)

            return MetricsSnapshot(
                counters=counters,
                drop_reasons=drop_reasons,
                histograms={name: list(window) for name, window in self._histograms.items()},
            )

    def reset(self):
        with self._lock:
            self._counters.clear()
            self._drop_reasons.clear()
            self._histograms.clear()

    def summary_lines(self) -> List[str]:
        """Human-readable positioning summary, one entry per line."""
        snapshot = self.snapshot()
        attempted = snapshot.cycles_attempted()
        fixes = snapshot.counters['position_estimates']

        lines = [
            "=" * 60,
            "  METRICS SUMMARY",
            "=" * 60,
            f"  cycles attempted    : {attempted:8d}",
            f"  positions           : {fixes:8d}  (fix rate {snapshot.fix_rate():6.1%})",
            f"  clamped to map      : {snapshot.counters['positions_clamped']:8d}"
            f"  ({snapshot.clamped_share():6.1%} of positions)",
            f"  samples in          : {snapshot.counters['samples_in']:8d}"
            f"  ({snapshot.counters['untracked_samples']} untracked)",
        ]

        if snapshot.total_dropped():
            lines.append("")
            lines.append("  REJECTED CYCLES:")
            shares = snapshot.rejection_shares()
            for reason, count in sorted(snapshot.drop_reasons.items()):
                if count:
                    lines.append(f"    {reason:22s}: {count:8d}  ({shares[reason]:6.1%})")

        if snapshot.histograms:
            lines.append("")
            lines.append("  ESTIMATORS:")
            for name in sorted(snapshot.histograms):
                stats = self.get_histogram_stats(name)
                if stats:
                    lines.append(
                        f"    {name:24s}: n={stats['count']}, mean={stats['mean']:.4f}, "
                        f"p95={stats['p95']:.4f}"
                    )

        lines.append("=" * 60)
        return lines

    def print_summary(self):
        print("\n".join(self.summary_lines()))
