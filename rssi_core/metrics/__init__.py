"""
Metrics Module: Diagnostics, counters, histograms.

Observability only; no estimation state is kept here.

Usage:
    from rssi_core.metrics import get_metrics

    metrics = get_metrics()
    metrics.increment('samples_in')
    metrics.increment_drop('insufficient_anchors')
    metrics.record_histogram('trilateration_residual_m', 0.42)
"""

from .counters import DROP_REASONS, STANDARD_COUNTERS, MetricsCollector, MetricsSnapshot

# Global singleton for easy access
_global_metrics = None


def get_metrics() -> MetricsCollector:
    """
    Get the global metrics collector singleton.

    Returns:
        MetricsCollector instance
    """
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = MetricsCollector()
    return _global_metrics


def reset_metrics():
    """Reset global metrics (for testing)."""
    global _global_metrics
    _global_metrics = MetricsCollector()


__all__ = [
    'DROP_REASONS',
    'STANDARD_COUNTERS',
    'MetricsCollector',
    'MetricsSnapshot',
    'get_metrics',
    'reset_metrics',
]
