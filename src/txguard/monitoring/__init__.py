"""
Monitoring components for txguard.

Provides instance-scoped metrics collection for retry and lifecycle
observability.
"""

from .metrics import MetricsRegistry, Counter, Gauge, Histogram, Metric

__all__ = [
    "MetricsRegistry",
    "Counter",
    "Gauge",
    "Histogram",
    "Metric",
]
