"""
Instance-scoped metrics for the retry executor and the operation registry.

Each metric keeps one series per label set. Nothing here is global: a
``MetricsRegistry`` is created by the caller and injected where needed.
"""

import threading
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple, Type

Labels = Optional[Dict[str, str]]


def _series_key(labels: Labels) -> Tuple[Tuple[str, str], ...]:
    return tuple(sorted(labels.items())) if labels else ()


class Metric:
    """Base class holding the name and the series lock."""

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self._lock = threading.RLock()

    def get_value(self, labels: Labels = None) -> Any:
        raise NotImplementedError

    def reset(self) -> None:
        raise NotImplementedError


class Counter(Metric):
    """Monotonic count, e.g. attempts or settled operations."""

    def __init__(self, name: str, description: str = ""):
        super().__init__(name, description)
        self._series: Dict[tuple, float] = defaultdict(float)

    def increment(self, amount: float = 1.0, labels: Labels = None) -> None:
        if amount < 0:
            raise ValueError("Counter increment must be >= 0")
        with self._lock:
            self._series[_series_key(labels)] += amount

    def get_value(self, labels: Labels = None) -> float:
        with self._lock:
            return self._series.get(_series_key(labels), 0.0)

    def reset(self) -> None:
        with self._lock:
            self._series.clear()


class Gauge(Metric):
    """Level that moves both ways, e.g. operations in flight."""

    def __init__(self, name: str, description: str = ""):
        super().__init__(name, description)
        self._series: Dict[tuple, float] = defaultdict(float)

    def increment(self, amount: float = 1.0, labels: Labels = None) -> None:
        with self._lock:
            self._series[_series_key(labels)] += amount

    def decrement(self, amount: float = 1.0, labels: Labels = None) -> None:
        self.increment(-amount, labels)

    def get_value(self, labels: Labels = None) -> float:
        with self._lock:
            return self._series.get(_series_key(labels), 0.0)

    def reset(self) -> None:
        with self._lock:
            self._series.clear()


class Histogram(Metric):
    """
    Distribution of observed values.

    Buckets are cumulative upper bounds; the default ladder doubles from
    10ms up to roughly two and a half minutes.
    """

    DEFAULT_BUCKETS = tuple(0.01 * (2 ** i) for i in range(14)) + (float("inf"),)

    def __init__(self, name: str, description: str = "", buckets: Optional[List[float]] = None):
        super().__init__(name, description)
        self.buckets = sorted(buckets) if buckets else list(self.DEFAULT_BUCKETS)
        self._observations: Dict[tuple, List[float]] = defaultdict(list)

    def observe(self, value: float, labels: Labels = None) -> None:
        with self._lock:
            self._observations[_series_key(labels)].append(value)

    def get_value(self, labels: Labels = None) -> Dict[str, Any]:
        """Bucket counts, sum, count and average of one series."""
        with self._lock:
            values = list(self._observations.get(_series_key(labels), ()))
        total = sum(values)
        return {
            "buckets": {bound: sum(1 for v in values if v <= bound) for bound in self.buckets},
            "sum": total,
            "count": len(values),
            "average": total / max(len(values), 1),
        }

    def reset(self) -> None:
        with self._lock:
            self._observations.clear()


class MetricsRegistry:
    """
    Named collection of metrics, created on first access.

    Asking for an existing name as a different kind of metric raises
    ``TypeError``.
    """

    def __init__(self):
        self._metrics: Dict[str, Metric] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, name: str, kind: Type[Metric], **kwargs) -> Any:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = self._metrics[name] = kind(name, **kwargs)
            elif not isinstance(metric, kind):
                raise TypeError(
                    f"Metric '{name}' is a {type(metric).__name__}, not a {kind.__name__}"
                )
            return metric

    def counter(self, name: str, description: str = "") -> Counter:
        return self._get_or_create(name, Counter, description=description)

    def gauge(self, name: str, description: str = "") -> Gauge:
        return self._get_or_create(name, Gauge, description=description)

    def histogram(self, name: str, description: str = "",
                  buckets: Optional[List[float]] = None) -> Histogram:
        return self._get_or_create(name, Histogram, description=description, buckets=buckets)

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._metrics)

    def snapshot(self) -> Dict[str, Any]:
        """Current value of every metric's unlabelled series."""
        with self._lock:
            metrics = list(self._metrics.values())
        return {metric.name: metric.get_value() for metric in metrics}

    def reset(self) -> None:
        with self._lock:
            metrics = list(self._metrics.values())
        for metric in metrics:
            metric.reset()


__all__ = [
    "Metric",
    "Counter",
    "Gauge",
    "Histogram",
    "MetricsRegistry",
]
