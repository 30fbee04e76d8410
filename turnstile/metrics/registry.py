"""In-memory metrics registry shared by the ticketing components."""
from __future__ import annotations

from contextlib import contextmanager
from threading import Lock
from typing import Callable, Dict, Iterable, Iterator, Mapping, MutableMapping, Tuple, TypeVar

from .base import CounterMetric, DistributionMetric, GaugeMetric, Metric, track_duration

M = TypeVar("M", bound=Metric)


class MetricsRegistry:
    """Registry that holds metric instances and offers helper utilities."""

    def __init__(self) -> None:
        self._metrics: MutableMapping[str, Metric] = {}
        self._lock = Lock()

    def _get_or_create(self, name: str, metric_type: type[M], factory: Callable[[], M]) -> M:
        with self._lock:
            if name not in self._metrics:
                self._metrics[name] = factory()
            metric = self._metrics[name]
        if not isinstance(metric, metric_type):
            raise TypeError(f"Metric '{name}' already exists with a different type")
        return metric

    def counter(
        self,
        name: str,
        *,
        description: str = "",
        label_names: Iterable[str] | None = None,
    ) -> CounterMetric:
        return self._get_or_create(
            name,
            CounterMetric,
            lambda: CounterMetric(name, description=description, label_names=label_names),
        )

    def gauge(
        self,
        name: str,
        *,
        description: str = "",
        label_names: Iterable[str] | None = None,
    ) -> GaugeMetric:
        return self._get_or_create(
            name,
            GaugeMetric,
            lambda: GaugeMetric(name, description=description, label_names=label_names),
        )

    def distribution(
        self,
        name: str,
        *,
        description: str = "",
        label_names: Iterable[str] | None = None,
    ) -> DistributionMetric:
        return self._get_or_create(
            name,
            DistributionMetric,
            lambda: DistributionMetric(name, description=description, label_names=label_names),
        )

    def metrics(self) -> Tuple[Metric, ...]:
        with self._lock:
            return tuple(self._metrics.values())

    def snapshot(self) -> Dict[str, Mapping[Tuple[str, ...], Mapping[str, float]]]:
        """Return a serialisable snapshot of all registered metrics."""

        with self._lock:
            return {name: metric.snapshot() for name, metric in self._metrics.items()}

    @contextmanager
    def time_distribution(
        self,
        name: str,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> Iterator[None]:
        metric = self.distribution(name)
        with track_duration(metric, labels=labels):
            yield
