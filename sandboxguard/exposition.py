"""In-process counters, gauges and histograms with Prometheus text exposition."""

from __future__ import annotations

import math
import re
import threading
from bisect import bisect_left
from collections.abc import Iterable, Iterator, Sequence
from typing import ClassVar

_METRIC_NAME = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_NAME = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")

DEFAULT_BUCKETS: tuple[float, ...] = (
    0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0,
)

_Labels = tuple[tuple[str, str], ...]
_Sample = tuple[str, _Labels, float]


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == int(value) and abs(value) < 1e16:
        return str(int(value))
    return repr(float(value))


def _escape_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _check_metric_name(name: str) -> None:
    if not _METRIC_NAME.fullmatch(name):
        raise ValueError(f"invalid metric name: {name!r}")


def _check_label_names(label_names: Iterable[str]) -> tuple[str, ...]:
    names = tuple(label_names)
    for label in names:
        if not _LABEL_NAME.fullmatch(label) or label.startswith("__"):
            raise ValueError(f"invalid label name: {label!r}")
    if len(set(names)) != len(names):
        raise ValueError("duplicate label names")
    return names


def _check_buckets(buckets: Sequence[float]) -> tuple[float, ...]:
    bounds = [float(b) for b in buckets] or list(DEFAULT_BUCKETS)
    if bounds and math.isinf(bounds[-1]) and bounds[-1] > 0:
        bounds.pop()
    if any(lower >= upper for lower, upper in zip(bounds, bounds[1:])):
        raise ValueError("histogram buckets must be in strictly increasing order")
    return tuple(bounds)


class _Metric:
    kind: ClassVar[str]

    def __init__(self, name: str, help: str) -> None:
        _check_metric_name(name)
        self.name = name
        self.help = help

    def _samples(self) -> Iterator[_Sample]:
        raise NotImplementedError


class Counter(_Metric):
    """A monotonically increasing value."""

    kind = "counter"

    def __init__(self, name: str, help: str) -> None:
        super().__init__(name, help)
        self._value = 0.0
        self._lock = threading.Lock()

    def inc(self, amount: float = 1.0) -> None:
        """Add ``amount``; counters never go down, so a negative amount is an error."""
        if amount < 0:
            raise ValueError("counter cannot be decreased")
        with self._lock:
            self._value += amount

    def get(self) -> float:
        return self._value

    def _samples(self, labels: _Labels = ()) -> Iterator[_Sample]:
        yield self.name, labels, self._value


class Gauge(_Metric):
    """A value that can be set freely."""

    kind = "gauge"

    def __init__(self, name: str, help: str) -> None:
        super().__init__(name, help)
        self._value = 0.0

    def set(self, value: float) -> None:
        self._value = float(value)

    def get(self) -> float:
        return self._value

    def _samples(self, labels: _Labels = ()) -> Iterator[_Sample]:
        yield self.name, labels, self._value


class Histogram(_Metric):
    """Observations counted into cumulative buckets, with their sum and count."""

    kind = "histogram"

    def __init__(
        self, name: str, help: str, buckets: Sequence[float] = DEFAULT_BUCKETS
    ) -> None:
        super().__init__(name, help)
        self.buckets = _check_buckets(buckets)
        self._counts = [0] * len(self.buckets)
        self._sum = 0.0
        self._count = 0
        self._lock = threading.Lock()

    def observe(self, value: float) -> None:
        with self._lock:
            index = bisect_left(self.buckets, value)
            if index < len(self._counts):
                self._counts[index] += 1
            self._sum += value
            self._count += 1

    @property
    def sample_sum(self) -> float:
        return self._sum

    @property
    def sample_count(self) -> int:
        return self._count

    def _samples(self, labels: _Labels = ()) -> Iterator[_Sample]:
        with self._lock:
            counts = list(self._counts)
            total, count = self._sum, self._count
        cumulative = 0
        for bound, bucket_count in zip(self.buckets, counts):
            cumulative += bucket_count
            yield f"{self.name}_bucket", labels + (("le", _format_value(bound)),), cumulative
        yield f"{self.name}_bucket", labels + (("le", "+Inf"),), count
        yield f"{self.name}_sum", labels, total
        yield f"{self.name}_count", labels, count


class _MetricVec(_Metric):
    def __init__(self, name: str, help: str, label_names: Iterable[str]) -> None:
        super().__init__(name, help)
        self.label_names = _check_label_names(label_names)
        self._children: dict[tuple[str, ...], Counter | Histogram] = {}
        self._lock = threading.Lock()

    def _new_child(self) -> Counter | Histogram:
        raise NotImplementedError

    def _child(self, values: tuple[str, ...]) -> Counter | Histogram:
        if len(values) != len(self.label_names):
            raise ValueError(
                f"expected {len(self.label_names)} label values, got {len(values)}"
            )
        with self._lock:
            child = self._children.get(values)
            if child is None:
                child = self._children[values] = self._new_child()
            return child

    def _samples(self) -> Iterator[_Sample]:
        with self._lock:
            children = sorted(self._children.items())
        for values, child in children:
            yield from child._samples(tuple(zip(self.label_names, values)))


class CounterVec(_MetricVec):
    """A family of counters distinguished by label values."""

    kind = "counter"

    def _new_child(self) -> Counter:
        return Counter(self.name, self.help)

    def with_label_values(self, *args: str) -> Counter:
        return self._child(tuple(args))  # type: ignore[return-value]


class HistogramVec(_MetricVec):
    """A family of histograms distinguished by label values."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        help: str,
        label_names: Iterable[str],
        buckets: Sequence[float] = DEFAULT_BUCKETS,
    ) -> None:
        super().__init__(name, help, label_names)
        self.buckets = _check_buckets(buckets)

    def _new_child(self) -> Histogram:
        return Histogram(self.name, self.help, self.buckets)

    def with_label_values(self, *args: str) -> Histogram:
        return self._child(tuple(args))  # type: ignore[return-value]


class Registry:
    """A set of uniquely named metrics rendered together."""

    def __init__(self) -> None:
        self._metrics: dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def register(self, metric: _Metric) -> None:
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"metric {metric.name!r} is already registered")
            self._metrics[metric.name] = metric

    def export(self) -> str:
        """Render every metric with samples in the Prometheus text format, by name."""
        with self._lock:
            metrics = sorted(self._metrics.values(), key=lambda m: m.name)
        lines: list[str] = []
        for metric in metrics:
            samples = list(metric._samples())
            if not samples:
                continue
            lines.append(f"# HELP {metric.name} {_escape_help(metric.help)}")
            lines.append(f"# TYPE {metric.name} {metric.kind}")
            for name, labels, value in samples:
                if labels:
                    rendered = ",".join(
                        f'{key}="{_escape_label_value(val)}"' for key, val in labels
                    )
                    name = f"{name}{{{rendered}}}"
                lines.append(f"{name} {_format_value(value)}")
        return "".join(f"{line}\n" for line in lines)