"""In-process metrics rendered in the Prometheus text format.

The engine runs a handful of counters and gauges (entitlement checks, usage
increments, transitions, gateway calls, sweeps) plus latency histograms for
HTTP requests and gateway calls. Everything is exported at /metrics; there is
no push gateway.
"""

from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

LabelValues = Tuple[str, ...]

DEFAULT_BUCKETS: Tuple[float, ...] = (0.005, 0.025, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"").replace("\n", "\\n")


def _render_labels(pairs: Sequence[Tuple[str, str]]) -> str:
    if not pairs:
        return ""
    return "{" + ",".join(f'{name}="{_escape(val)}"' for name, val in pairs) + "}"


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, help_text: str = "", label_names: Optional[Iterable[str]] = None):
        self.name = name
        self.help_text = help_text
        self.label_names = list(label_names or [])
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> LabelValues:
        labels = labels or {}
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def _header(self) -> List[str]:
        lines = []
        if self.help_text:
            lines.append(f"# HELP {self.name} {self.help_text}")
        lines.append(f"# TYPE {self.name} {self.kind}")
        return lines

    def export(self) -> List[str]:
        raise NotImplementedError

    def reset(self) -> None:
        raise NotImplementedError


class Counter(_Metric):
    kind = "counter"

    def __init__(self, name: str, help_text: str = "", label_names: Optional[Iterable[str]] = None):
        super().__init__(name, help_text, label_names)
        self._values: Dict[LabelValues, float] = {}

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters only go up")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def export(self) -> List[str]:
        lines = self._header()
        with self._lock:
            for key, value in sorted(self._values.items()):
                lines.append(f"{self.name}{_render_labels(list(zip(self.label_names, key)))} {value}")
        return lines

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


class Gauge(Counter):
    kind = "gauge"

    def set(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = float(value)


class Histogram(_Metric):
    kind = "histogram"

    def __init__(
        self,
        name: str,
        help_text: str = "",
        label_names: Optional[Iterable[str]] = None,
        buckets: Sequence[float] = DEFAULT_BUCKETS,
    ):
        super().__init__(name, help_text, label_names)
        self.buckets = tuple(sorted(buckets))
        # per label set: (bucket counts, sum, count)
        self._series: Dict[LabelValues, Tuple[List[int], float, int]] = {}

    def observe(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        key = self._key(labels)
        with self._lock:
            counts, total, n = self._series.get(key, ([0] * len(self.buckets), 0.0, 0))
            for i, bound in enumerate(self.buckets):
                if value <= bound:
                    counts[i] += 1
            self._series[key] = (counts, total + value, n + 1)

    def count(self, labels: Optional[Dict[str, str]] = None) -> int:
        with self._lock:
            series = self._series.get(self._key(labels))
        return series[2] if series else 0

    def export(self) -> List[str]:
        lines = self._header()
        with self._lock:
            for key, (counts, total, n) in sorted(self._series.items()):
                pairs = list(zip(self.label_names, key))
                for bound, bucket_count in zip(self.buckets, counts):
                    lines.append(f"{self.name}_bucket{_render_labels(pairs + [('le', repr(bound))])} {bucket_count}")
                lines.append(f"{self.name}_bucket{_render_labels(pairs + [('le', '+Inf')])} {n}")
                lines.append(f"{self.name}_sum{_render_labels(pairs)} {total}")
                lines.append(f"{self.name}_count{_render_labels(pairs)} {n}")
        return lines

    def reset(self) -> None:
        with self._lock:
            self._series.clear()


class MetricsRegistry:
    def __init__(self):
        self._metrics: Dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def _register(self, metric: _Metric) -> _Metric:
        with self._lock:
            existing = self._metrics.get(metric.name)
            if existing is not None:
                if type(existing) is not type(metric):
                    raise ValueError(f"metric {metric.name} already registered as {existing.kind}")
                return existing
            self._metrics[metric.name] = metric
            return metric

    def counter(self, name: str, help_text: str = "", label_names: Optional[Iterable[str]] = None) -> Counter:
        return self._register(Counter(name, help_text, label_names))

    def gauge(self, name: str, help_text: str = "", label_names: Optional[Iterable[str]] = None) -> Gauge:
        return self._register(Gauge(name, help_text, label_names))

    def histogram(
        self,
        name: str,
        help_text: str = "",
        label_names: Optional[Iterable[str]] = None,
        buckets: Sequence[float] = DEFAULT_BUCKETS,
    ) -> Histogram:
        return self._register(Histogram(name, help_text, label_names, buckets))

    def export_prometheus(self) -> str:
        with self._lock:
            metrics = list(self._metrics.values())
        lines: List[str] = []
        for metric in metrics:
            lines.extend(metric.export())
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        with self._lock:
            metrics = list(self._metrics.values())
        for metric in metrics:
            metric.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter(
    "http_requests_total", "HTTP requests served", ["method", "path", "status"]
)
http_request_duration_seconds = METRICS.histogram(
    "http_request_duration_seconds", "HTTP request latency", ["method", "path"]
)
entitlement_checks_total = METRICS.counter(
    "entitlement_checks_total", "Entitlement decisions by feature", ["feature", "allowed"]
)
usage_increments_total = METRICS.counter(
    "usage_increments_total", "Usage counter increments", ["result"]
)
subscription_transitions_total = METRICS.counter(
    "subscription_transitions_total", "Subscription state machine events", ["event", "result"]
)
gateway_calls_total = METRICS.counter(
    "gateway_calls_total", "Payment gateway calls", ["operation", "result"]
)
gateway_call_duration_seconds = METRICS.histogram(
    "gateway_call_duration_seconds", "Payment gateway call latency", ["operation"]
)
reconciler_items_total = METRICS.counter(
    "reconciler_items_total", "Per-subscription reconciler actions", ["action", "outcome"]
)
reconciler_runs_total = METRICS.counter(
    "reconciler_runs_total", "Completed reconciler sweeps", ["status"]
)

reconciler_last_run_timestamp = METRICS.gauge(
    "reconciler_last_run_timestamp", "Unix time the last sweep finished"
)
subscriptions_by_state = METRICS.gauge(
    "subscriptions_by_state", "Subscriptions per lifecycle state", ["state"]
)


_ID_SEGMENT_RE = re.compile(r"^(\d+|[0-9a-fA-F-]{32,36}|ch_\w+|cs_\w+)$")


def normalize_path(path: str) -> str:
    """Collapse subscription ids and charge references into :id to keep label cardinality bounded."""
    parts = []
    for segment in path.split("/"):
        if not segment:
            continue
        parts.append(":id" if _ID_SEGMENT_RE.match(segment) else segment)
    return "/" + "/".join(parts)
