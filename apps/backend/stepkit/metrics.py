"""In-process operation metrics with a text exposition for scraping."""

from __future__ import annotations

import bisect
import threading
from typing import Iterable

DEFAULT_BUCKETS: tuple[float, ...] = (
    0.005,
    0.01,
    0.025,
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
    2.5,
    5.0,
    10.0,
    30.0,
    60.0,
)

LabelKey = tuple[tuple[str, str], ...]


def _labels(**labels: str) -> LabelKey:
    return tuple(sorted(labels.items()))


def _format_labels(labels: Iterable[tuple[str, str]]) -> str:
    parts = [f'{name}="{value}"' for name, value in labels]
    return "{" + ",".join(parts) + "}" if parts else ""


class _Histogram:
    def __init__(self, buckets: tuple[float, ...]) -> None:
        self.buckets = buckets
        self.counts = [0] * len(buckets)
        self.count = 0
        self.total = 0.0

    def observe(self, value: float) -> None:
        index = bisect.bisect_left(self.buckets, value)
        if index < len(self.counts):
            self.counts[index] += 1
        self.count += 1
        self.total += value

    def cumulative(self) -> list[int]:
        running = 0
        out = []
        for count in self.counts:
            running += count
            out.append(running)
        return out


class MetricsSink:
    """Duration histogram, byte counters and error counters for one action.

    Metric names are prefixed with *namespace*; the file action uses
    ``file_operation_duration_seconds``, ``file_bytes_read_total``,
    ``file_bytes_written_total`` and ``file_errors_total``.
    """

    def __init__(self, namespace: str, buckets: tuple[float, ...] = DEFAULT_BUCKETS) -> None:
        self.namespace = namespace
        self._buckets = buckets
        self._lock = threading.Lock()
        self._durations: dict[LabelKey, _Histogram] = {}
        self._bytes_read = 0
        self._bytes_written = 0
        self._errors: dict[LabelKey, int] = {}

    @property
    def duration_name(self) -> str:
        return f"{self.namespace}_operation_duration_seconds"

    @property
    def bytes_read_name(self) -> str:
        return f"{self.namespace}_bytes_read_total"

    @property
    def bytes_written_name(self) -> str:
        return f"{self.namespace}_bytes_written_total"

    @property
    def errors_name(self) -> str:
        return f"{self.namespace}_errors_total"

    def record_success(
        self, operation: str, duration: float, *, bytes_read: int = 0, bytes_written: int = 0
    ) -> None:
        with self._lock:
            self._observe(operation, "ok", duration)
            self._bytes_read += max(0, bytes_read)
            self._bytes_written += max(0, bytes_written)

    def record_error(self, operation: str, duration: float, kind: str) -> None:
        with self._lock:
            self._observe(operation, "error", duration)
            key = _labels(error_type=kind)
            self._errors[key] = self._errors.get(key, 0) + 1

    def _observe(self, operation: str, status: str, duration: float) -> None:
        key = _labels(operation=operation, status=status)
        histogram = self._durations.get(key)
        if histogram is None:
            histogram = _Histogram(self._buckets)
            self._durations[key] = histogram
        histogram.observe(max(0.0, duration))

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            durations = {
                _format_labels(key): {"count": hist.count, "sum": hist.total}
                for key, hist in self._durations.items()
            }
            errors = {dict(key)["error_type"]: count for key, count in self._errors.items()}
            return {
                self.duration_name: durations,
                self.bytes_read_name: self._bytes_read,
                self.bytes_written_name: self._bytes_written,
                self.errors_name: errors,
            }

    def operation_count(self, operation: str, status: str) -> int:
        with self._lock:
            histogram = self._durations.get(_labels(operation=operation, status=status))
            return histogram.count if histogram is not None else 0

    def error_count(self, kind: str) -> int:
        with self._lock:
            return self._errors.get(_labels(error_type=kind), 0)

    def render(self) -> str:
        with self._lock:
            lines = [
                f"# HELP {self.duration_name} Duration of {self.namespace} operations.",
                f"# TYPE {self.duration_name} histogram",
            ]
            for key in sorted(self._durations):
                hist = self._durations[key]
                for bound, count in zip(self._buckets, hist.cumulative()):
                    bucket_labels = key + (("le", repr(bound)),)
                    lines.append(f"{self.duration_name}_bucket{_format_labels(bucket_labels)} {count}")
                inf_labels = key + (("le", "+Inf"),)
                lines.append(f"{self.duration_name}_bucket{_format_labels(inf_labels)} {hist.count}")
                lines.append(f"{self.duration_name}_sum{_format_labels(key)} {hist.total}")
                lines.append(f"{self.duration_name}_count{_format_labels(key)} {hist.count}")
            lines.extend(
                [
                    f"# TYPE {self.bytes_read_name} counter",
                    f"{self.bytes_read_name} {self._bytes_read}",
                    f"# TYPE {self.bytes_written_name} counter",
                    f"{self.bytes_written_name} {self._bytes_written}",
                    f"# TYPE {self.errors_name} counter",
                ]
            )
            for key in sorted(self._errors):
                lines.append(f"{self.errors_name}{_format_labels(key)} {self._errors[key]}")
            return "\n".join(lines) + "\n"
