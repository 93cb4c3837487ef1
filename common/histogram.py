"""Latency histograms and their append-only interval logs.

A histogram log holds one JSON line per recording interval:

    {"start": <epoch ms>, "end": <epoch ms>, "counts": {"<value>": <count>, ...}}

Values are latencies in microseconds, bucketed to three significant digits.
Lines starting with '#' are comments. Readers treat every interval inside the
requested window as one population.
"""

from __future__ import annotations

import json
import logging
import math
import time
from pathlib import Path
from typing import Iterable, Iterator, Optional

from common.models.report import PercentileSummary, StatusSummary

logger = logging.getLogger(__name__)

SIGNIFICANT_DIGITS = 3

SERVER_HISTOGRAM = "server.hlog"
LOADER_HISTOGRAM = "loader.hlog"
PROBE_HISTOGRAM = "probe.hlog"
STATUS_FILE = "status.txt"


def now_ms() -> int:
    return int(time.time() * 1000)


def _bucket_size(value: int) -> int:
    digits = len(str(value))
    if digits <= SIGNIFICANT_DIGITS:
        return 1
    return 10 ** (digits - SIGNIFICANT_DIGITS)


def bucket_of(value: int) -> int:
    """Lowest value equivalent to ``value`` at the histogram's precision."""
    size = _bucket_size(value)
    return value // size * size


def highest_equivalent(value: int) -> int:
    size = _bucket_size(value)
    return value // size * size + size - 1


class LatencyHistogram:
    """Log-linear bucketed histogram of non-negative integer values."""
    
    def __init__(self, counts: Optional[dict[int, int]] = None):
        self.counts: dict[int, int] = {}
        self.total = 0
        self._sum = 0
        if counts:
            for value, count in counts.items():
                self.record(int(value), int(count))
    
    def __len__(self) -> int:
        return self.total
    
    def record(self, value: int | float, count: int = 1) -> None:
        if value < 0:
            raise ValueError(f"Cannot record negative value {value}")
        key = bucket_of(int(value))
        self.counts[key] = self.counts.get(key, 0) + count
        self.total += count
        self._sum += key * count
    
    def merge(self, other: "LatencyHistogram") -> "LatencyHistogram":
        for value, count in other.counts.items():
            self.record(value, count)
        return self
    
    def reset(self) -> None:
        self.counts.clear()
        self.total = 0
        self._sum = 0
    
    @property
    def min(self) -> int:
        return min(self.counts) if self.counts else 0
    
    @property
    def max(self) -> int:
        return highest_equivalent(max(self.counts)) if self.counts else 0
    
    @property
    def mean(self) -> float:
        return self._sum / self.total if self.total else 0.0
    
    def value_at_percentile(self, percentile: float) -> int:
        """Smallest recorded value such that ``percentile`` % of samples are <= it."""
        if not 0 <= percentile <= 100:
            raise ValueError(f"Percentile must be within [0, 100], got {percentile}")
        if not self.total:
            return 0
        rank = max(1, math.ceil(percentile / 100 * self.total))
        seen = 0
        for value in sorted(self.counts):
            seen += self.counts[value]
            if seen >= rank:
                return highest_equivalent(value)
        return self.max
    
    def summary(self) -> PercentileSummary:
        return PercentileSummary(
            count=self.total,
            min=self.min,
            max=self.max,
            mean=round(self.mean, 2),
            p50=self.value_at_percentile(50),
            p90=self.value_at_percentile(90),
            p99=self.value_at_percentile(99),
            p999=self.value_at_percentile(99.9),
        )
    
    def to_json(self) -> dict[str, int]:
        return {str(value): count for value, count in sorted(self.counts.items())}


class HistogramLogWriter:
    """Append-only interval histogram log; flushed every interval and on close."""
    
    def __init__(self, path: str | Path, interval: float = 1.0, comment: str = ""):
        self.path = Path(path)
        self.interval_ms = int(interval * 1000)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, "a")
        self._file.write(f"#perfharness-hlog v1 {comment}".rstrip() + "\n")
        self._file.flush()
        self._current = LatencyHistogram()
        self._interval_start = now_ms()
        self._closed = False
    
    @property
    def closed(self) -> bool:
        return self._closed
    
    def record(self, value_us: int | float) -> None:
        if self._closed:
            return
        now = now_ms()
        if now - self._interval_start >= self.interval_ms:
            self._flush_interval(now)
        self._current.record(value_us)
    
    def _flush_interval(self, end: int) -> None:
        if self._current.total:
            line = {"start": self._interval_start, "end": end, "counts": self._current.to_json()}
            self._file.write(json.dumps(line) + "\n")
            self._file.flush()
        self._current.reset()
        self._interval_start = end
    
    def close(self) -> None:
        if self._closed:
            return
        self._flush_interval(now_ms())
        self._file.close()
        self._closed = True
        logger.debug(f"Closed histogram log {self.path}")
    
    def __enter__(self) -> "HistogramLogWriter":
        return self
    
    def __exit__(self, *args) -> None:
        self.close()


def iter_intervals(path: str | Path) -> Iterator[dict]:
    """Yield the interval records of a histogram log."""
    with open(path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                logger.warning(f"Skipping corrupt interval in {path}")


def read_histogram_log(
    path: str | Path,
    start_ms: Optional[int] = None,
    end_ms: Optional[int] = None,
) -> LatencyHistogram:
    """Merge every interval starting within [start_ms, end_ms) into one histogram."""
    histogram = LatencyHistogram()
    for interval in iter_intervals(path):
        if start_ms is not None and interval["start"] < start_ms:
            continue
        if end_ms is not None and interval["start"] >= end_ms:
            continue
        histogram.merge(LatencyHistogram(interval["counts"]))
    return histogram


def merge_logs(paths: Iterable[str | Path]) -> LatencyHistogram:
    """One population out of several per-node logs of the same role."""
    merged = LatencyHistogram()
    for path in paths:
        merged.merge(read_histogram_log(path))
    return merged


class StatusTally:
    """Per-status-code response counts, written out on close."""
    
    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.counts: dict[int, int] = {}
        self._closed = False
    
    def record(self, status_code: int) -> None:
        self.counts[status_code] = self.counts.get(status_code, 0) + 1
    
    def close(self) -> None:
        if self._closed:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            for code, count in sorted(self.counts.items()):
                f.write(f"{code} {count}\n")
        self._closed = True
    
    def __enter__(self) -> "StatusTally":
        return self
    
    def __exit__(self, *args) -> None:
        self.close()


def read_status_file(path: str | Path) -> StatusSummary:
    counts: dict[int, int] = {}
    with open(path) as f:
        for line in f:
            parts = line.split()
            if len(parts) != 2:
                continue
            counts[int(parts[0])] = counts.get(int(parts[0]), 0) + int(parts[1])
    return StatusSummary(counts=counts)
