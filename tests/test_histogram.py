"""Tests for latency histograms, histogram logs and status tallies."""

import json

import pytest

import common.histogram as histogram_module
from common.histogram import (
    HistogramLogWriter,
    LatencyHistogram,
    StatusTally,
    bucket_of,
    highest_equivalent,
    iter_intervals,
    merge_logs,
    read_histogram_log,
    read_status_file,
)


class TestLatencyHistogram:
    """Tests for the bucketed histogram."""
    
    def test_small_values_are_exact(self):
        h = LatencyHistogram()
        for value in range(1, 101):
            h.record(value)
        
        assert h.total == 100
        assert h.min == 1
        assert h.max == 100
        assert h.value_at_percentile(50) == 50
        assert h.value_at_percentile(99) == 99
        assert h.value_at_percentile(100) == 100
        assert h.mean == pytest.approx(50.5)
    
    def test_three_significant_digits(self):
        assert bucket_of(999) == 999
        assert bucket_of(12_345) == 12_300
        assert highest_equivalent(12_345) == 12_399
        
        h = LatencyHistogram()
        h.record(12_345)
        assert h.value_at_percentile(99) == 12_399
    
    def test_merge(self):
        a = LatencyHistogram({10: 3})
        b = LatencyHistogram({20: 1})
        a.merge(b)
        
        assert a.total == 4
        assert a.counts == {10: 3, 20: 1}
    
    def test_empty(self):
        h = LatencyHistogram()
        
        assert h.value_at_percentile(99) == 0
        assert h.summary().count == 0
    
    def test_invalid_input(self):
        h = LatencyHistogram()
        with pytest.raises(ValueError):
            h.value_at_percentile(101)
        with pytest.raises(ValueError):
            h.record(-1)
    
    def test_summary(self):
        h = LatencyHistogram({100: 98, 5000: 2})
        s = h.summary()
        
        assert s.count == 100
        assert s.p50 == 100
        assert s.p99 == 5009
        assert s.max == 5009


class TestHistogramLogWriter:
    """Tests for the interval log writer and readers."""
    
    @pytest.fixture
    def clock(self, monkeypatch):
        now = {"ms": 1_000_000}
        monkeypatch.setattr(histogram_module, "now_ms", lambda: now["ms"])
        return now
    
    def test_write_and_read_back(self, temp_dir):
        path = temp_dir / "server.hlog"
        with HistogramLogWriter(path, comment="role=server") as writer:
            for value in (100, 200, 300):
                writer.record(value)
        
        assert path.read_text().startswith("#perfharness-hlog v1 role=server")
        h = read_histogram_log(path)
        assert h.total == 3
        assert h.max == 300
    
    def test_rotates_every_interval(self, temp_dir, clock):
        path = temp_dir / "loader.hlog"
        writer = HistogramLogWriter(path, interval=1.0)
        writer.record(10)
        clock["ms"] += 1000
        writer.record(20)
        clock["ms"] += 1000
        writer.record(30)
        writer.close()
        
        intervals = list(iter_intervals(path))
        assert len(intervals) == 3
        assert [iv["counts"] for iv in intervals] == [{"10": 1}, {"20": 1}, {"30": 1}]
        assert intervals[0]["start"] == 1_000_000
        assert intervals[1]["start"] == intervals[0]["end"]
    
    def test_completed_interval_is_flushed_before_close(self, temp_dir, clock):
        path = temp_dir / "probe.hlog"
        writer = HistogramLogWriter(path)
        writer.record(10)
        clock["ms"] += 1500
        writer.record(20)
        
        assert len(list(iter_intervals(path))) == 1
        writer.close()
    
    def test_close_is_idempotent_and_final(self, temp_dir):
        path = temp_dir / "x.hlog"
        writer = HistogramLogWriter(path)
        writer.record(1)
        writer.close()
        writer.close()
        writer.record(2)
        
        assert writer.closed
        assert read_histogram_log(path).total == 1
    
    def test_read_window(self, temp_dir):
        path = temp_dir / "w.hlog"
        lines = [
            {"start": 1000, "end": 2000, "counts": {"5": 1}},
            {"start": 2000, "end": 3000, "counts": {"6": 2}},
            {"start": 3000, "end": 4000, "counts": {"7": 4}},
        ]
        path.write_text("#header\n" + "\n".join(json.dumps(line) for line in lines) + "\n")
        
        assert read_histogram_log(path).total == 7
        assert read_histogram_log(path, start_ms=2000).total == 6
        assert read_histogram_log(path, start_ms=2000, end_ms=3000).total == 2
    
    def test_corrupt_line_is_skipped(self, temp_dir):
        path = temp_dir / "c.hlog"
        path.write_text('{"start": 1, "end": 2, "counts": {"9": 1}}\nnot json\n')
        
        assert read_histogram_log(path).total == 1
    
    def test_merge_logs(self, temp_dir):
        for name, value in (("a.hlog", 100), ("b.hlog", 900)):
            with HistogramLogWriter(temp_dir / name) as writer:
                writer.record(value)
        
        merged = merge_logs([temp_dir / "a.hlog", temp_dir / "b.hlog"])
        assert merged.total == 2
        assert merged.max == 900


class TestStatusTally:
    """Tests for status.txt."""
    
    def test_write_and_read(self, temp_dir):
        path = temp_dir / "status.txt"
        with StatusTally(path) as tally:
            for code in (200, 200, 404, 0):
                tally.record(code)
        
        assert path.read_text() == "0 1\n200 2\n404 1\n"
        summary = read_status_file(path)
        assert summary.total == 4
        assert summary.errors == 2
        assert summary.error_rate_percent == pytest.approx(50.0)
