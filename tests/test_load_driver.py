"""Unit tests for the load driver."""

import httpx
import pytest

from common.histogram import read_histogram_log, read_status_file
from common.models.params import Protocol
from node.core.load_driver import LoadDriver, LoadStats, rate_at, send_offsets


class TestRateSchedule:
    """Tests for the request schedule helpers."""
    
    def test_rate_without_ramp(self):
        assert rate_at(0, 100) == 100
        assert rate_at(5, 100) == 100
    
    def test_linear_ramp(self):
        assert rate_at(0, 100, ramp_up=10) == 0
        assert rate_at(5, 100, ramp_up=10) == 50
        assert rate_at(10, 100, ramp_up=10) == 100
    
    def test_flat_offsets(self):
        offsets = list(send_offsets(rate=10, duration=1))
        
        assert len(offsets) == 10
        assert offsets[0] == 0
        assert offsets[1] == pytest.approx(0.1)
    
    def test_ramp_offsets_match_rate_integral(self):
        offsets = list(send_offsets(rate=10, duration=10, ramp_up=4))
        
        # 20 requests during the ramp, then 10/s for the remaining 6s
        assert len(offsets) == 80
        assert sum(1 for o in offsets if o < 4) == 20
        assert offsets == sorted(offsets)
        assert offsets[-1] < 10
    
    def test_ramp_longer_than_run(self):
        offsets = list(send_offsets(rate=10, duration=2, ramp_up=100))
        
        assert len(offsets) == 10
    
    def test_nothing_to_send(self):
        assert list(send_offsets(rate=0, duration=10)) == []
        assert list(send_offsets(rate=10, duration=0)) == []
    
    def test_achieved_rate(self):
        assert LoadStats(requests=100, elapsed_seconds=2).achieved_rate == 50
        assert LoadStats().achieved_rate == 0.0


@pytest.mark.asyncio
class TestLoadDriver:
    """Tests for load generation against a mock transport."""
    
    async def test_records_latency_and_status(self, temp_dir):
        seen = []
        
        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            return httpx.Response(200, text="Hi there!")
        
        driver = LoadDriver(
            "http://server:8080/",
            rate=200,
            duration=0.1,
            histogram_path=temp_dir / "loader.hlog",
            status_path=temp_dir / "status.txt",
            transport=httpx.MockTransport(handler),
        )
        
        stats = await driver.run()
        
        assert stats.requests == 20
        assert stats.responses == 20
        assert stats.errors == 0
        assert set(seen) == {"/"}
        assert len(read_histogram_log(temp_dir / "loader.hlog")) == 20
        assert read_status_file(temp_dir / "status.txt").counts == {200: 20}
    
    async def test_transport_errors_count_as_status_zero(self, temp_dir):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)
        
        driver = LoadDriver(
            "http://server:8080",
            rate=100,
            duration=0.05,
            status_path=temp_dir / "status.txt",
            transport=httpx.MockTransport(handler),
        )
        
        stats = await driver.run()
        
        assert stats.requests == 5
        assert stats.responses == 0
        assert stats.errors == 5
        assert read_status_file(temp_dir / "status.txt").counts == {0: 5}
    
    async def test_error_status_counted(self, temp_dir):
        responses = iter([200, 503, 404, 302])
        
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(next(responses))
        
        driver = LoadDriver(
            "http://server:8080",
            rate=100,
            duration=0.04,
            resource="/target",
            status_path=temp_dir / "status.txt",
            transport=httpx.MockTransport(handler),
        )
        
        stats = await driver.run()
        
        assert stats.errors == 2
        summary = read_status_file(temp_dir / "status.txt")
        assert summary.errors == 2
        assert summary.total == 4
    
    async def test_no_recording_paths(self):
        driver = LoadDriver(
            "http://server:8080",
            rate=100,
            duration=0.02,
            protocol=Protocol.H2C,
            transport=httpx.MockTransport(lambda request: httpx.Response(200)),
        )
        
        stats = await driver.run()
        
        assert stats.to_dict()["requests"] == 2
        driver.close()
