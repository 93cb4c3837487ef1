"""Rate-controlled HTTP load generation with latency recording."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Iterator, Optional

import httpx

from common.histogram import HistogramLogWriter, StatusTally
from common.models.params import Protocol

logger = logging.getLogger(__name__)

# Status recorded for requests that never got a response
TRANSPORT_ERROR_STATUS = 0


@dataclass
class LoadStats:
    """What a load run did."""
    requests: int = 0
    responses: int = 0
    errors: int = 0
    elapsed_seconds: float = 0.0
    
    @property
    def achieved_rate(self) -> float:
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.requests / self.elapsed_seconds
    
    def to_dict(self) -> dict:
        return {**asdict(self), "achieved_rate": round(self.achieved_rate, 2)}


def rate_at(elapsed: float, rate: float, ramp_up: float = 0) -> float:
    """Target request rate at ``elapsed`` seconds into the run."""
    if ramp_up > 0 and elapsed < ramp_up:
        return rate * elapsed / ramp_up
    return rate


def send_offsets(rate: float, duration: float, ramp_up: float = 0) -> Iterator[float]:
    """Send times (seconds from start) of every request of a run.
    
    The rate grows linearly from 0 to ``rate`` over ``ramp_up`` seconds and
    then stays flat. Request ``k`` is due when the integral of the rate
    reaches ``k``.
    """
    if rate <= 0 or duration <= 0:
        return
    ramp_up = min(max(ramp_up, 0), duration)
    ramp_requests = rate * ramp_up / 2
    k = 0
    while True:
        if k < ramp_requests:
            offset = math.sqrt(2 * k * ramp_up / rate)
        else:
            offset = ramp_up + (k - ramp_requests) / rate
        if offset >= duration:
            return
        yield offset
        k += 1


class LoadDriver:
    """Issue GET requests at a configured rate for a fixed duration."""
    
    def __init__(
        self,
        uri: str,
        rate: float,
        duration: float,
        ramp_up: float = 0,
        protocol: Protocol = Protocol.HTTP,
        resource: str = "/",
        histogram_path: Optional[str | Path] = None,
        status_path: Optional[str | Path] = None,
        max_concurrency: int = 512,
        request_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.uri = uri.rstrip("/")
        self.rate = rate
        self.duration = duration
        self.ramp_up = ramp_up
        self.protocol = protocol
        self.resource = resource
        self.histogram_path = histogram_path
        self.status_path = status_path
        self.max_concurrency = max_concurrency
        self.request_timeout = request_timeout
        self.transport = transport
        
        self.stats = LoadStats()
        self._histogram: Optional[HistogramLogWriter] = None
        self._status: Optional[StatusTally] = None
    
    def _client(self) -> httpx.AsyncClient:
        http2 = self.protocol.is_http2
        return httpx.AsyncClient(
            # h2c needs prior knowledge: HTTP/2 only, no HTTP/1.1 upgrade
            http1=not http2,
            http2=http2,
            verify=False,
            timeout=self.request_timeout,
            limits=httpx.Limits(max_connections=self.max_concurrency),
            transport=self.transport,
        )
    
    async def run(self) -> LoadStats:
        """Drive load until the duration elapses, then wait for stragglers."""
        if self.histogram_path:
            self._histogram = HistogramLogWriter(self.histogram_path, comment=f"uri={self.uri}")
        if self.status_path:
            self._status = StatusTally(self.status_path)
        
        logger.info(
            f"Load generation begin: {self.uri}{self.resource} rate={self.rate}/s "
            f"duration={self.duration:.1f}s ramp_up={self.ramp_up:.1f}s"
        )
        loop = asyncio.get_running_loop()
        slots = asyncio.Semaphore(self.max_concurrency)
        pending: set[asyncio.Task] = set()
        start = loop.time()
        
        try:
            async with self._client() as client:
                for offset in send_offsets(self.rate, self.duration, self.ramp_up):
                    delay = start + offset - loop.time()
                    if delay > 0:
                        await asyncio.sleep(delay)
                    await slots.acquire()
                    task = asyncio.create_task(self._send(client))
                    pending.add(task)
                    task.add_done_callback(pending.discard)
                    task.add_done_callback(lambda _: slots.release())
                
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)
        finally:
            for task in pending:
                task.cancel()
            self.stats.elapsed_seconds = loop.time() - start
            self.close()
        
        logger.info(
            f"Load generation complete: {self.stats.requests} requests, "
            f"{self.stats.errors} errors, {self.stats.achieved_rate:.1f} req/s"
        )
        return self.stats
    
    async def _send(self, client: httpx.AsyncClient) -> None:
        self.stats.requests += 1
        began = time.perf_counter()
        try:
            response = await client.get(f"{self.uri}{self.resource}")
            await response.aread()
            status = response.status_code
            self.stats.responses += 1
        except httpx.HTTPError as e:
            logger.debug(f"Request failed: {e}")
            status = TRANSPORT_ERROR_STATUS
        latency_us = (time.perf_counter() - began) * 1_000_000
        
        if not 200 <= status < 400:
            self.stats.errors += 1
        if self._histogram:
            self._histogram.record(latency_us)
        if self._status:
            self._status.record(status)
    
    def close(self) -> None:
        """Flush recordings; safe to call more than once."""
        if self._histogram:
            self._histogram.close()
        if self._status:
            self._status.close()
