"""Monitors: best-effort sidecars sampling a node during a phase.

A monitor is an async context manager. Whatever way the block is left
(normal completion, exception, cancellation) the monitor is stopped exactly
once and its report flushed before the block exits. Failing to start or stop
a monitor is logged and never propagates, so monitoring cannot mask the
measurement it observes.
"""

from __future__ import annotations

import asyncio
import csv
import logging
import os
import signal
import time
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

import psutil

from common.histogram import HistogramLogWriter

logger = logging.getLogger(__name__)


class MonitorItem(str, Enum):
    """What a ConfigurableMonitor samples."""
    CPU = "cpu"
    MEMORY = "memory"
    NETWORK = "network"
    HICCUP = "hiccup"
    PROFILER = "profiler"


class Monitor:
    """Base class of all monitors."""
    
    name = "monitor"
    
    def __init__(self, work_dir: Path):
        self.work_dir = Path(work_dir)
        self.started = False
        self.stopped = False
    
    async def _start(self) -> None:
        raise NotImplementedError
    
    async def _stop(self) -> None:
        raise NotImplementedError
    
    async def start(self) -> None:
        try:
            self.work_dir.mkdir(parents=True, exist_ok=True)
            await self._start()
            self.started = True
            logger.debug(f"Monitor {self.name} started")
        except Exception as e:
            logger.warning(f"Monitor {self.name} failed to start: {e}")
    
    async def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        if not self.started:
            return
        stopping = asyncio.ensure_future(self._stop())
        try:
            await asyncio.shield(stopping)
            logger.debug(f"Monitor {self.name} stopped")
        except asyncio.CancelledError:
            logger.warning(f"Monitor {self.name} cancelled while stopping, flushing first")
            await self._finish(stopping)
            raise
        except Exception as e:
            logger.warning(f"Monitor {self.name} failed to stop: {e}")

    async def _finish(self, stopping: asyncio.Future) -> None:
        """Wait out a stop that was interrupted; further cancels are deferred."""
        while not stopping.done():
            try:
                await asyncio.shield(stopping)
            except asyncio.CancelledError:
                continue
            except Exception:
                break
        if not stopping.cancelled() and stopping.exception() is not None:
            logger.warning(f"Monitor {self.name} failed to stop: {stopping.exception()}")
    
    async def __aenter__(self) -> "Monitor":
        await self.start()
        return self
    
    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.stop()
        return False


class SystemSampler(Monitor):
    """Periodic psutil samples of CPU, memory or network counters into a CSV series."""
    
    FIELDS = {
        MonitorItem.CPU: ["timestamp", "cpu_percent", "load_1m"],
        MonitorItem.MEMORY: ["timestamp", "used_bytes", "available_bytes", "percent"],
        MonitorItem.NETWORK: ["timestamp", "bytes_sent", "bytes_recv", "packets_sent", "packets_recv"],
    }
    
    def __init__(self, item: MonitorItem, work_dir: Path, interval: float = 1.0):
        super().__init__(work_dir)
        if item not in self.FIELDS:
            raise ValueError(f"Cannot sample {item.value}")
        self.item = item
        self.name = item.value
        self.interval = interval
        self.path = self.work_dir / f"{item.value}.csv"
        self._task: Optional[asyncio.Task] = None
        self._file = None
    
    def _sample(self) -> list:
        now = round(time.time(), 3)
        if self.item == MonitorItem.CPU:
            return [now, psutil.cpu_percent(interval=None), os.getloadavg()[0]]
        if self.item == MonitorItem.MEMORY:
            mem = psutil.virtual_memory()
            return [now, mem.used, mem.available, mem.percent]
        net = psutil.net_io_counters()
        return [now, net.bytes_sent, net.bytes_recv, net.packets_sent, net.packets_recv]
    
    async def _start(self) -> None:
        psutil.cpu_percent(interval=None)  # prime the CPU counter
        self._file = open(self.path, "w", newline="")
        self._writer = csv.writer(self._file)
        self._writer.writerow(self.FIELDS[self.item])
        self._task = asyncio.create_task(self._loop())
    
    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self._writer.writerow(self._sample())
            self._file.flush()
    
    async def _stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._writer.writerow(self._sample())
        self._file.close()


class HiccupMonitor(Monitor):
    """Records event loop stalls: how late a fixed-period wakeup actually fires."""
    
    name = "hiccup"
    DEFAULT_FILENAME = "hiccup.hlog"
    
    def __init__(self, work_dir: Path, resolution: float = 0.001):
        super().__init__(work_dir)
        self.resolution = resolution
        self.path = self.work_dir / self.DEFAULT_FILENAME
        self._writer: Optional[HistogramLogWriter] = None
        self._task: Optional[asyncio.Task] = None
    
    async def _start(self) -> None:
        self._writer = HistogramLogWriter(self.path, comment="hiccup")
        self._task = asyncio.create_task(self._loop())
    
    async def _loop(self) -> None:
        while True:
            before = time.perf_counter()
            await asyncio.sleep(self.resolution)
            late = time.perf_counter() - before - self.resolution
            self._writer.record(max(late, 0) * 1_000_000)
    
    async def _stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._writer.close()


class ProfilerMonitor(Monitor):
    """Samples this process with py-spy and writes a flamegraph on stop."""
    
    name = "profiler"
    
    def __init__(self, work_dir: Path, filename: str = "profile.html", rate: int = 100, pid: Optional[int] = None):
        super().__init__(work_dir)
        self.path = self.work_dir / filename
        self.rate = rate
        self.pid = pid or os.getpid()
        self._proc: Optional[asyncio.subprocess.Process] = None
    
    async def _start(self) -> None:
        cmd = [
            "py-spy", "record",
            "--pid", str(self.pid),
            "--rate", str(self.rate),
            "--format", "flamegraph",
            "--output", str(self.path),
        ]
        logger.info(f"Starting profiler: {' '.join(cmd)}")
        self._proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    
    async def _stop(self) -> None:
        if self._proc is None or self._proc.returncode is not None:
            return
        # py-spy writes its report when interrupted
        self._proc.send_signal(signal.SIGINT)
        try:
            await asyncio.wait_for(self._proc.wait(), timeout=30)
        except asyncio.TimeoutError:
            self._proc.kill()
            await self._proc.wait()
            raise RuntimeError(f"Profiler did not flush {self.path} in time")


class ConfigurableMonitor(Monitor):
    """Runs one child monitor per configured item for the duration of a block."""
    
    name = "configurable"
    
    def __init__(self, items: Iterable[MonitorItem | str], work_dir: Path, interval: float = 1.0):
        super().__init__(work_dir)
        self.items = {MonitorItem(item) for item in items}
        self.children: list[Monitor] = []
        for item in sorted(self.items, key=lambda i: i.value):
            if item in SystemSampler.FIELDS:
                self.children.append(SystemSampler(item, self.work_dir, interval))
            elif item == MonitorItem.HICCUP:
                self.children.append(HiccupMonitor(self.work_dir))
            elif item == MonitorItem.PROFILER:
                self.children.append(ProfilerMonitor(self.work_dir, "profile.html"))
    
    async def _start(self) -> None:
        for child in self.children:
            await child.start()
    
    async def _stop(self) -> None:
        for child in reversed(self.children):
            await child.stop()
