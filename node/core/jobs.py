"""Jobs a node can run, one per role and phase."""

from __future__ import annotations

import asyncio
import logging
import os
import platform
import socket
import sys
from typing import Optional

from common.coordination import (
    LOADER_INDEX_BARRIER,
    RUN_END_BARRIER,
    RUN_START_BARRIER,
    profiling_slices,
    stagger_slot,
)
from common.histogram import (
    LOADER_HISTOGRAM,
    PROBE_HISTOGRAM,
    SERVER_HISTOGRAM,
    STATUS_FILE,
    HistogramLogWriter,
)
from common.models.params import Protocol
from node.core.executor import NodeTools, job
from node.core.load_driver import LoadDriver
from node.core.monitor import ConfigurableMonitor, ProfilerMonitor
from node.core.server import PipelineDescriptor, ServerHandle, build_app, ensure_self_signed_cert

logger = logging.getLogger(__name__)

SERVER_KEY = "server"


def _timeout(params: dict, key: str) -> Optional[float]:
    value = params.get(key)
    return float(value) if value else None


@job("system.info")
async def system_info(tools: NodeTools, params: dict) -> dict:
    info = {
        "node": tools.node_name,
        "hostname": socket.gethostname(),
        "python": sys.version.split()[0],
        "implementation": platform.python_implementation(),
        "os": platform.system(),
        "arch": platform.machine(),
        "cpus": os.cpu_count(),
        "pid": os.getpid(),
    }
    logger.info(
        f"Python version: '{info['python']}', OS name: '{info['os']}', OS arch: '{info['arch']}'"
    )
    return info


@job("server.start")
async def start_server(tools: NodeTools, params: dict) -> dict:
    """Build the server pipeline and keep the running handle in the node environment."""
    if SERVER_KEY in tools.environment:
        raise RuntimeError(f"A server is already running on {tools.node_name}")
    
    protocol = Protocol(params.get("protocol", Protocol.HTTP.value))
    descriptor = PipelineDescriptor(**params.get("pipeline", {}))
    app, recorder = build_app(descriptor)
    
    certfile = keyfile = None
    if protocol.is_secure:
        certfile, keyfile = await ensure_self_signed_cert(tools.work_dir / "tls")
    
    server = ServerHandle(
        app,
        recorder,
        protocol=protocol,
        host=params.get("host", "0.0.0.0"),
        port=params.get("port"),
        certfile=certfile,
        keyfile=keyfile,
    )
    await server.start()
    tools.environment.put(SERVER_KEY, server)
    return {"protocol": protocol.value, "port": server.port}


@job("server.stop")
async def stop_server(tools: NodeTools, params: dict) -> dict:
    server: Optional[ServerHandle] = tools.environment.pop(SERVER_KEY)
    if server is None:
        return {"stopped": False}
    await server.stop()
    return {"stopped": True}


@job("load.warmup")
async def warmup(tools: NodeTools, params: dict) -> dict:
    """Unsynchronized load to get past cold-start effects; nothing is recorded."""
    duration = float(params["duration"])
    driver = LoadDriver(
        params["uri"],
        rate=params["rate"],
        duration=duration,
        ramp_up=float(params.get("ramp_up", duration / 2)),
        protocol=Protocol(params.get("protocol", Protocol.HTTP.value)),
    )
    stats = await driver.run()
    return stats.to_dict()


@job("server.run")
async def run_server(tools: NodeTools, params: dict) -> dict:
    """Record server-side latency between the start and end barriers.
    
    While active, a profiler is opened in one slice per loader activation step
    so that each profile matches one level of the load ramp.
    """
    parties = int(params["participants"])
    loaders = int(params["loaders"])
    duration = float(params["run_duration"])
    
    server: Optional[ServerHandle] = tools.environment.get(SERVER_KEY)
    if server is None:
        raise RuntimeError(f"No server running on {tools.node_name}")
    
    profiles = []
    async with ConfigurableMonitor(params.get("monitored_items", []), tools.work_dir):
        writer = HistogramLogWriter(tools.path(SERVER_HISTOGRAM), comment="role=server")
        server.recorder.attach(writer)
        try:
            await tools.barrier(RUN_START_BARRIER, parties).wait(_timeout(params, "start_timeout"))
            
            if params.get("profile", True):
                loop = asyncio.get_running_loop()
                started = loop.time()
                for piece in profiling_slices(loaders, duration):
                    await asyncio.sleep(max(0.0, started + piece.start - loop.time()))
                    async with ProfilerMonitor(tools.work_dir, piece.filename):
                        await asyncio.sleep(piece.length)
                    profiles.append(piece.filename)
            
            logger.info("Server sync'ing on end barrier...")
            await tools.barrier(RUN_END_BARRIER, parties).wait(_timeout(params, "end_timeout"))
        finally:
            server.recorder.detach()
            writer.close()
            tools.environment.pop(SERVER_KEY)
            await server.stop()
    
    return {"profiles": profiles}


@job("loader.run")
async def run_loader(tools: NodeTools, params: dict) -> dict:
    """Drive staggered load: loader #i waits i * D / N, then loads until the end."""
    parties = int(params["participants"])
    loaders = int(params["loaders"])
    duration = float(params["run_duration"])
    
    async with ConfigurableMonitor(params.get("monitored_items", []), tools.work_dir):
        index = await tools.barrier(LOADER_INDEX_BARRIER, loaders).wait(_timeout(params, "start_timeout"))
        await tools.barrier(RUN_START_BARRIER, parties).wait(_timeout(params, "start_timeout"))
        
        slot = stagger_slot(index, loaders, duration)
        logger.info(f"Loader #{index} waiting {slot.delay:.3f}s")
        await asyncio.sleep(slot.delay)
        
        driver = LoadDriver(
            params["uri"],
            rate=params["rate"],
            duration=slot.window,
            ramp_up=slot.window * float(params.get("ramp_up_ratio", 0.5)),
            protocol=Protocol(params.get("protocol", Protocol.HTTP.value)),
            histogram_path=tools.path(LOADER_HISTOGRAM),
            status_path=tools.path(STATUS_FILE),
        )
        stats = await driver.run()
        
        logger.info(f"Loader #{index} sync'ing on end barrier...")
        await tools.barrier(RUN_END_BARRIER, parties).wait(_timeout(params, "end_timeout"))
    
    return {"index": index, "delay": slot.delay, "window": slot.window, **stats.to_dict()}


@job("probe.run")
async def run_probe(tools: NodeTools, params: dict) -> dict:
    """Low constant-rate requests over the whole run window."""
    parties = int(params["participants"])
    duration = float(params["run_duration"])
    
    async with ConfigurableMonitor(params.get("monitored_items", []), tools.work_dir):
        await tools.barrier(RUN_START_BARRIER, parties).wait(_timeout(params, "start_timeout"))
        
        driver = LoadDriver(
            params["uri"],
            rate=params.get("rate", 5),
            duration=duration,
            protocol=Protocol(params.get("protocol", Protocol.HTTP.value)),
            histogram_path=tools.path(PROBE_HISTOGRAM),
            status_path=tools.path(STATUS_FILE),
        )
        stats = await driver.run()
        
        logger.info("Probe sync'ing on end barrier...")
        await tools.barrier(RUN_END_BARRIER, parties).wait(_timeout(params, "end_timeout"))
    
    return stats.to_dict()
