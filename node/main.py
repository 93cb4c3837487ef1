"""perfharness node worker.

Started by the driver's launcher on every cluster node; connects to the
coordination Redis, registers, then runs submitted jobs until told to shut down.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import node
from common.messaging.events import (
    Event,
    EventType,
    create_error_event,
    create_heartbeat_event,
    create_register_event,
)
from common.messaging.redis_client import RedisClient
from common.models.job import NodeJob
from node.config import NodeSettings, get_settings, init_settings
from node.core.executor import JobExecutor, NodeEnvironment, NodeTools
from node.core import jobs  # noqa: F401  registers the job kinds

logger = logging.getLogger(__name__)


class NodeWorker:
    """One node process: registration, heartbeat and job dispatch."""
    
    def __init__(self, settings: NodeSettings, redis_client: Optional[RedisClient] = None):
        self.settings = settings
        self.redis_client = redis_client or RedisClient(
            url=settings.redis_url,
            client_id=settings.node_name,
        )
        self.environment = NodeEnvironment()
        self.tools = NodeTools(
            cluster_id=settings.cluster_id,
            array_id=settings.array_id,
            node_id=settings.node_id,
            redis_client=self.redis_client,
            work_dir=settings.node_dir,
            environment=self.environment,
            barrier_ttl=settings.barrier_ttl,
        )
        self.executor = JobExecutor(self.tools)
        self._stop = asyncio.Event()
        self._heartbeat_task: Optional[asyncio.Task] = None
    
    def request_stop(self) -> None:
        self._stop.set()
    
    async def handle_event(self, event: Event) -> None:
        """Handle incoming events from the driver."""
        if event.cluster_id and event.cluster_id != self.settings.cluster_id:
            return
        
        if event.type == EventType.JOB_SUBMIT:
            try:
                node_job = NodeJob(**event.payload["job"])
            except (KeyError, TypeError, ValueError) as e:
                logger.error(f"Rejected malformed job submission: {e}")
                await self.redis_client.publish_to_driver(
                    self.settings.cluster_id,
                    create_error_event(
                        self.settings.cluster_id,
                        self.settings.node_name,
                        error="malformed job submission",
                        details={"reason": str(e)},
                    ),
                )
                return
            self.executor.submit(node_job)
        
        elif event.type == EventType.NODE_SHUTDOWN:
            logger.info("Shutdown requested by driver")
            self.request_stop()
    
    async def heartbeat_loop(self) -> None:
        """Send periodic heartbeats to the driver."""
        while not self._stop.is_set():
            try:
                event = create_heartbeat_event(
                    self.settings.cluster_id,
                    self.settings.node_name,
                    running_jobs=self.executor.running_jobs,
                )
                await self.redis_client.publish_to_driver(self.settings.cluster_id, event)
                logger.debug("Heartbeat sent")
            except Exception as e:
                logger.error(f"Failed to send heartbeat: {e}")
            
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.settings.heartbeat_interval)
            except asyncio.TimeoutError:
                pass
    
    async def register(self) -> None:
        cluster_id = self.settings.cluster_id
        info = {
            "hostname": self.settings.hostname,
            "pid": os.getpid(),
            "version": node.__version__,
            "work_dir": str(self.tools.work_dir),
        }
        await self.redis_client.hset(RedisClient.node_registry(cluster_id), self.settings.node_name, info)
        await self.redis_client.publish_to_driver(
            cluster_id,
            create_register_event(
                cluster_id,
                self.settings.node_name,
                hostname=info["hostname"],
                version=info["version"],
                pid=info["pid"],
            ),
        )
        logger.info(f"Node {self.settings.node_name} registered in cluster {cluster_id}")
    
    async def run(self) -> None:
        settings = self.settings
        self.tools.work_dir.mkdir(parents=True, exist_ok=True)
        
        await self.redis_client.connect()
        try:
            await self.redis_client.subscribe(
                RedisClient.node_channel(settings.cluster_id, settings.array_id, settings.node_id),
                RedisClient.broadcast_channel(settings.cluster_id),
            )
            self.redis_client.on_event(EventType.JOB_SUBMIT, self.handle_event)
            self.redis_client.on_event(EventType.NODE_SHUTDOWN, self.handle_event)
            await self.redis_client.start_listening()
            
            await self.register()
            self._heartbeat_task = asyncio.create_task(self.heartbeat_loop())
            
            await self._stop.wait()
        finally:
            await self.shutdown()
    
    async def shutdown(self) -> None:
        self._stop.set()
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
        
        await self.executor.cleanup()
        
        server = self.environment.pop(jobs.SERVER_KEY)
        if server is not None:
            await server.stop()
        
        try:
            await self.redis_client.hdel(RedisClient.node_registry(self.settings.cluster_id), self.settings.node_name)
            await self.redis_client.disconnect()
        except Exception as e:
            logger.warning(f"Error disconnecting from Redis: {e}")
        logger.info(f"Node {self.settings.node_name} shutdown complete")


async def run_node(settings: NodeSettings) -> None:
    worker = NodeWorker(settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, worker.request_stop)
        except NotImplementedError:
            pass
    await worker.run()


def main(argv: Optional[list[str]] = None) -> None:
    """Entry point for running a node."""
    parser = argparse.ArgumentParser(description="perfharness node worker")
    parser.add_argument("--cluster-id", help="Cluster this node belongs to")
    parser.add_argument("--array", dest="array_id", help="Node array id")
    parser.add_argument("--node", dest="node_id", help="Node id within the array")
    parser.add_argument("--redis-url", help="Coordination Redis URL")
    parser.add_argument("--work-dir", type=Path, help="Directory for reports")
    parser.add_argument("--log-level", help="Logging level")
    args = parser.parse_args(argv)
    
    overrides = {k: v for k, v in vars(args).items() if v is not None}
    settings = init_settings(**overrides) if overrides else get_settings()
    
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)]
    )
    logger.info(f"Starting node {settings.node_name} (cluster {settings.cluster_id})")
    
    asyncio.run(run_node(settings))


if __name__ == "__main__":
    main()
