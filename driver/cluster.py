"""Cluster lifecycle, node arrays and their job futures."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Optional

from common.coordination.barrier import Barrier
from common.errors import NodeJobFailure, NodeJobTimeout, NodeLaunchError
from common.messaging.events import (
    Event,
    EventType,
    create_job_submit_event,
    create_shutdown_event,
)
from common.messaging.redis_client import RedisClient
from common.models.cluster import ClusterConfig, NodeArrayConfig
from common.models.job import JobResult, NodeJob
from common.utils import generate_id
from driver.config import DriverSettings
from driver.launcher import LaunchedNode, NodeLauncher, create_launcher

logger = logging.getLogger(__name__)


class NodeArrayFuture:
    """Completion handle for one job submitted to every node of an array."""
    
    def __init__(self, redis_client: RedisClient, cluster_id: str, array_id: str, job: NodeJob, node_ids: list[str]):
        self.redis_client = redis_client
        self.cluster_id = cluster_id
        self.array_id = array_id
        self.job = job
        self.node_ids = list(node_ids)
        self._results: dict[str, JobResult] = {}
        self._key = RedisClient.job_results(cluster_id, job.id)
    
    def __repr__(self) -> str:
        return f"NodeArrayFuture(job={self.job.kind!r}, array={self.array_id!r}, done={len(self._results)}/{len(self.node_ids)})"
    
    @property
    def pending(self) -> list[str]:
        return [n for n in self.node_ids if n not in self._results]
    
    def done(self) -> bool:
        """True once every member's result has been collected."""
        return not self.pending
    
    def _accept(self, raw: str) -> None:
        result = JobResult(**json.loads(raw))
        if result.node_id in self._results:
            logger.warning(f"Duplicate result for {self.job.kind} from {self.array_id}/{result.node_id}")
        self._results[result.node_id] = result
    
    async def poll(self) -> bool:
        """Collect results already available without blocking; returns done()."""
        while not self.done():
            raw = await self.redis_client.lpop(self._key)
            if raw is None:
                break
            self._accept(raw)
        return self.done()
    
    async def get(self, timeout: Optional[float] = None) -> dict[str, JobResult]:
        """Wait for every member; raises NodeJobTimeout or NodeJobFailure."""
        deadline = None if timeout is None else time.monotonic() + timeout
        
        while not self.done():
            if deadline is None:
                wait = 0
            else:
                wait = deadline - time.monotonic()
                if wait <= 0:
                    await self.poll()
                    if self.done():
                        break
                    raise NodeJobTimeout(self.job.kind, self.array_id, self.pending, timeout)
            raw = await self.redis_client.blpop(self._key, timeout=wait)
            if raw is not None:
                self._accept(raw)
        
        failures = {
            node_id: result.error or "failed"
            for node_id, result in self._results.items()
            if not result.succeeded
        }
        if failures:
            for node_id, result in self._results.items():
                if result.traceback:
                    logger.error(f"{self.job.kind} on {self.array_id}/{node_id}:\n{result.traceback}")
            raise NodeJobFailure(self.job.kind, self.array_id, failures)
        
        return dict(self._results)
    
    async def values(self, timeout: Optional[float] = None) -> dict[str, object]:
        """Job return values keyed by node id."""
        results = await self.get(timeout)
        return {node_id: result.value for node_id, result in results.items()}


class NodeArray:
    """A role-playing group of nodes that jobs are submitted to."""
    
    def __init__(self, cluster: "Cluster", config: NodeArrayConfig):
        self.cluster = cluster
        self.config = config
    
    @property
    def id(self) -> str:
        return self.config.id
    
    @property
    def node_ids(self) -> list[str]:
        return [node.id for node in self.config.nodes]
    
    def __len__(self) -> int:
        return len(self.config.nodes)
    
    def hostname_of(self, node_id: str) -> str:
        return self.config.node(node_id).hostname
    
    async def execute(self, job: NodeJob | str, params: Optional[dict] = None) -> NodeArrayFuture:
        """Submit a job to every node of the array."""
        if isinstance(job, str):
            job = NodeJob(kind=job, params=params or {})
        redis_client = self.cluster.redis_client
        future = NodeArrayFuture(redis_client, self.cluster.cluster_id, self.id, job, self.node_ids)
        payload = job.model_dump(mode="json")
        for node_id in self.node_ids:
            event = create_job_submit_event(self.cluster.cluster_id, f"{self.id}/{node_id}", payload)
            await redis_client.publish_to_node(self.cluster.cluster_id, self.id, node_id, event)
        logger.debug(f"Submitted {job.kind} ({job.id}) to {len(self)} node(s) of '{self.id}'")
        return future


class Cluster:
    """Provisioned node arrays, closed on every exit path when used with ``async with``."""
    
    def __init__(
        self,
        config: ClusterConfig,
        settings: Optional[DriverSettings] = None,
        launcher: Optional[NodeLauncher] = None,
        redis_client: Optional[RedisClient] = None,
        cluster_id: Optional[str] = None,
    ):
        self.config = config
        self.settings = settings or DriverSettings()
        self.launcher = launcher or create_launcher(self.settings)
        self.cluster_id = cluster_id or generate_id(config.name)
        self.redis_client = redis_client or RedisClient(url=self.settings.redis_url, client_id="driver")
        self.arrays = {array.id: NodeArray(self, array) for array in config.node_arrays}
        self.launched: dict[str, LaunchedNode] = {}
        self._closed = False
    
    async def __aenter__(self) -> "Cluster":
        try:
            await self.provision()
        except BaseException:
            await self.close()
            raise
        return self
    
    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
    
    def node_array(self, array_id: str) -> NodeArray:
        try:
            return self.arrays[array_id]
        except KeyError:
            raise KeyError(f"No node array '{array_id}' in cluster '{self.cluster_id}'")
    
    def barrier(self, name: str, parties: int) -> Barrier:
        return Barrier(self.redis_client, self.cluster_id, name, parties)
    
    def expected_nodes(self) -> list[str]:
        return [f"{array.id}/{node.id}" for array in self.config.node_arrays for node in array.nodes]
    
    async def _on_event(self, event: Event) -> None:
        if event.cluster_id != self.cluster_id:
            return
        if event.type == EventType.STATUS_ERROR:
            logger.error(f"Node {event.source} reported: {event.payload.get('error')} {event.payload.get('details')}")
        elif event.type == EventType.JOB_RESULT:
            result = event.payload.get("result", {})
            if result.get("status") == "failed":
                logger.warning(f"Job {result.get('job_id')} failed on {event.source}: {result.get('error')}")
        elif event.type == EventType.NODE_REGISTER:
            logger.info(f"Node {event.source} registered from {event.payload.get('hostname')}")
    
    async def provision(self) -> None:
        """Start every node and wait until all of them registered."""
        logger.info(f"Provisioning cluster {self.cluster_id} with {self.config.node_count()} node(s)")
        await self.redis_client.connect()
        await self.redis_client.subscribe(RedisClient.driver_channel(self.cluster_id))
        self.redis_client.on_any(self._on_event)
        await self.redis_client.start_listening()
        await self.redis_client.delete(RedisClient.node_registry(self.cluster_id))
        
        launches = []
        for array in self.config.node_arrays:
            runtime = self.config.runtime_of(array.id)
            for node in array.nodes:
                launches.append(self.launcher.launch(self.cluster_id, array.id, node, runtime))
        
        results = await asyncio.gather(*launches, return_exceptions=True)
        errors = []
        for result in results:
            if isinstance(result, BaseException):
                errors.append(result)
            else:
                self.launched[result.name] = result
        if errors:
            raise errors[0]
        
        await self.wait_for_registration(self.settings.registration_timeout)
    
    async def wait_for_registration(self, timeout: float, poll_interval: float = 0.2) -> None:
        expected = set(self.expected_nodes())
        deadline = time.monotonic() + timeout
        while True:
            registered = set(await self.redis_client.hgetall(RedisClient.node_registry(self.cluster_id)))
            missing = expected - registered
            if not missing:
                logger.info(f"All {len(expected)} node(s) of cluster {self.cluster_id} registered")
                return
            if time.monotonic() >= deadline:
                raise NodeLaunchError(
                    f"Nodes did not register within {timeout}s: {', '.join(sorted(missing))}"
                )
            await asyncio.sleep(poll_interval)
    
    async def download(self, array_id: str, local_root: Path) -> dict[str, Path]:
        """Copy every node's report directory of an array into local_root/<node_id>."""
        array = self.node_array(array_id)
        downloaded = {}
        for node_id in array.node_ids:
            launched = self.launched[f"{array_id}/{node_id}"]
            downloaded[node_id] = await self.launcher.download(launched, local_root / node_id)
        return downloaded
    
    async def close(self, grace: float = 5.0) -> None:
        """Shut down nodes and release the coordination connection; safe to call twice."""
        if self._closed:
            return
        self._closed = True
        logger.info(f"Closing cluster {self.cluster_id}")
        
        if self.redis_client.is_connected:
            try:
                await self.redis_client.publish_broadcast(self.cluster_id, create_shutdown_event(self.cluster_id))
                await self._wait_for_deregistration(grace)
            except Exception as e:
                logger.warning(f"Error shutting nodes down: {e}")
        
        for launched in self.launched.values():
            try:
                await self.launcher.terminate(launched)
            except Exception as e:
                logger.warning(f"Error terminating node {launched.name}: {e}")
        
        try:
            await self.redis_client.disconnect()
        except Exception as e:
            logger.warning(f"Error disconnecting from Redis: {e}")
    
    async def _wait_for_deregistration(self, grace: float, poll_interval: float = 0.2) -> None:
        deadline = time.monotonic() + grace
        while time.monotonic() < deadline:
            if not await self.redis_client.hgetall(RedisClient.node_registry(self.cluster_id)):
                return
            await asyncio.sleep(poll_interval)
