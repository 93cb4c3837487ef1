"""Job executor: runs registered NodeJobs and reports their outcome."""

from __future__ import annotations

import asyncio
import logging
import traceback
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from common.coordination.barrier import Barrier
from common.messaging.events import create_job_result_event
from common.messaging.redis_client import RedisClient
from common.models.job import JobResult, JobStatus, NodeJob

logger = logging.getLogger(__name__)

JobFunction = Callable[["NodeTools", dict], Awaitable[Any]]

_REGISTRY: dict[str, JobFunction] = {}

# Results are kept around long enough for the driver to collect them
RESULT_TTL = 3600


def job(kind: str) -> Callable[[JobFunction], JobFunction]:
    """Register a coroutine function as the handler of a job kind."""
    def decorator(func: JobFunction) -> JobFunction:
        if kind in _REGISTRY and _REGISTRY[kind] is not func:
            raise ValueError(f"Job kind '{kind}' already registered")
        _REGISTRY[kind] = func
        return func
    return decorator


def registered_jobs() -> dict[str, JobFunction]:
    return dict(_REGISTRY)


class NodeEnvironment:
    """Objects shared between jobs running on the same node."""
    
    def __init__(self):
        self._items: dict[str, Any] = {}
    
    def put(self, key: str, value: Any) -> None:
        self._items[key] = value
    
    def get(self, key: str, default: Any = None) -> Any:
        return self._items.get(key, default)
    
    def pop(self, key: str, default: Any = None) -> Any:
        return self._items.pop(key, default)
    
    def __contains__(self, key: str) -> bool:
        return key in self._items
    
    def keys(self) -> list[str]:
        return list(self._items)


class NodeTools:
    """What a job gets to work with on its node."""
    
    def __init__(
        self,
        cluster_id: str,
        array_id: str,
        node_id: str,
        redis_client: RedisClient,
        work_dir: Path,
        environment: Optional[NodeEnvironment] = None,
        barrier_ttl: int = 3600,
    ):
        self.cluster_id = cluster_id
        self.array_id = array_id
        self.node_id = node_id
        self.redis_client = redis_client
        self.work_dir = Path(work_dir)
        self.environment = environment or NodeEnvironment()
        self.barrier_ttl = barrier_ttl
    
    @property
    def node_name(self) -> str:
        return f"{self.array_id}/{self.node_id}"
    
    def barrier(self, name: str, parties: int) -> Barrier:
        """The cluster-wide barrier with this name."""
        return Barrier(self.redis_client, self.cluster_id, name, parties, ttl=self.barrier_ttl)
    
    def path(self, filename: str) -> Path:
        """Location of a report file of this node."""
        self.work_dir.mkdir(parents=True, exist_ok=True)
        return self.work_dir / filename


class JobExecutor:
    """Execute jobs on the node and push their results for the driver."""
    
    def __init__(self, tools: NodeTools, registry: Optional[dict[str, JobFunction]] = None):
        self.tools = tools
        self.registry = registry if registry is not None else _REGISTRY
        self._running: dict[str, asyncio.Task] = {}
    
    @property
    def running_jobs(self) -> int:
        return len(self._running)
    
    def submit(self, node_job: NodeJob) -> asyncio.Task:
        """Start a job in the background."""
        task = asyncio.create_task(self.run(node_job))
        self._running[node_job.id] = task
        task.add_done_callback(lambda _: self._running.pop(node_job.id, None))
        return task
    
    async def run(self, node_job: NodeJob) -> JobResult:
        """Run a job to completion and report its result."""
        logger.info(f"Starting job {node_job.kind} ({node_job.id}) on {self.tools.node_name}")
        func = self.registry.get(node_job.kind)
        
        if func is None:
            result = self._result(node_job, JobStatus.FAILED, error=f"Unknown job kind: {node_job.kind}")
            logger.error(result.error)
            await self._report(result)
            return result
        
        try:
            value = await func(self.tools, node_job.params)
            result = self._result(node_job, JobStatus.SUCCEEDED, value=value)
            logger.info(f"Job {node_job.kind} ({node_job.id}) completed")
        except asyncio.CancelledError:
            await self._report(self._result(node_job, JobStatus.FAILED, error="Job cancelled"))
            raise
        except Exception as e:
            logger.error(f"Job {node_job.kind} ({node_job.id}) failed: {e}", exc_info=True)
            result = self._result(
                node_job,
                JobStatus.FAILED,
                error=f"{type(e).__name__}: {e}",
                tb=traceback.format_exc(),
            )
        
        await self._report(result)
        return result
    
    def _result(
        self,
        node_job: NodeJob,
        status: JobStatus,
        value: Any = None,
        error: Optional[str] = None,
        tb: Optional[str] = None,
    ) -> JobResult:
        return JobResult(
            job_id=node_job.id,
            array_id=self.tools.array_id,
            node_id=self.tools.node_id,
            status=status,
            value=value,
            error=error,
            traceback=tb,
        )
    
    async def _report(self, result: JobResult) -> None:
        key = RedisClient.job_results(self.tools.cluster_id, result.job_id)
        await self.tools.redis_client.rpush(key, result.model_dump(mode="json"))
        await self.tools.redis_client.expire(key, RESULT_TTL)
        try:
            await self.tools.redis_client.publish_to_driver(
                self.tools.cluster_id,
                create_job_result_event(self.tools.cluster_id, self.tools.node_name, result.model_dump(mode="json")),
            )
        except Exception as e:
            logger.warning(f"Could not notify driver of job {result.job_id}: {e}")
    
    async def cleanup(self) -> None:
        """Cancel jobs still running."""
        tasks = list(self._running.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
