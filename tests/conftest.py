"""Pytest configuration and shared fixtures."""

import asyncio
import tempfile
import shutil
from pathlib import Path
from typing import Generator, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from common.messaging.redis_client import RedisClient
from common.models.cluster import ClusterConfig
from common.models.params import PerfTestParams, Protocol


class FakeRedis:
    """In-memory stand-in for the redis.asyncio commands RedisClient uses.
    
    Values are stored as strings, as with decode_responses=True.
    """
    
    def __init__(self):
        self.values: dict[str, str] = {}
        self.lists: dict[str, list[str]] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.ttls: dict[str, int] = {}
        self.published: list[tuple[str, str]] = []
        self.closed = False
        self._cond = asyncio.Condition()
    
    async def ping(self) -> bool:
        return True
    
    async def aclose(self) -> None:
        self.closed = True
    
    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.values:
            return None
        self.values[key] = str(value)
        if ex:
            self.ttls[key] = ex
        return True
    
    async def get(self, key) -> Optional[str]:
        return self.values.get(key)
    
    async def delete(self, *keys) -> int:
        removed = 0
        for key in keys:
            for store in (self.values, self.lists, self.hashes):
                if key in store:
                    del store[key]
                    removed += 1
        return removed
    
    async def incr(self, key) -> int:
        value = int(self.values.get(key, 0)) + 1
        self.values[key] = str(value)
        return value
    
    async def expire(self, key, seconds) -> bool:
        self.ttls[key] = seconds
        return True
    
    async def rpush(self, key, *values) -> int:
        async with self._cond:
            items = self.lists.setdefault(key, [])
            items.extend(str(v) for v in values)
            self._cond.notify_all()
            return len(items)
    
    async def lpop(self, key) -> Optional[str]:
        items = self.lists.get(key)
        if not items:
            return None
        return items.pop(0)
    
    async def blpop(self, keys, timeout=0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout else None
        async with self._cond:
            while True:
                for key in keys:
                    if self.lists.get(key):
                        return key, self.lists[key].pop(0)
                if deadline is None:
                    await self._cond.wait()
                    continue
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                try:
                    await asyncio.wait_for(self._cond.wait(), remaining)
                except asyncio.TimeoutError:
                    return None
    
    async def hset(self, name, key, value) -> int:
        fields = self.hashes.setdefault(name, {})
        created = key not in fields
        fields[key] = str(value)
        return int(created)
    
    async def hget(self, name, key) -> Optional[str]:
        return self.hashes.get(name, {}).get(key)
    
    async def hgetall(self, name) -> dict:
        return dict(self.hashes.get(name, {}))
    
    async def hdel(self, name, *keys) -> int:
        fields = self.hashes.get(name, {})
        return sum(1 for key in keys if fields.pop(key, None) is not None)
    
    async def publish(self, channel, message) -> int:
        self.published.append((channel, message))
        return 1


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def redis_client(fake_redis: FakeRedis) -> RedisClient:
    """A RedisClient wired to the in-memory fake."""
    client = RedisClient(client_id="test")
    client._redis = fake_redis
    return client


@pytest.fixture
def mock_redis_client() -> MagicMock:
    """Create a mock Redis client."""
    mock = MagicMock(spec=RedisClient)
    mock.publish = AsyncMock(return_value=1)
    mock.publish_to_node = AsyncMock(return_value=1)
    mock.publish_to_driver = AsyncMock(return_value=1)
    mock.publish_broadcast = AsyncMock(return_value=1)
    mock.connect = AsyncMock()
    mock.disconnect = AsyncMock()
    mock.subscribe = AsyncMock()
    mock.start_listening = AsyncMock()
    mock.set = AsyncMock(return_value=True)
    mock.get = AsyncMock(return_value=None)
    mock.delete = AsyncMock(return_value=1)
    mock.rpush = AsyncMock(return_value=1)
    mock.hset = AsyncMock(return_value=1)
    mock.hdel = AsyncMock(return_value=1)
    mock.hget = AsyncMock(return_value=None)
    mock.hgetall = AsyncMock(return_value={})
    mock.expire = AsyncMock(return_value=True)
    mock.is_connected = True
    return mock


@pytest.fixture
def sample_cluster_config() -> dict:
    """Server, four loaders and a probe."""
    return {
        "name": "test-cluster",
        "node_arrays": [
            {"id": "server", "nodes": [{"id": "1", "hostname": "load-master"}]},
            {
                "id": "loaders",
                "nodes": [
                    {"id": "1a", "hostname": "load-1"},
                    {"id": "1b", "hostname": "load-1"},
                    {"id": "2a", "hostname": "load-2"},
                    {"id": "2b", "hostname": "load-2"},
                ],
            },
            {"id": "probe", "nodes": [{"id": "1", "hostname": "load-sample"}]},
        ],
    }


@pytest.fixture
def cluster_config(sample_cluster_config: dict) -> ClusterConfig:
    return ClusterConfig(**sample_cluster_config)


@pytest.fixture
def perf_params() -> PerfTestParams:
    return PerfTestParams(
        protocol=Protocol.HTTP,
        loader_rate=60_000,
        expected_p99_server_latency=3_600,
        expected_p99_probe_latency=800_000,
        expected_p99_error_margin=15.0,
    )


@pytest.fixture
def sample_scenario_config(sample_cluster_config: dict) -> dict:
    return {
        "name": "core-http",
        "cluster": sample_cluster_config,
        "params": {
            "protocol": "http",
            "loader_rate": 60000,
            "expected_p99_server_latency": 3600,
            "expected_p99_probe_latency": 800000,
            "expected_p99_error_margin": 15.0,
        },
        "run_duration": "40s",
        "warmup_duration": 0,
    }
