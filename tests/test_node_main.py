"""Unit tests for the node worker."""

import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from common.messaging.events import (
    Event,
    EventType,
    create_job_submit_event,
    create_shutdown_event,
)
from common.messaging.redis_client import RedisClient
from common.models.job import NodeJob
from node.config import NodeSettings
from node.core import jobs
from node.main import NodeWorker


@pytest.fixture
def node_settings(temp_dir) -> NodeSettings:
    return NodeSettings(cluster_id="c1", array_id="loaders", node_id="1a", work_dir=temp_dir)


@pytest.fixture
def worker(node_settings, mock_redis_client) -> NodeWorker:
    return NodeWorker(node_settings, redis_client=mock_redis_client)


@pytest.mark.asyncio
class TestNodeWorker:
    """Tests for event handling, registration and shutdown."""
    
    async def test_work_dir_is_per_node(self, worker, temp_dir):
        assert worker.tools.work_dir == temp_dir / "c1" / "loaders" / "1a"
    
    async def test_job_submit(self, worker):
        worker.executor.submit = MagicMock()
        node_job = NodeJob(kind="system.info")
        event = create_job_submit_event("c1", "loaders/1a", node_job.model_dump(mode="json"))
        
        await worker.handle_event(event)
        
        submitted = worker.executor.submit.call_args[0][0]
        assert submitted.id == node_job.id
        assert submitted.kind == "system.info"
    
    async def test_other_cluster_ignored(self, worker):
        worker.executor.submit = MagicMock()
        event = create_job_submit_event("other", "loaders/1a", {"kind": "system.info"})
        
        await worker.handle_event(event)
        
        worker.executor.submit.assert_not_called()
    
    async def test_malformed_job_reported(self, worker, mock_redis_client):
        worker.executor.submit = MagicMock()
        event = Event(type=EventType.JOB_SUBMIT, source="driver", cluster_id="c1", payload={})
        
        await worker.handle_event(event)
        
        worker.executor.submit.assert_not_called()
        cluster_id, error_event = mock_redis_client.publish_to_driver.call_args[0]
        assert cluster_id == "c1"
        assert error_event.type == EventType.STATUS_ERROR
        assert error_event.source == "loaders/1a"
    
    async def test_shutdown_event_requests_stop(self, worker):
        await worker.handle_event(create_shutdown_event("c1"))
        
        assert worker._stop.is_set()
    
    async def test_register(self, worker, mock_redis_client, node_settings):
        await worker.register()
        
        name, field, info = mock_redis_client.hset.call_args[0]
        assert name == RedisClient.node_registry("c1")
        assert field == "loaders/1a"
        assert info["hostname"] == node_settings.hostname
        event = mock_redis_client.publish_to_driver.call_args[0][1]
        assert event.type == EventType.NODE_REGISTER
    
    async def test_register_with_fake_redis(self, node_settings, redis_client, fake_redis):
        worker = NodeWorker(node_settings, redis_client=redis_client)
        
        await worker.register()
        
        entry = json.loads(fake_redis.hashes[RedisClient.node_registry("c1")]["loaders/1a"])
        assert entry["work_dir"] == str(worker.tools.work_dir)
    
    async def test_shutdown_stops_server_and_deregisters(self, worker, mock_redis_client):
        server = MagicMock()
        server.stop = AsyncMock()
        worker.environment.put(jobs.SERVER_KEY, server)
        
        await worker.shutdown()
        
        server.stop.assert_awaited_once()
        assert jobs.SERVER_KEY not in worker.environment
        mock_redis_client.hdel.assert_awaited_once_with(RedisClient.node_registry("c1"), "loaders/1a")
        mock_redis_client.disconnect.assert_awaited_once()
    
    async def test_shutdown_tolerates_redis_errors(self, worker, mock_redis_client):
        mock_redis_client.hdel = AsyncMock(side_effect=ConnectionError("gone"))
        
        await worker.shutdown()
        
        assert worker._stop.is_set()
