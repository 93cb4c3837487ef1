"""Redis client for pub/sub messaging and cluster-wide coordination state."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections import defaultdict
from typing import Callable, Optional, Any

import redis.asyncio as redis

from common.messaging.events import Event, EventType

logger = logging.getLogger(__name__)

# Handler key matching every event type
ANY_EVENT = "*"


def _encode(value: Any) -> Any:
    """Containers travel as JSON text; scalars go as they are."""
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


class RedisClient:
    """Async Redis client shared by the driver and the nodes of a cluster.

    Every key and channel lives under ``perfharness:<cluster_id>:`` so that
    several clusters can share one Redis without seeing each other.
    """

    PREFIX = "perfharness"

    def __init__(
        self,
        url: str = "redis://localhost:6379",
        client_id: str = "driver",
    ):
        self.url = url
        self.client_id = client_id
        self._redis: Optional[redis.Redis] = None
        self._pubsub: Optional[redis.client.PubSub] = None
        self._handlers: dict[str, list[Callable]] = defaultdict(list)
        self._running = False
        self._listener_task: Optional[asyncio.Task] = None

    # Naming

    @classmethod
    def key(cls, cluster_id: str, *parts: str) -> str:
        """Build a cluster-scoped key or channel name."""
        return ":".join([cls.PREFIX, cluster_id, *parts])

    @classmethod
    def node_channel(cls, cluster_id: str, array_id: str, node_id: str) -> str:
        return cls.key(cluster_id, "nodes", array_id, node_id)

    @classmethod
    def driver_channel(cls, cluster_id: str) -> str:
        return cls.key(cluster_id, "driver")

    @classmethod
    def broadcast_channel(cls, cluster_id: str) -> str:
        return cls.key(cluster_id, "broadcast")

    @classmethod
    def node_registry(cls, cluster_id: str) -> str:
        """Hash of registered nodes, keyed by '<array>/<node>'."""
        return cls.key(cluster_id, "registry")

    @classmethod
    def job_results(cls, cluster_id: str, job_id: str) -> str:
        """List a job's per-node results are pushed to."""
        return cls.key(cluster_id, "job", job_id, "results")

    # Connection

    @property
    def is_connected(self) -> bool:
        return self._redis is not None

    def _require(self) -> redis.Redis:
        if self._redis is None:
            raise RuntimeError("Not connected to Redis")
        return self._redis

    async def connect(self) -> None:
        if self._redis is not None:
            return
        logger.info(f"{self.client_id} connecting to Redis at {self.url}")
        conn = redis.from_url(self.url, decode_responses=True)
        await conn.ping()
        self._redis = conn
        logger.info("Connected to Redis")

    async def disconnect(self) -> None:
        """Stop listening and release the connections; safe when not connected."""
        self._running = False

        task, self._listener_task = self._listener_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        pubsub, self._pubsub = self._pubsub, None
        if pubsub is not None:
            await pubsub.aclose()

        conn, self._redis = self._redis, None
        if conn is not None:
            await conn.aclose()

        logger.info(f"{self.client_id} disconnected from Redis")

    # Pub/sub

    async def publish(self, channel: str, event: Event) -> int:
        """Publish an event; returns the number of subscribers that got it."""
        receivers = await self._require().publish(channel, json.dumps(event.to_json()))
        logger.debug(f"{event.type.value} -> {channel} ({receivers} receiver(s))")
        return receivers

    async def publish_to_node(self, cluster_id: str, array_id: str, node_id: str, event: Event) -> int:
        return await self.publish(self.node_channel(cluster_id, array_id, node_id), event)

    async def publish_to_driver(self, cluster_id: str, event: Event) -> int:
        return await self.publish(self.driver_channel(cluster_id), event)

    async def publish_broadcast(self, cluster_id: str, event: Event) -> int:
        """Publish an event to every node of the cluster."""
        return await self.publish(self.broadcast_channel(cluster_id), event)

    def on_event(self, event_type: EventType | str, handler: Callable) -> None:
        """Register a handler, plain or async, for one event type."""
        key = event_type.value if isinstance(event_type, EventType) else event_type
        self._handlers[key].append(handler)
        logger.debug(f"Registered handler for {key}")

    def on_any(self, handler: Callable) -> None:
        self.on_event(ANY_EVENT, handler)

    async def subscribe(self, *channels: str) -> None:
        conn = self._require()
        if self._pubsub is None:
            self._pubsub = conn.pubsub()
        await self._pubsub.subscribe(*channels)
        logger.info(f"Subscribed to {', '.join(channels)}")

    async def start_listening(self) -> None:
        """Dispatch incoming events to the handlers from a background task."""
        if self._running:
            return
        if self._pubsub is None:
            raise RuntimeError("Not subscribed to any channels")
        self._running = True
        self._listener_task = asyncio.create_task(self._listen_loop())

    async def _listen_loop(self) -> None:
        while self._running:
            try:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error reading pub/sub messages: {e}")
                await asyncio.sleep(1)
                continue
            if message is not None:
                await self._handle_message(message)

    async def _handle_message(self, message: dict) -> None:
        data = message.get("data")
        if not isinstance(data, str):
            return
        try:
            event = Event.from_json(json.loads(data))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Dropping undecodable message: {e}")
            return
        await self._dispatch(event)

    async def _dispatch(self, event: Event) -> None:
        handlers = self._handlers.get(event.type.value, []) + self._handlers.get(ANY_EVENT, [])
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Handler error for {event.type.value}: {e}", exc_info=True)

    # Keys, lists and hashes

    async def set(self, key: str, value: Any, ex: int = None, nx: bool = False) -> bool:
        """Set a key; with nx=True only when absent. Returns whether it was set."""
        return bool(await self._require().set(key, _encode(value), ex=ex, nx=nx))

    async def get(self, key: str) -> Optional[str]:
        return await self._require().get(key)

    async def delete(self, *keys: str) -> int:
        return await self._require().delete(*keys)

    async def incr(self, key: str) -> int:
        """Atomically increment a counter and return the new value."""
        return await self._require().incr(key)

    async def expire(self, key: str, seconds: int) -> bool:
        return await self._require().expire(key, seconds)

    async def rpush(self, key: str, *values: Any) -> int:
        return await self._require().rpush(key, *(_encode(v) for v in values))

    async def lpop(self, key: str) -> Optional[str]:
        return await self._require().lpop(key)

    async def blpop(self, key: str, timeout: float = 0) -> Optional[str]:
        """Pop the head of a list, blocking up to timeout seconds (0 = forever)."""
        popped = await self._require().blpop([key], timeout=timeout)
        return popped[1] if popped else None

    async def hset(self, name: str, key: str, value: Any) -> int:
        return await self._require().hset(name, key, _encode(value))

    async def hget(self, name: str, key: str) -> Optional[str]:
        return await self._require().hget(name, key)

    async def hgetall(self, name: str) -> dict:
        return await self._require().hgetall(name)

    async def hdel(self, name: str, *keys: str) -> int:
        return await self._require().hdel(name, *keys)
