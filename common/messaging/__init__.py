"""Messaging between driver and nodes."""

from common.messaging.redis_client import RedisClient
from common.messaging.events import Event, EventType

__all__ = ["RedisClient", "Event", "EventType"]
