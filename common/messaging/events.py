"""Events exchanged over Redis between the driver and its nodes."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field

DRIVER = "driver"
ALL_NODES = "all"


class EventType(str, Enum):
    """Types of events in the system."""
    
    NODE_REGISTER = "node.register"
    NODE_HEARTBEAT = "node.heartbeat"
    NODE_SHUTDOWN = "node.shutdown"
    
    JOB_SUBMIT = "job.submit"
    JOB_RESULT = "job.result"
    
    STATUS_ERROR = "status.error"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Event(BaseModel):
    """One message on a driver, node or broadcast channel.

    ``source`` and ``target`` are node names (``<array>/<node>``),
    ``driver`` or ``all``. A missing target means the driver.
    """
    
    type: EventType
    timestamp: datetime = Field(default_factory=_utcnow)
    source: str
    target: Optional[str] = None
    cluster_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    
    def to_json(self) -> dict:
        return self.model_dump(mode="json")
    
    @classmethod
    def from_json(cls, data: dict) -> "Event":
        """Rebuild an event; raises ValueError on unknown types or bad fields."""
        return cls.model_validate(data)


def _from_driver(event_type: EventType, cluster_id: str, target: str, **payload) -> Event:
    return Event(type=event_type, source=DRIVER, target=target, cluster_id=cluster_id, payload=payload)


def _from_node(event_type: EventType, cluster_id: str, node: str, **payload) -> Event:
    return Event(type=event_type, source=node, cluster_id=cluster_id, payload=payload)


def create_register_event(cluster_id: str, node: str, **info: Any) -> Event:
    """Announce a node; ``info`` carries hostname, version and pid."""
    return _from_node(EventType.NODE_REGISTER, cluster_id, node, **info)


def create_heartbeat_event(cluster_id: str, node: str, running_jobs: int = 0) -> Event:
    return _from_node(EventType.NODE_HEARTBEAT, cluster_id, node, running_jobs=running_jobs)


def create_job_result_event(cluster_id: str, node: str, result: dict) -> Event:
    return _from_node(EventType.JOB_RESULT, cluster_id, node, result=result)


def create_error_event(cluster_id: str, node: str, error: str = "", details: dict = None) -> Event:
    return _from_node(EventType.STATUS_ERROR, cluster_id, node, error=error, details=details or {})


def create_job_submit_event(cluster_id: str, target: str, job: dict) -> Event:
    return _from_driver(EventType.JOB_SUBMIT, cluster_id, target, job=job)


def create_shutdown_event(cluster_id: str, target: str = ALL_NODES) -> Event:
    return _from_driver(EventType.NODE_SHUTDOWN, cluster_id, target)
