"""Node configuration settings."""

from __future__ import annotations

import socket
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class NodeSettings(BaseSettings):
    """Node settings loaded from environment variables."""
    
    # Identity within the cluster
    cluster_id: str = "local"
    array_id: str = "default"
    node_id: str = "1"
    
    # Coordination service
    redis_url: str = "redis://localhost:6379"
    
    # Heartbeat
    heartbeat_interval: int = 5  # seconds
    
    # Barrier keys time-to-live
    barrier_ttl: int = 3600  # seconds
    
    # Work directory; reports are written below it
    work_dir: Path = Field(default=Path("/tmp/perfharness"))
    
    # Logging
    log_level: str = "INFO"
    
    class Config:
        env_prefix = "PERFHARNESS_NODE_"
        env_file = ".env"
        extra = "ignore"
    
    @property
    def hostname(self) -> str:
        return socket.gethostname()
    
    @property
    def node_name(self) -> str:
        return f"{self.array_id}/{self.node_id}"
    
    @property
    def node_dir(self) -> Path:
        """Directory holding this node's reports."""
        return self.work_dir / self.cluster_id / self.array_id / self.node_id


# Global settings instance
_settings: Optional[NodeSettings] = None


def get_settings() -> NodeSettings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = NodeSettings()
    return _settings


def init_settings(**kwargs) -> NodeSettings:
    """Initialize settings with custom values."""
    global _settings
    _settings = NodeSettings(**kwargs)
    return _settings
