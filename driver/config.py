"""Driver configuration settings."""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class DriverSettings(BaseSettings):
    """Driver settings loaded from environment variables."""
    
    # Coordination service
    redis_url: str = "redis://localhost:6379"
    
    # Reports and run history
    report_dir: Path = Field(default=Path("target/report"))
    data_path: Path = Field(default=Path("./data"))
    
    # How node processes are started
    launcher: Literal["local", "ssh"] = "local"
    node_work_dir: Path = Field(default=Path("/tmp/perfharness"))
    ssh_user: str = "root"
    ssh_key_path: Optional[Path] = None
    ssh_timeout: int = 10  # seconds
    
    # Tool resolution
    toolchains_dir: Optional[Path] = None
    
    # Timeouts (seconds)
    start_barrier_timeout: float = 30.0
    end_barrier_grace: float = 30.0
    future_timeout: float = 30.0
    server_setup_timeout: float = 30.0
    registration_timeout: float = 60.0
    
    # Server under test
    server_port: Optional[int] = None
    
    # Logging
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    
    class Config:
        env_prefix = "PERFHARNESS_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"
    
    @property
    def database_path(self) -> Path:
        return self.data_path / "perfharness.db"
    
    @property
    def runs_path(self) -> Path:
        return self.data_path / "runs"


# Global settings instance
_settings: Optional[DriverSettings] = None


def get_settings() -> DriverSettings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = DriverSettings()
    return _settings


def init_settings(**kwargs) -> DriverSettings:
    """Initialize settings with custom values."""
    global _settings
    _settings = DriverSettings(**kwargs)
    return _settings
