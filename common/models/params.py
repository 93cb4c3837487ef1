"""Experiment parameters."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Protocol(str, Enum):
    """Wire protocol between loaders and the server."""
    HTTP = "http"    # plaintext HTTP/1.1
    HTTPS = "https"  # TLS HTTP/1.1
    H2C = "h2c"      # cleartext HTTP/2
    H2 = "h2"        # TLS HTTP/2
    
    @property
    def is_secure(self) -> bool:
        return self in (Protocol.HTTPS, Protocol.H2)
    
    @property
    def is_http2(self) -> bool:
        return self in (Protocol.H2C, Protocol.H2)
    
    @property
    def scheme(self) -> str:
        return "https" if self.is_secure else "http"
    
    @property
    def default_port(self) -> int:
        return 8443 if self.is_secure else 8080


class PerfTestParams(BaseModel):
    """Parameters of one scenario. Consumed by the verdict, never mutated."""
    model_config = ConfigDict(frozen=True)
    
    protocol: Protocol = Field(default=Protocol.HTTP)
    loader_rate: int = Field(default=60_000, gt=0, description="Requests/s per loader")
    probe_rate: int = Field(default=5, gt=0, description="Requests/s of the probe")
    expected_p99_server_latency: Optional[float] = Field(
        default=None, description="Expected server-side P99 latency (us)"
    )
    expected_p99_probe_latency: Optional[float] = Field(
        default=None, description="Expected probe-side P99 latency (us)"
    )
    expected_p99_error_margin: float = Field(
        default=15.0, ge=0, description="Allowed overshoot in percent"
    )
    max_error_rate_percent: Optional[float] = Field(
        default=None, ge=0, description="Max share of failed loader responses, in percent"
    )
    
    def __str__(self) -> str:
        return (
            f"{self.protocol.value}/rate={self.loader_rate}"
            f"/p99server={self.expected_p99_server_latency}"
            f"/p99probe={self.expected_p99_probe_latency}"
            f"/margin={self.expected_p99_error_margin}%"
        )
