"""Node job models."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from common.utils import generate_id


class JobStatus(str, Enum):
    """Outcome of a job on one node."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class NodeJob(BaseModel):
    """A unit of remote work, referenced by its registered kind."""
    kind: str = Field(..., description="Registered job kind, e.g. 'loader.run'")
    params: dict[str, Any] = Field(default_factory=dict)
    id: str = Field(default_factory=lambda: generate_id("job"))


class JobResult(BaseModel):
    """Outcome of a job on one node."""
    job_id: str
    array_id: str
    node_id: str
    status: JobStatus
    value: Any = None
    error: Optional[str] = None
    traceback: Optional[str] = None
    
    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.SUCCEEDED
