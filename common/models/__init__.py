"""Common data models."""

from common.models.cluster import ClusterConfig, NodeArrayConfig, NodeConfig, RuntimeConfig
from common.models.params import PerfTestParams, Protocol
from common.models.job import NodeJob, JobResult, JobStatus
from common.models.report import (
    PercentileSummary,
    StatusSummary,
    RoleReport,
    Measurement,
    Verdict,
)

__all__ = [
    "ClusterConfig",
    "NodeArrayConfig",
    "NodeConfig",
    "RuntimeConfig",
    "PerfTestParams",
    "Protocol",
    "NodeJob",
    "JobResult",
    "JobStatus",
    "PercentileSummary",
    "StatusSummary",
    "RoleReport",
    "Measurement",
    "Verdict",
]
