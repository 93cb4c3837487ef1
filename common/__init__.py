"""Common utilities and models shared across driver and nodes."""

from common.models.cluster import ClusterConfig, NodeArrayConfig, NodeConfig
from common.models.params import PerfTestParams, Protocol
from common.models.job import NodeJob, JobResult
from common.models.report import Verdict

__all__ = [
    "ClusterConfig",
    "NodeArrayConfig",
    "NodeConfig",
    "PerfTestParams",
    "Protocol",
    "NodeJob",
    "JobResult",
    "Verdict",
]
