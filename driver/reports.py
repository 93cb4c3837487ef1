"""Download node reports and turn histogram logs into percentile summaries.

Layout under the report directory:

    <report_dir>/<role>/<node_id>/...            raw files copied from the node
    <report_dir>/<role>/<node_id>/<role>.percentiles.json
    <report_dir>/<role>/<role>.percentiles.json  all nodes of the role merged
"""

from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from common.histogram import (
    LOADER_HISTOGRAM,
    PROBE_HISTOGRAM,
    SERVER_HISTOGRAM,
    STATUS_FILE,
    LatencyHistogram,
    read_histogram_log,
    read_status_file,
)
from common.models.report import RoleReport, StatusSummary

if TYPE_CHECKING:
    from driver.cluster import Cluster

logger = logging.getLogger(__name__)

ROLE_HISTOGRAMS = {
    "server": SERVER_HISTOGRAM,
    "loader": LOADER_HISTOGRAM,
    "probe": PROBE_HISTOGRAM,
}


def percentiles_file(role: str) -> str:
    return f"{role}.percentiles.json"


def build_role_report(
    role: str,
    role_dir: Path,
    start_ms: Optional[int] = None,
    end_ms: Optional[int] = None,
    node_ids: Optional[list[str]] = None,
) -> RoleReport:
    """Summarize the node directories below role_dir, writing percentile files.
    
    With node_ids, only those nodes are read; other directories are ignored.
    """
    histogram_name = ROLE_HISTOGRAMS[role]
    merged = LatencyHistogram()
    per_node = {}
    status_counts: dict[int, int] = {}
    has_status = False
    
    node_dirs = sorted(d for d in Path(role_dir).iterdir() if d.is_dir()) if Path(role_dir).is_dir() else []
    if node_ids is not None:
        node_dirs = [d for d in node_dirs if d.name in set(node_ids)]
    for node_dir in node_dirs:
        hlog = node_dir / histogram_name
        if not hlog.exists():
            logger.warning(f"No {histogram_name} in {node_dir}")
            continue
        histogram = read_histogram_log(hlog, start_ms, end_ms)
        summary = histogram.summary()
        (node_dir / percentiles_file(role)).write_text(summary.model_dump_json(indent=2))
        per_node[node_dir.name] = summary
        merged.merge(histogram)
        
        status_path = node_dir / STATUS_FILE
        if status_path.exists():
            has_status = True
            for code, count in read_status_file(status_path).counts.items():
                status_counts[code] = status_counts.get(code, 0) + count
    
    report = RoleReport(
        role=role,
        nodes=list(per_node),
        latency=merged.summary(),
        per_node=per_node,
        status=StatusSummary(counts=status_counts) if has_status else None,
    )
    Path(role_dir).mkdir(parents=True, exist_ok=True)
    (Path(role_dir) / percentiles_file(role)).write_text(report.model_dump_json(indent=2))
    logger.info(
        f"{role}: {report.latency.count} samples from {len(per_node)} node(s), "
        f"p99={report.latency.p99:.0f}us"
    )
    return report


def load_reports(report_dir: Path, roles: Optional[list[str]] = None) -> dict[str, RoleReport]:
    """Rebuild role reports from an already downloaded report directory."""
    reports = {}
    for role in roles or list(ROLE_HISTOGRAMS):
        role_dir = Path(report_dir) / role
        if role_dir.is_dir():
            reports[role] = build_role_report(role, role_dir)
    return reports


class ReportCollector:
    """Collects per-role reports from a live cluster."""
    
    def __init__(self, cluster: "Cluster", report_dir: Path):
        self.cluster = cluster
        self.report_dir = Path(report_dir)
    
    def role_dir(self, role: str) -> Path:
        return self.report_dir / role
    
    async def collect(
        self,
        role: str,
        array_id: str,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
    ) -> RoleReport:
        """Download an array's node reports and summarize them as one role.
        
        Anything left in the role directory by an earlier run is removed first.
        """
        role_dir = self.role_dir(role)
        if role_dir.exists():
            logger.info(f"Clearing previous reports in {role_dir}")
            shutil.rmtree(role_dir)
        await self.cluster.download(array_id, role_dir)
        node_ids = self.cluster.node_array(array_id).node_ids
        return build_role_report(role, role_dir, start_ms, end_ms, node_ids=node_ids)
    
    def write_summary(self, data: dict) -> Path:
        path = self.report_dir / "summary.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2, default=str))
        return path
