"""One experiment run: provision, warm up, synchronized run, reports, verdict."""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from common.coordination import RUN_END_BARRIER, RUN_START_BARRIER
from common.errors import PhaseTransitionError
from common.models.cluster import ClusterConfig
from common.models.params import PerfTestParams
from common.models.report import RoleReport, Verdict
from common.utils import Timer, load_yaml, parse_duration
from driver.cluster import Cluster
from driver.config import DriverSettings, get_settings
from driver.launcher import NodeLauncher
from driver.reports import ReportCollector
from driver.verdict import evaluate

logger = logging.getLogger(__name__)


class RunPhase(str, Enum):
    """Phases of a run, in order."""
    IDLE = "idle"
    WARMING_UP = "warming_up"
    AWAITING_START = "awaiting_start"
    ACTIVE = "active"
    AWAITING_END = "awaiting_end"
    DRAINING = "draining"
    CLOSED = "closed"


_ORDER = list(RunPhase)


class PhaseTracker:
    """Moves a run forward one phase at a time; any phase may jump to CLOSED."""
    
    def __init__(self):
        self.phase = RunPhase.IDLE
        self.history: list[tuple[RunPhase, float]] = [(RunPhase.IDLE, time.monotonic())]
    
    def can_advance(self, to: RunPhase) -> bool:
        if self.phase == RunPhase.CLOSED:
            return False
        if to == RunPhase.CLOSED:
            return True
        return _ORDER.index(to) == _ORDER.index(self.phase) + 1
    
    def advance(self, to: RunPhase) -> None:
        if not self.can_advance(to):
            raise PhaseTransitionError(f"Cannot go from {self.phase.value} to {to.value}")
        logger.info(f"Phase {self.phase.value} -> {to.value}")
        self.phase = to
        self.history.append((to, time.monotonic()))
    
    def close(self) -> None:
        if self.phase != RunPhase.CLOSED:
            self.advance(RunPhase.CLOSED)


class RoleArrays(BaseModel):
    """Which node array plays which role."""
    server: str = "server"
    loader: str = "loaders"
    probe: str = "probe"


class ScenarioConfig(BaseModel):
    """Everything needed to run one experiment, usually loaded from YAML."""
    name: str = Field(default="perf", description="Scenario name")
    cluster: ClusterConfig
    params: PerfTestParams
    roles: RoleArrays = Field(default_factory=RoleArrays)
    
    run_duration: float = Field(default=600.0, description="Synchronized run length in seconds")
    warmup_duration: float = Field(default=60.0, description="0 disables warm-up")
    warmup_rate: int = Field(default=10_000)
    ramp_up_ratio: float = Field(default=0.5, description="Loader ramp-up as a share of its window")
    
    server_host: Optional[str] = Field(
        default=None,
        description="Host loaders connect to; defaults to the server node's hostname"
    )
    server_port: Optional[int] = None
    pipeline: dict[str, Any] = Field(default_factory=dict)
    monitored_items: list[str] = Field(default_factory=lambda: ["cpu", "memory", "network"])
    profile: bool = True
    
    @field_validator("run_duration", "warmup_duration", mode="before")
    @classmethod
    def _duration(cls, value):
        return parse_duration(value)
    
    @model_validator(mode="after")
    def _check_roles(self) -> "ScenarioConfig":
        for role in ("server", "loader", "probe"):
            array_id = getattr(self.roles, role)
            if array_id not in {array.id for array in self.cluster.node_arrays}:
                raise ValueError(f"No node array '{array_id}' for the {role} role")
        if self.cluster.node_count(self.roles.loader) < 1:
            raise ValueError("At least one loader node is required")
        if self.cluster.node_count(self.roles.server) != 1:
            raise ValueError("Exactly one server node is required")
        return self
    
    @property
    def loaders(self) -> int:
        return self.cluster.node_count(self.roles.loader)
    
    @property
    def participants(self) -> int:
        """Every node of the three roles plus the driver."""
        roles = {self.roles.server, self.roles.loader, self.roles.probe}
        return sum(self.cluster.node_count(a) for a in roles) + 1
    
    @classmethod
    def from_yaml(cls, path: str | Path) -> "ScenarioConfig":
        return cls(**load_yaml(path))


class ScenarioResult(BaseModel):
    """Outcome of a completed run."""
    name: str
    cluster_id: str
    params: PerfTestParams
    verdict: Verdict
    reports: dict[str, RoleReport] = Field(default_factory=dict)
    loaders: dict[str, Any] = Field(default_factory=dict)
    run_elapsed: float = 0.0
    total_elapsed: float = 0.0
    report_dir: str = ""
    
    @property
    def passed(self) -> bool:
        return self.verdict.passed


class PerfScenario:
    """Drives one run through its phases on a freshly provisioned cluster."""
    
    def __init__(
        self,
        config: ScenarioConfig,
        settings: Optional[DriverSettings] = None,
        launcher: Optional[NodeLauncher] = None,
        cluster: Optional[Cluster] = None,
        report_dir: Optional[Path] = None,
    ):
        self.config = config
        self.settings = settings or get_settings()
        self.cluster = cluster or Cluster(config.cluster, self.settings, launcher=launcher)
        self.report_dir = Path(report_dir or self.settings.report_dir)
        self.phases = PhaseTracker()
    
    def _job_params(self, uri: str, **extra) -> dict:
        config = self.config
        params = {
            "uri": uri,
            "protocol": config.params.protocol.value,
            "participants": config.participants,
            "loaders": config.loaders,
            "run_duration": config.run_duration,
            "monitored_items": config.monitored_items,
            "start_timeout": self.settings.start_barrier_timeout,
            "end_timeout": config.run_duration + self.settings.end_barrier_grace,
        }
        params.update(extra)
        return params
    
    async def run(self) -> ScenarioResult:
        """Run the experiment; failures propagate after the cluster is closed."""
        with Timer() as timer:
            try:
                async with self.cluster as cluster:
                    result = await self._run(cluster)
            finally:
                self.phases.close()
        result.total_elapsed = timer.elapsed_seconds
        logger.info(f"Done; elapsed={result.total_elapsed * 1000:.0f} ms")
        return result
    
    async def _run(self, cluster: Cluster) -> ScenarioResult:
        config = self.config
        settings = self.settings
        server_array = cluster.node_array(config.roles.server)
        loaders_array = cluster.node_array(config.roles.loader)
        probe_array = cluster.node_array(config.roles.probe)
        
        for array in (server_array, loaders_array, probe_array):
            info = await (await array.execute("system.info")).values(settings.future_timeout)
            for node_id, value in info.items():
                logger.info(f"{array.id}/{node_id}: {value}")
        
        server_params = {
            "protocol": config.params.protocol.value,
            "port": config.server_port or settings.server_port or config.params.protocol.default_port,
            "pipeline": config.pipeline,
        }
        started = await (await server_array.execute("server.start", server_params)).values(
            settings.server_setup_timeout
        )
        server_node = server_array.node_ids[0]
        port = started[server_node]["port"]
        host = config.server_host or server_array.hostname_of(server_node)
        uri = f"{config.params.protocol.scheme}://{host}:{port}"
        logger.info(f"Server listening at {uri}")
        
        self.phases.advance(RunPhase.WARMING_UP)
        if config.warmup_duration > 0:
            logger.info("Warming up...")
            warmup = await loaders_array.execute(
                "load.warmup",
                {
                    "uri": uri,
                    "rate": config.warmup_rate,
                    "duration": config.warmup_duration,
                    "ramp_up": config.warmup_duration / 2,
                    "protocol": config.params.protocol.value,
                },
            )
            await warmup.get(config.warmup_duration + settings.future_timeout)
        
        self.phases.advance(RunPhase.AWAITING_START)
        logger.info("Running...")
        server_future = await server_array.execute("server.run", self._job_params(uri, profile=config.profile))
        loaders_future = await loaders_array.execute(
            "loader.run",
            self._job_params(uri, rate=config.params.loader_rate, ramp_up_ratio=config.ramp_up_ratio),
        )
        probe_future = await probe_array.execute("probe.run", self._job_params(uri, rate=config.params.probe_rate))
        
        await cluster.barrier(RUN_START_BARRIER, config.participants).wait(settings.start_barrier_timeout)
        released = time.monotonic()
        
        self.phases.advance(RunPhase.ACTIVE)
        await asyncio.sleep(config.run_duration)
        
        self.phases.advance(RunPhase.AWAITING_END)
        logger.info("Driver sync'ing on end barrier...")
        remaining = config.run_duration + settings.end_barrier_grace - (time.monotonic() - released)
        await cluster.barrier(RUN_END_BARRIER, config.participants).wait(max(remaining, 0.001))
        run_elapsed = time.monotonic() - released
        
        self.phases.advance(RunPhase.DRAINING)
        await server_future.get(settings.future_timeout)
        loader_values = await loaders_future.values(settings.future_timeout)
        await probe_future.get(settings.future_timeout)
        
        logger.info("Downloading reports...")
        collector = ReportCollector(cluster, self.report_dir)
        reports = {
            "server": await collector.collect("server", server_array.id),
            "loader": await collector.collect("loader", loaders_array.id),
            "probe": await collector.collect("probe", probe_array.id),
        }
        
        verdict = evaluate(reports["server"], reports["probe"], config.params, loader=reports["loader"])
        result = ScenarioResult(
            name=config.name,
            cluster_id=cluster.cluster_id,
            params=config.params,
            verdict=verdict,
            reports=reports,
            loaders=loader_values,
            run_elapsed=run_elapsed,
            report_dir=str(self.report_dir),
        )
        collector.write_summary(result.model_dump(mode="json"))
        logger.info(verdict.describe())
        return result
