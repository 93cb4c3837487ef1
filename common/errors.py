"""Error taxonomy for experiment runs."""

from __future__ import annotations

from typing import Optional


class PerfHarnessError(Exception):
    """Base class for all harness errors."""


class ToolResolutionError(PerfHarnessError):
    """A requested runtime could not be found on a host."""
    
    def __init__(self, tool_name: str, hostname: str, detail: str = ""):
        self.tool_name = tool_name
        self.hostname = hostname
        message = f"Tool '{tool_name}' not found on host '{hostname}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class BarrierError(PerfHarnessError):
    """A barrier was used inconsistently (wrong party count, too many arrivals)."""


class BarrierTimeoutError(BarrierError):
    """Not enough participants reached a barrier before its deadline."""
    
    def __init__(self, name: str, parties: int, arrived: Optional[int] = None, detail: str = ""):
        self.name = name
        self.parties = parties
        self.arrived = arrived
        message = f"Barrier '{name}' broken waiting for {parties} parties"
        if arrived is not None:
            message = f"{message} ({arrived} arrived)"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class NodeJobFailure(PerfHarnessError):
    """One or more members of a node array failed to run a job."""
    
    def __init__(self, job_kind: str, array_id: str, failures: dict[str, str]):
        self.job_kind = job_kind
        self.array_id = array_id
        self.failures = failures
        details = "; ".join(f"{node}: {error}" for node, error in sorted(failures.items()))
        super().__init__(
            f"Job '{job_kind}' failed on {len(failures)} node(s) of array '{array_id}': {details}"
        )


class NodeJobTimeout(PerfHarnessError, TimeoutError):
    """A node array future did not resolve in time."""
    
    def __init__(self, job_kind: str, array_id: str, pending: list[str], timeout: float):
        self.job_kind = job_kind
        self.array_id = array_id
        self.pending = pending
        self.timeout = timeout
        super().__init__(
            f"Job '{job_kind}' on array '{array_id}' did not complete within {timeout}s; "
            f"pending nodes: {', '.join(pending)}"
        )


class NodeLaunchError(PerfHarnessError):
    """A node process could not be started or never registered."""


class PhaseTransitionError(PerfHarnessError):
    """A run tried to move between phases out of order."""
