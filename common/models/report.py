"""Report and verdict models."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class PercentileSummary(BaseModel):
    """Percentile view of a latency population, values in microseconds."""
    count: int = 0
    min: float = 0
    max: float = 0
    mean: float = 0
    p50: float = 0
    p90: float = 0
    p99: float = 0
    p999: float = 0


class StatusSummary(BaseModel):
    """Response status tally."""
    counts: dict[int, int] = Field(default_factory=dict)
    
    @property
    def total(self) -> int:
        return sum(self.counts.values())
    
    @property
    def errors(self) -> int:
        return sum(count for code, count in self.counts.items() if not 200 <= code < 400)
    
    @property
    def error_rate_percent(self) -> float:
        if self.total == 0:
            return 0.0
        return self.errors * 100.0 / self.total


class RoleReport(BaseModel):
    """Merged results of every node playing one role."""
    role: str
    nodes: list[str] = Field(default_factory=list)
    latency: PercentileSummary = Field(default_factory=PercentileSummary)
    per_node: dict[str, PercentileSummary] = Field(default_factory=dict)
    status: Optional[StatusSummary] = None


class Measurement(BaseModel):
    """One observed value compared against its threshold."""
    name: str
    observed: float
    expected: float
    margin_percent: float
    limit: float
    passed: bool


class Verdict(BaseModel):
    """Overall pass/fail plus the measurements behind it."""
    passed: bool
    measurements: list[Measurement] = Field(default_factory=list)
    
    @property
    def failures(self) -> list[Measurement]:
        return [m for m in self.measurements if not m.passed]
    
    def describe(self) -> str:
        lines = [f"Verdict: {'PASS' if self.passed else 'FAIL'}"]
        for m in self.measurements:
            mark = "ok" if m.passed else "FAILED"
            lines.append(
                f"  {m.name}: observed={m.observed:.0f} expected={m.expected:.0f} "
                f"limit={m.limit:.0f} (+{m.margin_percent}%) {mark}"
            )
        return "\n".join(lines)
