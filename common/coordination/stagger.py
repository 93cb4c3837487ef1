"""Stagger scheduling for loaders and the server's rotating profiler.

Loaders all run until the end of the run window but start one after another:
the loader holding arrival index ``i`` out of ``N`` waits ``i * D / N`` and
then drives load for the remaining ``D - i * D / N``. The delay does not
account for any skew in the start barrier's release across nodes.
"""

from __future__ import annotations

from dataclasses import dataclass

LOADER_INDEX_BARRIER = "loader-index-barrier"
RUN_START_BARRIER = "run-start-barrier"
RUN_END_BARRIER = "run-end-barrier"


@dataclass(frozen=True)
class StaggerSlot:
    """When a loader starts and how long it stays active, in seconds."""
    index: int
    delay: float
    window: float


@dataclass(frozen=True)
class ProfilingSlice:
    """One profiling window of the server, offsets from the run start."""
    index: int
    start: float
    length: float
    
    @property
    def end(self) -> float:
        return self.start + self.length
    
    @property
    def filename(self) -> str:
        return f"profile.{self.index + 1}.html"


def loader_delay(index: int, loaders: int, duration: float) -> float:
    """Delay before loader #index starts."""
    if loaders < 1:
        raise ValueError(f"Need at least one loader, got {loaders}")
    if not 0 <= index < loaders:
        raise ValueError(f"Loader index {index} out of range [0, {loaders})")
    return duration / loaders * index


def stagger_slot(index: int, loaders: int, duration: float) -> StaggerSlot:
    delay = loader_delay(index, loaders, duration)
    return StaggerSlot(index=index, delay=delay, window=duration - delay)


def stagger_plan(loaders: int, duration: float) -> list[StaggerSlot]:
    """Slots for every loader index, in start order."""
    return [stagger_slot(i, loaders, duration) for i in range(loaders)]


def profiling_slices(loaders: int, duration: float) -> list[ProfilingSlice]:
    """Server profiling windows, one per loader activation step.
    
    Each loader quantum ``D / N`` keeps a gap of a fifth of the quantum on
    both sides so that a profile never straddles a load step.
    """
    if loaders < 1:
        raise ValueError(f"Need at least one loader, got {loaders}")
    quantum = duration / loaders
    gap = quantum / 5
    return [
        ProfilingSlice(index=i, start=i * quantum + gap, length=quantum - 2 * gap)
        for i in range(loaders)
    ]
