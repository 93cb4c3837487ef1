"""Cross-node coordination: barriers and stagger scheduling."""

from common.coordination.barrier import Barrier
from common.coordination.stagger import (
    LOADER_INDEX_BARRIER,
    RUN_START_BARRIER,
    RUN_END_BARRIER,
    StaggerSlot,
    ProfilingSlice,
    loader_delay,
    stagger_slot,
    stagger_plan,
    profiling_slices,
)

__all__ = [
    "Barrier",
    "LOADER_INDEX_BARRIER",
    "RUN_START_BARRIER",
    "RUN_END_BARRIER",
    "StaggerSlot",
    "ProfilingSlice",
    "loader_delay",
    "stagger_slot",
    "stagger_plan",
    "profiling_slices",
]
