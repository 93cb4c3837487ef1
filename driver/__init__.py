"""perfharness driver: cluster orchestration, run phases, reports and verdict."""

__version__ = "1.0.0"
