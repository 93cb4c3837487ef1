"""Node worker: runs jobs submitted by the driver on one cluster node."""

__version__ = "1.0.0"
