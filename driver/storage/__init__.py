"""Run history storage."""

from driver.storage.run_store import RunStore, RunStatus

__all__ = ["RunStore", "RunStatus"]
