"""Small helpers shared by the driver and the nodes."""

from __future__ import annotations

import re
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import yaml

_DURATION = re.compile(r"^(\d+(?:\.\d+)?)\s*(ms|s|m|h)?$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def generate_id(prefix: str = "") -> str:
    """Sortable unique identifier: [<prefix>_]<utc timestamp>_<8 hex>."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    suffix = uuid.uuid4().hex[:8]
    return "_".join(part for part in (prefix, stamp, suffix) if part)


def generate_run_id() -> str:
    return generate_id("run")


def parse_duration(value: str | int | float) -> float:
    """Seconds from 90, '90', '90s', '500ms', '10m' or '1h'."""
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION.match(value.strip().lower())
    if not match:
        raise ValueError(f"Invalid duration format: {value}")
    amount, unit = match.groups()
    return float(amount) * _DURATION_UNITS[unit or "s"]


def format_duration(seconds: float) -> str:
    """45s, 1m 30s or 1h 1m 1s."""
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def load_yaml(path: str | Path) -> dict:
    """Mapping stored in a YAML file; an empty file gives {}."""
    with open(path) as f:
        return yaml.safe_load(f) or {}


def save_yaml(path: str | Path, data: dict) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


def ensure_dir(path: str | Path) -> Path:
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


class Timer:
    """Elapsed wall time of a block, on the monotonic clock."""
    
    def __init__(self):
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None
    
    def __enter__(self) -> "Timer":
        self.start_time = time.monotonic()
        return self
    
    def __exit__(self, *args) -> None:
        self.end_time = time.monotonic()
    
    @property
    def elapsed_seconds(self) -> float:
        """Up to now while the block runs, frozen once it exits."""
        if self.start_time is None:
            return 0.0
        end = self.end_time if self.end_time is not None else time.monotonic()
        return end - self.start_time
    
    @property
    def elapsed_ms(self) -> float:
        return self.elapsed_seconds * 1000
