"""Run history: SQLite index plus one directory per run."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import asynccontextmanager, closing
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional

import aiosqlite

from common.utils import ensure_dir, generate_run_id, save_yaml

if TYPE_CHECKING:
    from driver.scenario import ScenarioConfig, ScenarioResult

logger = logging.getLogger(__name__)

RUNS_TABLE = """
CREATE TABLE IF NOT EXISTS runs (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    status TEXT NOT NULL,
    protocol TEXT,
    cluster_name TEXT,
    cluster_id TEXT,
    node_count INTEGER,
    run_duration REAL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    elapsed_seconds REAL,
    server_p99_us REAL,
    probe_p99_us REAL,
    error_message TEXT
);
CREATE INDEX IF NOT EXISTS idx_runs_started ON runs(started_at);
"""


class RunStatus(str, Enum):
    """Where a run ended up."""
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"  # verdict failure
    ERROR = "error"    # experiment failure


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RunStore:
    """Keeps every run's scenario, summary and log under ``<base>/runs/<run id>``."""
    
    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)
        self.db_path = self.base_path / "perfharness.db"
        ensure_dir(self.base_path / "runs")
        with closing(sqlite3.connect(self.db_path)) as conn:
            conn.executescript(RUNS_TABLE)
    
    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path) as conn:
            conn.row_factory = aiosqlite.Row
            yield conn
            await conn.commit()
    
    async def _update(self, run_id: str, **fields: Any) -> None:
        assignments = ", ".join(f"{column} = ?" for column in fields)
        async with self._db() as conn:
            await conn.execute(f"UPDATE runs SET {assignments} WHERE id = ?", (*fields.values(), run_id))
    
    def run_path(self, run_id: str) -> Path:
        return self.base_path / "runs" / run_id
    
    def log_path(self, run_id: str) -> Path:
        return self.run_path(run_id) / "run.log"
    
    async def create_run(self, scenario: "ScenarioConfig") -> str:
        """Index a starting run and keep a copy of its scenario; returns the run id."""
        run_id = generate_run_id()
        save_yaml(ensure_dir(self.run_path(run_id)) / "scenario.yaml", scenario.model_dump(mode="json"))
        
        row = {
            "id": run_id,
            "name": scenario.name,
            "status": RunStatus.RUNNING.value,
            "protocol": scenario.params.protocol.value,
            "cluster_name": scenario.cluster.name,
            "node_count": scenario.cluster.node_count(),
            "run_duration": scenario.run_duration,
            "started_at": _now(),
        }
        async with self._db() as conn:
            await conn.execute(
                f"INSERT INTO runs ({', '.join(row)}) VALUES ({', '.join('?' * len(row))})",
                tuple(row.values()),
            )
        logger.info(f"Created run {run_id}")
        return run_id
    
    async def complete_run(self, run_id: str, result: "ScenarioResult") -> None:
        """Store the summary of a run that reached a verdict."""
        summary = result.model_dump(mode="json")
        (self.run_path(run_id) / "summary.json").write_text(json.dumps(summary, indent=2))
        
        status = RunStatus.PASSED if result.passed else RunStatus.FAILED
        p99 = {role: report.latency.p99 for role, report in result.reports.items()}
        await self._update(
            run_id,
            status=status.value,
            cluster_id=result.cluster_id,
            completed_at=_now(),
            elapsed_seconds=result.total_elapsed,
            server_p99_us=p99.get("server"),
            probe_p99_us=p99.get("probe"),
        )
        logger.info(f"Run {run_id} {status.value}")
    
    async def fail_run(self, run_id: str, error: str) -> None:
        """Mark a run that ended without a verdict."""
        await self._update(run_id, status=RunStatus.ERROR.value, completed_at=_now(), error_message=error)
        logger.info(f"Run {run_id} errored: {error}")
    
    async def get_run(self, run_id: str) -> Optional[dict]:
        async with self._db() as conn:
            cursor = await conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,))
            row = await cursor.fetchone()
        return dict(row) if row else None
    
    async def list_runs(self, limit: int = 20, status: Optional[str] = None) -> list[dict]:
        """Most recent runs first, optionally only those with the given status."""
        where, args = ("WHERE status = ?", [status]) if status else ("", [])
        async with self._db() as conn:
            cursor = await conn.execute(
                f"SELECT * FROM runs {where} ORDER BY started_at DESC LIMIT ?", (*args, limit)
            )
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]
    
    def load_summary(self, run_id: str) -> Optional[dict]:
        path = self.run_path(run_id) / "summary.json"
        return json.loads(path.read_text()) if path.exists() else None
