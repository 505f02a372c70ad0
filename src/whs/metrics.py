"""SQLite-backed cost and execution metrics.

Every aggregate is computed from the ``workflow_runs``/``step_runs`` rows that
the start/complete calls write; there is no separate bookkeeping path. Step
completion overwrites the row for its step id, so recording it twice never
double-counts cost. A repeated step start leaves the existing row untouched.
"""

from __future__ import annotations

import sqlite3
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from whs.models import utcnow

SCHEMA = """
CREATE TABLE IF NOT EXISTS workflow_runs (
    id TEXT PRIMARY KEY,
    project TEXT NOT NULL,
    source_bead TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    status TEXT NOT NULL DEFAULT 'running',
    total_cost REAL NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS step_runs (
    id TEXT PRIMARY KEY,
    workflow_id TEXT NOT NULL,
    agent TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    cost REAL NOT NULL DEFAULT 0,
    turns INTEGER NOT NULL DEFAULT 0,
    max_turns INTEGER NOT NULL DEFAULT 0,
    outcome TEXT,
    FOREIGN KEY (workflow_id) REFERENCES workflow_runs(id)
);

CREATE INDEX IF NOT EXISTS idx_workflow_project ON workflow_runs(project);
CREATE INDEX IF NOT EXISTS idx_workflow_status ON workflow_runs(status);
CREATE INDEX IF NOT EXISTS idx_step_workflow ON step_runs(workflow_id);
CREATE INDEX IF NOT EXISTS idx_step_agent ON step_runs(agent);
"""

WORKFLOW_STATUSES = {"running", "done", "blocked", "error", "interrupted"}


def _now_iso() -> str:
    return utcnow().isoformat()


def _iso(moment: datetime) -> str:
    return moment.astimezone(UTC).replace(microsecond=0).isoformat()


class MetricsStore:
    def __init__(self, db_path: Path | str) -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.executescript(SCHEMA)
        self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> None:
        with self._lock:
            self._conn.execute(sql, params)
            self._conn.commit()

    def _fetchall(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [dict(row) for row in rows]

    def _fetchone(self, sql: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        return dict(row) if row is not None else None

    # write side

    def record_workflow_start(self, workflow_id: str, project: str, source_bead: str) -> None:
        self._execute(
            """
            INSERT INTO workflow_runs (id, project, source_bead, started_at, status, total_cost)
            VALUES (?, ?, ?, ?, 'running', 0)
            ON CONFLICT(id) DO UPDATE SET
                project = excluded.project,
                source_bead = excluded.source_bead
            """,
            (workflow_id, project, source_bead, _now_iso()),
        )

    def record_workflow_complete(
        self,
        workflow_id: str,
        status: str,
        total_cost: float | None = None,
    ) -> None:
        if status not in WORKFLOW_STATUSES:
            raise ValueError(f"Unknown workflow status: {status}")
        cost = total_cost
        if cost is None:
            cost = self._workflow_step_cost(workflow_id)
        self._execute(
            "UPDATE workflow_runs SET completed_at = ?, status = ?, total_cost = ? WHERE id = ?",
            (_now_iso(), status, cost, workflow_id),
        )

    def record_step_start(self, step_id: str, workflow_id: str, agent: str) -> None:
        now = _now_iso()
        with self._lock:
            # Placeholder parent row for steps whose workflow predates this store.
            self._conn.execute(
                """
                INSERT OR IGNORE INTO workflow_runs
                    (id, project, source_bead, started_at, status, total_cost)
                VALUES (?, 'unknown', 'unknown', ?, 'running', 0)
                """,
                (workflow_id, now),
            )
            self._conn.execute(
                """
                INSERT INTO step_runs (id, workflow_id, agent, started_at, cost)
                VALUES (?, ?, ?, ?, 0)
                ON CONFLICT(id) DO NOTHING
                """,
                (step_id, workflow_id, agent, now),
            )
            self._conn.commit()

    def record_step_complete(
        self,
        step_id: str,
        cost: float,
        outcome: str,
        turns: int = 0,
        max_turns: int = 0,
    ) -> None:
        self._execute(
            """
            UPDATE step_runs
            SET completed_at = ?, cost = ?, outcome = ?, turns = ?, max_turns = ?
            WHERE id = ?
            """,
            (_now_iso(), cost, outcome, turns, max_turns, step_id),
        )

    def mark_interrupted(self, workflow_id: str) -> None:
        self._execute(
            """
            UPDATE workflow_runs SET status = 'interrupted', completed_at = ?
            WHERE id = ? AND status = 'running'
            """,
            (_now_iso(), workflow_id),
        )

    def clear(self) -> None:
        with self._lock:
            self._conn.executescript("DELETE FROM step_runs; DELETE FROM workflow_runs;")
            self._conn.commit()

    # read side

    def _workflow_step_cost(self, workflow_id: str) -> float:
        row = self._fetchone(
            "SELECT COALESCE(SUM(cost), 0) AS total FROM step_runs WHERE workflow_id = ?",
            (workflow_id,),
        )
        return float(row["total"]) if row else 0.0

    def get_workflow(self, workflow_id: str) -> dict[str, Any] | None:
        return self._fetchone("SELECT * FROM workflow_runs WHERE id = ?", (workflow_id,))

    def get_workflow_steps(self, workflow_id: str) -> list[dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM step_runs WHERE workflow_id = ? ORDER BY started_at, rowid",
            (workflow_id,),
        )

    def get_project_metrics(self) -> list[dict[str, Any]]:
        return self._fetchall(
            """
            SELECT
                w.project,
                COUNT(DISTINCT w.id) AS workflow_count,
                COUNT(s.id) AS step_count,
                COALESCE(SUM(s.cost), 0) AS total_cost,
                CASE
                    WHEN COUNT(DISTINCT w.id) > 0
                    THEN COALESCE(SUM(s.cost), 0) / COUNT(DISTINCT w.id)
                    ELSE 0
                END AS avg_cost_per_workflow
            FROM workflow_runs w
            LEFT JOIN step_runs s ON s.workflow_id = w.id
            GROUP BY w.project
            ORDER BY total_cost DESC
            """
        )

    def get_agent_metrics(self) -> list[dict[str, Any]]:
        return self._fetchall(
            """
            SELECT
                agent,
                COUNT(*) AS step_count,
                COALESCE(SUM(cost), 0) AS total_cost,
                COALESCE(SUM(cost), 0) / COUNT(*) AS avg_cost_per_step
            FROM step_runs
            GROUP BY agent
            ORDER BY total_cost DESC
            """
        )

    def get_recent_workflows(self, limit: int = 10) -> list[dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM workflow_runs ORDER BY started_at DESC, rowid DESC LIMIT ?",
            (limit,),
        )

    def get_running_workflows(self) -> list[dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM workflow_runs WHERE status = 'running' ORDER BY started_at"
        )

    def get_total_cost(self) -> float:
        row = self._fetchone("SELECT COALESCE(SUM(cost), 0) AS total FROM step_runs")
        return float(row["total"]) if row else 0.0

    def get_cost_for_period(self, start: datetime, end: datetime) -> float:
        row = self._fetchone(
            """
            SELECT COALESCE(SUM(cost), 0) AS total FROM step_runs
            WHERE started_at >= ? AND started_at < ?
            """,
            (_iso(start), _iso(end)),
        )
        return float(row["total"]) if row else 0.0

    def get_today_cost(self, now: datetime | None = None) -> float:
        local_now = (now or datetime.now()).astimezone()
        midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        return self.get_cost_for_period(midnight, midnight + timedelta(days=1))

    def get_week_cost(self, now: datetime | None = None) -> float:
        local_now = (now or datetime.now()).astimezone()
        monday = (local_now - timedelta(days=local_now.weekday())).replace(
            hour=0, minute=0, second=0, microsecond=0
        )
        return self.get_cost_for_period(monday, monday + timedelta(days=7))
