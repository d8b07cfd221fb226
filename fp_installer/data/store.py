"""Local data store — SQLite at ~/.fp-installer/history.db."""

from __future__ import annotations

import json
import os
import sqlite3
import uuid
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from fp_installer.core.models import PipelineReport


_DEFAULT_DB_PATH = os.path.join(
    str(Path.home()), ".fp-installer", "history.db"
)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS runs (
    id TEXT PRIMARY KEY,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    kind TEXT NOT NULL DEFAULT 'install',
    success INTEGER NOT NULL,
    options TEXT,
    profile TEXT,
    stage_count INTEGER DEFAULT 0,
    warning_count INTEGER DEFAULT 0,
    failure_count INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS stage_results (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL REFERENCES runs(id),
    position INTEGER NOT NULL,
    stage_name TEXT NOT NULL,
    outcome TEXT NOT NULL,
    duration_ms INTEGER,
    message TEXT,
    remediation TEXT
);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class DataStore:
    """Local SQLite run history and tool configuration."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or _DEFAULT_DB_PATH
        os.makedirs(os.path.dirname(self.db_path), exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = None
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        conn.executescript(_SCHEMA)
        conn.commit()

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    # ── Config ───────────────────────────────────────────────────────

    def get_config(self, key: str) -> Optional[str]:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT value FROM config WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def set_config(self, key: str, value: str) -> None:
        conn = self._get_conn()
        conn.execute(
            "INSERT OR REPLACE INTO config (key, value) VALUES (?, ?)",
            (key, value),
        )
        conn.commit()

    def all_config(self) -> dict[str, str]:
        conn = self._get_conn()
        rows = conn.execute("SELECT key, value FROM config ORDER BY key").fetchall()
        return {row["key"]: row["value"] for row in rows}

    # ── Runs ─────────────────────────────────────────────────────────

    def record_run(self, report: PipelineReport, kind: str = "install") -> str:
        """Store a finished report and its ordered stage results. Returns the run id."""
        run_id = str(uuid.uuid4())
        conn = self._get_conn()
        conn.execute(
            """INSERT INTO runs
               (id, started_at, finished_at, kind, success, options, profile,
                stage_count, warning_count, failure_count)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                run_id,
                report.started_at.isoformat(),
                report.finished_at.isoformat() if report.finished_at else None,
                kind,
                1 if report.success else 0,
                json.dumps(asdict(report.options)),
                json.dumps(report.profile.to_dict()) if report.profile else None,
                len(report.stage_results),
                len(report.warnings()),
                len(report.failures()),
            ),
        )
        for position, result in enumerate(report.stage_results):
            conn.execute(
                """INSERT INTO stage_results
                   (id, run_id, position, stage_name, outcome, duration_ms,
                    message, remediation)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    str(uuid.uuid4()),
                    run_id,
                    position,
                    result.stage_name,
                    result.outcome.value,
                    result.duration_ms,
                    result.message,
                    result.remediation,
                ),
            )
        conn.commit()
        return run_id

    def list_runs(self, limit: int = 20) -> list[dict]:
        conn = self._get_conn()
        rows = conn.execute(
            "SELECT * FROM runs ORDER BY started_at DESC LIMIT ?", (limit,)
        ).fetchall()
        result = []
        for row in rows:
            d = dict(row)
            d["success"] = bool(d["success"])
            for key in ("options", "profile"):
                if isinstance(d.get(key), str):
                    d[key] = json.loads(d[key])
            result.append(d)
        return result

    def get_run_stages(self, run_id: str) -> list[dict]:
        conn = self._get_conn()
        rows = conn.execute(
            """SELECT stage_name, outcome, duration_ms, message, remediation
               FROM stage_results WHERE run_id = ? ORDER BY position""",
            (run_id,),
        ).fetchall()
        return [dict(row) for row in rows]
