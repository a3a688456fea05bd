"""
Run journal.

SQLite record of every command invocation and every baseline seed, kept
under the ledger's .state directory. The journal is operational history:
it is never copied into a snapshot and losing it does not affect evidence.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from complyvault.storage.models import BaselineEvent, RunRecord

logger = logging.getLogger(__name__)

# Database schema version for migrations
SCHEMA_VERSION = 1

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pipeline_runs (
    id TEXT PRIMARY KEY,
    command TEXT NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    status TEXT NOT NULL,
    exit_code INTEGER NOT NULL,
    snapshot_date TEXT,
    warnings_json TEXT,
    error_json TEXT
);

CREATE INDEX IF NOT EXISTS idx_runs_started_at ON pipeline_runs(started_at);

CREATE TABLE IF NOT EXISTS baseline_events (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    seeded_at TEXT NOT NULL,
    actor TEXT NOT NULL,
    reason TEXT NOT NULL,
    previous_hash TEXT,
    new_hash TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_baseline_name ON baseline_events(name);
"""


class RunJournal:
    """
    SQLite-backed history of runs and baseline seeds.

    Example:
        journal = RunJournal(ledger.state_dir / "journal.db")
        journal.record_run(RunRecord.create("run", started, "success", 0))
        for run in journal.recent_runs(5):
            print(run.status)
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _init_database(self) -> None:
        with self._get_connection() as conn:
            conn.executescript(CREATE_TABLES_SQL)
            row = conn.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            ).fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, datetime.now(UTC).isoformat()),
                )
                logger.info(f"Initialized journal schema version {SCHEMA_VERSION}")
            conn.commit()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def record_run(self, run: RunRecord) -> str:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO pipeline_runs
                    (id, command, started_at, finished_at, status, exit_code,
                     snapshot_date, warnings_json, error_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.id,
                    run.command,
                    run.started_at.isoformat(),
                    run.finished_at.isoformat() if run.finished_at else None,
                    run.status,
                    run.exit_code,
                    run.snapshot_date,
                    json.dumps(run.warnings),
                    json.dumps(run.error) if run.error is not None else None,
                ),
            )
            conn.commit()
        return run.id

    def recent_runs(self, limit: int = 10, command: str | None = None) -> list[RunRecord]:
        query = "SELECT * FROM pipeline_runs"
        params: list[object] = []
        if command:
            query += " WHERE command = ?"
            params.append(command)
        query += " ORDER BY started_at DESC LIMIT ?"
        params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            RunRecord(
                id=row["id"],
                command=row["command"],
                started_at=datetime.fromisoformat(row["started_at"]),
                finished_at=(
                    datetime.fromisoformat(row["finished_at"]) if row["finished_at"] else None
                ),
                status=row["status"],
                exit_code=row["exit_code"],
                snapshot_date=row["snapshot_date"],
                warnings=json.loads(row["warnings_json"] or "[]"),
                error=json.loads(row["error_json"]) if row["error_json"] else None,
            )
            for row in rows
        ]

    def record_baseline_event(self, event: BaselineEvent) -> str:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO baseline_events
                    (id, name, seeded_at, actor, reason, previous_hash, new_hash)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.name,
                    event.seeded_at.isoformat(),
                    event.actor,
                    event.reason,
                    event.previous_hash,
                    event.new_hash,
                ),
            )
            conn.commit()
        return event.id

    def baseline_events(self, name: str | None = None) -> list[BaselineEvent]:
        query = "SELECT * FROM baseline_events"
        params: list[object] = []
        if name:
            query += " WHERE name = ?"
            params.append(name)
        query += " ORDER BY seeded_at ASC"

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            BaselineEvent(
                id=row["id"],
                name=row["name"],
                seeded_at=datetime.fromisoformat(row["seeded_at"]),
                actor=row["actor"],
                reason=row["reason"],
                previous_hash=row["previous_hash"],
                new_hash=row["new_hash"],
            )
            for row in rows
        ]
