# ABOUTME: SQLite persistence of provisioning runs and their per-artifact outcomes
# ABOUTME: Stores the resolved spec as JSON so past runs can be inspected and compared

import os
import sqlite3
import json
import logging
from datetime import datetime
from typing import List, Optional
from pathlib import Path
from contextlib import contextmanager

from webserver_setup.models import DeploymentSpec, RunRecord, RunReport

logger = logging.getLogger(__name__)


def resolve_db_path(db_path: str) -> str:
    # Relative paths resolve against the project directory, not the cwd
    if not os.path.isabs(db_path):
        return str(Path(__file__).parent.parent / db_path)
    return db_path


def spec_changes(previous: dict, current: dict, prefix: str = "") -> List[str]:
    """Readable ``key: old -> new`` lines between two serialized specs, nested keys dotted"""
    changes = []
    for key in sorted(set(previous) | set(current)):
        old, new = previous.get(key), current.get(key)
        name = f"{prefix}{key}"
        if isinstance(old, dict) and isinstance(new, dict):
            changes.extend(spec_changes(old, new, f"{name}."))
        elif old != new:
            changes.append(f"{name}: {old!r} -> {new!r}")
    return changes


class RunHistory:
    """Handle all database operations for run history"""

    def __init__(self, db_path: str = "webserver_setup.db"):
        self.db_path = resolve_db_path(db_path)
        self.init_database()

    @contextmanager
    def get_connection(self):
        """Context manager for database connections"""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def init_database(self):
        """Initialize database schema"""
        with self.get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS runs (
                    id TEXT PRIMARY KEY,
                    domain TEXT NOT NULL,
                    web_server TEXT NOT NULL,
                    app_kind TEXT NOT NULL,
                    status TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    spec TEXT NOT NULL,
                    errors TEXT,
                    log_file TEXT
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS artifact_results (
                    run_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    kind TEXT NOT NULL,
                    path TEXT NOT NULL,
                    state TEXT NOT NULL,
                    backup_path TEXT,
                    message TEXT,
                    PRIMARY KEY (run_id, position),
                    FOREIGN KEY (run_id) REFERENCES runs (id)
                )
            ''')

            cursor.execute('CREATE INDEX IF NOT EXISTS idx_runs_domain ON runs (domain)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_runs_started_at ON runs (started_at)')

            conn.commit()
            logger.debug(f"Run history initialized at {self.db_path}")

    def record_run(self, report: RunReport) -> bool:
        """Save or replace a run and its artifact results"""
        errors = [str(error) for error in report.errors]
        with self.get_connection() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute('''
                    INSERT OR REPLACE INTO runs (
                        id, domain, web_server, app_kind, status, started_at,
                        finished_at, spec, errors, log_file
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', (
                    report.run_id, report.spec.domain, report.spec.web_server.value,
                    report.spec.app_kind.value, report.status, report.started_at.isoformat(),
                    report.finished_at.isoformat() if report.finished_at else None,
                    json.dumps(report.spec.to_dict()), json.dumps(errors), report.log_file,
                ))

                cursor.execute('DELETE FROM artifact_results WHERE run_id = ?', (report.run_id,))
                for position, result in enumerate(report.artifacts):
                    row = result.to_dict()
                    cursor.execute('''
                        INSERT INTO artifact_results (
                            run_id, position, kind, path, state, backup_path, message
                        ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ''', (report.run_id, position, row['kind'], row['path'], row['state'],
                          row['backup_path'], row['message']))

                conn.commit()
                logger.info(f"Recorded run {report.run_id} ({report.status})")
                return True

            except sqlite3.Error as e:
                logger.error(f"Failed to record run {report.run_id}: {e}")
                conn.rollback()
                return False

    def _row_to_record(self, row: sqlite3.Row, artifacts: List[dict]) -> RunRecord:
        return RunRecord(
            id=row['id'],
            domain=row['domain'],
            web_server=row['web_server'],
            app_kind=row['app_kind'],
            status=row['status'],
            started_at=datetime.fromisoformat(row['started_at']),
            spec=json.loads(row['spec']),
            artifacts=artifacts,
            errors=json.loads(row['errors']) if row['errors'] else [],
        )

    def _artifacts_for(self, cursor, run_id: str) -> List[dict]:
        cursor.execute('''
            SELECT kind, path, state, backup_path, message FROM artifact_results
            WHERE run_id = ? ORDER BY position
        ''', (run_id,))
        return [dict(row) for row in cursor.fetchall()]

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        """Get a run by ID"""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('SELECT * FROM runs WHERE id = ?', (run_id,))
            row = cursor.fetchone()
            if not row:
                return None
            return self._row_to_record(row, self._artifacts_for(cursor, run_id))

    def list_runs(self, domain: Optional[str] = None, limit: int = 20) -> List[RunRecord]:
        """Most recent runs first, optionally for one domain"""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            if domain:
                cursor.execute(
                    'SELECT * FROM runs WHERE domain = ? ORDER BY started_at DESC LIMIT ?',
                    (domain, limit),
                )
            else:
                cursor.execute('SELECT * FROM runs ORDER BY started_at DESC LIMIT ?', (limit,))
            rows = cursor.fetchall()
            return [self._row_to_record(row, self._artifacts_for(cursor, row['id'])) for row in rows]

    def last_successful_spec(self, domain: str) -> Optional[dict]:
        """Spec of the latest fully successful run for a domain"""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT spec FROM runs WHERE domain = ? AND status = 'success'
                ORDER BY started_at DESC LIMIT 1
            ''', (domain,))
            row = cursor.fetchone()
            return json.loads(row['spec']) if row else None

    def changes_since_last_success(self, spec: DeploymentSpec) -> Optional[List[str]]:
        """Differences from the last successful run for the domain, None when there is none"""
        previous = self.last_successful_spec(spec.domain)
        if previous is None:
            return None
        return spec_changes(previous, spec.to_dict())

