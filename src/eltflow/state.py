"""Run history persistence for eltflow."""

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from eltflow.models import NodeResult, NodeStatus, RunRecord, RunStatus, TestResult, TriggerKind

STATE_DIR = '.eltflow'
STATE_FILE = 'state.db'


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class StateDatabase:
    """SQLite database storing run records and their per-node outcomes."""

    def __init__(self, db_path: Path):
        """Initialize state database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @classmethod
    def for_project(cls, project_root: Path) -> 'StateDatabase':
        return cls(Path(project_root) / STATE_DIR / STATE_FILE)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self):
        """Initialize database schema."""
        conn = self._connect()
        cursor = conn.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS run_history (
                run_id TEXT PRIMARY KEY,
                trigger TEXT NOT NULL,
                logical_date TIMESTAMP,
                triggered_at TIMESTAMP NOT NULL,
                status TEXT NOT NULL,
                started_at TIMESTAMP,
                completed_at TIMESTAMP,
                error TEXT
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS node_results (
                run_id TEXT NOT NULL,
                node_name TEXT NOT NULL,
                kind TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TIMESTAMP,
                completed_at TIMESTAMP,
                sql TEXT,
                error TEXT,
                test_results TEXT,
                PRIMARY KEY (run_id, node_name)
            )
        ''')

        cursor.execute('CREATE INDEX IF NOT EXISTS idx_run_history_status ON run_history(status)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_run_history_logical_date ON run_history(logical_date)')

        conn.commit()
        conn.close()

    def save_run(self, record: RunRecord):
        """Insert or replace a run record and all of its node results."""
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.cursor()
                cursor.execute(
                    '''
                    INSERT OR REPLACE INTO run_history
                    (run_id, trigger, logical_date, triggered_at, status, started_at, completed_at, error)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ''',
                    (
                        record.run_id,
                        record.trigger.value,
                        _to_iso(record.logical_date),
                        _to_iso(record.triggered_at),
                        record.status.value,
                        _to_iso(record.started_at),
                        _to_iso(record.completed_at),
                        record.error,
                    ),
                )
                cursor.execute('DELETE FROM node_results WHERE run_id = ?', (record.run_id,))
                cursor.executemany(
                    '''
                    INSERT INTO node_results
                    (run_id, node_name, kind, status, started_at, completed_at, sql, error, test_results)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ''',
                    [
                        (
                            record.run_id,
                            name,
                            result.kind,
                            result.status.value,
                            _to_iso(result.started_at),
                            _to_iso(result.completed_at),
                            result.sql,
                            result.error,
                            json.dumps([vars(t) for t in result.test_results]),
                        )
                        for name, result in record.results.items()
                    ],
                )
                conn.commit()
            finally:
                conn.close()

    def _record_from_row(self, conn: sqlite3.Connection, row: sqlite3.Row) -> RunRecord:
        record = RunRecord(
            run_id=row['run_id'],
            trigger=TriggerKind(row['trigger']),
            logical_date=_from_iso(row['logical_date']),
            triggered_at=_from_iso(row['triggered_at']),
            status=RunStatus(row['status']),
            started_at=_from_iso(row['started_at']),
            completed_at=_from_iso(row['completed_at']),
            error=row['error'],
        )

        cursor = conn.cursor()
        cursor.execute('SELECT * FROM node_results WHERE run_id = ? ORDER BY rowid', (record.run_id,))
        for node in cursor.fetchall():
            record.results[node['node_name']] = NodeResult(
                name=node['node_name'],
                kind=node['kind'],
                status=NodeStatus(node['status']),
                started_at=_from_iso(node['started_at']),
                completed_at=_from_iso(node['completed_at']),
                sql=node['sql'],
                error=node['error'],
                test_results=[TestResult(**t) for t in json.loads(node['test_results'] or '[]')],
            )
        return record

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        """Get a run by id.

        Args:
            run_id: Run identifier

        Returns:
            RunRecord if found, None otherwise
        """
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute('SELECT * FROM run_history WHERE run_id = ?', (run_id,))
            row = cursor.fetchone()
            return self._record_from_row(conn, row) if row else None
        finally:
            conn.close()

    def get_run_for_slot(self, logical_date: datetime) -> Optional[RunRecord]:
        """Get the scheduled run recorded for a slot, if any."""
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute(
                'SELECT * FROM run_history WHERE trigger = ? AND logical_date = ?',
                (TriggerKind.SCHEDULED.value, _to_iso(logical_date)),
            )
            row = cursor.fetchone()
            return self._record_from_row(conn, row) if row else None
        finally:
            conn.close()

    def list_runs(self, limit: int = 20, status: Optional[RunStatus] = None) -> List[RunRecord]:
        """Get recent runs, newest first.

        Args:
            limit: Maximum number of records to return
            status: Optional filter by run status

        Returns:
            List of RunRecord objects
        """
        conn = self._connect()
        try:
            cursor = conn.cursor()
            if status is not None:
                cursor.execute(
                    'SELECT * FROM run_history WHERE status = ? ORDER BY triggered_at DESC LIMIT ?',
                    (status.value, limit),
                )
            else:
                cursor.execute('SELECT * FROM run_history ORDER BY triggered_at DESC LIMIT ?', (limit,))
            return [self._record_from_row(conn, row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_active_run(self) -> Optional[RunRecord]:
        """The run currently recorded as running, if any."""
        runs = self.list_runs(limit=1, status=RunStatus.RUNNING)
        return runs[0] if runs else None
