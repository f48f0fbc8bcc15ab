from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class SQLiteAuditDB:
    def __init__(self, db_path: str) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> str:
        return str(self._path)

    @property
    def write_lock(self) -> threading.Lock:
        return self._lock

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        # Columns are limited to non-PHI fields; no question, candidate or entity text.
        with self._lock, self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS audit_events (
                  id TEXT PRIMARY KEY,
                  recorded_at TEXT NOT NULL,
                  session_ref TEXT NOT NULL,
                  action TEXT NOT NULL,
                  rule_ids_json TEXT NOT NULL,
                  reason TEXT,
                  urgency_level TEXT,
                  mode TEXT,
                  language TEXT NOT NULL,
                  lifecycle_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_audit_events_session
                  ON audit_events(session_ref, recorded_at);
                CREATE INDEX IF NOT EXISTS idx_audit_events_action
                  ON audit_events(action, recorded_at);
                """
            )
