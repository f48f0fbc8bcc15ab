from __future__ import annotations

import json
import threading
import uuid
from typing import Any, Protocol

from explainer_core.models import AuditRecord

from .database import SQLiteAuditDB


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


class AuditSink(Protocol):
    def emit(self, record: AuditRecord) -> None: ...

    def recent(self, *, session_ref: str | None = None, limit: int = 50) -> list[dict[str, Any]]: ...


class InMemoryAuditSink:
    def __init__(self) -> None:
        self._records: list[AuditRecord] = []
        self._lock = threading.Lock()

    @property
    def records(self) -> list[AuditRecord]:
        with self._lock:
            return list(self._records)

    def emit(self, record: AuditRecord) -> None:
        with self._lock:
            self._records.append(record)

    def recent(self, *, session_ref: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        rows = [record for record in self.records if session_ref is None or record.session_ref == session_ref]
        return [record.as_dict() for record in reversed(rows[-max(1, limit) :])]


class SQLiteAuditSink:
    def __init__(self, db: SQLiteAuditDB) -> None:
        self._db = db

    def emit(self, record: AuditRecord) -> None:
        payload = record.as_dict()
        with self._db.write_lock, self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO audit_events (
                  id, recorded_at, session_ref, action, rule_ids_json, reason,
                  urgency_level, mode, language, lifecycle_json
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    uuid.uuid4().hex,
                    payload["recorded_at"],
                    payload["session_ref"],
                    payload["action"],
                    _json_dumps(payload["rule_ids"]),
                    payload["reason"],
                    payload["urgency_level"],
                    payload["mode"],
                    payload["language"],
                    _json_dumps(payload["lifecycle"]),
                ),
            )

    def recent(self, *, session_ref: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        params: list[Any] = []
        sql = """
            SELECT recorded_at, session_ref, action, rule_ids_json, reason,
                   urgency_level, mode, language, lifecycle_json
            FROM audit_events
        """
        if session_ref:
            sql += " WHERE session_ref = ?"
            params.append(session_ref)
        sql += " ORDER BY recorded_at DESC, rowid DESC LIMIT ?"
        params.append(max(1, limit))

        with self._db.connection() as conn:
            return [
                {
                    "recorded_at": row["recorded_at"],
                    "session_ref": row["session_ref"],
                    "action": row["action"],
                    "rule_ids": json.loads(row["rule_ids_json"]),
                    "reason": row["reason"],
                    "urgency_level": row["urgency_level"],
                    "mode": row["mode"],
                    "language": row["language"],
                    "lifecycle": json.loads(row["lifecycle_json"]),
                }
                for row in conn.execute(sql, tuple(params)).fetchall()
            ]
