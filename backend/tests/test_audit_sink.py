from __future__ import annotations

import sqlite3

from audit_log import InMemoryAuditSink, SQLiteAuditDB, SQLiteAuditSink
from explainer_core import (
    AbstentionReason,
    AuditRecord,
    ContextMode,
    UrgencyTier,
    VerdictAction,
    anonymize_session,
)


def _record(session_ref: str, recorded_at: str, action: VerdictAction = VerdictAction.APPROVE) -> AuditRecord:
    return AuditRecord(
        recorded_at=recorded_at,
        session_ref=session_ref,
        action=action,
        rule_ids=("style.missing_disclaimer",) if action is not VerdictAction.APPROVE else (),
        reason=AbstentionReason.EMERGENCY if action is VerdictAction.ABSTAIN else None,
        urgency_level=UrgencyTier.EMERGENCY if action is VerdictAction.ABSTAIN else None,
        mode=ContextMode.MINIMAL_INPUT,
        language="en",
        lifecycle=("received", "abstained") if action is VerdictAction.ABSTAIN else ("received", "approved"),
    )


def test_sqlite_sink_round_trips_non_phi_columns(tmp_path):
    db = SQLiteAuditDB(str(tmp_path / "audit.sqlite"))
    sink = SQLiteAuditSink(db)
    sink.emit(_record("anon_a", "2026-03-02T09:30:00Z"))
    sink.emit(_record("anon_a", "2026-03-02T09:31:00Z", VerdictAction.ABSTAIN))
    sink.emit(_record("anon_b", "2026-03-02T09:32:00Z", VerdictAction.MODIFY))

    rows = sink.recent(session_ref="anon_a")
    assert [row["action"] for row in rows] == ["abstain", "approve"]
    assert rows[0]["reason"] == "emergency"
    assert rows[0]["urgency_level"] == "emergency"
    assert rows[0]["lifecycle"] == ["received", "abstained"]
    assert len(sink.recent()) == 3
    assert len(sink.recent(limit=1)) == 1


def test_audit_table_has_no_free_text_columns(tmp_path):
    db = SQLiteAuditDB(str(tmp_path / "audit.sqlite"))
    with sqlite3.connect(db.path) as conn:
        columns = {row[1] for row in conn.execute("PRAGMA table_info(audit_events)")}
    assert columns == {
        "id",
        "recorded_at",
        "session_ref",
        "action",
        "rule_ids_json",
        "reason",
        "urgency_level",
        "mode",
        "language",
        "lifecycle_json",
    }


def test_in_memory_sink_filters_by_session():
    sink = InMemoryAuditSink()
    sink.emit(_record("anon_a", "2026-03-02T09:30:00Z"))
    sink.emit(_record("anon_b", "2026-03-02T09:31:00Z"))

    assert [row["session_ref"] for row in sink.recent(session_ref="anon_b")] == ["anon_b"]
    assert len(sink.records) == 2


def test_session_anonymization_is_salted_and_stable():
    first = anonymize_session("visit-1", "salt-a")
    assert first == anonymize_session("visit-1", "salt-a")
    assert first != anonymize_session("visit-1", "salt-b")
    assert first != anonymize_session("visit-2", "salt-a")
    assert len(first) == len("anon_") + 24
