from __future__ import annotations

import hashlib
from datetime import datetime

from .models import AuditRecord, ContextMode, RedFlagResult, SafetyVerdict
from .time_utils import to_iso

UNKNOWN_SESSION_REF = "anon_unknown"


def anonymize_session(session_id: str, salt: str) -> str:
    digest = hashlib.sha256(f"{salt}:{session_id}".encode("utf-8")).hexdigest()
    return f"anon_{digest[:24]}"


def build_audit_record(
    *,
    verdict: SafetyVerdict,
    session_ref: str | None,
    mode: ContextMode | None,
    language: str,
    red_flag: RedFlagResult | None,
    recorded_at: datetime,
) -> AuditRecord:
    return AuditRecord(
        recorded_at=to_iso(recorded_at),
        session_ref=session_ref or UNKNOWN_SESSION_REF,
        action=verdict.action,
        rule_ids=verdict.rule_ids,
        reason=getattr(verdict, "reason", None),
        urgency_level=red_flag.urgency_level if red_flag else None,
        mode=mode,
        language=language,
        lifecycle=verdict.lifecycle,
    )
