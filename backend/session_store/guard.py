from __future__ import annotations

import re

from explainer_core.errors import SessionPolicyError

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_.:-]+$")


class SessionPolicyGuard:
    def __init__(self, max_key_length: int = 128) -> None:
        self.max_key_length = max_key_length

    def ensure_session_scope(self, session_id: str) -> None:
        if not session_id or len(session_id) > self.max_key_length:
            raise SessionPolicyError("Invalid session scope.")
        if not _SESSION_ID_RE.fullmatch(session_id):
            raise SessionPolicyError("Invalid session scope.")

