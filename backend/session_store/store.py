from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterator

from explainer_core.audit import anonymize_session
from explainer_core.config import ExplainerConfig
from explainer_core.errors import SessionBusy, SessionNotFound, SessionPolicyError
from explainer_core.models import ConversationExchange
from explainer_core.time_utils import to_iso, utc_now

from .guard import SessionPolicyGuard

logger = logging.getLogger(__name__)


@dataclass
class Session:
    session_id: str
    session_ref: str
    created_at: datetime
    last_active_at: datetime
    language: str | None = None
    exchanges: list[ConversationExchange] = field(default_factory=list)
    closed: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def as_summary(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "created_at": to_iso(self.created_at),
            "last_active_at": to_iso(self.last_active_at),
            "language": self.language,
            "exchange_count": len(self.exchanges),
        }


class SessionTurn:
    """Handle for one in-flight turn. History is a snapshot taken when the turn starts."""

    def __init__(self, store: "SessionStore", session: Session) -> None:
        self._store = store
        self._session = session
        self._history = tuple(session.exchanges)
        self._committed = False
        self.session_ref = session.session_ref
        self.language = session.language

    @property
    def history(self) -> tuple[ConversationExchange, ...]:
        return self._history

    def commit(self, patient_text: str, system_text: str) -> ConversationExchange:
        if self._committed:
            raise SessionPolicyError("Turn already committed.")
        exchange = self._store._append(self._session, patient_text, system_text)
        self._committed = True
        return exchange


class SessionStore:
    """Owned arena of session id -> exchanges with explicit teardown.

    At most one turn per session is in flight: a second turn is rejected with
    SessionBusy, optionally after a bounded wait. Expired sessions are purged on
    every access, and terminate() hard-deletes immediately.
    """

    def __init__(
        self,
        config: ExplainerConfig,
        *,
        clock: Callable[[], datetime] = utc_now,
        guard: SessionPolicyGuard | None = None,
    ) -> None:
        self.config = config
        self._clock = clock
        self._guard = guard or SessionPolicyGuard(config.max_session_key_length)
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def create(self, language: str | None = None, session_id: str | None = None) -> Session:
        self.purge_expired()
        session_id = session_id or uuid.uuid4().hex
        self._guard.ensure_session_scope(session_id)
        now = self._clock()
        session = Session(
            session_id=session_id,
            session_ref=anonymize_session(session_id, self.config.audit_salt),
            created_at=now,
            last_active_at=now,
            language=self.config.resolve_language(language) if language else None,
        )
        with self._lock:
            if session_id in self._sessions:
                raise SessionPolicyError("Session already exists.")
            self._sessions[session_id] = session
        logger.info("session created session=%s", session.session_ref)
        return session

    def get(self, session_id: str) -> Session:
        self._guard.ensure_session_scope(session_id)
        self.purge_expired()
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound("Unknown, expired or terminated session.")
        return session

    def history(self, session_id: str) -> tuple[ConversationExchange, ...]:
        session = self.get(session_id)
        with self._lock:
            return tuple(session.exchanges)

    @contextmanager
    def turn(self, session_id: str) -> Iterator[SessionTurn]:
        session = self.get(session_id)
        wait = self.config.session_busy_wait_seconds
        acquired = session.lock.acquire(timeout=wait) if wait > 0 else session.lock.acquire(blocking=False)
        if not acquired:
            logger.info("session busy session=%s", session.session_ref)
            raise SessionBusy("A turn is already in flight for this session.")
        try:
            with self._lock:
                if session.closed:
                    raise SessionNotFound("Session ended while waiting.")
                session.last_active_at = self._clock()
            yield SessionTurn(self, session)
        finally:
            session.lock.release()

    def terminate(self, session_id: str) -> bool:
        self._guard.ensure_session_scope(session_id)
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return False
            self._teardown(session)
        logger.info("session terminated session=%s", session.session_ref)
        return True

    def purge_expired(self, now: datetime | None = None) -> int:
        now = now or self._clock()
        ttl = timedelta(seconds=self.config.session_ttl_seconds)
        with self._lock:
            # A session with a turn in flight is active; it expires after the turn ends.
            expired = [
                sid
                for sid, session in self._sessions.items()
                if now - session.last_active_at >= ttl and not session.lock.locked()
            ]
            for sid in expired:
                self._teardown(self._sessions.pop(sid))
        if expired:
            logger.info("expired sessions purged count=%d", len(expired))
        return len(expired)

    def _append(self, session: Session, patient_text: str, system_text: str) -> ConversationExchange:
        with self._lock:
            if session.closed or self._sessions.get(session.session_id) is not session:
                raise SessionNotFound("Session ended before the turn completed.")
            next_index = session.exchanges[-1].sequence_index + 1 if session.exchanges else 0
            exchange = ConversationExchange(
                patient_text=patient_text,
                system_text=system_text,
                sequence_index=next_index,
            )
            session.exchanges.append(exchange)
            session.last_active_at = self._clock()
        return exchange

    @staticmethod
    def _teardown(session: Session) -> None:
        session.closed = True
        session.exchanges.clear()
