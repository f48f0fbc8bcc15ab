from .guard import SessionPolicyGuard
from .store import Session, SessionStore, SessionTurn

__all__ = [
    "Session",
    "SessionPolicyGuard",
    "SessionStore",
    "SessionTurn",
]
