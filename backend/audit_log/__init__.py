from .database import SQLiteAuditDB
from .sink import AuditSink, InMemoryAuditSink, SQLiteAuditSink

__all__ = [
    "AuditSink",
    "InMemoryAuditSink",
    "SQLiteAuditDB",
    "SQLiteAuditSink",
]
