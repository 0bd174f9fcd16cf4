"""Database layer for the Family Concierge agent.

SQLite via aiosqlite. The store is the only shared mutable resource and
the sole arbiter of uniqueness (event fingerprints, processed messages,
token consumption).

Usage:
    from concierge.db import DatabaseStore, PersistedEvent

    store = DatabaseStore("data/concierge.db")
    await store.initialize()

    written = await store.insert_event(event)
    if not written:
        ...  # fingerprint already exists
"""

from concierge.db.models import (
    REQUIRED_TABLES,
    SCHEMA_VERSION,
    init_database,
    verify_schema,
)
from concierge.db.store import (
    MAX_SNIPPET_LENGTH,
    ApprovalToken,
    AuditEntry,
    CalendarOperation,
    DatabaseStore,
    DiscoverySession,
    EventIntent,
    Evidence,
    ExceptionRecord,
    ForwardedMessage,
    ManualEditFlag,
    PendingApproval,
    PersistedEvent,
    ProcessedMessage,
    utcnow,
)

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "REQUIRED_TABLES",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    "MAX_SNIPPET_LENGTH",
    "utcnow",
    # Dataclasses
    "EventIntent",
    "DiscoverySession",
    "Evidence",
    "PendingApproval",
    "PersistedEvent",
    "CalendarOperation",
    "ApprovalToken",
    "ProcessedMessage",
    "ExceptionRecord",
    "ManualEditFlag",
    "ForwardedMessage",
    "AuditEntry",
]
