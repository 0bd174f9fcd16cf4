"""SQLite database schema and initialization for the Family Concierge agent.

Tables:
- discovery_sessions: One row per discovery scan (append-only history)
- discovery_evidence: Scored emails captured by a discovery scan
- pending_approvals: Discovered emails surfaced for human review
- processed_messages: Production pipeline idempotency ledger
- events: Persisted event intents, unique by fingerprint
- calendar_operations: Units of calendar work paired with events
- approval_tokens: Single-use, time-boxed approval capabilities
- exceptions: Per-item failures recorded for human follow-up
- manual_edit_flags: Drift between calendar and stored intent
- forwarded_messages: Forwarding side-channel ledger
- audit_log: Post-commit audit trail of state transitions
- agent_state: Key-value state persistence

Usage:
    from concierge.db.models import init_database

    await init_database("data/concierge.db")
"""

import stat
from pathlib import Path

import aiosqlite

from concierge.core.errors import DatabaseError
from concierge.core.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS discovery_sessions (
    id TEXT PRIMARY KEY,
    pack_id TEXT NOT NULL,
    started_at DATETIME NOT NULL,
    completed_at DATETIME,
    emails_scanned INTEGER DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'running',   -- 'running', 'completed', 'failed'
    error TEXT,
    output_json TEXT                          -- proposed config + stats
);

CREATE TABLE IF NOT EXISTS discovery_evidence (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES discovery_sessions(id),
    message_id TEXT NOT NULL,
    subject TEXT,
    sender TEXT,
    date TEXT,
    snippet TEXT,
    relevance_score REAL NOT NULL,
    matched_rules_json TEXT,                  -- ordered rule ids that fired
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_evidence_session ON discovery_evidence(session_id);

CREATE TABLE IF NOT EXISTS pending_approvals (
    id TEXT PRIMARY KEY,                      -- same id as the evidence row
    message_id TEXT NOT NULL,
    pack_id TEXT NOT NULL,
    relevance_score REAL,
    from_email TEXT,
    from_name TEXT,
    subject TEXT,
    snippet TEXT,
    primary_category TEXT,
    secondary_categories_json TEXT,
    category_scores_json TEXT,
    save_reasons_json TEXT,
    person TEXT,
    assignment_reason TEXT,
    item_type TEXT DEFAULT 'announcement',    -- 'obligation', 'announcement'
    obligation_date TEXT,
    classification_confidence REAL,
    classification_reasoning TEXT,
    status TEXT DEFAULT 'pending',            -- 'pending', 'approved', 'deferred', 'dismissed'
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    resolved_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_pending_approvals_status ON pending_approvals(status);

CREATE TABLE IF NOT EXISTS processed_messages (
    message_id TEXT PRIMARY KEY,
    processed_at DATETIME NOT NULL,
    pack_id TEXT NOT NULL,
    extraction_status TEXT NOT NULL,          -- 'success', 'skipped', 'failed'
    events_extracted INTEGER DEFAULT 0,
    fingerprints_json TEXT,
    error TEXT
);

CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    fingerprint TEXT NOT NULL UNIQUE,
    source_message_id TEXT NOT NULL,
    pack_id TEXT NOT NULL,
    calendar_event_id TEXT,
    intent_json TEXT NOT NULL,
    title_normalized TEXT NOT NULL,           -- dedup window lookups
    date_key TEXT NOT NULL,                   -- YYYY-MM-DD
    time_key TEXT NOT NULL DEFAULT 'allday',  -- HH:MM or 'allday'
    confidence REAL NOT NULL,
    status TEXT NOT NULL,                     -- 'pending_approval', 'approved', 'created',
                                              -- 'updated', 'flagged', 'failed'
    manually_edited INTEGER DEFAULT 0,
    error TEXT,
    provenance_json TEXT,
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL,
    last_synced_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_events_title_date ON events(title_normalized, date_key, time_key);
CREATE INDEX IF NOT EXISTS idx_events_status ON events(status);

CREATE TABLE IF NOT EXISTS calendar_operations (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,                       -- 'create', 'update', 'flag', 'skip'
    event_fingerprint TEXT NOT NULL REFERENCES events(fingerprint),
    intent_json TEXT NOT NULL,                -- snapshot at creation time
    reason TEXT,
    requires_approval INTEGER NOT NULL DEFAULT 1,
    status TEXT NOT NULL DEFAULT 'pending',   -- 'pending', 'approved', 'rejected',
                                              -- 'executed', 'failed'
    calendar_event_id TEXT,
    error TEXT,
    created_at DATETIME NOT NULL,
    executed_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_operations_status ON calendar_operations(status);
CREATE INDEX IF NOT EXISTS idx_operations_fingerprint ON calendar_operations(event_fingerprint);

CREATE TABLE IF NOT EXISTS approval_tokens (
    id TEXT PRIMARY KEY,
    operation_id TEXT NOT NULL REFERENCES calendar_operations(id),
    created_at DATETIME NOT NULL,
    expires_at DATETIME NOT NULL,
    approved INTEGER NOT NULL DEFAULT 0,
    approved_at DATETIME,
    used INTEGER NOT NULL DEFAULT 0           -- terminal once 1
);

CREATE INDEX IF NOT EXISTS idx_tokens_operation ON approval_tokens(operation_id);

CREATE TABLE IF NOT EXISTS exceptions (
    id TEXT PRIMARY KEY,
    timestamp DATETIME NOT NULL,
    type TEXT NOT NULL CHECK (type IN (
        'extraction_error', 'calendar_error', 'duplicate_detected',
        'api_error', 'forwarding_error', 'other'
    )),
    severity TEXT NOT NULL CHECK (severity IN ('low', 'medium', 'high', 'critical')),
    message TEXT NOT NULL,
    context_json TEXT,
    resolved INTEGER NOT NULL DEFAULT 0,
    resolved_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_exceptions_type ON exceptions(type, resolved);

CREATE TABLE IF NOT EXISTS manual_edit_flags (
    id TEXT PRIMARY KEY,
    event_fingerprint TEXT NOT NULL REFERENCES events(fingerprint),
    calendar_event_id TEXT NOT NULL,
    detected_at DATETIME NOT NULL,
    changes_json TEXT NOT NULL,               -- {field: {before, after}}
    policy TEXT NOT NULL                      -- 'respect_manual', 'flag_conflict'
);

CREATE TABLE IF NOT EXISTS forwarded_messages (
    id TEXT PRIMARY KEY,
    source_message_id TEXT NOT NULL,
    forwarded_at DATETIME NOT NULL,
    forwarded_to_json TEXT NOT NULL,
    pack_id TEXT NOT NULL,
    reason TEXT,
    conditions_json TEXT,
    success INTEGER NOT NULL DEFAULT 0,
    error TEXT
);

CREATE INDEX IF NOT EXISTS idx_forwarded_source ON forwarded_messages(source_message_id);

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    action TEXT NOT NULL,
    message_id TEXT,
    event_fingerprint TEXT,
    details_json TEXT,
    triggered_by TEXT DEFAULT 'auto',         -- 'auto', 'user', 'scheduler'
    run_id TEXT
);

CREATE TABLE IF NOT EXISTS agent_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);
"""

REQUIRED_TABLES = [
    "discovery_sessions",
    "discovery_evidence",
    "pending_approvals",
    "processed_messages",
    "events",
    "calendar_operations",
    "approval_tokens",
    "exceptions",
    "manual_edit_flags",
    "forwarded_messages",
    "audit_log",
    "agent_state",
]


async def init_database(db_path: str | Path) -> None:
    """Initialize the database with all tables.

    Idempotent: tables and indexes use IF NOT EXISTS.

    Args:
        db_path: Path to the SQLite database file

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "wal_mode_not_enabled",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        # Owner read/write only; the database holds mail snippets
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "database_initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables=table_count,
        )

    except aiosqlite.Error as e:
        logger.error("database_init_failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Check that every required table exists.

    Returns:
        True if all tables exist, False otherwise
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}
    except aiosqlite.Error as e:
        logger.error("schema_verification_failed", db_path=str(db_path), error=str(e))
        return False

    missing = set(REQUIRED_TABLES) - existing_tables
    if missing:
        logger.warning("missing_database_tables", missing=sorted(missing), db_path=str(db_path))
        return False
    return True
