"""Database store with CRUD operations for all tables.

This module provides the DatabaseStore class that encapsulates all database
operations for the Family Concierge agent. It uses aiosqlite for async access
and returns typed dataclasses.

Uniqueness invariants are enforced by SQLite, not by callers: event
fingerprints are UNIQUE, processed-message inserts are idempotent, and
approval tokens are consumed with a single conditional UPDATE.

Usage:
    from concierge.db.store import DatabaseStore

    store = DatabaseStore("data/concierge.db")
    await store.initialize()

    if await store.insert_event(event):
        await store.insert_operation(operation)

    consumed = await store.consume_approval_token(token_id, approved=True)
"""

from __future__ import annotations

import json
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Literal

import aiosqlite

from concierge.core.errors import DatabaseError
from concierge.core.logging import get_correlation_id, get_logger
from concierge.db.models import init_database

logger = get_logger(__name__)

# Maximum snippet length (mail bodies are never stored in full)
MAX_SNIPPET_LENGTH = 1000

# Type aliases
SessionStatus = Literal["running", "completed", "failed"]
EventStatus = Literal["pending_approval", "approved", "created", "updated", "flagged", "failed"]
OperationType = Literal["create", "update", "flag", "skip"]
OperationStatus = Literal["pending", "approved", "rejected", "executed", "failed"]
ExtractionStatus = Literal["success", "skipped", "failed"]
ExceptionType = Literal[
    "extraction_error",
    "calendar_error",
    "duplicate_detected",
    "api_error",
    "forwarding_error",
    "other",
]
Severity = Literal["low", "medium", "high", "critical"]
ApprovalStatus = Literal["pending", "approved", "deferred", "dismissed"]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def _dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _loads(value: str | None, default: Any = None) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed JSON column", value=value[:80])
        return default


@dataclass
class EventIntent:
    """What the agent intends to put on the calendar.

    ``start`` and ``end`` are ISO 8601 strings: a date (``2026-03-14``)
    for all-day events, a local date-time otherwise.
    """

    title: str
    start: str
    end: str
    all_day: bool = False
    timezone: str = "UTC"
    description: str | None = None
    location: str | None = None
    guests: list[str] = field(default_factory=list)
    reminders: list[int] = field(default_factory=list)
    color: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventIntent:
        return cls(
            title=data.get("title") or "Untitled Event",
            start=data["start"],
            end=data.get("end") or data["start"],
            all_day=bool(data.get("all_day", False)),
            timezone=data.get("timezone") or "UTC",
            description=data.get("description"),
            location=data.get("location"),
            guests=list(data.get("guests") or []),
            reminders=list(data.get("reminders") or []),
            color=data.get("color"),
        )


@dataclass
class DiscoverySession:
    """Discovery session record (append-only history)."""

    id: str
    pack_id: str
    started_at: datetime
    status: SessionStatus = "running"
    completed_at: datetime | None = None
    emails_scanned: int = 0
    error: str | None = None
    output: dict[str, Any] | None = None


@dataclass
class Evidence:
    """One scored email captured during a discovery scan."""

    id: str
    session_id: str
    message_id: str
    relevance_score: float
    subject: str | None = None
    sender: str | None = None
    date: str | None = None
    snippet: str | None = None
    matched_rules: list[str] = field(default_factory=list)


@dataclass
class PendingApproval:
    """A discovered email surfaced for human review."""

    id: str
    message_id: str
    pack_id: str
    relevance_score: float = 0.0
    from_email: str | None = None
    from_name: str | None = None
    subject: str | None = None
    snippet: str | None = None
    primary_category: str | None = None
    secondary_categories: list[str] = field(default_factory=list)
    category_scores: dict[str, float] = field(default_factory=dict)
    save_reasons: list[str] = field(default_factory=list)
    person: str | None = None
    assignment_reason: str | None = None
    item_type: str = "announcement"
    obligation_date: str | None = None
    classification_confidence: float | None = None
    classification_reasoning: str | None = None
    status: ApprovalStatus = "pending"
    created_at: datetime | None = None
    resolved_at: datetime | None = None


@dataclass
class PersistedEvent:
    """Durable event record, unique by fingerprint."""

    id: str
    fingerprint: str
    source_message_id: str
    pack_id: str
    intent: EventIntent
    title_normalized: str
    date_key: str
    confidence: float
    status: EventStatus
    time_key: str = "allday"
    calendar_event_id: str | None = None
    manually_edited: bool = False
    error: str | None = None
    provenance: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_synced_at: datetime | None = None


@dataclass
class CalendarOperation:
    """A unit of calendar work paired with a PersistedEvent."""

    id: str
    type: OperationType
    event_fingerprint: str
    intent: EventIntent
    reason: str
    requires_approval: bool
    status: OperationStatus = "pending"
    calendar_event_id: str | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    executed_at: datetime | None = None


@dataclass
class ApprovalToken:
    """Single-use, time-boxed capability for one calendar operation."""

    id: str
    operation_id: str
    created_at: datetime
    expires_at: datetime
    approved: bool = False
    approved_at: datetime | None = None
    used: bool = False


@dataclass
class ProcessedMessage:
    """Idempotency ledger row for the production pipeline."""

    message_id: str
    pack_id: str
    extraction_status: ExtractionStatus
    events_extracted: int = 0
    fingerprints: list[str] = field(default_factory=list)
    error: str | None = None
    processed_at: datetime = field(default_factory=utcnow)


@dataclass
class ExceptionRecord:
    """A per-item failure awaiting human follow-up."""

    id: str
    timestamp: datetime
    type: ExceptionType
    severity: Severity
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    resolved: bool = False
    resolved_at: datetime | None = None


@dataclass
class ManualEditFlag:
    """Drift detected between a synced calendar event and its stored intent."""

    id: str
    event_fingerprint: str
    calendar_event_id: str
    detected_at: datetime
    changes: dict[str, dict[str, Any]]
    policy: str


@dataclass
class ForwardedMessage:
    """Forwarding ledger row."""

    id: str
    source_message_id: str
    forwarded_to: list[str]
    pack_id: str
    success: bool
    reason: str | None = None
    conditions: list[str] = field(default_factory=list)
    error: str | None = None
    forwarded_at: datetime = field(default_factory=utcnow)


@dataclass
class AuditEntry:
    """Audit log entry."""

    id: int
    timestamp: datetime
    action: str
    message_id: str | None = None
    event_fingerprint: str | None = None
    details: dict[str, Any] | None = None
    triggered_by: str | None = None
    run_id: str | None = None


class DatabaseStore:
    """Database store for all Family Concierge data.

    Opens one configured connection per call; safe to share between the
    scheduler and the web server.

    Attributes:
        db_path: Path to the SQLite database file
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Create tables if needed. Must be called before other operations."""
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Sets the PRAGMAs every connection needs:
        - busy_timeout: 10s so the scheduler and web server can overlap
        - foreign_keys: ON to enforce operation -> event references
        - synchronous: NORMAL (safe with WAL)
        - cache_size / temp_store: read performance
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")

            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA cache_size = -64000")  # 64MB
            await db.execute("PRAGMA temp_store = MEMORY")

            db.row_factory = aiosqlite.Row
            yield db

    # =========================================================================
    # Discovery Session Operations
    # =========================================================================

    async def create_discovery_session(self, session: DiscoverySession) -> None:
        """Insert a new discovery session row.

        Raises:
            DatabaseError: If the operation fails
        """
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO discovery_sessions (
                        id, pack_id, started_at, completed_at,
                        emails_scanned, status, error, output_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        session.id,
                        session.pack_id,
                        _iso(session.started_at),
                        _iso(session.completed_at),
                        session.emails_scanned,
                        session.status,
                        session.error,
                        json.dumps(session.output) if session.output is not None else None,
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to create discovery session", session_id=session.id, error=str(e))
            raise DatabaseError(f"Failed to create discovery session {session.id}: {e}") from e

    async def save_discovery_session(self, session: DiscoverySession) -> None:
        """Persist the mutable fields of a discovery session.

        Raises:
            DatabaseError: If the operation fails
        """
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE discovery_sessions
                    SET completed_at = ?, emails_scanned = ?, status = ?,
                        error = ?, output_json = ?
                    WHERE id = ?
                    """,
                    (
                        _iso(session.completed_at),
                        session.emails_scanned,
                        session.status,
                        session.error,
                        json.dumps(session.output) if session.output is not None else None,
                        session.id,
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to save discovery session", session_id=session.id, error=str(e))
            raise DatabaseError(f"Failed to save discovery session {session.id}: {e}") from e

    async def get_discovery_session(self, session_id: str) -> DiscoverySession | None:
        """Get a discovery session by id."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM discovery_sessions WHERE id = ?", (session_id,)
                )
                row = await cursor.fetchone()
                return self._row_to_session(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get discovery session", session_id=session_id, error=str(e))
            raise DatabaseError(f"Failed to get discovery session {session_id}: {e}") from e

    async def get_discovery_sessions(
        self, pack_id: str | None = None, limit: int = 20
    ) -> list[DiscoverySession]:
        """List discovery sessions, newest first."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM discovery_sessions WHERE 1=1"
                params: list[Any] = []
                if pack_id:
                    query += " AND pack_id = ?"
                    params.append(pack_id)
                query += " ORDER BY started_at DESC LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                return [self._row_to_session(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("Failed to list discovery sessions", error=str(e))
            raise DatabaseError(f"Failed to list discovery sessions: {e}") from e

    def _row_to_session(self, row: aiosqlite.Row) -> DiscoverySession:
        return DiscoverySession(
            id=row["id"],
            pack_id=row["pack_id"],
            started_at=_dt(row["started_at"]) or utcnow(),
            status=row["status"],
            completed_at=_dt(row["completed_at"]),
            emails_scanned=row["emails_scanned"] or 0,
            error=row["error"],
            output=_loads(row["output_json"]),
        )

    async def insert_evidence(self, evidence: Evidence) -> None:
        """Insert an evidence row; evidence is immutable once written."""
        snippet = evidence.snippet[:MAX_SNIPPET_LENGTH] if evidence.snippet else None
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO discovery_evidence (
                        id, session_id, message_id, subject, sender, date,
                        snippet, relevance_score, matched_rules_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        evidence.id,
                        evidence.session_id,
                        evidence.message_id,
                        evidence.subject,
                        evidence.sender,
                        evidence.date,
                        snippet,
                        evidence.relevance_score,
                        json.dumps(evidence.matched_rules),
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to insert evidence", message_id=evidence.message_id, error=str(e))
            raise DatabaseError(f"Failed to insert evidence for {evidence.message_id}: {e}") from e

    async def get_evidence(self, session_id: str) -> list[Evidence]:
        """Get all evidence for a session in insertion order."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM discovery_evidence WHERE session_id = ? ORDER BY rowid",
                    (session_id,),
                )
                return [
                    Evidence(
                        id=row["id"],
                        session_id=row["session_id"],
                        message_id=row["message_id"],
                        relevance_score=row["relevance_score"],
                        subject=row["subject"],
                        sender=row["sender"],
                        date=row["date"],
                        snippet=row["snippet"],
                        matched_rules=_loads(row["matched_rules_json"], []),
                    )
                    for row in await cursor.fetchall()
                ]

        except aiosqlite.Error as e:
            logger.error("Failed to get evidence", session_id=session_id, error=str(e))
            raise DatabaseError(f"Failed to get evidence for session {session_id}: {e}") from e

    # =========================================================================
    # Pending Approval Operations
    # =========================================================================

    async def insert_pending_approval(self, item: PendingApproval) -> None:
        """Insert a discovered item awaiting review."""
        snippet = item.snippet[:MAX_SNIPPET_LENGTH] if item.snippet else None
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO pending_approvals (
                        id, message_id, pack_id, relevance_score, from_email,
                        from_name, subject, snippet, primary_category,
                        secondary_categories_json, category_scores_json,
                        save_reasons_json, person, assignment_reason, item_type,
                        obligation_date, classification_confidence,
                        classification_reasoning, status, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        item.id,
                        item.message_id,
                        item.pack_id,
                        item.relevance_score,
                        item.from_email,
                        item.from_name,
                        item.subject,
                        snippet,
                        item.primary_category,
                        json.dumps(item.secondary_categories),
                        json.dumps(item.category_scores),
                        json.dumps(item.save_reasons),
                        item.person,
                        item.assignment_reason,
                        item.item_type,
                        item.obligation_date,
                        item.classification_confidence,
                        item.classification_reasoning,
                        item.status,
                        _iso(item.created_at or utcnow()),
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to insert pending approval", message_id=item.message_id, error=str(e))
            raise DatabaseError(f"Failed to insert pending approval {item.id}: {e}") from e

    async def get_pending_approvals(
        self,
        status: ApprovalStatus | None = "pending",
        since: datetime | None = None,
        limit: int = 200,
    ) -> list[PendingApproval]:
        """List discovered items, newest first."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM pending_approvals WHERE 1=1"
                params: list[Any] = []
                if status:
                    query += " AND status = ?"
                    params.append(status)
                if since:
                    query += " AND created_at >= ?"
                    params.append(_iso(since))
                query += " ORDER BY created_at DESC LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                return [self._row_to_pending_approval(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("Failed to get pending approvals", error=str(e))
            raise DatabaseError(f"Failed to get pending approvals: {e}") from e

    async def update_pending_approval_status(self, item_id: str, status: ApprovalStatus) -> bool:
        """Resolve a pending approval (approved, deferred or dismissed).

        Returns:
            True if a row was updated
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "UPDATE pending_approvals SET status = ?, resolved_at = ? WHERE id = ?",
                    (status, _iso(utcnow()), item_id),
                )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("Failed to update pending approval", item_id=item_id, error=str(e))
            raise DatabaseError(f"Failed to update pending approval {item_id}: {e}") from e

    def _row_to_pending_approval(self, row: aiosqlite.Row) -> PendingApproval:
        return PendingApproval(
            id=row["id"],
            message_id=row["message_id"],
            pack_id=row["pack_id"],
            relevance_score=row["relevance_score"] or 0.0,
            from_email=row["from_email"],
            from_name=row["from_name"],
            subject=row["subject"],
            snippet=row["snippet"],
            primary_category=row["primary_category"],
            secondary_categories=_loads(row["secondary_categories_json"], []),
            category_scores=_loads(row["category_scores_json"], {}),
            save_reasons=_loads(row["save_reasons_json"], []),
            person=row["person"],
            assignment_reason=row["assignment_reason"],
            item_type=row["item_type"] or "announcement",
            obligation_date=row["obligation_date"],
            classification_confidence=row["classification_confidence"],
            classification_reasoning=row["classification_reasoning"],
            status=row["status"],
            created_at=_dt(row["created_at"]),
            resolved_at=_dt(row["resolved_at"]),
        )

    # =========================================================================
    # Event Operations
    # =========================================================================

    async def insert_event(self, event: PersistedEvent) -> bool:
        """Insert an event unless its fingerprint already exists.

        The UNIQUE constraint on fingerprint is the sole arbiter; two
        overlapping runs racing on the same fingerprint produce one row.

        Returns:
            True if the row was written, False on fingerprint collision
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO events (
                        id, fingerprint, source_message_id, pack_id,
                        calendar_event_id, intent_json, title_normalized,
                        date_key, time_key, confidence, status, manually_edited, error,
                        provenance_json, created_at, updated_at, last_synced_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(fingerprint) DO NOTHING
                    RETURNING id
                    """,
                    (
                        event.id,
                        event.fingerprint,
                        event.source_message_id,
                        event.pack_id,
                        event.calendar_event_id,
                        json.dumps(event.intent.to_dict()),
                        event.title_normalized,
                        event.date_key,
                        event.time_key,
                        event.confidence,
                        event.status,
                        int(event.manually_edited),
                        event.error,
                        json.dumps(event.provenance) if event.provenance else None,
                        _iso(event.created_at),
                        _iso(event.updated_at),
                        _iso(event.last_synced_at),
                    ),
                )
                inserted = await cursor.fetchone()
                await db.commit()
                return inserted is not None

        except aiosqlite.Error as e:
            logger.error("Failed to insert event", fingerprint=event.fingerprint, error=str(e))
            raise DatabaseError(f"Failed to insert event {event.fingerprint}: {e}") from e

    async def get_event_by_fingerprint(self, fingerprint: str) -> PersistedEvent | None:
        """Get an event by its fingerprint."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM events WHERE fingerprint = ?", (fingerprint,))
                row = await cursor.fetchone()
                return self._row_to_event(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get event", fingerprint=fingerprint, error=str(e))
            raise DatabaseError(f"Failed to get event {fingerprint}: {e}") from e

    async def find_duplicate_events(
        self,
        fingerprint: str,
        title_normalized: str,
        date_key: str,
        time_key: str,
        source_message_id: str,
        window_days: int,
        now: datetime | None = None,
    ) -> list[PersistedEvent]:
        """Find events that block creation of a new one.

        A match is the same fingerprint, or the same normalized title, date
        key and time key announced by a different message and persisted
        within the last ``window_days``. Events from the candidate's own
        message never match on title, so a recurring series in one ICS
        file keeps every occurrence.
        """
        cutoff = (now or utcnow()) - timedelta(days=window_days)
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM events
                    WHERE fingerprint = ?
                       OR (
                            title_normalized = ?
                            AND date_key = ?
                            AND time_key = ?
                            AND source_message_id != ?
                            AND created_at >= ?
                       )
                    ORDER BY created_at
                    """,
                    (fingerprint, title_normalized, date_key, time_key, source_message_id, _iso(cutoff)),
                )
                return [self._row_to_event(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("Failed to search duplicate events", fingerprint=fingerprint, error=str(e))
            raise DatabaseError(f"Failed to search duplicate events: {e}") from e

    async def get_events_by_status(
        self,
        statuses: list[EventStatus],
        since: datetime | None = None,
        limit: int = 500,
    ) -> list[PersistedEvent]:
        """List events in any of the given statuses, oldest first."""
        if not statuses:
            return []
        try:
            async with self._db() as db:
                placeholders = ",".join("?" * len(statuses))
                query = f"SELECT * FROM events WHERE status IN ({placeholders})"
                params: list[Any] = list(statuses)
                if since:
                    query += " AND updated_at >= ?"
                    params.append(_iso(since))
                query += " ORDER BY created_at LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                return [self._row_to_event(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("Failed to get events by status", statuses=statuses, error=str(e))
            raise DatabaseError(f"Failed to get events by status: {e}") from e

    async def mark_event_manually_edited(self, fingerprint: str) -> None:
        """Set the manually-edited flag on an event."""
        try:
            async with self._db() as db:
                await db.execute(
                    "UPDATE events SET manually_edited = 1, updated_at = ? WHERE fingerprint = ?",
                    (_iso(utcnow()), fingerprint),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to flag manual edit", fingerprint=fingerprint, error=str(e))
            raise DatabaseError(f"Failed to flag manual edit on {fingerprint}: {e}") from e

    def _row_to_event(self, row: aiosqlite.Row) -> PersistedEvent:
        return PersistedEvent(
            id=row["id"],
            fingerprint=row["fingerprint"],
            source_message_id=row["source_message_id"],
            pack_id=row["pack_id"],
            intent=EventIntent.from_dict(_loads(row["intent_json"], {})),
            title_normalized=row["title_normalized"],
            date_key=row["date_key"],
            time_key=row["time_key"],
            confidence=row["confidence"],
            status=row["status"],
            calendar_event_id=row["calendar_event_id"],
            manually_edited=bool(row["manually_edited"]),
            error=row["error"],
            provenance=_loads(row["provenance_json"]),
            created_at=_dt(row["created_at"]) or utcnow(),
            updated_at=_dt(row["updated_at"]) or utcnow(),
            last_synced_at=_dt(row["last_synced_at"]),
        )

    # =========================================================================
    # Calendar Operation Operations
    # =========================================================================

    async def insert_operation(self, operation: CalendarOperation) -> None:
        """Insert a calendar operation.

        Raises:
            DatabaseError: If the operation fails (including a missing event row)
        """
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO calendar_operations (
                        id, type, event_fingerprint, intent_json, reason,
                        requires_approval, status, calendar_event_id, error,
                        created_at, executed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        operation.id,
                        operation.type,
                        operation.event_fingerprint,
                        json.dumps(operation.intent.to_dict()),
                        operation.reason,
                        int(operation.requires_approval),
                        operation.status,
                        operation.calendar_event_id,
                        operation.error,
                        _iso(operation.created_at),
                        _iso(operation.executed_at),
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to insert operation", operation_id=operation.id, error=str(e))
            raise DatabaseError(f"Failed to insert calendar operation {operation.id}: {e}") from e

    async def get_operation(self, operation_id: str) -> CalendarOperation | None:
        """Get a calendar operation by id."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM calendar_operations WHERE id = ?", (operation_id,)
                )
                row = await cursor.fetchone()
                return self._row_to_operation(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get operation", operation_id=operation_id, error=str(e))
            raise DatabaseError(f"Failed to get calendar operation {operation_id}: {e}") from e

    async def get_operation_for_event(self, fingerprint: str) -> CalendarOperation | None:
        """Get the most recent operation paired with an event."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM calendar_operations
                    WHERE event_fingerprint = ?
                    ORDER BY created_at DESC LIMIT 1
                    """,
                    (fingerprint,),
                )
                row = await cursor.fetchone()
                return self._row_to_operation(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get operation for event", fingerprint=fingerprint, error=str(e))
            raise DatabaseError(f"Failed to get operation for event {fingerprint}: {e}") from e

    async def get_pending_operations(self, limit: int = 100) -> list[CalendarOperation]:
        """List operations still waiting for approval, oldest first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM calendar_operations
                    WHERE status = 'pending'
                    ORDER BY created_at LIMIT ?
                    """,
                    (limit,),
                )
                return [self._row_to_operation(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("Failed to get pending operations", error=str(e))
            raise DatabaseError(f"Failed to get pending operations: {e}") from e

    async def claim_operation(self, operation_id: str) -> bool:
        """Atomically move a pending operation and its event to ``approved``.

        The conditional UPDATE admits exactly one claimant. A second
        approval racing on the same operation gets False and must not
        write to the calendar.

        Returns:
            True if this call claimed the operation
        """
        now = _iso(utcnow())
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE calendar_operations
                    SET status = 'approved'
                    WHERE id = ? AND status = 'pending'
                    RETURNING event_fingerprint
                    """,
                    (operation_id,),
                )
                rows = await cursor.fetchall()
                for row in rows:
                    await db.execute(
                        "UPDATE events SET status = 'approved', updated_at = ? WHERE fingerprint = ?",
                        (now, row["event_fingerprint"]),
                    )
                await db.commit()
                return bool(rows)

        except aiosqlite.Error as e:
            logger.error("Failed to claim operation", operation_id=operation_id, error=str(e))
            raise DatabaseError(f"Failed to claim operation {operation_id}: {e}") from e

    async def apply_operation_outcome(
        self,
        operation_id: str,
        operation_status: OperationStatus,
        event_fingerprint: str,
        event_status: EventStatus,
        calendar_event_id: str | None = None,
        error: str | None = None,
        expected_status: OperationStatus | None = None,
    ) -> bool:
        """Write an operation status and its coupled event status together.

        Both rows change in one transaction so an executed operation never
        sits next to an event that was not created. With ``expected_status``
        nothing is written unless the operation is still in that status.

        Args:
            operation_id: Operation to update
            operation_status: New operation status
            event_fingerprint: Paired event
            event_status: Coupled event status
            calendar_event_id: Remote id on success
            error: Failure or rejection reason recorded on both rows
            expected_status: Status the operation must currently be in

        Returns:
            False if ``expected_status`` did not match and nothing changed
        """
        now = _iso(utcnow())
        executed_at = now if operation_status == "executed" else None
        synced_at = now if event_status in ("created", "updated") else None
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE calendar_operations
                    SET status = ?,
                        calendar_event_id = COALESCE(?, calendar_event_id),
                        error = ?,
                        executed_at = COALESCE(?, executed_at)
                    WHERE id = ? AND (? IS NULL OR status = ?)
                    RETURNING id
                    """,
                    (
                        operation_status,
                        calendar_event_id,
                        error,
                        executed_at,
                        operation_id,
                        expected_status,
                        expected_status,
                    ),
                )
                updated = await cursor.fetchall()
                if expected_status is not None and not updated:
                    await db.rollback()
                    return False
                await db.execute(
                    """
                    UPDATE events
                    SET status = ?,
                        calendar_event_id = COALESCE(?, calendar_event_id),
                        error = ?,
                        last_synced_at = COALESCE(?, last_synced_at),
                        updated_at = ?
                    WHERE fingerprint = ?
                    """,
                    (event_status, calendar_event_id, error, synced_at, now, event_fingerprint),
                )
                await db.commit()
                return True

        except aiosqlite.Error as e:
            logger.error(
                "Failed to apply operation outcome",
                operation_id=operation_id,
                operation_status=operation_status,
                error=str(e),
            )
            raise DatabaseError(f"Failed to update calendar operation {operation_id}: {e}") from e

    def _row_to_operation(self, row: aiosqlite.Row) -> CalendarOperation:
        return CalendarOperation(
            id=row["id"],
            type=row["type"],
            event_fingerprint=row["event_fingerprint"],
            intent=EventIntent.from_dict(_loads(row["intent_json"], {})),
            reason=row["reason"] or "",
            requires_approval=bool(row["requires_approval"]),
            status=row["status"],
            calendar_event_id=row["calendar_event_id"],
            error=row["error"],
            created_at=_dt(row["created_at"]) or utcnow(),
            executed_at=_dt(row["executed_at"]),
        )

    # =========================================================================
    # Approval Token Operations
    # =========================================================================

    async def insert_approval_token(self, token: ApprovalToken) -> None:
        """Insert an approval token."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO approval_tokens (
                        id, operation_id, created_at, expires_at,
                        approved, approved_at, used
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        token.id,
                        token.operation_id,
                        _iso(token.created_at),
                        _iso(token.expires_at),
                        int(token.approved),
                        _iso(token.approved_at),
                        int(token.used),
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to insert approval token", operation_id=token.operation_id, error=str(e))
            raise DatabaseError(f"Failed to insert approval token: {e}") from e

    async def get_approval_token(self, token_id: str) -> ApprovalToken | None:
        """Get an approval token by id."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM approval_tokens WHERE id = ?", (token_id,))
                row = await cursor.fetchone()
                return self._row_to_token(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get approval token", error=str(e))
            raise DatabaseError(f"Failed to get approval token: {e}") from e

    async def consume_approval_token(
        self, token_id: str, approved: bool, now: datetime | None = None
    ) -> bool:
        """Atomically mark a token used.

        Only an unused, unexpired token is consumed; a concurrent second
        consumer sees no row and gets False.

        Returns:
            True if this call consumed the token
        """
        now = now or utcnow()
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE approval_tokens
                    SET used = 1, approved = ?, approved_at = ?
                    WHERE id = ? AND used = 0 AND expires_at > ?
                    RETURNING id
                    """,
                    (int(approved), _iso(now) if approved else None, token_id, _iso(now)),
                )
                consumed = await cursor.fetchone()
                await db.commit()
                return consumed is not None

        except aiosqlite.Error as e:
            logger.error("Failed to consume approval token", error=str(e))
            raise DatabaseError(f"Failed to consume approval token: {e}") from e

    async def get_token_for_operation(
        self, operation_id: str, now: datetime | None = None
    ) -> ApprovalToken | None:
        """Get the newest live (unused, unexpired) token for an operation."""
        now = now or utcnow()
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM approval_tokens
                    WHERE operation_id = ? AND used = 0 AND expires_at > ?
                    ORDER BY created_at DESC LIMIT 1
                    """,
                    (operation_id, _iso(now)),
                )
                row = await cursor.fetchone()
                return self._row_to_token(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get token for operation", operation_id=operation_id, error=str(e))
            raise DatabaseError(f"Failed to get token for operation {operation_id}: {e}") from e

    async def cleanup_expired_tokens(self, now: datetime | None = None) -> int:
        """Delete expired tokens that were never used.

        Used tokens are kept as the record of who approved what.

        Returns:
            Number of tokens deleted
        """
        now = now or utcnow()
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "DELETE FROM approval_tokens WHERE expires_at < ? AND used = 0",
                    (_iso(now),),
                )
                await db.commit()
                return cursor.rowcount

        except aiosqlite.Error as e:
            logger.error("Failed to clean up approval tokens", error=str(e))
            raise DatabaseError(f"Failed to clean up approval tokens: {e}") from e

    def _row_to_token(self, row: aiosqlite.Row) -> ApprovalToken:
        return ApprovalToken(
            id=row["id"],
            operation_id=row["operation_id"],
            created_at=_dt(row["created_at"]) or utcnow(),
            expires_at=_dt(row["expires_at"]) or utcnow(),
            approved=bool(row["approved"]),
            approved_at=_dt(row["approved_at"]),
            used=bool(row["used"]),
        )

    # =========================================================================
    # Processed Message Operations
    # =========================================================================

    async def is_message_processed(self, message_id: str) -> bool:
        """Check whether the pipeline already handled a message."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT 1 FROM processed_messages WHERE message_id = ?", (message_id,)
                )
                return await cursor.fetchone() is not None

        except aiosqlite.Error as e:
            logger.error("Failed to check processed message", message_id=message_id, error=str(e))
            raise DatabaseError(f"Failed to check processed message {message_id}: {e}") from e

    async def insert_processed_message(self, record: ProcessedMessage) -> bool:
        """Record a processed message; a second insert for the same id is a no-op.

        Returns:
            True if the row was written
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO processed_messages (
                        message_id, processed_at, pack_id, extraction_status,
                        events_extracted, fingerprints_json, error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(message_id) DO NOTHING
                    """,
                    (
                        record.message_id,
                        _iso(record.processed_at),
                        record.pack_id,
                        record.extraction_status,
                        record.events_extracted,
                        json.dumps(record.fingerprints),
                        record.error,
                    ),
                )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("Failed to record processed message", message_id=record.message_id, error=str(e))
            raise DatabaseError(f"Failed to record processed message {record.message_id}: {e}") from e

    async def get_processed_message(self, message_id: str) -> ProcessedMessage | None:
        """Get the ledger row for a message."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM processed_messages WHERE message_id = ?", (message_id,)
                )
                row = await cursor.fetchone()
                if not row:
                    return None
                return ProcessedMessage(
                    message_id=row["message_id"],
                    pack_id=row["pack_id"],
                    extraction_status=row["extraction_status"],
                    events_extracted=row["events_extracted"] or 0,
                    fingerprints=_loads(row["fingerprints_json"], []),
                    error=row["error"],
                    processed_at=_dt(row["processed_at"]) or utcnow(),
                )

        except aiosqlite.Error as e:
            logger.error("Failed to get processed message", message_id=message_id, error=str(e))
            raise DatabaseError(f"Failed to get processed message {message_id}: {e}") from e

    # =========================================================================
    # Exception Operations
    # =========================================================================

    async def record_exception(
        self,
        type: ExceptionType,
        message: str,
        severity: Severity = "medium",
        context: dict[str, Any] | None = None,
    ) -> str:
        """Record a per-item failure. Resolution is always a manual action.

        Returns:
            The exception id
        """
        exception_id = str(uuid.uuid4())
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO exceptions (
                        id, timestamp, type, severity, message, context_json, resolved
                    ) VALUES (?, ?, ?, ?, ?, ?, 0)
                    """,
                    (
                        exception_id,
                        _iso(utcnow()),
                        type,
                        severity,
                        message,
                        json.dumps(context or {}, default=str),
                    ),
                )
                await db.commit()
                return exception_id

        except aiosqlite.Error as e:
            logger.error("Failed to record exception", type=type, error=str(e))
            raise DatabaseError(f"Failed to record exception: {e}") from e

    async def get_exceptions(
        self,
        type: ExceptionType | None = None,
        resolved: bool | None = None,
        limit: int = 100,
    ) -> list[ExceptionRecord]:
        """List exceptions, newest first, with optional filters."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM exceptions WHERE 1=1"
                params: list[Any] = []
                if type:
                    query += " AND type = ?"
                    params.append(type)
                if resolved is not None:
                    query += " AND resolved = ?"
                    params.append(int(resolved))
                query += " ORDER BY timestamp DESC LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                return [
                    ExceptionRecord(
                        id=row["id"],
                        timestamp=_dt(row["timestamp"]) or utcnow(),
                        type=row["type"],
                        severity=row["severity"],
                        message=row["message"],
                        context=_loads(row["context_json"], {}),
                        resolved=bool(row["resolved"]),
                        resolved_at=_dt(row["resolved_at"]),
                    )
                    for row in await cursor.fetchall()
                ]

        except aiosqlite.Error as e:
            logger.error("Failed to get exceptions", error=str(e))
            raise DatabaseError(f"Failed to get exceptions: {e}") from e

    async def resolve_exception(self, exception_id: str) -> bool:
        """Mark an exception resolved."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE exceptions SET resolved = 1, resolved_at = ?
                    WHERE id = ? AND resolved = 0
                    """,
                    (_iso(utcnow()), exception_id),
                )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("Failed to resolve exception", exception_id=exception_id, error=str(e))
            raise DatabaseError(f"Failed to resolve exception {exception_id}: {e}") from e

    # =========================================================================
    # Manual Edit Operations
    # =========================================================================

    async def insert_manual_edit_flag(self, flag: ManualEditFlag) -> None:
        """Record drift detected on a synced event."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO manual_edit_flags (
                        id, event_fingerprint, calendar_event_id,
                        detected_at, changes_json, policy
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        flag.id,
                        flag.event_fingerprint,
                        flag.calendar_event_id,
                        _iso(flag.detected_at),
                        json.dumps(flag.changes),
                        flag.policy,
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to insert manual edit flag", fingerprint=flag.event_fingerprint, error=str(e))
            raise DatabaseError(f"Failed to insert manual edit flag: {e}") from e

    async def get_manual_edit_flags(self, fingerprint: str | None = None) -> list[ManualEditFlag]:
        """List manual edit flags, newest first."""
        try:
            async with self._db() as db:
                if fingerprint:
                    cursor = await db.execute(
                        """
                        SELECT * FROM manual_edit_flags WHERE event_fingerprint = ?
                        ORDER BY detected_at DESC
                        """,
                        (fingerprint,),
                    )
                else:
                    cursor = await db.execute(
                        "SELECT * FROM manual_edit_flags ORDER BY detected_at DESC"
                    )
                return [
                    ManualEditFlag(
                        id=row["id"],
                        event_fingerprint=row["event_fingerprint"],
                        calendar_event_id=row["calendar_event_id"],
                        detected_at=_dt(row["detected_at"]) or utcnow(),
                        changes=_loads(row["changes_json"], {}),
                        policy=row["policy"],
                    )
                    for row in await cursor.fetchall()
                ]

        except aiosqlite.Error as e:
            logger.error("Failed to get manual edit flags", error=str(e))
            raise DatabaseError(f"Failed to get manual edit flags: {e}") from e

    # =========================================================================
    # Forwarding Operations
    # =========================================================================

    async def is_message_forwarded(self, source_message_id: str) -> bool:
        """Check whether a message was already forwarded successfully."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT 1 FROM forwarded_messages
                    WHERE source_message_id = ? AND success = 1
                    """,
                    (source_message_id,),
                )
                return await cursor.fetchone() is not None

        except aiosqlite.Error as e:
            logger.error("Failed to check forwarded message", message_id=source_message_id, error=str(e))
            raise DatabaseError(f"Failed to check forwarded message: {e}") from e

    async def insert_forwarded_message(self, record: ForwardedMessage) -> None:
        """Record a forwarding attempt."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO forwarded_messages (
                        id, source_message_id, forwarded_at, forwarded_to_json,
                        pack_id, reason, conditions_json, success, error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.id,
                        record.source_message_id,
                        _iso(record.forwarded_at),
                        json.dumps(record.forwarded_to),
                        record.pack_id,
                        record.reason,
                        json.dumps(record.conditions),
                        int(record.success),
                        record.error,
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to record forwarded message", message_id=record.source_message_id, error=str(e))
            raise DatabaseError(f"Failed to record forwarded message: {e}") from e

    async def get_forwarded_messages(self, since: datetime | None = None) -> list[ForwardedMessage]:
        """List forwarding attempts, newest first."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM forwarded_messages WHERE 1=1"
                params: list[Any] = []
                if since:
                    query += " AND forwarded_at >= ?"
                    params.append(_iso(since))
                query += " ORDER BY forwarded_at DESC"

                cursor = await db.execute(query, params)
                return [
                    ForwardedMessage(
                        id=row["id"],
                        source_message_id=row["source_message_id"],
                        forwarded_to=_loads(row["forwarded_to_json"], []),
                        pack_id=row["pack_id"],
                        success=bool(row["success"]),
                        reason=row["reason"],
                        conditions=_loads(row["conditions_json"], []),
                        error=row["error"],
                        forwarded_at=_dt(row["forwarded_at"]) or utcnow(),
                    )
                    for row in await cursor.fetchall()
                ]

        except aiosqlite.Error as e:
            logger.error("Failed to get forwarded messages", error=str(e))
            raise DatabaseError(f"Failed to get forwarded messages: {e}") from e

    # =========================================================================
    # Audit Log Operations
    # =========================================================================

    async def log_action(
        self,
        action: str,
        message_id: str | None = None,
        event_fingerprint: str | None = None,
        details: dict[str, Any] | None = None,
        triggered_by: str = "auto",
    ) -> int:
        """Append an audit log entry stamped with the current run id.

        Args:
            action: What happened ('operation_executed', 'token_issued', ...)
            message_id: Source message (if applicable)
            event_fingerprint: Affected event (if applicable)
            details: Action details dictionary
            triggered_by: 'auto', 'user' or 'scheduler'

        Returns:
            The log entry ID
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO audit_log (
                        timestamp, action, message_id, event_fingerprint,
                        details_json, triggered_by, run_id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _iso(utcnow()),
                        action,
                        message_id,
                        event_fingerprint,
                        json.dumps(details, default=str) if details else None,
                        triggered_by,
                        get_correlation_id(),
                    ),
                )
                await db.commit()
                return cursor.lastrowid

        except aiosqlite.Error as e:
            logger.error("Failed to log action", action=action, error=str(e))
            raise DatabaseError(f"Failed to log action: {e}") from e

    async def get_audit_log(self, limit: int = 100, action: str | None = None) -> list[AuditEntry]:
        """Get audit entries, newest first."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM audit_log WHERE 1=1"
                params: list[Any] = []
                if action:
                    query += " AND action = ?"
                    params.append(action)
                query += " ORDER BY id DESC LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                return [
                    AuditEntry(
                        id=row["id"],
                        timestamp=_dt(row["timestamp"]) or utcnow(),
                        action=row["action"],
                        message_id=row["message_id"],
                        event_fingerprint=row["event_fingerprint"],
                        details=_loads(row["details_json"]),
                        triggered_by=row["triggered_by"],
                        run_id=row["run_id"],
                    )
                    for row in await cursor.fetchall()
                ]

        except aiosqlite.Error as e:
            logger.error("Failed to get audit log", error=str(e))
            raise DatabaseError(f"Failed to get audit log: {e}") from e

    # =========================================================================
    # Agent State Operations
    # =========================================================================

    async def get_state(self, key: str) -> str | None:
        """Get an agent state value."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT value FROM agent_state WHERE key = ?", (key,))
                row = await cursor.fetchone()
                return row["value"] if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get state", key=key, error=str(e))
            raise DatabaseError(f"Failed to get state: {e}") from e

    async def set_state(self, key: str, value: str) -> None:
        """Set an agent state value."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO agent_state (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, value, _iso(utcnow())),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to set state", key=key, error=str(e))
            raise DatabaseError(f"Failed to set state: {e}") from e

    # =========================================================================
    # Stats
    # =========================================================================

    async def get_stats(self) -> dict[str, Any]:
        """Counts for the health endpoint and the CLI status line."""
        try:
            async with self._db() as db:
                stats: dict[str, Any] = {}

                cursor = await db.execute(
                    "SELECT status, COUNT(*) AS count FROM events GROUP BY status"
                )
                stats["events_by_status"] = {
                    row["status"]: row["count"] for row in await cursor.fetchall()
                }

                cursor = await db.execute(
                    "SELECT COUNT(*) AS count FROM calendar_operations WHERE status = 'pending'"
                )
                row = await cursor.fetchone()
                stats["pending_operations"] = row["count"] if row else 0

                cursor = await db.execute(
                    "SELECT COUNT(*) AS count FROM exceptions WHERE resolved = 0"
                )
                row = await cursor.fetchone()
                stats["unresolved_exceptions"] = row["count"] if row else 0

                cursor = await db.execute("SELECT COUNT(*) AS count FROM processed_messages")
                row = await cursor.fetchone()
                stats["processed_messages"] = row["count"] if row else 0

                return stats

        except aiosqlite.Error as e:
            logger.error("Failed to get stats", error=str(e))
            raise DatabaseError(f"Failed to get stats: {e}") from e
