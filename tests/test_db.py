"""Tests for the database layer.

Covers the tables the pipeline, discovery and approval flows rely on:
- events and calendar_operations (fingerprint uniqueness, coupling)
- processed_messages (idempotency)
- discovery_sessions, discovery_evidence, pending_approvals
- exceptions, audit_log, agent_state
"""

import stat
from datetime import timedelta
from pathlib import Path

import aiosqlite
import pytest
from factories import make_intent, seed_operation

from concierge.core.errors import DatabaseError
from concierge.db import (
    REQUIRED_TABLES,
    ApprovalToken,
    CalendarOperation,
    DatabaseStore,
    DiscoverySession,
    Evidence,
    PersistedEvent,
    ProcessedMessage,
    init_database,
    utcnow,
    verify_schema,
)


def _event(fingerprint: str, title: str = "Winter Concert", start: str = "2026-12-10T18:00:00") -> PersistedEvent:
    intent = make_intent(title=title, start=start)
    return PersistedEvent(
        id=f"evt-{fingerprint}",
        fingerprint=fingerprint,
        source_message_id="msg-001",
        pack_id="school",
        intent=intent,
        title_normalized=title.lower(),
        date_key=start[:10],
        time_key=start[11:16],
        confidence=0.9,
        status="pending_approval",
    )


class TestDatabaseInitialization:
    """Tests for database initialization."""

    async def test_init_database_creates_file(self, data_dir: Path) -> None:
        db_path = data_dir / "fresh.db"
        assert not db_path.exists()
        await init_database(db_path)
        assert db_path.exists()

    async def test_init_database_enables_wal_mode(self, data_dir: Path) -> None:
        db_path = data_dir / "fresh.db"
        await init_database(db_path)
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("PRAGMA journal_mode")
            row = await cursor.fetchone()
            assert row[0].lower() == "wal"

    async def test_database_file_is_owner_only(self, data_dir: Path) -> None:
        db_path = data_dir / "fresh.db"
        await init_database(db_path)
        assert stat.S_IMODE(db_path.stat().st_mode) == 0o600

    async def test_verify_schema(self, data_dir: Path) -> None:
        db_path = data_dir / "fresh.db"
        await init_database(db_path)
        assert await verify_schema(db_path)
        assert len(REQUIRED_TABLES) == 12

    async def test_verify_schema_detects_missing_tables(self, data_dir: Path) -> None:
        db_path = data_dir / "empty.db"
        async with aiosqlite.connect(db_path) as db:
            await db.execute("CREATE TABLE unrelated (id INTEGER)")
            await db.commit()
        assert not await verify_schema(db_path)

    async def test_init_is_idempotent(self, store: DatabaseStore) -> None:
        await store.initialize()
        assert await verify_schema(store.db_path)


class TestEvents:
    """Tests for events and their operations."""

    async def test_fingerprint_is_unique(self, store: DatabaseStore) -> None:
        assert await store.insert_event(_event("fp-1"))
        assert not await store.insert_event(_event("fp-1"))

    async def test_round_trip_keeps_intent(self, store: DatabaseStore) -> None:
        event = _event("fp-1")
        event.intent.reminders = [60]
        await store.insert_event(event)

        stored = await store.get_event_by_fingerprint("fp-1")
        assert stored.intent == event.intent
        assert stored.status == "pending_approval"
        assert not stored.manually_edited

    async def test_duplicate_same_event_from_another_message(self, store: DatabaseStore) -> None:
        await store.insert_event(_event("fp-1", start="2026-12-10T18:00:00"))

        found = await store.find_duplicate_events("fp-2", "winter concert", "2026-12-10", "18:00", "msg-002", 14)
        other_time = await store.find_duplicate_events("fp-2", "winter concert", "2026-12-10", "09:00", "msg-002", 14)
        other_day = await store.find_duplicate_events("fp-2", "winter concert", "2026-12-11", "18:00", "msg-002", 14)
        other_title = await store.find_duplicate_events("fp-2", "book fair", "2026-12-10", "18:00", "msg-002", 14)

        assert [e.fingerprint for e in found] == ["fp-1"]
        assert other_time == []
        assert other_day == []
        assert other_title == []

    async def test_same_message_never_matches_on_title(self, store: DatabaseStore) -> None:
        await store.insert_event(_event("fp-1", start="2026-12-10T18:00:00"))

        found = await store.find_duplicate_events("fp-2", "winter concert", "2026-12-10", "18:00", "msg-001", 14)

        assert found == []

    async def test_title_match_limited_to_window(self, store: DatabaseStore) -> None:
        await store.insert_event(_event("fp-1", start="2026-12-10T18:00:00"))
        later = utcnow() + timedelta(days=20)

        found = await store.find_duplicate_events(
            "fp-2", "winter concert", "2026-12-10", "18:00", "msg-002", 14, now=later
        )

        assert found == []

    async def test_duplicate_by_fingerprint(self, store: DatabaseStore) -> None:
        await store.insert_event(_event("fp-1"))
        found = await store.find_duplicate_events("fp-1", "something else", "2030-01-01", "allday", "msg-001", 0)
        assert len(found) == 1

    async def test_operation_requires_event(self, store: DatabaseStore) -> None:
        orphan = CalendarOperation(
            id="op-orphan",
            type="create",
            event_fingerprint="missing",
            intent=make_intent(),
            reason="test",
            requires_approval=True,
        )
        with pytest.raises(DatabaseError):
            await store.insert_operation(orphan)

    async def test_outcome_updates_both_rows(self, store: DatabaseStore) -> None:
        operation = await seed_operation(store)

        await store.apply_operation_outcome(operation.id, "executed", "fp-1", "created", calendar_event_id="cal-1")

        stored_op = await store.get_operation(operation.id)
        event = await store.get_event_by_fingerprint("fp-1")
        assert stored_op.status == "executed"
        assert stored_op.calendar_event_id == "cal-1"
        assert event.status == "created"
        assert event.calendar_event_id == "cal-1"

    async def test_outcome_with_stale_status_changes_nothing(self, store: DatabaseStore) -> None:
        operation = await seed_operation(store, status="executed", event_status="created", calendar_event_id="cal-1")

        applied = await store.apply_operation_outcome(
            operation.id, "rejected", "fp-1", "flagged", error="late", expected_status="pending"
        )

        assert not applied
        assert (await store.get_operation(operation.id)).status == "executed"
        assert (await store.get_event_by_fingerprint("fp-1")).status == "created"

    async def test_claim_operation_is_single_winner(self, store: DatabaseStore) -> None:
        operation = await seed_operation(store)

        assert await store.claim_operation(operation.id)
        assert not await store.claim_operation(operation.id)
        assert (await store.get_operation(operation.id)).status == "approved"
        assert (await store.get_event_by_fingerprint("fp-1")).status == "approved"

    async def test_pending_operations_and_lookup(self, store: DatabaseStore) -> None:
        first = await seed_operation(store, fingerprint="fp-1")
        await seed_operation(store, fingerprint="fp-2", status="executed", event_status="created")

        pending = await store.get_pending_operations()
        assert [op.id for op in pending] == [first.id]
        assert (await store.get_operation_for_event("fp-2")).status == "executed"

    async def test_events_by_status(self, store: DatabaseStore) -> None:
        await seed_operation(store, fingerprint="fp-1")
        await seed_operation(store, fingerprint="fp-2", status="executed", event_status="created")

        created = await store.get_events_by_status(["created"])
        assert [e.fingerprint for e in created] == ["fp-2"]
        assert await store.get_events_by_status([]) == []


class TestProcessedMessages:
    """Tests for the idempotency ledger."""

    async def test_insert_is_idempotent(self, store: DatabaseStore) -> None:
        record = ProcessedMessage(message_id="m1", pack_id="school", extraction_status="success", fingerprints=["a"])
        assert await store.insert_processed_message(record)
        assert not await store.insert_processed_message(record)
        assert await store.is_message_processed("m1")

        stored = await store.get_processed_message("m1")
        assert stored.fingerprints == ["a"]

    async def test_unknown_message(self, store: DatabaseStore) -> None:
        assert not await store.is_message_processed("nope")
        assert await store.get_processed_message("nope") is None


class TestDiscovery:
    """Tests for sessions, evidence and pending approvals."""

    async def test_session_lifecycle(self, store: DatabaseStore) -> None:
        session = DiscoverySession(id="s-1", pack_id="school", started_at=utcnow())
        await store.create_discovery_session(session)

        session.status = "completed"
        session.emails_scanned = 3
        session.output = {"stats": {"total_emails_scanned": 3}}
        session.completed_at = utcnow()
        await store.save_discovery_session(session)

        stored = await store.get_discovery_session("s-1")
        assert stored.status == "completed"
        assert stored.output["stats"]["total_emails_scanned"] == 3

    async def test_evidence_snippet_is_truncated(self, store: DatabaseStore) -> None:
        await store.create_discovery_session(DiscoverySession(id="s-1", pack_id="school", started_at=utcnow()))
        await store.insert_evidence(
            Evidence(id="e-1", session_id="s-1", message_id="m-1", relevance_score=0.8, snippet="x" * 5000)
        )

        evidence = await store.get_evidence("s-1")
        assert len(evidence[0].snippet) == 1000


class TestExceptionsAndAudit:
    """Tests for exceptions, audit log, state and stats."""

    async def test_exception_lifecycle(self, store: DatabaseStore) -> None:
        exception_id = await store.record_exception("calendar_error", "boom", severity="high", context={"a": 1})

        unresolved = await store.get_exceptions(resolved=False)
        assert unresolved[0].context == {"a": 1}
        assert await store.resolve_exception(exception_id)
        assert await store.get_exceptions(resolved=False) == []

    async def test_audit_log_filter(self, store: DatabaseStore) -> None:
        await store.log_action("token_issued", details={"token_id": "t"})
        await store.log_action("operation_executed")

        entries = await store.get_audit_log(action="token_issued")
        assert len(entries) == 1
        assert entries[0].details == {"token_id": "t"}

    async def test_state_upsert(self, store: DatabaseStore) -> None:
        assert await store.get_state("last_run_id") is None
        await store.set_state("last_run_id", "r-1")
        await store.set_state("last_run_id", "r-2")
        assert await store.get_state("last_run_id") == "r-2"

    async def test_stats(self, store: DatabaseStore) -> None:
        await seed_operation(store)
        await store.record_exception("other", "x")

        stats = await store.get_stats()
        assert stats["events_by_status"] == {"pending_approval": 1}
        assert stats["pending_operations"] == 1
        assert stats["unresolved_exceptions"] == 1
        assert stats["processed_messages"] == 0


class TestTokens:
    """Tests for approval token persistence."""

    async def test_consume_once(self, store: DatabaseStore) -> None:
        operation = await seed_operation(store)
        now = utcnow()
        await store.insert_approval_token(
            ApprovalToken(id="t-1", operation_id=operation.id, created_at=now, expires_at=now + timedelta(hours=2))
        )

        assert await store.consume_approval_token("t-1", approved=True, now=now)
        assert not await store.consume_approval_token("t-1", approved=True, now=now)
        assert await store.get_token_for_operation(operation.id, now=now) is None
