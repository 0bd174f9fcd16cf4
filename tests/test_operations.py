"""Tests for the calendar operation state machine and executor."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from factories import seed_operation

from concierge.config_schema import ConfidenceThresholds
from concierge.core.errors import CalendarWriteError, InvalidTransitionError, UnsupportedOperationError
from concierge.db.store import DatabaseStore
from concierge.engine.operations import (
    TERMINAL_STATUSES,
    OperationExecutor,
    can_transition,
    coupled_event_status,
    plan_operation,
    transition,
)

THRESHOLDS = ConfidenceThresholds()

# ---------------------------------------------------------------------------
# plan_operation
# ---------------------------------------------------------------------------


def test_autopilot_executes_confident_create():
    plan = plan_operation(0.92, "autopilot", THRESHOLDS)
    assert plan.execute_now
    assert not plan.requires_approval
    assert plan.initial_event_status == "approved"
    assert plan.reason == "Extracted from email (confidence: 0.92)"


def test_copilot_always_requires_approval():
    plan = plan_operation(0.99, "copilot", THRESHOLDS)
    assert plan.requires_approval
    assert not plan.execute_now
    assert plan.initial_event_status == "approved"


def test_dry_run_never_executes():
    plan = plan_operation(0.99, "dry-run", THRESHOLDS)
    assert not plan.execute_now
    assert not plan.requires_approval


def test_low_confidence_requires_approval_in_any_mode():
    for mode in ("autopilot", "copilot", "dry-run"):
        plan = plan_operation(0.3, mode, THRESHOLDS)
        assert plan.requires_approval
        assert not plan.execute_now
        assert plan.initial_event_status == "pending_approval"


def test_update_uses_stricter_threshold():
    assert plan_operation(0.87, "autopilot", THRESHOLDS, "create").execute_now
    assert not plan_operation(0.87, "autopilot", THRESHOLDS, "update").execute_now


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def test_allowed_transitions():
    assert can_transition("pending", "approved")
    assert can_transition("pending", "executed")
    assert can_transition("approved", "failed")
    assert not can_transition("approved", "rejected")
    assert not can_transition("executed", "failed")


def test_terminal_statuses():
    assert TERMINAL_STATUSES == {"rejected", "executed", "failed"}


def test_transition_raises_on_invalid_move():
    assert transition("pending", "rejected") == "rejected"
    with pytest.raises(InvalidTransitionError):
        transition("rejected", "executed")


def test_coupled_event_status():
    assert coupled_event_status("executed") == "created"
    assert coupled_event_status("executed", "update") == "updated"
    assert coupled_event_status("failed") == "failed"
    assert coupled_event_status("rejected") == "flagged"
    assert coupled_event_status("approved") == "approved"
    assert coupled_event_status("pending") == "pending_approval"


# ---------------------------------------------------------------------------
# OperationExecutor
# ---------------------------------------------------------------------------


async def test_execute_create_couples_event(store: DatabaseStore, mock_calendar: MagicMock):
    operation = await seed_operation(store)
    executor = OperationExecutor(mock_calendar, store, calendar_id="family")

    executed = await executor.execute(operation)

    assert executed.status == "executed"
    assert executed.calendar_event_id == "cal-1"
    mock_calendar.create_event.assert_called_once_with("family", operation.intent)

    stored_op = await store.get_operation(operation.id)
    event = await store.get_event_by_fingerprint("fp-1")
    assert stored_op.status == "executed"
    assert stored_op.executed_at is not None
    assert event.status == "created"
    assert event.calendar_event_id == "cal-1"
    assert event.last_synced_at is not None


async def test_execute_update_uses_existing_id(store: DatabaseStore, mock_calendar: MagicMock):
    operation = await seed_operation(store, op_type="update", calendar_event_id="remote-7")
    executor = OperationExecutor(mock_calendar, store)

    executed = await executor.execute(operation)

    mock_calendar.update_event.assert_called_once_with("primary", "remote-7", operation.intent)
    assert executed.calendar_event_id == "remote-7"
    event = await store.get_event_by_fingerprint("fp-1")
    assert event.status == "updated"


async def test_update_without_remote_id_fails_both_rows(store: DatabaseStore, mock_calendar: MagicMock):
    operation = await seed_operation(store, op_type="update")
    executor = OperationExecutor(mock_calendar, store)

    with pytest.raises(CalendarWriteError):
        await executor.execute(operation)

    mock_calendar.update_event.assert_not_called()
    assert (await store.get_operation(operation.id)).status == "failed"
    assert (await store.get_event_by_fingerprint("fp-1")).status == "failed"


async def test_calendar_failure_records_error_on_both_rows(store: DatabaseStore, mock_calendar: MagicMock):
    mock_calendar.create_event.side_effect = RuntimeError("quota exceeded")
    operation = await seed_operation(store)
    executor = OperationExecutor(mock_calendar, store)

    with pytest.raises(CalendarWriteError, match="quota exceeded"):
        await executor.execute(operation)

    stored_op = await store.get_operation(operation.id)
    event = await store.get_event_by_fingerprint("fp-1")
    assert stored_op.status == "failed"
    assert stored_op.error == "quota exceeded"
    assert event.status == "failed"
    assert event.error == "quota exceeded"


async def test_unsupported_type_raises_before_any_change(store: DatabaseStore, mock_calendar: MagicMock):
    operation = await seed_operation(store, op_type="flag")
    executor = OperationExecutor(mock_calendar, store)

    with pytest.raises(UnsupportedOperationError):
        await executor.execute(operation)

    assert (await store.get_operation(operation.id)).status == "pending"
    assert (await store.get_event_by_fingerprint("fp-1")).status == "pending_approval"


async def test_terminal_operation_cannot_execute(store: DatabaseStore, mock_calendar: MagicMock):
    operation = await seed_operation(store, status="rejected", event_status="flagged")
    executor = OperationExecutor(mock_calendar, store)

    with pytest.raises(InvalidTransitionError):
        await executor.execute(operation)
    mock_calendar.create_event.assert_not_called()


async def test_reject_flags_event(store: DatabaseStore, mock_calendar: MagicMock):
    operation = await seed_operation(store)
    executor = OperationExecutor(mock_calendar, store)

    rejected = await executor.reject(operation, "Not our class")

    assert rejected.status == "rejected"
    assert (await store.get_event_by_fingerprint("fp-1")).status == "flagged"
    assert (await store.get_operation(operation.id)).error == "Not our class"


async def test_audit_entry_written_per_transition(store: DatabaseStore, mock_calendar: MagicMock):
    operation = await seed_operation(store)
    executor = OperationExecutor(mock_calendar, store)

    await executor.execute(operation, triggered_by="user")

    entries = await store.get_audit_log(action="operation_executed")
    assert len(entries) == 1
    assert entries[0].details["from"] == "pending"
    assert entries[0].details["calendar_event_id"] == "cal-1"
    assert entries[0].triggered_by == "user"


async def test_failing_observer_does_not_change_outcome(store: DatabaseStore, mock_calendar: MagicMock):
    observer = MagicMock()
    observer.on_transition = AsyncMock(side_effect=RuntimeError("audit sink down"))
    operation = await seed_operation(store)
    executor = OperationExecutor(mock_calendar, store, observers=[observer])

    executed = await executor.execute(operation)

    assert executed.status == "executed"
    observer.on_transition.assert_awaited_once()
    assert (await store.get_event_by_fingerprint("fp-1")).status == "created"


async def test_claim_admits_one_caller(store: DatabaseStore, mock_calendar: MagicMock):
    operation = await seed_operation(store)
    executor = OperationExecutor(mock_calendar, store)

    claimed = await executor.claim(operation)
    again = await executor.claim(operation)

    assert claimed.status == "approved"
    assert again is None
    assert (await store.get_operation(operation.id)).status == "approved"
    assert (await store.get_event_by_fingerprint("fp-1")).status == "approved"
    assert len(await store.get_audit_log(action="operation_approved")) == 1


async def test_stale_operation_cannot_overwrite_outcome(store: DatabaseStore, mock_calendar: MagicMock):
    operation = await seed_operation(store)
    executor = OperationExecutor(mock_calendar, store)
    await executor.execute(operation)

    with pytest.raises(InvalidTransitionError):
        await executor.reject(operation, "Not our class")

    assert (await store.get_operation(operation.id)).status == "executed"
    assert (await store.get_event_by_fingerprint("fp-1")).status == "created"
