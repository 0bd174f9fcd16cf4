"""Calendar operation state machine and executor.

The decision and transition functions are pure. OperationExecutor is the
only place a calendar write happens; it writes the operation status and
the coupled event status in one store call and then notifies observers.
Audit logging is one such observer, so a broken audit sink never changes
an outcome.

Human approvals claim the operation (pending -> approved) with a
conditional UPDATE before the calendar call, so two approvals of the same
operation produce one write.

Transitions:
    pending  -> approved | rejected | executed | failed
    approved -> executed | failed
    rejected, executed, failed: terminal

Usage:
    from concierge.engine.operations import OperationExecutor, plan_operation

    plan = plan_operation(0.92, "autopilot", config.confidence)
    executor = OperationExecutor(calendar, store, calendar_id="primary")
    executed = await executor.execute(operation)
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Protocol

from concierge.core.errors import CalendarWriteError, InvalidTransitionError, UnsupportedOperationError
from concierge.core.logging import get_logger
from concierge.core.timeout import DEFAULT_TIMEOUT_SECONDS, with_timeout

if TYPE_CHECKING:
    from concierge.config_schema import AgentMode, ConfidenceThresholds
    from concierge.db.store import (
        CalendarOperation,
        DatabaseStore,
        EventStatus,
        OperationStatus,
        OperationType,
    )
    from concierge.engine.interfaces import CalendarSink

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"approved", "rejected", "executed", "failed"}),
    "approved": frozenset({"executed", "failed"}),
    "rejected": frozenset(),
    "executed": frozenset(),
    "failed": frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)


# ---------------------------------------------------------------------------
# Pure decisions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OperationPlan:
    """What to do with a freshly extracted event.

    Attributes:
        requires_approval: A human must approve before any write
        execute_now: Write to the calendar during this run
        initial_event_status: Status the event row starts in
        reason: Stored on the operation row
    """

    requires_approval: bool
    execute_now: bool
    initial_event_status: EventStatus
    reason: str


def plan_operation(
    confidence: float,
    mode: AgentMode,
    thresholds: ConfidenceThresholds,
    operation_type: OperationType = "create",
) -> OperationPlan:
    """Decide approval and execution for a new operation.

    Review is required below ``require_review_below`` or in copilot mode.
    Only autopilot executes, and only at or above the auto threshold for
    the operation type. Dry-run never executes.
    """
    below_review = confidence < thresholds.require_review_below
    requires_approval = below_review or mode == "copilot"
    auto_threshold = thresholds.auto_update if operation_type == "update" else thresholds.auto_create
    confident = confidence >= auto_threshold

    return OperationPlan(
        requires_approval=requires_approval,
        execute_now=mode == "autopilot" and confident and not requires_approval,
        initial_event_status="approved" if confident and not below_review else "pending_approval",
        reason=f"Extracted from email (confidence: {confidence:.2f})",
    )


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(current: OperationStatus, target: OperationStatus) -> OperationStatus:
    """Validate an operation status change.

    Raises:
        InvalidTransitionError: If the move is not allowed
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)
    return target


def coupled_event_status(
    operation_status: OperationStatus, operation_type: OperationType = "create"
) -> EventStatus:
    """Event status implied by an operation status."""
    if operation_status == "executed":
        return "updated" if operation_type == "update" else "created"
    if operation_status == "failed":
        return "failed"
    if operation_status == "rejected":
        return "flagged"
    if operation_status == "approved":
        return "approved"
    return "pending_approval"


# ---------------------------------------------------------------------------
# Observers
# ---------------------------------------------------------------------------


class OperationObserver(Protocol):
    """Notified after an operation outcome has been committed."""

    async def on_transition(
        self,
        operation: CalendarOperation,
        previous_status: OperationStatus,
        event_status: EventStatus,
        triggered_by: str,
    ) -> None: ...


class AuditLogObserver:
    """Writes one audit_log row per committed transition."""

    def __init__(self, store: DatabaseStore):
        self._store = store

    async def on_transition(
        self,
        operation: CalendarOperation,
        previous_status: OperationStatus,
        event_status: EventStatus,
        triggered_by: str,
    ) -> None:
        details: dict[str, Any] = {
            "operation_id": operation.id,
            "type": operation.type,
            "from": previous_status,
            "to": operation.status,
            "event_status": event_status,
        }
        if operation.calendar_event_id:
            details["calendar_event_id"] = operation.calendar_event_id
        if operation.error:
            details["error"] = operation.error
        await self._store.log_action(
            action=f"operation_{operation.status}",
            event_fingerprint=operation.event_fingerprint,
            details=details,
            triggered_by=triggered_by,
        )


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


def _require_dispatchable(operation: CalendarOperation) -> None:
    if operation.type not in ("create", "update"):
        raise UnsupportedOperationError(f"Unsupported operation type: {operation.type}")


class OperationExecutor:
    """Performs calendar writes and records coupled outcomes.

    Attributes:
        calendar_id: Target calendar for every write
    """

    def __init__(
        self,
        calendar: CalendarSink,
        store: DatabaseStore,
        calendar_id: str = "primary",
        observers: Sequence[OperationObserver] | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self._calendar = calendar
        self._store = store
        self.calendar_id = calendar_id
        self._observers = list(observers) if observers is not None else [AuditLogObserver(store)]
        self._timeout = timeout

    async def execute(
        self,
        operation: CalendarOperation,
        calendar_event_id: str | None = None,
        triggered_by: str = "agent",
    ) -> CalendarOperation:
        """Execute a pending or approved operation against the calendar.

        Args:
            operation: Operation to execute
            calendar_event_id: Existing remote id, required for updates
            triggered_by: Recorded in the audit trail

        Returns:
            The operation as committed (status ``executed``)

        Raises:
            InvalidTransitionError: If the operation is already terminal
            UnsupportedOperationError: For types other than create/update
            CalendarWriteError: If the calendar write failed; both rows
                are ``failed`` with the error recorded
        """
        transition(operation.status, "executed")
        _require_dispatchable(operation)

        existing_id = calendar_event_id or operation.calendar_event_id
        try:
            if operation.type == "create":
                remote = await with_timeout(
                    f"create_event {operation.id}",
                    self._calendar.create_event,
                    self.calendar_id,
                    operation.intent,
                    timeout=self._timeout,
                )
            else:
                if not existing_id:
                    raise CalendarWriteError(
                        "Cannot update event: no calendar event id", operation.id
                    )
                remote = await with_timeout(
                    f"update_event {operation.id}",
                    self._calendar.update_event,
                    self.calendar_id,
                    existing_id,
                    operation.intent,
                    timeout=self._timeout,
                )
        except Exception as e:
            logger.error(
                "operation_execution_failed",
                operation_id=operation.id,
                type=operation.type,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._commit(operation, "failed", error=str(e), triggered_by=triggered_by)
            if isinstance(e, CalendarWriteError):
                raise
            raise CalendarWriteError(str(e), operation.id) from e

        remote_id = (remote or {}).get("id") or existing_id
        executed = await self._commit(
            operation, "executed", calendar_event_id=remote_id, triggered_by=triggered_by
        )
        logger.info(
            "operation_executed",
            operation_id=operation.id,
            type=operation.type,
            calendar_event_id=remote_id,
        )
        return executed

    async def reject(
        self, operation: CalendarOperation, reason: str, triggered_by: str = "user"
    ) -> CalendarOperation:
        """Reject a pending operation; its event becomes ``flagged``.

        Raises:
            InvalidTransitionError: If the operation is not pending
        """
        transition(operation.status, "rejected")
        rejected = await self._commit(operation, "rejected", error=reason, triggered_by=triggered_by)
        logger.info("operation_rejected", operation_id=operation.id, reason=reason)
        return rejected

    async def claim(
        self, operation: CalendarOperation, triggered_by: str = "user"
    ) -> CalendarOperation | None:
        """Move a pending operation to ``approved`` before executing it.

        Returns:
            The operation in ``approved`` status, or None when another
            caller claimed it first

        Raises:
            InvalidTransitionError: If the operation is no longer pending
            UnsupportedOperationError: For types other than create/update
        """
        transition(operation.status, "approved")
        _require_dispatchable(operation)
        if not await self._store.claim_operation(operation.id):
            logger.warning("operation_claim_lost", operation_id=operation.id)
            return None
        claimed = replace(operation, status="approved")
        await self._notify(claimed, operation.status, coupled_event_status("approved"), triggered_by)
        return claimed

    async def _commit(
        self,
        operation: CalendarOperation,
        status: OperationStatus,
        calendar_event_id: str | None = None,
        error: str | None = None,
        triggered_by: str = "agent",
    ) -> CalendarOperation:
        event_status = coupled_event_status(status, operation.type)
        applied = await self._store.apply_operation_outcome(
            operation.id,
            status,
            operation.event_fingerprint,
            event_status,
            calendar_event_id=calendar_event_id,
            error=error,
            expected_status=operation.status,
        )
        if not applied:
            # Someone else moved the row since it was read.
            logger.warning("operation_changed_concurrently", operation_id=operation.id, target=status)
            raise InvalidTransitionError(operation.status, status)
        committed = replace(
            operation,
            status=status,
            calendar_event_id=calendar_event_id or operation.calendar_event_id,
            error=error,
        )
        await self._notify(committed, operation.status, event_status, triggered_by)
        return committed

    async def _notify(
        self,
        operation: CalendarOperation,
        previous_status: OperationStatus,
        event_status: EventStatus,
        triggered_by: str,
    ) -> None:
        for observer in self._observers:
            try:
                await observer.on_transition(operation, previous_status, event_status, triggered_by)
            except Exception as e:
                logger.warning(
                    "operation_observer_failed",
                    observer=type(observer).__name__,
                    operation_id=operation.id,
                    error=str(e),
                )
