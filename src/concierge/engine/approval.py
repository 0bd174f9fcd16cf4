"""Approval tokens: single-use, time-limited capabilities for one operation.

A token is issued for a pending calendar operation and consumed exactly
once, by either an approval (which executes the operation) or a
rejection. Consumption is a single conditional UPDATE in the store, and
the operation itself is claimed the same way before the calendar call,
so two concurrent approvals (even with different tokens) cannot both
execute.

Every outcome, including token errors and calendar failures, comes back
as an ApprovalResult rather than an exception, so the CLI and the API
can render a clean message.

Usage:
    from concierge.engine.approval import ApprovalHandler

    handler = ApprovalHandler(store, executor)
    token = await handler.issue(operation.id)
    result = await handler.approve_and_execute(token.id)
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Literal

from concierge.core.errors import ConciergeError, InvalidTransitionError, OperationTimeoutError
from concierge.core.logging import get_logger
from concierge.db.store import ApprovalToken, utcnow

if TYPE_CHECKING:
    from concierge.db.store import CalendarOperation, DatabaseStore
    from concierge.engine.operations import OperationExecutor

logger = get_logger(__name__)

TOKEN_TTL = timedelta(hours=2)

TOKEN_NOT_FOUND = "Token not found"
TOKEN_USED = "Token has already been used"
TOKEN_EXPIRED = "Token has expired"
OPERATION_NOT_FOUND = "Calendar operation not found"
EVENT_NOT_FOUND = "Event not found"
DEFAULT_REJECT_REASON = "User rejected"

FailureKind = Literal["token", "conflict", "not_found", "execution"]


@dataclass(frozen=True)
class ApprovalResult:
    """Outcome of an approve or reject request.

    Attributes:
        success: Whether the requested transition happened
        message: Human-readable outcome
        calendar_event_id: Remote event id after a successful approval
        error: Error text on failure
        failure: Which stage failed (token, conflict, not_found, execution)
    """

    success: bool
    message: str
    calendar_event_id: str | None = None
    error: str | None = None
    failure: FailureKind | None = None

    @classmethod
    def failed(cls, message: str, failure: FailureKind, error: str | None = None) -> ApprovalResult:
        return cls(success=False, message=message, error=error or message, failure=failure)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ApprovalLinks:
    approve_url: str
    reject_url: str


def approval_links(token: ApprovalToken, base_url: str) -> ApprovalLinks:
    """Approve/reject URLs for a token under the web API."""
    base = base_url.rstrip("/")
    return ApprovalLinks(
        approve_url=f"{base}/api/approvals/{token.id}/approve",
        reject_url=f"{base}/api/approvals/{token.id}/reject",
    )


class ApprovalHandler:
    """Issues and redeems approval tokens."""

    def __init__(
        self,
        store: DatabaseStore,
        executor: OperationExecutor,
        now: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._executor = executor
        self._now = now

    async def issue(self, operation_id: str) -> ApprovalToken:
        """Issue a token valid for two hours.

        An operation has at most one live token; asking again returns it.
        """
        live = await self._store.get_token_for_operation(operation_id, now=self._now())
        if live is not None:
            logger.info("approval_token_reused", token_id=live.id, operation_id=operation_id)
            return live

        created = self._now()
        token = ApprovalToken(
            id=str(uuid.uuid4()),
            operation_id=operation_id,
            created_at=created,
            expires_at=created + TOKEN_TTL,
        )
        await self._store.insert_approval_token(token)
        await self._store.log_action(
            "token_issued",
            details={"token_id": token.id, "operation_id": operation_id},
            triggered_by="user",
        )
        logger.info("approval_token_issued", token_id=token.id, operation_id=operation_id)
        return token

    async def validate(self, token_id: str) -> str | None:
        """None when the token is usable, otherwise the reason it is not."""
        return self._check(await self._store.get_approval_token(token_id))

    def _check(self, token: ApprovalToken | None) -> str | None:
        if token is None:
            return TOKEN_NOT_FOUND
        if token.used:
            return TOKEN_USED
        if self._now() > token.expires_at:
            return TOKEN_EXPIRED
        return None

    async def _consume(self, token_id: str, approved: bool) -> ApprovalResult | ApprovalToken:
        """Validate and atomically consume; a failure comes back as a result."""
        token = await self._store.get_approval_token(token_id)
        reason = self._check(token)
        if reason is None and not await self._store.consume_approval_token(
            token_id, approved=approved, now=self._now()
        ):
            # Lost a race with another consumer (or expired in between).
            reason = TOKEN_USED
        if reason is not None or token is None:
            logger.warning("approval_token_rejected", token_id=token_id, reason=reason)
            return ApprovalResult.failed(reason or TOKEN_NOT_FOUND, "token")
        return token

    async def approve_and_execute(self, token_id: str) -> ApprovalResult:
        """Consume the token and execute its operation.

        Returns:
            ApprovalResult; a calendar failure leaves the operation and its
            event ``failed`` and is reported with ``success=False``
        """
        consumed = await self._consume(token_id, approved=True)
        if isinstance(consumed, ApprovalResult):
            return consumed

        operation = await self._store.get_operation(consumed.operation_id)
        if operation is None:
            logger.error("approval_operation_not_found", operation_id=consumed.operation_id)
            return ApprovalResult.failed(OPERATION_NOT_FOUND, "not_found")

        event = await self._store.get_event_by_fingerprint(operation.event_fingerprint)
        if event is None:
            logger.error("approval_event_not_found", fingerprint=operation.event_fingerprint)
            return ApprovalResult.failed(EVENT_NOT_FOUND, "not_found")

        try:
            claimed = await self._executor.claim(operation)
            if claimed is None:
                return await self._conflict(operation)
            executed = await self._executor.execute(
                claimed, calendar_event_id=event.calendar_event_id, triggered_by="user"
            )
        except InvalidTransitionError:
            return await self._conflict(operation)
        except ConciergeError as e:
            logger.error("approval_execution_failed", operation_id=operation.id, error=str(e))
            context: dict[str, Any] = {
                "token_id": token_id,
                "operation_id": operation.id,
                "fingerprint": operation.event_fingerprint,
                "pack_id": event.pack_id,
            }
            if isinstance(e.__cause__, OperationTimeoutError):
                context["timeout"] = True
            await self._store.record_exception("calendar_error", str(e), severity="high", context=context)
            return ApprovalResult.failed(f"Failed to create event: {e}", "execution", error=str(e))

        logger.info(
            "approval_executed",
            token_id=token_id,
            operation_id=operation.id,
            calendar_event_id=executed.calendar_event_id,
        )
        return ApprovalResult(
            success=True,
            message=f'Event "{event.intent.title}" has been added to your calendar',
            calendar_event_id=executed.calendar_event_id,
        )

    async def reject(self, token_id: str, reason: str | None = None) -> ApprovalResult:
        """Consume the token; the operation becomes ``rejected``, its event ``flagged``."""
        consumed = await self._consume(token_id, approved=False)
        if isinstance(consumed, ApprovalResult):
            return consumed

        operation = await self._store.get_operation(consumed.operation_id)
        if operation is None:
            logger.error("approval_operation_not_found", operation_id=consumed.operation_id)
            return ApprovalResult.failed(OPERATION_NOT_FOUND, "not_found")

        try:
            await self._executor.reject(operation, reason or DEFAULT_REJECT_REASON)
        except InvalidTransitionError:
            return await self._conflict(operation)
        except ConciergeError as e:
            logger.error("rejection_failed", operation_id=operation.id, error=str(e))
            return ApprovalResult.failed(f"Failed to reject event: {e}", "execution", error=str(e))

        return ApprovalResult(success=True, message="Event has been rejected")

    async def _conflict(self, operation: CalendarOperation) -> ApprovalResult:
        """Result for an operation another caller already moved on."""
        latest = await self._store.get_operation(operation.id) or operation
        logger.warning("approval_operation_not_pending", operation_id=operation.id, status=latest.status)
        return ApprovalResult.failed(f"Operation is already {latest.status}", "conflict")

    async def get_token_for_operation(self, operation_id: str) -> ApprovalToken | None:
        return await self._store.get_token_for_operation(operation_id, now=self._now())

    async def cleanup_expired_tokens(self) -> int:
        count = await self._store.cleanup_expired_tokens(now=self._now())
        if count:
            logger.info("expired_tokens_cleaned", count=count)
        return count
