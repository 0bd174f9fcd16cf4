"""Manual-edit reconciliation.

Compares events the agent put on the calendar with what the calendar
holds now. A difference means someone edited the event by hand; it is
recorded as a manual_edit_flags row and the event is marked
``manually_edited``. Reconciliation never changes operation state.

Policy:
- respect_manual: record the drift, keep the hand edit
- flag_conflict: also raise a low-severity exception for review

The CalendarSink returns remote events as flat dicts with ``title``,
``start``, ``end``, ``location`` and ``description`` keys.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from concierge.core.errors import ConciergeError, OperationTimeoutError
from concierge.core.logging import get_logger
from concierge.core.timeout import DEFAULT_TIMEOUT_SECONDS, with_timeout
from concierge.db.store import ManualEditFlag, utcnow

if TYPE_CHECKING:
    from concierge.config_schema import ReconciliationPolicy
    from concierge.db.store import DatabaseStore, EventIntent, PersistedEvent
    from concierge.engine.interfaces import CalendarSink

logger = get_logger(__name__)

COMPARED_FIELDS = ("title", "start", "end", "location", "description")
_TIME_FIELDS = frozenset({"start", "end"})


@dataclass(frozen=True)
class FieldDiff:
    before: Any
    after: Any


@dataclass
class ReconcileResult:
    checked: int = 0
    flagged: int = 0
    errors: int = 0


def _normalize(field_name: str, value: Any) -> Any:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if field_name in _TIME_FIELDS:
        # Providers add seconds, fractions or offsets; minutes are enough.
        return text[:16]
    return text


def detect_manual_edits(intent: EventIntent, remote: dict[str, Any]) -> dict[str, FieldDiff] | None:
    """Fields whose remote value differs from the stored intent, or None."""
    stored = intent.to_dict()
    changes = {}
    for name in COMPARED_FIELDS:
        before = stored.get(name)
        after = remote.get(name)
        if _normalize(name, before) != _normalize(name, after):
            changes[name] = FieldDiff(before=before, after=after)
    return changes or None


class Reconciler:
    """Checks created events for drift against the calendar."""

    def __init__(
        self,
        calendar: CalendarSink,
        store: DatabaseStore,
        calendar_id: str = "primary",
        policy: ReconciliationPolicy = "respect_manual",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self._calendar = calendar
        self._store = store
        self._calendar_id = calendar_id
        self._policy = policy
        self._timeout = timeout

    async def reconcile_event(self, event: PersistedEvent) -> ManualEditFlag | None:
        """Check one event; returns the recorded flag when drift was found."""
        if not event.calendar_event_id:
            return None

        remote = await with_timeout(
            f"get_event {event.calendar_event_id}",
            self._calendar.get_event,
            self._calendar_id,
            event.calendar_event_id,
            timeout=self._timeout,
        )
        if remote is None:
            logger.warning(
                "calendar_event_missing",
                fingerprint=event.fingerprint,
                calendar_event_id=event.calendar_event_id,
            )
            return None

        changes = detect_manual_edits(event.intent, remote)
        if changes is None:
            return None

        flag = ManualEditFlag(
            id=str(uuid.uuid4()),
            event_fingerprint=event.fingerprint,
            calendar_event_id=event.calendar_event_id,
            detected_at=utcnow(),
            changes={name: asdict(diff) for name, diff in changes.items()},
            policy=self._policy,
        )
        await self._store.insert_manual_edit_flag(flag)
        await self._store.mark_event_manually_edited(event.fingerprint)
        await self._store.log_action(
            "manual_edit_detected",
            message_id=event.source_message_id,
            event_fingerprint=event.fingerprint,
            details={"fields": sorted(changes), "policy": self._policy},
        )

        if self._policy == "flag_conflict":
            await self._store.record_exception(
                "other",
                f"Calendar event '{event.intent.title}' was edited manually",
                severity="low",
                context={
                    "fingerprint": event.fingerprint,
                    "calendar_event_id": event.calendar_event_id,
                    "fields": sorted(changes),
                },
            )

        logger.info(
            "manual_edit_detected",
            fingerprint=event.fingerprint,
            fields=sorted(changes),
            policy=self._policy,
        )
        return flag

    async def run(self) -> ReconcileResult:
        """Reconcile every created or updated event not already flagged."""
        result = ReconcileResult()
        events = await self._store.get_events_by_status(["created", "updated"])
        for event in events:
            if event.manually_edited or not event.calendar_event_id:
                continue
            result.checked += 1
            try:
                flag = await self.reconcile_event(event)
            except ConciergeError as e:
                result.errors += 1
                logger.warning("reconcile_event_failed", fingerprint=event.fingerprint, error=str(e))
                context: dict[str, Any] = {
                    "fingerprint": event.fingerprint,
                    "calendar_event_id": event.calendar_event_id,
                    "pack_id": event.pack_id,
                }
                if isinstance(e, OperationTimeoutError):
                    context["timeout"] = True
                await self._store.record_exception("calendar_error", str(e), severity="low", context=context)
                continue
            if flag is not None:
                result.flagged += 1

        logger.info(
            "reconcile_complete",
            checked=result.checked,
            flagged=result.flagged,
            errors=result.errors,
        )
        return result
