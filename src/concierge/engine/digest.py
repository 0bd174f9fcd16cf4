"""Plain-text digest of recent agent activity.

Digest items are a closed union with one dataclass per kind; rendering
matches on the kind, and the type checker flags any kind left unhandled.

Usage:
    from concierge.engine.digest import DigestBuilder, render_text

    digest = await DigestBuilder(store).build(since=utcnow() - timedelta(days=7))
    print(render_text(digest))
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, assert_never

from concierge.core.logging import get_logger
from concierge.db.store import utcnow

if TYPE_CHECKING:
    from concierge.db.store import DatabaseStore, PendingApproval, PersistedEvent

logger = get_logger(__name__)


@dataclass(frozen=True)
class EventItem:
    title: str
    start: str
    status: str
    location: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class ForwardedItem:
    source_message_id: str
    forwarded_to: tuple[str, ...]
    reason: str | None
    success: bool


@dataclass(frozen=True)
class DeferredItem:
    """Discovered mail still waiting for a decision."""

    subject: str
    sender: str | None
    person: str | None = None
    obligation_date: str | None = None


@dataclass(frozen=True)
class DismissedItem:
    subject: str
    sender: str | None


DigestItem = EventItem | ForwardedItem | DeferredItem | DismissedItem


@dataclass(frozen=True)
class DigestSection:
    title: str
    items: tuple[DigestItem, ...]


@dataclass(frozen=True)
class Digest:
    since: datetime
    until: datetime
    sections: tuple[DigestSection, ...]
    generated_at: datetime = field(default_factory=utcnow)

    @property
    def total_items(self) -> int:
        return sum(len(s.items) for s in self.sections)


def _event_item(event: PersistedEvent) -> EventItem:
    return EventItem(
        title=event.intent.title,
        start=event.intent.start,
        status=event.status,
        location=event.intent.location,
        error=event.error,
    )


def _approval_item(item: PendingApproval) -> DeferredItem | DismissedItem:
    subject = item.subject or "(no subject)"
    sender = item.from_name or item.from_email
    if item.status == "dismissed":
        return DismissedItem(subject=subject, sender=sender)
    return DeferredItem(
        subject=subject,
        sender=sender,
        person=item.person,
        obligation_date=item.obligation_date,
    )


def render_item(item: DigestItem) -> str:
    match item:
        case EventItem():
            line = f"- {item.title} ({item.start})"
            if item.location:
                line += f" @ {item.location}"
            if item.error:
                line += f" [error: {item.error}]"
            return line
        case ForwardedItem():
            outcome = "forwarded" if item.success else "forward failed"
            line = f"- {item.source_message_id} {outcome} to {', '.join(item.forwarded_to)}"
            return f"{line}: {item.reason}" if item.reason else line
        case DeferredItem():
            line = f"- {item.subject}"
            if item.sender:
                line += f" from {item.sender}"
            if item.person:
                line += f" for {item.person}"
            if item.obligation_date:
                line += f" (due {item.obligation_date})"
            return line
        case DismissedItem():
            return f"- {item.subject}" + (f" from {item.sender}" if item.sender else "")
        case _:
            assert_never(item)


def render_text(digest: Digest) -> str:
    """Plain-text digest; empty sections are left out."""
    lines = [
        f"Family Concierge digest: {digest.since:%Y-%m-%d} to {digest.until:%Y-%m-%d}",
        "",
    ]
    non_empty = [s for s in digest.sections if s.items]
    if not non_empty:
        lines.append("Nothing new.")
    for section in non_empty:
        lines.append(f"{section.title} ({len(section.items)})")
        lines.extend(render_item(item) for item in section.items)
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"


class DigestBuilder:
    """Collects events, forwards and discovered items for a digest window."""

    def __init__(self, store: DatabaseStore):
        self._store = store

    async def build(self, since: datetime, until: datetime | None = None) -> Digest:
        until = until or utcnow()

        created = await self._store.get_events_by_status(["created", "updated"], since=since)
        pending = await self._store.get_events_by_status(["pending_approval", "approved"], since=since)
        failed = await self._store.get_events_by_status(["failed"], since=since)
        forwarded = await self._store.get_forwarded_messages(since=since)
        approvals = await self._store.get_pending_approvals(status=None, since=since)

        waiting = [a for a in approvals if a.status in ("pending", "deferred")]
        dismissed = [a for a in approvals if a.status == "dismissed"]

        sections = (
            DigestSection("Added to calendar", tuple(_event_item(e) for e in created)),
            DigestSection("Waiting for approval", tuple(_event_item(e) for e in pending)),
            DigestSection("Needs attention", tuple(_event_item(e) for e in failed)),
            DigestSection(
                "Forwarded",
                tuple(
                    ForwardedItem(
                        source_message_id=f.source_message_id,
                        forwarded_to=tuple(f.forwarded_to),
                        reason=f.reason,
                        success=f.success,
                    )
                    for f in forwarded
                ),
            ),
            DigestSection("Still to review", tuple(_approval_item(a) for a in waiting)),
            DigestSection("Dismissed", tuple(_approval_item(a) for a in dismissed)),
        )
        digest = Digest(since=since, until=until, sections=sections)
        logger.info("digest_built", items=digest.total_items, since=since.isoformat())
        return digest
