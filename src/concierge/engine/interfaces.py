"""Collaborator contracts consumed by discovery and the production pipeline.

The core never talks to a mail or calendar provider directly. It sees a
MailSource and a CalendarSink; the Graph implementations live in
concierge.graph and tests pass in mocks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Protocol

from concierge.db.store import EventIntent


@dataclass(frozen=True)
class MailQuery:
    """Provider-neutral mail search.

    Each non-empty list is OR-ed internally; the groups are AND-ed.
    """

    received_after: date
    from_domains: tuple[str, ...] = ()
    from_addresses: tuple[str, ...] = ()
    keywords: tuple[str, ...] = ()

    def describe(self) -> str:
        """Human-readable form used in logs."""
        parts = [f"after:{self.received_after.year}/{self.received_after.month}/{self.received_after.day}"]
        if self.from_domains:
            parts.append("(" + " OR ".join(f"from:*@{d}" for d in self.from_domains) + ")")
        if self.from_addresses:
            parts.append("(" + " OR ".join(f"from:{a}" for a in self.from_addresses) + ")")
        if self.keywords:
            parts.append("(" + " OR ".join(f'"{k}"' for k in self.keywords) + ")")
        return " ".join(parts)


@dataclass(frozen=True)
class Attachment:
    """A decoded message attachment."""

    filename: str
    mime_type: str
    data: bytes

    @property
    def is_calendar(self) -> bool:
        """ICS by MIME type (parameters allowed) or by .ics filename."""
        return self.mime_type.lower().startswith("text/calendar") or self.filename.lower().endswith(
            ".ics"
        )


@dataclass(frozen=True)
class MessageBody:
    text: str | None = None
    html: str | None = None


@dataclass
class MailMessage:
    """A fetched message with the headers the core reads."""

    id: str
    headers: dict[str, str] = field(default_factory=dict)
    snippet: str = ""
    body: MessageBody = field(default_factory=MessageBody)
    has_attachments: bool = False

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


class MailSource(Protocol):
    """Read side of the mailbox.

    ``get_message`` returns None (never raises) for a message that no
    longer exists.
    """

    def list_message_ids(self, query: MailQuery, max_results: int) -> list[str]: ...

    def get_message(self, message_id: str) -> MailMessage | None: ...

    def get_attachments(self, message: MailMessage) -> list[Attachment]: ...

    def forward_message(
        self, message_id: str, to: list[str], comment: str | None = None
    ) -> None: ...

    def add_label(self, message_id: str, label: str) -> None: ...


class CalendarSink(Protocol):
    """Write side of the calendar. ``get_event`` maps 404 to None."""

    def create_event(self, calendar_id: str, intent: EventIntent) -> dict[str, Any]: ...

    def update_event(
        self, calendar_id: str, event_id: str, intent: EventIntent
    ) -> dict[str, Any]: ...

    def get_event(self, calendar_id: str, event_id: str) -> dict[str, Any] | None: ...


@dataclass(frozen=True)
class ClassificationFields:
    """What the obligation classifier sees of a message."""

    subject: str
    snippet: str
    from_email: str
    from_name: str | None = None
    body_text: str | None = None


@dataclass(frozen=True)
class ObligationClassification:
    """Obligation-vs-announcement verdict with an optional due date."""

    item_type: str
    obligation_date: str | None
    confidence: float
    reasoning: str

    @classmethod
    def neutral(cls, reasoning: str = "No AI classifier available") -> ObligationClassification:
        return cls(
            item_type="announcement",
            obligation_date=None,
            confidence=0.5,
            reasoning=reasoning,
        )


class EmailClassifier(Protocol):
    """Optional AI classifier. Implementations must not raise."""

    async def classify(self, fields: ClassificationFields) -> ObligationClassification: ...
