"""Event extraction from message attachments.

ICS attachments are the only structured source: each VEVENT becomes one
candidate event with a confidence score and a provenance record that
explains where the score came from. Natural-language date parsing from
the message body is not attempted, so a message without an ICS file
yields no events.

Usage:
    from concierge.engine.extractor import EventExtractor

    events = EventExtractor().extract_events(message_id, body, attachments, "school")
"""

from __future__ import annotations

import base64
import binascii
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime, timedelta
from typing import Any

from icalendar import Calendar

from concierge.core.logging import get_logger
from concierge.db.store import EventIntent, utcnow
from concierge.engine.fingerprint import generate_fingerprint
from concierge.engine.interfaces import Attachment, MessageBody

logger = get_logger(__name__)

DEFAULT_TITLE = "Untitled Event"

# Confidence factor weights; the score is their weighted average.
ICS_ATTACHMENT_WEIGHT = 0.4
EXPLICIT_TIME_WEIGHT = 0.3
HAS_LOCATION_WEIGHT = 0.1
DATE_IN_FUTURE_WEIGHT = 0.2


@dataclass(frozen=True)
class ConfidenceReason:
    factor: str
    weight: float
    value: bool
    description: str


@dataclass
class ExtractedEvent:
    """One candidate event and how it was found."""

    fingerprint: str
    source_message_id: str
    pack_id: str
    method: str
    confidence: float
    intent: EventIntent
    provenance: dict[str, Any] = field(default_factory=dict)


def confidence_from_reasons(reasons: Sequence[ConfidenceReason]) -> float:
    """Weighted average of boolean factors, capped at 1. No factors scores 0.5."""
    total_weight = sum(r.weight for r in reasons)
    if total_weight <= 0:
        return 0.5
    weighted = sum(r.weight for r in reasons if r.value)
    return round(min(weighted / total_weight, 1.0), 4)


def decode_ics_payload(data: bytes | str) -> str:
    """ICS text from raw or base64-encoded attachment data."""
    raw = data.encode("utf-8") if isinstance(data, str) else data
    if raw.lstrip().upper().startswith(b"BEGIN:VCALENDAR"):
        return raw.decode("utf-8", errors="replace")
    try:
        return base64.b64decode(raw, validate=False).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return raw.decode("utf-8", errors="replace")


def _tz_name(prop: Any) -> str:
    tzid = prop.params.get("TZID") if hasattr(prop, "params") else None
    if tzid:
        return str(tzid)
    value = prop.dt
    if isinstance(value, datetime) and value.tzinfo is not None:
        key = getattr(value.tzinfo, "key", None) or getattr(value.tzinfo, "zone", None)
        if key:
            return str(key)
    return "UTC"


def _iso(value: date | datetime) -> str:
    """Date as ``YYYY-MM-DD``; date-time as wall-clock ``YYYY-MM-DDTHH:MM:SS``."""
    if isinstance(value, datetime):
        return value.replace(tzinfo=None).isoformat(timespec="seconds")
    return value.isoformat()


def _as_utc(value: date | datetime) -> datetime:
    if not isinstance(value, datetime):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class EventExtractor:
    """Turns a message's attachments into candidate events."""

    def __init__(self, now: Callable[[], datetime] = utcnow):
        self._now = now

    def extract_events(
        self,
        message_id: str,
        body: MessageBody,
        attachments: Sequence[Attachment],
        pack_id: str,
        prefer_ics: bool = True,
    ) -> list[ExtractedEvent]:
        """Extract events, ICS first.

        Args:
            message_id: Source message id (part of every fingerprint)
            body: Message body; unused until text extraction exists
            attachments: Decoded attachments
            pack_id: Pack the message was matched under
            prefer_ics: Whether to read ICS attachments

        Returns:
            Candidate events in attachment order; unparseable attachments
            are logged and skipped
        """
        events: list[ExtractedEvent] = []
        if prefer_ics:
            for attachment in attachments:
                if not attachment.is_calendar:
                    continue
                try:
                    events.extend(self._extract_from_ics(message_id, attachment.data, pack_id))
                except (ValueError, KeyError) as e:
                    logger.warning(
                        "ics_parse_failed",
                        message_id=message_id,
                        filename=attachment.filename,
                        error=str(e),
                    )
        return events

    def _extract_from_ics(self, message_id: str, data: bytes, pack_id: str) -> list[ExtractedEvent]:
        calendar = Calendar.from_ical(decode_ics_payload(data))
        now = self._now()
        return [
            self._build_event(message_id, pack_id, component, now)
            for component in calendar.walk("VEVENT")
            if component.get("dtstart") is not None
        ]

    def _build_event(
        self, message_id: str, pack_id: str, component: Any, now: datetime
    ) -> ExtractedEvent:
        dtstart = component.get("dtstart")
        start = dtstart.dt
        all_day = not isinstance(start, datetime)
        tzid = _tz_name(dtstart)

        dtend = component.get("dtend")
        if dtend is not None:
            end = dtend.dt
        elif component.get("duration") is not None:
            end = start + component.get("duration").dt
        else:
            end = start + timedelta(days=1) if all_day else start

        summary = str(component.get("summary") or "").strip()
        description = str(component.get("description") or "").strip() or None
        location = str(component.get("location") or "").strip() or None

        intent = EventIntent(
            title=summary or DEFAULT_TITLE,
            start=_iso(start),
            end=_iso(end),
            all_day=all_day,
            timezone=tzid,
            description=description,
            location=location,
        )

        in_future = _as_utc(start) > now
        reasons = [
            ConfidenceReason(
                "ics_attachment", ICS_ATTACHMENT_WEIGHT, True, "Event extracted from ICS calendar file"
            ),
            ConfidenceReason(
                "explicit_time",
                EXPLICIT_TIME_WEIGHT,
                not all_day,
                "All-day event" if all_day else "Specific time provided",
            ),
            ConfidenceReason(
                "has_location",
                HAS_LOCATION_WEIGHT,
                location is not None,
                f"Location: {location}" if location else "No location specified",
            ),
            ConfidenceReason(
                "date_in_future",
                DATE_IN_FUTURE_WEIGHT,
                in_future,
                "Future event" if in_future else "Past event",
            ),
        ]
        confidence = confidence_from_reasons(reasons)

        assumptions = []
        if location is None:
            assumptions.append("No location specified in ICS")
        assumptions.append("Timezone: UTC (from ICS data)" if tzid == "UTC" else f"Timezone: {tzid}")
        if description is None:
            assumptions.append("No description provided")

        return ExtractedEvent(
            fingerprint=generate_fingerprint(message_id, intent),
            source_message_id=message_id,
            pack_id=pack_id,
            method="ics",
            confidence=confidence,
            intent=intent,
            provenance={
                "method": "ics",
                "confidence": confidence,
                "confidence_reasons": [
                    {"factor": r.factor, "weight": r.weight, "value": r.value, "description": r.description}
                    for r in reasons
                ],
                "assumptions": assumptions,
                "extracted_at": now.isoformat(),
            },
        )


def apply_event_defaults(
    intent: EventIntent,
    reminder_minutes: Sequence[int] = (),
    color: str | None = None,
    duration_minutes: int | None = None,
) -> EventIntent:
    """Fill reminders, color and a zero-length end from pack defaults.

    Values already on the intent win.
    """
    changes: dict[str, Any] = {}
    if reminder_minutes and not intent.reminders:
        changes["reminders"] = list(reminder_minutes)
    if color and not intent.color:
        changes["color"] = color
    if duration_minutes and not intent.all_day and intent.end == intent.start:
        start = datetime.fromisoformat(intent.start)
        changes["end"] = _iso(start + timedelta(minutes=duration_minutes))
    return replace(intent, **changes) if changes else intent
