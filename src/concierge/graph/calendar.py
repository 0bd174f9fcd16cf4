"""Outlook calendar as a CalendarSink.

Remote events come back as flat dicts with ``id``, ``title``, ``start``,
``end``, ``location`` and ``description`` so reconciliation can compare
them with stored intents. Times are read in the configured timezone and
bodies as plain text.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import TYPE_CHECKING, Any

from concierge.core.errors import GraphAPIError
from concierge.core.logging import get_logger

if TYPE_CHECKING:
    from concierge.db.store import EventIntent
    from concierge.graph.client import GraphClient

logger = get_logger(__name__)

PRIMARY_CALENDAR = "primary"
EVENT_FIELDS = "id,subject,start,end,isAllDay,location,body,webLink"


def _events_endpoint(calendar_id: str) -> str:
    if calendar_id == PRIMARY_CALENDAR:
        return "/me/events"
    return f"/me/calendars/{calendar_id}/events"


def _all_day_bounds(intent: EventIntent) -> tuple[str, str]:
    start = date.fromisoformat(intent.start[:10])
    end = date.fromisoformat(intent.end[:10])
    if end <= start:
        end = start + timedelta(days=1)
    return f"{start.isoformat()}T00:00:00", f"{end.isoformat()}T00:00:00"


def event_payload(intent: EventIntent) -> dict[str, Any]:
    """Graph event resource for an intent."""
    if intent.all_day:
        start, end = _all_day_bounds(intent)
    else:
        start, end = intent.start, intent.end

    payload: dict[str, Any] = {
        "subject": intent.title,
        "start": {"dateTime": start, "timeZone": intent.timezone},
        "end": {"dateTime": end, "timeZone": intent.timezone},
        "isAllDay": intent.all_day,
    }
    if intent.description:
        payload["body"] = {"contentType": "text", "content": intent.description}
    if intent.location:
        payload["location"] = {"displayName": intent.location}
    if intent.guests:
        payload["attendees"] = [
            {"emailAddress": {"address": guest}, "type": "optional"} for guest in intent.guests
        ]
    if intent.reminders:
        payload["isReminderOn"] = True
        payload["reminderMinutesBeforeStart"] = max(intent.reminders)
    if intent.color:
        # Outlook colours events through categories.
        payload["categories"] = [intent.color]
    return payload


def flatten_event(data: dict[str, Any]) -> dict[str, Any]:
    """Reduce a Graph event to the fields reconciliation compares."""
    all_day = bool(data.get("isAllDay"))

    def _when(key: str) -> str | None:
        value = (data.get(key) or {}).get("dateTime")
        if not value:
            return None
        return value[:10] if all_day else value[:19]

    body = (data.get("body") or {}).get("content") or None
    return {
        "id": data.get("id"),
        "title": data.get("subject"),
        "start": _when("start"),
        "end": _when("end"),
        "location": (data.get("location") or {}).get("displayName") or None,
        "description": body.strip() if body else None,
        "web_link": data.get("webLink"),
    }


class GraphCalendarSink:
    """Creates and reads events in an Outlook calendar."""

    def __init__(self, client: GraphClient, timezone: str = "UTC"):
        self._client = client
        self._read_headers = {
            "Prefer": f'IdType="ImmutableId", outlook.timezone="{timezone}", '
            'outlook.body-content-type="text"'
        }

    def create_event(self, calendar_id: str, intent: EventIntent) -> dict[str, Any]:
        created = self._client.post(_events_endpoint(calendar_id), json=event_payload(intent))
        logger.info("calendar_event_created", calendar_id=calendar_id, event_id=created.get("id"))
        return flatten_event(created)

    def update_event(self, calendar_id: str, event_id: str, intent: EventIntent) -> dict[str, Any]:
        updated = self._client.patch(
            f"{_events_endpoint(calendar_id)}/{event_id}", json=event_payload(intent)
        )
        logger.info("calendar_event_updated", calendar_id=calendar_id, event_id=event_id)
        return flatten_event(updated) if updated else {"id": event_id}

    def get_event(self, calendar_id: str, event_id: str) -> dict[str, Any] | None:
        try:
            data = self._client.get(
                f"{_events_endpoint(calendar_id)}/{event_id}",
                params={"$select": EVENT_FIELDS},
                extra_headers=self._read_headers,
            )
        except GraphAPIError as e:
            if e.status_code == 404:
                return None
            raise
        return flatten_event(data)
