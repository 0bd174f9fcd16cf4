"""Prompt and tool definition for obligation classification."""

from __future__ import annotations

from datetime import date

from concierge.engine.interfaces import ClassificationFields

MAX_BODY_CHARS = 2000

VALID_ITEM_TYPES = frozenset({"obligation", "announcement"})

CLASSIFY_OBLIGATION_TOOL = {
    "name": "classify_obligation",
    "description": "Record whether a family email is an obligation or an announcement.",
    "input_schema": {
        "type": "object",
        "properties": {
            "item_type": {
                "type": "string",
                "enum": sorted(VALID_ITEM_TYPES),
                "description": "obligation: needs parent/child action or attendance. "
                "announcement: informational only.",
            },
            "obligation_date": {
                "type": ["string", "null"],
                "description": "YYYY-MM-DD of the event, lesson or deadline, or null if no date is mentioned",
            },
            "confidence": {"type": "number", "minimum": 0, "maximum": 1},
            "reasoning": {"type": "string", "description": "One sentence"},
        },
        "required": ["item_type", "obligation_date", "confidence", "reasoning"],
    },
}

SYSTEM_PROMPT = """You classify school and activity email for a busy family.

OBLIGATION: requires parent or child action or attendance (concerts, lessons,
deadlines, permission slips, appointments, events to attend, forms to submit,
RSVPs, waivers).
ANNOUNCEMENT: informational only (newsletters, class updates, "what we learned
this week").

Always extract the specific date of the event, lesson or deadline when one is
mentioned, including dates in the subject line such as "@ Sat Jan 31". Return
null only when no date is mentioned."""


def build_user_message(fields: ClassificationFields, today: date) -> str:
    body = (fields.body_text or fields.snippet or "")[:MAX_BODY_CHARS]
    sender = fields.from_name or fields.from_email or "Unknown"
    return (
        f"Today's date is {today.isoformat()}.\n\n"
        f"Subject: {fields.subject}\n"
        f"From: {sender}\n\n"
        f"{body}"
    )
