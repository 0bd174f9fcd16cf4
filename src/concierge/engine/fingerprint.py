"""Deterministic event fingerprints for deduplication.

A fingerprint is the SHA-256 of a fixed-shape record: source message id,
normalized title, date key and time key. Two extractions of the same
human event from the same message collide; two different events in one
message do not.

Usage:
    from concierge.engine.fingerprint import generate_fingerprint

    fp = generate_fingerprint("msg-1", intent)
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass

import regex

from concierge.db.store import EventIntent

ALL_DAY_TIME_KEY = "allday"

_NON_WORD = regex.compile(r"[^\w\s]")
_WHITESPACE = regex.compile(r"\s+")


@dataclass(frozen=True)
class FingerprintKey:
    """The composed identity of a calendar intent. Field order is fixed."""

    message_id: str
    title_normalized: str
    date_key: str
    time_key: str


def normalize_title(title: str) -> str:
    """Lowercase, trim, drop punctuation, collapse whitespace.

    "Winter Concert!!" and "  winter   concert" both become "winter concert".
    """
    lowered = title.lower().strip()
    stripped = _NON_WORD.sub("", lowered, timeout=1)
    return _WHITESPACE.sub(" ", stripped, timeout=1).strip()


def date_key(start: str) -> str:
    """``YYYY-MM-DD`` portion of an ISO date or date-time."""
    return start.split("T", 1)[0]


def time_key(start: str, all_day: bool = False) -> str:
    """``HH:MM`` portion of an ISO date-time, or ``allday``."""
    if all_day:
        return ALL_DAY_TIME_KEY
    parts = start.split("T", 1)
    if len(parts) < 2 or not parts[1]:
        return "00:00"
    return parts[1][:5]


def fingerprint_components(message_id: str, intent: EventIntent) -> FingerprintKey:
    return FingerprintKey(
        message_id=message_id,
        title_normalized=normalize_title(intent.title),
        date_key=date_key(intent.start),
        time_key=time_key(intent.start, intent.all_day),
    )


def generate_fingerprint(message_id: str, intent: EventIntent) -> str:
    """SHA-256 hex digest of the canonical JSON of the fingerprint key."""
    key = fingerprint_components(message_id, intent)
    payload = json.dumps(asdict(key), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def fingerprints_match(first: str, second: str) -> bool:
    """Exact comparison; near-duplicates are caught by the dedup window instead."""
    return first == second
