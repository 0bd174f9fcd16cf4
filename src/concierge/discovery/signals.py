"""Per-message signal extraction and the per-run discovery accumulator.

Every counter a discovery scan builds lives on a DiscoveryAccumulator
created for that scan, so two scans never share state.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field

import regex

from concierge.db.store import Evidence
from concierge.engine.interfaces import Attachment, MailMessage
from concierge.packs.models import Pack

_ANGLE_ADDRESS = regex.compile(r"<(.+?)>")
_DISPLAY_NAME = regex.compile(r"^([^<]+)")
_DOMAIN = regex.compile(r"@([a-zA-Z0-9.-]+)")


def extract_address(from_header: str) -> str:
    """``"Jane <jane@x.org>"`` -> ``jane@x.org``; bare addresses pass through."""
    match = _ANGLE_ADDRESS.search(from_header, timeout=1)
    if match:
        return match.group(1).strip()
    return from_header.strip()


def extract_display_name(from_header: str) -> str:
    """Text before the angle-bracketed address (the whole header if none)."""
    match = _DISPLAY_NAME.match(from_header, timeout=1)
    if not match:
        return ""
    return match.group(1).strip().strip('"')


def extract_domain(from_header: str) -> str | None:
    match = _DOMAIN.search(from_header, timeout=1)
    return match.group(1).lower() if match else None


def has_ics_attachment(attachments: Iterable[Attachment]) -> bool:
    return any(a.is_calendar for a in attachments)


def detect_platform(message: MailMessage, pack: Pack) -> str | None:
    """Name of the first pack platform detector that recognises the message.

    A detector matches when one of its domains appears in the From header
    or one of its header values appears in the named header.
    """
    sender = message.header("from") or ""
    for detector in pack.platform_detectors:
        if any(domain in sender for domain in detector.domains):
            return detector.name
        for header_name, expected in detector.headers:
            value = message.header(header_name)
            if value and expected in value:
                return detector.name
    return None


def extract_keywords(text: str, pack: Pack) -> list[str]:
    """Every pack keyword (all sets) found in the text, case-insensitively."""
    normalized = text.lower()
    return [k for k in dict.fromkeys(pack.all_keywords()) if k.lower() in normalized]


@dataclass
class DiscoveryAccumulator:
    """Frequency tables and evidence gathered during one discovery scan."""

    domain_counts: Counter[str] = field(default_factory=Counter)
    sender_counts: Counter[str] = field(default_factory=Counter)
    keyword_counts: Counter[str] = field(default_factory=Counter)
    platform_messages: dict[str, list[str]] = field(default_factory=dict)
    relay_domain_counts: Counter[str] = field(default_factory=Counter)
    ics_count: int = 0
    evidence: list[Evidence] = field(default_factory=list)
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    timeouts: int = 0

    def observe_sender(self, from_header: str) -> str | None:
        """Count the sender and its domain; returns the domain."""
        domain = extract_domain(from_header)
        if domain:
            self.domain_counts[domain] += 1
        self.sender_counts[from_header] += 1
        return domain

    def observe_platform(self, platform: str, message_id: str) -> None:
        self.platform_messages.setdefault(platform, []).append(message_id)

    def observe_keywords(self, keywords: Iterable[str]) -> None:
        self.keyword_counts.update(keywords)

    def observe_ics(self) -> None:
        self.ics_count += 1

    def observe_relay(self, domain: str) -> None:
        self.relay_domain_counts[domain] += 1

    def add_evidence(self, evidence: Evidence) -> None:
        self.evidence.append(evidence)
