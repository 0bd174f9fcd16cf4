"""Pack data model.

A pack is a named bundle of discovery rules and default configuration for
one domain of family life. Packs are immutable; per-family settings live
in config.yaml (PackConfig), never on the pack itself.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

SenderPatternType = Literal["domain", "email", "regex"]
KeywordContext = Literal["subject", "body", "all"]

# Keyword set categories that count toward the relevance keyword gate
HIGH_SIGNAL_CATEGORIES = ("event_types", "action_required")


@dataclass(frozen=True)
class SenderPattern:
    """A sender signature known to the pack (platform domain, address or regex)."""

    type: SenderPatternType
    pattern: str
    confidence: float
    description: str = ""


@dataclass(frozen=True)
class KeywordSet:
    """A category of keywords the pack looks for."""

    category: str
    keywords: tuple[str, ...]
    confidence: float
    context: KeywordContext = "all"


@dataclass(frozen=True)
class PlatformDetector:
    """Recognises a messaging platform by sender domain or header value."""

    name: str
    confidence: float
    domains: tuple[str, ...] = ()
    headers: tuple[tuple[str, str], ...] = ()
    body_patterns: tuple[str, ...] = ()


@dataclass(frozen=True)
class AttachmentIndicator:
    """An attachment type the pack cares about."""

    type: Literal["ics", "pdf", "image"]
    mime_types: tuple[str, ...] = ()
    filename_patterns: tuple[str, ...] = ()
    extractable: bool = False


@dataclass(frozen=True)
class PackDefaults:
    """Defaults applied when the family has not configured the pack."""

    source_name: str
    label: str
    duration_minutes: int = 60
    reminder_minutes: tuple[int, ...] = (1440, 60)
    color: str | None = None
    fallback_time: str = "09:00"
    forwarding_subject_prefix: str = "[FCA] "


@dataclass(frozen=True)
class Pack:
    """A named bundle of discovery rules."""

    id: str
    name: str
    version: str
    description: str
    priority: int
    sender_patterns: tuple[SenderPattern, ...] = ()
    keyword_sets: tuple[KeywordSet, ...] = ()
    platform_detectors: tuple[PlatformDetector, ...] = ()
    attachment_indicators: tuple[AttachmentIndicator, ...] = ()
    defaults: PackDefaults = field(
        default_factory=lambda: PackDefaults(source_name="Default", label="Family")
    )

    def high_signal_keywords(self) -> list[str]:
        """Keywords from the event-type and action-required sets, in pack order."""
        return [
            keyword
            for keyword_set in self.keyword_sets
            if keyword_set.category in HIGH_SIGNAL_CATEGORIES
            for keyword in keyword_set.keywords
        ]

    def all_keywords(self) -> list[str]:
        return [keyword for keyword_set in self.keyword_sets for keyword in keyword_set.keywords]
