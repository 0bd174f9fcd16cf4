"""Build proposed configuration from a finished discovery scan.

Everything here is a pure function of the scan's accumulator.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from concierge.discovery.signals import DiscoveryAccumulator

MAX_PROPOSED_SOURCES = 10
MAX_PROPOSED_KEYWORDS = 20
MAX_PLATFORM_EXAMPLES = 3
RELAY_BASE_CONFIDENCE = 0.7
RELAY_CONFIDENCE_STEP = 0.1


@dataclass
class ProposedSource:
    name: str
    from_domains: list[str]
    confidence: float
    evidence_ids: list[str] = field(default_factory=list)
    relay: bool = False
    suggested: bool = True
    user_approved: bool = False


@dataclass
class ProposedKeyword:
    keyword: str
    frequency: int
    confidence: float
    category: str = "auto_detected"
    user_approved: bool = False


@dataclass
class DetectedPlatform:
    name: str
    confidence: float
    example_message_ids: list[str]


@dataclass
class DiscoveryStats:
    total_emails_scanned: int
    relevant_emails_found: int
    unique_senders_found: int
    unique_domains_found: int
    ics_attachments_found: int
    average_confidence: float
    messages_processed: int = 0
    messages_skipped: int = 0
    messages_failed: int = 0
    timeouts: int = 0


@dataclass
class ProposedConfig:
    sources: list[ProposedSource]
    keywords: list[ProposedKeyword]
    platforms: list[DetectedPlatform]
    suggested_labels: list[str]


def build_proposed_sources(acc: DiscoveryAccumulator) -> list[ProposedSource]:
    """Top sender domains by frequency, confidence ``min(count/10, 1)``."""
    sources = []
    for domain, count in acc.domain_counts.most_common(MAX_PROPOSED_SOURCES):
        related = [e.id for e in acc.evidence if e.sender and domain in e.sender.lower()]
        sources.append(
            ProposedSource(
                name=domain,
                from_domains=[domain],
                confidence=min(count / 10, 1.0),
                evidence_ids=related,
            )
        )
    return sources


def relay_base_domain(domain: str) -> str:
    """Last two DNS labels: ``mail3.veracross.com`` -> ``veracross.com``."""
    labels = domain.split(".")
    return ".".join(labels[-2:]) if len(labels) >= 2 else domain


def build_relay_proposals(acc: DiscoveryAccumulator) -> list[ProposedSource]:
    """Group relay domains by base domain; wildcard when several subdomains appeared."""
    groups: dict[str, tuple[list[str], int]] = {}
    for domain, count in acc.relay_domain_counts.items():
        base = relay_base_domain(domain)
        domains, total = groups.get(base, ([], 0))
        domains.append(domain)
        groups[base] = (domains, total + count)

    proposals = []
    ranked = sorted(groups.items(), key=lambda item: item[1][1], reverse=True)
    for base, (domains, count) in ranked:
        pattern = f"*.{base}" if len(domains) > 1 else domains[0]
        proposals.append(
            ProposedSource(
                name=pattern,
                from_domains=[pattern],
                confidence=min(1.0, round(RELAY_BASE_CONFIDENCE + RELAY_CONFIDENCE_STEP * count, 4)),
                relay=True,
            )
        )
    return proposals


def build_proposed_keywords(acc: DiscoveryAccumulator) -> list[ProposedKeyword]:
    return [
        ProposedKeyword(keyword=keyword, frequency=freq, confidence=min(freq / 20, 1.0))
        for keyword, freq in acc.keyword_counts.most_common(MAX_PROPOSED_KEYWORDS)
    ]


def build_detected_platforms(acc: DiscoveryAccumulator) -> list[DetectedPlatform]:
    return [
        DetectedPlatform(
            name=name,
            confidence=min(len(ids) / 10, 1.0),
            example_message_ids=ids[:MAX_PLATFORM_EXAMPLES],
        )
        for name, ids in acc.platform_messages.items()
    ]


def build_stats(acc: DiscoveryAccumulator, total_scanned: int) -> DiscoveryStats:
    scores = [e.relevance_score for e in acc.evidence]
    return DiscoveryStats(
        total_emails_scanned=total_scanned,
        relevant_emails_found=len(acc.evidence),
        unique_senders_found=len(acc.sender_counts),
        unique_domains_found=len(acc.domain_counts),
        ics_attachments_found=acc.ics_count,
        average_confidence=round(sum(scores) / len(scores), 4) if scores else 0.0,
        messages_processed=acc.processed,
        messages_skipped=acc.skipped,
        messages_failed=acc.failed,
        timeouts=acc.timeouts,
    )


def build_session_output(
    acc: DiscoveryAccumulator, total_scanned: int, pack_name: str
) -> dict[str, Any]:
    """The JSON document stored as the session's output."""
    proposed = ProposedConfig(
        sources=build_proposed_sources(acc) + build_relay_proposals(acc),
        keywords=build_proposed_keywords(acc),
        platforms=build_detected_platforms(acc),
        suggested_labels=[f"{pack_name}/Discovered"],
    )
    return {
        "proposed_config": asdict(proposed),
        "evidence_ids": [e.id for e in acc.evidence],
        "stats": asdict(build_stats(acc, total_scanned)),
    }
