"""Discovery: find the family's school and activity mail and propose sources.

Usage:
    from concierge.discovery import DiscoveryEngine, score_relevance

    result = score_relevance(ScoringInput(from_header, subject, snippet), pack, domains)
    session = await DiscoveryEngine(mail, store, config).run_discovery(pack)
"""

from concierge.discovery.categories import Categorization, CategoryClassifier
from concierge.discovery.engine import DiscoveryEngine, build_discovery_query
from concierge.discovery.person import SHARED_PERSON, PersonAssigner, PersonAssignment
from concierge.discovery.proposals import (
    DetectedPlatform,
    DiscoveryStats,
    ProposedConfig,
    ProposedKeyword,
    ProposedSource,
    build_session_output,
)
from concierge.discovery.relevance import (
    DEFAULT_RULES,
    RelevanceResult,
    RuleMatch,
    ScoringInput,
    apply_ics_boost,
    is_relay_domain,
    score_relevance,
)
from concierge.discovery.signals import DiscoveryAccumulator

__all__ = [
    # Relevance
    "DEFAULT_RULES",
    "RelevanceResult",
    "RuleMatch",
    "ScoringInput",
    "apply_ics_boost",
    "is_relay_domain",
    "score_relevance",
    # Scan
    "DiscoveryAccumulator",
    "DiscoveryEngine",
    "build_discovery_query",
    "build_session_output",
    # Proposals
    "DetectedPlatform",
    "DiscoveryStats",
    "ProposedConfig",
    "ProposedKeyword",
    "ProposedSource",
    # Categories and people
    "Categorization",
    "CategoryClassifier",
    "PersonAssigner",
    "PersonAssignment",
    "SHARED_PERSON",
]
