"""Relevance scoring for discovered email.

Scores one message against a pack's discovery rules and the family's
configured sender domains. The rules are an explicit ordered list; each
rule reports whether it fired and with what weight, and the result keeps
every match so a score can be explained rule by rule.

Scoring model:
    1. Gate: relevant if any of configured_domain, display_name,
       platform or keywords fired. No gate means a score of exactly 0.
    2. Domain bias: configured domains exist but none matched -> -0.10.
    3. Score = sum of fired weights, clamped to [0, 1].

The ICS attachment boost is applied separately (apply_ics_boost) because
it needs the attachments, which are fetched after the headers.

Usage:
    from concierge.discovery.relevance import ScoringInput, score_relevance

    result = score_relevance(ScoringInput(from_header, subject, snippet), pack, domains)
    if result.relevant:
        print(result.score, result.winning_rule)
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

import regex

from concierge.discovery.signals import extract_address, extract_display_name
from concierge.packs.models import Pack

CONFIGURED_DOMAIN_WEIGHT = 0.95
DISPLAY_NAME_WEIGHT = 0.80
UNKNOWN_DOMAIN_PENALTY = -0.10
PLATFORM_WEIGHT = 0.85
KEYWORD_HIT_WEIGHT = 0.15
KEYWORD_CAP = 0.6
MIN_KEYWORD_HITS = 2

ICS_BOOST = 0.3
ICS_FLOOR = 0.8

GENERIC_EDU_PATTERN = ".edu"

_TLD_SEGMENT = regex.compile(r"\.[a-z]+")


@dataclass(frozen=True)
class ScoringInput:
    """The parts of a message the scorer reads."""

    from_header: str
    subject: str = ""
    snippet: str = ""


@dataclass(frozen=True)
class RuleMatch:
    """One rule that fired.

    Attributes:
        rule_id: Stable rule identifier
        weight: Contribution to the raw score (negative for penalties)
        detail: What matched (domain pattern, keyword count, ...)
        gate: Whether this match grants relevance
    """

    rule_id: str
    weight: float
    detail: str
    gate: bool = True


@dataclass(frozen=True)
class RelevanceResult:
    """Score, gate decision and the ordered matches that produced them."""

    score: float
    relevant: bool
    matches: tuple[RuleMatch, ...]
    configured_domain_matched: bool
    matched_domain: str | None = None

    @property
    def winning_rule(self) -> RuleMatch | None:
        """Highest-weight gate match; earlier rules win ties."""
        gate_matches = [m for m in self.matches if m.gate]
        if not gate_matches:
            return None
        return max(gate_matches, key=lambda m: m.weight)

    @property
    def matched_rule_ids(self) -> list[str]:
        return [m.rule_id for m in self.matches]


@dataclass(frozen=True)
class RuleContext:
    """Everything a rule may look at, precomputed once per message."""

    from_header: str
    address: str
    display_name: str
    text: str
    pack: Pack
    configured_domains: tuple[str, ...]


class RelevanceRule(Protocol):
    rule_id: str

    def evaluate(self, ctx: RuleContext, prior: Sequence[RuleMatch]) -> RuleMatch | None: ...


def _fired(prior: Sequence[RuleMatch], *rule_ids: str) -> bool:
    return any(m.rule_id in rule_ids for m in prior)


def domain_pattern_matches(pattern: str, address: str) -> bool:
    """Match a configured domain against a sender address.

    Wildcard patterns (``*school*.org``) are anchored over the whole
    address with ``*`` meaning any run of characters. Plain domains match
    as substrings.
    """
    pattern = pattern.lower()
    address = address.lower()
    if "*" in pattern:
        compiled = "^" + ".*".join(regex.escape(part) for part in pattern.split("*")) + "$"
        return regex.match(compiled, address, timeout=1) is not None
    return pattern in address


def domain_base_keyword(pattern: str) -> str:
    """Keyword a relay sender's display name is checked for.

    ``*waterford*.org`` -> ``waterford``.
    """
    without_wildcards = pattern.replace("*", "").lower()
    return _TLD_SEGMENT.sub("", without_wildcards, timeout=1)


class ConfiguredDomainRule:
    """Sender address matches a family-configured domain. First match only."""

    rule_id = "configured_domain"
    weight = CONFIGURED_DOMAIN_WEIGHT

    def evaluate(self, ctx: RuleContext, prior: Sequence[RuleMatch]) -> RuleMatch | None:
        for domain in ctx.configured_domains:
            if domain_pattern_matches(domain, ctx.address):
                return RuleMatch(self.rule_id, self.weight, domain)
        return None


class DisplayNameRule:
    """Display name carries the configured domain's keyword (mail relays)."""

    rule_id = "display_name"
    weight = DISPLAY_NAME_WEIGHT

    def evaluate(self, ctx: RuleContext, prior: Sequence[RuleMatch]) -> RuleMatch | None:
        if _fired(prior, "configured_domain") or not ctx.display_name:
            return None
        for domain in ctx.configured_domains:
            keyword = domain_base_keyword(domain)
            if keyword and keyword in ctx.display_name:
                return RuleMatch(self.rule_id, self.weight, keyword)
        return None


class UnknownDomainPenaltyRule:
    """Configured domains exist but the sender matched none of them."""

    rule_id = "unknown_domain_penalty"
    weight = UNKNOWN_DOMAIN_PENALTY

    def evaluate(self, ctx: RuleContext, prior: Sequence[RuleMatch]) -> RuleMatch | None:
        if not ctx.configured_domains:
            return None
        if _fired(prior, "configured_domain", "display_name"):
            return None
        return RuleMatch(self.rule_id, self.weight, "no configured domain matched", gate=False)


class PlatformRule:
    """Sender matches one of the pack's known platform domains."""

    rule_id = "platform"
    weight = PLATFORM_WEIGHT

    def evaluate(self, ctx: RuleContext, prior: Sequence[RuleMatch]) -> RuleMatch | None:
        domain_matched = _fired(prior, "configured_domain", "display_name")
        sender = ctx.from_header.lower()
        for pattern in ctx.pack.sender_patterns:
            if pattern.type != "domain":
                continue
            if domain_matched and pattern.pattern == GENERIC_EDU_PATTERN:
                continue
            if pattern.pattern.lower() in sender:
                return RuleMatch(self.rule_id, self.weight, pattern.pattern)
        return None


class KeywordRule:
    """Two or more distinct high-signal keywords in subject + snippet.

    Matching is case-insensitive substring matching, so "class" also
    matches "classic".
    """

    rule_id = "keywords"

    def evaluate(self, ctx: RuleContext, prior: Sequence[RuleMatch]) -> RuleMatch | None:
        keywords = dict.fromkeys(k.lower() for k in ctx.pack.high_signal_keywords())
        hits = [k for k in keywords if k in ctx.text]
        if len(hits) < MIN_KEYWORD_HITS:
            return None
        weight = min(KEYWORD_HIT_WEIGHT * len(hits), KEYWORD_CAP)
        return RuleMatch(self.rule_id, round(weight, 4), ",".join(hits))


DEFAULT_RULES: tuple[RelevanceRule, ...] = (
    ConfiguredDomainRule(),
    DisplayNameRule(),
    UnknownDomainPenaltyRule(),
    PlatformRule(),
    KeywordRule(),
)


def score_relevance(
    message: ScoringInput,
    pack: Pack,
    configured_domains: Sequence[str] = (),
    rules: Sequence[RelevanceRule] = DEFAULT_RULES,
) -> RelevanceResult:
    """Score one message. Pure: no I/O, no shared state.

    Args:
        message: Sender, subject and snippet of the message
        pack: Pack whose discovery rules apply
        configured_domains: Sender domains the family has configured
        rules: Ordered rules to evaluate

    Returns:
        RelevanceResult with score in [0, 1]; score is 0 when no gate fired
    """
    ctx = RuleContext(
        from_header=message.from_header,
        address=extract_address(message.from_header),
        display_name=extract_display_name(message.from_header).lower(),
        text=f"{message.subject} {message.snippet}".lower(),
        pack=pack,
        configured_domains=tuple(configured_domains),
    )

    matches: list[RuleMatch] = []
    for rule in rules:
        match = rule.evaluate(ctx, matches)
        if match is not None:
            matches.append(match)

    domain_match = next(
        (m for m in matches if m.rule_id in ("configured_domain", "display_name")), None
    )
    relevant = any(m.gate for m in matches)
    if relevant:
        score = max(0.0, min(1.0, sum(m.weight for m in matches)))
    else:
        score = 0.0

    return RelevanceResult(
        score=round(score, 4),
        relevant=relevant,
        matches=tuple(matches),
        configured_domain_matched=domain_match is not None,
        matched_domain=domain_match.detail if domain_match else None,
    )


def apply_ics_boost(score: float, has_ics: bool) -> float:
    """An ICS attachment is near-certain evidence of a real event.

    Adds 0.3 (capped at 1) to a positive score; lifts a zero score to 0.8.
    """
    if not has_ics:
        return score
    if score > 0:
        return min(1.0, round(score + ICS_BOOST, 4))
    return ICS_FLOOR


def is_relay_domain(domain: str | None, score: float, configured_domains: Sequence[str]) -> bool:
    """A relevant sender domain that is not literally one of the configured ones.

    ``mail3.waterford.org`` under ``*waterford*.org`` is a relay: it is
    relevant because of the wildcard, but the family never named it.
    """
    if not domain or score <= 0 or not configured_domains:
        return False
    literal = {d.replace("*", "").lstrip(".").lower() for d in configured_domains}
    return domain.lower() not in literal
