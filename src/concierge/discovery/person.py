"""Assign discovered messages to family members.

Deterministic and token-based, no backtracking regexes over message text.
Order:

1. Source assignment rules from config (sender domain/address, subject,
   keywords), narrowed by alias mentions when a rule names several people
2. Alias equal to a token (0.95), then alias inside a token (0.90)
3. Alias substring of the raw text (aliases of three or more characters)
4. Grade mention, then group mention
5. ``Family/Shared`` fallback
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

import regex

from concierge.config_schema import AssignmentRuleConfig, FamilyConfig, FamilyMemberConfig
from concierge.core.logging import get_logger

logger = get_logger(__name__)

SHARED_PERSON = "Family/Shared"
MIN_SUBSTRING_ALIAS = 3

_TOKEN_SPLIT = regex.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class PersonAssignment:
    person: str
    reason: str
    confidence: float
    people: tuple[str, ...] = field(default_factory=tuple)
    matched_term: str | None = None


def _tokens(text: str) -> set[str]:
    return {t for t in _TOKEN_SPLIT.split(text, timeout=1) if t}


def _domain_matches(address: str, pattern: str) -> bool:
    address = address.lower()
    pattern = pattern.lower()
    domain = address.split("@", 1)[1] if "@" in address else address
    if "*" in pattern:
        compiled = "^" + ".*".join(regex.escape(p) for p in pattern.split("*")) + "$"
        return regex.match(compiled, domain, timeout=1) is not None
    return domain == pattern or address.endswith(f"@{pattern}")


def _rule_matches(rule: AssignmentRuleConfig, from_email: str, subject: str, body: str) -> bool:
    """Every condition the rule sets must hold; a rule with no conditions never matches."""
    text = f"{subject} {body}".lower()
    subject_lower = subject.lower()
    checks: list[bool] = []
    if rule.from_domains:
        checks.append(any(_domain_matches(from_email, d) for d in rule.from_domains))
    if rule.from_emails:
        checks.append(from_email.lower() in {e.lower() for e in rule.from_emails})
    if rule.subject_contains:
        checks.append(any(s.lower() in subject_lower for s in rule.subject_contains))
    if rule.keywords:
        checks.append(any(k.lower() in text for k in rule.keywords))
    return bool(checks) and all(checks)


class PersonAssigner:
    """Maps a message to the family member(s) it concerns."""

    def __init__(
        self,
        members: Sequence[FamilyMemberConfig] = (),
        rules: Sequence[AssignmentRuleConfig] = (),
        fallback: str = SHARED_PERSON,
    ):
        self.members = list(members)
        self.rules = list(rules)
        self.fallback = fallback

    @classmethod
    def from_config(cls, family: FamilyConfig) -> PersonAssigner:
        return cls(family.members, family.assignment_rules)

    def _member(self, name: str) -> FamilyMemberConfig | None:
        return next((m for m in self.members if m.name == name), None)

    def _refine(self, people: list[str], text: str) -> list[str]:
        """Narrow a multi-person rule to the people the text mentions.

        Nobody or everybody mentioned keeps the full list.
        """
        tokens = _tokens(text)
        mentioned = []
        for name in people:
            member = self._member(name)
            if member is None:
                continue
            terms = [a.lower() for a in member.aliases]
            if member.grade:
                terms.append(member.grade.lower())
            terms.extend(g.lower() for g in member.groups)
            if any(t in tokens or t in text for t in terms):
                mentioned.append(name)
        if not mentioned or len(mentioned) == len(people):
            return people
        return mentioned

    def _shared(self, reason: str) -> PersonAssignment:
        return PersonAssignment(self.fallback, reason, 0.0, (self.fallback,))

    def assign(
        self,
        subject: str = "",
        snippet: str = "",
        from_email: str = "",
        from_name: str | None = None,
        body: str = "",
    ) -> PersonAssignment:
        """Assign a message; never raises (errors fall back to the shared bucket)."""
        try:
            return self._assign(subject, snippet, from_email, from_name or "", body)
        except Exception as e:
            logger.warning("person_assignment_failed", error=str(e))
            return self._shared("error_fallback")

    def _assign(
        self, subject: str, snippet: str, from_email: str, from_name: str, body: str
    ) -> PersonAssignment:
        for rule in self.rules:
            if not _rule_matches(rule, from_email, subject, body):
                continue
            people = list(rule.people)
            if len(people) > 1:
                refined = self._refine(people, f"{subject} {snippet} {body}".lower())
                if refined != people:
                    return PersonAssignment(", ".join(refined), "source_refined", 0.85, tuple(refined))
            confidence = 0.90 if len(people) == 1 else 0.75
            return PersonAssignment(", ".join(people), "source_rule", confidence, tuple(people))

        text = f"{subject} {snippet} {from_email} {from_name}".lower()
        tokens = _tokens(text)

        for member in self.members:
            for alias in member.aliases:
                alias_lower = alias.lower()
                if alias_lower in tokens:
                    return PersonAssignment(member.name, "exact", 0.95, (member.name,), alias)
                if any(alias_lower in token for token in tokens):
                    return PersonAssignment(member.name, "exact", 0.90, (member.name,), alias)

        for member in self.members:
            for alias in member.aliases:
                alias_lower = alias.lower()
                if len(alias_lower) >= MIN_SUBSTRING_ALIAS and alias_lower in text:
                    return PersonAssignment(member.name, "alias", 0.80, (member.name,), alias)

        for member in self.members:
            if member.grade and member.grade.lower() in text:
                return PersonAssignment(member.name, "grade", 0.70, (member.name,), member.grade)

        for member in self.members:
            for group in member.groups:
                if group.lower() in text:
                    return PersonAssignment(member.name, "group", 0.60, (member.name,), group)

        return self._shared("shared_default")
