"""Rule-based email categorization (no model calls).

Runs alongside the relevance scorer during discovery: a message is
surfaced when either model flags it, so a category match can save an
email the relevance gate scored at 0.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from concierge.config_schema import CategoryPreferences, EmailCategory, Sensitivity

SENSITIVITY_THRESHOLDS: dict[Sensitivity, float] = {
    "conservative": 0.85,
    "balanced": 0.75,
    "broad": 0.65,
    "off": 1.0,
}

KEYWORD_CAP = 0.4
DOMAIN_BONUS = 0.3
SENDER_PATTERN_CAP = 0.2
NEGATIVE_STEP = 0.1
NEGATIVE_CAP = 0.3
SECONDARY_MIN_SCORE = 0.5
MAX_SECONDARY = 2


@dataclass(frozen=True)
class CategorySignals:
    keywords: tuple[str, ...]
    domains: tuple[str, ...] = ()
    sender_patterns: tuple[str, ...] = ()
    negative_keywords: tuple[str, ...] = ()


CATEGORY_SIGNALS: dict[EmailCategory, CategorySignals] = {
    "school": CategorySignals(
        keywords=(
            "assembly", "field trip", "picture day", "parent conference",
            "early release", "dismissal", "class", "grade", "homework",
            "teacher", "classroom", "school event", "curriculum", "report card",
            "parent-teacher", "registration", "enrollment", "class schedule",
            "absence", "tardy", "recess", "lunch", "special event", "spirit week",
            "performance", "concert", "play", "graduation", "promotion",
        ),
        domains=("veracross.com", "schoolloop.com", "parentvue.com", "parentsquare.com"),
        sender_patterns=("school", "teacher", "principal", "office"),
    ),
    "sports_activities": CategorySignals(
        keywords=(
            "soccer", "basketball", "baseball", "lacrosse", "tennis", "swimming",
            "practice", "game", "tournament", "match", "team", "coach",
            "tryouts", "roster", "schedule", "sports", "athletics", "recreation",
            "league", "club", "activity", "youth", "competition", "playoff",
            "season", "uniform", "equipment", "registration", "parent volunteer",
        ),
        domains=("teamsnap.com", "sportstorm.com", "myteams.com"),
        sender_patterns=("coach", "team", "sports", "athletic", "league"),
    ),
    "medical_health": CategorySignals(
        keywords=(
            "doctor", "appointment", "vaccine", "immunization", "clinic",
            "health", "medical", "prescription", "medication", "surgery",
            "dentist", "checkup", "visit", "hospital", "pediatrician",
            "wellness", "screening", "lab results", "pharmacy", "allergies",
            "treatment", "specialist", "therapy", "insurance", "deductible",
        ),
        domains=("mychart.org",),
        sender_patterns=("doctor", "clinic", "hospital", "health", "dental", "medical"),
        negative_keywords=("school nurse", "school health"),
    ),
    "friends_social": CategorySignals(
        keywords=(
            "playdate", "friend", "birthday", "party", "hangout", "meetup",
            "invitation", "invite", "gathering", "get together", "coffee",
            "lunch", "dinner", "social", "coming over", "visiting", "sleepover",
            "celebrate", "cake", "games",
        ),
        sender_patterns=("friend", "parent", "mom", "dad"),
        negative_keywords=("school", "class", "team", "activity", "sports"),
    ),
    "logistics": CategorySignals(
        keywords=(
            "carpool", "pickup", "dropoff", "transportation", "commute",
            "parking", "travel", "flight", "hotel", "reservation",
            "confirmation", "itinerary", "booking", "luggage", "directions",
            "route", "schedule", "timing", "transport", "arrange",
        ),
        domains=("uber.com", "lyft.com", "airbnb.com", "booking.com", "hotels.com", "expedia.com"),
        sender_patterns=("travel", "transportation", "booking", "uber", "lyft"),
    ),
    "forms_admin": CategorySignals(
        keywords=(
            "form", "application", "registration", "permission slip",
            "signature required", "submit", "deadline", "enrollment",
            "consent", "agreement", "policy", "handbook", "procedures",
            "documentation", "checklist", "requirements", "complete",
            "fill out", "sign", "return", "submission", "completed by",
        ),
        sender_patterns=("admin", "office", "enrollment"),
    ),
    "financial_billing": CategorySignals(
        keywords=(
            "invoice", "bill", "payment", "charge", "fee", "cost", "price",
            "tuition", "balance", "statement", "receipt", "refund",
            "account", "due", "overdue", "billing", "subscription",
            "credit card", "transaction", "payment plan", "installment",
        ),
        domains=("stripe.com", "paypal.com", "squarespace.com"),
        sender_patterns=("billing", "finance", "payment", "accounting"),
        negative_keywords=("school",),
    ),
    "community_optional": CategorySignals(
        keywords=(
            "pta", "pto", "church", "scout", "boy scout", "girl scout",
            "neighborhood", "community", "volunteer", "fundraiser",
            "homeowners", "hoa", "association", "club", "group",
            "meeting", "donation", "membership",
        ),
        domains=("scouting.org", "pta.org"),
        sender_patterns=("pta", "pto", "scout", "church", "hoa", "community"),
    ),
}


@dataclass(frozen=True)
class Categorization:
    primary_category: EmailCategory
    secondary_categories: tuple[EmailCategory, ...]
    category_scores: dict[EmailCategory, float]
    should_save: bool
    save_reasons: tuple[str, ...] = field(default_factory=tuple)

    @property
    def final_confidence(self) -> float:
        return self.category_scores[self.primary_category]


def score_category(text: str, sender: str, signals: CategorySignals) -> float:
    """Score one category for lowercased text and sender, in [0, 1]."""
    keyword_hits = sum(1 for k in signals.keywords if k in text)
    score = min(keyword_hits / len(signals.keywords), KEYWORD_CAP)

    if signals.domains and any(d in sender for d in signals.domains):
        score += DOMAIN_BONUS

    if signals.sender_patterns:
        pattern_hits = sum(1 for p in signals.sender_patterns if p in sender)
        score += min(pattern_hits / len(signals.sender_patterns), SENDER_PATTERN_CAP)

    if signals.negative_keywords:
        negative_hits = sum(1 for k in signals.negative_keywords if k in text)
        score -= min(negative_hits * NEGATIVE_STEP, NEGATIVE_CAP)

    return max(0.0, min(score, 1.0))


class CategoryClassifier:
    """Categorizes a message and decides whether it is worth saving."""

    def __init__(self, preferences: CategoryPreferences | None = None):
        self.preferences = preferences or CategoryPreferences()

    def _passes(self, category: EmailCategory, score: float) -> bool:
        if category not in self.preferences.enabled:
            return False
        sensitivity = self.preferences.sensitivity.get(category, "balanced")
        return score >= SENSITIVITY_THRESHOLDS[sensitivity]

    def categorize(self, subject: str, sender: str, body: str) -> Categorization:
        text = f"{subject} {body}".lower()
        sender = sender.lower()

        scores: dict[EmailCategory, float] = {
            category: score_category(text, sender, signals)
            for category, signals in CATEGORY_SIGNALS.items()
        }
        ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)
        primary = ranked[0][0]
        secondaries = tuple(
            category
            for category, score in ranked[1 : 1 + MAX_SECONDARY]
            if score > SECONDARY_MIN_SCORE
        )

        passing = [c for c in (primary, *secondaries) if self._passes(c, scores[c])]
        return Categorization(
            primary_category=primary,
            secondary_categories=secondaries,
            category_scores=scores,
            should_save=bool(passing),
            save_reasons=tuple(f"{c}@{scores[c]:.2f}" for c in passing),
        )
