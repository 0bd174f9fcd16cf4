"""Tests for discovery relevance scoring."""

import pytest

from concierge.discovery.relevance import (
    ICS_FLOOR,
    ScoringInput,
    apply_ics_boost,
    domain_base_keyword,
    domain_pattern_matches,
    is_relay_domain,
    score_relevance,
)
from concierge.packs import ACTIVITIES_PACK, SCHOOL_PACK

WATERFORD = ["*waterford*.org"]


def test_wildcard_domain_scores_relay_sender():
    result = score_relevance(
        ScoringInput("Waterford Events <events@mail3.waterford.org>", "Field Trip Friday", ""),
        SCHOOL_PACK,
        WATERFORD,
    )
    assert result.relevant
    assert result.score >= 0.8
    assert result.configured_domain_matched
    assert result.matched_domain == "*waterford*.org"
    assert result.winning_rule.rule_id == "configured_domain"


def test_relay_domain_is_recorded_for_wildcard_match():
    assert is_relay_domain("mail3.waterford.org", 0.95, WATERFORD)
    assert not is_relay_domain("waterford.org", 0.95, WATERFORD)


def test_relay_requires_positive_score_and_configured_domains():
    assert not is_relay_domain("mail3.waterford.org", 0.0, WATERFORD)
    assert not is_relay_domain("mail3.waterford.org", 0.9, [])
    assert not is_relay_domain(None, 0.9, WATERFORD)


def test_relay_check_is_literal_not_substring():
    # "mail.waterford.org" contains "waterford.org" but is still a relay
    assert is_relay_domain("mail.waterford.org", 0.9, ["waterford.org"])


def test_display_name_rule_catches_unmatched_relay():
    result = score_relevance(
        ScoringInput("Waterford School <noreply@mailer.veracross.com>", "Newsletter", ""),
        SCHOOL_PACK,
        WATERFORD,
    )
    assert result.relevant
    assert result.score == pytest.approx(0.8)
    assert "display_name" in result.matched_rule_ids
    assert "unknown_domain_penalty" not in result.matched_rule_ids


def test_two_keywords_without_domain_scores_point_three():
    result = score_relevance(
        ScoringInput("Studio Office <office@studio-example.com>", "Spring recital and dress rehearsal", ""),
        ACTIVITIES_PACK,
        [],
    )
    assert result.relevant
    assert result.score == pytest.approx(0.3)
    assert result.winning_rule.rule_id == "keywords"


def test_single_keyword_does_not_open_gate():
    result = score_relevance(
        ScoringInput("Someone <someone@example.com>", "Recital photos", ""),
        ACTIVITIES_PACK,
        [],
    )
    assert not result.relevant
    assert result.score == 0.0


def test_keyword_weight_is_capped():
    subject = "lesson practice recital rehearsal tournament competition"
    result = score_relevance(ScoringInput("x <x@example.com>", subject, ""), ACTIVITIES_PACK, [])
    assert result.score == pytest.approx(0.6)


def test_unknown_domain_penalty_applies_when_domains_configured():
    result = score_relevance(
        ScoringInput("Teacher <t@parentsquare.com>", "Class update", ""),
        SCHOOL_PACK,
        WATERFORD,
    )
    assert result.relevant
    assert "unknown_domain_penalty" in result.matched_rule_ids
    assert result.score == pytest.approx(0.75)


def test_generic_edu_platform_skipped_after_domain_match():
    result = score_relevance(
        ScoringInput("Staff <staff@waterford.edu>", "Hello", ""),
        SCHOOL_PACK,
        ["waterford.edu"],
    )
    assert "platform" not in result.matched_rule_ids
    assert result.score == pytest.approx(0.95)


def test_no_gate_scores_exactly_zero():
    result = score_relevance(
        ScoringInput("Shop <deals@store.example>", "Big sale", "Everything must go"),
        SCHOOL_PACK,
        WATERFORD,
    )
    assert not result.relevant
    assert result.score == 0.0
    assert result.winning_rule is None
    # The penalty is recorded but does not count as a gate
    assert result.matched_rule_ids == ["unknown_domain_penalty"]


def test_ics_boost_adds_to_positive_score():
    assert apply_ics_boost(0.3, has_ics=True) == pytest.approx(0.6)
    assert apply_ics_boost(0.95, has_ics=True) == 1.0


def test_ics_floor_for_zero_score():
    assert apply_ics_boost(0.0, has_ics=True) == ICS_FLOOR


def test_no_ics_leaves_score():
    assert apply_ics_boost(0.4, has_ics=False) == 0.4


def test_domain_pattern_helpers():
    assert domain_pattern_matches("*waterford*.org", "events@mail3.waterford.org")
    assert not domain_pattern_matches("*waterford*.org", "events@waterford.com")
    assert domain_pattern_matches("waterford.org", "office@waterford.org")
    assert domain_base_keyword("*waterford*.org") == "waterford"
