"""Tests for rule-based email categorization."""

import pytest

from concierge.config_schema import CategoryPreferences
from concierge.discovery.categories import (
    CATEGORY_SIGNALS,
    CategoryClassifier,
    score_category,
)

SCHOOL_SUBJECT = "Assembly, field trip and picture day"
SCHOOL_BODY = (
    "Homework policy from the teacher, classroom report card, recess and lunch, "
    "winter concert, graduation, absence notes"
)


def test_school_message_is_saved():
    classifier = CategoryClassifier()
    result = classifier.categorize(SCHOOL_SUBJECT, "Principal Office <news@veracross.com>", SCHOOL_BODY)

    assert result.primary_category == "school"
    assert result.final_confidence == pytest.approx(0.9)
    assert result.should_save
    assert result.save_reasons == ("school@0.90",)


def test_unrelated_message_is_not_saved():
    result = CategoryClassifier().categorize("Hello there", "x@example.com", "")
    assert not result.should_save
    assert result.secondary_categories == ()


def test_disabled_category_is_not_saved():
    classifier = CategoryClassifier(CategoryPreferences(enabled=[]))
    result = classifier.categorize(SCHOOL_SUBJECT, "Principal Office <news@veracross.com>", SCHOOL_BODY)
    assert result.primary_category == "school"
    assert not result.should_save


def test_sensitivity_off_blocks_everything():
    preferences = CategoryPreferences(sensitivity={"school": "off"})
    result = CategoryClassifier(preferences).categorize(
        SCHOOL_SUBJECT, "Principal Office <news@veracross.com>", SCHOOL_BODY
    )
    assert not result.should_save


# ---------------------------------------------------------------------------
# score_category
# ---------------------------------------------------------------------------


def test_negative_keywords_reduce_score_to_floor():
    signals = CATEGORY_SIGNALS["medical_health"]
    assert score_category("doctor appointment with the school nurse", "", signals) == 0.0


def test_domain_bonus():
    signals = CATEGORY_SIGNALS["sports_activities"]
    assert score_category("", "coach@teamsnap.com", signals) == pytest.approx(0.5)


def test_keyword_score_is_capped():
    signals = CATEGORY_SIGNALS["school"]
    text = " ".join(signals.keywords)
    assert score_category(text, "", signals) == pytest.approx(0.4)
