"""Tests for the Claude obligation classifier."""

import time
from datetime import date
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import anthropic

from concierge.classifier.claude_classifier import (
    FAILURE_REASONING,
    MAX_CLASSIFICATION_ATTEMPTS,
    ObligationClassifier,
    validate_obligation_date,
)
from concierge.classifier.prompts import build_user_message
from concierge.engine.interfaces import ClassificationFields

TODAY = date(2026, 10, 17)

FIELDS = ClassificationFields(
    subject="Winter Concert @ Thu Dec 10",
    snippet="Please arrive by 5:30",
    from_email="music@waterford.org",
    from_name="Music Department",
    body_text="The winter concert is on December 10. Students should arrive by 5:30.",
)


# ---------------------------------------------------------------------------
# Mock helpers
# ---------------------------------------------------------------------------


def _make_tool_use_block(tool_input: dict[str, Any], name: str = "classify_obligation") -> SimpleNamespace:
    return SimpleNamespace(type="tool_use", id="toolu_1", name=name, input=tool_input)


def _make_response(*blocks: SimpleNamespace) -> SimpleNamespace:
    return SimpleNamespace(content=list(blocks), stop_reason="tool_use")


def _make_mock_client(*responses: Any) -> MagicMock:
    client = MagicMock()
    client.messages.create = MagicMock(side_effect=list(responses))
    return client


def _classifier(client: MagicMock) -> ObligationClassifier:
    return ObligationClassifier(client, model="claude-haiku-4-5", today=lambda: TODAY)


VALID = {
    "item_type": "obligation",
    "obligation_date": "2026-12-10",
    "confidence": 0.9,
    "reasoning": "Concert attendance",
}


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


async def test_valid_tool_call():
    client = _make_mock_client(_make_response(_make_tool_use_block(VALID)))

    result = await _classifier(client).classify(FIELDS)

    assert result.item_type == "obligation"
    assert result.obligation_date == "2026-12-10"
    assert result.confidence == 0.9
    kwargs = client.messages.create.call_args.kwargs
    assert kwargs["model"] == "claude-haiku-4-5"
    assert kwargs["tool_choice"] == {"type": "tool", "name": "classify_obligation"}


async def test_retries_after_missing_tool_call():
    text_only = _make_response(SimpleNamespace(type="text", text="I think it is an obligation"))
    client = _make_mock_client(text_only, _make_response(_make_tool_use_block(VALID)))

    result = await _classifier(client).classify(FIELDS)

    assert result.item_type == "obligation"
    assert client.messages.create.call_count == 2


async def test_invalid_fields_fall_back_after_retries():
    bad = _make_response(_make_tool_use_block({**VALID, "item_type": "reminder"}))
    client = _make_mock_client(*([bad] * MAX_CLASSIFICATION_ATTEMPTS))

    result = await _classifier(client).classify(FIELDS)

    assert result.item_type == "announcement"
    assert result.confidence == 0.5
    assert result.reasoning == FAILURE_REASONING
    assert client.messages.create.call_count == MAX_CLASSIFICATION_ATTEMPTS


async def test_out_of_range_confidence_is_invalid():
    bad = _make_response(_make_tool_use_block({**VALID, "confidence": 1.5}))
    client = _make_mock_client(*([bad] * MAX_CLASSIFICATION_ATTEMPTS))

    result = await _classifier(client).classify(FIELDS)

    assert result.reasoning == FAILURE_REASONING


async def test_api_error_returns_neutral_without_retry():
    client = _make_mock_client(anthropic.APIConnectionError(request=MagicMock()))

    result = await _classifier(client).classify(FIELDS)

    assert result.item_type == "announcement"
    assert result.obligation_date is None
    assert client.messages.create.call_count == 1


async def test_timeout_returns_neutral():
    def _slow(**kwargs):
        time.sleep(0.3)
        return _make_response(_make_tool_use_block(VALID))

    client = MagicMock()
    client.messages.create = MagicMock(side_effect=_slow)
    classifier = ObligationClassifier(client, model="m", timeout=0.05, today=lambda: TODAY)

    result = await classifier.classify(FIELDS)

    assert result.reasoning == FAILURE_REASONING


async def test_out_of_window_date_is_dropped():
    data = {**VALID, "obligation_date": "2030-01-01"}
    client = _make_mock_client(_make_response(_make_tool_use_block(data)))

    result = await _classifier(client).classify(FIELDS)

    assert result.item_type == "obligation"
    assert result.obligation_date is None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_validate_obligation_date():
    assert validate_obligation_date("2026-12-10T18:00:00", TODAY) == "2026-12-10"
    assert validate_obligation_date("not a date", TODAY) is None
    assert validate_obligation_date(None, TODAY) is None
    assert validate_obligation_date("2024-01-01", TODAY) is None


def test_user_message_includes_today_and_sender():
    message = build_user_message(FIELDS, TODAY)
    assert message.startswith("Today's date is 2026-10-17.")
    assert "From: Music Department" in message
    assert "Subject: Winter Concert @ Thu Dec 10" in message


def test_user_message_truncates_body():
    fields = ClassificationFields(subject="s", snippet="", from_email="a@b.c", body_text="x" * 5000)
    assert build_user_message(fields, TODAY).count("x") == 2000
