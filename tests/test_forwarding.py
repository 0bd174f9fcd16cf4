"""Tests for forwarding of messages that produced no event."""

from unittest.mock import MagicMock

import pytest
from factories import make_message

from concierge.config_schema import ForwardingCondition, ForwardingConfig
from concierge.db.store import DatabaseStore
from concierge.engine.forwarding import (
    Forwarder,
    build_reason,
    condition_matches,
    evaluate_conditions,
)


def _config(*conditions: ForwardingCondition) -> ForwardingConfig:
    return ForwardingConfig(enabled=True, forward_to=["grandma@example.com"], conditions=list(conditions))


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


def test_no_event_found_condition():
    condition = ForwardingCondition(type="no_event_found")
    assert condition_matches(condition, "anything")
    assert not condition_matches(condition, "anything", event_found=True)


def test_keyword_condition_with_exclusion():
    condition = ForwardingCondition(type="keyword_match", value=["bake sale"], exclude_patterns=["cancelled"])
    assert condition_matches(condition, "bake sale on friday")
    assert not condition_matches(condition, "bake sale cancelled")
    assert not condition_matches(condition, "book fair")


def test_keyword_condition_accepts_single_string():
    assert condition_matches(ForwardingCondition(type="keyword_match", value="lunch"), "lunch menu")


def test_confidence_below_condition():
    condition = ForwardingCondition(type="confidence_below", value=0.5)
    assert condition_matches(condition, "", event_found=True, confidence=0.3)
    assert not condition_matches(condition, "", event_found=True, confidence=0.7)
    assert not condition_matches(condition, "", event_found=False, confidence=0.3)


def test_evaluate_and_reason():
    conditions = [
        ForwardingCondition(type="always"),
        ForwardingCondition(type="keyword_match", value=["lunch"]),
    ]
    matched = evaluate_conditions(conditions, "Lunch menu", "")
    assert len(matched) == 2
    assert build_reason(matched) == "Always forward matching messages | Matched keywords: lunch"


def test_enabled_forwarding_requires_recipients():
    with pytest.raises(ValueError):
        ForwardingConfig(enabled=True)


# ---------------------------------------------------------------------------
# Forwarder
# ---------------------------------------------------------------------------


async def test_forward_sends_and_records(store: DatabaseStore, mock_mail: MagicMock):
    forwarder = Forwarder(mock_mail, store)

    record = await forwarder.handle(make_message("m1"), "school", _config(ForwardingCondition(type="always")))

    assert record.success
    message_id, recipients, comment = mock_mail.forward_message.call_args.args
    assert (message_id, recipients) == ("m1", ["grandma@example.com"])
    assert comment == "[FCA] Always forward matching messages"
    assert await store.is_message_forwarded("m1")


async def test_forward_is_sent_once(store: DatabaseStore, mock_mail: MagicMock):
    forwarder = Forwarder(mock_mail, store)
    config = _config(ForwardingCondition(type="always"))

    await forwarder.handle(make_message("m1"), "school", config)
    second = await forwarder.handle(make_message("m1"), "school", config)

    assert second is None
    assert mock_mail.forward_message.call_count == 1


async def test_unmatched_conditions_do_nothing(store: DatabaseStore, mock_mail: MagicMock):
    forwarder = Forwarder(mock_mail, store)
    config = _config(ForwardingCondition(type="keyword_match", value=["tuition"]))

    assert await forwarder.handle(make_message("m1"), "school", config) is None
    mock_mail.forward_message.assert_not_called()


async def test_disabled_forwarding_does_nothing(store: DatabaseStore, mock_mail: MagicMock):
    forwarder = Forwarder(mock_mail, store)
    assert await forwarder.handle(make_message("m1"), "school", ForwardingConfig()) is None


async def test_forward_failure_is_recorded(store: DatabaseStore, mock_mail: MagicMock):
    mock_mail.forward_message.side_effect = RuntimeError("send failed")
    forwarder = Forwarder(mock_mail, store)

    record = await forwarder.handle(make_message("m1"), "school", _config(ForwardingCondition(type="always")))

    assert not record.success
    assert record.error == "send failed"
    errors = await store.get_exceptions(type="forwarding_error")
    assert errors[0].context["message_id"] == "m1"
