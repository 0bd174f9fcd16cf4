"""Tests for the discovery session orchestrator."""

import time
from datetime import date
from unittest.mock import AsyncMock, MagicMock

import pytest
from factories import ics_attachment, make_message

from concierge.config_schema import AppConfig
from concierge.db.store import DatabaseStore
from concierge.discovery.engine import DiscoveryEngine, build_discovery_query, split_from_header
from concierge.engine.interfaces import ObligationClassification
from concierge.packs import SCHOOL_PACK


def _load_inbox(mock_mail: MagicMock) -> None:
    mock_mail.messages["m-relay"] = make_message(
        "m-relay",
        from_header="Waterford Events <events@mail3.waterford.org>",
        subject="Field Trip Friday for Emma",
    )
    mock_mail.messages["m-spam"] = make_message(
        "m-spam",
        from_header="Shop <deals@store.example>",
        subject="Big sale",
        snippet="Everything must go",
        body_text="Everything must go",
    )
    mock_mail.attachments["m-relay"] = [ics_attachment()]


# ---------------------------------------------------------------------------
# Query building
# ---------------------------------------------------------------------------


def test_query_uses_source_keywords_not_domains(sample_config: AppConfig):
    query = build_discovery_query(sample_config.get_pack_config("school"), 30, today=date(2026, 10, 31))
    assert query.received_after == date(2026, 10, 1)
    assert query.keywords == ("field trip",)
    assert query.from_domains == ()


def test_query_without_pack_config():
    query = build_discovery_query(None, 7, today=date(2026, 10, 8))
    assert query.keywords == ()
    assert query.received_after == date(2026, 10, 1)


def test_split_from_header():
    assert split_from_header("Office <office@x.org>") == ("office@x.org", "Office")
    assert split_from_header("office@x.org") == ("office@x.org", None)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


async def test_session_records_evidence_and_approvals(
    store: DatabaseStore, sample_config: AppConfig, mock_mail: MagicMock
):
    _load_inbox(mock_mail)
    engine = DiscoveryEngine(mail=mock_mail, store=store, config=sample_config)

    session = await engine.run_discovery(SCHOOL_PACK, lookback_days=30)

    assert session.status == "completed"
    assert session.emails_scanned == 2
    saved = await store.get_discovery_session(session.id)
    assert saved is not None
    assert saved.status == "completed"

    evidence = await store.get_evidence(session.id)
    assert [e.message_id for e in evidence] == ["m-relay"]
    assert evidence[0].relevance_score == 1.0
    assert "configured_domain" in evidence[0].matched_rules
    assert "ics_attachment" in evidence[0].matched_rules

    approvals = await store.get_pending_approvals()
    assert len(approvals) == 1
    assert approvals[0].person == "Emma"
    assert approvals[0].from_email == "events@mail3.waterford.org"
    assert approvals[0].item_type == "announcement"


async def test_relay_domain_is_proposed(store: DatabaseStore, sample_config: AppConfig, mock_mail: MagicMock):
    _load_inbox(mock_mail)
    engine = DiscoveryEngine(mail=mock_mail, store=store, config=sample_config)

    session = await engine.run_discovery(SCHOOL_PACK)

    sources = session.output["proposed_config"]["sources"]
    relays = [s for s in sources if s["relay"]]
    assert relays[0]["from_domains"] == ["mail3.waterford.org"]
    assert session.output["stats"]["ics_attachments_found"] == 1
    assert session.output["stats"]["messages_processed"] == 2


async def test_missing_message_is_skipped(store: DatabaseStore, sample_config: AppConfig, mock_mail: MagicMock):
    mock_mail.list_message_ids.side_effect = None
    mock_mail.list_message_ids.return_value = ["gone"]
    engine = DiscoveryEngine(mail=mock_mail, store=store, config=sample_config)

    session = await engine.run_discovery(SCHOOL_PACK)

    assert session.status == "completed"
    assert session.output["stats"]["messages_skipped"] == 1


async def test_search_failure_fails_session(store: DatabaseStore, sample_config: AppConfig, mock_mail: MagicMock):
    mock_mail.list_message_ids.side_effect = RuntimeError("search down")
    engine = DiscoveryEngine(mail=mock_mail, store=store, config=sample_config)

    with pytest.raises(RuntimeError):
        await engine.run_discovery(SCHOOL_PACK)

    sessions = await store.get_discovery_sessions(pack_id="school")
    assert sessions[0].status == "failed"
    assert sessions[0].error == "search down"
    assert sessions[0].completed_at is not None


async def test_per_message_failure_does_not_fail_session(
    store: DatabaseStore, sample_config: AppConfig, mock_mail: MagicMock
):
    _load_inbox(mock_mail)
    mock_mail.get_attachments.side_effect = RuntimeError("attachment fetch failed")
    engine = DiscoveryEngine(mail=mock_mail, store=store, config=sample_config)

    session = await engine.run_discovery(SCHOOL_PACK)

    assert session.status == "completed"
    assert session.output["stats"]["messages_failed"] == 2
    recorded = await store.get_exceptions(type="api_error")
    assert len(recorded) == 2
    assert {r.context["session_id"] for r in recorded} == {session.id}
    assert all(r.context["pack_id"] == "school" for r in recorded)
    assert all("attachment fetch failed" in r.message for r in recorded)


async def test_slow_fetch_counts_as_timeout(store: DatabaseStore, sample_config: AppConfig, mock_mail: MagicMock):
    _load_inbox(mock_mail)
    sample_config.processing.fetch_timeout_seconds = 0.05

    def slow_get(message_id):
        if message_id == "m-spam":
            time.sleep(0.5)
        return mock_mail.messages.get(message_id)

    mock_mail.get_message.side_effect = slow_get
    engine = DiscoveryEngine(mail=mock_mail, store=store, config=sample_config)

    session = await engine.run_discovery(SCHOOL_PACK)

    stats = session.output["stats"]
    assert session.status == "completed"
    assert stats["timeouts"] == 1
    assert stats["messages_processed"] == 1
    recorded = await store.get_exceptions(type="api_error")
    assert len(recorded) == 1
    assert recorded[0].context["message_id"] == "m-spam"
    assert recorded[0].context["timeout"] is True


# ---------------------------------------------------------------------------
# Classification and person assignment
# ---------------------------------------------------------------------------


async def test_classifier_result_is_stored(store: DatabaseStore, sample_config: AppConfig, mock_mail: MagicMock):
    _load_inbox(mock_mail)
    classifier = MagicMock()
    classifier.classify = AsyncMock(
        return_value=ObligationClassification("obligation", "2026-10-20", 0.9, "Permission slip due")
    )
    engine = DiscoveryEngine(mail=mock_mail, store=store, config=sample_config, classifier=classifier)

    await engine.run_discovery(SCHOOL_PACK)

    approvals = await store.get_pending_approvals()
    assert approvals[0].item_type == "obligation"
    assert approvals[0].obligation_date == "2026-10-20"
    fields = classifier.classify.call_args.args[0]
    assert fields.from_email == "events@mail3.waterford.org"


async def test_classifier_error_falls_back_to_neutral(
    store: DatabaseStore, sample_config: AppConfig, mock_mail: MagicMock
):
    _load_inbox(mock_mail)
    classifier = MagicMock()
    classifier.classify = AsyncMock(side_effect=RuntimeError("model unavailable"))
    engine = DiscoveryEngine(mail=mock_mail, store=store, config=sample_config, classifier=classifier)

    session = await engine.run_discovery(SCHOOL_PACK)

    assert session.status == "completed"
    approvals = await store.get_pending_approvals()
    assert approvals[0].item_type == "announcement"
    assert approvals[0].classification_reasoning == "Default classification due to processing error"


async def test_person_assignment_can_be_disabled(
    store: DatabaseStore, sample_config: AppConfig, mock_mail: MagicMock
):
    _load_inbox(mock_mail)
    sample_config.discovery.person_assignment_enabled = False
    engine = DiscoveryEngine(mail=mock_mail, store=store, config=sample_config)

    await engine.run_discovery(SCHOOL_PACK)

    approvals = await store.get_pending_approvals()
    assert approvals[0].person == "Family/Shared"
