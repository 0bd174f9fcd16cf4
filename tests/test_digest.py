"""Tests for the activity digest."""

from datetime import timedelta

from factories import make_intent, seed_operation

from concierge.db.store import DatabaseStore, ForwardedMessage, PendingApproval, utcnow
from concierge.engine.digest import (
    DeferredItem,
    Digest,
    DigestBuilder,
    DigestSection,
    DismissedItem,
    EventItem,
    ForwardedItem,
    render_item,
    render_text,
)


def test_render_event_item():
    item = EventItem(title="Winter Concert", start="2026-12-10T18:00:00", status="created", location="Gym")
    assert render_item(item) == "- Winter Concert (2026-12-10T18:00:00) @ Gym"


def test_render_failed_event_shows_error():
    item = EventItem(title="Book Fair", start="2026-11-02", status="failed", error="quota exceeded")
    assert render_item(item).endswith("[error: quota exceeded]")


def test_render_forwarded_item():
    item = ForwardedItem("m-1", ("grandma@example.com",), "Always forward matching messages", True)
    assert render_item(item) == "- m-1 forwarded to grandma@example.com: Always forward matching messages"


def test_render_deferred_and_dismissed():
    deferred = DeferredItem(subject="Permission slip", sender="Office", person="Emma", obligation_date="2026-10-20")
    assert render_item(deferred) == "- Permission slip from Office for Emma (due 2026-10-20)"
    assert render_item(DismissedItem(subject="Bake sale", sender=None)) == "- Bake sale"


def test_render_empty_digest():
    now = utcnow()
    digest = Digest(since=now - timedelta(days=7), until=now, sections=(DigestSection("Added to calendar", ()),))
    assert "Nothing new." in render_text(digest)


async def test_builder_groups_by_status(store: DatabaseStore):
    since = utcnow() - timedelta(days=1)
    await seed_operation(store, fingerprint="fp-created", status="executed", event_status="created")
    await seed_operation(
        store, fingerprint="fp-pending", intent=make_intent(title="Book Fair", start="2026-11-02T08:00:00")
    )
    await store.insert_forwarded_message(
        ForwardedMessage(
            id="fw-1",
            source_message_id="m-9",
            forwarded_to=["grandma@example.com"],
            pack_id="school",
            success=True,
            reason="No calendar event found but message matched pack criteria",
        )
    )
    await store.insert_pending_approval(
        PendingApproval(id="pa-1", message_id="m-5", pack_id="school", subject="Permission slip", person="Emma")
    )
    await store.insert_pending_approval(
        PendingApproval(id="pa-2", message_id="m-6", pack_id="school", subject="Bake sale")
    )
    await store.update_pending_approval_status("pa-2", "dismissed")

    digest = await DigestBuilder(store).build(since=since)

    sections = {s.title: s.items for s in digest.sections}
    assert [i.title for i in sections["Added to calendar"]] == ["Winter Concert"]
    assert [i.title for i in sections["Waiting for approval"]] == ["Book Fair"]
    assert sections["Needs attention"] == ()
    assert sections["Forwarded"][0].source_message_id == "m-9"
    assert [i.subject for i in sections["Still to review"]] == ["Permission slip"]
    assert [i.subject for i in sections["Dismissed"]] == ["Bake sale"]
    assert digest.total_items == 5

    text = render_text(digest)
    assert "Added to calendar (1)" in text
    assert "- Permission slip for Emma" in text
    assert "Needs attention" not in text
