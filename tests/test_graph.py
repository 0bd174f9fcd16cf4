"""Tests for the Microsoft Graph client, mailbox and calendar adapters."""

import base64
from datetime import date
from typing import Any
from unittest.mock import MagicMock

import pytest
import requests
from factories import make_intent

from concierge.core.errors import AuthenticationError, GraphAPIError, RateLimitExceeded
from concierge.engine.interfaces import CalendarSink, MailQuery
from concierge.graph.calendar import GraphCalendarSink, event_payload, flatten_event
from concierge.graph.client import GraphClient
from concierge.graph.mail import GraphMailSource, build_kql, message_from_graph, search_param


def _response(status_code: int = 200, body: dict[str, Any] | None = None, headers: dict[str, str] | None = None):
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    response.content = b"{}" if body is not None else b""
    response.json.return_value = body if body is not None else {}
    response.text = ""
    return response


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("concierge.graph.client.time.sleep", lambda _: None)


@pytest.fixture
def session() -> MagicMock:
    return MagicMock(spec=requests.Session)


@pytest.fixture
def client(session: MagicMock) -> GraphClient:
    auth = MagicMock()
    auth.get_access_token.return_value = "token-abc"
    return GraphClient(auth, session=session)


# ---------------------------------------------------------------------------
# GraphClient
# ---------------------------------------------------------------------------


class TestGraphClient:
    def test_get_sends_bearer_token(self, client: GraphClient, session: MagicMock):
        session.request.return_value = _response(body={"mail": "parent@example.com"})

        assert client.get_user_email() == "parent@example.com"
        kwargs = session.request.call_args.kwargs
        assert kwargs["url"] == "https://graph.microsoft.com/v1.0/me"
        assert kwargs["headers"]["Authorization"] == "Bearer token-abc"

    def test_no_content_returns_empty_dict(self, client: GraphClient, session: MagicMock):
        session.request.return_value = _response(status_code=202)
        assert client.post("/me/messages/m1/forward", json={}) == {}

    def test_retries_server_errors(self, client: GraphClient, session: MagicMock):
        session.request.side_effect = [_response(status_code=503, body={}), _response(body={"id": "x"})]

        assert client.get("/me/events/x") == {"id": "x"}
        assert session.request.call_count == 2

    def test_retries_network_errors(self, client: GraphClient, session: MagicMock):
        session.request.side_effect = [requests.exceptions.ConnectionError("reset"), _response(body={"ok": True})]
        assert client.get("/me") == {"ok": True}

    def test_network_errors_exhaust_retries(self, client: GraphClient, session: MagicMock):
        session.request.side_effect = requests.exceptions.Timeout("slow")

        with pytest.raises(GraphAPIError, match="after 3 retries"):
            client.get("/me")
        assert session.request.call_count == 4

    def test_throttling_raises_rate_limit(self, client: GraphClient, session: MagicMock):
        session.request.return_value = _response(status_code=429, body={}, headers={"Retry-After": "2"})

        with pytest.raises(RateLimitExceeded):
            client.get("/me/messages")
        assert session.request.call_count == 4

    def test_not_found_is_not_retried(self, client: GraphClient, session: MagicMock):
        session.request.return_value = _response(
            status_code=404, body={"error": {"code": "ErrorItemNotFound", "message": "gone"}}
        )

        with pytest.raises(GraphAPIError) as exc_info:
            client.get("/me/events/missing")
        assert exc_info.value.status_code == 404
        assert exc_info.value.error_code == "ErrorItemNotFound"
        assert session.request.call_count == 1

    def test_token_failure_is_authentication_error(self, session: MagicMock):
        auth = MagicMock()
        auth.get_access_token.side_effect = RuntimeError("no cache")
        with pytest.raises(AuthenticationError):
            GraphClient(auth, session=session).get("/me")

    def test_paginate_follows_next_link(self, client: GraphClient, session: MagicMock):
        session.request.side_effect = [
            _response(body={"value": [{"id": "1"}, {"id": "2"}], "@odata.nextLink": "https://next/page"}),
            _response(body={"value": [{"id": "3"}]}),
        ]

        items = client.paginate("/me/messages")

        assert [i["id"] for i in items] == ["1", "2", "3"]
        assert session.request.call_args.kwargs["url"] == "https://next/page"

    def test_paginate_stops_at_limit(self, client: GraphClient, session: MagicMock):
        session.request.return_value = _response(
            body={"value": [{"id": "1"}, {"id": "2"}], "@odata.nextLink": "https://next/page"}
        )
        assert len(client.paginate("/me/messages", limit=2)) == 2
        assert session.request.call_count == 1


# ---------------------------------------------------------------------------
# Mail
# ---------------------------------------------------------------------------


def test_build_kql():
    query = MailQuery(
        received_after=date(2026, 9, 1),
        from_domains=("waterford.org",),
        from_addresses=("coach@club.example",),
        keywords=("field trip", 'say "hi"'),
    )
    assert build_kql(query) == (
        'received>=2026-09-01 AND (from:waterford.org OR from:coach@club.example) '
        'AND ("field trip" OR "say hi")'
    )


def test_build_kql_date_only():
    assert build_kql(MailQuery(received_after=date(2026, 9, 1))) == "received>=2026-09-01"


def test_search_param_escapes_quotes():
    assert search_param('a AND ("b")') == '"a AND (\\"b\\")"'


def test_message_from_graph():
    message = message_from_graph(
        {
            "id": "m1",
            "subject": "Field trip",
            "from": {"emailAddress": {"address": "office@waterford.org", "name": "Front Office"}},
            "receivedDateTime": "2026-10-01T12:00:00Z",
            "bodyPreview": "Permission slips due",
            "body": {"contentType": "html", "content": "<p>Permission slips due</p>"},
            "hasAttachments": True,
        }
    )
    assert message.headers["From"] == "Front Office <office@waterford.org>"
    assert message.body.html == "<p>Permission slips due</p>"
    assert message.body.text is None
    assert message.has_attachments


def test_get_message_not_found_returns_none():
    graph = MagicMock()
    graph.get.side_effect = GraphAPIError("gone", status_code=404)
    assert GraphMailSource(graph).get_message("m1") is None


def test_get_attachments_decodes_file_attachments():
    graph = MagicMock()
    graph.paginate.return_value = [
        {
            "@odata.type": "#microsoft.graph.fileAttachment",
            "name": "invite.ics",
            "contentType": "text/calendar",
            "contentBytes": base64.b64encode(b"BEGIN:VCALENDAR").decode(),
        },
        {"@odata.type": "#microsoft.graph.itemAttachment", "name": "forwarded"},
    ]
    message = message_from_graph({"id": "m1", "hasAttachments": True})

    attachments = GraphMailSource(graph).get_attachments(message)

    assert len(attachments) == 1
    assert attachments[0].data == b"BEGIN:VCALENDAR"
    assert attachments[0].mime_type == "text/calendar"


def test_add_label_keeps_existing_categories():
    graph = MagicMock()
    graph.get.return_value = {"categories": ["Blue"]}

    GraphMailSource(graph).add_label("m1", "School/Events")

    graph.patch.assert_called_once_with("/me/messages/m1", json={"categories": ["Blue", "School/Events"]})


def test_add_label_is_idempotent():
    graph = MagicMock()
    graph.get.return_value = {"categories": ["School/Events"]}
    GraphMailSource(graph).add_label("m1", "School/Events")
    graph.patch.assert_not_called()


def test_forward_message_payload():
    graph = MagicMock()
    GraphMailSource(graph).forward_message("m1", ["grandma@example.com"], "[FCA] note")

    endpoint = graph.post.call_args.args[0]
    payload = graph.post.call_args.kwargs["json"]
    assert endpoint == "/me/messages/m1/forward"
    assert payload["comment"] == "[FCA] note"
    assert payload["toRecipients"] == [{"emailAddress": {"address": "grandma@example.com"}}]


# ---------------------------------------------------------------------------
# Calendar
# ---------------------------------------------------------------------------


def test_event_payload_timed():
    intent = make_intent(location="Gym", reminders=[1440, 60], color="Green category", guests=["a@b.c"])

    payload = event_payload(intent)

    assert payload["start"] == {"dateTime": "2026-12-10T18:00:00", "timeZone": "America/New_York"}
    assert payload["location"] == {"displayName": "Gym"}
    assert payload["reminderMinutesBeforeStart"] == 1440
    assert payload["categories"] == ["Green category"]
    assert payload["attendees"][0]["type"] == "optional"


def test_event_payload_all_day_spans_one_day():
    intent = make_intent(start="2026-11-02", end="2026-11-02", all_day=True)

    payload = event_payload(intent)

    assert payload["isAllDay"]
    assert payload["start"]["dateTime"] == "2026-11-02T00:00:00"
    assert payload["end"]["dateTime"] == "2026-11-03T00:00:00"


def test_flatten_event():
    flat = flatten_event(
        {
            "id": "cal-1",
            "subject": "Winter Concert",
            "start": {"dateTime": "2026-12-10T18:00:00.0000000"},
            "end": {"dateTime": "2026-12-10T19:30:00.0000000"},
            "location": {"displayName": ""},
            "body": {"content": "  Bring music  "},
        }
    )
    assert flat["start"] == "2026-12-10T18:00:00"
    assert flat["location"] is None
    assert flat["description"] == "Bring music"


def test_create_event_uses_primary_endpoint():
    graph = MagicMock()
    graph.post.return_value = {"id": "cal-1", "subject": "Winter Concert"}

    created = GraphCalendarSink(graph).create_event("primary", make_intent())

    assert created["id"] == "cal-1"
    assert graph.post.call_args.args[0] == "/me/events"


def test_update_event_on_named_calendar():
    graph = MagicMock()
    graph.patch.return_value = {}

    updated = GraphCalendarSink(graph).update_event("family", "cal-1", make_intent())

    assert updated == {"id": "cal-1"}
    assert graph.patch.call_args.args[0] == "/me/calendars/family/events/cal-1"


def test_get_event_not_found_returns_none():
    graph = MagicMock()
    graph.get.side_effect = GraphAPIError("gone", status_code=404)
    assert GraphCalendarSink(graph).get_event("primary", "cal-1") is None


def test_get_event_reads_in_configured_timezone():
    graph = MagicMock()
    graph.get.return_value = {"id": "cal-1", "start": {"dateTime": "2026-12-10T18:00:00"}}

    GraphCalendarSink(graph, timezone="America/New_York").get_event("primary", "cal-1")

    headers = graph.get.call_args.kwargs["extra_headers"]
    assert 'outlook.timezone="America/New_York"' in headers["Prefer"]


def test_calendar_sink_exposes_only_the_protocol():
    public = {name for name in vars(GraphCalendarSink) if not name.startswith("_")}
    protocol = {name for name in vars(CalendarSink) if not name.startswith("_")}
    assert public == protocol == {"create_event", "update_event", "get_event"}
