"""Tests for the JSON API.

Tests the FastAPI application routes using httpx AsyncClient with the
lifespan replaced, so the app runs on the test store and fakes.
"""

from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from factories import seed_operation
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from concierge.config_schema import AppConfig
from concierge.db.store import DatabaseStore, DiscoverySession, Evidence, utcnow
from concierge.engine.approval import ApprovalHandler
from concierge.engine.operations import OperationExecutor
from concierge.web.app import create_app

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@asynccontextmanager
async def _noop_lifespan(app: FastAPI):
    """No-op lifespan that preserves existing app.state."""
    yield


@pytest.fixture
def handler(store: DatabaseStore, mock_calendar: MagicMock) -> ApprovalHandler:
    return ApprovalHandler(store, OperationExecutor(mock_calendar, store))


@pytest.fixture
def app(store: DatabaseStore, sample_config: AppConfig, handler: ApprovalHandler) -> FastAPI:
    test_app = create_app()
    test_app.router.lifespan_context = _noop_lifespan
    test_app.state.store = store
    test_app.state.config = sample_config
    test_app.state.services = SimpleNamespace(approvals=handler)
    test_app.state.scheduler = None
    return test_app


@pytest.fixture
async def client(app: FastAPI) -> AsyncClient:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# Health and listing
# ---------------------------------------------------------------------------


async def test_health(client: AsyncClient, store: DatabaseStore):
    await seed_operation(store)
    await store.set_state("last_run_id", "run-1")

    response = await client.get("/api/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["mode"] == "copilot"
    assert data["last_run_id"] == "run-1"
    assert data["pending_operations"] == 1


async def test_health_without_store(app: FastAPI, client: AsyncClient):
    app.state.store = None
    response = await client.get("/api/health")
    assert response.status_code == 503


async def test_list_pending_operations(client: AsyncClient, store: DatabaseStore):
    await seed_operation(store, fingerprint="fp-1")
    await seed_operation(store, fingerprint="fp-2", status="executed", event_status="created")

    response = await client.get("/api/operations/pending")

    operations = response.json()["operations"]
    assert [op["id"] for op in operations] == ["op-fp-1"]
    assert operations[0]["title"] == "Winter Concert"


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


async def test_issue_token_returns_links(client: AsyncClient, store: DatabaseStore):
    await seed_operation(store)

    response = await client.post("/api/operations/op-fp-1/token")

    assert response.status_code == 200
    data = response.json()
    assert data["operation_id"] == "op-fp-1"
    assert data["approve_url"] == f"http://127.0.0.1:8000/api/approvals/{data['token']}/approve"
    assert data["reject_url"].endswith("/reject")


async def test_issue_token_unknown_operation(client: AsyncClient):
    response = await client.post("/api/operations/missing/token")
    assert response.status_code == 404


async def test_issue_token_for_terminal_operation(client: AsyncClient, store: DatabaseStore):
    await seed_operation(store, status="executed", event_status="created")
    response = await client.post("/api/operations/op-fp-1/token")
    assert response.status_code == 409


async def test_validate_token(client: AsyncClient, store: DatabaseStore, handler: ApprovalHandler):
    await seed_operation(store)
    token = await handler.issue("op-fp-1")

    response = await client.get(f"/api/approvals/{token.id}")

    data = response.json()
    assert data["valid"]
    assert data["operation"]["id"] == "op-fp-1"


async def test_validate_unknown_token(client: AsyncClient):
    response = await client.get("/api/approvals/nope")
    assert response.status_code == 409
    assert response.json() == {"valid": False, "reason": "Token not found"}


# ---------------------------------------------------------------------------
# Approve / reject
# ---------------------------------------------------------------------------


async def test_approve_executes_operation(
    client: AsyncClient, store: DatabaseStore, handler: ApprovalHandler, mock_calendar: MagicMock
):
    await seed_operation(store)
    token = await handler.issue("op-fp-1")

    response = await client.post(f"/api/approvals/{token.id}/approve")

    assert response.status_code == 200
    assert response.json()["calendar_event_id"] == "cal-1"
    mock_calendar.create_event.assert_called_once()
    assert (await store.get_event_by_fingerprint("fp-1")).status == "created"


async def test_approve_twice_is_conflict(client: AsyncClient, store: DatabaseStore, handler: ApprovalHandler):
    await seed_operation(store)
    token = await handler.issue("op-fp-1")

    await client.post(f"/api/approvals/{token.id}/approve")
    response = await client.post(f"/api/approvals/{token.id}/approve")

    assert response.status_code == 409
    assert response.json()["failure"] == "token"


async def test_approve_operation_no_longer_pending_is_conflict(
    client: AsyncClient, store: DatabaseStore, handler: ApprovalHandler, mock_calendar: MagicMock
):
    await seed_operation(store, status="executed", event_status="created", calendar_event_id="cal-9")
    token = await handler.issue("op-fp-1")

    response = await client.post(f"/api/approvals/{token.id}/approve")

    assert response.status_code == 409
    assert response.json()["failure"] == "conflict"
    mock_calendar.create_event.assert_not_called()


async def test_approve_calendar_failure_is_bad_gateway(
    client: AsyncClient, store: DatabaseStore, handler: ApprovalHandler, mock_calendar: MagicMock
):
    await seed_operation(store)
    mock_calendar.create_event.side_effect = RuntimeError("calendar offline")
    token = await handler.issue("op-fp-1")

    response = await client.post(f"/api/approvals/{token.id}/approve")

    assert response.status_code == 502
    data = response.json()
    assert not data["success"]
    assert "calendar offline" in data["error"]
    assert (await store.get_operation("op-fp-1")).status == "failed"


async def test_reject_with_reason(client: AsyncClient, store: DatabaseStore, handler: ApprovalHandler):
    await seed_operation(store)
    token = await handler.issue("op-fp-1")

    response = await client.post(f"/api/approvals/{token.id}/reject", json={"reason": "Not our school"})

    assert response.status_code == 200
    operation = await store.get_operation("op-fp-1")
    assert operation.status == "rejected"
    assert operation.error == "Not our school"
    assert (await store.get_event_by_fingerprint("fp-1")).status == "flagged"


async def test_reject_without_body(client: AsyncClient, store: DatabaseStore, handler: ApprovalHandler):
    await seed_operation(store)
    token = await handler.issue("op-fp-1")

    response = await client.post(f"/api/approvals/{token.id}/reject")

    assert response.status_code == 200
    assert (await store.get_operation("op-fp-1")).error == "User rejected"


async def test_approval_without_services(app: FastAPI, client: AsyncClient):
    app.state.services = None
    response = await client.post("/api/approvals/anything/approve")
    assert response.status_code == 503


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


async def test_discovery_session(client: AsyncClient, store: DatabaseStore):
    await store.create_discovery_session(DiscoverySession(id="s-1", pack_id="school", started_at=utcnow()))
    await store.insert_evidence(
        Evidence(id="e-1", session_id="s-1", message_id="m-1", relevance_score=0.8, snippet="Field trip")
    )

    response = await client.get("/api/discovery/s-1")

    assert response.status_code == 200
    data = response.json()
    assert data["session"]["pack_id"] == "school"
    assert data["evidence"][0]["message_id"] == "m-1"


async def test_unknown_discovery_session(client: AsyncClient):
    response = await client.get("/api/discovery/missing")
    assert response.status_code == 404
