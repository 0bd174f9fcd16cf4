"""JSON API routes.

Approval endpoints always answer with a structured ApprovalResult: 200
on success, 409 for token problems or an operation that is no longer
pending, 404 when the operation or its event is gone, 502 when the
calendar write failed. No stack trace ever leaves the server.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from concierge.config_schema import AppConfig
from concierge.core.logging import get_logger
from concierge.db.store import CalendarOperation, DatabaseStore
from concierge.engine.approval import ApprovalHandler, ApprovalResult, approval_links
from concierge.web.dependencies import get_approval_handler, get_config, get_store

logger = get_logger(__name__)

APP_VERSION = "0.1.0"

_FAILURE_STATUS = {"token": 409, "conflict": 409, "not_found": 404, "execution": 502}

api_router = APIRouter(prefix="/api")


class RejectRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


def _operation_dict(operation: CalendarOperation) -> dict[str, Any]:
    data = asdict(operation)
    data["title"] = operation.intent.title
    return data


def _result_response(result: ApprovalResult) -> JSONResponse:
    status = 200 if result.success else _FAILURE_STATUS.get(result.failure or "execution", 502)
    return JSONResponse(status_code=status, content=result.to_dict())


@api_router.get("/health")
async def health_check(store: DatabaseStore = Depends(get_store), config: AppConfig = Depends(get_config)):
    """Liveness plus the last run and queue sizes."""
    stats = await store.get_stats()
    return {
        "status": "healthy",
        "mode": config.agent.mode if config else None,
        "last_run_at": await store.get_state("last_run_at"),
        "last_run_id": await store.get_state("last_run_id"),
        "pending_operations": stats.get("pending_operations", 0),
        "unresolved_exceptions": stats.get("unresolved_exceptions", 0),
        "version": APP_VERSION,
    }


@api_router.get("/operations/pending")
async def list_pending_operations(limit: int = 100, store: DatabaseStore = Depends(get_store)):
    operations = await store.get_pending_operations(limit=min(max(limit, 1), 500))
    return jsonable_encoder({"operations": [_operation_dict(op) for op in operations]})


@api_router.post("/operations/{operation_id}/token")
async def issue_token(
    operation_id: str,
    store: DatabaseStore = Depends(get_store),
    config: AppConfig = Depends(get_config),
    handler: ApprovalHandler = Depends(get_approval_handler),
):
    """Issue an approval token for a pending operation."""
    operation = await store.get_operation(operation_id)
    if operation is None:
        raise HTTPException(status_code=404, detail="Calendar operation not found")
    if operation.status != "pending":
        raise HTTPException(status_code=409, detail=f"Operation is already {operation.status}")

    token = await handler.issue(operation_id)
    links = approval_links(token, config.approval.base_url)
    return jsonable_encoder(
        {
            "token": token.id,
            "operation_id": operation_id,
            "expires_at": token.expires_at,
            "approve_url": links.approve_url,
            "reject_url": links.reject_url,
        }
    )


@api_router.get("/approvals/{token_id}")
async def validate_token(
    token_id: str,
    store: DatabaseStore = Depends(get_store),
    handler: ApprovalHandler = Depends(get_approval_handler),
):
    """Check a token without consuming it."""
    reason = await handler.validate(token_id)
    if reason is not None:
        return JSONResponse(status_code=409, content={"valid": False, "reason": reason})

    token = await store.get_approval_token(token_id)
    operation = await store.get_operation(token.operation_id) if token else None
    return jsonable_encoder(
        {
            "valid": True,
            "reason": None,
            "expires_at": token.expires_at if token else None,
            "operation": _operation_dict(operation) if operation else None,
        }
    )


@api_router.post("/approvals/{token_id}/approve")
async def approve(token_id: str, handler: ApprovalHandler = Depends(get_approval_handler)):
    result = await handler.approve_and_execute(token_id)
    logger.info("approval_request", token_id=token_id, success=result.success, failure=result.failure)
    return _result_response(result)


@api_router.post("/approvals/{token_id}/reject")
async def reject(
    token_id: str,
    body: RejectRequest | None = None,
    handler: ApprovalHandler = Depends(get_approval_handler),
):
    result = await handler.reject(token_id, reason=body.reason if body else None)
    logger.info("rejection_request", token_id=token_id, success=result.success, failure=result.failure)
    return _result_response(result)


@api_router.get("/discovery/{session_id}")
async def get_discovery_session(session_id: str, store: DatabaseStore = Depends(get_store)):
    """A discovery session with its proposals and evidence."""
    session = await store.get_discovery_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Discovery session not found")
    evidence = await store.get_evidence(session_id)
    return jsonable_encoder(
        {
            "session": asdict(session),
            "evidence": [asdict(item) for item in evidence],
        }
    )
