"""FastAPI dependency helpers.

Everything is created in the lifespan and kept on app.state; the
scheduler thread and the request handlers share the same objects.

Usage:
    from concierge.web.dependencies import get_store

    @router.get("/things")
    async def things(store: DatabaseStore = Depends(get_store)):
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from concierge.config_schema import AppConfig
    from concierge.db.store import DatabaseStore
    from concierge.engine.approval import ApprovalHandler
    from concierge.services import AppServices


def get_store(request: Request) -> DatabaseStore:
    store = request.app.state.store
    if store is None:
        raise HTTPException(status_code=503, detail="Database is not available")
    return store


def get_config(request: Request) -> AppConfig:
    return request.app.state.config


def get_services(request: Request) -> AppServices:
    """Graph-backed services; 503 when sign-in is not configured."""
    services = request.app.state.services
    if services is None:
        raise HTTPException(
            status_code=503,
            detail="Mail and calendar are not connected. Check the auth section of the config.",
        )
    return services


def get_approval_handler(request: Request) -> ApprovalHandler:
    return get_services(request).approvals
