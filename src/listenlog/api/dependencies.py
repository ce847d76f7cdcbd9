"""Dependency injection for API endpoints."""

import logging
from typing import cast

from fastapi import Header, HTTPException, Request

from listenlog.application.services import (
    AuthManager,
    ListeningHistoryService,
    SpotifyConnectionProbe,
    SyncOrchestrator,
)
from listenlog.application.workers import SpotifySyncWorker

logger = logging.getLogger(__name__)


# Hey future me - the session/identity layer lives outside this service. Whatever sits in
# front of us (reverse proxy, auth gateway) authenticates the caller and forwards the user id
# in X-User-Id. No header means no caller, which the routes answer with 401.
async def get_current_user_id(
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
) -> str:
    """Return the authenticated caller's user id.

    Raises:
        HTTPException: 401 if no caller identity was forwarded
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id.strip()


def _from_state(request: Request, name: str) -> object:
    # Everything below is created in lifecycle.lifespan(); missing means startup failed
    if not hasattr(request.app.state, name):
        raise HTTPException(status_code=503, detail=f"{name} not initialized")
    return getattr(request.app.state, name)


def get_auth_manager(request: Request) -> AuthManager:
    return cast(AuthManager, _from_state(request, "auth_manager"))


def get_sync_orchestrator(request: Request) -> SyncOrchestrator:
    return cast(SyncOrchestrator, _from_state(request, "sync_orchestrator"))


def get_listening_history_service(request: Request) -> ListeningHistoryService:
    return cast(ListeningHistoryService, _from_state(request, "listening_history"))


def get_connection_probe(request: Request) -> SpotifyConnectionProbe:
    return cast(SpotifyConnectionProbe, _from_state(request, "connection_probe"))


def get_sync_worker(request: Request) -> SpotifySyncWorker | None:
    """The background worker, or None when it is disabled via SYNC_WORKER_ENABLED."""
    return cast(SpotifySyncWorker | None, getattr(request.app.state, "sync_worker", None))
