"""Workspace-scoped Jira endpoints: manual sync, status query, connection test"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.api.deps import ApiError, get_sync_service, resolve_actor_and_scope
from app.models.base import get_db
from app.models.sync_log import SyncTrigger
from app.security import request_actor
from app.services.errors import PassFatalError, SyncLockedError, SyncLockLostError
from app.services.sync_service import PassOutcome, SyncOptions, SyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/workspaces/{workspace_id}/jira", tags=["jira"])


class BidirectionalSyncRequest(BaseModel):
    projectId: int
    options: Optional[Dict[str, Any]] = None
    resetFailed: bool = False


class ConnectionTestRequest(BaseModel):
    domain: str
    email: str
    apiToken: str


@router.post("/bidirectional-sync")
def trigger_bidirectional_sync(
    workspace_id: str,
    body: BidirectionalSyncRequest,
    request: Request,
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service),
):
    """Run one pass for a project and return its summary"""
    scope = resolve_actor_and_scope(request, db, workspace_id, body.projectId)
    try:
        options = SyncOptions.from_payload(body.options)
    except ValueError as e:
        raise ApiError(400, str(e))

    logger.info(f"{scope.actor} triggered Jira sync for project {scope.project.id}")
    try:
        result = sync_service.run_pass(
            scope.integration,
            scope.project,
            options,
            trigger=SyncTrigger.MANUAL,
            reset_failed=body.resetFailed,
        )
    except (SyncLockedError, SyncLockLostError) as e:
        raise ApiError(409, str(e), retryable=True)
    except PassFatalError as e:
        raise ApiError(502, str(e))

    if result.outcome == PassOutcome.RATE_LIMITED:
        response = result.to_response()
        return JSONResponse(
            status_code=503,
            content={"error": result.message, "retryable": True, "data": response["data"]},
        )
    return result.to_response()


@router.get("/bidirectional-sync")
def get_bidirectional_sync_status(
    workspace_id: str,
    projectId: int,
    request: Request,
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service),
):
    """Sync ledger summary for a project"""
    scope = resolve_actor_and_scope(request, db, workspace_id, projectId)
    return {"success": True, "data": sync_service.get_status(scope.integration, scope.project)}


@router.post("/test-connection")
def test_jira_connection(
    workspace_id: str,
    body: ConnectionTestRequest,
    request: Request,
    sync_service: SyncService = Depends(get_sync_service),
):
    """Check Jira credentials without storing them"""
    if not body.domain.strip() or not body.email.strip() or not body.apiToken.strip():
        raise ApiError(400, "domain, email and apiToken are required")
    logger.info(f"{request_actor(request)} is testing Jira credentials for workspace {workspace_id}")
    return sync_service.test_connection(body.domain, body.email, body.apiToken)
