"""Inbound Jira webhook endpoint"""

import json
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.api.deps import ApiError, get_sync_service
from app.config import settings
from app.models.base import get_db
from app.security import verify_webhook_signature
from app.services.sync_service import SyncService
from app.services.webhook_handler import JiraWebhookHandler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/jira")
async def jira_webhook(
    request: Request,
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service),
):
    """Receive a Jira issue event.

    Answers 200 for anything well-formed (including skips and busy
    projects) so Jira does not keep redelivering.
    """
    body = await request.body()
    if settings.jira_webhook_secret:
        if not verify_webhook_signature(body, request.headers.get("X-Hub-Signature"), settings.jira_webhook_secret):
            logger.warning("Rejected Jira webhook with a missing or invalid signature")
            raise ApiError(401, "Invalid webhook signature")

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise ApiError(400, "Webhook body is not valid JSON")
    if not isinstance(payload, dict):
        raise ApiError(400, "Webhook body must be a JSON object")

    result = await run_in_threadpool(JiraWebhookHandler(db, sync_service).handle, payload)
    return {"success": result.status != "failed", **result.to_dict()}


@router.get("/jira")
def jira_webhook_status():
    """Lets Jira admins check the endpoint is reachable"""
    return {"status": "active", "service": "Jira webhook"}
