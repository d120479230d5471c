"""Jira integration management endpoints"""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from app.api.deps import get_sync_service
from app.models import JiraIntegration
from app.models.base import get_db, utcnow
from app.services.errors import JiraError
from app.services.jira_client import JiraClient
from app.services.sync_service import SyncService
from app.services.sync_state import SyncStateStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/integrations", tags=["integrations"])


class IntegrationCreate(BaseModel):
    workspace_id: str
    jira_domain: str
    jira_email: str
    jira_api_token: str
    owner_email: Optional[str] = None
    default_issue_type: Optional[str] = None


class IntegrationUpdate(BaseModel):
    jira_domain: Optional[str] = None
    jira_email: Optional[str] = None
    jira_api_token: Optional[str] = None
    owner_email: Optional[str] = None
    default_issue_type: Optional[str] = None


class IntegrationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    workspace_id: str
    jira_domain: str
    jira_email: str
    owner_email: Optional[str] = None
    default_issue_type: Optional[str] = None
    is_active: bool
    consecutive_auth_failures: int
    deactivated_at: Optional[datetime] = None
    deactivation_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


def _get_integration(db: Session, integration_id: int) -> JiraIntegration:
    integration = db.query(JiraIntegration).filter(JiraIntegration.id == integration_id).first()
    if not integration:
        raise HTTPException(status_code=404, detail="Integration not found")
    return integration


def _check_credentials(sync_service: SyncService, domain: str, email: str, api_token: str):
    outcome = sync_service.test_connection(domain, email, api_token)
    if not outcome["success"]:
        raise HTTPException(status_code=400, detail=outcome["message"])


@router.get("/", response_model=List[IntegrationResponse])
def list_integrations(workspace_id: Optional[str] = None, db: Session = Depends(get_db)):
    """List Jira integrations"""
    query = db.query(JiraIntegration).order_by(JiraIntegration.id.asc())
    if workspace_id:
        query = query.filter(JiraIntegration.workspace_id == workspace_id)
    return query.all()


@router.post("/", response_model=IntegrationResponse)
def connect_integration(
    body: IntegrationCreate,
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service),
):
    """Connect a workspace to Jira.

    Credentials are verified first and never stored when invalid. An earlier
    integration for the same workspace and site is reactivated, so its sync
    history is kept.
    """
    domain = JiraClient.normalize_domain(body.jira_domain)
    _check_credentials(sync_service, domain, body.jira_email, body.jira_api_token)

    integration = (
        db.query(JiraIntegration)
        .filter(JiraIntegration.workspace_id == body.workspace_id, JiraIntegration.jira_domain == domain)
        .first()
    )
    if integration is None:
        integration = JiraIntegration(workspace_id=body.workspace_id, jira_domain=domain)
        db.add(integration)
    else:
        logger.info(f"Reactivating Jira integration {integration.id} for workspace {body.workspace_id}")

    integration.jira_email = body.jira_email
    integration.jira_api_token = body.jira_api_token
    integration.owner_email = body.owner_email
    integration.default_issue_type = body.default_issue_type
    integration.is_active = True
    integration.consecutive_auth_failures = 0
    integration.deactivated_at = None
    integration.deactivation_reason = None
    db.commit()
    db.refresh(integration)
    return integration


@router.get("/{integration_id}", response_model=IntegrationResponse)
def get_integration(integration_id: int, db: Session = Depends(get_db)):
    """Get a specific integration"""
    return _get_integration(db, integration_id)


@router.put("/{integration_id}", response_model=IntegrationResponse)
def update_integration(
    integration_id: int,
    body: IntegrationUpdate,
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service),
):
    """Update an integration; changed credentials are re-verified"""
    integration = _get_integration(db, integration_id)
    changes = body.model_dump(exclude_unset=True)
    if "jira_domain" in changes and changes["jira_domain"]:
        changes["jira_domain"] = JiraClient.normalize_domain(changes["jira_domain"])

    if {"jira_domain", "jira_email", "jira_api_token"} & set(changes):
        _check_credentials(
            sync_service,
            changes.get("jira_domain") or integration.jira_domain,
            changes.get("jira_email") or integration.jira_email,
            changes.get("jira_api_token") or integration.jira_api_token,
        )
        integration.consecutive_auth_failures = 0

    for key, value in changes.items():
        if value is not None:
            setattr(integration, key, value)
    db.commit()
    db.refresh(integration)
    return integration


@router.delete("/{integration_id}")
def disconnect_integration(integration_id: int, db: Session = Depends(get_db)):
    """Deactivate an integration (sync history is kept)"""
    integration = _get_integration(db, integration_id)
    integration.is_active = False
    integration.deactivated_at = utcnow()
    integration.deactivation_reason = "disconnected"
    db.commit()
    return {"message": "Integration deactivated"}


@router.post("/{integration_id}/reset-failed")
def reset_failed_records(integration_id: int, project_id: Optional[int] = None, db: Session = Depends(get_db)):
    """Make failed sync records retry-eligible for the next pass"""
    _get_integration(db, integration_id)
    count = SyncStateStore(db).reset_failed(integration_id, project_id)
    db.commit()
    return {"reset": count}


@router.get("/{integration_id}/projects")
def list_jira_projects(
    integration_id: int,
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service),
):
    """List Jira projects visible to the integration"""
    integration = _get_integration(db, integration_id)
    try:
        projects = sync_service.list_remote_projects(integration)
    except JiraError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return [{"id": p.id, "key": p.key, "name": p.name, "lead": p.lead} for p in projects]


@router.get("/{integration_id}/statuses")
def list_jira_statuses(
    integration_id: int,
    project_key: str,
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service),
):
    """List the statuses of a Jira project"""
    integration = _get_integration(db, integration_id)
    try:
        statuses = sync_service.list_remote_statuses(integration, project_key)
    except JiraError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return [{"id": s.id, "name": s.name, "category": s.category} for s in statuses]


@router.get("/{integration_id}/issue-types")
def list_jira_issue_types(
    integration_id: int,
    project_key: str,
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service),
):
    """List the issue types of a Jira project"""
    integration = _get_integration(db, integration_id)
    try:
        issue_types = sync_service.list_remote_issue_types(integration, project_key)
    except JiraError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return [{"id": t.id, "name": t.name, "subtask": t.subtask} for t in issue_types]


@router.get("/{integration_id}/priorities")
def list_jira_priorities(
    integration_id: int,
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service),
):
    """List Jira priorities"""
    integration = _get_integration(db, integration_id)
    try:
        priorities = sync_service.list_remote_priorities(integration)
    except JiraError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return [{"id": p.id, "name": p.name} for p in priorities]
