"""Shared route dependencies: the access guard and service wiring"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from app.models import JiraIntegration, Project
from app.models.base import get_db
from app.security import request_actor
from app.services.sync_service import SyncService


class ApiError(Exception):
    """Error rendered as {"error": message} (plus any extra fields)."""

    def __init__(self, status_code: int, message: str, **extra: Any):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, **self.extra}


@dataclass
class AccessScope:
    actor: str
    integration: JiraIntegration
    project: Optional[Project] = None


def resolve_actor_and_scope(
    request: Request,
    db: Session,
    workspace_id: str,
    project_id: Optional[int] = None,
) -> AccessScope:
    """Resolve who is calling and which integration/project they act on.

    Every workspace-scoped Jira route goes through here: the workspace must
    have an active integration, and a given project must belong to the
    workspace and be linked to that integration.
    """
    actor = request_actor(request)
    integration = (
        db.query(JiraIntegration)
        .filter(JiraIntegration.workspace_id == workspace_id, JiraIntegration.is_active == True)  # noqa: E712
        .order_by(JiraIntegration.id.desc())
        .first()
    )
    if integration is None:
        raise ApiError(404, "Jira integration not found or inactive for this workspace")

    project = None
    if project_id is not None:
        project = db.query(Project).filter(Project.id == project_id).first()
        if project is None or project.workspace_id != workspace_id:
            raise ApiError(404, "Project not found")
        if project.integration_id != integration.id:
            raise ApiError(400, "Project is not linked to this workspace's Jira integration")
    return AccessScope(actor=actor, integration=integration, project=project)


def get_sync_service(db: Session = Depends(get_db)) -> SyncService:
    return SyncService(db)
