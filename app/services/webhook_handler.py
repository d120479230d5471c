"""Routing of inbound Jira webhook events to sync passes"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.models import Project
from app.models.sync_log import SyncTrigger
from app.services.errors import PassFatalError, SyncLockedError
from app.services.sync_service import SyncOptions, SyncService

logger = logging.getLogger(__name__)

ISSUE_EVENTS = {"issue_created", "issue_updated", "issue_deleted"}
IGNORED_EVENTS = {"worklog_updated", "worklog_deleted", "version_released", "version_unreleased"}


@dataclass
class WebhookResult:
    status: str  # processed | skipped | ignored | busy | failed
    message: str
    event: Optional[str] = None
    projects: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "message": self.message, "event": self.event, "projects": self.projects}


def normalize_event(name: Optional[str]) -> str:
    """'jira:issue_updated' -> 'issue_updated'"""
    name = (name or "").strip()
    if name.startswith("jira:"):
        name = name[len("jira:"):]
    return name


def extract_project_key(payload: Dict[str, Any]) -> Optional[str]:
    project = payload.get("project") or {}
    if project.get("key"):
        return project["key"]
    issue = payload.get("issue") or {}
    fields = issue.get("fields") or {}
    return (fields.get("project") or {}).get("key")


class JiraWebhookHandler:
    """Turns a webhook payload into pull-only passes or deletion handling.

    The webhook has no synchronous caller to report to, so everything here
    ends in a log line and a WebhookResult rather than an exception.
    """

    def __init__(self, db: Session, sync_service: Optional[SyncService] = None):
        self.db = db
        self.sync_service = sync_service or SyncService(db)

    def handle(self, payload: Dict[str, Any]) -> WebhookResult:
        event = normalize_event(payload.get("webhookEvent"))
        if event in IGNORED_EVENTS or event not in ISSUE_EVENTS:
            logger.info(f"Ignoring Jira webhook event {event or '<none>'}")
            return WebhookResult("ignored", f"Event {event or '<none>'} is not synced", event)

        issue = payload.get("issue") or {}
        project_key = extract_project_key(payload)
        if not project_key:
            logger.info(f"Skipping Jira webhook {event}: payload has no project key")
            return WebhookResult("skipped", "No project key in payload", event)

        projects = (
            self.db.query(Project)
            .filter(
                Project.jira_project_key == project_key,
                Project.integration_id != None,  # noqa: E711
                Project.sync_enabled == True,  # noqa: E712
            )
            .order_by(Project.id.asc())
            .all()
        )
        if not projects:
            logger.info(f"Skipping Jira webhook {event}: no synced project for key {project_key}")
            return WebhookResult("skipped", f"No synced project for Jira key {project_key}", event)

        outcomes = [self._handle_project(event, issue, project) for project in projects]
        statuses = {o["status"] for o in outcomes}
        if statuses == {"busy"}:
            status = "busy"
        elif "processed" in statuses:
            status = "processed"
        elif "failed" in statuses:
            status = "failed"
        else:
            status = "skipped"
        return WebhookResult(status, f"{event} for {project_key} handled", event, outcomes)

    def _handle_project(self, event: str, issue: Dict[str, Any], project: Project) -> Dict[str, Any]:
        integration = project.integration
        outcome: Dict[str, Any] = {"projectId": project.id}
        if integration is None or not integration.is_active:
            logger.info(f"Skipping Jira webhook for project {project.name}: integration inactive")
            outcome.update(status="skipped", message="Integration inactive")
            return outcome

        try:
            if event == "issue_deleted":
                issue_id = issue.get("id")
                if not issue_id:
                    outcome.update(status="skipped", message="No issue id in payload")
                    return outcome
                action = self.sync_service.handle_remote_deletion(
                    integration, project, str(issue_id), trigger=SyncTrigger.WEBHOOK
                )
                outcome.update(status="processed" if action == "unlinked" else "skipped", message=action)
                return outcome

            options = SyncOptions(push_to_jira=False, pull_from_jira=True, sync_statuses=False)
            result = self.sync_service.run_pass(integration, project, options, trigger=SyncTrigger.WEBHOOK)
            outcome.update(status="processed", message=result.message, outcome=result.outcome.value)
        except SyncLockedError as e:
            logger.info(f"Jira webhook for project {project.name} skipped: {e}")
            outcome.update(status="busy", message=str(e))
        except PassFatalError as e:
            logger.error(f"Jira webhook pass for project {project.name} failed: {e}")
            outcome.update(status="failed", message=str(e))
        return outcome
