"""Jira integration model"""

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from app.models.base import Base, utcnow


class JiraIntegration(Base):
    """Stored Jira credentials for one workspace"""

    __tablename__ = "jira_integrations"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String, nullable=False, index=True)
    jira_domain = Column(String, nullable=False)
    jira_email = Column(String, nullable=False)
    jira_api_token = Column(String, nullable=False)
    # Who hears about it when the integration gets auto-deactivated.
    owner_email = Column(String, nullable=True)
    # Falls back to settings.default_issue_type when unset.
    default_issue_type = Column(String, nullable=True)

    # Disconnect deactivates instead of deleting, so SyncRecord history survives.
    is_active = Column(Boolean, default=True, nullable=False)
    consecutive_auth_failures = Column(Integer, default=0, nullable=False)
    deactivated_at = Column(DateTime, nullable=True)
    deactivation_reason = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<JiraIntegration(workspace='{self.workspace_id}', domain='{self.jira_domain}')>"
