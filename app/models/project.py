"""Project model"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from app.models.base import Base, utcnow


class Project(Base):
    """Local project, optionally linked to a Jira project"""

    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)

    # Jira link (webhooks find the project through jira_project_key)
    integration_id = Column(Integer, ForeignKey("jira_integrations.id"), nullable=True)
    jira_project_key = Column(String, nullable=True, index=True)

    # Sync configuration
    sync_enabled = Column(Boolean, default=True)
    # Null means "manual and webhook passes only".
    sync_interval_minutes = Column(Integer, nullable=True)

    # Sync progress
    last_synced_at = Column(DateTime, nullable=True)
    remote_sync_cursor = Column(String, nullable=True)  # continuation token for incremental fetch

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    integration = relationship("JiraIntegration")

    def __repr__(self):
        return f"<Project(name='{self.name}', jira_project_key='{self.jira_project_key}')>"
