"""Task model"""
from sqlalchemy import JSON, Column, Date, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from app.models.base import Base, utcnow


class Task(Base):
    """Local task"""

    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)

    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status_id = Column(Integer, ForeignKey("statuses.id"), nullable=True)
    priority = Column(String, nullable=False, default="medium")  # critical/high/medium/low
    assignee_id = Column(String, nullable=True)
    due_date = Column(Date, nullable=True)

    # Sync link
    external_id = Column(String, nullable=True, index=True)  # Jira issue id
    integration_type = Column(String, nullable=True)  # "jira" once linked
    # Jira fields without a local column (jira_key, parent/subtask keys, ...).
    # Reassign the whole dict on change; in-place mutation is not tracked.
    external_data = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, index=True)

    # Relationships
    project = relationship("Project")
    status = relationship("Status")

    def __repr__(self):
        return f"<Task(id={self.id}, title='{self.title}', external_id={self.external_id})>"
