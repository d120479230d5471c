"""Sync log model"""
import enum

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from app.models.base import Base, utcnow


class SyncStatus(str, enum.Enum):
    """Sync status enumeration"""
    SUCCESS = "success"
    FAILED = "failed"
    CONFLICT = "conflict"
    SKIPPED = "skipped"
    RATE_LIMITED = "rate_limited"


class SyncDirection(str, enum.Enum):
    """Sync direction enumeration"""
    PUSH = "push"  # local -> Jira
    PULL = "pull"  # Jira -> local


class SyncTrigger(str, enum.Enum):
    """What started a pass"""
    MANUAL = "manual"
    WEBHOOK = "webhook"
    SCHEDULED = "scheduled"


class SyncLog(Base):
    """Log of sync passes and per-entity failures"""

    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, index=True)

    integration_id = Column(Integer, ForeignKey("jira_integrations.id"), nullable=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)

    # Entity information (empty for pass summaries)
    task_id = Column(Integer, nullable=True)
    external_key = Column(String, nullable=True)

    # Sync details
    status = Column(Enum(SyncStatus), nullable=False)
    direction = Column(Enum(SyncDirection), nullable=True)
    trigger = Column(Enum(SyncTrigger), nullable=True)
    message = Column(Text, nullable=True)
    details = Column(Text, nullable=True)  # JSON

    # Timestamp
    created_at = Column(DateTime, default=utcnow, index=True)

    # Relationships
    project = relationship("Project")

    def __repr__(self):
        return f"<SyncLog(status={self.status}, direction={self.direction})>"
