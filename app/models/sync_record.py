"""Sync record model"""
import enum

from sqlalchemy import Boolean, Column, DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from app.models.base import Base, utcnow


class SyncOutcome(str, enum.Enum):
    """Outcome of the last sync attempt for an entity"""
    SUCCESS = "success"
    CONFLICT = "conflict"
    ERROR = "error"
    PENDING = "pending"  # retry-eligible (e.g. after "reset failed")


class SyncRecord(Base):
    """Ledger entry linking a local entity to a Jira entity.

    At most one non-stale row exists per linked pair. Superseded rows are
    flagged stale and kept for audit.
    """

    __tablename__ = "sync_records"

    id = Column(Integer, primary_key=True, index=True)
    integration_id = Column(Integer, ForeignKey("jira_integrations.id"), nullable=False, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    entity_type = Column(String, nullable=False, default="task")

    # Local side
    local_id = Column(Integer, nullable=True)  # NULL while a new Jira issue fails to import
    local_revision = Column(String, nullable=True)  # content hash at last sync

    # Jira side
    external_id = Column(String, nullable=True)  # NULL while a new task fails to export
    external_key = Column(String, nullable=True)
    remote_revision = Column(String, nullable=True)  # content hash at last sync
    remote_updated_at = Column(DateTime, nullable=True)

    # Sync metadata
    last_synced_at = Column(DateTime, nullable=True)
    last_attempt_at = Column(DateTime, default=utcnow)
    outcome = Column(Enum(SyncOutcome), nullable=False, default=SyncOutcome.SUCCESS)
    attempts = Column(Integer, nullable=False, default=0)  # consecutive failed attempts
    last_error = Column(Text, nullable=True)
    policy = Column(String, nullable=True)  # conflict policy applied on the last pass

    stale = Column(Boolean, nullable=False, default=False, index=True)
    stale_reason = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    project = relationship("Project")

    def __repr__(self):
        return (
            f"<SyncRecord(local_id={self.local_id}, external_id={self.external_id}, "
            f"outcome={self.outcome}, stale={self.stale})>"
        )
