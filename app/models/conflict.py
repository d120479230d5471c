"""Conflict model"""
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from app.models.base import Base, utcnow


class SyncConflict(Base):
    """Conflict awaiting (or carrying) a manual decision"""

    __tablename__ = "sync_conflicts"

    id = Column(Integer, primary_key=True, index=True)

    integration_id = Column(Integer, ForeignKey("jira_integrations.id"), nullable=False)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    sync_record_id = Column(Integer, ForeignKey("sync_records.id"), nullable=True)

    # Stable identity so repeated passes update the same row
    entity_key = Column(String, nullable=False, index=True)
    task_id = Column(Integer, nullable=False)
    external_id = Column(String, nullable=True)
    external_key = Column(String, nullable=True)

    # Conflict details
    conflict_type = Column(String, nullable=False, default="concurrent_update")
    description = Column(Text, nullable=False)
    local_data = Column(Text, nullable=True)  # JSON snapshot of the local task
    remote_data = Column(Text, nullable=True)  # JSON snapshot of the Jira issue
    field_diffs = Column(Text, nullable=True)  # JSON list of differing fields

    # Resolution
    resolved = Column(Boolean, default=False)
    resolution = Column(String, nullable=True)  # "local" or "remote"
    resolved_at = Column(DateTime, nullable=True)
    resolution_notes = Column(Text, nullable=True)
    applied_at = Column(DateTime, nullable=True)  # set once a pass applied the decision

    # Timestamps
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    sync_record = relationship("SyncRecord")

    def __repr__(self):
        return f"<SyncConflict(entity={self.entity_key}, resolved={self.resolved})>"
