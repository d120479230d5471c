"""Sync lock model"""
from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint

from app.models.base import Base, utcnow


class SyncLock(Base):
    """Advisory lock row: one active pass per (integration, project)"""

    __tablename__ = "sync_locks"
    __table_args__ = (
        UniqueConstraint("integration_id", "project_id", name="uq_sync_locks_scope"),
    )

    id = Column(Integer, primary_key=True, index=True)
    integration_id = Column(Integer, nullable=False)
    project_id = Column(Integer, nullable=False)
    token = Column(String, nullable=False)
    acquired_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<SyncLock(integration={self.integration_id}, project={self.project_id})>"
