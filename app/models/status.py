"""Status catalog and status mapping models"""
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.models.base import Base, utcnow


class Status(Base):
    """Local workflow status of a project"""

    __tablename__ = "statuses"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    color = Column(String, nullable=False, default="gray")
    position = Column(Integer, nullable=False, default=0)
    category = Column(String, nullable=True)  # Jira status category key (new/indeterminate/done)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Status(name='{self.name}', project_id={self.project_id})>"


class StatusMapping(Base):
    """Local status <-> Jira status, scoped to one integration and project.

    Jira status ids are global to a Jira site while local statuses belong to a
    project. Reverse lookups (Jira -> local) are keyed by external_status_id,
    unique per (integration, project), so several Jira statuses may collapse
    onto one local status. Forward lookups (local -> Jira) use the primary row.
    """

    __tablename__ = "status_mappings"
    __table_args__ = (
        UniqueConstraint(
            "integration_id",
            "project_id",
            "external_status_id",
            name="uq_status_mappings_scope_external",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    integration_id = Column(Integer, ForeignKey("jira_integrations.id"), nullable=False)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    status_id = Column(Integer, ForeignKey("statuses.id"), nullable=False, index=True)

    external_status_id = Column(String, nullable=False)
    external_status_name = Column(String, nullable=False)
    external_category = Column(String, nullable=True)
    is_primary = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    status = relationship("Status")

    def __repr__(self):
        return (
            f"<StatusMapping(status_id={self.status_id} <-> "
            f"'{self.external_status_name}', primary={self.is_primary})>"
        )
