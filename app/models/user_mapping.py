"""User mapping model"""
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from app.models.base import Base, utcnow


class UserMapping(Base):
    """Local user <-> Jira account mapping for one integration"""

    __tablename__ = "user_mappings"
    __table_args__ = (
        # Scoped to the integration: the same Jira account can exist in
        # several workspaces with different local users.
        UniqueConstraint(
            "integration_id",
            "local_user_id",
            name="uq_user_mappings_integration_local_user",
        ),
        UniqueConstraint(
            "integration_id",
            "jira_account_id",
            name="uq_user_mappings_integration_jira_account",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    integration_id = Column(Integer, ForeignKey("jira_integrations.id"), nullable=False)

    local_user_id = Column(String, nullable=False, index=True)
    jira_account_id = Column(String, nullable=False, index=True)
    jira_email = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    integration = relationship("JiraIntegration")

    def __repr__(self):
        return f"<UserMapping({self.local_user_id} <-> {self.jira_account_id})>"
