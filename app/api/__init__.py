"""API routes"""

from app.api import dashboard, integrations, jira, projects, sync, user_mappings, webhooks

__all__ = ["integrations", "jira", "projects", "user_mappings", "sync", "dashboard", "webhooks"]
