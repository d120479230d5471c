"""Business logic services"""

from app.services.jira_client import JiraClient
from app.services.sync_service import PassResult, SyncOptions, SyncService

__all__ = ["JiraClient", "SyncService", "SyncOptions", "PassResult"]
