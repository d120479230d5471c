"""Database models"""

from app.models.base import Base
from app.models.conflict import SyncConflict
from app.models.integration import JiraIntegration
from app.models.project import Project
from app.models.status import Status, StatusMapping
from app.models.sync_lock import SyncLock
from app.models.sync_log import SyncLog
from app.models.sync_record import SyncRecord
from app.models.task import Task
from app.models.user_mapping import UserMapping

__all__ = [
    "Base",
    "JiraIntegration",
    "Project",
    "Status",
    "StatusMapping",
    "Task",
    "UserMapping",
    "SyncRecord",
    "SyncConflict",
    "SyncLog",
    "SyncLock",
]
