"""Dashboard and statistics endpoints"""

from datetime import timedelta

from fastapi import APIRouter, Depends
from sqlalchemy import desc
from sqlalchemy.orm import Session

from app.models import Project, SyncConflict, SyncLog, SyncRecord
from app.models.base import get_db, utcnow
from app.models.sync_log import SyncStatus
from app.models.sync_record import SyncOutcome

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


@router.get("/stats")
def get_dashboard_stats(db: Session = Depends(get_db)):
    """Get dashboard statistics"""
    # Total counts
    total_projects = db.query(Project).count()
    linked_projects = db.query(Project).filter(Project.jira_project_key.isnot(None)).count()
    active_records = db.query(SyncRecord).filter(SyncRecord.stale == False)  # noqa: E712
    total_synced_tasks = active_records.count()
    failed_records = active_records.filter(SyncRecord.outcome == SyncOutcome.ERROR).count()
    unresolved_conflicts = db.query(SyncConflict).filter(SyncConflict.resolved == False).count()  # noqa: E712

    # Recent sync activity (last 24 hours)
    last_24h = utcnow() - timedelta(hours=24)
    recent = db.query(SyncLog).filter(SyncLog.created_at >= last_24h)
    recent_syncs = recent.count()
    recent_successes = recent.filter(SyncLog.status == SyncStatus.SUCCESS).count()
    recent_failures = recent.filter(SyncLog.status == SyncStatus.FAILED).count()

    project_stats = []
    for project in db.query(Project).filter(Project.jira_project_key.isnot(None)).order_by(Project.id).all():
        synced_count = (
            db.query(SyncRecord)
            .filter(SyncRecord.project_id == project.id, SyncRecord.stale == False)  # noqa: E712
            .count()
        )
        conflicts_count = (
            db.query(SyncConflict)
            .filter(SyncConflict.project_id == project.id, SyncConflict.resolved == False)  # noqa: E712
            .count()
        )
        last_log = (
            db.query(SyncLog)
            .filter(SyncLog.project_id == project.id, SyncLog.task_id.is_(None))
            .order_by(desc(SyncLog.created_at), desc(SyncLog.id))
            .first()
        )
        project_stats.append(
            {
                "id": project.id,
                "name": project.name,
                "workspace_id": project.workspace_id,
                "jira_project_key": project.jira_project_key,
                "sync_enabled": project.sync_enabled,
                "last_synced_at": project.last_synced_at,
                "synced_tasks": synced_count,
                "unresolved_conflicts": conflicts_count,
                "last_status": last_log.status if last_log else None,
                "last_message": last_log.message if last_log else None,
            }
        )

    return {
        "total_projects": total_projects,
        "linked_projects": linked_projects,
        "total_synced_tasks": total_synced_tasks,
        "failed_records": failed_records,
        "unresolved_conflicts": unresolved_conflicts,
        "recent_syncs": recent_syncs,
        "recent_successes": recent_successes,
        "recent_failures": recent_failures,
        "project_stats": project_stats,
    }


@router.get("/activity")
def get_recent_activity(limit: int = 50, db: Session = Depends(get_db)):
    """Get recent sync activity"""
    logs = db.query(SyncLog).order_by(desc(SyncLog.created_at), desc(SyncLog.id)).limit(limit).all()
    return [
        {
            "id": log.id,
            "project_id": log.project_id,
            "status": log.status,
            "direction": log.direction,
            "trigger": log.trigger,
            "message": log.message,
            "task_id": log.task_id,
            "external_key": log.external_key,
            "created_at": log.created_at,
        }
        for log in logs
    ]
