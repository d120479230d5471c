"""Sync ledger endpoints: logs, conflicts and sync records"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from app.models import SyncConflict, SyncLog, SyncRecord
from app.models.base import get_db, utcnow
from app.security import request_actor

router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    integration_id: Optional[int] = None
    project_id: int
    task_id: Optional[int] = None
    external_key: Optional[str] = None
    status: str
    direction: Optional[str] = None
    trigger: Optional[str] = None
    message: Optional[str] = None
    created_at: datetime


class ConflictResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    integration_id: int
    project_id: int
    entity_key: str
    task_id: int
    external_key: Optional[str] = None
    conflict_type: str
    description: str
    local_data: Optional[str] = None
    remote_data: Optional[str] = None
    field_diffs: Optional[str] = None
    resolved: bool
    resolution: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    applied_at: Optional[datetime] = None
    created_at: datetime


class SyncRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    integration_id: int
    project_id: int
    entity_type: str
    local_id: Optional[int] = None
    external_id: Optional[str] = None
    external_key: Optional[str] = None
    outcome: str
    attempts: int
    last_error: Optional[str] = None
    policy: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    stale: bool
    stale_reason: Optional[str] = None


@router.get("/logs", response_model=List[SyncLogResponse])
def list_sync_logs(
    limit: int = 100,
    project_id: int = None,
    db: Session = Depends(get_db)
):
    """List sync logs"""
    query = db.query(SyncLog).order_by(SyncLog.created_at.desc(), SyncLog.id.desc())
    if project_id:
        query = query.filter(SyncLog.project_id == project_id)
    return query.limit(limit).all()


@router.get("/conflicts", response_model=List[ConflictResponse])
def list_conflicts(
    resolved: bool = None,
    project_id: int = None,
    db: Session = Depends(get_db)
):
    """List conflicts"""
    query = db.query(SyncConflict).order_by(SyncConflict.created_at.desc())
    if resolved is not None:
        query = query.filter(SyncConflict.resolved == resolved)
    if project_id:
        query = query.filter(SyncConflict.project_id == project_id)
    return query.all()


@router.post("/conflicts/{conflict_id}/resolve", response_model=ConflictResponse)
def resolve_conflict(
    conflict_id: int,
    request: Request,
    resolution: str = Body(..., embed=True),
    resolution_notes: Optional[str] = Body(None, embed=True),
    db: Session = Depends(get_db)
):
    """Record a user's decision; the next pass applies it.

    `resolution` is "local" (push the task to Jira) or "remote" (pull the
    Jira issue into the task).
    """
    if resolution not in ("local", "remote"):
        raise HTTPException(status_code=400, detail='resolution must be "local" or "remote"')

    conflict = db.query(SyncConflict).filter(SyncConflict.id == conflict_id).first()
    if not conflict:
        raise HTTPException(status_code=404, detail="Conflict not found")
    if conflict.applied_at is not None:
        raise HTTPException(status_code=400, detail="Conflict decision was already applied")

    conflict.resolved = True
    conflict.resolution = resolution
    conflict.resolved_at = utcnow()
    conflict.resolution_notes = resolution_notes or f"Resolved by {request_actor(request)}"
    db.commit()
    db.refresh(conflict)
    return conflict


@router.get("/records", response_model=List[SyncRecordResponse])
def list_sync_records(
    project_id: int = None,
    outcome: Optional[str] = None,
    include_stale: bool = False,
    db: Session = Depends(get_db)
):
    """List sync records"""
    query = db.query(SyncRecord).order_by(SyncRecord.id.asc())
    if project_id:
        query = query.filter(SyncRecord.project_id == project_id)
    if outcome:
        query = query.filter(SyncRecord.outcome == outcome)
    if not include_stale:
        query = query.filter(SyncRecord.stale == False)  # noqa: E712
    return query.all()
