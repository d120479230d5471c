"""Project, status, status-mapping and task endpoints"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import JiraIntegration, Project, Status, StatusMapping, Task
from app.models.base import get_db
from app.scheduler import scheduler

router = APIRouter(prefix="/api/projects", tags=["projects"])


class ProjectCreate(BaseModel):
    workspace_id: str
    name: str
    integration_id: Optional[int] = None
    jira_project_key: Optional[str] = None
    sync_enabled: bool = True
    # Omit for manual and webhook passes only.
    sync_interval_minutes: Optional[int] = None


class ProjectResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    workspace_id: str
    name: str
    integration_id: Optional[int] = None
    jira_project_key: Optional[str] = None
    sync_enabled: bool
    sync_interval_minutes: Optional[int] = None
    last_synced_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class StatusCreate(BaseModel):
    name: str
    color: str = "gray"
    position: Optional[int] = None
    category: Optional[str] = None


class StatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    project_id: int
    name: str
    color: str
    position: int
    category: Optional[str] = None


class StatusMappingCreate(BaseModel):
    status_id: int
    external_status_id: str
    external_status_name: str
    external_category: Optional[str] = None
    is_primary: bool = True


class StatusMappingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    integration_id: int
    project_id: int
    status_id: int
    external_status_id: str
    external_status_name: str
    external_category: Optional[str] = None
    is_primary: bool


class TaskCreate(BaseModel):
    title: str
    description: Optional[str] = None
    status_id: Optional[int] = None
    priority: str = "medium"
    assignee_id: Optional[str] = None
    due_date: Optional[date] = None


class TaskUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status_id: Optional[int] = None
    priority: Optional[str] = None
    assignee_id: Optional[str] = None
    due_date: Optional[date] = None


class TaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    project_id: int
    title: str
    description: Optional[str] = None
    status_id: Optional[int] = None
    priority: str
    assignee_id: Optional[str] = None
    due_date: Optional[date] = None
    external_id: Optional[str] = None
    integration_type: Optional[str] = None
    external_data: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime


PRIORITIES = {"critical", "high", "medium", "low"}


def _get_project(db: Session, project_id: int) -> Project:
    project = db.query(Project).filter(Project.id == project_id).first()
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


def _validate_link(db: Session, body: ProjectCreate):
    if body.sync_interval_minutes is not None and body.sync_interval_minutes < 1:
        raise HTTPException(status_code=400, detail="sync_interval_minutes must be at least 1")
    if body.integration_id is None:
        if body.jira_project_key:
            raise HTTPException(status_code=400, detail="jira_project_key needs an integration_id")
        return
    integration = db.query(JiraIntegration).filter(JiraIntegration.id == body.integration_id).first()
    if not integration:
        raise HTTPException(status_code=400, detail="Integration not found")
    if integration.workspace_id != body.workspace_id:
        raise HTTPException(status_code=400, detail="Integration belongs to another workspace")


@router.get("/", response_model=List[ProjectResponse])
def list_projects(workspace_id: Optional[str] = None, db: Session = Depends(get_db)):
    """List projects"""
    query = db.query(Project).order_by(Project.id.asc())
    if workspace_id:
        query = query.filter(Project.workspace_id == workspace_id)
    return query.all()


@router.post("/", response_model=ProjectResponse)
def create_project(body: ProjectCreate, db: Session = Depends(get_db)):
    """Create a project, optionally linked to a Jira project"""
    _validate_link(db, body)
    project = Project(**body.model_dump())
    db.add(project)
    db.commit()
    db.refresh(project)
    scheduler.sync_project_schedule(project)
    return project


@router.get("/{project_id}", response_model=ProjectResponse)
def get_project(project_id: int, db: Session = Depends(get_db)):
    """Get a specific project"""
    return _get_project(db, project_id)


@router.put("/{project_id}", response_model=ProjectResponse)
def update_project(project_id: int, body: ProjectCreate, db: Session = Depends(get_db)):
    """Update a project and its Jira link"""
    project = _get_project(db, project_id)
    _validate_link(db, body)
    relinked = (body.integration_id, body.jira_project_key) != (project.integration_id, project.jira_project_key)
    for key, value in body.model_dump().items():
        setattr(project, key, value)
    if relinked:
        # A different Jira project means a fresh incremental scan.
        project.remote_sync_cursor = None
        project.last_synced_at = None
    db.commit()
    db.refresh(project)
    scheduler.sync_project_schedule(project)
    return project


@router.delete("/{project_id}")
def delete_project(project_id: int, db: Session = Depends(get_db)):
    """Delete a project that has no tasks"""
    project = _get_project(db, project_id)
    if db.query(Task).filter(Task.project_id == project_id).first():
        raise HTTPException(status_code=400, detail="Project still has tasks")
    scheduler.unschedule_project(project_id)
    db.query(StatusMapping).filter(StatusMapping.project_id == project_id).delete()
    db.query(Status).filter(Status.project_id == project_id).delete()
    db.delete(project)
    db.commit()
    return {"message": "Project deleted successfully"}


@router.post("/{project_id}/toggle", response_model=ProjectResponse)
def toggle_sync(project_id: int, db: Session = Depends(get_db)):
    """Toggle sync enabled/disabled for a project"""
    project = _get_project(db, project_id)
    project.sync_enabled = not project.sync_enabled
    db.commit()
    db.refresh(project)
    scheduler.sync_project_schedule(project)
    return project


# --- statuses ---


@router.get("/{project_id}/statuses", response_model=List[StatusResponse])
def list_statuses(project_id: int, db: Session = Depends(get_db)):
    _get_project(db, project_id)
    return db.query(Status).filter(Status.project_id == project_id).order_by(Status.position.asc()).all()


@router.post("/{project_id}/statuses", response_model=StatusResponse)
def create_status(project_id: int, body: StatusCreate, db: Session = Depends(get_db)):
    _get_project(db, project_id)
    existing = (
        db.query(Status).filter(Status.project_id == project_id, Status.name == body.name).first()
    )
    if existing:
        raise HTTPException(status_code=400, detail="Status name already exists")
    position = body.position
    if position is None:
        position = db.query(Status).filter(Status.project_id == project_id).count()
    status = Status(project_id=project_id, name=body.name, color=body.color, position=position, category=body.category)
    db.add(status)
    db.commit()
    db.refresh(status)
    return status


@router.get("/{project_id}/status-mappings", response_model=List[StatusMappingResponse])
def list_status_mappings(project_id: int, db: Session = Depends(get_db)):
    _get_project(db, project_id)
    return (
        db.query(StatusMapping)
        .filter(StatusMapping.project_id == project_id)
        .order_by(StatusMapping.id.asc())
        .all()
    )


@router.post("/{project_id}/status-mappings", response_model=StatusMappingResponse)
def create_status_mapping(project_id: int, body: StatusMappingCreate, db: Session = Depends(get_db)):
    """Map a local status to a Jira status.

    A primary mapping replaces the status's previous primary, keeping the
    local -> Jira direction single-valued.
    """
    project = _get_project(db, project_id)
    if not project.integration_id:
        raise HTTPException(status_code=400, detail="Project is not linked to Jira")
    status = db.query(Status).filter(Status.id == body.status_id, Status.project_id == project_id).first()
    if not status:
        raise HTTPException(status_code=400, detail="Status not found in this project")

    if body.is_primary:
        db.query(StatusMapping).filter(
            StatusMapping.integration_id == project.integration_id,
            StatusMapping.project_id == project_id,
            StatusMapping.status_id == body.status_id,
        ).update({StatusMapping.is_primary: False})

    mapping = StatusMapping(integration_id=project.integration_id, project_id=project_id, **body.model_dump())
    db.add(mapping)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=400, detail="Jira status is already mapped in this project")
    db.refresh(mapping)
    return mapping


@router.delete("/{project_id}/status-mappings/{mapping_id}")
def delete_status_mapping(project_id: int, mapping_id: int, db: Session = Depends(get_db)):
    mapping = (
        db.query(StatusMapping)
        .filter(StatusMapping.id == mapping_id, StatusMapping.project_id == project_id)
        .first()
    )
    if not mapping:
        raise HTTPException(status_code=404, detail="Status mapping not found")
    db.delete(mapping)
    db.commit()
    return {"message": "Status mapping deleted successfully"}


# --- tasks ---


def _check_task_fields(db: Session, project_id: int, fields: Dict[str, Any]):
    if fields.get("priority") is not None and fields["priority"] not in PRIORITIES:
        raise HTTPException(status_code=400, detail=f"priority must be one of {sorted(PRIORITIES)}")
    if fields.get("status_id") is not None:
        status = db.query(Status).filter(Status.id == fields["status_id"], Status.project_id == project_id).first()
        if not status:
            raise HTTPException(status_code=400, detail="Status not found in this project")


@router.get("/{project_id}/tasks", response_model=List[TaskResponse])
def list_tasks(project_id: int, db: Session = Depends(get_db)):
    _get_project(db, project_id)
    return db.query(Task).filter(Task.project_id == project_id).order_by(Task.id.asc()).all()


@router.post("/{project_id}/tasks", response_model=TaskResponse)
def create_task(project_id: int, body: TaskCreate, db: Session = Depends(get_db)):
    _get_project(db, project_id)
    fields = body.model_dump()
    _check_task_fields(db, project_id, fields)
    task = Task(project_id=project_id, **fields)
    db.add(task)
    db.commit()
    db.refresh(task)
    return task


@router.put("/{project_id}/tasks/{task_id}", response_model=TaskResponse)
def update_task(project_id: int, task_id: int, body: TaskUpdate, db: Session = Depends(get_db)):
    task = db.query(Task).filter(Task.id == task_id, Task.project_id == project_id).first()
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    changes = body.model_dump(exclude_unset=True)
    _check_task_fields(db, project_id, changes)
    for key, value in changes.items():
        setattr(task, key, value)
    db.commit()
    db.refresh(task)
    return task


@router.delete("/{project_id}/tasks/{task_id}")
def delete_task(project_id: int, task_id: int, db: Session = Depends(get_db)):
    """Delete a task; its Jira issue is only removed by a pass with propagateDeletes"""
    task = db.query(Task).filter(Task.id == task_id, Task.project_id == project_id).first()
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    db.delete(task)
    db.commit()
    return {"message": "Task deleted successfully"}
