"""User mapping management endpoints"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import JiraIntegration, UserMapping
from app.models.base import get_db

router = APIRouter(prefix="/api/user-mappings", tags=["user-mappings"])


class UserMappingCreate(BaseModel):
    integration_id: int
    local_user_id: str
    jira_account_id: str
    jira_email: Optional[str] = None


class UserMappingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    integration_id: int
    local_user_id: str
    jira_account_id: str
    jira_email: Optional[str] = None
    created_at: datetime
    updated_at: datetime


@router.get("/", response_model=List[UserMappingResponse])
def list_user_mappings(integration_id: Optional[int] = None, db: Session = Depends(get_db)):
    """List user mappings"""
    query = db.query(UserMapping).order_by(UserMapping.id.asc())
    if integration_id:
        query = query.filter(UserMapping.integration_id == integration_id)
    return query.all()


@router.post("/", response_model=UserMappingResponse)
def create_user_mapping(mapping: UserMappingCreate, db: Session = Depends(get_db)):
    """Create a new user mapping.

    Both directions must stay single-valued: a local user maps to one Jira
    account and a Jira account to one local user, per integration.
    """
    integration = db.query(JiraIntegration).filter(JiraIntegration.id == mapping.integration_id).first()
    if not integration:
        raise HTTPException(status_code=400, detail="Integration not found")

    db_mapping = UserMapping(**mapping.model_dump())
    db.add(db_mapping)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=400, detail="User mapping already exists")
    db.refresh(db_mapping)
    return db_mapping


@router.get("/{mapping_id}", response_model=UserMappingResponse)
def get_user_mapping(mapping_id: int, db: Session = Depends(get_db)):
    """Get a specific user mapping"""
    mapping = db.query(UserMapping).filter(UserMapping.id == mapping_id).first()
    if not mapping:
        raise HTTPException(status_code=404, detail="User mapping not found")
    return mapping


@router.delete("/{mapping_id}")
def delete_user_mapping(mapping_id: int, db: Session = Depends(get_db)):
    """Delete a user mapping"""
    mapping = db.query(UserMapping).filter(UserMapping.id == mapping_id).first()
    if not mapping:
        raise HTTPException(status_code=404, detail="User mapping not found")

    db.delete(mapping)
    db.commit()
    return {"message": "User mapping deleted successfully"}
