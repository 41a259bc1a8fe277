"""
Forms API Router

Endpoints for forms, their fields, and submissions. Creating a submission
runs the workflows triggered by the form.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import Any, Dict, List, Optional
from datetime import datetime
import logging

from database import get_db
from services.form_service import FormService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/forms", tags=["forms"])


# =============================================================================
# Request/Response Models
# =============================================================================

class FieldCreate(BaseModel):
    field_type: str
    label: str
    required: bool = False
    options: Optional[Any] = None
    custom_config: Optional[Dict[str, Any]] = None
    field_order: Optional[int] = None


class FieldUpdate(BaseModel):
    field_type: Optional[str] = None
    label: Optional[str] = None
    required: Optional[bool] = None
    options: Optional[Any] = None
    custom_config: Optional[Dict[str, Any]] = None
    field_order: Optional[int] = None


class FieldResponse(BaseModel):
    id: str
    form_id: str
    field_type: str
    label: str
    required: bool
    options: Optional[Any]
    custom_config: Optional[Dict[str, Any]]
    field_order: int

    class Config:
        from_attributes = True


class FormCreate(BaseModel):
    name: str
    description: Optional[str] = None
    created_by: Optional[str] = None
    status: str = "draft"
    project_id: Optional[str] = None
    fields: List[FieldCreate] = []


class FormUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    project_id: Optional[str] = None


class FormResponse(BaseModel):
    id: str
    name: str
    description: Optional[str]
    status: str
    created_by: Optional[str]
    project_id: Optional[str]
    fields: List[FieldResponse]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class SubmissionCreate(BaseModel):
    submission_data: Dict[str, Any]
    submitted_by: Optional[str] = None
    submitter_email: Optional[str] = None


class SubmissionUpdate(BaseModel):
    submission_data: Optional[Dict[str, Any]] = None
    approval_status: Optional[str] = None
    approval_notes: Optional[str] = None
    approved_by: Optional[str] = None


class SubmissionResponse(BaseModel):
    id: str
    form_id: str
    submission_ref_id: Optional[str]
    submission_data: Dict[str, Any]
    submitted_by: Optional[str]
    submitted_at: datetime
    approval_status: Optional[str]
    approval_notes: Optional[str]
    approval_timestamp: Optional[datetime]
    approved_by: Optional[str]

    class Config:
        from_attributes = True


class SubmissionCreateResponse(BaseModel):
    submission: SubmissionResponse
    workflows: List[Dict[str, Any]]


# =============================================================================
# Form Endpoints
# =============================================================================

@router.get("", response_model=List[FormResponse])
async def list_forms(
    status: Optional[str] = None,
    project_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db)
):
    """List forms with optional filters."""
    return FormService(db).list_forms(status=status, project_id=project_id, limit=limit, offset=offset)


@router.post("", response_model=FormResponse)
async def create_form(request: FormCreate, db: Session = Depends(get_db)):
    """Create a form with its fields."""
    return FormService(db).create_form(
        name=request.name,
        description=request.description,
        created_by=request.created_by,
        status=request.status,
        project_id=request.project_id,
        fields=[f.model_dump(exclude_none=True) for f in request.fields]
    )


@router.get("/{form_id}", response_model=FormResponse)
async def get_form(form_id: str, db: Session = Depends(get_db)):
    form = FormService(db).get_form(form_id)
    if not form:
        raise HTTPException(status_code=404, detail="Form not found")
    return form


@router.put("/{form_id}", response_model=FormResponse)
async def update_form(form_id: str, request: FormUpdate, db: Session = Depends(get_db)):
    form = FormService(db).update_form(
        form_id,
        name=request.name,
        description=request.description,
        status=request.status,
        project_id=request.project_id
    )
    if not form:
        raise HTTPException(status_code=404, detail="Form not found")
    return form


@router.delete("/{form_id}")
async def delete_form(form_id: str, db: Session = Depends(get_db)):
    if not FormService(db).delete_form(form_id):
        raise HTTPException(status_code=404, detail="Form not found")
    return {"status": "deleted", "form_id": form_id}


# =============================================================================
# Field Endpoints
# =============================================================================

@router.post("/{form_id}/fields", response_model=FieldResponse)
async def add_field(form_id: str, request: FieldCreate, db: Session = Depends(get_db)):
    field = FormService(db).add_field(form_id, request.model_dump(exclude_none=True))
    if not field:
        raise HTTPException(status_code=404, detail="Form not found")
    return field


@router.put("/{form_id}/fields/{field_id}", response_model=FieldResponse)
async def update_field(form_id: str, field_id: str, request: FieldUpdate, db: Session = Depends(get_db)):
    service = FormService(db)
    existing = service.get_field(field_id)
    if not existing or existing.form_id != form_id:
        raise HTTPException(status_code=404, detail="Field not found")
    return service.update_field(field_id, request.model_dump(exclude_none=True))


@router.delete("/{form_id}/fields/{field_id}")
async def delete_field(form_id: str, field_id: str, db: Session = Depends(get_db)):
    service = FormService(db)
    existing = service.get_field(field_id)
    if not existing or existing.form_id != form_id:
        raise HTTPException(status_code=404, detail="Field not found")
    service.delete_field(field_id)
    return {"status": "deleted", "field_id": field_id}


# =============================================================================
# Submission Endpoints
# =============================================================================

@router.get("/{form_id}/submissions", response_model=List[SubmissionResponse])
async def list_submissions(
    form_id: str,
    approval_status: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db)
):
    service = FormService(db)
    if not service.get_form(form_id):
        raise HTTPException(status_code=404, detail="Form not found")
    return service.list_submissions(form_id, approval_status=approval_status, limit=limit, offset=offset)


@router.post("/{form_id}/submissions", response_model=SubmissionCreateResponse)
async def create_submission(form_id: str, request: SubmissionCreate, db: Session = Depends(get_db)):
    """Submit a form. Returns the submission and the results of the workflows it triggered."""
    submission, workflow_results = FormService(db).create_submission(
        form_id,
        request.submission_data,
        submitted_by=request.submitted_by,
        submitter_email=request.submitter_email
    )
    if not submission:
        raise HTTPException(status_code=404, detail="Form not found")
    return SubmissionCreateResponse(
        submission=SubmissionResponse.model_validate(submission),
        workflows=workflow_results
    )


@router.get("/{form_id}/submissions/{submission_id}", response_model=SubmissionResponse)
async def get_submission(form_id: str, submission_id: str, db: Session = Depends(get_db)):
    submission = FormService(db).get_submission(submission_id)
    if not submission or submission.form_id != form_id:
        raise HTTPException(status_code=404, detail="Submission not found")
    return submission


@router.put("/{form_id}/submissions/{submission_id}", response_model=SubmissionResponse)
async def update_submission(
    form_id: str,
    submission_id: str,
    request: SubmissionUpdate,
    db: Session = Depends(get_db)
):
    """Update a submission; executions waiting on its values are resumed."""
    service = FormService(db)
    existing = service.get_submission(submission_id)
    if not existing or existing.form_id != form_id:
        raise HTTPException(status_code=404, detail="Submission not found")

    return service.update_submission(
        submission_id,
        submission_data=request.submission_data,
        approval_status=request.approval_status,
        approval_notes=request.approval_notes,
        approved_by=request.approved_by
    )


@router.delete("/{form_id}/submissions/{submission_id}")
async def delete_submission(form_id: str, submission_id: str, db: Session = Depends(get_db)):
    service = FormService(db)
    existing = service.get_submission(submission_id)
    if not existing or existing.form_id != form_id:
        raise HTTPException(status_code=404, detail="Submission not found")
    service.delete_submission(submission_id)
    return {"status": "deleted", "submission_id": submission_id}
