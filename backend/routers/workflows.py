"""
Workflow API Router

Endpoints for workflow definitions and their graphs, and for starting,
inspecting, cancelling and resuming executions.
"""

import logging
from typing import Any, Dict, List, Optional
from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from pydantic import BaseModel

from database import get_db
from schemas.workflow import WorkflowError
from services.workflow_service import WorkflowService
from workflows import workflow_engine, execution_to_dict, get_all_actions
from workflows.resumer import resume_waiting, resume_on_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/workflows", tags=["workflows"])


# =============================================================================
# Request/Response Models
# =============================================================================

class WorkflowCreate(BaseModel):
    name: str
    description: Optional[str] = None
    project_id: Optional[str] = None
    created_by: Optional[str] = None
    graph: Optional[Dict[str, Any]] = None  # {"nodes": [...], "connections": [...]}


class WorkflowUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    project_id: Optional[str] = None


class WorkflowResponse(BaseModel):
    id: str
    name: str
    description: Optional[str]
    status: str
    project_id: Optional[str]
    created_by: Optional[str]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class WorkflowDetailResponse(WorkflowResponse):
    graph: Dict[str, Any]


class ExecuteWorkflowRequest(BaseModel):
    trigger_data: Dict[str, Any] = {}
    execution_id: Optional[str] = None


class ExecuteWorkflowResponse(BaseModel):
    executionId: str
    success: bool
    error: Optional[str] = None
    isWaiting: bool


class ResumeRequest(BaseModel):
    execution_id: Optional[str] = None


class EventRequest(BaseModel):
    event_type: str
    data: Optional[Dict[str, Any]] = None


class ActionSummary(BaseModel):
    name: str
    description: str
    category: str


# =============================================================================
# Helpers
# =============================================================================

def _detail(service: WorkflowService, workflow) -> WorkflowDetailResponse:
    graph = service.get_graph(workflow.id)
    return WorkflowDetailResponse(
        id=workflow.id,
        name=workflow.name,
        description=workflow.description,
        status=workflow.status,
        project_id=workflow.project_id,
        created_by=workflow.created_by,
        created_at=workflow.created_at,
        updated_at=workflow.updated_at,
        graph=graph.to_dict() if graph else {"nodes": [], "connections": []}
    )


# =============================================================================
# Execution Endpoints
# =============================================================================

@router.get("/actions", response_model=List[ActionSummary])
async def list_actions():
    """List the action types an action node can run."""
    return [
        ActionSummary(name=a.name, description=a.description, category=a.category)
        for a in get_all_actions()
    ]


@router.get("/executions")
async def list_executions(
    workflow_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db)
):
    executions = WorkflowService(db).list_executions(
        workflow_id=workflow_id, status=status, limit=limit, offset=offset
    )
    return [execution_to_dict(e) for e in executions]


@router.get("/executions/{execution_id}")
async def get_execution_state(execution_id: str, db: Session = Depends(get_db)):
    """Execution with its node logs."""
    try:
        return workflow_engine.get_execution_state(db, execution_id)
    except WorkflowError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/executions/{execution_id}/cancel")
async def cancel_execution(execution_id: str, db: Session = Depends(get_db)):
    try:
        execution = workflow_engine.cancel_execution(db, execution_id)
    except WorkflowError as e:
        status_code = 404 if "not found" in str(e) else 400
        raise HTTPException(status_code=status_code, detail=str(e))
    return {"status": "cancelled", "execution": execution_to_dict(execution)}


@router.post("/executions/resume")
async def resume_executions(request: ResumeRequest, db: Session = Depends(get_db)):
    """Resume due waiting executions, or one specific waiting execution."""
    return resume_waiting(db, execution_id=request.execution_id)


@router.post("/events")
async def fire_event(request: EventRequest, db: Session = Depends(get_db)):
    """Resume executions waiting for an event."""
    return resume_on_event(db, request.event_type, request.data)


# =============================================================================
# Definition Endpoints
# =============================================================================

@router.get("", response_model=List[WorkflowResponse])
async def list_workflows(
    status: Optional[str] = None,
    project_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db)
):
    return WorkflowService(db).list_workflows(status=status, project_id=project_id, limit=limit, offset=offset)


@router.post("", response_model=WorkflowDetailResponse)
async def create_workflow(request: WorkflowCreate, db: Session = Depends(get_db)):
    """Create a draft workflow, optionally with its graph."""
    service = WorkflowService(db)
    try:
        workflow = service.create_workflow(
            name=request.name,
            description=request.description,
            project_id=request.project_id,
            created_by=request.created_by,
            graph=request.graph
        )
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    return _detail(service, workflow)


@router.get("/{workflow_id}", response_model=WorkflowDetailResponse)
async def get_workflow(workflow_id: str, db: Session = Depends(get_db)):
    service = WorkflowService(db)
    workflow = service.get_workflow(workflow_id)
    if not workflow:
        raise HTTPException(status_code=404, detail=f"Workflow '{workflow_id}' not found")
    return _detail(service, workflow)


@router.put("/{workflow_id}", response_model=WorkflowResponse)
async def update_workflow(workflow_id: str, request: WorkflowUpdate, db: Session = Depends(get_db)):
    workflow = WorkflowService(db).update_workflow(
        workflow_id,
        name=request.name,
        description=request.description,
        project_id=request.project_id
    )
    if not workflow:
        raise HTTPException(status_code=404, detail=f"Workflow '{workflow_id}' not found")
    return workflow


@router.delete("/{workflow_id}")
async def delete_workflow(workflow_id: str, db: Session = Depends(get_db)):
    if not WorkflowService(db).delete_workflow(workflow_id):
        raise HTTPException(status_code=404, detail=f"Workflow '{workflow_id}' not found")
    return {"status": "deleted", "workflow_id": workflow_id}


@router.get("/{workflow_id}/graph")
async def get_graph(workflow_id: str, db: Session = Depends(get_db)):
    graph = WorkflowService(db).get_graph(workflow_id)
    if graph is None:
        raise HTTPException(status_code=404, detail=f"Workflow '{workflow_id}' not found")
    return graph.to_dict()


@router.put("/{workflow_id}/graph")
async def save_graph(workflow_id: str, graph: Dict[str, Any], db: Session = Depends(get_db)):
    """Replace the workflow's nodes and connections."""
    try:
        saved = WorkflowService(db).save_graph(workflow_id, graph)
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    if saved is None:
        raise HTTPException(status_code=404, detail=f"Workflow '{workflow_id}' not found")
    return saved.to_dict()


@router.post("/{workflow_id}/activate", response_model=WorkflowResponse)
async def activate_workflow(workflow_id: str, db: Session = Depends(get_db)):
    try:
        workflow = WorkflowService(db).activate(workflow_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not workflow:
        raise HTTPException(status_code=404, detail=f"Workflow '{workflow_id}' not found")
    return workflow


@router.post("/{workflow_id}/deactivate", response_model=WorkflowResponse)
async def deactivate_workflow(workflow_id: str, db: Session = Depends(get_db)):
    workflow = WorkflowService(db).deactivate(workflow_id)
    if not workflow:
        raise HTTPException(status_code=404, detail=f"Workflow '{workflow_id}' not found")
    return workflow


@router.post("/{workflow_id}/execute", response_model=ExecuteWorkflowResponse)
async def execute_workflow(workflow_id: str, request: ExecuteWorkflowRequest, db: Session = Depends(get_db)):
    """Run a workflow manually with the given trigger data."""
    try:
        result = workflow_engine.execute_workflow(
            db,
            workflow_id,
            request.trigger_data,
            execution_id=request.execution_id
        )
    except WorkflowError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return ExecuteWorkflowResponse(**result)


@router.get("/{workflow_id}/executions")
async def list_workflow_executions(
    workflow_id: str,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db)
):
    service = WorkflowService(db)
    if not service.get_workflow(workflow_id):
        raise HTTPException(status_code=404, detail=f"Workflow '{workflow_id}' not found")
    return [execution_to_dict(e) for e in service.list_executions(workflow_id, status, limit, offset)]
