"""Shared fixtures: an in-memory database, an API client bound to it, and factories."""

import os

# Keep the module-level engine in database.py off the filesystem
os.environ.setdefault("DATABASE_URL", "sqlite://")

from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from database import get_db
from models import (
    Base,
    Form,
    FormField,
    FormSubmission,
    UserProfile,
    Workflow,
    WorkflowConnection,
    WorkflowDefinitionStatus,
    WorkflowNode,
    generate_uuid,
)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine) -> Session:
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(db) -> TestClient:
    from main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


# =============================================================================
# Factories
# =============================================================================

def make_user(db: Session, email: str = "user@example.com", role: str = "user") -> UserProfile:
    user = UserProfile(email=email, first_name="Test", last_name="User", role=role)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_form(
    db: Session,
    name: str = "Request Form",
    fields: Sequence[Dict[str, Any]] = (),
    created_by: Optional[str] = None,
    status: str = "active"
) -> Form:
    form = Form(name=name, created_by=created_by, status=status)
    db.add(form)
    db.flush()
    for index, data in enumerate(fields):
        db.add(FormField(
            id=data.get("id") or generate_uuid(),
            form_id=form.id,
            field_type=data.get("field_type", "text"),
            label=data.get("label", f"Field {index + 1}"),
            custom_config=data.get("custom_config"),
            field_order=index,
        ))
    db.commit()
    db.refresh(form)
    return form


def make_submission(
    db: Session,
    form: Form,
    data: Optional[Dict[str, Any]] = None,
    submitted_by: Optional[str] = None
) -> FormSubmission:
    submission = FormSubmission(form_id=form.id, submission_data=data or {}, submitted_by=submitted_by)
    db.add(submission)
    db.commit()
    db.refresh(submission)
    return submission


def make_workflow(
    db: Session,
    nodes: List[Tuple[str, str, Dict[str, Any]]],
    connections: List[Tuple[str, str, Optional[str]]] = (),
    status: str = WorkflowDefinitionStatus.ACTIVE.value,
    name: str = "Test Workflow"
) -> Tuple[Workflow, Dict[str, str]]:
    """
    Build a workflow from (key, node_type, config) nodes and (source, target, condition_type)
    connections. Returns the workflow and a key -> node id map.
    """
    workflow = Workflow(name=name, status=status)
    db.add(workflow)
    db.flush()

    ids: Dict[str, str] = {}
    for key, node_type, config in nodes:
        node = WorkflowNode(workflow_id=workflow.id, node_type=node_type, label=key, config=config or {})
        db.add(node)
        db.flush()
        ids[key] = node.id

    for source, target, condition_type in connections:
        db.add(WorkflowConnection(
            workflow_id=workflow.id,
            source_node_id=ids[source],
            target_node_id=ids[target],
            source_handle=condition_type,
            condition_type=condition_type,
        ))
        db.flush()

    db.commit()
    return workflow, ids


def trigger_data_for(submission: FormSubmission, **extra: Any) -> Dict[str, Any]:
    data = {
        "formId": submission.form_id,
        "submissionId": submission.id,
        "submissionData": dict(submission.submission_data or {}),
        "submitterId": submission.submitted_by,
    }
    data.update(extra)
    return data
