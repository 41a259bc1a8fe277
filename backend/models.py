"""
FormFlow Database Models

Core entities: user profiles, forms and their fields, submissions, assignments,
notifications, and the workflow graph with its executions and per-node logs.
"""

from sqlalchemy import Column, Integer, String, Text, ForeignKey, DateTime, Boolean, JSON, Float
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import relationship
from datetime import datetime
from enum import Enum as PyEnum
import uuid


def generate_uuid() -> str:
    return str(uuid.uuid4())


def generate_submission_ref_id() -> str:
    """Short human readable reference, e.g. "SUB-3F9A1C2B"."""
    return f"SUB-{uuid.uuid4().hex[:8].upper()}"


Base = declarative_base()


class WorkflowDefinitionStatus(str, PyEnum):
    """Lifecycle of a workflow definition"""
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"


class ApprovalStatus(str, PyEnum):
    """Approval state of a form submission"""
    PENDING = "pending"
    APPROVED = "approved"
    DISAPPROVED = "disapproved"
    REJECTED = "rejected"


class UserProfile(Base):
    """Application user"""
    __tablename__ = "user_profiles"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    email = Column(String(255), unique=True, index=True, nullable=False)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    role = Column(String(50), default="user", nullable=False)
    status = Column(String(50), default="active", nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Form(Base):
    """Form definition"""
    __tablename__ = "forms"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(50), default="draft", nullable=False)  # draft, active, approved, ... (lifecycle)
    created_by = Column(String(255), nullable=True)  # User id or email of the owner
    project_id = Column(String(36), nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    fields = relationship("FormField", back_populates="form", cascade="all, delete-orphan",
                          order_by="FormField.field_order")
    submissions = relationship("FormSubmission", back_populates="form", cascade="all, delete-orphan")


class FormField(Base):
    """Single field on a form"""
    __tablename__ = "form_fields"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    form_id = Column(String(36), ForeignKey("forms.id", ondelete="CASCADE"), nullable=False, index=True)
    field_type = Column(String(50), nullable=False)
    label = Column(String(255), nullable=False)
    required = Column(Boolean, default=False)
    options = Column(JSON, nullable=True)
    custom_config = Column(JSON, nullable=True)  # Type-specific config (calculation, query, access, ...)
    field_order = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    form = relationship("Form", back_populates="fields")


class FormSubmission(Base):
    """A submitted record for a form"""
    __tablename__ = "form_submissions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    form_id = Column(String(36), ForeignKey("forms.id", ondelete="CASCADE"), nullable=False, index=True)
    submission_data = Column(JSON, default=dict)  # {field_id: value}
    submission_ref_id = Column(String(50), default=generate_submission_ref_id, index=True)  # Human readable reference
    submitted_by = Column(String(36), nullable=True)
    submitted_at = Column(DateTime, default=datetime.utcnow)
    approval_status = Column(String(50), default=ApprovalStatus.PENDING.value)
    approval_notes = Column(Text, nullable=True)
    approval_timestamp = Column(DateTime, nullable=True)
    approved_by = Column(String(36), nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    form = relationship("Form", back_populates="submissions")


class FormAssignment(Base):
    """A form assigned to a user, typically by a workflow"""
    __tablename__ = "form_assignments"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    form_id = Column(String(36), ForeignKey("forms.id", ondelete="CASCADE"), nullable=False, index=True)
    assigned_to_user_id = Column(String(36), nullable=True)
    assigned_to_email = Column(String(255), nullable=True)
    assigned_by_user_id = Column(String(36), nullable=True)
    assignment_type = Column(String(50), default="manual")  # manual or workflow
    workflow_execution_id = Column(String(36), nullable=True)
    status = Column(String(50), default="pending")
    notes = Column(Text, nullable=True)
    due_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Notification(Base):
    """In-app notification"""
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, default=dict)
    read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Workflow(Base):
    """Workflow definition (graph container)"""
    __tablename__ = "workflows"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(50), default=WorkflowDefinitionStatus.DRAFT.value, nullable=False)
    project_id = Column(String(36), nullable=True, index=True)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    nodes = relationship("WorkflowNode", back_populates="workflow", cascade="all, delete-orphan")
    connections = relationship("WorkflowConnection", back_populates="workflow", cascade="all, delete-orphan")
    executions = relationship("WorkflowExecution", back_populates="workflow", cascade="all, delete-orphan")


class WorkflowNode(Base):
    """Typed node in a workflow graph"""
    __tablename__ = "workflow_nodes"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    workflow_id = Column(String(36), ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    node_type = Column(String(50), nullable=False)  # start, action, condition, approval, notification, wait, end
    label = Column(String(255), nullable=True)
    config = Column(JSON, default=dict)
    position_x = Column(Float, default=0)
    position_y = Column(Float, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

    workflow = relationship("Workflow", back_populates="nodes")


class WorkflowConnection(Base):
    """Directed edge between two workflow nodes"""
    __tablename__ = "workflow_connections"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    workflow_id = Column(String(36), ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    source_node_id = Column(String(36), nullable=False, index=True)
    target_node_id = Column(String(36), nullable=False)
    source_handle = Column(String(50), nullable=True)  # "true" / "false" / switch path for condition nodes
    target_handle = Column(String(50), nullable=True)
    condition_type = Column(String(50), nullable=True)  # true, false, default, or unset
    condition_config = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    workflow = relationship("Workflow", back_populates="connections")


class WorkflowExecution(Base):
    """One run of a workflow"""
    __tablename__ = "workflow_executions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    workflow_id = Column(String(36), ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(50), default="pending", nullable=False, index=True)
    current_node_id = Column(String(36), nullable=True)
    trigger_data = Column(JSON, default=dict)
    execution_data = Column(JSON, default=dict)
    form_submission_id = Column(String(36), nullable=True)
    trigger_submission_id = Column(String(36), nullable=True)
    submitter_id = Column(String(36), nullable=True)
    form_owner_id = Column(String(36), nullable=True)
    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    # Suspension state (set by wait nodes, cleared on resume)
    wait_node_id = Column(String(36), nullable=True)
    wait_config = Column(JSON, nullable=True)
    scheduled_resume_at = Column(DateTime, nullable=True, index=True)

    # Relationships
    workflow = relationship("Workflow", back_populates="executions")
    logs = relationship("WorkflowInstanceLog", back_populates="execution", cascade="all, delete-orphan",
                        order_by="WorkflowInstanceLog.execution_order")


class WorkflowInstanceLog(Base):
    """Per-node execution record"""
    __tablename__ = "workflow_instance_logs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    execution_id = Column(String(36), ForeignKey("workflow_executions.id", ondelete="CASCADE"), nullable=False, index=True)
    node_id = Column(String(36), nullable=False)
    node_type = Column(String(50), nullable=False)
    node_label = Column(String(255), nullable=True)
    status = Column(String(50), nullable=False)  # running, completed, failed, ignored
    input_data = Column(JSON, nullable=True)
    output_data = Column(JSON, nullable=True)
    action_type = Column(String(50), nullable=True)
    action_details = Column(JSON, nullable=True)
    action_result = Column(JSON, nullable=True)
    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    execution_order = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

    execution = relationship("WorkflowExecution", back_populates="logs")
