"""
Workflow Service

CRUD for workflow definitions and their node graphs.
"""

from typing import Any, Dict, List, Optional
from sqlalchemy.orm import Session
from sqlalchemy import desc
from datetime import datetime
import logging

from models import (
    Workflow,
    WorkflowNode,
    WorkflowConnection,
    WorkflowExecution,
    WorkflowDefinitionStatus,
    generate_uuid,
)
from schemas.workflow import WorkflowGraph, WorkflowNodeSpec, ConnectionSpec
from services.user_service import is_uuid

logger = logging.getLogger(__name__)


def node_to_spec(node: WorkflowNode) -> WorkflowNodeSpec:
    return WorkflowNodeSpec(
        id=node.id,
        node_type=node.node_type,
        label=node.label,
        config=node.config or {},
        position_x=node.position_x or 0,
        position_y=node.position_y or 0,
    )


def connection_to_spec(connection: WorkflowConnection) -> ConnectionSpec:
    return ConnectionSpec(
        id=connection.id,
        source_node_id=connection.source_node_id,
        target_node_id=connection.target_node_id,
        source_handle=connection.source_handle,
        target_handle=connection.target_handle,
        condition_type=connection.condition_type,
        condition_config=connection.condition_config,
    )


class WorkflowService:
    """Service for workflow definitions."""

    def __init__(self, db: Session):
        self.db = db

    def create_workflow(
        self,
        name: str,
        description: Optional[str] = None,
        project_id: Optional[str] = None,
        created_by: Optional[str] = None,
        graph: Optional[Dict[str, Any]] = None
    ) -> Workflow:
        """Create a draft workflow. A graph, when given, is validated and saved with it."""
        workflow = Workflow(
            name=name,
            description=description,
            project_id=project_id,
            created_by=created_by,
            status=WorkflowDefinitionStatus.DRAFT.value
        )
        self.db.add(workflow)
        self.db.flush()

        if graph:
            self._replace_graph(workflow, WorkflowGraph.from_dict(graph))

        self.db.commit()
        self.db.refresh(workflow)
        logger.info(f"Created workflow {workflow.id} '{name}'")
        return workflow

    def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        return self.db.query(Workflow).filter(Workflow.id == workflow_id).first()

    def list_workflows(
        self,
        status: Optional[str] = None,
        project_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Workflow]:
        query = self.db.query(Workflow)
        if status:
            query = query.filter(Workflow.status == status)
        if project_id:
            query = query.filter(Workflow.project_id == project_id)
        return query.order_by(desc(Workflow.updated_at)).offset(offset).limit(limit).all()

    def update_workflow(
        self,
        workflow_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        project_id: Optional[str] = None
    ) -> Optional[Workflow]:
        workflow = self.get_workflow(workflow_id)
        if not workflow:
            return None

        if name is not None:
            workflow.name = name
        if description is not None:
            workflow.description = description
        if project_id is not None:
            workflow.project_id = project_id

        workflow.updated_at = datetime.utcnow()
        self.db.commit()
        self.db.refresh(workflow)
        return workflow

    def delete_workflow(self, workflow_id: str) -> bool:
        workflow = self.get_workflow(workflow_id)
        if not workflow:
            return False
        self.db.delete(workflow)
        self.db.commit()
        logger.info(f"Deleted workflow {workflow_id}")
        return True

    # =========================================================================
    # Graph
    # =========================================================================

    def get_graph(self, workflow_id: str) -> Optional[WorkflowGraph]:
        workflow = self.get_workflow(workflow_id)
        if not workflow:
            return None
        nodes = self.db.query(WorkflowNode).filter(WorkflowNode.workflow_id == workflow_id).all()
        connections = self.db.query(WorkflowConnection).filter(
            WorkflowConnection.workflow_id == workflow_id
        ).all()
        return WorkflowGraph(
            nodes={n.id: node_to_spec(n) for n in nodes},
            connections=[connection_to_spec(c) for c in connections],
        )

    def save_graph(self, workflow_id: str, graph_data: Dict[str, Any]) -> Optional[WorkflowGraph]:
        """
        Replace a workflow's nodes and connections.

        Raises ValueError listing the problems when the graph is invalid.
        """
        workflow = self.get_workflow(workflow_id)
        if not workflow:
            return None

        graph = WorkflowGraph.from_dict(graph_data)
        self._replace_graph(workflow, graph)
        workflow.updated_at = datetime.utcnow()
        self.db.commit()
        return self.get_graph(workflow_id)

    def _replace_graph(self, workflow: Workflow, graph: WorkflowGraph):
        errors = graph.validate()
        if errors:
            raise ValueError(f"Invalid workflow graph: {', '.join(errors)}")

        self.db.query(WorkflowConnection).filter(WorkflowConnection.workflow_id == workflow.id).delete()
        self.db.query(WorkflowNode).filter(WorkflowNode.workflow_id == workflow.id).delete()
        self.db.flush()

        # Editor ids like "node-1" are swapped for database ids
        id_map = {
            node_id: node_id if is_uuid(node_id) else generate_uuid()
            for node_id in graph.nodes
        }

        for node_id, node in graph.nodes.items():
            self.db.add(WorkflowNode(
                id=id_map[node_id],
                workflow_id=workflow.id,
                node_type=node.node_type,
                label=node.label,
                config=node.config or {},
                position_x=node.position_x,
                position_y=node.position_y
            ))

        for conn in graph.connections:
            self.db.add(WorkflowConnection(
                workflow_id=workflow.id,
                source_node_id=id_map[conn.source_node_id],
                target_node_id=id_map[conn.target_node_id],
                source_handle=conn.source_handle,
                target_handle=conn.target_handle,
                condition_type=conn.condition_type,
                condition_config=conn.condition_config
            ))

        self.db.flush()
        logger.info(f"Saved graph for workflow {workflow.id}: {len(graph.nodes)} nodes, {len(graph.connections)} connections")

    # =========================================================================
    # Status
    # =========================================================================

    def set_status(self, workflow_id: str, status: WorkflowDefinitionStatus) -> Optional[Workflow]:
        """Activate or deactivate a workflow. Activation requires a valid graph."""
        workflow = self.get_workflow(workflow_id)
        if not workflow:
            return None

        if status == WorkflowDefinitionStatus.ACTIVE:
            errors = self.get_graph(workflow_id).validate()
            if errors:
                raise ValueError(f"Cannot activate workflow: {', '.join(errors)}")

        workflow.status = status.value
        workflow.updated_at = datetime.utcnow()
        self.db.commit()
        self.db.refresh(workflow)
        logger.info(f"Workflow {workflow_id} is now {status.value}")
        return workflow

    def activate(self, workflow_id: str) -> Optional[Workflow]:
        return self.set_status(workflow_id, WorkflowDefinitionStatus.ACTIVE)

    def deactivate(self, workflow_id: str) -> Optional[Workflow]:
        return self.set_status(workflow_id, WorkflowDefinitionStatus.INACTIVE)

    # =========================================================================
    # Executions
    # =========================================================================

    def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[WorkflowExecution]:
        query = self.db.query(WorkflowExecution)
        if workflow_id:
            query = query.filter(WorkflowExecution.workflow_id == workflow_id)
        if status:
            query = query.filter(WorkflowExecution.status == status)
        return query.order_by(desc(WorkflowExecution.started_at)).offset(offset).limit(limit).all()
