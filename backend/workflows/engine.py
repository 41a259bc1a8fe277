"""
Workflow Engine

Walks a workflow graph for one execution: creates the execution row, runs
nodes depth-first (children in connection order), writes a log row per node,
and settles the execution status when the walk ends.

Executions can be suspended by wait nodes or by condition nodes that are still
waiting for field values; the resumer re-enters the walk with continue_from_node.
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from config import settings
from models import Workflow, WorkflowExecution, WorkflowInstanceLog, WorkflowNode
from schemas.workflow import (
    ExecutionContext,
    ExecutionStatus,
    NodeExecutionError,
    NodeExecutionResult,
    NodeLogStatus,
    NodeType,
    WorkflowError,
)
from .branches import next_execution_order
from .node_executors import execute_node_by_type

logger = logging.getLogger(__name__)


def _is_paused(node: WorkflowNode, result: NodeExecutionResult) -> bool:
    """A wait node that suspended the execution, or a condition waiting for values."""
    output = result.output or {}
    if node.node_type == NodeType.WAIT.value and output.get("waited") is True:
        return True
    return node.node_type == NodeType.CONDITION.value and output.get("waitingForValue") is True


def log_to_dict(log: WorkflowInstanceLog) -> Dict[str, Any]:
    return {
        "id": log.id,
        "node_id": log.node_id,
        "node_type": log.node_type,
        "node_label": log.node_label,
        "status": log.status,
        "input_data": log.input_data,
        "output_data": log.output_data,
        "action_type": log.action_type,
        "action_details": log.action_details,
        "error_message": log.error_message,
        "execution_order": log.execution_order,
        "duration_ms": log.duration_ms,
        "started_at": log.started_at.isoformat() if log.started_at else None,
        "completed_at": log.completed_at.isoformat() if log.completed_at else None,
    }


def execution_to_dict(execution: WorkflowExecution, include_logs: bool = False) -> Dict[str, Any]:
    data = {
        "id": execution.id,
        "workflow_id": execution.workflow_id,
        "status": execution.status,
        "current_node_id": execution.current_node_id,
        "trigger_data": execution.trigger_data,
        "execution_data": execution.execution_data,
        "form_submission_id": execution.form_submission_id,
        "submitter_id": execution.submitter_id,
        "form_owner_id": execution.form_owner_id,
        "wait_node_id": execution.wait_node_id,
        "wait_config": execution.wait_config,
        "scheduled_resume_at": execution.scheduled_resume_at.isoformat() if execution.scheduled_resume_at else None,
        "started_at": execution.started_at.isoformat() if execution.started_at else None,
        "completed_at": execution.completed_at.isoformat() if execution.completed_at else None,
        "error_message": execution.error_message,
    }
    if include_logs:
        data["logs"] = [log_to_dict(log) for log in execution.logs]
    return data


class WorkflowEngine:
    """
    Executes workflow graphs stored in the database.

    The engine:
    1. Creates (or adopts) an execution row in "running" state
    2. Runs the start node, then each node's children depth-first
    3. Caps how often one node may run so loops terminate
    4. Leaves the execution "waiting" when a node suspended it
    5. Otherwise marks the execution completed or failed
    """

    def __init__(self, max_loop_iterations: Optional[int] = None):
        self.max_loop_iterations = max_loop_iterations or settings.WORKFLOW_MAX_LOOP_ITERATIONS

    # =========================================================================
    # Public API
    # =========================================================================

    def execute_workflow(
        self,
        db: Session,
        workflow_id: str,
        trigger_data: Dict[str, Any],
        execution_id: Optional[str] = None,
        form_owner_id: Optional[str] = None,
        start_node_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Run a workflow from its start node (or the given start node).

        Returns {"executionId", "success", "error", "isWaiting"}.
        """
        workflow = db.query(Workflow).filter(Workflow.id == workflow_id).first()
        if not workflow:
            raise WorkflowError(f"Workflow '{workflow_id}' not found")

        query = db.query(WorkflowNode).filter(
            WorkflowNode.workflow_id == workflow_id,
            WorkflowNode.node_type == NodeType.START.value
        )
        if start_node_id:
            query = query.filter(WorkflowNode.id == start_node_id)
        start_node = query.first()

        trigger_data = trigger_data or {}
        execution = self._open_execution(db, workflow_id, trigger_data, execution_id, form_owner_id, start_node)

        if not start_node:
            self._finish(db, execution, success=False, error="No start node found")
            return {"executionId": execution.id, "success": False, "error": "No start node found", "isWaiting": False}

        logger.info(f"Executing workflow {workflow_id} ({workflow.name}) as execution {execution.id}")
        ctx = ExecutionContext(
            execution_id=execution.id,
            workflow_id=workflow_id,
            trigger_data=trigger_data,
            execution_data=dict(execution.execution_data or {}),
        )
        result = self._execute_node(db, start_node.id, trigger_data, ctx)

        db.refresh(execution)
        if not result.success:
            # A failed branch fails the execution even if a sibling branch parked it
            self._clear_wait(execution)
            self._finish(db, execution, success=False, error=result.error)
        elif execution.status == ExecutionStatus.RUNNING.value:
            self._finish(db, execution, success=True)
        elif execution.status == ExecutionStatus.WAITING.value:
            logger.info(f"Execution {execution.id} is waiting at node {execution.wait_node_id}")

        return {
            "executionId": execution.id,
            "success": result.success,
            "error": result.error,
            "isWaiting": execution.status == ExecutionStatus.WAITING.value,
        }

    def continue_from_node(
        self,
        db: Session,
        execution_id: str,
        node_id: str,
        input_data: Optional[Dict[str, Any]] = None
    ) -> NodeExecutionResult:
        """Re-enter the walk of an existing execution at a node (used after a wait)."""
        return self.continue_from_nodes(db, execution_id, [node_id], input_data)

    def continue_from_nodes(
        self,
        db: Session,
        execution_id: str,
        node_ids: List[str],
        input_data: Optional[Dict[str, Any]] = None
    ) -> NodeExecutionResult:
        """Run several pending nodes of an execution, then settle its status once."""
        execution = self._get_execution(db, execution_id)

        ctx = ExecutionContext(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            trigger_data=execution.trigger_data or {},
            execution_data=dict(execution.execution_data or {}),
        )
        result = NodeExecutionResult(success=True, is_terminal=True)
        for node_id in node_ids:
            result = self._execute_node(db, node_id, input_data or ctx.trigger_data, ctx)
            if not result.success:
                break

        db.refresh(execution)
        if not result.success:
            self._clear_wait(execution)
            self._finish(db, execution, success=False, error=result.error)
        elif execution.status == ExecutionStatus.RUNNING.value:
            self._finish(db, execution, success=True)
        return result

    def get_execution_state(self, db: Session, execution_id: str) -> Dict[str, Any]:
        """Execution row with its node logs in execution order."""
        return execution_to_dict(self._get_execution(db, execution_id), include_logs=True)

    def cancel_execution(self, db: Session, execution_id: str) -> WorkflowExecution:
        """Stop a running or waiting execution."""
        execution = self._get_execution(db, execution_id)
        if execution.status in (ExecutionStatus.COMPLETED.value, ExecutionStatus.FAILED.value):
            raise WorkflowError(f"Cannot cancel execution in status {execution.status}")

        self._clear_wait(execution)
        self._finish(db, execution, success=False, error="Cancelled")
        logger.info(f"Cancelled execution {execution_id}")
        return execution

    # =========================================================================
    # Graph walk
    # =========================================================================

    def _execute_node(
        self,
        db: Session,
        node_id: str,
        input_data: Dict[str, Any],
        ctx: ExecutionContext
    ) -> NodeExecutionResult:
        visits = ctx.increment(node_id)
        if visits > self.max_loop_iterations:
            logger.warning(
                f"Node {node_id} reached the loop limit ({self.max_loop_iterations}) "
                f"in execution {ctx.execution_id}, stopping branch"
            )
            return NodeExecutionResult(success=True, is_terminal=True)
        if visits > 1:
            logger.info(f"Re-executing node {node_id} (visit {visits})")

        node = db.query(WorkflowNode).filter(WorkflowNode.id == node_id).first()
        if not node:
            return NodeExecutionResult.failure(f"Node not found: {node_id}")

        execution = db.query(WorkflowExecution).filter(WorkflowExecution.id == ctx.execution_id).first()
        if execution and execution.status == ExecutionStatus.RUNNING.value:
            execution.current_node_id = node.id

        log = WorkflowInstanceLog(
            execution_id=ctx.execution_id,
            node_id=node.id,
            node_type=node.node_type,
            node_label=node.label,
            status=NodeLogStatus.RUNNING.value,
            input_data=input_data,
            started_at=datetime.utcnow(),
            execution_order=next_execution_order(db, ctx.execution_id),
        )
        db.add(log)
        db.commit()

        started = time.monotonic()
        try:
            result = execute_node_by_type(db, node, ctx)
        except NodeExecutionError as e:
            result = NodeExecutionResult.failure(str(e))
        except Exception as e:
            db.rollback()
            logger.error(f"Error executing node {node.id} ({node.node_type}): {e}", exc_info=True)
            result = NodeExecutionResult.failure(str(e) or "Node execution failed")

        paused = result.success and _is_paused(node, result)
        self._update_log(db, log, node, result, paused, int((time.monotonic() - started) * 1000))

        if not result.success:
            logger.warning(f"Node {node.id} ({node.node_type}) failed: {result.error}")
            return NodeExecutionResult.failure(result.error or "Node execution failed", output=result.output)

        if node.node_type == NodeType.END.value or result.is_terminal:
            logger.info(f"Branch ended at node {node.id}")
            return NodeExecutionResult(success=True, output=result.output, is_terminal=True)

        if paused:
            return NodeExecutionResult(success=True, output=result.output, is_terminal=False)

        if not result.next_nodes:
            return NodeExecutionResult(success=True, output=result.output, is_terminal=True)

        terminal = False
        for next_node_id in result.next_nodes:
            child = self._execute_node(db, next_node_id, result.output or input_data, ctx)
            if not child.success:
                return child
            terminal = terminal or child.is_terminal
        return NodeExecutionResult(success=True, output=result.output, is_terminal=terminal)

    def _update_log(
        self,
        db: Session,
        log: WorkflowInstanceLog,
        node: WorkflowNode,
        result: NodeExecutionResult,
        paused: bool,
        duration_ms: int
    ):
        if paused:
            log.status = NodeLogStatus.WAITING.value
        elif result.success:
            log.status = NodeLogStatus.COMPLETED.value
            log.completed_at = datetime.utcnow()
        else:
            log.status = NodeLogStatus.FAILED.value
            log.completed_at = datetime.utcnow()

        log.output_data = result.output or {}
        log.error_message = result.error
        log.duration_ms = duration_ms
        if result.action_details:
            log.action_details = result.action_details
            log.action_type = (node.config or {}).get("actionType") or result.action_details.get("actionType")
            log.action_result = {"success": result.success, "error": result.error}
        db.commit()

    # =========================================================================
    # Execution rows
    # =========================================================================

    def _get_execution(self, db: Session, execution_id: str) -> WorkflowExecution:
        execution = db.query(WorkflowExecution).filter(WorkflowExecution.id == execution_id).first()
        if not execution:
            raise WorkflowError(f"Execution '{execution_id}' not found")
        return execution

    def _open_execution(
        self,
        db: Session,
        workflow_id: str,
        trigger_data: Dict[str, Any],
        execution_id: Optional[str],
        form_owner_id: Optional[str],
        start_node: Optional[WorkflowNode]
    ) -> WorkflowExecution:
        execution = None
        if execution_id:
            execution = self._get_execution(db, execution_id)
        else:
            execution = WorkflowExecution(workflow_id=workflow_id)
            db.add(execution)

        execution.status = ExecutionStatus.RUNNING.value
        execution.trigger_data = trigger_data
        execution.execution_data = dict(execution.execution_data or {})
        execution.form_submission_id = trigger_data.get("submissionId")
        execution.trigger_submission_id = trigger_data.get("submissionId")
        execution.submitter_id = trigger_data.get("submitterId")
        execution.form_owner_id = form_owner_id or trigger_data.get("formOwnerId")
        execution.current_node_id = start_node.id if start_node else None
        execution.started_at = datetime.utcnow()
        db.commit()
        db.refresh(execution)
        return execution

    def _clear_wait(self, execution: WorkflowExecution):
        execution.wait_node_id = None
        execution.wait_config = None
        execution.scheduled_resume_at = None

    def _finish(self, db: Session, execution: WorkflowExecution, success: bool, error: Optional[str] = None):
        execution.status = ExecutionStatus.COMPLETED.value if success else ExecutionStatus.FAILED.value
        execution.completed_at = datetime.utcnow()
        execution.error_message = None if success else error
        db.commit()
        logger.info(f"Execution {execution.id} {execution.status}" + (f": {error}" if error and not success else ""))


# Global engine instance
workflow_engine = WorkflowEngine()
