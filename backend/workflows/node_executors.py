"""
Node Executors

One executor per node type. Every executor returns a NodeExecutionResult whose
next_nodes lists the children to run after it; the engine decides whether the
branch continues (end nodes are terminal, wait nodes pause the execution).
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from models import Form, FormSubmission, WorkflowExecution, WorkflowNode
from schemas.workflow import (
    ExecutionContext,
    ExecutionStatus,
    NodeExecutionError,
    NodeExecutionResult,
    NodeType,
    WaitType,
)
from .actions import ActionContext, get_action, execute_approval, send_notification_from_config
from .branches import BranchDiscovery, mark_nodes_as_ignored
from .conditions import ConditionEvaluator, ConditionResult, build_evaluation_context

logger = logging.getLogger(__name__)

WAIT_UNITS = {
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
}

# Event fired when a submission is edited; condition nodes waiting for a value listen for it
SUBMISSION_UPDATED_EVENT = "submission_updated"

NodeExecutor = Callable[[Session, WorkflowNode, ExecutionContext], NodeExecutionResult]


def _action_context(db: Session, node: WorkflowNode, ctx: ExecutionContext) -> ActionContext:
    return ActionContext(
        db=db,
        execution_id=ctx.execution_id,
        workflow_id=ctx.workflow_id,
        node_id=node.id,
        config=node.config or {},
        trigger_data=ctx.trigger_data,
    )


def _with_next(db: Session, node: WorkflowNode, result: NodeExecutionResult) -> NodeExecutionResult:
    result.next_nodes = BranchDiscovery(db, node.workflow_id).get_next_nodes(node.id)
    return result


# =============================================================================
# start / end
# =============================================================================

def execute_start_node(db: Session, node: WorkflowNode, ctx: ExecutionContext) -> NodeExecutionResult:
    config = node.config or {}
    return _with_next(db, node, NodeExecutionResult(
        success=True,
        output={
            "started": True,
            "message": "Workflow started successfully",
            "triggerType": config.get("triggerType"),
            "formId": ctx.trigger_data.get("formId"),
            "triggerData": ctx.trigger_data,
        },
    ))


def execute_end_node(db: Session, node: WorkflowNode, ctx: ExecutionContext) -> NodeExecutionResult:
    return NodeExecutionResult(
        success=True,
        output={"completed": True, "message": "Workflow completed successfully"},
        next_nodes=[],
        is_terminal=True,
    )


# =============================================================================
# action / approval / notification
# =============================================================================

def execute_action_node(db: Session, node: WorkflowNode, ctx: ExecutionContext) -> NodeExecutionResult:
    config = node.config or {}
    action_type = config.get("actionType")
    action = get_action(action_type) if action_type else None

    if action is None:
        logger.error(f"Unknown action type on node {node.id}: {action_type}")
        return _with_next(db, node, NodeExecutionResult.failure(
            f"Unknown action type: {action_type}",
            action_details={"actionType": action_type, "result": "failed"},
        ))

    result = action.executor(_action_context(db, node, ctx))
    if not result.output:
        result.output = {"action": action_type, "executed": result.success}
    return _with_next(db, node, result)


def execute_approval_node(db: Session, node: WorkflowNode, ctx: ExecutionContext) -> NodeExecutionResult:
    return _with_next(db, node, execute_approval(_action_context(db, node, ctx)))


def execute_notification_node(db: Session, node: WorkflowNode, ctx: ExecutionContext) -> NodeExecutionResult:
    return _with_next(db, node, send_notification_from_config(_action_context(db, node, ctx)))


# =============================================================================
# condition
# =============================================================================

def _evaluate_condition_config(db: Session, config: Dict[str, Any], ctx: ExecutionContext) -> Dict[str, Any]:
    """Returns {"type", "result": ConditionResult|None} for the node's configuration."""
    if not config.get("enhancedCondition") and not config.get("conditionConfig"):
        return {"type": "default", "result": None}

    form_status = None
    form_id = ctx.trigger_data.get("formId")
    if form_id:
        form = db.query(Form).filter(Form.id == form_id).first()
        form_status = form.status if form else None

    submission_status = None
    if ctx.submission_id:
        submission = db.query(FormSubmission).filter(FormSubmission.id == ctx.submission_id).first()
        submission_status = submission.approval_status if submission else None

    evaluator = ConditionEvaluator(build_evaluation_context(
        ctx.trigger_data,
        execution_id=ctx.execution_id,
        form_status=form_status,
        submission_status=submission_status,
    ))

    if config.get("enhancedCondition"):
        return {"type": "enhanced", "result": evaluator.evaluate_enhanced(config["enhancedCondition"])}
    return {"type": "legacy", "result": evaluator.evaluate(config["conditionConfig"])}


def _hold_for_values(db: Session, node: WorkflowNode, ctx: ExecutionContext, fields: List[str]) -> None:
    """Park the execution on this condition node until the submission is updated."""
    execution = db.query(WorkflowExecution).filter(WorkflowExecution.id == ctx.execution_id).first()
    if not execution:
        return
    execution.status = ExecutionStatus.WAITING.value
    execution.current_node_id = node.id
    execution.wait_node_id = node.id
    execution.wait_config = {
        "waitType": WaitType.UNTIL_EVENT.value,
        "eventType": SUBMISSION_UPDATED_EVENT,
        "reevaluate": True,
        "waitingFields": fields,
    }
    execution.scheduled_resume_at = None
    db.commit()


def execute_condition_node(db: Session, node: WorkflowNode, ctx: ExecutionContext) -> NodeExecutionResult:
    config = node.config or {}
    evaluation = _evaluate_condition_config(db, config, ctx)
    condition_type = evaluation["type"]
    result: Optional[ConditionResult] = evaluation["result"]

    if result is not None and not result.success:
        label = "Enhanced" if condition_type == "enhanced" else "Legacy"
        return NodeExecutionResult.failure(result.error or f"{label} condition evaluation failed")

    if result is not None and result.waiting_for_value:
        logger.info(f"Condition node {node.id} waiting for values: {result.waiting_fields}")
        _hold_for_values(db, node, ctx, result.waiting_fields)
        return NodeExecutionResult(
            success=True,
            output={
                "conditionType": condition_type,
                "conditionResult": False,
                "waitingForValue": True,
                "waitingFields": result.waiting_fields,
                "message": "Waiting for field values before evaluating condition",
            },
            next_nodes=[],
        )

    branches = BranchDiscovery(db, node.workflow_id)
    is_switch = (config.get("conditionConfig") or {}).get("type") == "switch" and condition_type == "legacy"

    if is_switch:
        next_path = str(result.result)
        all_paths = branches.get_switch_branches(node.id)
        taken = set(all_paths.get(next_path, []) + all_paths.get("default", []))
        ignored = [n for path, nodes in all_paths.items() if path not in (next_path, "default") for n in nodes]
        reason = f"Switch path '{next_path}' selected - branch ignored"
        condition_result: Any = next_path
    else:
        condition_result = True if result is None else bool(result.result)
        next_path = "true" if condition_result else "false"
        true_nodes, false_nodes = branches.get_conditional_branches(node.id)
        taken = set(true_nodes if condition_result else false_nodes)
        ignored = false_nodes if condition_result else true_nodes
        reason = f"Condition {'TRUE' if condition_result else 'FALSE'} - branch ignored"

    next_nodes = branches.get_next_nodes(node.id, next_path)
    # Nodes shared with the taken branch will still run
    ignored = [n for n in ignored if n not in taken]
    if ignored:
        mark_nodes_as_ignored(db, ctx.execution_id, ignored, reason)

    evaluation_details: Dict[str, Any] = {"type": condition_type}
    if result is None:
        evaluation_details.update({"result": True, "message": "No condition configured, defaulting to true"})
    else:
        evaluation_details.update({
            "evaluationResult": result.result,
            "evaluatedConditions": result.evaluated_conditions,
        })

    logger.info(f"Condition node {node.id}: path '{next_path}', {len(next_nodes)} next, {len(set(ignored))} ignored")
    return NodeExecutionResult(
        success=True,
        output={
            "conditionType": condition_type,
            "conditionResult": condition_result,
            "nextPath": next_path,
            "nextNodes": len(next_nodes),
            "ignoredNodes": len(set(ignored)),
            "evaluationDetails": evaluation_details,
        },
        next_nodes=next_nodes,
    )


# =============================================================================
# wait
# =============================================================================

def compute_resume_time(config: Dict[str, Any], now: Optional[datetime] = None) -> Optional[datetime]:
    """When a duration wait should be resumed; None for event waits."""
    if (config.get("waitType") or WaitType.DURATION.value) == WaitType.UNTIL_EVENT.value:
        return None
    now = now or datetime.utcnow()
    try:
        duration = float(config.get("waitDuration") or 1)
    except (TypeError, ValueError):
        duration = 1
    unit = WAIT_UNITS.get(config.get("waitUnit") or "minutes", WAIT_UNITS["minutes"])
    return now + unit * duration


def execute_wait_node(db: Session, node: WorkflowNode, ctx: ExecutionContext) -> NodeExecutionResult:
    config = node.config or {}
    wait_type = config.get("waitType") or WaitType.DURATION.value
    resume_at = compute_resume_time(config)

    wait_config = {
        "waitType": wait_type,
        "waitDuration": config.get("waitDuration") or 1,
        "waitUnit": config.get("waitUnit") or "minutes",
    }
    if wait_type == WaitType.UNTIL_EVENT.value:
        wait_config["eventType"] = config.get("eventType")

    execution = db.query(WorkflowExecution).filter(WorkflowExecution.id == ctx.execution_id).first()
    if execution:
        execution.status = ExecutionStatus.WAITING.value
        execution.current_node_id = node.id
        execution.wait_node_id = node.id
        execution.wait_config = wait_config
        execution.scheduled_resume_at = resume_at
        db.commit()

    logger.info(f"Execution {ctx.execution_id} waiting at node {node.id} ({wait_type}, resume at {resume_at})")
    return _with_next(db, node, NodeExecutionResult(
        success=True,
        output={
            "waited": True,
            "waitType": wait_type,
            "duration": wait_config["waitDuration"],
            "unit": wait_config["waitUnit"],
            "eventType": wait_config.get("eventType"),
            "scheduledResumeAt": resume_at.isoformat() if resume_at else None,
        },
    ))


# =============================================================================
# Dispatch
# =============================================================================

NODE_EXECUTORS: Dict[str, NodeExecutor] = {
    NodeType.START.value: execute_start_node,
    NodeType.ACTION.value: execute_action_node,
    NodeType.CONDITION.value: execute_condition_node,
    NodeType.APPROVAL.value: execute_approval_node,
    NodeType.NOTIFICATION.value: execute_notification_node,
    NodeType.WAIT.value: execute_wait_node,
    NodeType.END.value: execute_end_node,
}


def execute_node_by_type(db: Session, node: WorkflowNode, ctx: ExecutionContext) -> NodeExecutionResult:
    executor = NODE_EXECUTORS.get(node.node_type)
    if executor is None:
        raise NodeExecutionError(f"Unknown node type: {node.node_type}")
    return executor(db, node, ctx)
