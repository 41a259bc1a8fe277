"""
Workflow Resumer

Picks up executions suspended in "waiting" status and re-enters the graph walk:
- duration waits once scheduled_resume_at has passed (polled)
- event waits when a matching event is fired (resume_on_event)
- a specific execution on demand (resume_waiting(execution_id=...))
"""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from config import settings
from database import SessionLocal
from models import FormSubmission, WorkflowExecution, WorkflowInstanceLog
from schemas.workflow import ExecutionStatus, NodeLogStatus, WaitType
from .branches import BranchDiscovery
from .engine import workflow_engine

logger = logging.getLogger(__name__)


def _mark_wait_log_resumed(db: Session, execution: WorkflowExecution, wait_type: str, now: datetime) -> Dict[str, Any]:
    output = {
        "resumed": True,
        "resumedAt": now.isoformat(),
        "waitType": wait_type,
        "message": "Wait completed, workflow resumed",
    }
    log = db.query(WorkflowInstanceLog).filter(
        WorkflowInstanceLog.execution_id == execution.id,
        WorkflowInstanceLog.node_id == execution.wait_node_id,
        WorkflowInstanceLog.status == NodeLogStatus.WAITING.value
    ).order_by(WorkflowInstanceLog.execution_order.desc()).first()

    if log:
        log.status = NodeLogStatus.COMPLETED.value
        log.completed_at = now
        log.output_data = {**(log.output_data or {}), **output}
        if log.started_at:
            log.duration_ms = int((now - log.started_at).total_seconds() * 1000)
    return output


def _refresh_submission_data(db: Session, execution: WorkflowExecution):
    """Reload the trigger submission's data into the execution's trigger data."""
    submission_id = execution.trigger_submission_id or execution.form_submission_id
    if not submission_id:
        return
    submission = db.query(FormSubmission).filter(FormSubmission.id == submission_id).first()
    if submission:
        execution.trigger_data = {
            **(execution.trigger_data or {}),
            "submissionData": dict(submission.submission_data or {}),
            "approvalStatus": submission.approval_status,
        }


def _clear_wait(execution: WorkflowExecution):
    execution.wait_node_id = None
    execution.wait_config = None
    execution.scheduled_resume_at = None


def resume_execution(db: Session, execution: WorkflowExecution, now: Optional[datetime] = None) -> None:
    """Release one waiting execution and continue its walk."""
    now = now or datetime.utcnow()
    wait_config = execution.wait_config or {}
    wait_node_id = execution.wait_node_id
    wait_type = wait_config.get("waitType") or WaitType.DURATION.value

    resume_output = _mark_wait_log_resumed(db, execution, wait_type, now)

    # A condition node waiting for field values is evaluated again with fresh data
    if wait_config.get("reevaluate"):
        _refresh_submission_data(db, execution)
        execution.status = ExecutionStatus.RUNNING.value
        execution.execution_data = {
            **(execution.execution_data or {}),
            "resumedAt": now.isoformat(),
            "resumedFromWait": wait_node_id,
            "pendingNodes": [wait_node_id],
        }
        _clear_wait(execution)
        db.commit()
        logger.info(f"Re-evaluating condition node {wait_node_id} for execution {execution.id}")
        workflow_engine.continue_from_node(db, execution.id, wait_node_id)
        return

    next_nodes = BranchDiscovery(db, execution.workflow_id).get_next_nodes(wait_node_id) if wait_node_id else []

    if not next_nodes:
        execution.status = ExecutionStatus.COMPLETED.value
        execution.completed_at = now
        execution.execution_data = {**(execution.execution_data or {}), "completedByResume": True}
        _clear_wait(execution)
        db.commit()
        logger.info(f"Execution {execution.id} completed on resume (no nodes after wait)")
        return

    execution.status = ExecutionStatus.RUNNING.value
    execution.execution_data = {
        **(execution.execution_data or {}),
        "resumedAt": now.isoformat(),
        "resumedFromWait": wait_node_id,
        "pendingNodes": next_nodes,
    }
    _clear_wait(execution)
    db.commit()

    logger.info(f"Resuming execution {execution.id} at {len(next_nodes)} node(s) after wait {wait_node_id}")
    workflow_engine.continue_from_nodes(db, execution.id, next_nodes, resume_output)


def _resume_all(db: Session, executions: List[WorkflowExecution], total: int) -> Dict[str, Any]:
    resumed: List[str] = []
    errors: List[Dict[str, str]] = []

    for execution in executions:
        execution_id = execution.id
        try:
            resume_execution(db, execution)
            resumed.append(execution_id)
        except Exception as e:
            logger.error(f"Failed to resume execution {execution_id}: {e}", exc_info=True)
            db.rollback()
            failed = db.query(WorkflowExecution).filter(WorkflowExecution.id == execution_id).first()
            if failed:
                failed.status = ExecutionStatus.FAILED.value
                failed.completed_at = datetime.utcnow()
                failed.error_message = f"Failed to resume: {e}"
                db.commit()
            errors.append({"executionId": execution_id, "error": str(e)})

    return {
        "message": f"Resumed {len(resumed)} of {total} waiting execution(s)",
        "resumedCount": len(resumed),
        "totalWaiting": total,
        "resumedExecutions": resumed,
        "errors": errors,
    }


def resume_waiting(db: Session, execution_id: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Resume waiting executions.

    With an execution id, that execution is resumed regardless of its schedule.
    Otherwise every duration wait whose scheduled_resume_at has passed is resumed.
    """
    now = now or datetime.utcnow()
    query = db.query(WorkflowExecution).filter(WorkflowExecution.status == ExecutionStatus.WAITING.value)
    if execution_id:
        query = query.filter(WorkflowExecution.id == execution_id)
    else:
        query = query.filter(
            WorkflowExecution.scheduled_resume_at.isnot(None),
            WorkflowExecution.scheduled_resume_at <= now
        )

    executions = query.order_by(WorkflowExecution.scheduled_resume_at).all()
    if not executions:
        return {
            "message": "No waiting executions to resume",
            "resumedCount": 0,
            "totalWaiting": 0,
            "resumedExecutions": [],
            "errors": [],
        }
    return _resume_all(db, executions, len(executions))


def resume_on_event(db: Session, event_type: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Resume executions waiting for an event of this type.

    When the event data names a submissionId, only executions triggered by that
    submission are resumed.
    """
    data = data or {}
    waiting = db.query(WorkflowExecution).filter(
        WorkflowExecution.status == ExecutionStatus.WAITING.value
    ).all()

    submission_id = data.get("submissionId")
    matching = []
    for execution in waiting:
        config = execution.wait_config or {}
        if config.get("waitType") != WaitType.UNTIL_EVENT.value or config.get("eventType") != event_type:
            continue
        if submission_id and (execution.trigger_submission_id or execution.form_submission_id) not in (None, submission_id):
            continue
        matching.append(execution)

    logger.info(f"Found {len(matching)} execution(s) waiting for event {event_type}")
    return _resume_all(db, matching, len(matching))


# =============================================================================
# Background polling
# =============================================================================

_poll_thread: Optional[threading.Thread] = None
_stop_event = threading.Event()


def check_and_resume_waiting() -> Dict[str, Any]:
    """One poll cycle with its own session."""
    db = SessionLocal()
    try:
        return resume_waiting(db)
    finally:
        db.close()


def _poll_loop(interval: int):
    while not _stop_event.is_set():
        try:
            result = check_and_resume_waiting()
            if result["resumedCount"]:
                logger.info(result["message"])
        except Exception as e:
            logger.error(f"Error in resume poll cycle: {e}", exc_info=True)
        _stop_event.wait(interval)


def start_polling(interval_seconds: Optional[int] = None) -> bool:
    """Start resuming due executions on a background thread. Returns False if already polling."""
    global _poll_thread
    if _poll_thread is not None and _poll_thread.is_alive():
        logger.warning("Already polling for waiting workflows")
        return False

    interval = interval_seconds or settings.RESUME_POLL_INTERVAL_SECONDS
    _stop_event.clear()
    _poll_thread = threading.Thread(target=_poll_loop, args=(interval,), name="workflow-resumer", daemon=True)
    _poll_thread.start()
    logger.info(f"Started workflow resume polling (interval: {interval}s)")
    return True


def stop_polling(timeout: float = 5.0):
    global _poll_thread
    _stop_event.set()
    if _poll_thread is not None:
        _poll_thread.join(timeout)
        _poll_thread = None
    logger.info("Stopped workflow resume polling")


def is_polling() -> bool:
    return _poll_thread is not None and _poll_thread.is_alive()
