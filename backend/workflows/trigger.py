"""
Workflow Trigger

Finds the active workflows whose start node listens to a form and runs them
for a new submission.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from models import Form, Workflow, WorkflowNode, WorkflowDefinitionStatus
from schemas.workflow import NodeType, TriggerType, WorkflowError
from services.user_service import UserService, is_uuid
from .engine import workflow_engine

logger = logging.getLogger(__name__)

SUBMISSION_TRIGGERS = (TriggerType.FORM_SUBMISSION.value, TriggerType.FORM_COMPLETION.value)


def find_matching_workflows(db: Session, form_id: str) -> List[Tuple[Workflow, WorkflowNode]]:
    """Active workflows with a start node triggered by submissions of this form."""
    workflows = db.query(Workflow).filter(
        Workflow.status == WorkflowDefinitionStatus.ACTIVE.value
    ).order_by(Workflow.created_at).all()

    matches = []
    for workflow in workflows:
        start_nodes = db.query(WorkflowNode).filter(
            WorkflowNode.workflow_id == workflow.id,
            WorkflowNode.node_type == NodeType.START.value
        ).all()
        for node in start_nodes:
            config = node.config or {}
            trigger_type = config.get("triggerType") or TriggerType.FORM_SUBMISSION.value
            if trigger_type in SUBMISSION_TRIGGERS and config.get("triggerFormId") == form_id:
                matches.append((workflow, node))
                break

    logger.info(f"Found {len(matches)} workflow(s) triggered by form {form_id}")
    return matches


def resolve_form_owner(db: Session, form_id: str) -> Optional[str]:
    """User id of the form's creator; created_by may hold either an id or an email."""
    form = db.query(Form).filter(Form.id == form_id).first()
    if not form or not form.created_by:
        return None
    if is_uuid(form.created_by):
        return form.created_by
    user = UserService(db).get_user_by_email(form.created_by)
    return user.id if user else None


def build_trigger_data(
    form_id: str,
    submission_id: Optional[str],
    submission_data: Dict[str, Any],
    submitter_id: Optional[str],
    form_owner_id: Optional[str],
    submitter_email: Optional[str] = None
) -> Dict[str, Any]:
    submission_data = submission_data or {}
    name = submission_data.get("submitterName") or (
        f"{submission_data.get('firstName') or ''} {submission_data.get('lastName') or ''}".strip()
    )
    return {
        "formId": form_id,
        "submissionData": submission_data,
        "submissionId": submission_id,
        "submitterId": submitter_id,
        "formOwnerId": form_owner_id,
        "userEmail": submission_data.get("userEmail") or submission_data.get("email") or submitter_email,
        "submitterName": name,
    }


def trigger_for_submission(
    db: Session,
    form_id: str,
    submission_id: Optional[str],
    submission_data: Dict[str, Any],
    submitter_id: Optional[str] = None,
    submitter_email: Optional[str] = None
) -> List[Dict[str, Any]]:
    """Run every matching workflow for a submission. Returns one result per workflow."""
    matches = find_matching_workflows(db, form_id)
    if not matches:
        return []

    results = []
    for workflow, start_node in matches:
        try:
            form_owner_id = resolve_form_owner(db, form_id)
            trigger_data = build_trigger_data(
                form_id, submission_id, submission_data, submitter_id, form_owner_id, submitter_email
            )
            outcome = workflow_engine.execute_workflow(
                db,
                workflow.id,
                trigger_data,
                form_owner_id=form_owner_id,
                start_node_id=start_node.id,
            )
            result = {
                "workflowId": workflow.id,
                "workflowName": workflow.name,
                "executionId": outcome["executionId"],
                "success": outcome["success"],
            }
            if outcome.get("error"):
                result["error"] = outcome["error"]
            results.append(result)
        except WorkflowError as e:
            logger.error(f"Workflow {workflow.id} could not be triggered: {e}")
            results.append({
                "workflowId": workflow.id,
                "workflowName": workflow.name,
                "executionId": None,
                "success": False,
                "error": str(e),
            })

    return results
