"""
Form-level actions: assigning forms to users, approving forms, moving a form
through its lifecycle, approving the triggering submission, and sending
notifications.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from models import Form, FormAssignment, FormSubmission
from schemas.workflow import NodeExecutionResult
from services.notification_service import NotificationService
from services.user_service import UserService, is_uuid
from .registry import ActionContext, register_action

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.utcnow().isoformat()


def _trigger_email(ctx: ActionContext) -> Optional[str]:
    return (
        ctx.trigger_data.get("userEmail")
        or ctx.trigger_data.get("email")
        or ctx.submission_data.get("email")
    )


# =============================================================================
# assign_form
# =============================================================================

def _resolve_assignee(ctx: ActionContext, assignment_config: Dict[str, Any]) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """Returns (user_id, email, error)."""
    users = UserService(ctx.db)
    assignment_type = assignment_config.get("type")

    if assignment_type == "form_submitter":
        email = _trigger_email(ctx)
        if not email and ctx.submitter_id:
            email = users.get_email(ctx.submitter_id)
        if not email:
            return None, None, f"No email found for form submitter. Submitter ID: {ctx.submitter_id}"
        return ctx.submitter_id, email, None

    if assignment_type == "specific_user" and assignment_config.get("email"):
        email = assignment_config["email"]
        user = users.get_user_by_email(email)
        return (user.id if user else None), email, None

    return None, None, f"Invalid assignment configuration: {assignment_config}"


@register_action("assign_form", "Assign a form to the submitter or a specific user", category="form")
def assign_form(ctx: ActionContext) -> NodeExecutionResult:
    config = ctx.config
    target_form_id = config.get("targetFormId")
    assignment_config = config.get("assignmentConfig") or {}
    details = {
        "actionType": "assign_form",
        "targetFormId": target_form_id,
        "assignmentConfig": assignment_config,
        "timestamp": _now_iso(),
    }

    if not target_form_id:
        error = "Target form ID is required for form assignment"
        return NodeExecutionResult.failure(error, action_details={**details, "validationError": error})

    if not assignment_config.get("type"):
        error = "Assignment configuration is required"
        return NodeExecutionResult.failure(error, action_details={**details, "validationError": error})

    target_form = ctx.db.query(Form).filter(Form.id == target_form_id).first()
    if not target_form:
        return NodeExecutionResult.failure(f"Target form not found: {target_form_id}", action_details=details)

    user_id, email, error = _resolve_assignee(ctx, assignment_config)
    if error:
        return NodeExecutionResult.failure(error, action_details={**details, "assigneeError": error})

    assignment = FormAssignment(
        form_id=target_form_id,
        assigned_to_user_id=user_id,
        assigned_to_email=email,
        assigned_by_user_id=ctx.submitter_id,
        assignment_type="workflow",
        workflow_execution_id=ctx.execution_id,
        status="pending",
        notes=f"Assigned via workflow: {target_form.name}",
    )
    ctx.db.add(assignment)
    ctx.db.commit()
    ctx.db.refresh(assignment)
    logger.info(f"Assigned form {target_form_id} to {email} (assignment {assignment.id})")

    notification_id = None
    if user_id:
        notification = NotificationService(ctx.db).create_notification(
            user_id=user_id,
            type="form_assignment",
            title="New Form Assignment",
            message=f"You have been assigned to work on form: {target_form.name}",
            data={
                "form_name": target_form.name,
                "assignment_id": assignment.id,
                "workflow_execution_id": ctx.execution_id,
                "action_required": True,
            },
        )
        notification_id = notification.id

    return NodeExecutionResult(
        success=True,
        output={
            "actionType": "assign_form",
            "success": True,
            "targetFormId": target_form_id,
            "targetFormName": target_form.name,
            "assignmentId": assignment.id,
            "assignedTo": email,
            "assignedUserId": user_id,
            "notificationSent": True,
            "notificationId": notification_id,
        },
        action_details={**details, "result": "success", "assignmentId": assignment.id, "assignedTo": email},
    )


# =============================================================================
# approve_form / update_form_lifecycle_status
# =============================================================================

@register_action("approve_form", "Set a form's status to approved", category="form")
def approve_form(ctx: ActionContext) -> NodeExecutionResult:
    target_form_id = ctx.config.get("targetFormId")
    form = ctx.db.query(Form).filter(Form.id == target_form_id).first() if target_form_id else None
    if not form:
        return NodeExecutionResult.failure(
            f"Target form not found: {target_form_id}",
            action_details={"actionType": "approve_form", "result": "failed"},
        )

    form.status = "approved"
    ctx.db.commit()
    logger.info(f"Form {target_form_id} approved by workflow execution {ctx.execution_id}")

    return NodeExecutionResult(
        success=True,
        output={"actionType": "approve_form", "targetFormId": target_form_id, "result": "approved"},
        action_details={"actionType": "approve_form", "result": "success", "targetFormId": target_form_id},
    )


@register_action("update_form_lifecycle_status", "Move a form to a new lifecycle status", category="form")
def update_form_lifecycle_status(ctx: ActionContext) -> NodeExecutionResult:
    config = ctx.config
    target_form_id = config.get("targetFormId")
    new_status = config.get("newStatus")
    details = {"actionType": "update_form_lifecycle_status", "result": "failed"}

    if not target_form_id:
        return NodeExecutionResult.failure("Target form ID is required for lifecycle status update", action_details=details)
    if not new_status:
        return NodeExecutionResult.failure("New status is required for form lifecycle update", action_details=details)

    form = ctx.db.query(Form).filter(Form.id == target_form_id).first()
    if not form:
        return NodeExecutionResult.failure(f"Target form not found: {target_form_id}", action_details=details)

    previous_status = form.status
    form.status = new_status
    form.updated_at = datetime.utcnow()
    ctx.db.commit()
    logger.info(f"Form {target_form_id} lifecycle status {previous_status} -> {new_status}")

    return NodeExecutionResult(
        success=True,
        output={
            "actionType": "update_form_lifecycle_status",
            "targetFormId": target_form_id,
            "targetFormName": config.get("targetFormName") or form.name,
            "previousStatus": previous_status,
            "newStatus": new_status,
        },
        action_details={
            "actionType": "update_form_lifecycle_status",
            "result": "success",
            "targetFormId": target_form_id,
            "newStatus": new_status,
        },
    )


# =============================================================================
# Submission approval (used by approval nodes)
# =============================================================================

def resolve_approval_action(config: Dict[str, Any]) -> str:
    """Find the configured approval action, defaulting to "approve"."""
    if config.get("approvalAction"):
        return config["approvalAction"]
    data = config.get("data") or {}
    if data.get("approvalAction"):
        return data["approvalAction"]
    if config.get("action"):
        return config["action"]
    return "approve"


def execute_approval(ctx: ActionContext) -> NodeExecutionResult:
    config = ctx.config
    approval_action = resolve_approval_action(config)

    if not ctx.submission_id:
        return NodeExecutionResult.failure(
            "Submission ID is required for approval action",
            action_details={"actionType": "approval", "result": "failed"},
        )

    submission = ctx.db.query(FormSubmission).filter(FormSubmission.id == ctx.submission_id).first()
    if not submission:
        return NodeExecutionResult.failure(
            f"Submission not found: {ctx.submission_id}",
            action_details={"actionType": "approval", "result": "failed"},
        )

    approved = approval_action == "approve"
    approval_status = "approved" if approved else "disapproved"
    notes = config.get("notes")
    approval_notes = notes or f"{'Approved' if approved else 'Disapproved'} via workflow"

    submission.approval_status = approval_status
    submission.approved_by = ctx.submitter_id
    submission.approval_timestamp = datetime.utcnow()
    submission.approval_notes = approval_notes
    ctx.db.commit()
    logger.info(f"Submission {ctx.submission_id} {approval_status} by workflow execution {ctx.execution_id}")

    if ctx.submitter_id:
        NotificationService(ctx.db).create_notification(
            user_id=ctx.submitter_id,
            type="approval_status",
            title=f"Form Submission {'Approved' if approved else 'Disapproved'}",
            message=f"Your form submission has been {approval_status}" + (f": {notes}" if notes else ""),
            data={
                "submission_id": ctx.submission_id,
                "approval_status": approval_status,
                "workflow_execution_id": ctx.execution_id,
                "notes": approval_notes,
            },
        )

    return NodeExecutionResult(
        success=True,
        output={
            "actionType": "approval",
            "approvalAction": approval_action,
            "approvalStatus": approval_status,
            "submissionId": ctx.submission_id,
            "approvedBy": ctx.submitter_id,
            "notes": approval_notes,
        },
        action_details={
            "actionType": "approval",
            "result": "success",
            "approvalAction": approval_action,
            "submissionId": ctx.submission_id,
            "approvalStatus": approval_status,
        },
    )


# =============================================================================
# send_notification
# =============================================================================

def _notification_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Notification settings may be nested under notificationConfig or flat on the node."""
    nested = config.get("notificationConfig") or config.get("notification")
    if nested:
        return nested
    if config.get("recipient") or config.get("subject") or config.get("message"):
        return {
            "recipient": config.get("recipient"),
            "subject": config.get("subject"),
            "message": config.get("message"),
            "type": config.get("notificationType") or "in_app",
            "specificEmail": config.get("specificEmail"),
            "specificUserId": config.get("specificUserId"),
            "emails": config.get("emails"),
            "dynamicFieldId": config.get("dynamicFieldId"),
        }
    return {}


def _resolve_recipients(ctx: ActionContext, notification_config: Dict[str, Any], recipient_type: str) -> List[Tuple[Optional[str], Optional[str]]]:
    """Returns a list of (user_id, email) pairs."""
    users = UserService(ctx.db)
    recipient_config = notification_config.get("recipientConfig") or {}

    if recipient_type in ("form_submitter", "submitter"):
        user_id = ctx.submitter_id
        email = _trigger_email(ctx) or users.get_email(user_id)
        return [(user_id, email)] if (user_id or email) else []

    if recipient_type == "form_owner":
        owner_id = ctx.trigger_data.get("formOwnerId")
        return [(owner_id, users.get_email(owner_id))] if owner_id else []

    if recipient_type == "specific_user":
        specific_id = notification_config.get("specificUserId") or recipient_config.get("specificUserId")
        specific_email = notification_config.get("specificEmail") or recipient_config.get("specificEmail")
        if specific_id:
            return [(specific_id, users.get_email(specific_id) or specific_email)]
        if specific_email:
            user = users.get_user_by_email(specific_email)
            return [(user.id if user else None, specific_email)]
        return []

    if recipient_type == "static":
        emails = recipient_config.get("emails") or notification_config.get("emails") or []
        recipients = []
        for email in emails:
            user = users.get_user_by_email(email)
            if user:
                recipients.append((user.id, user.email))
            else:
                logger.warning(f"No user found for static notification email {email}")
        return recipients

    if recipient_type == "dynamic_field":
        field_id = notification_config.get("dynamicFieldId") or recipient_config.get("dynamicFieldId")
        value = ctx.submission_data.get(field_id) if field_id else None
        if not value or not isinstance(value, str):
            return []
        if is_uuid(value):
            return [(value, users.get_email(value))]
        user = users.get_user_by_email(value)
        return [(user.id if user else None, value)]

    return []


def send_notification_from_config(ctx: ActionContext) -> NodeExecutionResult:
    notification_config = _notification_config(ctx.config)
    subject = notification_config.get("subject") or notification_config.get("title")
    message = notification_config.get("message")
    details = {"actionType": "send_notification", "result": "failed"}

    if not subject or not message:
        return NodeExecutionResult.failure("Subject and message are required for notification", action_details=details)

    recipient_type = (
        notification_config.get("recipient")
        or (notification_config.get("recipientConfig") or {}).get("type")
        or notification_config.get("recipientType")
        or "form_submitter"
    )
    recipients = _resolve_recipients(ctx, notification_config, recipient_type)
    if not recipients:
        return NodeExecutionResult.failure(
            f"No recipient found for notification. Recipient type: {recipient_type}",
            action_details=details,
        )

    notification_type = notification_config.get("type") or "in_app"
    notifications = NotificationService(ctx.db)
    created = 0
    if notification_type == "in_app":
        for user_id, _email in recipients:
            if not user_id:
                continue
            notifications.create_notification(
                user_id=user_id,
                type="workflow_notification",
                title=subject,
                message=message,
                data={
                    "workflow_execution_id": ctx.execution_id,
                    "workflow_id": ctx.workflow_id,
                    "notification_type": notification_type,
                    "source": "workflow",
                },
            )
            created += 1

    recipient_emails = [email for _, email in recipients if email]
    return NodeExecutionResult(
        success=True,
        output={
            "actionType": "send_notification",
            "notificationType": notification_type,
            "recipientType": recipient_type,
            "recipient": recipient_emails[0] if recipient_emails else None,
            "recipients": recipient_emails,
            "recipientUserIds": [uid for uid, _ in recipients if uid],
            "subject": subject,
            "notificationsSent": created,
            # Only in-app delivery is implemented
            "emailSent": False,
            "success": True,
        },
        action_details={
            "actionType": "send_notification",
            "result": "success",
            "notificationType": notification_type,
            "notificationsCreated": created,
        },
    )


@register_action("send_notification", "Send an in-app notification", category="notification")
def send_notification(ctx: ActionContext) -> NodeExecutionResult:
    return send_notification_from_config(ctx)
