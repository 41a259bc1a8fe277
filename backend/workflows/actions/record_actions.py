"""
Record actions: changing field values and statuses on submissions, creating
new records, and maintaining cross-reference links between records.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from config import settings
from models import FormField, FormSubmission
from schemas.workflow import NodeExecutionResult
from services.notification_service import NotificationService
from .registry import ActionContext, register_action

logger = logging.getLogger(__name__)

SUBMISSION_ACCESS_FIELD = "submission-access"


# =============================================================================
# Helpers
# =============================================================================

def _now_iso() -> str:
    return datetime.utcnow().isoformat()


def _has_value(value: Any) -> bool:
    return value is not None and value != ""


def get_path_value(obj: Any, path: Optional[str]) -> Any:
    """Strict dotted path lookup: returns None when any segment is missing."""
    if not path:
        return None
    current = obj
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return None
    return current


def resolve_dynamic_value(ctx: ActionContext, path: Optional[str]) -> Any:
    """A field id from the trigger submission, falling back to a dotted path into trigger data."""
    if path and path in ctx.submission_data:
        return ctx.submission_data[path]
    return get_path_value(ctx.trigger_data, path)


def validate_submission_access_value(value: Any, access_config: Dict[str, List[str]]) -> Optional[Dict[str, List[str]]]:
    """
    Keep only the users/groups that the target submission-access field allows.

    Returns None when the value is not a {"users": [...], "groups": [...]} object.
    """
    parsed = value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return None

    if not isinstance(parsed, dict):
        return None

    allowed_users = access_config.get("allowedUsers") or []
    allowed_groups = access_config.get("allowedGroups") or []
    return {
        "users": [u for u in parsed.get("users") or [] if u in allowed_users],
        "groups": [g for g in parsed.get("groups") or [] if g in allowed_groups],
    }


def _access_config(field: FormField) -> Dict[str, List[str]]:
    custom = field.custom_config or {}
    return {
        "allowedUsers": custom.get("allowedUsers") or [],
        "allowedGroups": custom.get("allowedGroups") or [],
    }


def _submission_access_configs(ctx: ActionContext, form_id: str) -> Dict[str, Dict[str, List[str]]]:
    fields = ctx.db.query(FormField).filter(
        FormField.form_id == form_id,
        FormField.field_type == SUBMISSION_ACCESS_FIELD
    ).all()
    return {f.id: _access_config(f) for f in fields}


def _apply_access_rules(
    target_field_id: str,
    value: Any,
    access_configs: Dict[str, Dict[str, List[str]]]
) -> Tuple[bool, Any]:
    """Returns (keep, value). Submission-access values with nothing allowed are dropped."""
    access = access_configs.get(target_field_id)
    if access is None:
        return True, value
    validated = validate_submission_access_value(value, access)
    if validated and (validated["users"] or validated["groups"]):
        return True, validated
    logger.info(f"Dropping value for submission-access field {target_field_id}: nothing allowed")
    return False, None


def _resolve_submitted_by(ctx: ActionContext) -> Optional[str]:
    mode = ctx.config.get("setSubmittedBy") or "trigger_submitter"
    if mode == "trigger_submitter":
        return ctx.submitter_id
    if mode == "specific_user":
        return ctx.config.get("specificSubmitterId")
    # "system"
    return None


def _record_count(config: Dict[str, Any]) -> int:
    try:
        requested = int(config.get("recordCount") or 1)
    except (TypeError, ValueError):
        requested = 1
    return min(max(requested, 1), settings.WORKFLOW_MAX_RECORDS_PER_ACTION)


def build_record_data(
    ctx: ActionContext,
    access_configs: Optional[Dict[str, Dict[str, List[str]]]] = None
) -> Dict[str, Any]:
    """
    Submission data for a new record: mapped trigger fields first, then
    explicit field values (which override mapped values). Empty values are skipped.
    """
    config = ctx.config
    access_configs = access_configs or {}
    data: Dict[str, Any] = {}

    if config.get("fieldConfigMode") == "field_mapping":
        for mapping in config.get("fieldMappings") or []:
            source_id = mapping.get("sourceFieldId")
            target_id = mapping.get("targetFieldId")
            if not source_id or not target_id:
                continue
            value = ctx.submission_data.get(source_id)
            if _has_value(value):
                keep, value = _apply_access_rules(target_id, value, access_configs)
                if keep:
                    data[target_id] = value

    for field_value in config.get("fieldValues") or []:
        field_id = field_value.get("fieldId")
        if not field_id:
            continue

        value = None
        if field_value.get("valueType") == "static":
            value = field_value.get("staticValue")
        elif field_value.get("valueType") == "dynamic":
            value = resolve_dynamic_value(ctx, field_value.get("dynamicValuePath"))

        if _has_value(value):
            keep, value = _apply_access_rules(field_id, value, access_configs)
            if keep:
                data[field_id] = value

    return data


# =============================================================================
# change_field_value
# =============================================================================

@register_action("change_field_value", "Set a field value on the trigger submission or all submissions of a form", category="record")
def change_field_value(ctx: ActionContext) -> NodeExecutionResult:
    config = ctx.config
    target_form_id = config.get("targetFormId")
    target_field_id = config.get("targetFieldId")
    value_type = config.get("valueType")
    details = {
        "actionType": "change_field_value",
        "targetFormId": target_form_id,
        "targetFieldId": target_field_id,
        "timestamp": _now_iso(),
    }

    if not target_form_id or not target_field_id or not value_type:
        return NodeExecutionResult.failure("Missing required configuration for field value change", action_details=details)

    if value_type == "static":
        new_value = config.get("staticValue")
    elif value_type == "dynamic":
        path = config.get("dynamicValuePath")
        if path and path in ctx.submission_data:
            new_value = ctx.submission_data[path]
        else:
            new_value = get_path_value(ctx.trigger_data, path)
        if new_value is None:
            return NodeExecutionResult.failure(
                f"Could not find value for field: {config.get('dynamicFieldName') or path}",
                action_details=details,
            )
    else:
        return NodeExecutionResult.failure(f"Unknown value type: {value_type}", action_details=details)

    target_field = ctx.db.query(FormField).filter(FormField.id == target_field_id).first()
    if target_field is not None and target_field.field_type == SUBMISSION_ACCESS_FIELD:
        validated = validate_submission_access_value(new_value, _access_config(target_field))
        if not validated or not (validated["users"] or validated["groups"]):
            return NodeExecutionResult.failure(
                "The users/groups from the source field are not allowed in the target submission-access field configuration",
                action_details=details,
            )
        new_value = validated

    if target_form_id != ctx.form_id:
        return _bulk_update_form(ctx, target_form_id, target_field_id, new_value, details)

    if not ctx.submission_id:
        return NodeExecutionResult.failure("No submission ID available to update", action_details=details)

    submission = ctx.db.query(FormSubmission).filter(FormSubmission.id == ctx.submission_id).first()
    if not submission:
        return NodeExecutionResult.failure(f"Failed to fetch submission: {ctx.submission_id}", action_details=details)

    current = dict(submission.submission_data or {})
    old_value = current.get(target_field_id)
    current[target_field_id] = new_value
    submission.submission_data = current
    ctx.db.commit()
    logger.info(f"Set field {target_field_id} on submission {submission.id}")

    return NodeExecutionResult(
        success=True,
        output={
            "submissionId": submission.id,
            "fieldId": target_field_id,
            "oldValue": old_value,
            "newValue": new_value,
            "updatedAt": _now_iso(),
        },
        action_details=details,
    )


def _bulk_update_form(
    ctx: ActionContext,
    form_id: str,
    field_id: str,
    new_value: Any,
    details: Dict[str, Any]
) -> NodeExecutionResult:
    """Set one field on every submission of a form, committing in batches."""
    submissions = ctx.db.query(FormSubmission).filter(
        FormSubmission.form_id == form_id
    ).order_by(FormSubmission.submitted_at).all()

    if not submissions:
        return NodeExecutionResult.failure("No submissions found in target form to update", action_details=details)

    batch_size = settings.WORKFLOW_BULK_UPDATE_BATCH_SIZE
    updated_ids: List[str] = []

    for start in range(0, len(submissions), batch_size):
        batch = submissions[start:start + batch_size]
        for submission in batch:
            data = dict(submission.submission_data or {})
            data[field_id] = new_value
            submission.submission_data = data
        try:
            ctx.db.commit()
            updated_ids.extend(s.id for s in batch)
        except SQLAlchemyError as e:
            ctx.db.rollback()
            logger.error(f"Batch update of form {form_id} failed at offset {start}: {e}")

    logger.info(f"Updated field {field_id} on {len(updated_ids)}/{len(submissions)} submissions of form {form_id}")
    return NodeExecutionResult(
        success=True,
        output={
            "targetFormId": form_id,
            "fieldId": field_id,
            "newValue": new_value,
            "updatedCount": len(updated_ids),
            "totalSubmissions": len(submissions),
            "updatedSubmissionIds": updated_ids,
            "updatedAt": _now_iso(),
        },
        action_details={**details, "updatedCount": len(updated_ids), "totalSubmissions": len(submissions)},
    )


# =============================================================================
# change_record_status
# =============================================================================

@register_action("change_record_status", "Change the approval status of the trigger submission", category="record")
def change_record_status(ctx: ActionContext) -> NodeExecutionResult:
    config = ctx.config
    new_status = config.get("newStatus")
    notes = config.get("statusNotes")
    details = {
        "actionType": "change_record_status",
        "targetFormId": config.get("targetFormId"),
        "newStatus": new_status,
        "timestamp": _now_iso(),
    }

    if not config.get("targetFormId") or not new_status:
        return NodeExecutionResult.failure("Missing required configuration for status change", action_details=details)

    if not ctx.submission_id:
        return NodeExecutionResult.failure("No submission ID available to update", action_details=details)

    submission = ctx.db.query(FormSubmission).filter(FormSubmission.id == ctx.submission_id).first()
    if not submission:
        return NodeExecutionResult.failure(f"Failed to fetch submission: {ctx.submission_id}", action_details=details)

    old_status = submission.approval_status
    submission.approval_status = new_status
    submission.approval_timestamp = datetime.utcnow()
    if notes:
        submission.approval_notes = notes
    if ctx.submitter_id:
        submission.approved_by = ctx.submitter_id
    ctx.db.commit()
    logger.info(f"Submission {submission.id} status {old_status} -> {new_status}")

    if submission.submitted_by:
        NotificationService(ctx.db).create_notification(
            user_id=submission.submitted_by,
            type="workflow",
            title="Submission Status Updated",
            message=f"Your submission status has been changed to: {new_status}",
            data={
                "submissionId": submission.id,
                "oldStatus": old_status,
                "newStatus": new_status,
                "notes": notes,
            },
        )

    return NodeExecutionResult(
        success=True,
        output={
            "submissionId": submission.id,
            "oldStatus": old_status,
            "newStatus": new_status,
            "notes": notes,
            "updatedAt": _now_iso(),
        },
        action_details=details,
    )


# =============================================================================
# create_record
# =============================================================================

@register_action("create_record", "Create one or more records in a form", category="record")
def create_record(ctx: ActionContext) -> NodeExecutionResult:
    config = ctx.config
    target_form_id = config.get("targetFormId")
    record_count = _record_count(config)
    details = {
        "actionType": "create_record",
        "targetFormId": target_form_id,
        "recordCount": record_count,
        "timestamp": _now_iso(),
    }

    if not target_form_id:
        return NodeExecutionResult.failure("Missing target form ID for record creation", action_details=details)

    access_configs = _submission_access_configs(ctx, target_form_id)
    submitted_by = _resolve_submitted_by(ctx)
    initial_status = config.get("initialStatus") or "pending"

    created_ids: List[str] = []
    for index in range(record_count):
        submission = FormSubmission(
            form_id=target_form_id,
            submission_data=build_record_data(ctx, access_configs),
            submitted_by=submitted_by,
            approval_status=initial_status,
        )
        try:
            ctx.db.add(submission)
            ctx.db.commit()
        except SQLAlchemyError as e:
            ctx.db.rollback()
            logger.error(f"Failed to create record {index + 1} in form {target_form_id}: {e}")
            return NodeExecutionResult.failure(
                f"Failed to create record {index + 1}: {e}",
                action_details={**details, "createdSoFar": len(created_ids), "failedAt": index + 1},
            )
        created_ids.append(submission.id)

    logger.info(f"Created {len(created_ids)} records in form {target_form_id}")
    return NodeExecutionResult(
        success=True,
        output={
            "createdRecordIds": created_ids,
            "recordCount": len(created_ids),
            "targetFormId": target_form_id,
            "createdAt": _now_iso(),
        },
        action_details={**details, "createdRecordIds": created_ids},
    )
