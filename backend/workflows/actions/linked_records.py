"""
Linked record actions.

A cross-reference field on a parent submission holds the submission_ref_ids of
its child records, either as a single string, a list of strings, or a list of
{"submission_ref_id": ..., "form_id": ...} objects.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from models import FormSubmission
from schemas.workflow import NodeExecutionResult
from .registry import ActionContext, register_action
from .record_actions import (
    _has_value,
    _now_iso,
    _record_count,
    _resolve_submitted_by,
    _submission_access_configs,
    build_record_data,
)

logger = logging.getLogger(__name__)

UPDATE_SCOPES = ("all", "first", "last")


def append_cross_references(existing: Any, ref_ids: List[str]) -> List[Any]:
    """Add child references to the current value of a cross-reference field."""
    if isinstance(existing, list):
        return existing + ref_ids
    if _has_value(existing):
        return [existing] + ref_ids
    return list(ref_ids)


def parse_cross_references(value: Any, default_form_id: str) -> List[Dict[str, str]]:
    """Normalize a cross-reference field value into [{"submission_ref_id", "form_id"}]."""
    items = value if isinstance(value, list) else [value]
    refs = []
    for item in items:
        if isinstance(item, str) and item.strip():
            refs.append({"submission_ref_id": item.strip(), "form_id": default_form_id})
        elif isinstance(item, dict) and item.get("submission_ref_id"):
            refs.append({
                "submission_ref_id": item["submission_ref_id"],
                "form_id": item.get("form_id") or default_form_id,
            })
    return refs


def _scoped(refs: List[Dict[str, str]], scope: str) -> List[Dict[str, str]]:
    if scope == "first":
        return refs[:1]
    if scope == "last":
        return refs[-1:]
    return refs


# =============================================================================
# create_linked_record
# =============================================================================

@register_action("create_linked_record", "Create child records and link them through a cross-reference field", category="record")
def create_linked_record(ctx: ActionContext) -> NodeExecutionResult:
    config = ctx.config
    cross_ref_field_id = config.get("crossReferenceFieldId")
    target_form_id = config.get("targetFormId")
    record_count = _record_count(config)
    details = {
        "actionType": "create_linked_record",
        "targetFormId": target_form_id,
        "crossReferenceFieldId": cross_ref_field_id,
        "recordCount": record_count,
        "timestamp": _now_iso(),
    }

    if not cross_ref_field_id:
        return NodeExecutionResult.failure("Missing cross-reference field selection", action_details=details)
    if not target_form_id:
        return NodeExecutionResult.failure("Missing target form ID for linked record creation", action_details=details)

    access_configs = _submission_access_configs(ctx, target_form_id)
    submitted_by = _resolve_submitted_by(ctx)
    initial_status = config.get("initialStatus") or "pending"

    children: List[FormSubmission] = []
    for index in range(record_count):
        child = FormSubmission(
            form_id=target_form_id,
            submission_data=build_record_data(ctx, access_configs),
            submitted_by=submitted_by,
            approval_status=initial_status,
        )
        try:
            ctx.db.add(child)
            ctx.db.commit()
            children.append(child)
        except SQLAlchemyError as e:
            ctx.db.rollback()
            logger.error(f"Failed to create linked record {index + 1} in form {target_form_id}: {e}")

    if not children:
        return NodeExecutionResult.failure("Failed to create any linked records", action_details=details)

    child_records = [{"id": c.id, "submission_ref_id": c.submission_ref_id} for c in children]
    output: Dict[str, Any] = {
        "createdCount": len(children),
        "requestedCount": record_count,
        "childRecords": child_records,
        "crossReferenceFieldId": cross_ref_field_id,
        "linkedAt": _now_iso(),
    }
    details = {**details, "childRecordIds": [c.id for c in children]}

    parent = None
    if ctx.submission_id:
        parent = ctx.db.query(FormSubmission).filter(FormSubmission.id == ctx.submission_id).first()

    if parent is None:
        output.update({"parentUpdated": False, "warning": "No parent submission to update"})
        return NodeExecutionResult(success=True, output=output, action_details=details)

    data = dict(parent.submission_data or {})
    data[cross_ref_field_id] = append_cross_references(
        data.get(cross_ref_field_id),
        [c.submission_ref_id for c in children]
    )
    parent.submission_data = data
    try:
        ctx.db.commit()
    except SQLAlchemyError as e:
        ctx.db.rollback()
        logger.error(f"Failed to link children to parent {parent.id}: {e}")
        output.update({
            "parentSubmissionId": parent.id,
            "parentUpdated": False,
            "note": f"Child records created but parent update failed: {e}",
        })
        return NodeExecutionResult(success=True, output=output, action_details=details)

    logger.info(f"Linked {len(children)} records from form {target_form_id} to submission {parent.id}")
    output.update({
        "parentSubmissionId": parent.id,
        "crossReferenceValue": data[cross_ref_field_id],
        "parentUpdated": True,
    })
    return NodeExecutionResult(success=True, output=output, action_details=details)


# =============================================================================
# update_linked_records
# =============================================================================

@register_action("update_linked_records", "Copy trigger values into the records referenced by a cross-reference field", category="record")
def update_linked_records(ctx: ActionContext) -> NodeExecutionResult:
    config = ctx.config
    cross_ref_field_id = config.get("crossReferenceFieldId")
    target_form_id = config.get("targetFormId")
    mappings = config.get("fieldMappings") or []
    scope = config.get("updateScope") or "all"
    details = {
        "actionType": "update_linked_records",
        "targetFormId": target_form_id,
        "crossReferenceFieldId": cross_ref_field_id,
        "updateScope": scope,
        "timestamp": _now_iso(),
    }

    if not cross_ref_field_id:
        return NodeExecutionResult.failure("Missing cross-reference field selection", action_details=details)
    if not target_form_id:
        return NodeExecutionResult.failure("Missing target form ID for linked record update", action_details=details)
    if not mappings:
        return NodeExecutionResult.failure("At least one field mapping is required", action_details=details)
    if scope not in UPDATE_SCOPES:
        return NodeExecutionResult.failure(f"Invalid update scope: {scope}", action_details=details)

    cross_ref_value = ctx.submission_data.get(cross_ref_field_id)
    if not _has_value(cross_ref_value) or cross_ref_value == []:
        return NodeExecutionResult(
            success=True,
            output={"updatedCount": 0, "message": "No linked records found in cross-reference field"},
            action_details=details,
        )

    refs = parse_cross_references(cross_ref_value, target_form_id)
    if not refs:
        return NodeExecutionResult(
            success=True,
            output={"updatedCount": 0, "message": "No valid linked record references found"},
            action_details=details,
        )
    targets = _scoped(refs, scope)

    update_data: Dict[str, Any] = {}
    for mapping in mappings:
        source_id = mapping.get("sourceFieldId")
        target_id = mapping.get("targetFieldId")
        if not source_id or not target_id:
            continue
        value = ctx.submission_data.get(source_id)
        if value is not None:
            update_data[target_id] = value

    if not update_data:
        return NodeExecutionResult.failure("No valid field mappings resulted in update data", action_details=details)

    updated: List[Dict[str, Any]] = []
    errors: List[str] = []
    for ref in targets:
        record = _find_by_ref(ctx, ref["submission_ref_id"], ref["form_id"])
        if record is None:
            errors.append(f"Submission {ref['submission_ref_id']} not found in form {ref['form_id']}")
            continue
        record.submission_data = {**(record.submission_data or {}), **update_data}
        try:
            ctx.db.commit()
            updated.append({
                "id": record.id,
                "submission_ref_id": record.submission_ref_id,
                "updatedFields": list(update_data.keys()),
            })
        except SQLAlchemyError as e:
            ctx.db.rollback()
            errors.append(f"Failed to update {ref['submission_ref_id']}: {e}")

    if not updated and errors:
        return NodeExecutionResult.failure(
            f"Failed to update any linked records: {'; '.join(errors)}",
            action_details={**details, "errors": errors},
        )

    logger.info(f"Updated {len(updated)}/{len(targets)} linked records via field {cross_ref_field_id}")
    return NodeExecutionResult(
        success=True,
        output={
            "updatedCount": len(updated),
            "requestedCount": len(targets),
            "updatedRecords": updated,
            "updateScope": scope,
            "fieldMappingsApplied": len(update_data),
            "errors": errors,
            "updatedAt": _now_iso(),
        },
        action_details=details,
    )


def _find_by_ref(ctx: ActionContext, ref_id: str, form_id: str) -> Optional[FormSubmission]:
    return ctx.db.query(FormSubmission).filter(
        FormSubmission.submission_ref_id == ref_id,
        FormSubmission.form_id == form_id
    ).first()
