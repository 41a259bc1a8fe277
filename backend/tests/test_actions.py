import pytest

from conftest import make_form, make_submission, make_user, trigger_data_for
from config import settings
from models import FormAssignment, FormSubmission, Notification
from schemas.workflow import ActionType
from workflows.actions import ActionContext, execute_approval, get_action, get_all_actions


def run_action(db, action_type, config, trigger_data):
    ctx = ActionContext(
        db=db,
        execution_id="execution-1",
        workflow_id="workflow-1",
        node_id="node-1",
        config={"actionType": action_type, **config},
        trigger_data=trigger_data,
    )
    return get_action(action_type).executor(ctx)


def notifications_for(db, user_id):
    return db.query(Notification).filter(Notification.user_id == user_id).all()


def test_every_action_type_is_registered():
    assert {a.name for a in get_all_actions()} == {t.value for t in ActionType}
    assert get_action("create_record").category == "record"
    assert get_action("send_notification").category == "notification"


# =============================================================================
# change_field_value
# =============================================================================

def test_change_field_value_static(db):
    form = make_form(db)
    submission = make_submission(db, form, {"status": "new", "other": 1})

    result = run_action(db, "change_field_value", {
        "targetFormId": form.id, "targetFieldId": "status", "valueType": "static", "staticValue": "triaged",
    }, trigger_data_for(submission))

    assert result.success
    assert result.output["oldValue"] == "new"
    assert result.output["newValue"] == "triaged"
    db.refresh(submission)
    assert submission.submission_data == {"status": "triaged", "other": 1}


def test_change_field_value_dynamic(db):
    form = make_form(db)
    submission = make_submission(db, form, {"email": "a@example.com"})

    result = run_action(db, "change_field_value", {
        "targetFormId": form.id, "targetFieldId": "contact", "valueType": "dynamic", "dynamicValuePath": "email",
    }, trigger_data_for(submission))

    assert result.success
    db.refresh(submission)
    assert submission.submission_data["contact"] == "a@example.com"


def test_change_field_value_dynamic_missing_source(db):
    form = make_form(db)
    submission = make_submission(db, form)

    result = run_action(db, "change_field_value", {
        "targetFormId": form.id, "targetFieldId": "contact", "valueType": "dynamic",
        "dynamicValuePath": "email", "dynamicFieldName": "Email",
    }, trigger_data_for(submission))

    assert not result.success
    assert result.error == "Could not find value for field: Email"


def test_change_field_value_requires_configuration(db):
    result = run_action(db, "change_field_value", {"targetFormId": "f"}, {})
    assert not result.success
    assert result.error == "Missing required configuration for field value change"


def test_change_field_value_on_other_form_updates_every_submission(db):
    source = make_form(db, name="Source")
    target = make_form(db, name="Target")
    trigger = make_submission(db, source)
    records = [make_submission(db, target, {"flag": "old"}) for _ in range(3)]

    result = run_action(db, "change_field_value", {
        "targetFormId": target.id, "targetFieldId": "flag", "valueType": "static", "staticValue": "reset",
    }, trigger_data_for(trigger))

    assert result.success
    assert result.output["updatedCount"] == 3
    for record in records:
        db.refresh(record)
        assert record.submission_data["flag"] == "reset"
    db.refresh(trigger)
    assert "flag" not in trigger.submission_data


def test_change_field_value_on_empty_other_form(db):
    source = make_form(db, name="Source")
    target = make_form(db, name="Target")
    trigger = make_submission(db, source)

    result = run_action(db, "change_field_value", {
        "targetFormId": target.id, "targetFieldId": "flag", "valueType": "static", "staticValue": "x",
    }, trigger_data_for(trigger))

    assert not result.success
    assert result.error == "No submissions found in target form to update"


def test_change_field_value_filters_submission_access(db):
    form = make_form(db, fields=[{
        "id": "access",
        "field_type": "submission-access",
        "custom_config": {"allowedUsers": ["u1"], "allowedGroups": ["g1"]},
    }])
    submission = make_submission(db, form)

    result = run_action(db, "change_field_value", {
        "targetFormId": form.id, "targetFieldId": "access", "valueType": "static",
        "staticValue": {"users": ["u1", "u2"], "groups": ["g9"]},
    }, trigger_data_for(submission))

    assert result.success
    db.refresh(submission)
    assert submission.submission_data["access"] == {"users": ["u1"], "groups": []}

    rejected = run_action(db, "change_field_value", {
        "targetFormId": form.id, "targetFieldId": "access", "valueType": "static",
        "staticValue": '{"users": ["u2"]}',
    }, trigger_data_for(submission))
    assert not rejected.success


# =============================================================================
# change_record_status
# =============================================================================

def test_change_record_status_notifies_submitter(db):
    user = make_user(db)
    form = make_form(db)
    submission = make_submission(db, form, submitted_by=user.id)

    result = run_action(db, "change_record_status", {
        "targetFormId": form.id, "newStatus": "approved", "statusNotes": "Looks good",
    }, trigger_data_for(submission))

    assert result.success
    assert result.output["oldStatus"] == "pending"
    db.refresh(submission)
    assert submission.approval_status == "approved"
    assert submission.approval_notes == "Looks good"
    assert submission.approval_timestamp is not None

    notifications = notifications_for(db, user.id)
    assert len(notifications) == 1
    assert notifications[0].type == "workflow"


def test_change_record_status_needs_a_submission(db):
    result = run_action(db, "change_record_status", {"targetFormId": "f", "newStatus": "approved"}, {})
    assert not result.success
    assert result.error == "No submission ID available to update"


# =============================================================================
# create_record
# =============================================================================

def test_create_record_with_mappings_and_values(db):
    user = make_user(db)
    source = make_form(db, name="Request")
    target = make_form(db, name="Task")
    trigger = make_submission(db, source, {"title": "Laptop", "blank": "", "email": "a@example.com"}, submitted_by=user.id)

    result = run_action(db, "create_record", {
        "targetFormId": target.id,
        "recordCount": 2,
        "fieldConfigMode": "field_mapping",
        "fieldMappings": [
            {"sourceFieldId": "title", "targetFieldId": "task_title"},
            {"sourceFieldId": "blank", "targetFieldId": "task_blank"},
        ],
        "fieldValues": [
            {"fieldId": "priority", "valueType": "static", "staticValue": "high"},
            {"fieldId": "requester", "valueType": "dynamic", "dynamicValuePath": "email"},
            {"fieldId": "empty", "valueType": "static", "staticValue": ""},
        ],
        "initialStatus": "open",
    }, trigger_data_for(trigger))

    assert result.success
    assert result.output["recordCount"] == 2
    records = db.query(FormSubmission).filter(FormSubmission.form_id == target.id).all()
    assert len(records) == 2
    for record in records:
        assert record.submission_data == {"task_title": "Laptop", "priority": "high", "requester": "a@example.com"}
        assert record.approval_status == "open"
        assert record.submitted_by == user.id
    assert sorted(result.output["createdRecordIds"]) == sorted(r.id for r in records)


def test_create_record_as_system(db):
    target = make_form(db)
    result = run_action(db, "create_record", {"targetFormId": target.id, "setSubmittedBy": "system"},
                        {"submitterId": "someone"})

    assert result.success
    record = db.query(FormSubmission).filter(FormSubmission.form_id == target.id).one()
    assert record.submitted_by is None
    assert record.approval_status == "pending"


def test_create_record_count_is_capped(db, monkeypatch):
    monkeypatch.setattr(settings, "WORKFLOW_MAX_RECORDS_PER_ACTION", 3)
    target = make_form(db)

    result = run_action(db, "create_record", {"targetFormId": target.id, "recordCount": 50}, {})

    assert result.output["recordCount"] == 3


def test_create_record_requires_target(db):
    result = run_action(db, "create_record", {}, {})
    assert not result.success
    assert result.error == "Missing target form ID for record creation"


# =============================================================================
# Linked records
# =============================================================================

def test_create_linked_record_appends_references(db):
    parent_form = make_form(db, name="Order")
    child_form = make_form(db, name="Line")
    parent = make_submission(db, parent_form, {"item": "Desk", "lines": "SUB-EXISTING"})

    result = run_action(db, "create_linked_record", {
        "crossReferenceFieldId": "lines",
        "targetFormId": child_form.id,
        "recordCount": 2,
        "fieldConfigMode": "field_mapping",
        "fieldMappings": [{"sourceFieldId": "item", "targetFieldId": "product"}],
    }, trigger_data_for(parent))

    assert result.success
    assert result.output["createdCount"] == 2
    assert result.output["parentUpdated"] is True

    children = db.query(FormSubmission).filter(FormSubmission.form_id == child_form.id).all()
    assert all(c.submission_data == {"product": "Desk"} for c in children)
    db.refresh(parent)
    assert parent.submission_data["lines"][0] == "SUB-EXISTING"
    assert sorted(parent.submission_data["lines"][1:]) == sorted(c.submission_ref_id for c in children)


def test_create_linked_record_without_parent(db):
    child_form = make_form(db)
    result = run_action(db, "create_linked_record", {
        "crossReferenceFieldId": "lines", "targetFormId": child_form.id,
    }, {})

    assert result.success
    assert result.output["parentUpdated"] is False


def test_create_linked_record_requires_cross_reference_field(db):
    result = run_action(db, "create_linked_record", {"targetFormId": "f"}, {})
    assert result.error == "Missing cross-reference field selection"


@pytest.fixture
def linked(db):
    parent_form = make_form(db, name="Order")
    child_form = make_form(db, name="Line")
    first = make_submission(db, child_form, {"status": "draft"})
    second = make_submission(db, child_form, {"status": "draft"})
    parent = make_submission(db, parent_form, {
        "state": "shipped",
        "lines": [first.submission_ref_id, {"submission_ref_id": second.submission_ref_id}],
    })
    return parent, child_form, first, second


def test_update_linked_records_all(db, linked):
    parent, child_form, first, second = linked

    result = run_action(db, "update_linked_records", {
        "crossReferenceFieldId": "lines",
        "targetFormId": child_form.id,
        "fieldMappings": [{"sourceFieldId": "state", "targetFieldId": "status"}],
    }, trigger_data_for(parent))

    assert result.success
    assert result.output["updatedCount"] == 2
    for child in (first, second):
        db.refresh(child)
        assert child.submission_data["status"] == "shipped"


def test_update_linked_records_last_only(db, linked):
    parent, child_form, first, second = linked

    result = run_action(db, "update_linked_records", {
        "crossReferenceFieldId": "lines",
        "targetFormId": child_form.id,
        "fieldMappings": [{"sourceFieldId": "state", "targetFieldId": "status"}],
        "updateScope": "last",
    }, trigger_data_for(parent))

    assert result.output["updatedCount"] == 1
    db.refresh(first)
    db.refresh(second)
    assert first.submission_data["status"] == "draft"
    assert second.submission_data["status"] == "shipped"


def test_update_linked_records_with_empty_reference(db):
    form = make_form(db)
    parent = make_submission(db, form, {"state": "x", "lines": []})

    result = run_action(db, "update_linked_records", {
        "crossReferenceFieldId": "lines",
        "targetFormId": form.id,
        "fieldMappings": [{"sourceFieldId": "state", "targetFieldId": "status"}],
    }, trigger_data_for(parent))

    assert result.success
    assert result.output["updatedCount"] == 0


def test_update_linked_records_with_unknown_references(db):
    form = make_form(db)
    parent = make_submission(db, form, {"state": "x", "lines": ["SUB-NOPE"]})

    result = run_action(db, "update_linked_records", {
        "crossReferenceFieldId": "lines",
        "targetFormId": form.id,
        "fieldMappings": [{"sourceFieldId": "state", "targetFieldId": "status"}],
    }, trigger_data_for(parent))

    assert not result.success
    assert result.error.startswith("Failed to update any linked records")


def test_update_linked_records_rejects_bad_scope(db):
    result = run_action(db, "update_linked_records", {
        "crossReferenceFieldId": "lines",
        "targetFormId": "f",
        "fieldMappings": [{"sourceFieldId": "a", "targetFieldId": "b"}],
        "updateScope": "middle",
    }, {})
    assert result.error == "Invalid update scope: middle"


# =============================================================================
# Notifications, approval and form actions
# =============================================================================

def test_send_notification_to_submitter(db):
    user = make_user(db, email="submitter@example.com")
    form = make_form(db)
    submission = make_submission(db, form, submitted_by=user.id)

    result = run_action(db, "send_notification", {
        "notificationConfig": {"recipient": "form_submitter", "subject": "Received", "message": "Thanks"},
    }, trigger_data_for(submission))

    assert result.success
    assert result.output["recipients"] == ["submitter@example.com"]
    assert result.output["notificationsSent"] == 1
    assert result.output["emailSent"] is False

    notification = notifications_for(db, user.id)[0]
    assert notification.type == "workflow_notification"
    assert notification.title == "Received"
    assert notification.data["workflow_execution_id"] == "execution-1"


def test_send_notification_to_specific_user_by_email(db):
    user = make_user(db, email="manager@example.com")

    result = run_action(db, "send_notification", {
        "recipient": "specific_user",
        "specificEmail": "Manager@Example.com",
        "subject": "Review",
        "message": "Please review",
    }, {})

    assert result.success
    assert len(notifications_for(db, user.id)) == 1


def test_send_notification_to_dynamic_field(db):
    user = make_user(db, email="owner@example.com")

    result = run_action(db, "send_notification", {
        "notificationConfig": {
            "recipient": "dynamic_field", "dynamicFieldId": "owner", "subject": "Hi", "message": "Hello",
        },
    }, {"submissionData": {"owner": user.id}})

    assert result.success
    assert result.output["recipientUserIds"] == [user.id]


def test_send_notification_without_recipient(db):
    result = run_action(db, "send_notification", {
        "notificationConfig": {"recipient": "form_owner", "subject": "Hi", "message": "Hello"},
    }, {})
    assert not result.success
    assert result.error == "No recipient found for notification. Recipient type: form_owner"


def test_send_notification_requires_subject_and_message(db):
    result = run_action(db, "send_notification", {"notificationConfig": {"recipient": "form_submitter"}}, {})
    assert result.error == "Subject and message are required for notification"


def test_approval_disapproves_submission(db):
    user = make_user(db)
    form = make_form(db)
    submission = make_submission(db, form, submitted_by=user.id)
    ctx = ActionContext(
        db=db, execution_id="execution-1", workflow_id="workflow-1", node_id="node-1",
        config={"approvalAction": "disapprove", "notes": "Missing receipt"},
        trigger_data=trigger_data_for(submission),
    )

    result = execute_approval(ctx)

    assert result.success
    assert result.output["approvalStatus"] == "disapproved"
    db.refresh(submission)
    assert submission.approval_status == "disapproved"
    assert submission.approval_notes == "Missing receipt"
    notification = notifications_for(db, user.id)[0]
    assert notification.type == "approval_status"
    assert notification.message == "Your form submission has been disapproved: Missing receipt"


def test_approval_requires_submission(db):
    ctx = ActionContext(db=db, execution_id="e", workflow_id="w", node_id="n", config={}, trigger_data={})
    result = execute_approval(ctx)
    assert not result.success
    assert result.error == "Submission ID is required for approval action"


def test_assign_form_to_submitter(db):
    user = make_user(db, email="worker@example.com")
    source = make_form(db, name="Intake")
    target = make_form(db, name="Follow-up")
    submission = make_submission(db, source, submitted_by=user.id)

    result = run_action(db, "assign_form", {
        "targetFormId": target.id, "assignmentConfig": {"type": "form_submitter"},
    }, trigger_data_for(submission))

    assert result.success
    assignment = db.query(FormAssignment).one()
    assert assignment.form_id == target.id
    assert assignment.assigned_to_email == "worker@example.com"
    assert assignment.assignment_type == "workflow"
    assert notifications_for(db, user.id)[0].type == "form_assignment"


def test_update_form_lifecycle_status(db):
    form = make_form(db, status="draft")

    result = run_action(db, "update_form_lifecycle_status", {"targetFormId": form.id, "newStatus": "published"}, {})

    assert result.success
    assert result.output["previousStatus"] == "draft"
    db.refresh(form)
    assert form.status == "published"
