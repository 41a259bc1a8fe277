from conftest import make_form, make_submission, make_user, make_workflow
from models import WorkflowExecution
from workflows.trigger import build_trigger_data, find_matching_workflows, resolve_form_owner, trigger_for_submission


def listening_workflow(db, form, status="active", name="Listener", trigger_type="form_submission"):
    return make_workflow(db, [
        ("start", "start", {"triggerType": trigger_type, "triggerFormId": form.id}),
        ("end", "end", {}),
    ], [("start", "end", None)], status=status, name=name)


def test_only_active_workflows_for_the_form_match(db):
    form = make_form(db)
    other = make_form(db, name="Other")
    active, _ = listening_workflow(db, form)
    listening_workflow(db, form, status="draft", name="Draft")
    listening_workflow(db, form, status="inactive", name="Inactive")
    listening_workflow(db, other, name="Other listener")
    listening_workflow(db, form, trigger_type="manual", name="Manual")

    matches = find_matching_workflows(db, form.id)

    assert [workflow.id for workflow, _ in matches] == [active.id]


def test_trigger_runs_each_matching_workflow(db):
    user = make_user(db)
    form = make_form(db, created_by=user.id)
    submission = make_submission(db, form, {"email": "a@example.com"}, submitted_by=user.id)
    first, _ = listening_workflow(db, form, name="First")
    second, _ = listening_workflow(db, form, name="Second", trigger_type="form_completion")

    results = trigger_for_submission(db, form.id, submission.id, submission.submission_data, submitter_id=user.id)

    assert {r["workflowId"] for r in results} == {first.id, second.id}
    assert all(r["success"] for r in results)

    executions = db.query(WorkflowExecution).all()
    assert len(executions) == 2
    for execution in executions:
        assert execution.status == "completed"
        assert execution.form_owner_id == user.id
        assert execution.trigger_data["userEmail"] == "a@example.com"
        assert execution.trigger_data["submissionId"] == submission.id


def test_trigger_without_listeners(db):
    form = make_form(db)
    assert trigger_for_submission(db, form.id, None, {}) == []


def test_failed_workflow_is_reported(db):
    form = make_form(db)
    submission = make_submission(db, form)
    make_workflow(db, [
        ("start", "start", {"triggerFormId": form.id}),
        ("bad", "action", {"actionType": "nope"}),
    ], [("start", "bad", None)])

    results = trigger_for_submission(db, form.id, submission.id, {})

    assert len(results) == 1
    assert results[0]["success"] is False
    assert results[0]["error"] == "Unknown action type: nope"


def test_form_owner_by_id_or_email(db):
    user = make_user(db, email="owner@example.com")
    by_id = make_form(db, created_by=user.id)
    by_email = make_form(db, created_by="owner@example.com")
    unknown = make_form(db, created_by="nobody@example.com")

    assert resolve_form_owner(db, by_id.id) == user.id
    assert resolve_form_owner(db, by_email.id) == user.id
    assert resolve_form_owner(db, unknown.id) is None
    assert resolve_form_owner(db, "missing") is None


def test_build_trigger_data_names_the_submitter():
    data = build_trigger_data("form", "sub", {"firstName": "Ada", "lastName": "Lovelace"}, "user", None, "ada@example.com")

    assert data["submitterName"] == "Ada Lovelace"
    assert data["userEmail"] == "ada@example.com"
    assert data["submissionData"] == {"firstName": "Ada", "lastName": "Lovelace"}
