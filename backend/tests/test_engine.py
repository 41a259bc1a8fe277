from datetime import datetime, timedelta

import pytest

from conftest import make_form, make_submission, make_workflow, trigger_data_for
from models import WorkflowExecution
from schemas.workflow import WorkflowError
from services.form_service import FormService
from workflows.engine import WorkflowEngine, workflow_engine
from workflows.resumer import resume_on_event, resume_waiting


def set_field(form, field_id, value):
    return {
        "actionType": "change_field_value",
        "targetFormId": form.id,
        "targetFieldId": field_id,
        "valueType": "static",
        "staticValue": value,
    }


def if_condition(path, operator, value):
    return {
        "conditionConfig": {
            "type": "if",
            "condition": {
                "leftOperand": {"type": "form", "path": path},
                "operator": operator,
                "rightOperand": {"type": "static", "value": value},
            },
        }
    }


def execution_row(db, execution_id) -> WorkflowExecution:
    execution = db.query(WorkflowExecution).filter(WorkflowExecution.id == execution_id).first()
    db.refresh(execution)
    return execution


def logs_by_node(db, execution_id):
    logs = workflow_engine.get_execution_state(db, execution_id)["logs"]
    return [(log["node_id"], log["status"]) for log in logs]


@pytest.fixture
def form(db):
    return make_form(db, fields=[{"id": "amount", "label": "Amount"}, {"id": "route", "label": "Route"}])


# =============================================================================
# Linear runs
# =============================================================================

def test_linear_workflow_completes(db, form):
    submission = make_submission(db, form, {"amount": 10})
    workflow, ids = make_workflow(db, [
        ("start", "start", {"triggerType": "form_submission", "triggerFormId": form.id}),
        ("mark", "action", set_field(form, "route", "done")),
        ("end", "end", {}),
    ], [("start", "mark", None), ("mark", "end", None)])

    result = workflow_engine.execute_workflow(db, workflow.id, trigger_data_for(submission))

    assert result["success"] is True
    assert result["isWaiting"] is False
    assert result["error"] is None

    execution = execution_row(db, result["executionId"])
    assert execution.status == "completed"
    assert execution.form_submission_id == submission.id
    assert execution.completed_at is not None

    assert logs_by_node(db, execution.id) == [
        (ids["start"], "completed"),
        (ids["mark"], "completed"),
        (ids["end"], "completed"),
    ]
    db.refresh(submission)
    assert submission.submission_data["route"] == "done"


def test_action_log_records_action_details(db, form):
    submission = make_submission(db, form, {"amount": 10})
    workflow, ids = make_workflow(db, [
        ("start", "start", {}),
        ("mark", "action", set_field(form, "route", "done")),
    ], [("start", "mark", None)])

    result = workflow_engine.execute_workflow(db, workflow.id, trigger_data_for(submission))

    logs = workflow_engine.get_execution_state(db, result["executionId"])["logs"]
    action_log = next(log for log in logs if log["node_id"] == ids["mark"])
    assert action_log["action_type"] == "change_field_value"
    assert action_log["action_details"]["targetFieldId"] == "route"
    assert action_log["output_data"]["newValue"] == "done"


def test_unknown_action_fails_execution(db, form):
    submission = make_submission(db, form)
    workflow, ids = make_workflow(db, [
        ("start", "start", {}),
        ("broken", "action", {"actionType": "launch_rockets"}),
        ("end", "end", {}),
    ], [("start", "broken", None), ("broken", "end", None)])

    result = workflow_engine.execute_workflow(db, workflow.id, trigger_data_for(submission))

    assert result["success"] is False
    assert result["error"] == "Unknown action type: launch_rockets"
    execution = execution_row(db, result["executionId"])
    assert execution.status == "failed"
    assert execution.error_message == "Unknown action type: launch_rockets"
    # The branch stops at the failed node
    assert logs_by_node(db, execution.id) == [(ids["start"], "completed"), (ids["broken"], "failed")]


def test_unknown_node_type_fails(db, form):
    submission = make_submission(db, form)
    workflow, _ = make_workflow(db, [("start", "start", {}), ("odd", "teleport", {})], [("start", "odd", None)])

    result = workflow_engine.execute_workflow(db, workflow.id, trigger_data_for(submission))

    assert result["success"] is False
    assert "Unknown node type: teleport" in result["error"]


def test_missing_start_node(db):
    workflow, _ = make_workflow(db, [("end", "end", {})])

    result = workflow_engine.execute_workflow(db, workflow.id, {})

    assert result["success"] is False
    assert result["error"] == "No start node found"
    assert execution_row(db, result["executionId"]).status == "failed"


def test_missing_workflow_raises(db):
    with pytest.raises(WorkflowError):
        workflow_engine.execute_workflow(db, "does-not-exist", {})


def test_loop_is_capped(db, form):
    submission = make_submission(db, form)
    workflow, ids = make_workflow(db, [
        ("start", "start", {}),
        ("again", "action", set_field(form, "route", "looping")),
    ], [("start", "again", None), ("again", "again", None)])

    result = WorkflowEngine(max_loop_iterations=3).execute_workflow(db, workflow.id, trigger_data_for(submission))

    assert result["success"] is True
    assert execution_row(db, result["executionId"]).status == "completed"
    runs = [status for node_id, status in logs_by_node(db, result["executionId"]) if node_id == ids["again"]]
    assert runs == ["completed"] * 3


# =============================================================================
# Conditions
# =============================================================================

def test_condition_takes_false_branch_and_ignores_true_branch(db, form):
    submission = make_submission(db, form, {"amount": 50})
    workflow, ids = make_workflow(db, [
        ("start", "start", {}),
        ("check", "condition", if_condition("amount", ">", 100)),
        ("big", "action", set_field(form, "route", "big")),
        ("big_end", "end", {}),
        ("small", "action", set_field(form, "route", "small")),
    ], [
        ("start", "check", None),
        ("check", "big", "true"),
        ("big", "big_end", None),
        ("check", "small", "false"),
    ])

    result = workflow_engine.execute_workflow(db, workflow.id, trigger_data_for(submission))

    assert result["success"] is True
    db.refresh(submission)
    assert submission.submission_data["route"] == "small"

    state = workflow_engine.get_execution_state(db, result["executionId"])
    check_log = next(log for log in state["logs"] if log["node_id"] == ids["check"])
    assert check_log["output_data"]["conditionResult"] is False
    assert check_log["output_data"]["nextPath"] == "false"
    assert check_log["output_data"]["ignoredNodes"] == 2

    ignored = {log["node_id"] for log in state["logs"] if log["status"] == "ignored"}
    assert ignored == {ids["big"], ids["big_end"]}
    assert all(log["node_type"] == "ignored" for log in state["logs"] if log["status"] == "ignored")


def test_condition_true_branch(db, form):
    submission = make_submission(db, form, {"amount": 500})
    workflow, ids = make_workflow(db, [
        ("start", "start", {}),
        ("check", "condition", if_condition("amount", ">", 100)),
        ("big", "action", set_field(form, "route", "big")),
        ("small", "action", set_field(form, "route", "small")),
    ], [("start", "check", None), ("check", "big", "true"), ("check", "small", "false")])

    workflow_engine.execute_workflow(db, workflow.id, trigger_data_for(submission))

    db.refresh(submission)
    assert submission.submission_data["route"] == "big"


def test_condition_without_configuration_defaults_to_true(db, form):
    submission = make_submission(db, form)
    workflow, ids = make_workflow(db, [
        ("start", "start", {}),
        ("check", "condition", {}),
        ("yes", "action", set_field(form, "route", "yes")),
        ("no", "action", set_field(form, "route", "no")),
    ], [("start", "check", None), ("check", "yes", "true"), ("check", "no", "false")])

    workflow_engine.execute_workflow(db, workflow.id, trigger_data_for(submission))

    db.refresh(submission)
    assert submission.submission_data["route"] == "yes"


def test_switch_condition_selects_path(db, form):
    submission = make_submission(db, form, {"region": "south"})
    workflow, ids = make_workflow(db, [
        ("start", "start", {}),
        ("route", "condition", {
            "conditionConfig": {
                "type": "switch",
                "field": {"type": "form", "path": "region"},
                "cases": [{"value": "north", "path": "north"}, {"value": "south", "path": "south"}],
            }
        }),
        ("north", "action", set_field(form, "route", "north")),
        ("south", "action", set_field(form, "route", "south")),
    ], [("start", "route", None), ("route", "north", "north"), ("route", "south", "south")])

    result = workflow_engine.execute_workflow(db, workflow.id, trigger_data_for(submission))

    db.refresh(submission)
    assert submission.submission_data["route"] == "south"
    statuses = dict(logs_by_node(db, result["executionId"]))
    assert statuses[ids["north"]] == "ignored"


def test_condition_waits_for_value_and_resumes_on_update(db, form):
    submission = make_submission(db, form, {"amount": ""})
    workflow, ids = make_workflow(db, [
        ("start", "start", {}),
        ("check", "condition", if_condition("amount", ">", 100)),
        ("big", "action", set_field(form, "route", "big")),
        ("small", "action", set_field(form, "route", "small")),
    ], [("start", "check", None), ("check", "big", "true"), ("check", "small", "false")])

    result = workflow_engine.execute_workflow(db, workflow.id, trigger_data_for(submission))

    assert result["success"] is True
    assert result["isWaiting"] is True
    execution = execution_row(db, result["executionId"])
    assert execution.status == "waiting"
    assert execution.wait_node_id == ids["check"]
    assert execution.wait_config["eventType"] == "submission_updated"
    assert execution.wait_config["waitingFields"] == ["amount"]
    assert (ids["check"], "waiting") in logs_by_node(db, execution.id)

    FormService(db).update_submission(submission.id, {"amount": 500})

    execution = execution_row(db, execution.id)
    assert execution.status == "completed"
    assert execution.wait_node_id is None
    assert submission.submission_data["route"] == "big"
    assert submission.submission_data["amount"] == 500

    logs = workflow_engine.get_execution_state(db, execution.id)["logs"]
    check_logs = [log for log in logs if log["node_id"] == ids["check"]]
    assert [log["status"] for log in check_logs] == ["completed", "completed"]
    assert check_logs[0]["output_data"]["resumed"] is True


# =============================================================================
# Wait nodes and resuming
# =============================================================================

def wait_workflow(db, form, wait_config, with_followup=True):
    nodes = [("start", "start", {}), ("pause", "wait", wait_config)]
    connections = [("start", "pause", None)]
    if with_followup:
        nodes.append(("after", "action", set_field(form, "route", "resumed")))
        connections.append(("pause", "after", None))
    return make_workflow(db, nodes, connections)


def test_wait_node_suspends_execution(db, form):
    submission = make_submission(db, form)
    workflow, ids = wait_workflow(db, form, {"waitType": "duration", "waitDuration": 5, "waitUnit": "minutes"})

    before = datetime.utcnow()
    result = workflow_engine.execute_workflow(db, workflow.id, trigger_data_for(submission))

    assert result["isWaiting"] is True
    execution = execution_row(db, result["executionId"])
    assert execution.status == "waiting"
    assert execution.wait_node_id == ids["pause"]
    assert before + timedelta(minutes=4) < execution.scheduled_resume_at < before + timedelta(minutes=6)
    # Nothing after the wait has run yet
    assert logs_by_node(db, execution.id) == [(ids["start"], "completed"), (ids["pause"], "waiting")]


def test_resume_waiting_only_resumes_due_executions(db, form):
    submission = make_submission(db, form)
    workflow, ids = wait_workflow(db, form, {"waitType": "duration", "waitDuration": 5, "waitUnit": "minutes"})
    result = workflow_engine.execute_workflow(db, workflow.id, trigger_data_for(submission))

    assert resume_waiting(db)["resumedCount"] == 0

    outcome = resume_waiting(db, now=datetime.utcnow() + timedelta(minutes=10))

    assert outcome["resumedCount"] == 1
    assert outcome["resumedExecutions"] == [result["executionId"]]
    execution = execution_row(db, result["executionId"])
    assert execution.status == "completed"
    assert execution.scheduled_resume_at is None
    db.refresh(submission)
    assert submission.submission_data["route"] == "resumed"

    logs = workflow_engine.get_execution_state(db, execution.id)["logs"]
    wait_log = next(log for log in logs if log["node_id"] == ids["pause"])
    assert wait_log["status"] == "completed"
    assert wait_log["output_data"]["resumed"] is True
    assert wait_log["output_data"]["waitType"] == "duration"


def test_resume_specific_execution_ignores_schedule(db, form):
    submission = make_submission(db, form)
    workflow, _ = wait_workflow(db, form, {"waitType": "duration", "waitDuration": 3, "waitUnit": "days"})
    result = workflow_engine.execute_workflow(db, workflow.id, trigger_data_for(submission))

    outcome = resume_waiting(db, execution_id=result["executionId"])

    assert outcome["resumedCount"] == 1
    assert execution_row(db, result["executionId"]).status == "completed"


def test_resume_with_nothing_after_wait_completes(db, form):
    submission = make_submission(db, form)
    workflow, _ = wait_workflow(db, form, {"waitDuration": 1, "waitUnit": "minutes"}, with_followup=False)
    result = workflow_engine.execute_workflow(db, workflow.id, trigger_data_for(submission))

    resume_waiting(db, execution_id=result["executionId"])

    execution = execution_row(db, result["executionId"])
    assert execution.status == "completed"
    assert execution.execution_data["completedByResume"] is True


def test_event_wait_resumes_on_matching_event(db, form):
    submission = make_submission(db, form)
    workflow, _ = wait_workflow(db, form, {"waitType": "until_event", "eventType": "manager_signoff"})
    result = workflow_engine.execute_workflow(db, workflow.id, trigger_data_for(submission))

    execution = execution_row(db, result["executionId"])
    assert execution.scheduled_resume_at is None
    assert resume_waiting(db, now=datetime.utcnow() + timedelta(days=30))["resumedCount"] == 0
    assert resume_on_event(db, "something_else")["resumedCount"] == 0
    assert resume_on_event(db, "manager_signoff", {"submissionId": "another-submission"})["resumedCount"] == 0

    outcome = resume_on_event(db, "manager_signoff", {"submissionId": submission.id})

    assert outcome["resumedCount"] == 1
    assert execution_row(db, execution.id).status == "completed"


def test_resume_with_nothing_waiting(db):
    outcome = resume_waiting(db)
    assert outcome["resumedCount"] == 0
    assert outcome["message"] == "No waiting executions to resume"


# =============================================================================
# Cancel
# =============================================================================

def test_cancel_waiting_execution(db, form):
    submission = make_submission(db, form)
    workflow, _ = wait_workflow(db, form, {"waitDuration": 1, "waitUnit": "hours"})
    result = workflow_engine.execute_workflow(db, workflow.id, trigger_data_for(submission))

    workflow_engine.cancel_execution(db, result["executionId"])

    execution = execution_row(db, result["executionId"])
    assert execution.status == "failed"
    assert execution.error_message == "Cancelled"
    assert execution.wait_node_id is None
    assert resume_waiting(db, now=datetime.utcnow() + timedelta(days=1))["resumedCount"] == 0

    with pytest.raises(WorkflowError):
        workflow_engine.cancel_execution(db, result["executionId"])


def test_failed_branch_fails_execution_parked_by_sibling_wait(db, form):
    submission = make_submission(db, form)
    workflow, ids = make_workflow(db, [
        ("start", "start", {}),
        ("pause", "wait", {"waitType": "duration", "waitDuration": 1, "waitUnit": "hours"}),
        ("broken", "action", {"actionType": "nope"}),
    ], [("start", "pause", None), ("start", "broken", None)])

    result = workflow_engine.execute_workflow(db, workflow.id, trigger_data_for(submission))

    assert result["success"] is False
    assert result["isWaiting"] is False
    execution = execution_row(db, result["executionId"])
    assert execution.status == "failed"
    assert execution.error_message == "Unknown action type: nope"
    assert execution.wait_node_id is None
    assert execution.scheduled_resume_at is None
    assert resume_waiting(db, now=datetime.utcnow() + timedelta(days=1))["resumedCount"] == 0


def test_execution_state_for_unknown_execution(db):
    with pytest.raises(WorkflowError):
        workflow_engine.get_execution_state(db, "missing")
