from datetime import datetime, timedelta

from conftest import make_form, make_submission, make_workflow, trigger_data_for
from models import WorkflowExecution
from workflows.engine import workflow_engine
import worker


def start_waiting(db, wait_config):
    form = make_form(db)
    submission = make_submission(db, form)
    workflow, _ = make_workflow(db, [
        ("start", "start", {}),
        ("pause", "wait", wait_config),
    ], [("start", "pause", None)])
    return workflow_engine.execute_workflow(db, workflow.id, trigger_data_for(submission))["executionId"]


def test_run_cycle_resumes_elapsed_waits(db):
    due = start_waiting(db, {"waitType": "duration", "waitDuration": 1, "waitUnit": "minutes"})
    later = start_waiting(db, {"waitType": "duration", "waitDuration": 2, "waitUnit": "days"})

    execution = db.query(WorkflowExecution).filter(WorkflowExecution.id == due).first()
    execution.scheduled_resume_at = datetime.utcnow() - timedelta(seconds=1)
    db.commit()

    assert worker.run_cycle(db) == 1

    statuses = {e.id: e.status for e in db.query(WorkflowExecution).all()}
    assert statuses == {due: "completed", later: "waiting"}


def test_run_cycle_with_nothing_due(db):
    assert worker.run_cycle(db) == 0


def test_signal_handler_requests_shutdown(monkeypatch):
    monkeypatch.setattr(worker, "shutdown_requested", False)
    worker.signal_handler(15, None)
    assert worker.shutdown_requested is True
