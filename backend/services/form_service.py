"""
Form Service

CRUD for forms, their fields and submissions. Creating a submission fires
the workflows that listen to the form; updating one releases executions
waiting on that submission.
"""

from typing import Any, Dict, List, Optional, Tuple
from sqlalchemy.orm import Session
from sqlalchemy import desc
from datetime import datetime
import logging

from models import Form, FormField, FormSubmission, ApprovalStatus
from expressions.calculation import CalculationEngine, CalculationError
from workflows.node_executors import SUBMISSION_UPDATED_EVENT
from workflows.resumer import resume_on_event
from workflows.trigger import trigger_for_submission

logger = logging.getLogger(__name__)

CALCULATED_FIELD_TYPE = "calculated"


def calculation_formula(field: FormField) -> Optional[str]:
    config = field.custom_config or {}
    return config.get("formula") or config.get("calculationFormula")


class FormService:
    """Service for forms, fields and submissions."""

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # Forms
    # =========================================================================

    def create_form(
        self,
        name: str,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
        status: str = "draft",
        project_id: Optional[str] = None,
        fields: Optional[List[Dict[str, Any]]] = None
    ) -> Form:
        """Create a form, optionally with its fields."""
        form = Form(
            name=name,
            description=description,
            created_by=created_by,
            status=status,
            project_id=project_id
        )
        self.db.add(form)
        self.db.flush()

        for index, field_data in enumerate(fields or []):
            self.db.add(self._build_field(form.id, field_data, index))

        self.db.commit()
        self.db.refresh(form)
        logger.info(f"Created form {form.id} '{name}' with {len(fields or [])} field(s)")
        return form

    def get_form(self, form_id: str) -> Optional[Form]:
        return self.db.query(Form).filter(Form.id == form_id).first()

    def list_forms(
        self,
        status: Optional[str] = None,
        project_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Form]:
        query = self.db.query(Form)
        if status:
            query = query.filter(Form.status == status)
        if project_id:
            query = query.filter(Form.project_id == project_id)
        return query.order_by(desc(Form.updated_at)).offset(offset).limit(limit).all()

    def update_form(
        self,
        form_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        status: Optional[str] = None,
        project_id: Optional[str] = None
    ) -> Optional[Form]:
        form = self.get_form(form_id)
        if not form:
            return None

        if name is not None:
            form.name = name
        if description is not None:
            form.description = description
        if status is not None:
            form.status = status
        if project_id is not None:
            form.project_id = project_id

        form.updated_at = datetime.utcnow()
        self.db.commit()
        self.db.refresh(form)
        return form

    def delete_form(self, form_id: str) -> bool:
        form = self.get_form(form_id)
        if not form:
            return False
        self.db.delete(form)
        self.db.commit()
        logger.info(f"Deleted form {form_id}")
        return True

    # =========================================================================
    # Fields
    # =========================================================================

    def _build_field(self, form_id: str, data: Dict[str, Any], default_order: int) -> FormField:
        return FormField(
            form_id=form_id,
            field_type=data.get("field_type") or "text",
            label=data.get("label") or "Untitled",
            required=bool(data.get("required", False)),
            options=data.get("options"),
            custom_config=data.get("custom_config"),
            field_order=data.get("field_order", default_order)
        )

    def list_fields(self, form_id: str) -> List[FormField]:
        return self.db.query(FormField).filter(
            FormField.form_id == form_id
        ).order_by(FormField.field_order).all()

    def get_field(self, field_id: str) -> Optional[FormField]:
        return self.db.query(FormField).filter(FormField.id == field_id).first()

    def add_field(self, form_id: str, data: Dict[str, Any]) -> Optional[FormField]:
        if not self.get_form(form_id):
            return None
        field = self._build_field(form_id, data, len(self.list_fields(form_id)))
        self.db.add(field)
        self.db.commit()
        self.db.refresh(field)
        return field

    def update_field(self, field_id: str, data: Dict[str, Any]) -> Optional[FormField]:
        field = self.get_field(field_id)
        if not field:
            return None

        for attr in ("field_type", "label", "required", "options", "custom_config", "field_order"):
            if data.get(attr) is not None:
                setattr(field, attr, data[attr])

        field.updated_at = datetime.utcnow()
        self.db.commit()
        self.db.refresh(field)
        return field

    def delete_field(self, field_id: str) -> bool:
        field = self.get_field(field_id)
        if not field:
            return False
        self.db.delete(field)
        self.db.commit()
        return True

    # =========================================================================
    # Submissions
    # =========================================================================

    def apply_calculated_fields(self, form_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Fill calculated fields from their formulas. Failed formulas leave the field empty."""
        result = dict(data)
        for field in self.list_fields(form_id):
            if field.field_type != CALCULATED_FIELD_TYPE:
                continue
            formula = calculation_formula(field)
            if not formula:
                continue
            engine = CalculationEngine(result, db=self.db, target_form_id=(field.custom_config or {}).get("targetFormId"))
            try:
                result[field.id] = engine.evaluate(formula)
            except CalculationError as e:
                logger.warning(f"Calculated field {field.id} on form {form_id} failed: {e}")
                result[field.id] = None
        return result

    def create_submission(
        self,
        form_id: str,
        submission_data: Dict[str, Any],
        submitted_by: Optional[str] = None,
        submitter_email: Optional[str] = None,
        run_workflows: bool = True
    ) -> Tuple[Optional[FormSubmission], List[Dict[str, Any]]]:
        """
        Store a submission and run the workflows triggered by it.

        Returns (submission, workflow results); submission is None when the
        form does not exist.
        """
        if not self.get_form(form_id):
            return None, []

        submission = FormSubmission(
            form_id=form_id,
            submission_data=self.apply_calculated_fields(form_id, submission_data or {}),
            submitted_by=submitted_by,
            approval_status=ApprovalStatus.PENDING.value
        )
        self.db.add(submission)
        self.db.commit()
        self.db.refresh(submission)
        logger.info(f"Created submission {submission.id} ({submission.submission_ref_id}) for form {form_id}")

        workflow_results: List[Dict[str, Any]] = []
        if run_workflows:
            workflow_results = trigger_for_submission(
                self.db,
                form_id,
                submission.id,
                dict(submission.submission_data or {}),
                submitter_id=submitted_by,
                submitter_email=submitter_email
            )
            self.db.refresh(submission)

        return submission, workflow_results

    def get_submission(self, submission_id: str) -> Optional[FormSubmission]:
        return self.db.query(FormSubmission).filter(FormSubmission.id == submission_id).first()

    def list_submissions(
        self,
        form_id: str,
        approval_status: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[FormSubmission]:
        query = self.db.query(FormSubmission).filter(FormSubmission.form_id == form_id)
        if approval_status:
            query = query.filter(FormSubmission.approval_status == approval_status)
        return query.order_by(desc(FormSubmission.submitted_at)).offset(offset).limit(limit).all()

    def update_submission(
        self,
        submission_id: str,
        submission_data: Optional[Dict[str, Any]] = None,
        approval_status: Optional[str] = None,
        approval_notes: Optional[str] = None,
        approved_by: Optional[str] = None,
        resume_workflows: bool = True
    ) -> Optional[FormSubmission]:
        """
        Merge new values into a submission.

        Executions paused on a condition waiting for this submission's values
        are resumed afterwards.
        """
        submission = self.get_submission(submission_id)
        if not submission:
            return None

        if submission_data is not None:
            merged = {**(submission.submission_data or {}), **submission_data}
            submission.submission_data = self.apply_calculated_fields(submission.form_id, merged)
        if approval_status is not None:
            submission.approval_status = approval_status
            submission.approval_timestamp = datetime.utcnow()
            submission.approved_by = approved_by
        if approval_notes is not None:
            submission.approval_notes = approval_notes

        submission.updated_at = datetime.utcnow()
        self.db.commit()
        self.db.refresh(submission)

        if resume_workflows:
            result = resume_on_event(self.db, SUBMISSION_UPDATED_EVENT, {"submissionId": submission.id})
            if result["resumedCount"]:
                logger.info(f"Submission {submission.id} update resumed {result['resumedCount']} execution(s)")
            self.db.refresh(submission)

        return submission

    def delete_submission(self, submission_id: str) -> bool:
        submission = self.get_submission(submission_id)
        if not submission:
            return False
        self.db.delete(submission)
        self.db.commit()
        return True
