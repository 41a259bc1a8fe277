"""
Condition Evaluation

Evaluates the rule configurations attached to condition nodes against an
evaluation context:

    {
        "formData":       {field_id: value, ...},
        "userProperties": {"id": ..., "role": ..., "email": ...},
        "systemData":     {"approvalStatus": ..., "formStatus": ..., ...},
    }

Two configuration families are supported:

1. conditionConfig: {"type": "if", "condition": SimpleCondition | LogicalGroup}
   or {"type": "switch", "field": FieldPath, "cases": [...], "defaultPath": ...}
2. enhancedCondition: form-level / field-level condition items chained by
   per-item logical operators, or combined by a manual expression ("(1 AND 2) OR 3").

A condition on a form field whose value is still empty does not evaluate to a
plain False: it reports that it is waiting for that value, so the engine can
hold the branch until the field is filled in.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from expressions import logical
from expressions.logical import ExpressionError

logger = logging.getLogger(__name__)

EMPTY_MARKERS = ("", "n/a", "na", "null", "undefined")
WAIT_BYPASS_OPERATORS = ("exists", "not_exists")

COMPARISON_OPERATORS = (
    "==", "!=", "<", ">", "<=", ">=",
    "contains", "not_contains", "starts_with", "ends_with",
    "in", "not_in", "exists", "not_exists",
)


@dataclass
class ConditionResult:
    """Outcome of evaluating a condition configuration."""
    success: bool
    # bool for "if" conditions, the selected path name for "switch" conditions
    result: Any = False
    error: Optional[str] = None
    evaluated_conditions: Dict[str, Any] = field(default_factory=dict)
    waiting_for_value: bool = False
    waiting_fields: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": self.success,
            "result": self.result,
            "evaluatedConditions": self.evaluated_conditions,
        }
        if self.error:
            data["error"] = self.error
        if self.waiting_for_value:
            data["waitingForValue"] = True
            data["waitingFields"] = self.waiting_fields
        return data


@dataclass
class _Outcome:
    result: bool
    waiting: bool = False
    waiting_fields: List[str] = field(default_factory=list)


# =============================================================================
# Value helpers
# =============================================================================

def is_empty_value(value: Any) -> bool:
    """True for values that mean "not filled in yet"."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() in EMPTY_MARKERS
    if isinstance(value, (list, tuple)) and len(value) == 0:
        return True
    return False


def get_nested_value(obj: Any, path: Optional[str]) -> Any:
    """Resolve a dotted path ("address.city") against nested dicts."""
    if not obj or not path:
        return None
    current = obj
    for key in path.split("."):
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, list) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            return None
    return current


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if text == "":
            return 0.0
        try:
            return float(text)
        except ValueError:
            return None
    return None


def _to_str(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ",".join(_to_str(v) for v in value)
    return str(value)


def compare_values(left: Any, right: Any, operator: str) -> bool:
    """
    Compare two values with a comparison operator.

    String comparisons are case-insensitive. Ordering operators compare
    numerically when both sides parse as numbers, otherwise as strings.
    """
    if left is None:
        return operator == "not_exists"

    if right is None:
        if operator == "==":
            return False
        if operator == "!=":
            return True
        if operator == "exists":
            return left != ""
        if operator == "not_exists":
            return left == ""
        return False

    left_str = _to_str(left).lower()
    right_str = _to_str(right).lower()
    left_num = _to_number(left)
    right_num = _to_number(right)
    numeric = left_num is not None and right_num is not None

    if operator == "==":
        return left == right or left_str == right_str
    if operator == "!=":
        return left != right and left_str != right_str
    if operator == "<":
        return left_num < right_num if numeric else left_str < right_str
    if operator == ">":
        return left_num > right_num if numeric else left_str > right_str
    if operator == "<=":
        return left_num <= right_num if numeric else left_str <= right_str
    if operator == ">=":
        return left_num >= right_num if numeric else left_str >= right_str
    if operator == "contains":
        return right_str in left_str
    if operator == "not_contains":
        return right_str not in left_str
    if operator == "starts_with":
        return left_str.startswith(right_str)
    if operator == "ends_with":
        return left_str.endswith(right_str)
    if operator in ("in", "not_in"):
        if isinstance(right, (list, tuple)):
            found = any(_to_str(item).lower() == left_str for item in right)
        else:
            found = left_str in [part.strip().lower() for part in right_str.split(",")]
        return found if operator == "in" else not found
    if operator == "exists":
        return left != ""
    if operator == "not_exists":
        return left == ""

    logger.warning(f"Unknown comparison operator: {operator}")
    return False


# =============================================================================
# Evaluator
# =============================================================================

class ConditionEvaluator:
    """Evaluates condition configurations against an evaluation context."""

    def __init__(self, context: Dict[str, Any]):
        self.context = {
            "formData": context.get("formData") or {},
            "userProperties": context.get("userProperties") or {},
            "systemData": context.get("systemData") or {},
        }

    # --- entry points -------------------------------------------------------

    def evaluate(self, config: Dict[str, Any]) -> ConditionResult:
        """Evaluate an "if" or "switch" condition configuration."""
        condition_type = (config or {}).get("type")
        try:
            if condition_type == "if":
                return self._evaluate_if(config)
            if condition_type == "switch":
                return self._evaluate_switch(config)
            return ConditionResult(success=False, error=f"Unknown condition type: {condition_type}")
        except (TypeError, ValueError, KeyError, AttributeError) as e:
            logger.warning(f"Condition evaluation error: {e}")
            return ConditionResult(success=False, error=str(e))

    def evaluate_enhanced(self, condition: Dict[str, Any]) -> ConditionResult:
        """Evaluate an enhanced (form/field level) condition."""
        return self.evaluate({"type": "if", "condition": condition, "truePath": "true", "falsePath": "false"})

    # --- if / switch --------------------------------------------------------

    def _evaluate_if(self, config: Dict[str, Any]) -> ConditionResult:
        condition = config.get("condition") or {}
        if "systemType" in condition:
            outcome = self._enhanced(condition)
        else:
            outcome = self._group(condition)

        if not outcome.result and outcome.waiting:
            return ConditionResult(
                success=True,
                result=False,
                evaluated_conditions={"conditionResult": False},
                waiting_for_value=True,
                waiting_fields=outcome.waiting_fields,
            )

        return ConditionResult(
            success=True,
            result=outcome.result,
            evaluated_conditions={"conditionResult": outcome.result},
        )

    def _evaluate_switch(self, config: Dict[str, Any]) -> ConditionResult:
        field_value = self.resolve_field_path(config.get("field") or {})

        matching_case = None
        for case in config.get("cases") or []:
            if compare_values(field_value, case.get("value"), "=="):
                matching_case = case
                break

        result_path = matching_case.get("path") if matching_case else config.get("defaultPath")
        return ConditionResult(
            success=True,
            result=result_path or "default",
            evaluated_conditions={
                "fieldValue": field_value,
                "matchedCase": matching_case.get("value") if matching_case else None,
                "resultPath": result_path,
            },
        )

    # --- simple conditions and groups ---------------------------------------

    def _group(self, condition: Dict[str, Any]) -> _Outcome:
        if "leftOperand" in condition:
            return self._simple(condition)

        if "conditions" in condition:
            outcomes = [self._group(c) for c in condition.get("conditions") or []]
            waiting = [o for o in outcomes if o.waiting]
            if waiting:
                return _Outcome(False, True, [f for o in waiting for f in o.waiting_fields])

            operator = (condition.get("operator") or "AND").upper()
            if operator == "AND":
                return _Outcome(all(o.result for o in outcomes))
            if operator == "OR":
                return _Outcome(any(o.result for o in outcomes))

        return _Outcome(False)

    def _simple(self, condition: Dict[str, Any]) -> _Outcome:
        left_operand = condition.get("leftOperand") or {}
        operator = condition.get("operator", "==")
        left_value = self.resolve_field_path(left_operand)

        if (
            left_operand.get("type") == "form"
            and operator not in WAIT_BYPASS_OPERATORS
            and is_empty_value(left_value)
        ):
            logger.info(f"Field '{left_operand.get('path')}' is empty, waiting for a value")
            return _Outcome(False, True, [left_operand.get("path")])

        right_operand = condition.get("rightOperand")
        if isinstance(right_operand, dict):
            if "value" in right_operand:
                right_value = right_operand.get("value")
            else:
                right_value = self.resolve_field_path(right_operand)
        else:
            right_value = right_operand

        return _Outcome(compare_values(left_value, right_value, operator))

    def resolve_field_path(self, field_path: Dict[str, Any]) -> Any:
        path_type = field_path.get("type")
        path = field_path.get("path")

        if path_type == "form":
            return get_nested_value(self.context["formData"], path)
        if path_type == "user":
            return get_nested_value(self.context["userProperties"], path)
        if path_type == "system":
            return get_nested_value(self.context["systemData"], path)
        if path_type == "static":
            return field_path["value"] if "value" in field_path else path
        return None

    # --- enhanced conditions ------------------------------------------------

    def _enhanced(self, condition: Dict[str, Any]) -> _Outcome:
        items = condition.get("conditions") or []
        if items:
            outcomes = [self._condition_item(item) for item in items]

            waiting = [o for o in outcomes if o.waiting]
            if waiting:
                return _Outcome(False, True, [f for o in waiting for f in o.waiting_fields])

            results = [o.result for o in outcomes]

            manual = condition.get("manualExpression")
            if condition.get("useManualExpression", False) and manual:
                try:
                    return _Outcome(logical.evaluate(manual, logical.results_by_number(results)))
                except ExpressionError as e:
                    logger.warning(f"Manual expression failed, falling back to sequential chain: {e}")

            operators = [item.get("logicalOperatorWithNext") or "AND" for item in items]
            return _Outcome(logical.evaluate_sequential(results, operators))

        # Single condition configured directly on the enhanced condition
        return self._condition_item(condition)

    def _condition_item(self, item: Dict[str, Any]) -> _Outcome:
        system_type = item.get("systemType")
        if system_type == "form_level" and item.get("formLevelCondition"):
            return self._form_level(item["formLevelCondition"])
        if system_type == "field_level" and item.get("fieldLevelCondition"):
            return self._field_level(item["fieldLevelCondition"])
        return _Outcome(False)

    def _form_level(self, condition: Dict[str, Any]) -> _Outcome:
        condition_type = condition.get("conditionType")
        system = self.context["systemData"]
        user = self.context["userProperties"]

        if condition_type == "form_status":
            actual = system.get("formStatus")
        elif condition_type == "form_submission":
            actual = system.get("submissionStatus")
        elif condition_type == "user_property":
            actual = user.get("role") or user.get("user_role")
        else:
            return _Outcome(False)

        # Form-level checks never wait
        return _Outcome(compare_values(actual, condition.get("value"), condition.get("operator", "==")))

    def _field_level(self, condition: Dict[str, Any]) -> _Outcome:
        field_id = condition.get("fieldId")
        operator = condition.get("operator", "==")
        value = self.context["formData"].get(field_id) if field_id else None

        if operator not in WAIT_BYPASS_OPERATORS and is_empty_value(value):
            logger.info(f"Field '{field_id}' is empty, waiting for a value")
            return _Outcome(False, True, [field_id])

        return _Outcome(compare_values(value, condition.get("value"), operator))


def build_evaluation_context(
    trigger_data: Dict[str, Any],
    execution_id: Optional[str] = None,
    form_status: Optional[str] = None,
    submission_status: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the evaluation context from an execution's trigger data."""
    trigger_data = trigger_data or {}
    submitter_id = trigger_data.get("submitterId")
    return {
        "formData": trigger_data.get("submissionData") or trigger_data,
        "userProperties": {
            "id": submitter_id,
            "role": trigger_data.get("userRole") or "user",
            "email": trigger_data.get("userEmail") or "",
        },
        "systemData": {
            "approvalStatus": trigger_data.get("approvalStatus"),
            "currentUserId": submitter_id,
            "submissionId": trigger_data.get("submissionId"),
            "workflowExecutionId": execution_id,
            "formStatus": form_status,
            "submissionStatus": submission_status or trigger_data.get("approvalStatus"),
        },
    }
