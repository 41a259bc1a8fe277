import pytest

from conftest import make_form, make_submission
from expressions.calculation import (
    CalculationError,
    evaluate,
    get_auto_suggestions,
    validate_expression,
)


@pytest.mark.parametrize("expression,expected", [
    ("2 + 3 * 4", 14),
    ("(2 + 3) * 4", 20),
    ("2 ^ 3 ^ 2", 512),
    ("10 / 4", 2.5),
    ("10 / 0", None),
    ("7 % 4", 3),
    ("-3 + 1", -2),
    ("1 < 2 AND 3 >= 3", True),
    ("1 = 2 || TRUE", True),
    ("ROUND(3.14159, 2)", 3.14),
    ("ROUND(2.5)", 3),
    ("MAX(1, 7, 3)", 7),
    ('IF(2 > 1, "yes", "no")', "yes"),
    ('SWITCH("medium", "high", 1, "medium", 3, 5)', 3),
    ('SWITCH("other", "high", 1, "medium", 3, 5)', 5),
    ('DATEDIFF("2024-01-10", "2024-01-01")', 9),
    ('DATEDIFF("2024-01-01T12:00:00", "2024-01-01T00:00:00", "hours")', 12),
    ('DATEADD("2024-01-01", 3, "days")', "2024-01-04T00:00:00"),
    ('YEAR("2024-03-05")', 2024),
    ('WEEKDAY("2024-01-07")', 1),
    ('ISWEEKEND("2024-01-06")', True),
    ('LOOKUP("high", {"high": 1, "low": 5})', 1),
    ('IN("a", ["a", "b"])', True),
    ('FORMAT(1234.5, "$0.00")', "$1,234.50"),
    ('SUBSTRING("workflow", 5, 4)', "flow"),
    ('REGEX("ops@example.com", "^[^@]+@[^@]+$")', True),
    ('TO_NUMBER("42")', 42),
])
def test_evaluate_literals(expression, expected):
    assert evaluate(expression, {}) == expected


def test_field_references():
    data = {"price": 100, "tax_rate": 10, "first": "Ada", "last": "Lovelace"}
    assert evaluate("ROUND(#price * (1 + #tax_rate / 100), 2)", data) == 110
    assert evaluate('CONCAT(#first, " ", #last)', data) == "Ada Lovelace"


def test_numeric_strings_add_as_numbers():
    assert evaluate("#a + #b", {"a": "2", "b": "3"}) == 5


def test_text_concatenation_with_plus():
    assert evaluate('#a + "-x"', {"a": "ticket"}) == "ticket-x"


def test_missing_field_is_null():
    assert evaluate("ISNULL(#missing)", {}) is True
    assert evaluate("IFNULL(#missing, 0) + 1", {}) == 1


def test_if_only_evaluates_selected_branch():
    assert evaluate('IF(#priority = "high", 2, TO_NUMBER("abc"))', {"priority": "high"}) == 2


@pytest.mark.parametrize("expression", [
    "FOO(1)",
    "SQRT(1, 2)",
    "1 +",
    "2 @ 3",
    "",
    'TO_NUMBER("abc")',
])
def test_invalid_expressions_raise(expression):
    with pytest.raises(CalculationError):
        evaluate(expression, {})


DEEPLY_NESTED = "(" * 3000 + "1" + ")" * 3000


@pytest.mark.parametrize("expression", [
    DEEPLY_NESTED,
    "ROUND(" * 60 + "1" + ")" * 60,
    "-" * 3000 + "1",
])
def test_deep_nesting_is_a_calculation_error(expression):
    with pytest.raises(CalculationError) as excinfo:
        evaluate(expression, {})
    assert "nested more than 50 levels" in str(excinfo.value)


def test_moderate_nesting_still_evaluates():
    assert evaluate("(" * 40 + "1 + 1" + ")" * 40, {}) == 2


def test_aggregates_need_a_target_form():
    with pytest.raises(CalculationError) as excinfo:
        evaluate("SUM(#amount)", {})
    assert "Target form ID required" in str(excinfo.value)


def test_aggregates_read_target_form_submissions(db):
    form = make_form(db)
    for amount in (10, 20, "", "n/a"):
        make_submission(db, form, {"amount": amount})

    assert evaluate("COUNT(#amount)", {}, db=db, target_form_id=form.id) == 2
    assert evaluate("SUM(#amount)", {}, db=db, target_form_id=form.id) == 30
    assert evaluate("AVG(#amount)", {}, db=db, target_form_id=form.id) == 15
    assert evaluate("MEDIAN(#amount)", {}, db=db, target_form_id=form.id) == 15
    assert evaluate("STDEV(#amount)", {}, db=db, target_form_id=form.id) == 5


# =============================================================================
# Editor helpers
# =============================================================================

def test_validate_accepts_known_fields_and_functions():
    assert validate_expression("ROUND(#a * 2, 1)", ["a"]) == {"isValid": True, "errors": []}


def test_validate_reports_unknown_fields():
    result = validate_expression("#a + #missing", ["a"])
    assert result["isValid"] is False
    assert result["errors"] == ["Field 'missing' not found"]


def test_validate_reports_arity_and_unknown_functions():
    result = validate_expression("SQRT(#a, 2) + FOO(#a)", ["a"])
    assert "SQRT expects at most 1 argument(s), got 2" in result["errors"]
    assert "Unknown function 'FOO'" in result["errors"]


def test_validate_reports_syntax_errors():
    result = validate_expression("(#a + 1", ["a"])
    assert result["isValid"] is False
    assert len(result["errors"]) == 1


def test_validate_reports_deep_nesting():
    result = validate_expression(DEEPLY_NESTED, [])
    assert result["isValid"] is False
    assert "nested more than 50 levels" in result["errors"][0]


def test_suggests_functions_for_partial_name():
    suggestions = get_auto_suggestions("RO", ["a"])
    assert [s["label"] for s in suggestions] == ["ROUND"]
    assert suggestions[0]["insertText"] == "ROUND(arg1)"


def test_suggests_fields_after_hash():
    assert [s["label"] for s in get_auto_suggestions("1 + #", ["amount", "total"])] == ["amount", "total"]
    assert [s["label"] for s in get_auto_suggestions("#am", ["amount", "total"])] == ["amount"]


def test_suggestions_respect_cursor_position():
    suggestions = get_auto_suggestions("NO + #amount", ["amount"], cursor_position=2)
    assert [s["label"] for s in suggestions] == ["NOT", "NOW"]
