import pytest

from conftest import make_form, make_submission
from expressions.sql_functions import evaluate_expression, split_arguments
from expressions.sql_query import (
    INVALID_SELECT,
    INVALID_UPDATE,
    ONLY_SELECT_OR_UPDATE,
    QueryParseError,
    SelectQuery,
    UpdateQuery,
    execute_query,
    parse_user_query,
    parse_where,
)
from models import generate_uuid


FORM_ID = "0b6f4a52-93e1-4c1e-8f7a-2d5c1e9b7a10"
FIELD_ID = "7d1c2b3a-4e5f-4a6b-8c7d-9e0f1a2b3c4d"
SUBMISSION_ID = "f3e2d1c0-b9a8-4765-8432-10fedcba9876"


@pytest.fixture
def tickets(db):
    form = make_form(db, name="Tickets")
    make_submission(db, form, {"title": "Alpha", "status": "open", "amount": 10})
    make_submission(db, form, {"title": "Beta", "status": "closed", "amount": 20})
    make_submission(db, form, {"title": "alpine", "status": "pending", "amount": 5, "note": "late"})
    return form


# =============================================================================
# Functions and row expressions
# =============================================================================

def test_split_arguments_respects_quotes_and_nesting():
    assert split_arguments("CONCAT('a,b', FIELD('x')), 3") == ["CONCAT('a,b', FIELD('x'))", "3"]
    assert split_arguments("") == []


@pytest.mark.parametrize("expression,expected", [
    ("CONCAT(UPPER(FIELD('a')), '-', 5)", "X-5"),
    ("LENGTH(FIELD('a'))", 1),
    ("'quoted'", "quoted"),
    ("42", 42),
    ("2.5", 2.5),
    ("NULL", None),
    ("(7)", 7),
    ("a", "x"),
    ("COALESCE(FIELD('missing'), 'fallback')", "fallback"),
    ("IF(FIELD('a'), 'set', 'unset')", "set"),
    ("ROUND(3.14159, 2)", 3.14),
    ("SUBSTRING('workflow', 5)", "flow"),
    ("DATE_ADD('2024-01-31', 1, 'MONTH')", "2024-02-29T00:00:00"),
    ("DATE_SUB('2024-03-01', 1, 'DAY')", "2024-02-29T00:00:00"),
    ("DATEDIFF('2024-01-01', '2024-01-03T01:00:00')", 3),
    ("MYSTERY('first', 'second')", "first"),
])
def test_evaluate_expression(expression, expected):
    assert evaluate_expression(expression, {"a": "x"}) == expected


# =============================================================================
# Parsing
# =============================================================================

def test_parse_select():
    query = parse_user_query(
        f"SELECT FIELD('{FIELD_ID}'), UPPER(FIELD('title')) AS label FROM \"{FORM_ID}\" WHERE FIELD('status') = 'open';"
    )
    assert isinstance(query, SelectQuery)
    assert query.form_id == FORM_ID
    assert [c.name for c in query.columns] == [FIELD_ID, "label"]
    assert query.where == "FIELD('status') = 'open'"
    assert not query.has_aggregates


def test_legacy_quoted_field_ids_become_field_calls():
    query = parse_user_query(f'SELECT "{FIELD_ID}" FROM "{FORM_ID}"')
    assert query.columns[0].expression == f"FIELD('{FIELD_ID}')"


def test_parse_aggregate_columns():
    query = parse_user_query(f"SELECT COUNT(*) AS total, SUM(FIELD('amount')) FROM '{FORM_ID}'")
    assert query.has_aggregates
    assert [(c.aggregate, c.argument, c.name) for c in query.columns] == [
        ("COUNT", "*", "total"),
        ("SUM", "FIELD('amount')", "SUM(FIELD('amount'))"),
    ]


def test_parse_update():
    query = parse_user_query(
        f"UPDATE FORM '{FORM_ID}' SET FIELD('{FIELD_ID}') = 'done' WHERE submission_id = '{SUBMISSION_ID}'"
    )
    assert query == UpdateQuery(FORM_ID, FIELD_ID, "'done'", SUBMISSION_ID)


@pytest.mark.parametrize("query,message", [
    ("DELETE FROM things", ONLY_SELECT_OR_UPDATE),
    ("", ONLY_SELECT_OR_UPDATE),
    ("SELECT * FROM forms", INVALID_SELECT),
    (f"UPDATE FORM '{FORM_ID}' SET status = 1", INVALID_UPDATE),
])
def test_parse_errors(query, message):
    with pytest.raises(QueryParseError) as excinfo:
        parse_user_query(query)
    assert str(excinfo.value) == message


@pytest.mark.parametrize("clause,row,expected", [
    ("FIELD('n') > 5", {"n": "10"}, True),
    ("FIELD('n') <= 5", {"n": 10}, False),
    ("FIELD('s') = 'open' AND FIELD('n') = 1", {"s": "open", "n": 1}, True),
    ("FIELD('s') = 'x' OR FIELD('n') != 1", {"s": "open", "n": 1}, False),
    ("(FIELD('s') = 'x' OR FIELD('n') = 1) AND NOT FIELD('s') = 'closed'", {"s": "open", "n": 1}, True),
    ("FIELD('s') LIKE 'op%'", {"s": "open"}, True),
    ("FIELD('s') LIKE 'OP%'", {"s": "open"}, False),
    ("FIELD('s') ILIKE 'OP_N'", {"s": "open"}, True),
    ("FIELD('s') NOT LIKE '%en'", {"s": "open"}, False),
    ("FIELD('s') IN ('open', 'pending')", {"s": "pending"}, True),
    ("FIELD('s') NOT IN ('open', 'pending')", {"s": "pending"}, False),
    ("FIELD('missing') IS NULL", {}, True),
    ("FIELD('s') IS NOT NULL", {"s": "open"}, True),
    ("FIELD('missing') = NULL", {}, True),
    ("FIELD('flag')", {"flag": True}, True),
])
def test_where_predicates(clause, row, expected):
    assert parse_where(clause)(row) is expected


def test_where_rejects_unbalanced_groups():
    with pytest.raises(QueryParseError):
        parse_where("(FIELD('s') = 'open'")


# =============================================================================
# Execution
# =============================================================================

def test_select_with_where(db, tickets):
    result = execute_query(
        db, f"SELECT FIELD('title'), FIELD('amount') AS amount FROM \"{tickets.id}\" WHERE FIELD('status') != 'closed'"
    )
    assert result.errors == []
    assert result.columns == ["title", "amount"]
    assert sorted(result.rows) == [["Alpha", 10], ["alpine", 5]]


def test_select_with_like(db, tickets):
    result = execute_query(db, f"SELECT FIELD('title') FROM \"{tickets.id}\" WHERE FIELD('title') ILIKE 'al%'")
    assert sorted(row[0] for row in result.rows) == ["Alpha", "alpine"]


def test_select_system_columns(db, tickets):
    result = execute_query(
        db, f"SELECT submission_ref_id, approval_status FROM \"{tickets.id}\" WHERE FIELD('note') IS NOT NULL"
    )
    assert len(result.rows) == 1
    assert result.rows[0][0].startswith("SUB-")
    assert result.rows[0][1] == "pending"


def test_select_aggregates(db, tickets):
    result = execute_query(
        db,
        f"SELECT COUNT(*) AS total, SUM(FIELD('amount')) AS sum, MAX(FIELD('amount')) AS top "
        f"FROM \"{tickets.id}\" WHERE FIELD('status') <> 'closed'"
    )
    assert result.columns == ["total", "sum", "top"]
    assert result.rows == [[2, 15, 10]]


def test_aggregates_over_no_rows_still_return_a_row(db, tickets):
    result = execute_query(
        db, f"SELECT COUNT(*), AVG(FIELD('amount')), MIN(FIELD('amount')) FROM \"{tickets.id}\" WHERE FIELD('status') = 'x'"
    )
    assert result.rows == [[0, 0, None]]


def test_select_without_matches(db, tickets):
    result = execute_query(db, f"SELECT FIELD('title') FROM \"{tickets.id}\" WHERE FIELD('amount') > 100")
    assert result.columns == ["title"]
    assert result.rows == []


def test_update_sets_field_value(db):
    field_id = generate_uuid()
    form = make_form(db, fields=[{"id": field_id, "label": "Status"}])
    submission = make_submission(db, form, {field_id: "open", "other": "kept"})

    result = execute_query(
        db,
        f"UPDATE FORM '{form.id}' SET FIELD('{field_id}') = UPPER('done') WHERE submission_id = '{submission.id}'"
    )

    assert result.errors == []
    assert result.columns == ["message", "updated_rows"]
    assert result.rows == [["Field updated successfully", 1]]
    db.refresh(submission)
    assert submission.submission_data == {field_id: "DONE", "other": "kept"}


def test_update_unknown_submission(db):
    form = make_form(db)
    result = execute_query(
        db, f"UPDATE FORM '{form.id}' SET FIELD('{FIELD_ID}') = 1 WHERE submission_id = '{SUBMISSION_ID}'"
    )
    assert result.errors == ["Submission not found or access denied"]


def test_errors_are_returned_not_raised(db):
    assert execute_query(db, "DROP TABLE forms").errors == [ONLY_SELECT_OR_UPDATE]
    result = execute_query(db, f"SELECT FIELD('a') FROM \"{FORM_ID}\" WHERE FIELD('a') = ")
    assert result.errors
