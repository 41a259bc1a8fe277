"""
Query Field SQL Subset

Query fields hold a small SQL dialect evaluated against one form's submissions:

    SELECT FIELD('field-uuid'), UPPER(FIELD('other')) AS name
    FROM "form-uuid"
    WHERE FIELD('status') = 'open' AND submitted_at IS NOT NULL

    UPDATE FORM 'form-uuid' SET FIELD('field-uuid') = 'value'
    WHERE submission_id = 'submission-uuid'

Nothing is sent to the database as SQL. Submissions are loaded through the
ORM and every expression is evaluated in Python.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from models import FormSubmission
from .sql_functions import (
    AGGREGATE_FUNCTIONS,
    evaluate_aggregate,
    evaluate_expression,
    split_arguments,
)

logger = logging.getLogger(__name__)

UUID = r"[0-9a-fA-F-]{36}"

SELECT_PATTERN = re.compile(
    rf"^SELECT\s+(.+?)\s+FROM\s+['\"]({UUID})['\"](?:\s+WHERE\s+(.+))?$",
    re.IGNORECASE | re.DOTALL,
)
UPDATE_PATTERN = re.compile(
    rf"^UPDATE\s+FORM\s+['\"]({UUID})['\"]\s+SET\s+FIELD\(\s*['\"]({UUID})['\"]\s*\)\s*=\s*(.+?)"
    rf"\s+WHERE\s+submission_id\s*=\s*['\"]({UUID})['\"]$",
    re.IGNORECASE | re.DOTALL,
)
# A quoted field id outside FIELD(...) is an older way to reference a field
LEGACY_FIELD_PATTERN = re.compile(rf"(?<!FIELD\()(?<!FIELD\(\s)\"({UUID})\"", re.IGNORECASE)
ALIAS_PATTERN = re.compile(r"^(.+?)\s+AS\s+['\"]?([A-Za-z0-9_ -]+?)['\"]?$", re.IGNORECASE | re.DOTALL)
AGGREGATE_PATTERN = re.compile(
    rf"^({'|'.join(AGGREGATE_FUNCTIONS)})\s*\((.*)\)$", re.IGNORECASE | re.DOTALL
)
FIELD_REF_PATTERN = re.compile(r"^FIELD\(\s*['\"]([^'\"]+)['\"]\s*\)$", re.IGNORECASE)

ONLY_SELECT_OR_UPDATE = "Only SELECT queries and UPDATE FORM queries are allowed."
INVALID_SELECT = 'Invalid syntax. Expected: SELECT … FROM "form_uuid" [WHERE …]'
INVALID_UPDATE = (
    "Invalid UPDATE FORM syntax. Expected: UPDATE FORM 'form_id' SET "
    "FIELD('field_id') = value WHERE submission_id = 'submission_id'"
)


class QueryParseError(Exception):
    """Raised when a query field's SQL cannot be parsed."""
    pass


# =============================================================================
# Parsed queries and results
# =============================================================================

@dataclass
class SelectColumn:
    expression: str
    name: str
    aggregate: Optional[str] = None  # COUNT / SUM / AVG / MIN / MAX
    argument: Optional[str] = None


@dataclass
class SelectQuery:
    form_id: str
    columns: List[SelectColumn]
    where: Optional[str] = None

    @property
    def has_aggregates(self) -> bool:
        return any(c.aggregate for c in self.columns)


@dataclass
class UpdateQuery:
    form_id: str
    field_id: str
    value_expression: str
    submission_id: str


@dataclass
class QueryResult:
    columns: List[str] = field(default_factory=list)
    rows: List[List[Any]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"columns": self.columns, "rows": self.rows, "errors": self.errors}


# =============================================================================
# Parsing
# =============================================================================

def normalize_field_references(text: str) -> str:
    return LEGACY_FIELD_PATTERN.sub(lambda m: f"FIELD('{m.group(1)}')", text)


def _column_name(expression: str) -> str:
    ref = FIELD_REF_PATTERN.match(expression)
    if ref:
        return ref.group(1)
    return expression


def parse_select_column(text: str) -> SelectColumn:
    text = text.strip()
    alias = None
    aliased = ALIAS_PATTERN.match(text)
    if aliased:
        text, alias = aliased.group(1).strip(), aliased.group(2).strip()

    aggregate = AGGREGATE_PATTERN.match(text)
    if aggregate:
        return SelectColumn(
            expression=text,
            name=alias or text,
            aggregate=aggregate.group(1).upper(),
            argument=aggregate.group(2).strip(),
        )
    return SelectColumn(expression=text, name=alias or _column_name(text))


def parse_user_query(query: str):
    """
    Parse a query field's SQL into a SelectQuery or UpdateQuery.

    Raises QueryParseError for anything outside the supported subset.
    """
    text = (query or "").strip()
    if text.endswith(";"):
        text = text[:-1].strip()
    upper = text.upper()

    if upper.startswith("UPDATE FORM"):
        match = UPDATE_PATTERN.match(text)
        if not match:
            raise QueryParseError(INVALID_UPDATE)
        form_id, field_id, value, submission_id = match.groups()
        return UpdateQuery(form_id, field_id, value.strip(), submission_id)

    if not upper.startswith("SELECT"):
        raise QueryParseError(ONLY_SELECT_OR_UPDATE)

    match = SELECT_PATTERN.match(text)
    if not match:
        raise QueryParseError(INVALID_SELECT)

    select_list, form_id, where = match.groups()
    select_list = normalize_field_references(select_list)
    columns = [parse_select_column(part) for part in split_arguments(select_list)]
    if not columns:
        raise QueryParseError(INVALID_SELECT)

    return SelectQuery(
        form_id=form_id,
        columns=columns,
        where=normalize_field_references(where.strip()) if where else None,
    )


# =============================================================================
# WHERE clauses
# =============================================================================

Row = Dict[str, Any]
Predicate = Callable[[Row], bool]

WHERE_TOKEN = re.compile(
    r"\s*(?:"
    r"(?P<string>'(?:[^'\\]|\\.)*'|\"(?:[^\"\\]|\\.)*\")"
    r"|(?P<op><=|>=|<>|!=|==|=|<|>)"
    r"|(?P<word>[A-Za-z_][A-Za-z0-9_]*)"
    r"|(?P<number>-?\d+(?:\.\d+)?)"
    r"|(?P<punct>[(),*+/-])"
    r")"
)
STOP_WORDS = {"AND", "OR", "IS", "LIKE", "ILIKE", "NOT", "IN"}


@dataclass
class _Token:
    kind: str
    text: str
    start: int
    end: int


def _tokenize_where(text: str) -> List[_Token]:
    tokens = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        match = WHERE_TOKEN.match(text, pos)
        if not match or match.end() == pos:
            raise QueryParseError(f"Unexpected character in WHERE clause at position {pos}: {text[pos]!r}")
        kind = match.lastgroup
        tokens.append(_Token(kind, match.group(kind), match.start(kind), match.end(kind)))
        pos = match.end()
    return tokens


def _number_or_text(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    try:
        return float(str(value))
    except (TypeError, ValueError):
        return None


def compare(left: Any, op: str, right: Any) -> bool:
    if left is None or right is None:
        if op in ("=", "=="):
            return left is None and right is None
        if op in ("!=", "<>"):
            return (left is None) != (right is None)
        return False

    left_num, right_num = _number_or_text(left), _number_or_text(right)
    if left_num is not None and right_num is not None:
        left, right = left_num, right_num
    else:
        left, right = str(left), str(right)

    if op in ("=", "=="):
        return left == right
    if op in ("!=", "<>"):
        return left != right
    if op == "<":
        return left < right
    if op == ">":
        return left > right
    if op == "<=":
        return left <= right
    if op == ">=":
        return left >= right
    raise QueryParseError(f"Unsupported operator: {op}")


def like(value: Any, pattern: Any, case_sensitive: bool = True) -> bool:
    if value is None or pattern is None:
        return False
    regex = "".join(
        ".*" if ch == "%" else "." if ch == "_" else re.escape(ch)
        for ch in str(pattern)
    )
    flags = re.DOTALL if case_sensitive else re.DOTALL | re.IGNORECASE
    return re.fullmatch(regex, str(value), flags) is not None


class WhereParser:
    """Recursive-descent parser turning a WHERE clause into a row predicate."""

    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize_where(text)
        self.pos = 0

    def parse(self) -> Predicate:
        if not self.tokens:
            raise QueryParseError("Empty WHERE clause")
        predicate = self._parse_or()
        if self.pos < len(self.tokens):
            raise QueryParseError(f"Unexpected token in WHERE clause: {self.tokens[self.pos].text}")
        return predicate

    def _peek(self, offset: int = 0) -> Optional[_Token]:
        index = self.pos + offset
        return self.tokens[index] if index < len(self.tokens) else None

    def _is_word(self, word: str, offset: int = 0) -> bool:
        token = self._peek(offset)
        return token is not None and token.kind == "word" and token.text.upper() == word

    def _expect_word(self, word: str):
        if not self._is_word(word):
            raise QueryParseError(f"Expected {word} in WHERE clause")
        self.pos += 1

    def _parse_or(self) -> Predicate:
        left = self._parse_and()
        while self._is_word("OR"):
            self.pos += 1
            right = self._parse_and()
            left = (lambda a, b: lambda row: a(row) or b(row))(left, right)
        return left

    def _parse_and(self) -> Predicate:
        left = self._parse_not()
        while self._is_word("AND"):
            self.pos += 1
            right = self._parse_not()
            left = (lambda a, b: lambda row: a(row) and b(row))(left, right)
        return left

    def _parse_not(self) -> Predicate:
        if self._is_word("NOT"):
            self.pos += 1
            inner = self._parse_not()
            return lambda row: not inner(row)
        return self._parse_predicate()

    def _is_group(self) -> bool:
        """True when a leading '(' wraps a condition rather than a value."""
        token = self._peek()
        if token is None or token.text != "(":
            return False
        depth = 0
        for index in range(self.pos, len(self.tokens)):
            t = self.tokens[index]
            if t.text == "(":
                depth += 1
            elif t.text == ")":
                depth -= 1
                if depth == 0:
                    return False
            elif depth == 1 and (t.kind == "op" or (t.kind == "word" and t.text.upper() in STOP_WORDS)):
                return True
        return False

    def _operand(self) -> str:
        start_pos = self.pos
        depth = 0
        while self.pos < len(self.tokens):
            token = self.tokens[self.pos]
            if depth == 0:
                if token.kind == "op" or token.text == "," or token.text == ")":
                    break
                if token.kind == "word" and token.text.upper() in STOP_WORDS:
                    break
            if token.text == "(":
                depth += 1
            elif token.text == ")":
                depth -= 1
            self.pos += 1

        if self.pos == start_pos:
            raise QueryParseError("Expected a value in WHERE clause")
        return self.text[self.tokens[start_pos].start:self.tokens[self.pos - 1].end]

    def _parse_predicate(self) -> Predicate:
        if self._is_group():
            self.pos += 1
            inner = self._parse_or()
            token = self._peek()
            if token is None or token.text != ")":
                raise QueryParseError("Missing closing parenthesis in WHERE clause")
            self.pos += 1
            return inner

        left = self._operand()

        if self._is_word("IS"):
            self.pos += 1
            negate = False
            if self._is_word("NOT"):
                negate = True
                self.pos += 1
            self._expect_word("NULL")
            return lambda row: (evaluate_expression(left, row) is None) != negate

        negate = False
        if self._is_word("NOT"):
            negate = True
            self.pos += 1

        if self._is_word("LIKE") or self._is_word("ILIKE"):
            case_sensitive = self._is_word("LIKE")
            self.pos += 1
            right = self._operand()
            return lambda row: like(
                evaluate_expression(left, row), evaluate_expression(right, row), case_sensitive
            ) != negate

        if self._is_word("IN"):
            self.pos += 1
            token = self._peek()
            if token is None or token.text != "(":
                raise QueryParseError("Expected ( after IN")
            self.pos += 1
            options = [self._operand()]
            while self._peek() is not None and self._peek().text == ",":
                self.pos += 1
                options.append(self._operand())
            if self._peek() is None or self._peek().text != ")":
                raise QueryParseError("Missing closing parenthesis in IN list")
            self.pos += 1
            return lambda row: any(
                compare(evaluate_expression(left, row), "=", evaluate_expression(o, row)) for o in options
            ) != negate

        if negate:
            raise QueryParseError("Expected LIKE or IN after NOT")

        token = self._peek()
        if token is not None and token.kind == "op":
            op = token.text
            self.pos += 1
            right = self._operand()
            return lambda row: compare(evaluate_expression(left, row), op, evaluate_expression(right, row))

        return lambda row: bool(evaluate_expression(left, row))


def parse_where(text: str) -> Predicate:
    return WhereParser(text).parse()


# =============================================================================
# Execution
# =============================================================================

def submission_row(submission: FormSubmission) -> Row:
    row: Row = dict(submission.submission_data or {})
    row.update({
        "submission_id": submission.id,
        "id": submission.id,
        "submitted_by": submission.submitted_by,
        "submitted_at": submission.submitted_at.isoformat() if submission.submitted_at else None,
        "submission_ref_id": submission.submission_ref_id,
        "approval_status": submission.approval_status,
    })
    return row


def _aggregate_value(column: SelectColumn, rows: List[Row]) -> Any:
    if column.aggregate == "COUNT" and column.argument in ("*", ""):
        return len(rows)
    values = [evaluate_expression(column.argument, row) for row in rows]
    if column.aggregate == "COUNT":
        return len([v for v in values if v is not None])
    return evaluate_aggregate(column.aggregate, values)


def run_select(db: Session, query: SelectQuery) -> QueryResult:
    submissions = db.query(FormSubmission).filter(
        FormSubmission.form_id == query.form_id
    ).order_by(FormSubmission.submitted_at).all()

    rows = [submission_row(s) for s in submissions]
    if query.where:
        predicate = parse_where(query.where)
        rows = [row for row in rows if predicate(row)]

    columns = [c.name for c in query.columns]

    if query.has_aggregates:
        first = rows[0] if rows else {}
        values = [
            _aggregate_value(c, rows) if c.aggregate else evaluate_expression(c.expression, first) if rows else None
            for c in query.columns
        ]
        return QueryResult(columns=columns, rows=[values])

    result_rows = [
        [evaluate_expression(c.expression, row) for c in query.columns]
        for row in rows
    ]
    return QueryResult(columns=columns, rows=result_rows)


def run_update(db: Session, query: UpdateQuery) -> QueryResult:
    submission = db.query(FormSubmission).filter(
        FormSubmission.id == query.submission_id,
        FormSubmission.form_id == query.form_id
    ).first()
    if not submission:
        return QueryResult(errors=["Submission not found or access denied"])

    row = submission_row(submission)
    value = evaluate_expression(query.value_expression, row)
    new_value = "" if value is None else str(value)

    submission.submission_data = {**(submission.submission_data or {}), query.field_id: new_value}
    db.commit()

    logger.info(f"Query field updated {query.field_id} on submission {submission.id}")
    return QueryResult(columns=["message", "updated_rows"], rows=[["Field updated successfully", 1]])


def execute_query(db: Session, query: str) -> QueryResult:
    """
    Parse and run a query field's SQL.

    Parse and evaluation problems come back in QueryResult.errors rather than
    being raised.
    """
    try:
        parsed = parse_user_query(query)
        if isinstance(parsed, UpdateQuery):
            return run_update(db, parsed)
        return run_select(db, parsed)
    except QueryParseError as e:
        return QueryResult(errors=[str(e)])
    except (TypeError, ValueError, ZeroDivisionError, OverflowError, re.error) as e:
        logger.warning(f"Query evaluation failed: {e}")
        return QueryResult(errors=[f"Query evaluation failed: {e}"])
