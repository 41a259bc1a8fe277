"""
Calculation Engine

Evaluates calculated-field formulas such as

    ROUND(#price * (1 + #tax_rate / 100), 2)
    IF(#priority = "high", 2, 5)
    CONCAT(#first_name, " ", #last_name)

Formulas are tokenized and parsed by recursive descent into a small AST, then
evaluated against the submission's form data. "#fieldId" references resolve
to form values; aggregate functions (COUNT, SUM, AVG, MEDIAN, STDEV) read every
submission of a target form.
"""

import logging
import math
import random
import re
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from models import FormSubmission

logger = logging.getLogger(__name__)


class CalculationError(Exception):
    """Raised when a formula cannot be parsed or evaluated."""
    pass


# =============================================================================
# Function table
# =============================================================================

@dataclass
class CalculationFunction:
    name: str
    category: str
    description: str
    syntax: str
    example: str
    min_args: int
    max_args: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "category": self.category,
            "description": self.description,
            "syntax": self.syntax,
            "example": self.example,
            "minArgs": self.min_args,
            "maxArgs": self.max_args,
        }


def _fn(name, category, description, syntax, example, min_args, max_args=None) -> CalculationFunction:
    return CalculationFunction(name, category, description, syntax, example, min_args, max_args)


CALCULATION_FUNCTIONS: List[CalculationFunction] = [
    # Basic Arithmetic
    _fn("ADD", "Basic Arithmetic", "Adds two numbers", "ADD(a, b)", "ADD(#price, #tax)", 2, 2),
    _fn("SUBTRACT", "Basic Arithmetic", "Subtracts second number from first", "SUBTRACT(a, b)", "SUBTRACT(#budget, #spent)", 2, 2),
    _fn("MULTIPLY", "Basic Arithmetic", "Multiplies two numbers", "MULTIPLY(a, b)", "MULTIPLY(#cost_per_user, #users)", 2, 2),
    _fn("DIVIDE", "Basic Arithmetic", "Divides first number by second", "DIVIDE(a, b)", "DIVIDE(#total_time, #count)", 2, 2),
    _fn("MOD", "Basic Arithmetic", "Returns remainder of division", "MOD(a, b)", "MOD(#ticket_number, 2)", 2, 2),

    # Advanced Math
    _fn("POWER", "Advanced Math", "Exponential calculation", "POWER(base, exponent)", "POWER(#growth_rate, #years)", 2, 2),
    _fn("SQRT", "Advanced Math", "Square root of a number", "SQRT(x)", "SQRT(#variance)", 1, 1),
    _fn("ABS", "Advanced Math", "Absolute value", "ABS(x)", "ABS(#deviation)", 1, 1),
    _fn("ROUND", "Advanced Math", "Rounds to defined decimal points", "ROUND(x, precision)", "ROUND(#response_time, 2)", 1, 2),
    _fn("FLOOR", "Advanced Math", "Rounds down to nearest integer", "FLOOR(x)", "FLOOR(#hours)", 1, 1),
    _fn("CEIL", "Advanced Math", "Rounds up to nearest integer", "CEIL(x)", "CEIL(#escalation_level)", 1, 1),
    _fn("MAX", "Advanced Math", "Returns the maximum value", "MAX(a, b, c...)", "MAX(#delay1, #delay2, #delay3)", 2),
    _fn("MIN", "Advanced Math", "Returns the minimum value", "MIN(a, b, c...)", "MIN(#time1, #time2, #time3)", 2),
    _fn("EXP", "Advanced Math", "e to the power x", "EXP(x)", "EXP(#growth_factor)", 1, 1),
    _fn("LOG", "Advanced Math", "Natural logarithm", "LOG(x)", "LOG(#metric_value)", 1, 1),
    _fn("LOG10", "Advanced Math", "Base-10 logarithm", "LOG10(x)", "LOG10(#large_value)", 1, 1),

    # Logical & Conditional
    _fn("IF", "Logical & Conditional", "Conditional logic", "IF(condition, trueValue, falseValue)", 'IF(#priority = "high", 2, 5)', 3, 3),
    _fn("AND", "Logical & Conditional", "Logical AND", "AND(cond1, cond2...)", "AND(#overdue, #high_priority)", 2),
    _fn("OR", "Logical & Conditional", "Logical OR", "OR(cond1, cond2...)", "OR(#vip_user, #critical_asset)", 2),
    _fn("NOT", "Logical & Conditional", "Logical negation", "NOT(condition)", "NOT(#resolved)", 1, 1),
    _fn("ISNULL", "Logical & Conditional", "Checks if a value is null", "ISNULL(value)", "ISNULL(#effort)", 1, 1),
    _fn("IFNULL", "Logical & Conditional", "Returns value or default if null", "IFNULL(value, default)", "IFNULL(#effort, 0)", 2, 2),
    _fn("SWITCH", "Logical & Conditional", "Multi-condition logic", "SWITCH(expr, case1, val1, case2, val2, default)", 'SWITCH(#priority, "high", 1, "medium", 3, 5)', 3),

    # Date & Time
    _fn("NOW", "Date & Time", "Current date/time", "NOW()", "NOW()", 0, 0),
    _fn("TODAY", "Date & Time", "Current date without time", "TODAY()", "TODAY()", 0, 0),
    _fn("DATEDIFF", "Date & Time", "Difference between dates", "DATEDIFF(date1, date2, unit)", 'DATEDIFF(#deadline, NOW(), "days")', 2, 3),
    _fn("DATEADD", "Date & Time", "Add time to a date", "DATEADD(date, amount, unit)", 'DATEADD(#start_date, 3, "days")', 3, 3),
    _fn("YEAR", "Date & Time", "Extract year from date", "YEAR(date)", "YEAR(#created_date)", 1, 1),
    _fn("MONTH", "Date & Time", "Extract month from date", "MONTH(date)", "MONTH(#created_date)", 1, 1),
    _fn("DAY", "Date & Time", "Extract day from date", "DAY(date)", "DAY(#created_date)", 1, 1),
    _fn("HOUR", "Date & Time", "Extract hour from date", "HOUR(date)", "HOUR(#timestamp)", 1, 1),
    _fn("MINUTE", "Date & Time", "Extract minute from date", "MINUTE(date)", "MINUTE(#timestamp)", 1, 1),
    _fn("SECOND", "Date & Time", "Extract second from date", "SECOND(date)", "SECOND(#timestamp)", 1, 1),
    _fn("WEEKDAY", "Date & Time", "Day of the week (1 = Sunday)", "WEEKDAY(date)", "WEEKDAY(#date)", 1, 1),
    _fn("ISWEEKEND", "Date & Time", "Boolean for weekend", "ISWEEKEND(date)", "ISWEEKEND(#date)", 1, 1),

    # String & Conversion
    _fn("LENGTH", "String & Conversion", "Length of a string", "LENGTH(text)", "LENGTH(#description)", 1, 1),
    _fn("UPPER", "String & Conversion", "Convert to uppercase", "UPPER(text)", "UPPER(#category)", 1, 1),
    _fn("LOWER", "String & Conversion", "Convert to lowercase", "LOWER(text)", "LOWER(#status)", 1, 1),
    _fn("CONCAT", "String & Conversion", "Merge strings", "CONCAT(str1, str2...)", 'CONCAT(#first_name, " ", #last_name)', 2),
    _fn("SUBSTRING", "String & Conversion", "Extract part of string", "SUBSTRING(text, start, length)", "SUBSTRING(#id, 1, 5)", 2, 3),
    _fn("TRIM", "String & Conversion", "Removes extra whitespace", "TRIM(text)", "TRIM(#input)", 1, 1),

    # Counting & Statistical
    _fn("COUNT", "Counting & Statistical", "Number of elements", "COUNT(field_id)", "COUNT(#task_id)", 1, 1),
    _fn("AVG", "Counting & Statistical", "Average value", "AVG(field_id)", "AVG(#resolution_time)", 1, 1),
    _fn("SUM", "Counting & Statistical", "Total sum", "SUM(field_id)", "SUM(#cost)", 1, 1),
    _fn("MEDIAN", "Counting & Statistical", "Median value", "MEDIAN(field_id)", "MEDIAN(#response_time)", 1, 1),
    _fn("STDEV", "Counting & Statistical", "Standard deviation", "STDEV(field_id)", "STDEV(#scores)", 1, 1),

    # Other Utility
    _fn("IN", "Other Utility", "Checks if value is in list", "IN(value, list)", 'IN(#category, ["hardware", "software"])', 2, 2),
    _fn("CONTAINS", "Other Utility", "True if text includes substring", "CONTAINS(text, substring)", 'CONTAINS(#description, "urgent")', 2, 2),
    _fn("FORMAT", "Other Utility", "Format number to currency, %, etc", "FORMAT(number, pattern)", 'FORMAT(#amount, "$0.00")', 2, 2),
    _fn("UUID", "Other Utility", "Generate unique identifier", "UUID()", "UUID()", 0, 0),
    _fn("RANDOM", "Other Utility", "Generate random number", "RANDOM(min, max)", "RANDOM(1, 100)", 0, 2),
    _fn("LOOKUP", "Other Utility", "Find value from mapping", "LOOKUP(key, map)", 'LOOKUP(#priority, {"high": 1, "low": 5})', 2, 2),
    _fn("REGEX", "Other Utility", "Regex match", "REGEX(text, pattern)", 'REGEX(#email, "^[^@]+@[^@]+$")', 2, 2),
    _fn("TO_NUMBER", "Other Utility", "Convert to number", "TO_NUMBER(value)", "TO_NUMBER(#string_value)", 1, 1),
    _fn("TO_STRING", "Other Utility", "Convert to string", "TO_STRING(value)", "TO_STRING(#number_value)", 1, 1),
    _fn("TO_DATE", "Other Utility", "Convert to date", "TO_DATE(value)", "TO_DATE(#date_string)", 1, 1),
]

FUNCTIONS_BY_NAME: Dict[str, CalculationFunction] = {f.name: f for f in CALCULATION_FUNCTIONS}

AGGREGATE_FUNCTIONS = ("COUNT", "SUM", "AVG", "MEDIAN", "STDEV")


# =============================================================================
# Tokenizer
# =============================================================================

TOKEN_PATTERN = re.compile(r"""
    (?P<ws>\s+)
  | (?P<number>\d+(?:\.\d+)?(?:[eE][+-]?\d+)?|\.\d+)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<field>\#[A-Za-z0-9_-]+)
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<op><=|>=|==|!=|<>|&&|\|\||[-+*/%^<>=!])
  | (?P<punct>[(),\[\]{}:])
""", re.VERBOSE)


@dataclass
class Token:
    kind: str  # number, string, field, name, op, punct, end
    value: Any
    pos: int


def tokenize(expression: str) -> List[Token]:
    tokens = []
    pos = 0
    while pos < len(expression):
        match = TOKEN_PATTERN.match(expression, pos)
        if not match:
            raise CalculationError(f"Unexpected character '{expression[pos]}' at position {pos}")
        kind = match.lastgroup
        text = match.group()
        if kind == "number":
            tokens.append(Token(kind, float(text) if any(c in text for c in ".eE") else int(text), pos))
        elif kind == "string":
            body = text[1:-1]
            tokens.append(Token(kind, re.sub(r"\\(.)", r"\1", body), pos))
        elif kind == "field":
            tokens.append(Token(kind, text[1:], pos))
        elif kind != "ws":
            tokens.append(Token(kind, text, pos))
        pos = match.end()
    tokens.append(Token("end", None, pos))
    return tokens


# =============================================================================
# Parser (recursive descent)
#
#   expr       := or
#   or         := and (("||" | OR) and)*
#   and        := comparison (("&&" | AND) comparison)*
#   comparison := additive (("=" | "==" | "!=" | "<>" | "<" | ">" | "<=" | ">=") additive)?
#   additive   := term (("+" | "-") term)*
#   term       := unary (("*" | "/" | "%") unary)*
#   unary      := ("-" | "+" | "!") unary | power
#   power      := primary ("^" unary)?
#   primary    := number | string | field | TRUE | FALSE | NULL
#               | name "(" args ")" | "(" expr ")" | list | object
# =============================================================================

Node = Tuple  # ("num", v) / ("field", id) / ("call", name, [args]) / ("bin", op, l, r) ...

COMPARISON_OPS = ("=", "==", "!=", "<>", "<", ">", "<=", ">=")
MAX_NESTING_DEPTH = 50


class Parser:
    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.index = 0
        self.depth = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def expect(self, kind: str, value: Optional[str] = None) -> Token:
        token = self.current
        if token.kind != kind or (value is not None and token.value != value):
            expected = value or kind
            found = token.value if token.kind != "end" else "end of expression"
            raise CalculationError(f"Expected '{expected}' at position {token.pos}, found '{found}'")
        return self.advance()

    def _at(self, kind: str, *values: str) -> bool:
        token = self.current
        return token.kind == kind and (not values or token.value in values)

    def _at_keyword(self, word: str) -> bool:
        token = self.current
        next_token = self.tokens[self.index + 1] if self.index + 1 < len(self.tokens) else None
        is_call = next_token is not None and next_token.kind == "punct" and next_token.value == "("
        return token.kind == "name" and token.value.upper() == word and not is_call

    def parse(self) -> Node:
        if self.current.kind == "end":
            raise CalculationError("Empty expression")
        node = self.parse_or()
        if self.current.kind != "end":
            raise CalculationError(f"Unexpected '{self.current.value}' at position {self.current.pos}")
        return node

    def parse_or(self) -> Node:
        node = self.parse_and()
        while self._at("op", "||") or self._at_keyword("OR"):
            self.advance()
            node = ("bin", "OR", node, self.parse_and())
        return node

    def parse_and(self) -> Node:
        node = self.parse_comparison()
        while self._at("op", "&&") or self._at_keyword("AND"):
            self.advance()
            node = ("bin", "AND", node, self.parse_comparison())
        return node

    def parse_comparison(self) -> Node:
        node = self.parse_additive()
        if self._at("op", *COMPARISON_OPS):
            op = self.advance().value
            node = ("bin", op, node, self.parse_additive())
        return node

    def parse_additive(self) -> Node:
        node = self.parse_term()
        while self._at("op", "+", "-"):
            op = self.advance().value
            node = ("bin", op, node, self.parse_term())
        return node

    def parse_term(self) -> Node:
        node = self.parse_unary()
        while self._at("op", "*", "/", "%"):
            op = self.advance().value
            node = ("bin", op, node, self.parse_unary())
        return node

    def parse_unary(self) -> Node:
        # Every nesting level (parentheses, calls, lists, unary chains) passes through here
        self.depth += 1
        if self.depth > MAX_NESTING_DEPTH:
            raise CalculationError(f"Expression is nested more than {MAX_NESTING_DEPTH} levels deep")
        try:
            if self._at("op", "-", "+", "!"):
                op = self.advance().value
                return ("unary", op, self.parse_unary())
            return self.parse_power()
        finally:
            self.depth -= 1

    def parse_power(self) -> Node:
        node = self.parse_primary()
        if self._at("op", "^"):
            self.advance()
            # Right associative: 2 ^ 3 ^ 2 == 2 ^ 9
            node = ("bin", "^", node, self.parse_unary())
        return node

    def parse_primary(self) -> Node:
        token = self.current

        if token.kind in ("number", "string"):
            self.advance()
            return ("lit", token.value)

        if token.kind == "field":
            self.advance()
            return ("field", token.value)

        if token.kind == "name":
            self.advance()
            upper = token.value.upper()
            if self._at("punct", "("):
                self.advance()
                args = []
                if not self._at("punct", ")"):
                    args.append(self.parse_or())
                    while self._at("punct", ","):
                        self.advance()
                        args.append(self.parse_or())
                self.expect("punct", ")")
                return ("call", upper, args)
            if upper == "TRUE":
                return ("lit", True)
            if upper == "FALSE":
                return ("lit", False)
            if upper == "NULL":
                return ("lit", None)
            # Bare words are treated as text, e.g. DATEDIFF(a, b, days)
            return ("lit", token.value)

        if token.kind == "punct" and token.value == "(":
            self.advance()
            node = self.parse_or()
            self.expect("punct", ")")
            return node

        if token.kind == "punct" and token.value == "[":
            self.advance()
            items = []
            if not self._at("punct", "]"):
                items.append(self.parse_or())
                while self._at("punct", ","):
                    self.advance()
                    items.append(self.parse_or())
            self.expect("punct", "]")
            return ("list", items)

        if token.kind == "punct" and token.value == "{":
            self.advance()
            pairs = []
            if not self._at("punct", "}"):
                while True:
                    key = self.advance()
                    if key.kind not in ("string", "name", "number"):
                        raise CalculationError(f"Invalid object key at position {key.pos}")
                    self.expect("punct", ":")
                    pairs.append((str(key.value), self.parse_or()))
                    if not self._at("punct", ","):
                        break
                    self.advance()
            self.expect("punct", "}")
            return ("object", pairs)

        found = token.value if token.kind != "end" else "end of expression"
        raise CalculationError(f"Unexpected '{found}' at position {token.pos}")


def parse(expression: str) -> Node:
    return Parser(tokenize(expression)).parse()


# =============================================================================
# Value helpers
# =============================================================================

def to_number(value: Any) -> float:
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (int, float)):
        return value
    if value is None or value == "":
        return 0
    try:
        number = float(str(value).strip())
    except ValueError:
        raise CalculationError(f"Cannot convert '{value}' to a number")
    return int(number) if number.is_integer() and "." not in str(value) else number


def to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc).replace(tzinfo=None)
    if isinstance(value, str) and value.strip():
        text = value.strip().replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise CalculationError(f"Invalid date: '{value}'")
        return parsed.replace(tzinfo=None)
    raise CalculationError(f"Invalid date: '{value}'")


def _loose_equal(left: Any, right: Any) -> bool:
    if left == right:
        return True
    try:
        return to_number(left) == to_number(right) and left not in (None, "") and right not in (None, "")
    except CalculationError:
        return str(left) == str(right)


def _tidy(value: Any) -> Any:
    """Collapse float results like 4.0 back to int."""
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e15:
        return int(value)
    return value


TIME_UNITS = {
    "days": timedelta(days=1),
    "hours": timedelta(hours=1),
    "minutes": timedelta(minutes=1),
    "seconds": timedelta(seconds=1),
}


def _date_diff(args: List[Any]) -> int:
    unit = str(args[2]) if len(args) > 2 and args[2] else "days"
    delta = to_datetime(args[0]) - to_datetime(args[1])
    if unit in TIME_UNITS:
        return math.floor(delta / TIME_UNITS[unit])
    return int(delta.total_seconds() * 1000)


def _date_add(args: List[Any]) -> str:
    base = to_datetime(args[0])
    unit = TIME_UNITS.get(str(args[2]))
    if unit is None:
        return base.isoformat()
    return (base + unit * to_number(args[1])).isoformat()


def _switch(args: List[Any]) -> Any:
    subject = args[0]
    for i in range(1, len(args) - 1, 2):
        if _loose_equal(subject, args[i]):
            return args[i + 1]
    return args[-1]


def _round(args: List[Any]) -> Any:
    value = to_number(args[0])
    if len(args) > 1:
        digits = int(to_number(args[1]))
        return round(value, digits) if digits > 0 else _tidy(math.floor(value + 0.5))
    return math.floor(value + 0.5)


def _substring(args: List[Any]) -> str:
    text = "" if args[0] is None else str(args[0])
    start = max(int(to_number(args[1])) - 1, 0)
    if len(args) > 2 and args[2] is not None:
        return text[start:start + int(to_number(args[2]))]
    return text[start:]


def _format(number: Any, pattern: Any) -> str:
    value = to_number(number)
    pattern = str(pattern or "")
    if pattern.startswith("$"):
        sign = "-" if value < 0 else ""
        return f"{sign}${abs(value):,.2f}"
    if "%" in pattern:
        return f"{value * 100:.2f}%"
    return str(_tidy(value))


def _random(args: List[Any]) -> float:
    if not args:
        return random.random()
    low = to_number(args[0])
    high = to_number(args[1]) if len(args) > 1 else 1
    return random.random() * (high - low) + low


def _lookup(key: Any, mapping: Any) -> Any:
    if isinstance(mapping, dict):
        return mapping.get(str(key)) if str(key) in mapping else mapping.get(key)
    return None


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(_tidy(value))


FunctionImpl = Callable[[List[Any]], Any]

FUNCTION_IMPLEMENTATIONS: Dict[str, FunctionImpl] = {
    # Basic Arithmetic
    "ADD": lambda a: to_number(a[0]) + to_number(a[1]),
    "SUBTRACT": lambda a: to_number(a[0]) - to_number(a[1]),
    "MULTIPLY": lambda a: to_number(a[0]) * to_number(a[1]),
    "DIVIDE": lambda a: to_number(a[0]) / to_number(a[1]) if to_number(a[1]) != 0 else None,
    "MOD": lambda a: math.fmod(to_number(a[0]), to_number(a[1])) if to_number(a[1]) != 0 else None,

    # Advanced Math
    "POWER": lambda a: math.pow(to_number(a[0]), to_number(a[1])),
    "SQRT": lambda a: math.sqrt(to_number(a[0])),
    "ABS": lambda a: abs(to_number(a[0])),
    "ROUND": _round,
    "FLOOR": lambda a: math.floor(to_number(a[0])),
    "CEIL": lambda a: math.ceil(to_number(a[0])),
    "MAX": lambda a: max(to_number(v) for v in a),
    "MIN": lambda a: min(to_number(v) for v in a),
    "EXP": lambda a: math.exp(to_number(a[0])),
    "LOG": lambda a: math.log(to_number(a[0])),
    "LOG10": lambda a: math.log10(to_number(a[0])),

    # Logical & Conditional
    "IF": lambda a: a[1] if a[0] else a[2],
    "AND": lambda a: all(bool(v) for v in a),
    "OR": lambda a: any(bool(v) for v in a),
    "NOT": lambda a: not a[0],
    "ISNULL": lambda a: a[0] is None,
    "IFNULL": lambda a: a[0] if a[0] is not None else a[1],
    "SWITCH": _switch,

    # Date & Time
    "NOW": lambda a: datetime.utcnow().isoformat(),
    "TODAY": lambda a: datetime.utcnow().date().isoformat(),
    "DATEDIFF": _date_diff,
    "DATEADD": _date_add,
    "YEAR": lambda a: to_datetime(a[0]).year,
    "MONTH": lambda a: to_datetime(a[0]).month,
    "DAY": lambda a: to_datetime(a[0]).day,
    "HOUR": lambda a: to_datetime(a[0]).hour,
    "MINUTE": lambda a: to_datetime(a[0]).minute,
    "SECOND": lambda a: to_datetime(a[0]).second,
    # isoweekday: Monday=1 .. Sunday=7; shift so Sunday=1
    "WEEKDAY": lambda a: to_datetime(a[0]).isoweekday() % 7 + 1,
    "ISWEEKEND": lambda a: to_datetime(a[0]).weekday() >= 5,

    # String & Conversion
    "LENGTH": lambda a: len(_text(a[0])),
    "UPPER": lambda a: _text(a[0]).upper(),
    "LOWER": lambda a: _text(a[0]).lower(),
    "CONCAT": lambda a: "".join(_text(v) for v in a),
    "SUBSTRING": _substring,
    "TRIM": lambda a: _text(a[0]).strip(),

    # Other Utility
    "IN": lambda a: a[0] in a[1] if isinstance(a[1], list) else False,
    "CONTAINS": lambda a: _text(a[1]) in _text(a[0]),
    "FORMAT": lambda a: _format(a[0], a[1]),
    "UUID": lambda a: str(uuid.uuid4()),
    "RANDOM": _random,
    "LOOKUP": lambda a: _lookup(a[0], a[1]),
    "REGEX": lambda a: re.search(str(a[1]), _text(a[0])) is not None,
    "TO_NUMBER": lambda a: to_number(a[0]),
    "TO_STRING": lambda a: _text(a[0]),
    "TO_DATE": lambda a: to_datetime(a[0]).isoformat(),
}


# =============================================================================
# Engine
# =============================================================================

class CalculationEngine:
    """
    Evaluates formulas for one submission.

    Aggregate functions need a session and target form id; they read the
    field across every submission of that form.
    """

    def __init__(
        self,
        form_data: Optional[Dict[str, Any]] = None,
        db: Optional[Session] = None,
        target_form_id: Optional[str] = None
    ):
        self.form_data = form_data or {}
        self.db = db
        self.target_form_id = target_form_id

    def evaluate(self, expression: str) -> Any:
        try:
            result = self._eval(parse(expression))
        except CalculationError:
            raise
        except (TypeError, ValueError, ZeroDivisionError, OverflowError, IndexError,
                AttributeError, KeyError, RecursionError, re.error) as e:
            raise CalculationError(f"Calculation error: {e}")
        return _tidy(result)

    # --- AST evaluation -----------------------------------------------------

    def _eval(self, node: Node) -> Any:
        kind = node[0]
        if kind == "lit":
            return node[1]
        if kind == "field":
            return self.form_data.get(node[1])
        if kind == "list":
            return [self._eval(item) for item in node[1]]
        if kind == "object":
            return {key: self._eval(value) for key, value in node[1]}
        if kind == "unary":
            value = self._eval(node[2])
            if node[1] == "!":
                return not value
            number = to_number(value)
            return -number if node[1] == "-" else number
        if kind == "bin":
            return self._binary(node[1], node[2], node[3])
        if kind == "call":
            return self._call(node[1], node[2])
        raise CalculationError(f"Unknown expression node: {kind}")

    def _binary(self, op: str, left_node: Node, right_node: Node) -> Any:
        # Short-circuit logical operators
        if op == "AND":
            return bool(self._eval(left_node)) and bool(self._eval(right_node))
        if op == "OR":
            return bool(self._eval(left_node)) or bool(self._eval(right_node))

        left = self._eval(left_node)
        right = self._eval(right_node)

        if op in ("=", "=="):
            return _loose_equal(left, right)
        if op in ("!=", "<>"):
            return not _loose_equal(left, right)
        if op in ("<", ">", "<=", ">="):
            try:
                left, right = to_number(left), to_number(right)
            except CalculationError:
                left, right = _text(left), _text(right)
            return {
                "<": left < right,
                ">": left > right,
                "<=": left <= right,
                ">=": left >= right,
            }[op]

        if op == "+" and (isinstance(left, str) or isinstance(right, str)):
            try:
                return to_number(left) + to_number(right)
            except CalculationError:
                return _text(left) + _text(right)

        left, right = to_number(left), to_number(right)
        if op == "+":
            return left + right
        if op == "-":
            return left - right
        if op == "*":
            return left * right
        if op == "/":
            if right == 0:
                return None
            return left / right
        if op == "%":
            if right == 0:
                return None
            return math.fmod(left, right)
        if op == "^":
            return math.pow(left, right)
        raise CalculationError(f"Unknown operator: {op}")

    def _call(self, name: str, arg_nodes: List[Node]) -> Any:
        definition = FUNCTIONS_BY_NAME.get(name)
        if definition is None:
            raise CalculationError(f"Unknown function: {name}")
        _check_arity(definition, len(arg_nodes))

        if name in AGGREGATE_FUNCTIONS:
            field_node = arg_nodes[0]
            field_id = field_node[1] if field_node[0] in ("field", "lit") else self._eval(field_node)
            return self._aggregate(name, str(field_id))

        # IF only evaluates the branch it returns
        if name == "IF":
            condition = self._eval(arg_nodes[0])
            return self._eval(arg_nodes[1] if condition else arg_nodes[2])

        args = [self._eval(node) for node in arg_nodes]
        return FUNCTION_IMPLEMENTATIONS[name](args)

    def _aggregate(self, name: str, field_id: str) -> Any:
        if self.db is None or not self.target_form_id:
            raise CalculationError("Target form ID required for aggregate functions")

        rows = self.db.query(FormSubmission.submission_data).filter(
            FormSubmission.form_id == self.target_form_id
        ).all()

        values = []
        for (data,) in rows:
            raw = (data or {}).get(field_id)
            if raw is None or raw == "":
                continue
            try:
                values.append(float(raw))
            except (TypeError, ValueError):
                continue

        if name == "COUNT":
            return len(values)
        if name == "SUM":
            return sum(values)
        if not values:
            return 0
        if name == "AVG":
            return sum(values) / len(values)
        if name == "MEDIAN":
            ordered = sorted(values)
            middle = len(ordered) // 2
            if len(ordered) % 2 == 0:
                return (ordered[middle - 1] + ordered[middle]) / 2
            return ordered[middle]
        # STDEV (population)
        mean = sum(values) / len(values)
        return math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))


def _check_arity(definition: CalculationFunction, count: int):
    if count < definition.min_args:
        raise CalculationError(
            f"{definition.name} expects at least {definition.min_args} argument(s), got {count}"
        )
    if definition.max_args is not None and count > definition.max_args:
        raise CalculationError(
            f"{definition.name} expects at most {definition.max_args} argument(s), got {count}"
        )


# =============================================================================
# Validation and editor helpers
# =============================================================================

FIELD_REF = re.compile(r"#([A-Za-z0-9_-]+)")


def _walk(node: Node):
    yield node
    kind = node[0]
    if kind == "call":
        for arg in node[2]:
            yield from _walk(arg)
    elif kind == "bin":
        yield from _walk(node[2])
        yield from _walk(node[3])
    elif kind == "unary":
        yield from _walk(node[2])
    elif kind == "list":
        for item in node[1]:
            yield from _walk(item)
    elif kind == "object":
        for _, value in node[1]:
            yield from _walk(value)


def validate_expression(expression: str, available_fields: List[str]) -> Dict[str, Any]:
    """
    Check a formula without evaluating it.

    Returns {"isValid": bool, "errors": [...]}: unknown field references,
    unknown functions, wrong argument counts, and syntax errors.
    """
    errors: List[str] = []
    fields = set(available_fields or [])

    for field_id in FIELD_REF.findall(expression or ""):
        if field_id not in fields:
            message = f"Field '{field_id}' not found"
            if message not in errors:
                errors.append(message)

    try:
        tree = parse(expression or "")
    except CalculationError as e:
        errors.append(str(e))
        return {"isValid": False, "errors": errors}

    for node in _walk(tree):
        if node[0] != "call":
            continue
        definition = FUNCTIONS_BY_NAME.get(node[1])
        if definition is None:
            errors.append(f"Unknown function '{node[1]}'")
            continue
        try:
            _check_arity(definition, len(node[2]))
        except CalculationError as e:
            errors.append(str(e))

    return {"isValid": not errors, "errors": errors}


def get_auto_suggestions(
    expression: str,
    available_fields: List[str],
    cursor_position: Optional[int] = None
) -> List[Dict[str, str]]:
    """Function and field completions for the word ending at the cursor."""
    if cursor_position is None:
        cursor_position = len(expression or "")
    before = (expression or "")[:cursor_position]
    suggestions = []

    if before.endswith("#"):
        for field_id in available_fields or []:
            suggestions.append({"label": field_id, "insertText": field_id, "detail": "Field reference"})
        return suggestions

    field_match = re.search(r"#([A-Za-z0-9_-]*)$", before)
    if field_match:
        partial = field_match.group(1)
        for field_id in available_fields or []:
            if field_id.startswith(partial):
                suggestions.append({"label": field_id, "insertText": field_id, "detail": "Field reference"})
        return suggestions

    word = re.search(r"[A-Za-z_]*$", before).group().upper()
    for fn in CALCULATION_FUNCTIONS:
        if fn.name.startswith(word):
            if fn.min_args == 0:
                placeholder = ""
            elif fn.min_args > 1:
                placeholder = "arg1, arg2"
            else:
                placeholder = "arg1"
            suggestions.append({
                "label": fn.name,
                "insertText": f"{fn.name}({placeholder})",
                "detail": fn.description,
            })
    return suggestions


def evaluate(
    expression: str,
    form_data: Dict[str, Any],
    db: Optional[Session] = None,
    target_form_id: Optional[str] = None
) -> Any:
    """Evaluate a formula against form data."""
    return CalculationEngine(form_data, db=db, target_form_id=target_form_id).evaluate(expression)
