"""
SQL function library for query fields.

Python implementations of the SQL functions users may call inside a query
field's SELECT list, WHERE clause, or UPDATE FORM value, plus a small
expression evaluator over one row of submission data.
"""

import math
import random
import re
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional


def _s(value: Any) -> str:
    return "" if value is None else str(value)


def _f(value: Any, default: float = 0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _parse_date(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    text = _s(value).strip().replace("Z", "+00:00")
    return datetime.fromisoformat(text).replace(tzinfo=None)


def _add_months(d: datetime, months: int) -> datetime:
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    # Clamp the day to the target month's length
    for day in (d.day, 30, 29, 28):
        try:
            return d.replace(year=year, month=month, day=day)
        except ValueError:
            continue
    return d


def date_add(value: Any, interval: Any, unit: Any) -> str:
    d = _parse_date(value)
    amount = int(_f(interval))
    unit = _s(unit).upper()
    if unit == "DAY":
        d = d + timedelta(days=amount)
    elif unit == "MONTH":
        d = _add_months(d, amount)
    elif unit == "YEAR":
        d = _add_months(d, amount * 12)
    elif unit == "HOUR":
        d = d + timedelta(hours=amount)
    elif unit == "MINUTE":
        d = d + timedelta(minutes=amount)
    elif unit == "SECOND":
        d = d + timedelta(seconds=amount)
    return d.isoformat()


def date_diff(first: Any, second: Any) -> int:
    """Whole days between two dates, rounded up, always positive."""
    delta = abs((_parse_date(first) - _parse_date(second)).total_seconds())
    return math.ceil(delta / 86400)


def _substring(value: Any, start: Any, length: Any = None) -> str:
    text = _s(value)
    begin = max(int(_f(start, 1)) - 1, 0)
    if length is None:
        return text[begin:]
    return text[begin:begin + int(_f(length))]


def _round(value: Any, decimals: Any = 0) -> float:
    places = int(_f(decimals))
    factor = 10 ** places
    result = math.floor(_f(value) * factor + 0.5) / factor
    return int(result) if places <= 0 else result


def _numbers(values: List[Any]) -> List[float]:
    nums = []
    for v in values:
        if v is None or v == "":
            continue
        try:
            nums.append(float(v))
        except (TypeError, ValueError):
            continue
    return nums


# =============================================================================
# Function tables
# =============================================================================

STRING_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "CONCAT": lambda *args: "".join(_s(v) for v in args),
    "LENGTH": lambda s: len(_s(s)),
    "LOWER": lambda s: _s(s).lower(),
    "UPPER": lambda s: _s(s).upper(),
    "TRIM": lambda s: _s(s).strip(),
    "LTRIM": lambda s: _s(s).lstrip(),
    "RTRIM": lambda s: _s(s).rstrip(),
    "SUBSTRING": _substring,
    "REPLACE": lambda s, old, new: re.sub(_s(old), lambda _m: _s(new), _s(s)),
    "LEFT": lambda s, n: _s(s)[:max(int(_f(n)), 0)],
    "RIGHT": lambda s, n: _s(s)[max(len(_s(s)) - int(_f(n)), 0):] if int(_f(n)) > 0 else "",
}

DATE_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "NOW": lambda: datetime.utcnow().isoformat(),
    "CURRENT_TIMESTAMP": lambda: datetime.utcnow().isoformat(),
    "CURDATE": lambda: datetime.utcnow().date().isoformat(),
    "CURRENT_DATE": lambda: datetime.utcnow().date().isoformat(),
    "CURTIME": lambda: datetime.utcnow().strftime("%H:%M:%S"),
    "CURRENT_TIME": lambda: datetime.utcnow().strftime("%H:%M:%S"),
    "DATEDIFF": date_diff,
    "DATE_ADD": date_add,
    "DATE_SUB": lambda d, interval, unit: date_add(d, -_f(interval), unit),
    "YEAR": lambda d: _parse_date(d).year,
    "MONTH": lambda d: _parse_date(d).month,
    "DAY": lambda d: _parse_date(d).day,
    "HOUR": lambda d: _parse_date(d).hour,
    "MINUTE": lambda d: _parse_date(d).minute,
    "SECOND": lambda d: _parse_date(d).second,
}

MATH_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "ABS": lambda n: abs(_f(n)),
    "ROUND": _round,
    "CEIL": lambda n: math.ceil(_f(n)),
    "FLOOR": lambda n: math.floor(_f(n)),
    "MOD": lambda a, b: math.fmod(_f(a), _f(b, 1) or 1),
    "POWER": lambda a, b: math.pow(_f(a), _f(b)),
    "SQRT": lambda n: math.sqrt(_f(n)),
    "RAND": lambda: random.random(),
}

AGGREGATE_FUNCTIONS: Dict[str, Callable[[List[Any]], Any]] = {
    "COUNT": lambda values: len(values),
    "SUM": lambda values: sum(_numbers(values)),
    "AVG": lambda values: (sum(_numbers(values)) / len(_numbers(values))) if _numbers(values) else 0,
    "MIN": lambda values: min(_numbers(values)) if _numbers(values) else None,
    "MAX": lambda values: max(_numbers(values)) if _numbers(values) else None,
}

CONDITIONAL_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "IF": lambda condition, true_value, false_value=None: true_value if condition else false_value,
    "COALESCE": lambda *args: next((v for v in args if v is not None), None),
    "NULLIF": lambda a, b: None if a == b else a,
    "IFNULL": lambda value, default: value if value is not None else default,
}

SCALAR_FUNCTION_TABLES = (STRING_FUNCTIONS, DATE_FUNCTIONS, MATH_FUNCTIONS, CONDITIONAL_FUNCTIONS)


def is_known_function(name: str) -> bool:
    upper = name.upper()
    return upper in AGGREGATE_FUNCTIONS or any(upper in table for table in SCALAR_FUNCTION_TABLES)


def evaluate_function(name: str, args: List[Any]) -> Any:
    """Call a scalar SQL function. Unknown functions return their first argument (or None)."""
    upper = name.upper()
    for table in SCALAR_FUNCTION_TABLES:
        if upper in table:
            return table[upper](*args)
    return args[0] if args else None


def evaluate_aggregate(name: str, values: List[Any]) -> Any:
    return AGGREGATE_FUNCTIONS[name.upper()](values)


# =============================================================================
# Expression evaluation over one row
# =============================================================================

CALL_PATTERN = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\s*\((.*)\)$", re.DOTALL)
NUMBER_PATTERN = re.compile(r"^-?\d+(\.\d+)?$")


def split_arguments(text: str) -> List[str]:
    """Split on top-level commas, respecting quotes and nested parentheses."""
    args: List[str] = []
    current = []
    depth = 0
    quote: Optional[str] = None

    for i, char in enumerate(text):
        if char in ("'", '"') and (i == 0 or text[i - 1] != "\\"):
            if quote is None:
                quote = char
            elif char == quote:
                quote = None

        if quote is None:
            if char == "(":
                depth += 1
            elif char == ")":
                depth -= 1
            elif char == "," and depth == 0:
                args.append("".join(current).strip())
                current = []
                continue
        current.append(char)

    if "".join(current).strip():
        args.append("".join(current).strip())
    return args


def _matching_call(expr: str) -> Optional[re.Match]:
    """A match only when the outer parentheses enclose the whole argument list."""
    match = CALL_PATTERN.match(expr)
    if not match:
        return None
    depth = 0
    quote = None
    body = expr[expr.index("("):]
    for i, char in enumerate(body):
        if char in ("'", '"') and quote is None:
            quote = char
        elif char == quote:
            quote = None
        elif quote is None:
            if char == "(":
                depth += 1
            elif char == ")":
                depth -= 1
                if depth == 0 and i != len(body) - 1:
                    return None
    return match


def evaluate_expression(expr: str, row: Dict[str, Any]) -> Any:
    """
    Evaluate a value expression against a row.

    Supports string and numeric literals, NULL/TRUE/FALSE, FIELD('id') and bare
    column names looked up in the row, and nested function calls.
    """
    expr = expr.strip()
    if not expr:
        return None

    call = _matching_call(expr)
    if call:
        name, args_text = call.group(1), call.group(2)
        args = [evaluate_expression(arg, row) for arg in split_arguments(args_text)]
        if name.upper() == "FIELD":
            return row.get(_s(args[0])) if args else None
        return evaluate_function(name, args)

    if len(expr) >= 2 and expr[0] == expr[-1] and expr[0] in ("'", '"'):
        return expr[1:-1]
    if NUMBER_PATTERN.match(expr):
        return float(expr) if "." in expr else int(expr)

    upper = expr.upper()
    if upper == "NULL":
        return None
    if upper == "TRUE":
        return True
    if upper == "FALSE":
        return False
    if expr.startswith("(") and expr.endswith(")"):
        return evaluate_expression(expr[1:-1], row)
    return row.get(expr, expr)
