"""
Logical Rule Expressions

Evaluates expressions such as "1 AND (2 OR 3) AND NOT 4" where each number
refers to the boolean result of a numbered condition.

Precedence: NOT (3) > AND (2) > OR (1). Parsing is Shunting-Yard to postfix,
then a stack evaluation of the postfix form.
"""

import logging
import re
from typing import Dict, List, Mapping, Optional, Tuple, Union

logger = logging.getLogger(__name__)

BINARY_OPERATORS = ("AND", "OR")
OPERATORS = ("AND", "OR", "NOT")
PRECEDENCE = {"NOT": 3, "AND": 2, "OR": 1}


class ExpressionError(Exception):
    """Raised when a logical expression cannot be evaluated."""
    pass


def normalize(expression: str) -> str:
    """Uppercase and collapse whitespace."""
    return re.sub(r"\s+", " ", expression.upper()).strip()


def tokenize(expression: str) -> List[str]:
    """Split on spaces and parentheses; parentheses are their own tokens."""
    tokens = []
    current = ""
    for char in expression:
        if char == " ":
            if current:
                tokens.append(current)
                current = ""
        elif char in "()":
            if current:
                tokens.append(current)
                current = ""
            tokens.append(char)
        else:
            current += char
    if current:
        tokens.append(current)
    return tokens


def is_operand(token: str) -> bool:
    return token not in OPERATORS and token not in ("(", ")")


def to_postfix(tokens: List[str]) -> List[str]:
    """Shunting-Yard conversion from infix tokens to postfix."""
    output: List[str] = []
    operators: List[str] = []

    for token in tokens:
        if is_operand(token):
            output.append(token)
        elif token == "NOT":
            operators.append(token)
        elif token in BINARY_OPERATORS:
            while (
                operators
                and operators[-1] != "("
                and PRECEDENCE.get(operators[-1], 0) >= PRECEDENCE[token]
            ):
                output.append(operators.pop())
            operators.append(token)
        elif token == "(":
            operators.append(token)
        elif token == ")":
            while operators and operators[-1] != "(":
                output.append(operators.pop())
            if not operators:
                raise ExpressionError("Mismatched parentheses")
            operators.pop()
        else:
            raise ExpressionError(f"Invalid token: {token}")

    while operators:
        op = operators.pop()
        if op in ("(", ")"):
            raise ExpressionError("Mismatched parentheses")
        output.append(op)

    return output


def _evaluate_postfix(postfix: List[str], results: Mapping[str, bool]) -> bool:
    stack: List[bool] = []

    for token in postfix:
        if is_operand(token):
            if token not in results:
                raise ExpressionError(f"Condition {token} not found in evaluation context")
            stack.append(bool(results[token]))
        elif token == "NOT":
            if not stack:
                raise ExpressionError("Invalid expression: NOT requires one operand")
            stack.append(not stack.pop())
        elif token in BINARY_OPERATORS:
            if len(stack) < 2:
                raise ExpressionError(f"Invalid expression: {token} requires two operands")
            right = stack.pop()
            left = stack.pop()
            stack.append(left and right if token == "AND" else left or right)
        else:
            raise ExpressionError(f"Unknown operator: {token}")

    if len(stack) != 1:
        raise ExpressionError("Invalid expression: malformed expression")

    return stack[0]


def evaluate(expression: str, results: Mapping[Union[str, int], bool]) -> bool:
    """
    Evaluate a logical expression against numbered condition results.

    Args:
        expression: e.g. "1 AND (2 OR 3)"
        results: condition number -> boolean result (keys may be int or str)

    Raises:
        ExpressionError: wrapping any parse or evaluation problem
    """
    lookup = {str(key).upper(): value for key, value in results.items()}
    try:
        tokens = tokenize(normalize(expression))
        return _evaluate_postfix(to_postfix(tokens), lookup)
    except ExpressionError as e:
        logger.warning(f"Expression evaluation error for '{expression}': {e}")
        raise ExpressionError(f"Failed to evaluate expression: {expression} ({e})") from e


def validate(expression: str, max_condition_id: Optional[int] = None) -> Tuple[bool, Optional[str]]:
    """
    Check an expression for syntax problems without evaluating it.

    Returns:
        (is_valid, error_message)
    """
    tokens = tokenize(normalize(expression or ""))
    if not tokens:
        return False, "Expression is empty"

    depth = 0
    for token in tokens:
        if token == "(":
            depth += 1
        elif token == ")":
            depth -= 1
            if depth < 0:
                return False, "Unbalanced parentheses"
    if depth != 0:
        return False, "Unbalanced parentheses"

    for i, token in enumerate(tokens):
        next_token = tokens[i + 1] if i + 1 < len(tokens) else None

        if is_operand(token):
            if not token.isdigit():
                return False, f"Invalid token: {token}"
            if max_condition_id is not None and not 1 <= int(token) <= max_condition_id:
                return False, f"Condition {token} does not exist"
            if next_token is not None and is_operand(next_token):
                return False, "Missing operator between conditions"

        if token in BINARY_OPERATORS:
            if i == 0:
                return False, "Expression cannot start with a binary operator"
            if next_token is None:
                return False, "Expression cannot end with a binary operator"
            if next_token in BINARY_OPERATORS:
                return False, "Invalid operator sequence"

        if token == "NOT" and next_token is None:
            return False, "NOT requires an operand"

    # Operand placement ("1 NOT 2") is only caught by running the postfix form
    try:
        postfix = to_postfix(tokens)
        _evaluate_postfix(postfix, {t: True for t in postfix if is_operand(t)})
    except ExpressionError as e:
        return False, str(e)

    return True, None


def extract_condition_ids(expression: str) -> List[int]:
    """Sorted unique condition numbers referenced by the expression."""
    ids = {int(t) for t in tokenize(normalize(expression or "")) if is_operand(t) and t.isdigit()}
    return sorted(ids)


def generate_default_expression(condition_count: int, logic: str = "AND") -> str:
    """"1 AND 2 AND 3" style expression for the given number of conditions."""
    if condition_count <= 0:
        return ""
    if condition_count == 1:
        return "1"
    return f" {logic.upper()} ".join(str(i) for i in range(1, condition_count + 1))


def evaluate_sequential(results: List[bool], operators: List[str]) -> bool:
    """
    Chain results left to right: results[0] op[0] results[1] op[1] ...

    Missing operators default to AND. No precedence is applied.
    """
    if not results:
        return True
    value = results[0]
    for i in range(1, len(results)):
        op = (operators[i - 1] if i - 1 < len(operators) else None) or "AND"
        if op.upper() == "OR":
            value = value or results[i]
        else:
            value = value and results[i]
    return value


def results_by_number(results: List[bool]) -> Dict[str, bool]:
    """Map a list of results to 1-based condition numbers."""
    return {str(i + 1): r for i, r in enumerate(results)}
