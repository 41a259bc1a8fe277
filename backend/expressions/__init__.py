"""
Expression Package

Evaluators used by conditions, calculated fields and query fields:
- logical: numbered-condition rule expressions ("1 AND (2 OR NOT 3)")
- calculation: calculated-field formulas with a function library
- sql_query / sql_functions: the SELECT / UPDATE FORM subset used by query fields
"""

from .logical import ExpressionError
from .calculation import CalculationEngine, CalculationError, CALCULATION_FUNCTIONS
from .sql_query import QueryParseError, QueryResult, parse_user_query, execute_query

__all__ = [
    # Logical expressions
    "ExpressionError",
    # Calculated fields
    "CalculationEngine",
    "CalculationError",
    "CALCULATION_FUNCTIONS",
    # Query fields
    "QueryParseError",
    "QueryResult",
    "parse_user_query",
    "execute_query",
]
