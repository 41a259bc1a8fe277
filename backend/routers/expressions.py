"""
Expressions API Router

Endpoints backing the form builder's expression editors: calculated-field
formulas, condition logic expressions, and query-field SQL.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import Any, Dict, List, Optional
import logging

from database import get_db
from expressions import calculation, logical
from expressions.calculation import CalculationError, CALCULATION_FUNCTIONS
from expressions.sql_query import execute_query

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/expressions", tags=["expressions"])


# =============================================================================
# Request/Response Models
# =============================================================================

class CalculateRequest(BaseModel):
    expression: str
    form_data: Dict[str, Any] = {}
    target_form_id: Optional[str] = None


class CalculateResponse(BaseModel):
    result: Any


class ValidateFormulaRequest(BaseModel):
    expression: str
    available_fields: List[str] = []


class SuggestionsRequest(BaseModel):
    expression: str
    available_fields: List[str] = []
    cursor_position: Optional[int] = None


class LogicalValidateRequest(BaseModel):
    expression: str
    condition_count: Optional[int] = None


class LogicalValidateResponse(BaseModel):
    isValid: bool
    error: Optional[str] = None
    conditionIds: List[int] = []


class QueryRequest(BaseModel):
    query: str


class QueryResponse(BaseModel):
    columns: List[str]
    rows: List[List[Any]]
    errors: List[str]


# =============================================================================
# Calculated Fields
# =============================================================================

@router.get("/functions")
async def list_functions(category: Optional[str] = None):
    """Calculation functions grouped by category."""
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for fn in CALCULATION_FUNCTIONS:
        if category and fn.category != category:
            continue
        grouped.setdefault(fn.category, []).append(fn.to_dict())
    return grouped


@router.post("/calculate", response_model=CalculateResponse)
async def calculate(request: CalculateRequest, db: Session = Depends(get_db)):
    """Evaluate a formula against form data."""
    try:
        result = calculation.evaluate(
            request.expression,
            request.form_data,
            db=db,
            target_form_id=request.target_form_id
        )
    except CalculationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return CalculateResponse(result=result)


@router.post("/validate")
async def validate_formula(request: ValidateFormulaRequest):
    return calculation.validate_expression(request.expression, request.available_fields)


@router.post("/suggestions")
async def suggestions(request: SuggestionsRequest):
    return calculation.get_auto_suggestions(
        request.expression, request.available_fields, request.cursor_position
    )


# =============================================================================
# Condition Logic
# =============================================================================

@router.post("/logical/validate", response_model=LogicalValidateResponse)
async def validate_logical(request: LogicalValidateRequest):
    """Validate a numbered-condition expression such as "1 AND (2 OR 3)"."""
    is_valid, error = logical.validate(request.expression, request.condition_count)
    return LogicalValidateResponse(
        isValid=is_valid,
        error=error,
        conditionIds=logical.extract_condition_ids(request.expression) if is_valid else []
    )


# =============================================================================
# Query Fields
# =============================================================================

@router.post("/query", response_model=QueryResponse)
async def run_query(request: QueryRequest, db: Session = Depends(get_db)):
    """Run a query field's SELECT or UPDATE FORM statement."""
    result = execute_query(db, request.query)
    if result.errors:
        logger.info(f"Query returned errors: {result.errors}")
    return QueryResponse(**result.to_dict())
