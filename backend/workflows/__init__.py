"""
Workflow Engine Package

Executes workflows defined as directed graphs of typed nodes (start, action,
condition, approval, notification, wait, end) stored in the database.
Condition nodes select outgoing branches; wait nodes suspend an execution
until the resumer picks it up again.
"""

from schemas.workflow import (
    NodeType,
    ExecutionStatus,
    NodeLogStatus,
    NodeExecutionResult,
    WorkflowGraph,
    ExecutionContext,
    WorkflowError,
    NodeExecutionError,
)
from .engine import workflow_engine, WorkflowEngine, execution_to_dict
from .conditions import ConditionEvaluator, ConditionResult, build_evaluation_context
from .branches import BranchDiscovery
from .actions import get_action, get_all_actions, register_action
from . import resumer, trigger

__all__ = [
    # Core types
    "NodeType",
    "ExecutionStatus",
    "NodeLogStatus",
    "NodeExecutionResult",
    "WorkflowGraph",
    "ExecutionContext",
    "WorkflowError",
    "NodeExecutionError",
    # Engine
    "workflow_engine",
    "WorkflowEngine",
    "execution_to_dict",
    # Conditions and branches
    "ConditionEvaluator",
    "ConditionResult",
    "build_evaluation_context",
    "BranchDiscovery",
    # Actions
    "get_action",
    "get_all_actions",
    "register_action",
    # Modules
    "resumer",
    "trigger",
]
