"""
Schemas package for FormFlow API
"""

from .workflow import (
    NodeType,
    ExecutionStatus,
    NodeLogStatus,
    ActionType,
    WaitType,
    TriggerType,
    WorkflowError,
    NodeExecutionError,
    NodeExecutionResult,
    WorkflowNodeSpec,
    ConnectionSpec,
    WorkflowGraph,
    ExecutionContext,
)

__all__ = [
    # Enums
    'NodeType',
    'ExecutionStatus',
    'NodeLogStatus',
    'ActionType',
    'WaitType',
    'TriggerType',
    # Errors
    'WorkflowError',
    'NodeExecutionError',
    # Results
    'NodeExecutionResult',
    # Graph types
    'WorkflowNodeSpec',
    'ConnectionSpec',
    'WorkflowGraph',
    # Runtime
    'ExecutionContext',
]
