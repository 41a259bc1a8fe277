"""
Workflow Engine Schema

Defines the core types for workflow graph definitions and execution state.

A workflow is a directed graph of typed nodes:
- start: entry point, receives the trigger data
- action: performs a side effect (create/update records, assign forms, notify)
- condition: evaluates rules and picks the outgoing branch ("true"/"false" or a switch path)
- approval: approves or disapproves the triggering submission
- notification: sends an in-app notification
- wait: suspends the execution until a time or an event
- end: terminates the branch

Connections between nodes carry a source handle / condition type that the
condition node uses to select which children run.
"""

from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field
from enum import Enum


class NodeType(str, Enum):
    """Types of nodes in a workflow graph."""
    START = "start"
    ACTION = "action"
    CONDITION = "condition"
    APPROVAL = "approval"
    NOTIFICATION = "notification"
    WAIT = "wait"
    END = "end"


class ExecutionStatus(str, Enum):
    """Status of a workflow execution."""
    PENDING = "pending"          # Created but not started
    RUNNING = "running"          # Walking the graph
    WAITING = "waiting"          # Suspended at a wait node
    COMPLETED = "completed"      # Successfully finished
    FAILED = "failed"            # Error occurred (or cancelled)


class NodeLogStatus(str, Enum):
    """Status of a single node log entry."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    WAITING = "waiting"          # Wait node holding the execution
    IGNORED = "ignored"          # On a branch the condition did not take


class ActionType(str, Enum):
    """Side effects an action node can perform."""
    ASSIGN_FORM = "assign_form"
    APPROVE_FORM = "approve_form"
    UPDATE_FORM_LIFECYCLE_STATUS = "update_form_lifecycle_status"
    SEND_NOTIFICATION = "send_notification"
    CHANGE_FIELD_VALUE = "change_field_value"
    CHANGE_RECORD_STATUS = "change_record_status"
    CREATE_RECORD = "create_record"
    CREATE_LINKED_RECORD = "create_linked_record"
    UPDATE_LINKED_RECORDS = "update_linked_records"


class WaitType(str, Enum):
    """How a wait node is released."""
    DURATION = "duration"
    UNTIL_EVENT = "until_event"


class TriggerType(str, Enum):
    FORM_SUBMISSION = "form_submission"
    FORM_COMPLETION = "form_completion"
    MANUAL = "manual"


class WorkflowError(Exception):
    """Raised when a workflow or execution cannot be run."""
    pass


class NodeExecutionError(WorkflowError):
    """Raised when a node cannot be executed at all (e.g. unknown node type)."""
    pass


# =============================================================================
# Execution Results
# =============================================================================

@dataclass
class NodeExecutionResult:
    """Output from a node (or action) execution."""
    success: bool
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    # For condition nodes: the children selected for the taken branch
    next_nodes: Optional[List[str]] = None
    # True when the branch must not continue past this node
    is_terminal: bool = False
    # For action nodes: what was attempted, stored on the node log
    action_details: Optional[Dict[str, Any]] = None

    @classmethod
    def failure(
        cls,
        error: str,
        output: Optional[Dict[str, Any]] = None,
        action_details: Optional[Dict[str, Any]] = None
    ) -> "NodeExecutionResult":
        return cls(success=False, error=error, output=output or {}, action_details=action_details)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "next_nodes": self.next_nodes,
            "is_terminal": self.is_terminal,
            "action_details": self.action_details,
        }


# =============================================================================
# Graph Definition
# =============================================================================

@dataclass
class WorkflowNodeSpec:
    """A node in the workflow graph, decoupled from its database row."""
    id: str
    node_type: str
    label: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)
    position_x: float = 0
    position_y: float = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "node_type": self.node_type,
            "label": self.label,
            "config": self.config,
            "position_x": self.position_x,
            "position_y": self.position_y,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowNodeSpec":
        return cls(
            id=data.get("id", ""),
            node_type=data.get("node_type", ""),
            label=data.get("label"),
            config=data.get("config") or {},
            position_x=data.get("position_x") or 0,
            position_y=data.get("position_y") or 0,
        )


@dataclass
class ConnectionSpec:
    """
    A directed connection between nodes.

    For connections leaving a condition node, source_handle / condition_type say
    which branch the connection belongs to. Unset means the connection is always taken.
    """
    source_node_id: str
    target_node_id: str
    id: Optional[str] = None
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None
    condition_type: Optional[str] = None
    condition_config: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_node_id": self.source_node_id,
            "target_node_id": self.target_node_id,
            "source_handle": self.source_handle,
            "target_handle": self.target_handle,
            "condition_type": self.condition_type,
            "condition_config": self.condition_config,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectionSpec":
        return cls(
            id=data.get("id"),
            source_node_id=data.get("source_node_id", ""),
            target_node_id=data.get("target_node_id", ""),
            source_handle=data.get("source_handle"),
            target_handle=data.get("target_handle"),
            condition_type=data.get("condition_type"),
            condition_config=data.get("condition_config"),
        )


@dataclass
class WorkflowGraph:
    """
    A workflow defined as a directed graph of typed nodes.

    Loops are allowed (a connection back to an earlier node); the engine caps
    how many times one node may run within an execution.
    """
    nodes: Dict[str, WorkflowNodeSpec] = field(default_factory=dict)
    connections: List[ConnectionSpec] = field(default_factory=list)

    def get_node(self, node_id: str) -> Optional[WorkflowNodeSpec]:
        """Get a node by ID."""
        return self.nodes.get(node_id)

    def get_outgoing(self, node_id: str) -> List[ConnectionSpec]:
        """Get all connections leaving a node."""
        return [c for c in self.connections if c.source_node_id == node_id]

    def start_nodes(self) -> List[WorkflowNodeSpec]:
        return [n for n in self.nodes.values() if n.node_type == NodeType.START.value]

    def validate(self) -> List[str]:
        """
        Validate the workflow graph structure.
        Returns a list of error messages (empty if valid).
        """
        errors = []
        valid_types = {t.value for t in NodeType}

        for node_id, node in self.nodes.items():
            if node.node_type not in valid_types:
                errors.append(f"Node '{node_id}' has invalid node_type: {node.node_type}")

        starts = self.start_nodes()
        if not starts:
            errors.append("No start node found")
        elif len(starts) > 1:
            errors.append(f"Multiple start nodes: {sorted(n.id for n in starts)}")

        # Check all connection endpoints exist
        for conn in self.connections:
            if conn.source_node_id not in self.nodes:
                errors.append(f"Connection from unknown node: {conn.source_node_id}")
            if conn.target_node_id not in self.nodes:
                errors.append(f"Connection to unknown node: {conn.target_node_id}")

        # Check for unreachable nodes
        if len(starts) == 1:
            reachable = {starts[0].id}
            changed = True
            while changed:
                changed = False
                for conn in self.connections:
                    if conn.source_node_id in reachable and conn.target_node_id not in reachable:
                        reachable.add(conn.target_node_id)
                        changed = True

            unreachable = set(self.nodes.keys()) - reachable
            if unreachable:
                errors.append(f"Unreachable nodes: {sorted(unreachable)}")

        return errors

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "nodes": [node.to_dict() for node in self.nodes.values()],
            "connections": [conn.to_dict() for conn in self.connections],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowGraph":
        """Create from dict ({"nodes": [...], "connections": [...]})."""
        nodes = {}
        for node_data in data.get("nodes", []):
            node = WorkflowNodeSpec.from_dict(node_data)
            nodes[node.id] = node

        connections = [ConnectionSpec.from_dict(c) for c in data.get("connections", [])]
        return cls(nodes=nodes, connections=connections)


# =============================================================================
# Runtime State
# =============================================================================

@dataclass
class ExecutionContext:
    """
    Runtime context for one walk over the graph.
    Tracks how often each node ran so loops terminate.
    """
    execution_id: str
    workflow_id: str
    trigger_data: Dict[str, Any] = field(default_factory=dict)
    execution_data: Dict[str, Any] = field(default_factory=dict)

    # Number of times each node has run during this walk
    node_counts: Dict[str, int] = field(default_factory=dict)

    def increment(self, node_id: str) -> int:
        count = self.node_counts.get(node_id, 0) + 1
        self.node_counts[node_id] = count
        return count

    @property
    def submission_id(self) -> Optional[str]:
        return self.trigger_data.get("submissionId")

    @property
    def submitter_id(self) -> Optional[str]:
        return self.trigger_data.get("submitterId")

    @property
    def submission_data(self) -> Dict[str, Any]:
        return self.trigger_data.get("submissionData") or {}
