"""
Connection lookup and branch discovery for workflow graphs.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import WorkflowConnection, WorkflowInstanceLog
from schemas.workflow import NodeLogStatus

logger = logging.getLogger(__name__)

TRUE_MARKERS = ("true",)
FALSE_MARKERS = ("false",)


class BranchDiscovery:
    """Reads a workflow's connections and works out which nodes follow which."""

    def __init__(self, db: Session, workflow_id: str):
        self.db = db
        self.workflow_id = workflow_id

    def _outgoing(self, node_id: str) -> List[WorkflowConnection]:
        return self.db.query(WorkflowConnection).filter(
            WorkflowConnection.workflow_id == self.workflow_id,
            WorkflowConnection.source_node_id == node_id
        ).order_by(WorkflowConnection.created_at).all()

    def get_next_nodes(self, node_id: str, condition: Optional[str] = None) -> List[str]:
        """
        Target node ids of connections leaving a node.

        With a condition ("true", "false", a switch path), only connections whose
        condition type is unset, "default", or equal to the condition are kept.
        """
        next_nodes = []
        for conn in self._outgoing(node_id):
            if condition is not None:
                branch = conn.condition_type or conn.source_handle
                if branch and branch != condition and branch != "default":
                    continue
            next_nodes.append(conn.target_node_id)
        return next_nodes

    def get_nodes_in_branch(self, start_node_id: str, visited: Optional[Set[str]] = None) -> List[str]:
        """All nodes reachable from start_node_id (inclusive), depth-first."""
        if visited is None:
            visited = set()
        if start_node_id in visited:
            return []

        visited.add(start_node_id)
        branch_nodes = [start_node_id]
        for conn in self._outgoing(start_node_id):
            branch_nodes.extend(self.get_nodes_in_branch(conn.target_node_id, visited))
        return branch_nodes

    def get_conditional_branches(self, condition_node_id: str) -> Tuple[List[str], List[str]]:
        """
        Split the nodes downstream of a condition node into (true_branch, false_branch).

        Connections without a branch marker count as the true (default) branch.
        """
        true_nodes: List[str] = []
        false_nodes: List[str] = []

        for conn in self._outgoing(condition_node_id):
            is_false = conn.source_handle in FALSE_MARKERS or conn.condition_type in FALSE_MARKERS
            # Each branch gets its own visited set so shared downstream nodes appear in both
            branch = self.get_nodes_in_branch(conn.target_node_id)
            if is_false:
                false_nodes.extend(branch)
            else:
                true_nodes.extend(branch)

        logger.debug(
            f"Branches for condition {condition_node_id}: "
            f"{len(true_nodes)} true, {len(false_nodes)} false"
        )
        return true_nodes, false_nodes

    def get_switch_branches(self, condition_node_id: str) -> Dict[str, List[str]]:
        """Downstream nodes per switch path (keyed by condition type / source handle)."""
        branches: Dict[str, List[str]] = {}
        for conn in self._outgoing(condition_node_id):
            path = conn.condition_type or conn.source_handle or "default"
            branches.setdefault(path, []).extend(self.get_nodes_in_branch(conn.target_node_id))
        return branches


def next_execution_order(db: Session, execution_id: str) -> int:
    """Next execution_order value for an execution's log entries."""
    current = db.query(func.max(WorkflowInstanceLog.execution_order)).filter(
        WorkflowInstanceLog.execution_id == execution_id
    ).scalar()
    return (current or 0) + 1


def mark_nodes_as_ignored(db: Session, execution_id: str, node_ids: List[str], reason: str) -> int:
    """Write "ignored" log entries for nodes on a branch that was not taken."""
    if not node_ids:
        return 0

    order = next_execution_order(db, execution_id)
    now = datetime.utcnow()
    # A node reachable from both branches should not be logged twice
    unique_ids = list(dict.fromkeys(node_ids))
    for index, node_id in enumerate(unique_ids):
        db.add(WorkflowInstanceLog(
            execution_id=execution_id,
            node_id=node_id,
            node_type="ignored",
            node_label="Ignored Node",
            status=NodeLogStatus.IGNORED.value,
            started_at=now,
            completed_at=now,
            execution_order=order + index,
            input_data={},
            output_data={"reason": reason},
            duration_ms=0,
        ))
    db.commit()
    logger.info(f"Marked {len(unique_ids)} nodes as ignored for execution {execution_id}")
    return len(unique_ids)
