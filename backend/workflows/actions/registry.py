"""
Action Registry

Registry of the side effects an action node can perform, keyed by actionType.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from schemas.workflow import NodeExecutionResult


@dataclass
class ActionContext:
    """Everything an action executor gets to work with."""
    db: Session
    execution_id: str
    workflow_id: str
    node_id: str
    config: Dict[str, Any]
    trigger_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def submission_id(self) -> Optional[str]:
        return self.trigger_data.get("submissionId")

    @property
    def submitter_id(self) -> Optional[str]:
        return self.trigger_data.get("submitterId")

    @property
    def submission_data(self) -> Dict[str, Any]:
        return self.trigger_data.get("submissionData") or {}

    @property
    def form_id(self) -> Optional[str]:
        return self.trigger_data.get("formId")


ActionExecutor = Callable[[ActionContext], NodeExecutionResult]


@dataclass
class ActionConfig:
    """A registered action."""
    name: str  # actionType value used in node config
    description: str
    executor: ActionExecutor
    category: str = "general"  # "form", "notification", "record"


class ActionRegistry:
    """Registry of action executors."""

    def __init__(self):
        self._actions: Dict[str, ActionConfig] = {}

    def register(self, action: ActionConfig):
        """Register an action."""
        self._actions[action.name] = action

    def get(self, name: str) -> Optional[ActionConfig]:
        """Get an action by actionType."""
        return self._actions.get(name)

    def get_all(self) -> List[ActionConfig]:
        """Get all registered actions."""
        return list(self._actions.values())

    def get_by_category(self, category: str) -> List[ActionConfig]:
        """Get actions by category."""
        return [a for a in self._actions.values() if a.category == category]


# Global registry instance
_action_registry = ActionRegistry()


def register_action(name: str, description: str, category: str = "general"):
    """Decorator that registers a function as the executor for an actionType."""
    def decorator(fn: ActionExecutor) -> ActionExecutor:
        _action_registry.register(ActionConfig(
            name=name,
            description=description,
            executor=fn,
            category=category,
        ))
        return fn
    return decorator


def get_action(name: str) -> Optional[ActionConfig]:
    """Get an action by actionType."""
    return _action_registry.get(name)


def get_all_actions() -> List[ActionConfig]:
    """Get all registered actions."""
    return _action_registry.get_all()


def get_actions_by_category(category: str) -> List[ActionConfig]:
    """Get actions by category."""
    return _action_registry.get_by_category(category)
