"""
Workflow actions package.

Importing this package registers every built-in action executor.
"""

from .registry import (
    ActionContext,
    ActionConfig,
    ActionRegistry,
    register_action,
    get_action,
    get_all_actions,
    get_actions_by_category,
)
from .form_actions import execute_approval, send_notification_from_config, resolve_approval_action
from . import record_actions  # noqa: F401
from . import linked_records  # noqa: F401

__all__ = [
    "ActionContext",
    "ActionConfig",
    "ActionRegistry",
    "register_action",
    "get_action",
    "get_all_actions",
    "get_actions_by_category",
    "execute_approval",
    "send_notification_from_config",
    "resolve_approval_action",
]
