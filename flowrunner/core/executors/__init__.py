"""Node executors, one per node type."""

from .base import ExecutorContext, NodeExecutor
from .trigger import TriggerExecutor
from .action import ActionExecutor
from .condition import ConditionExecutor
from .approval import ApprovalExecutor
from .notification import NotificationExecutor
from .delay import DelayExecutor

__all__ = [
    "ExecutorContext",
    "NodeExecutor",
    "TriggerExecutor",
    "ActionExecutor",
    "ConditionExecutor",
    "ApprovalExecutor",
    "NotificationExecutor",
    "DelayExecutor",
]
