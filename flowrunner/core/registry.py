"""Executor registry mapping node types to executors."""

from typing import Dict, List, Optional, Union

from ..models.core import NodeType
from .capabilities import ActionCapabilityProvider, HttpNotificationTransport, NotificationTransport
from .exceptions import ConfigurationError, UnknownNodeTypeError
from .executors import (
    ActionExecutor,
    ApprovalExecutor,
    ConditionExecutor,
    DelayExecutor,
    NodeExecutor,
    NotificationExecutor,
    TriggerExecutor,
)
from .logging import get_logger

logger = get_logger(__name__)


class ExecutorRegistry:
    """Holds exactly one executor per node type."""

    def __init__(self):
        self._executors: Dict[NodeType, NodeExecutor] = {}

    def register(self, node_type: Union[NodeType, str], executor: NodeExecutor, replace: bool = False) -> None:
        """Register ``executor`` for ``node_type``.

        Raises:
            ConfigurationError: If the type already has an executor and ``replace`` is false
        """
        node_type = NodeType(node_type)
        if node_type in self._executors and not replace:
            raise ConfigurationError(f"Executor for node type '{node_type.value}' is already registered")
        self._executors[node_type] = executor
        logger.debug(f"Registered {executor.__class__.__name__} for node type '{node_type.value}'")

    def get(self, node_type: Union[NodeType, str]) -> NodeExecutor:
        """Return the executor for ``node_type``.

        Raises:
            UnknownNodeTypeError: If nothing is registered for the type
        """
        try:
            key = NodeType(node_type)
        except ValueError:
            raise UnknownNodeTypeError(f"Unknown node type: {node_type}", node_type=str(node_type))
        executor = self._executors.get(key)
        if executor is None:
            raise UnknownNodeTypeError(f"No executor registered for node type: {key.value}", node_type=key.value)
        return executor

    def has(self, node_type: Union[NodeType, str]) -> bool:
        try:
            return NodeType(node_type) in self._executors
        except ValueError:
            return False

    def node_types(self) -> List[NodeType]:
        return list(self._executors)

    def ensure_complete(self) -> None:
        """Fail at startup when any node type has no executor."""
        missing = [node_type.value for node_type in NodeType if node_type not in self._executors]
        if missing:
            raise ConfigurationError(f"No executor registered for node types: {', '.join(missing)}")


def build_default_registry(
    store,
    capabilities: ActionCapabilityProvider,
    transport: Optional[NotificationTransport] = None,
    max_renotifications: int = 3,
) -> ExecutorRegistry:
    """Registry wired with the built-in executor for every node type."""
    if transport is None:
        transport = HttpNotificationTransport()
    registry = ExecutorRegistry()
    registry.register(NodeType.TRIGGER, TriggerExecutor())
    registry.register(NodeType.ACTION, ActionExecutor(capabilities))
    registry.register(NodeType.CONDITION, ConditionExecutor())
    registry.register(NodeType.APPROVAL, ApprovalExecutor(store, transport, max_renotifications=max_renotifications))
    registry.register(NodeType.NOTIFICATION, NotificationExecutor(transport))
    registry.register(NodeType.DELAY, DelayExecutor())
    registry.ensure_complete()
    return registry
