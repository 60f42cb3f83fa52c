"""Executor contract shared by every node type."""

import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from ...models.core import Actor, NodeExecutionResult, NodeType, ValidationResult, WorkflowNode
from ..exceptions import NodeValidationError, WorkflowEngineError
from ..logging import get_logger
from ..resolver import UNDEFINED, TemplateContext, create_context

logger = get_logger(__name__)


class ExecutorContext:
    """Run-level context handed to an executor alongside the resolved node."""

    def __init__(
        self,
        workflow_id: str,
        execution_id: Optional[str],
        actor: Actor,
        variables: Optional[Dict[str, Any]] = None,
        node_outputs: Optional[Dict[str, Any]] = None,
        previous_output: Any = None,
        connection_id: Optional[str] = None,
        node_execution_id: Optional[str] = None,
        dry_run: bool = False,
        now: Optional[datetime] = None,
        secret_names: Optional[List[str]] = None,
    ):
        self.workflow_id = workflow_id
        self.execution_id = execution_id
        self.actor = actor
        self.team_id = actor.team_id
        self.variables = variables if variables is not None else {}
        self.node_outputs = node_outputs if node_outputs is not None else {}
        self.previous_output = previous_output
        self.connection_id = connection_id
        self.node_execution_id = node_execution_id
        self.dry_run = dry_run
        self.now = now or datetime.utcnow()
        self.secret_names = list(secret_names or [])

    @property
    def template_context(self) -> TemplateContext:
        return create_context(
            actor=self.actor,
            variables=self.variables,
            node_outputs=self.node_outputs,
            previous_output=self.previous_output,
            connection_id=self.connection_id,
        )


def is_template(value: Any) -> bool:
    """Whether ``value`` is an unresolved placeholder string."""
    return isinstance(value, str) and "{{" in value and "}}" in value


def is_present(value: Any) -> bool:
    """Whether a configuration value was supplied and resolved to something."""
    if value is None or value is UNDEFINED:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, dict)):
        return bool(value)
    return True


def as_list(value: Any) -> List[Any]:
    if value is None or value is UNDEFINED:
        return []
    if isinstance(value, (list, tuple)):
        return [item for item in value if item is not None and item is not UNDEFINED]
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [value]


class NodeExecutor(ABC):
    """Base class for node executors.

    ``execute`` validates the node, runs it and converts every exception into
    a failed ``NodeExecutionResult``. Subclasses implement ``_validate_data``
    and ``_run``.
    """

    node_type: NodeType

    def validate(self, node: WorkflowNode) -> ValidationResult:
        """Validate a node's configuration against this executor's constraints."""
        errors = self._validate_data(node)
        return ValidationResult(valid=not errors, errors=errors)

    def execute(self, node: WorkflowNode, context: ExecutorContext) -> NodeExecutionResult:
        """Run a resolved node. Never raises."""
        started = time.perf_counter()
        try:
            validation = self.validate(node)
            if not validation.valid:
                raise NodeValidationError(
                    "; ".join(validation.errors), errors=validation.errors, node_id=node.id
                )
            result = self._run(node, context)
            if not isinstance(result, NodeExecutionResult):
                result = NodeExecutionResult(success=True, output=result)
        except WorkflowEngineError as e:
            logger.warning(f"Node {node.id} ({node.type.value}) failed: {e.message}")
            result = NodeExecutionResult(success=False, error=e.message)
        except Exception as e:
            logger.exception(f"Unexpected error executing node {node.id}")
            result = NodeExecutionResult(success=False, error=f"Unexpected error: {e}")

        result.duration = round((time.perf_counter() - started) * 1000, 3)
        return result

    def is_retryable(self, node: WorkflowNode) -> bool:
        """Whether re-running the node after an interruption is safe."""
        return False

    @abstractmethod
    def _validate_data(self, node: WorkflowNode) -> List[str]:
        """Return validation errors for ``node.data``."""

    @abstractmethod
    def _run(self, node: WorkflowNode, context: ExecutorContext) -> Any:
        """Perform the node's work and return a result or raw output."""
