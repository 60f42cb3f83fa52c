"""Trigger node: the entry point of every run."""

from typing import Any, List

from ...models.core import NodeType, WorkflowNode
from ..resolver import redact_variables
from .base import ExecutorContext, NodeExecutor


class TriggerExecutor(NodeExecutor):
    node_type = NodeType.TRIGGER

    def _validate_data(self, node: WorkflowNode) -> List[str]:
        return []

    def _run(self, node: WorkflowNode, context: ExecutorContext) -> Any:
        return {
            "triggeredBy": context.actor.id,
            "triggeredAt": context.now.isoformat(),
            "variables": redact_variables(context.variables, context.secret_names),
            **node.data,
        }

    def is_retryable(self, node: WorkflowNode) -> bool:
        return True
