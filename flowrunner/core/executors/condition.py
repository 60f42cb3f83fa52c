"""Condition node: evaluates a restricted comparison expression."""

from typing import Any, List

from ...models.core import NodeType, WorkflowNode
from ..exceptions import ExpressionError
from ..expression import evaluate, parse_expression
from ..resolver import resolve_path
from .base import ExecutorContext, NodeExecutor, is_present


class ConditionExecutor(NodeExecutor):
    node_type = NodeType.CONDITION

    def _validate_data(self, node: WorkflowNode) -> List[str]:
        condition = node.data.get("condition")
        if not is_present(condition):
            return ["Condition is required"]
        try:
            parse_expression(condition)
        except ExpressionError as e:
            return [e.message]
        return []

    def _run(self, node: WorkflowNode, context: ExecutorContext) -> Any:
        comparison = parse_expression(node.data["condition"])
        template_context = context.template_context
        result = evaluate(
            comparison,
            lambda path: resolve_path(path, template_context, fallback_to_previous=True),
        )
        return {
            "condition": comparison.source,
            "result": result,
            "branch": "true" if result else "false",
            "evaluatedAt": context.now.isoformat(),
        }

    def is_retryable(self, node: WorkflowNode) -> bool:
        return True
