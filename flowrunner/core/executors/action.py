"""Action node: dispatches on a closed set of operations."""

import json
import re
from typing import Any, Callable, Dict, List, Optional

from ...models.core import ActionOperation, NodeExecutionResult, NodeType, WorkflowNode
from ..capabilities import ActionCapabilityProvider
from ..exceptions import ConfigurationError, ExecutionError
from ..resolver import UNDEFINED, to_jsonable, walk_path
from .base import ExecutorContext, NodeExecutor, as_list, is_present, is_template

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")

TRANSFORM_FUNCTIONS = (
    "uppercase", "lowercase", "trim", "json_parse", "json_stringify", "length", "keys", "values",
)
SAFE_PROPERTY_PATH = re.compile(r"^[A-Za-z_$][A-Za-z0-9_$]*(\.[A-Za-z0-9_$]+)*$")

MUTATING_OPERATIONS = frozenset({
    ActionOperation.EXECUTE_MIGRATIONS,
    ActionOperation.ROLLBACK,
    ActionOperation.DATABASE_MIGRATION,
})

RETRYABLE_OPERATIONS = frozenset({
    ActionOperation.DISCOVER_MIGRATIONS,
    ActionOperation.DRY_RUN,
    ActionOperation.SET_VARIABLE,
    ActionOperation.TRANSFORM_DATA,
})


class ActionExecutor(NodeExecutor):
    """Validates and performs action operations.

    Side effects are delegated to the injected ``ActionCapabilityProvider``.
    ``set_variable`` and ``transform_data`` are evaluated locally.
    """

    node_type = NodeType.ACTION

    def __init__(self, capabilities: ActionCapabilityProvider):
        self.capabilities = capabilities
        self._validators: Dict[ActionOperation, Callable[[Dict[str, Any]], List[str]]] = {
            ActionOperation.DISCOVER_MIGRATIONS: self._validate_discover,
            ActionOperation.DRY_RUN: self._validate_migration_batch,
            ActionOperation.EXECUTE_MIGRATIONS: self._validate_migration_batch,
            ActionOperation.ROLLBACK: self._validate_rollback,
            ActionOperation.DATABASE_MIGRATION: self._validate_single_migration,
            ActionOperation.HTTP_REQUEST: self._validate_http,
            ActionOperation.CUSTOM_API_CALL: self._validate_http,
            ActionOperation.DATABASE_QUERY: self._validate_query,
            ActionOperation.SET_VARIABLE: self._validate_set_variable,
            ActionOperation.TRANSFORM_DATA: self._validate_transform,
        }
        self._runners: Dict[ActionOperation, Callable[[WorkflowNode, ExecutorContext], Any]] = {
            ActionOperation.DISCOVER_MIGRATIONS: self._delegate,
            ActionOperation.DRY_RUN: self._delegate,
            ActionOperation.EXECUTE_MIGRATIONS: self._delegate,
            ActionOperation.ROLLBACK: self._delegate,
            ActionOperation.DATABASE_MIGRATION: self._delegate,
            ActionOperation.HTTP_REQUEST: self._delegate,
            ActionOperation.CUSTOM_API_CALL: self._delegate,
            ActionOperation.DATABASE_QUERY: self._delegate,
            ActionOperation.SET_VARIABLE: self._set_variable,
            ActionOperation.TRANSFORM_DATA: self._transform,
        }
        for table in (self._validators, self._runners):
            missing = set(ActionOperation) - set(table)
            if missing:
                raise ConfigurationError(
                    f"Action executor does not handle: {', '.join(sorted(op.value for op in missing))}"
                )

    @staticmethod
    def operation_of(node: WorkflowNode) -> Optional[ActionOperation]:
        try:
            return ActionOperation(node.data.get("action"))
        except ValueError:
            return None

    def _validate_data(self, node: WorkflowNode) -> List[str]:
        action = node.data.get("action")
        if not is_present(action):
            return [f"Action node {node.id} missing action type"]
        operation = self.operation_of(node)
        if operation is None:
            return [f"Unknown action type: {action}"]
        return self._validators[operation](node.data)

    def _run(self, node: WorkflowNode, context: ExecutorContext) -> Any:
        operation = self.operation_of(node)
        return self._runners[operation](node, context)

    def is_retryable(self, node: WorkflowNode) -> bool:
        operation = self.operation_of(node)
        if operation in (ActionOperation.HTTP_REQUEST, ActionOperation.CUSTOM_API_CALL):
            return str(node.data.get("method") or "GET").upper() == "GET"
        return operation in RETRYABLE_OPERATIONS

    # validation

    def _validate_discover(self, data: Dict[str, Any]) -> List[str]:
        if not is_present(data.get("connectionId")):
            return ["Connection ID is required for discover_migrations"]
        return []

    def _validate_migration_batch(self, data: Dict[str, Any]) -> List[str]:
        errors = []
        if not is_present(data.get("connectionId")):
            errors.append("Connection ID is required")
        if not is_present(data.get("migrations")):
            errors.append("Migrations are required")
        return errors

    def _validate_rollback(self, data: Dict[str, Any]) -> List[str]:
        if not is_present(data.get("connectionId")):
            return ["Connection ID is required for rollback"]
        return []

    def _validate_single_migration(self, data: Dict[str, Any]) -> List[str]:
        errors = []
        if not is_present(data.get("connectionId")):
            errors.append("Connection ID is required for database migration")
        if not is_present(data.get("migrationId")):
            errors.append("Migration ID is required for database migration")
        return errors

    def _validate_http(self, data: Dict[str, Any]) -> List[str]:
        errors = []
        if not is_present(data.get("url")):
            errors.append("URL is required for API call")
        method = data.get("method")
        if is_present(method) and not is_template(method) and str(method).upper() not in HTTP_METHODS:
            errors.append(f"Unsupported HTTP method: {method}")
        return errors

    def _validate_query(self, data: Dict[str, Any]) -> List[str]:
        errors = []
        if not is_present(data.get("connectionId")):
            errors.append("Connection ID is required for database query")
        if not is_present(data.get("query")):
            errors.append("Query is required for database query")
        return errors

    def _validate_set_variable(self, data: Dict[str, Any]) -> List[str]:
        if not is_present(data.get("variableName")):
            return ["Variable name is required for set_variable"]
        return []

    def _validate_transform(self, data: Dict[str, Any]) -> List[str]:
        errors = []
        if data.get("input") is None or data.get("input") is UNDEFINED:
            errors.append("Input is required for transform_data")
        function = data.get("transformFunction")
        if not is_present(function):
            errors.append("Transform function is required for transform_data")
        elif not is_template(function) and function not in TRANSFORM_FUNCTIONS \
                and not SAFE_PROPERTY_PATH.match(str(function)):
            errors.append(f"Unsupported transform function: {function}")
        return errors

    # execution

    def _delegate(self, node: WorkflowNode, context: ExecutorContext) -> Dict[str, Any]:
        operation = self.operation_of(node)
        params = dict(node.data)
        params.pop("action", None)
        if not is_present(params.get("connectionId")) and context.connection_id:
            params["connectionId"] = context.connection_id
        if "migrations" in params:
            params["migrations"] = as_list(params["migrations"])

        if context.dry_run and operation in MUTATING_OPERATIONS:
            if operation == ActionOperation.DATABASE_MIGRATION:
                params["migrations"] = [params["migrationId"]]
            result = self.capabilities.perform(ActionOperation.DRY_RUN, params, context)
            return {**result, "operation": operation.value, "simulated": True}

        return self.capabilities.perform(operation, params, context)

    def _set_variable(self, node: WorkflowNode, context: ExecutorContext) -> NodeExecutionResult:
        name = str(node.data["variableName"])
        value = to_jsonable(node.data.get("value"))
        output = {
            "variableName": name,
            "value": value,
            "previousValue": to_jsonable(context.variables.get(name)),
        }
        return NodeExecutionResult(success=True, output=output, variable_updates={name: value})

    def _transform(self, node: WorkflowNode, context: ExecutorContext) -> Dict[str, Any]:
        value = node.data["input"]
        function = node.data["transformFunction"]
        try:
            result = self._apply_transform(value, function)
        except ExecutionError:
            raise
        except (TypeError, ValueError, AttributeError) as e:
            raise ExecutionError(f"Data transformation failed: {e}", node_id=node.id, operation="transform_data")
        return {"input": to_jsonable(value), "transformFunction": function, "result": to_jsonable(result)}

    @staticmethod
    def _apply_transform(value: Any, function: str) -> Any:
        if function == "uppercase":
            return str(value).upper()
        if function == "lowercase":
            return str(value).lower()
        if function == "trim":
            return str(value).strip()
        if function == "json_parse":
            return json.loads(value) if isinstance(value, str) else value
        if function == "json_stringify":
            return json.dumps(to_jsonable(value))
        if function == "length":
            return len(value)
        if function == "keys":
            return list(value.keys())
        if function == "values":
            return list(value.values())
        if SAFE_PROPERTY_PATH.match(function):
            return walk_path(value, function.split("."))
        raise ExecutionError(
            f"Unsupported transform function: {function}. Use predefined functions or safe property access.",
            operation="transform_data",
        )
