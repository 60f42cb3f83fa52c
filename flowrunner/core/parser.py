"""Parsing, serialization, ordering and validation of workflow definitions."""

import json
from collections import deque
from typing import Any, Dict, List, Union

import yaml
from pydantic import ValidationError

from ..models.core import (
    DefinitionFormat,
    ValidationResult,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowNode,
)
from .exceptions import CycleError, DefinitionError
from .logging import get_logger
from .resolver import validate_variables

logger = get_logger(__name__)


def _format_of(encoding: Union[DefinitionFormat, str]) -> DefinitionFormat:
    try:
        return DefinitionFormat(str(getattr(encoding, "value", encoding)).lower())
    except ValueError:
        raise DefinitionError(f"Unsupported definition format: {encoding}")


def _schema_errors(error: ValidationError) -> List[str]:
    messages = []
    for issue in error.errors():
        location = ".".join(str(part) for part in issue.get("loc", ()))
        messages.append(f"{location}: {issue['msg']}" if location else issue["msg"])
    return messages


def parse(content: Union[str, bytes], encoding: Union[DefinitionFormat, str] = DefinitionFormat.JSON) -> WorkflowDefinition:
    """Decode ``content`` into a ``WorkflowDefinition``.

    Raises:
        DefinitionError: If the text cannot be decoded or does not match the schema
    """
    definition_format = _format_of(encoding)
    if isinstance(content, bytes):
        content = content.decode("utf-8")

    try:
        if definition_format == DefinitionFormat.JSON:
            raw = json.loads(content)
        else:
            raw = yaml.safe_load(content)
    except json.JSONDecodeError as e:
        raise DefinitionError(f"Invalid JSON definition: {e}", validation_errors=[str(e)])
    except yaml.YAMLError as e:
        raise DefinitionError(f"Invalid YAML definition: {e}", validation_errors=[str(e)])

    if not isinstance(raw, dict):
        raise DefinitionError("Workflow definition must be a mapping",
                              validation_errors=["Workflow definition must be a mapping"])

    try:
        return WorkflowDefinition.model_validate(raw)
    except ValidationError as e:
        errors = _schema_errors(e)
        raise DefinitionError(
            f"Workflow definition does not match the schema: {'; '.join(errors)}",
            validation_errors=errors,
            workflow_name=raw.get("name") if isinstance(raw.get("name"), str) else None,
        )


def to_document(definition: WorkflowDefinition) -> Dict[str, Any]:
    """Plain-data form of a definition as it appears on the wire."""
    return definition.model_dump(mode="json", by_alias=True, exclude_none=True)


def serialize(definition: WorkflowDefinition, encoding: Union[DefinitionFormat, str] = DefinitionFormat.JSON) -> str:
    """Encode a definition so that ``parse(serialize(d), fmt) == d``."""
    document = to_document(definition)
    if _format_of(encoding) == DefinitionFormat.JSON:
        return json.dumps(document, indent=2)
    return yaml.safe_dump(document, sort_keys=False, allow_unicode=True)


def _declaration_index(nodes: List[WorkflowNode]) -> Dict[str, int]:
    index: Dict[str, int] = {}
    for position, node in enumerate(nodes):
        index.setdefault(node.id, position)
    return index


def compute_execution_order(nodes: List[WorkflowNode], edges: List[WorkflowEdge]) -> List[str]:
    """Topological order of node ids.

    Kahn's algorithm processed one level at a time; each level is sorted by
    declaration index so the order is stable for a given definition. Edges
    whose endpoints are not declared are ignored.

    Raises:
        CycleError: If some nodes can never reach in-degree zero
    """
    index = _declaration_index(nodes)
    in_degree = {node_id: 0 for node_id in index}
    successors: Dict[str, List[str]] = {node_id: [] for node_id in index}

    for edge in edges:
        if edge.source not in index or edge.target not in index:
            continue
        successors[edge.source].append(edge.target)
        in_degree[edge.target] += 1

    order: List[str] = []
    frontier = sorted((node_id for node_id, degree in in_degree.items() if degree == 0), key=index.get)
    while frontier:
        order.extend(frontier)
        next_frontier = []
        for node_id in frontier:
            for target in successors[node_id]:
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    next_frontier.append(target)
        frontier = sorted(next_frontier, key=index.get)

    if len(order) < len(index):
        remaining = sorted((node_id for node_id in index if node_id not in order), key=index.get)
        raise CycleError(
            f"Workflow contains a cycle involving nodes: {', '.join(remaining)}",
            nodes=remaining,
        )
    return order


def has_cycle(nodes: List[WorkflowNode], edges: List[WorkflowEdge]) -> bool:
    try:
        compute_execution_order(nodes, edges)
    except CycleError:
        return True
    return False


class DefinitionValidator:
    """Collects every structural and per-node problem of a definition."""

    def __init__(self, registry):
        self.registry = registry

    def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        """
        Validate a definition without stopping at the first problem.

        Args:
            definition: The parsed workflow definition

        Returns:
            ValidationResult: Errors that block execution and warnings that do not
        """
        logger.debug(f"Validating workflow definition: {definition.name}")
        errors: List[str] = []
        warnings: List[str] = []

        self._validate_node_ids(definition, errors)
        self._validate_edge_references(definition, errors)
        self._validate_triggers(definition, errors)
        self._validate_cycles(definition, errors)
        self._validate_nodes(definition, errors)

        for root in validate_variables(definition):
            warnings.append(f"Unknown template reference: {root}")

        logger.debug(f"Definition validation completed. Valid: {not errors}, "
                     f"Errors: {len(errors)}, Warnings: {len(warnings)}")
        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def _validate_node_ids(self, definition: WorkflowDefinition, errors: List[str]):
        seen = set()
        for node in definition.nodes:
            if node.id in seen:
                errors.append(f"Duplicate node ID: {node.id}")
            seen.add(node.id)

    def _validate_edge_references(self, definition: WorkflowDefinition, errors: List[str]):
        node_ids = set(definition.node_map)
        for edge in definition.edges:
            if edge.source not in node_ids:
                errors.append(f"Edge references non-existent source node: {edge.source}")
            if edge.target not in node_ids:
                errors.append(f"Edge references non-existent target node: {edge.target}")

    def _validate_triggers(self, definition: WorkflowDefinition, errors: List[str]):
        triggers = definition.trigger_nodes()
        if not triggers:
            errors.append("Workflow must have at least one trigger node")
            return

        node_ids = set(definition.node_map)
        successors: Dict[str, List[str]] = {node_id: [] for node_id in node_ids}
        for edge in definition.edges:
            if edge.source in node_ids and edge.target in node_ids:
                successors[edge.source].append(edge.target)

        reachable = set()
        queue = deque(node.id for node in triggers)
        while queue:
            node_id = queue.popleft()
            if node_id in reachable:
                continue
            reachable.add(node_id)
            queue.extend(successors[node_id])

        for node in definition.nodes:
            if node.id not in reachable:
                errors.append(f"Node {node.id} is not reachable from any trigger node")
                reachable.add(node.id)

    def _validate_cycles(self, definition: WorkflowDefinition, errors: List[str]):
        if has_cycle(definition.nodes, definition.edges):
            errors.append("Workflow contains cycles which are not allowed")

    def _validate_nodes(self, definition: WorkflowDefinition, errors: List[str]):
        for node in definition.nodes:
            if not self.registry.has(node.type):
                errors.append(f"Node {node.id}: no executor registered for node type '{node.type.value}'")
                continue
            result = self.registry.get(node.type).validate(node)
            errors.extend(f"Node {node.id}: {error}" for error in result.errors)


def validate(definition: WorkflowDefinition, registry) -> ValidationResult:
    """Validate ``definition`` against the executors in ``registry``."""
    return DefinitionValidator(registry).validate(definition)


def parse_and_validate(content: Union[str, bytes], encoding: Union[DefinitionFormat, str],
                       registry) -> WorkflowDefinition:
    """Parse and validate in one step.

    Raises:
        DefinitionError: If parsing fails or the definition has any validation error
    """
    definition = parse(content, encoding)
    result = validate(definition, registry)
    if not result.valid:
        raise DefinitionError(
            f"Workflow definition is invalid: {'; '.join(result.errors)}",
            validation_errors=result.errors,
            workflow_name=definition.name,
        )
    return definition
