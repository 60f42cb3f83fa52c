"""Tests for definition parsing, serialization, ordering and validation."""

import json

import pytest

from flowrunner.core.exceptions import CycleError, DefinitionError
from flowrunner.core.parser import (
    DefinitionValidator,
    compute_execution_order,
    has_cycle,
    parse,
    parse_and_validate,
    serialize,
    validate,
)
from flowrunner.models.core import NodeType, WorkflowDefinition

from conftest import chain, make_definition, trigger_node


@pytest.fixture
def migration_definition():
    """Discover, check, approve, apply: the typical migration workflow."""
    return WorkflowDefinition.model_validate(make_definition(
        nodes=[
            trigger_node(),
            {"id": "discover", "type": "action", "label": "Discover",
             "data": {"action": "discover_migrations", "connectionId": "{{ connectionId }}"}},
            {"id": "check", "type": "condition", "data": {"condition": "count > 0"}},
            {"id": "approve", "type": "approval",
             "data": {"approvers": ["bob", "carol"], "minApprovals": 2, "timeout": 3600, "onTimeout": "fail"}},
            {"id": "apply", "type": "action",
             "data": {"action": "execute_migrations", "connectionId": "{{ connectionId }}",
                      "migrations": "{{ discover.migrations }}"}},
        ],
        edges=chain("start", "discover", "check") + [
            {"source": "check", "target": "approve", "label": "true"},
            {"source": "approve", "target": "apply"},
        ],
        variables=[
            {"name": "env", "type": "string", "defaultValue": "staging"},
            {"name": "apiKey", "type": "secret", "description": "Token for the migration API"},
        ],
        name="Migrate",
    ))


class TestParse:
    """Test decoding of definition text."""

    def test_parse_json(self, migration_definition):
        """Test parsing a JSON document."""
        content = json.dumps(migration_definition.model_dump(mode="json", by_alias=True))
        definition = parse(content, "json")

        assert definition.name == "Migrate"
        assert [node.id for node in definition.nodes] == ["start", "discover", "check", "approve", "apply"]
        assert definition.variables[0].default == "staging"

    def test_parse_yaml(self):
        """Test parsing YAML with the node mapping form."""
        content = """
name: Nightly report
trigger: scheduled
nodes:
  start:
    type: trigger
  wait:
    type: delay
    data:
      duration: 60
edges:
  - source: start
    target: wait
"""
        definition = parse(content, "yaml")

        assert definition.trigger.value == "scheduled"
        assert [node.id for node in definition.nodes] == ["start", "wait"]
        assert definition.nodes[1].type == NodeType.DELAY

    def test_invalid_json(self):
        """Test that decoder errors become DefinitionError."""
        with pytest.raises(DefinitionError) as exc_info:
            parse("{not json", "json")
        assert "Invalid JSON definition" in exc_info.value.message

    def test_invalid_yaml(self):
        """Test YAML decoder errors."""
        with pytest.raises(DefinitionError) as exc_info:
            parse("name: [unclosed", "yaml")
        assert "Invalid YAML definition" in exc_info.value.message

    def test_non_mapping_document(self):
        """Test that a top-level list is rejected."""
        with pytest.raises(DefinitionError):
            parse("[1, 2]", "json")

    def test_schema_errors_are_listed(self):
        """Test one error per schema problem."""
        with pytest.raises(DefinitionError) as exc_info:
            parse(json.dumps({"name": "", "nodes": [{"id": "a", "type": "teleport"}]}), "json")

        errors = exc_info.value.validation_errors
        assert len(errors) >= 2
        assert any(error.startswith("name") for error in errors)
        assert any("type" in error for error in errors)

    def test_unsupported_format(self):
        """Test an unknown encoding name."""
        with pytest.raises(DefinitionError):
            parse("{}", "toml")


class TestSerialize:
    """Test that serialization round-trips."""

    @pytest.mark.parametrize("encoding", ["json", "yaml"])
    def test_round_trip(self, migration_definition, encoding):
        """Test parse(serialize(d)) == d for both encodings."""
        assert parse(serialize(migration_definition, encoding), encoding) == migration_definition

    def test_serialize_emits_node_list(self):
        """Test that the mapping form is normalised on output."""
        definition = WorkflowDefinition.model_validate({
            "name": "mapped",
            "nodes": {"start": {"type": "trigger"}},
        })
        document = json.loads(serialize(definition, "json"))
        assert document["nodes"] == [{"id": "start", "type": "trigger", "label": "", "data": {}}]


class TestExecutionOrder:
    """Test topological ordering."""

    def test_levels_follow_declaration_order(self, migration_definition):
        """Test that ties are broken by declaration index."""
        definition = WorkflowDefinition.model_validate(make_definition(
            nodes=[trigger_node(), {"id": "b", "type": "trigger"}, {"id": "a", "type": "trigger"},
                   {"id": "c", "type": "trigger"}],
            edges=[{"source": "start", "target": "a"}, {"source": "start", "target": "b"},
                   {"source": "a", "target": "c"}, {"source": "b", "target": "c"}],
        ))

        first = compute_execution_order(definition.nodes, definition.edges)
        second = compute_execution_order(definition.nodes, definition.edges)

        assert first == ["start", "b", "a", "c"]
        assert first == second

    def test_unknown_endpoints_are_ignored(self):
        """Test that dangling edges do not affect ordering."""
        definition = WorkflowDefinition.model_validate(make_definition(
            nodes=[trigger_node(), {"id": "next", "type": "trigger"}],
            edges=[{"source": "start", "target": "next"}, {"source": "ghost", "target": "start"}],
        ))
        assert compute_execution_order(definition.nodes, definition.edges) == ["start", "next"]

    def test_cycle_detection(self):
        """Test that a cycle names the nodes left over."""
        definition = WorkflowDefinition.model_validate(make_definition(
            nodes=[trigger_node(), {"id": "a", "type": "trigger"}, {"id": "b", "type": "trigger"}],
            edges=[{"source": "start", "target": "a"}, {"source": "a", "target": "b"},
                   {"source": "b", "target": "a"}],
        ))

        with pytest.raises(CycleError) as exc_info:
            compute_execution_order(definition.nodes, definition.edges)

        assert exc_info.value.nodes == ["a", "b"]
        assert has_cycle(definition.nodes, definition.edges)


class TestDefinitionValidator:
    """Test that validation enumerates every problem."""

    def test_valid_definition(self, migration_definition, registry):
        """Test the migration workflow validates cleanly."""
        result = validate(migration_definition, registry)
        assert result.valid
        assert result.errors == []

    def test_all_errors_are_reported(self, registry):
        """Test that validation does not stop at the first problem."""
        definition = WorkflowDefinition.model_validate(make_definition(
            nodes=[
                {"id": "x", "type": "action", "data": {}},
                {"id": "x", "type": "condition", "data": {"condition": "a == 1"}},
                {"id": "y", "type": "approval", "data": {"approvers": []}},
            ],
            edges=[{"source": "x", "target": "ghost"}],
        ))

        result = DefinitionValidator(registry).validate(definition)

        assert not result.valid
        assert "Duplicate node ID: x" in result.errors
        assert "Edge references non-existent target node: ghost" in result.errors
        assert "Workflow must have at least one trigger node" in result.errors
        assert "Node x: Action node x missing action type" in result.errors
        assert "Node y: At least one approver is required" in result.errors

    def test_unreachable_node(self, registry):
        """Test nodes with no path from a trigger."""
        definition = WorkflowDefinition.model_validate(make_definition(
            nodes=[trigger_node(), {"id": "orphan", "type": "action",
                                    "data": {"action": "set_variable", "variableName": "x", "value": 1}}],
        ))

        result = validate(definition, registry)

        assert result.errors == ["Node orphan is not reachable from any trigger node"]

    def test_cycle_is_an_error(self, registry):
        """Test that a cycle is reported alongside other errors."""
        definition = WorkflowDefinition.model_validate(make_definition(
            nodes=[trigger_node(), {"id": "a", "type": "delay", "data": {"duration": 5}},
                   {"id": "b", "type": "delay", "data": {"duration": 5}}],
            edges=[{"source": "start", "target": "a"}, {"source": "a", "target": "b"},
                   {"source": "b", "target": "a"}],
        ))

        result = validate(definition, registry)

        assert "Workflow contains cycles which are not allowed" in result.errors

    def test_invalid_condition_is_rejected(self, registry):
        """Test that a malformed condition fails validation up front."""
        definition = WorkflowDefinition.model_validate(make_definition(
            nodes=[trigger_node(), {"id": "check", "type": "condition", "data": {"condition": "x ===="}}],
            edges=chain("start", "check"),
        ))

        result = validate(definition, registry)

        assert not result.valid
        assert result.errors[0].startswith("Node check: Unsupported condition format: x ====")

    def test_unknown_references_are_warnings(self, registry):
        """Test that template references never block a definition."""
        definition = WorkflowDefinition.model_validate(make_definition(
            nodes=[trigger_node(), {"id": "note", "type": "action",
                                    "data": {"action": "set_variable", "variableName": "x",
                                             "value": "{{ somewhere.value }}"}}],
            edges=chain("start", "note"),
        ))

        result = validate(definition, registry)

        assert result.valid
        assert result.warnings == ["Unknown template reference: somewhere"]

    def test_parse_and_validate(self, registry):
        """Test the combined helper raises for invalid definitions."""
        content = json.dumps(make_definition(nodes=[{"id": "a", "type": "delay", "data": {}}]))
        with pytest.raises(DefinitionError) as exc_info:
            parse_and_validate(content, "json", registry)
        assert "Workflow must have at least one trigger node" in exc_info.value.validation_errors
