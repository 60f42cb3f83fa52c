"""Tests for template placeholder resolution and secret redaction."""

import pytest

from flowrunner.core.resolver import (
    REDACTED,
    UNDEFINED,
    collect_secret_values,
    create_context,
    extract_variables,
    redact,
    redact_variables,
    resolve,
    resolve_object,
    resolve_path,
    to_jsonable,
    validate_variables,
)
from flowrunner.models.core import Actor, WorkflowDefinition


@pytest.fixture
def context():
    """Context with an actor, variables, two node outputs and a connection."""
    return create_context(
        actor=Actor(id="alice", email="alice@example.com", team_id="team-1"),
        variables={"env": "prod", "retries": 3, "items": [1, 2], "config": {"region": "eu"}},
        node_outputs={
            "discover": {"count": 0, "migrations": []},
            "lookup": {"status": 200, "data": {"name": "orders"}},
        },
        previous_output={"total": 5},
        connection_id="conn-1",
    )


class TestResolvePath:
    """Test path lookup across the context roots."""

    def test_actor_roots(self, context):
        """Test currentUser and actor resolve to the same identity."""
        assert resolve_path("currentUser.email", context) == "alice@example.com"
        assert resolve_path("actor.id", context) == "alice"
        assert resolve_path("currentUser.teamId", context) == "team-1"

    def test_variables(self, context):
        """Test explicit and bare variable lookups."""
        assert resolve_path("variables.env", context) == "prod"
        assert resolve_path("env", context) == "prod"
        assert resolve_path("config.region", context) == "eu"

    def test_node_outputs(self, context):
        """Test node outputs by id, through both collection roots and bare."""
        assert resolve_path("previousOutputs.discover.count", context) == 0
        assert resolve_path("nodes.lookup.data.name", context) == "orders"
        assert resolve_path("lookup.status", context) == 200

    def test_previous_output_and_connection(self, context):
        """Test the most recent output and the run's connection id."""
        assert resolve_path("previousOutput.total", context) == 5
        assert resolve_path("connectionId", context) == "conn-1"

    def test_list_indexing_and_length(self, context):
        """Test numeric segments and the length pseudo-property."""
        assert resolve_path("items.1", context) == 2
        assert resolve_path("items.length", context) == 2
        assert resolve_path("items.5", context) is UNDEFINED

    def test_missing_paths_are_undefined(self, context):
        """Test that lookups never raise."""
        assert resolve_path("missing", context) is UNDEFINED
        assert resolve_path("variables.env.deeper", context) is UNDEFINED
        assert resolve_path("discover..count", context) is UNDEFINED
        assert not UNDEFINED

    def test_fallback_to_previous_output(self, context):
        """Test that a bare root can fall back to the latest node output."""
        assert resolve_path("total", context) is UNDEFINED
        assert resolve_path("total", context, fallback_to_previous=True) == 5

    def test_variables_win_over_previous_output(self, context):
        """Test that a declared variable shadows the fallback."""
        context.previous_output = {"env": "staging"}
        assert resolve_path("env", context, fallback_to_previous=True) == "prod"


class TestResolve:
    """Test string and object resolution."""

    def test_resolve_string(self, context):
        """Test interpolation inside a larger string."""
        assert resolve("Deploy {{ variables.env }} by {{currentUser.id}}", context) == "Deploy prod by alice"

    def test_missing_value_renders_empty(self, context):
        """Test that an unresolved placeholder becomes an empty string."""
        assert resolve("value=[{{ nothing.here }}]", context) == "value=[]"

    def test_non_strings_are_json_encoded(self, context):
        """Test lists, numbers and booleans inside strings."""
        assert resolve("{{ variables.items }}", context) == "[1, 2]"
        assert resolve("n={{ retries }}", context) == "n=3"

    def test_resolve_object_keeps_types(self, context):
        """Test that a lone placeholder yields the raw value."""
        resolved = resolve_object({
            "count": "{{ discover.count }}",
            "list": ["{{ variables.items }}"],
            "text": "count={{ discover.count }}",
            "literal": 7,
        }, context)

        assert resolved == {"count": 0, "list": [[1, 2]], "text": "count=0", "literal": 7}

    def test_resolve_object_copies_values(self, context):
        """Test that resolved containers are not shared with the context."""
        resolved = resolve_object("{{ variables.items }}", context)
        resolved.append(3)
        assert context.variables["items"] == [1, 2]

    def test_resolve_object_missing_is_undefined(self, context):
        """Test the sentinel survives until serialization."""
        assert resolve_object("{{ nope }}", context) is UNDEFINED
        assert to_jsonable({"value": UNDEFINED}) == {"value": None}


class TestTemplateAnalysis:
    """Test placeholder extraction and reference checks."""

    def test_extract_variables(self):
        """Test that each path is reported once, in order of appearance."""
        value = {"a": "{{ x.y }} and {{z}}", "b": ["{{ x.y }}", {"c": "{{ w }}"}]}
        assert extract_variables(value) == ["x.y", "z", "w"]

    def test_validate_variables_reports_unknown_roots(self):
        """Test that declared variables, node ids and built-ins are accepted."""
        definition = WorkflowDefinition.model_validate({
            "name": "refs",
            "variables": [{"name": "env"}],
            "nodes": [
                {"id": "start", "type": "trigger"},
                {"id": "notify", "type": "notification", "data": {
                    "provider": "slack",
                    "channel": "#ops",
                    "message": "{{ env }} {{ start.triggeredBy }} {{ currentUser.id }} {{ mystery.value }}",
                }},
            ],
        })

        assert validate_variables(definition) == ["mystery"]


class TestSecrets:
    """Test secret collection and redaction."""

    @pytest.fixture
    def definition(self):
        return WorkflowDefinition.model_validate({
            "name": "secrets",
            "variables": [
                {"name": "apiKey", "isSecret": True},
                {"name": "password", "type": "secret"},
                {"name": "env"},
            ],
            "nodes": [{"id": "start", "type": "trigger"}],
        })

    def test_collect_secret_values(self, definition):
        """Test both secret markers, longest value first."""
        values = collect_secret_values(definition, {"apiKey": "abc123", "password": "hunter22", "env": "prod"})
        assert values == ["hunter22", "abc123"]

    def test_redact_nested_values(self, definition):
        """Test that plaintext is replaced inside strings, dicts and lists."""
        secrets = collect_secret_values(definition, {"apiKey": "abc123"})
        redacted = redact({"header": "Bearer abc123", "list": ["abc123"], "count": 5}, secrets)

        assert redacted == {"header": f"Bearer {REDACTED}", "list": [REDACTED], "count": 5}

    def test_redact_variables(self, definition):
        """Test that secret-named variables are masked even when not strings."""
        masked = redact_variables({"apiKey": 12345, "env": "prod", "password": None},
                                  definition.secret_variable_names())
        assert masked == {"apiKey": REDACTED, "env": "prod", "password": None}

    def test_collect_structured_secret_values(self, definition):
        """Test that numbers and objects are collected whole and as text."""
        values = collect_secret_values(definition, {"apiKey": 987654, "password": {"user": "ops", "pin": 1234}})

        assert values[:4] == ['{"user": "ops", "pin": 1234}', "987654", "1234", "ops"]
        assert values[4:] == [987654, 1234, {"user": "ops", "pin": 1234}]

    def test_redact_structured_secrets(self, definition):
        """Test that non-string secrets are masked wherever they surface."""
        secrets = collect_secret_values(definition, {"apiKey": 987654, "password": {"password": "hunter2"}})

        redacted = redact({
            "pin": 987654,
            "note": "pin is 987654",
            "creds": {"password": "hunter2"},
            "copy": ["hunter2", 987654, 5],
            "flag": True,
        }, secrets)

        assert redacted == {
            "pin": REDACTED,
            "note": f"pin is {REDACTED}",
            "creds": REDACTED,
            "copy": [REDACTED, REDACTED, 5],
            "flag": True,
        }
