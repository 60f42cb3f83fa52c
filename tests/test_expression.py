"""Tests for the condition expression grammar."""

import pytest

from flowrunner.core.exceptions import ExpressionError
from flowrunner.core.expression import compare, decode_literal, evaluate, parse_expression
from flowrunner.core.resolver import UNDEFINED


class TestParseExpression:
    """Test accepted expressions and their literals."""

    def test_numeric_comparison(self):
        """Test a path, operator and JSON number."""
        comparison = parse_expression("count > 0")
        assert comparison.path == "count"
        assert comparison.operator == ">"
        assert comparison.literal == 0

    def test_dotted_path(self):
        """Test nested paths with numeric segments."""
        comparison = parse_expression("discover.migrations.0.id != 'm1'")
        assert comparison.path == "discover.migrations.0.id"
        assert comparison.literal == "m1"

    @pytest.mark.parametrize("expression,expected", [
        ('status == "ready"', "ready"),
        ("status == 'ready'", "ready"),
        ("status == ready", "ready"),
        ("enabled == true", True),
        ("value == null", None),
        ("ratio >= 0.5", 0.5),
    ])
    def test_literal_forms(self, expression, expected):
        """Test JSON, quoted and bareword literals."""
        assert parse_expression(expression).literal == expected

    @pytest.mark.parametrize("expression", [
        "x ====",
        "x === 1",
        "count >",
        "count",
        "> 3",
        "a == 1 && b == 2",
        "status == 'open",
        "",
    ])
    def test_unsupported_expressions(self, expression):
        """Test that anything outside the grammar is rejected with guidance."""
        with pytest.raises(ExpressionError) as exc_info:
            parse_expression(expression)

        assert "Unsupported condition format" in exc_info.value.message
        assert "Use simple property comparisons." in exc_info.value.message

    def test_non_string_expression(self):
        """Test that a non-string condition is rejected."""
        with pytest.raises(ExpressionError):
            parse_expression(42)

    def test_decode_literal_falls_back_to_string(self):
        """Test undecodable literals stay strings."""
        assert decode_literal("prod") == "prod"
        assert decode_literal("[1, 2]") == [1, 2]


class TestCompare:
    """Test strict equality and numeric ordering."""

    def test_strict_equality(self):
        """Test that values of different types are never equal."""
        assert compare(1, "==", 1.0)
        assert not compare(True, "==", 1)
        assert not compare("1", "==", 1)
        assert compare("a", "!=", "b")

    def test_undefined_equals_nothing(self):
        """Test the missing-value sentinel."""
        assert not compare(UNDEFINED, "==", None)
        assert compare(UNDEFINED, "!=", None)

    def test_ordering_requires_numbers(self):
        """Test that ordering a non-number is false rather than an error."""
        assert compare(5, ">=", 5)
        assert compare(2, "<", 3)
        assert not compare("5", ">", 3)
        assert not compare(UNDEFINED, "<", 1)
        assert not compare(True, ">", 0)

    def test_evaluate_with_lookup(self):
        """Test evaluation against a lookup function."""
        values = {"count": 0, "status": "ready"}
        assert not evaluate(parse_expression("count > 0"), values.get)
        assert evaluate(parse_expression("status == 'ready'"), values.get)
