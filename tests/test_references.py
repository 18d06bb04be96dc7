"""Tests for reference parsing and substitution."""

import pytest

from stackforge.orchestrator.references import (
    UNKNOWN,
    contains_unknown,
    find_references,
    parse_reference,
    substitute,
    walk_path,
)


class TestParseReference:
    """Test ``${...}`` expression parsing."""

    def test_variable_reference(self):
        ref = parse_reference("var.server_port")

        assert ref.is_variable
        assert ref.target == "server_port"
        assert ref.attribute is None

    def test_resource_reference_with_path(self):
        ref = parse_reference("aws_elb.web.listener.0.lb_port")

        assert not ref.is_variable
        assert ref.target == "aws_elb.web"
        assert ref.attribute == "listener"
        assert ref.path == ("0", "lb_port")

    @pytest.mark.parametrize("expression", ["var", "var.a.b", "aws_elb.web", "aws_elb..id"])
    def test_malformed_expressions(self, expression):
        with pytest.raises(ValueError):
            parse_reference(expression)


class TestFindReferences:
    """Test reference discovery in nested values."""

    def test_document_order(self):
        value = {
            "name": "${var.cluster}-lt",
            "groups": ["${aws_security_group.instance.id}", "sg-static"],
            "nested": {"port": "${var.port}"},
        }

        found = [ref.expression for ref in find_references(value)]

        assert found == ["var.cluster", "aws_security_group.instance.id", "var.port"]

    def test_plain_values_have_none(self):
        assert list(find_references({"a": 1, "b": [True, None, "text"]})) == []


class TestSubstitute:
    """Test full-match and embedded substitution."""

    def test_full_match_keeps_type(self):
        result = substitute({"port": "${var.port}"}, lambda ref: 8080)
        assert result == {"port": 8080}

    def test_embedded_reference_is_text(self):
        result = substitute("HTTP:${var.port}/", lambda ref: 8080)
        assert result == "HTTP:8080/"

    def test_embedded_bool_renders_lowercase(self):
        assert substitute("enabled=${var.flag}", lambda ref: True) == "enabled=true"

    def test_full_match_unknown(self):
        assert substitute("${aws_elb.web.dns_name}", lambda ref: UNKNOWN) is UNKNOWN

    def test_embedded_unknown_makes_string_unknown(self):
        result = substitute({"target": "http://${aws_elb.web.dns_name}/"}, lambda ref: UNKNOWN)
        assert result["target"] is UNKNOWN

    def test_input_not_mutated(self):
        original = {"ids": ["${var.a}"]}
        substitute(original, lambda ref: "x")
        assert original == {"ids": ["${var.a}"]}


class TestHelpers:
    """Test path walking and unknown detection."""

    def test_walk_path(self):
        value = [{"lb_port": 80}]
        assert walk_path(value, ("0", "lb_port")) == 80

    def test_walk_missing_key(self):
        with pytest.raises(KeyError):
            walk_path({"a": 1}, ("b",))

    def test_walk_through_unknown(self):
        assert walk_path(UNKNOWN, ("a", "b")) is UNKNOWN

    def test_contains_unknown(self):
        assert contains_unknown({"a": [1, {"b": UNKNOWN}]})
        assert not contains_unknown({"a": [1, {"b": 2}]})

    def test_unknown_is_singleton(self):
        import copy
        assert copy.deepcopy(UNKNOWN) is UNKNOWN
