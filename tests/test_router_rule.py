#tests\test_router_rule.py

"""Test parsing and rendering of Traefik router rules."""

import pytest

from preview_engine.core.errors import RuleParseError
from preview_engine.traefik.rules import And, Matcher, Not, Or, TraefikRouterRule


class TestParse:
    """Test the rule parser."""

    def test_single_matcher(self):
        rule = TraefikRouterRule.parse("PathPrefix(`/master/db/`)")
        assert rule.expression == Matcher("PathPrefix", ("/master/db/",))

    def test_multiple_arguments(self):
        rule = TraefikRouterRule.parse("Host(`a.example.com`, `b.example.com`)")
        assert rule.expression == Matcher("Host", ("a.example.com", "b.example.com"))

    def test_double_quoted_arguments(self):
        rule = TraefikRouterRule.parse('Host("example.com")')
        assert str(rule) == "Host(`example.com`)"

    def test_and_binds_tighter_than_or(self):
        rule = TraefikRouterRule.parse("Host(`a`) || Host(`b`) && Path(`/c`)")

        assert rule.expression == Or(
            Matcher("Host", ("a",)),
            And(Matcher("Host", ("b",)), Matcher("Path", ("/c",))),
        )

    def test_parentheses(self):
        rule = TraefikRouterRule.parse("(Host(`a`) || Host(`b`)) && Path(`/c`)")

        assert rule.expression == And(
            Or(Matcher("Host", ("a",)), Matcher("Host", ("b",))),
            Matcher("Path", ("/c",)),
        )

    def test_negation(self):
        rule = TraefikRouterRule.parse("!Method(`POST`) && Path(`/`)")

        assert rule.expression == And(Not(Matcher("Method", ("POST",))), Matcher("Path", ("/",)))

    @pytest.mark.parametrize("text", [
        "",
        "   ",
        "Foo(`a`)",
        "Host(`a`",
        "Host(`a`) &&",
        "Host(`a`) Host(`b`)",
        "Host(`a`) $ Host(`b`)",
        "Host()",
    ])
    def test_invalid_rules(self, text):
        with pytest.raises(RuleParseError):
            TraefikRouterRule.parse(text)

    def test_parse_error_is_value_error(self):
        with pytest.raises(ValueError):
            TraefikRouterRule.parse("Unknown(`x`)")


class TestRender:
    """Test that rendered rules parse back to the same rule."""

    @pytest.mark.parametrize("text", [
        "PathPrefix(`/master/db/`)",
        "Host(`example.com`) && PathPrefix(`/master/db/`)",
        "Host(`a`) || Host(`b`) && Path(`/c`)",
        "(Host(`a`) || Host(`b`)) && Path(`/c`)",
        "Host(`a`) && (Host(`b`) && Path(`/c`))",
        "!(Host(`a`) || Host(`b`))",
        "!Method(`POST`)",
        "Host(`a`) || (Host(`b`) || Host(`c`))",
        "HostHeader(`example.com`)",
        "PathRegexp(`^/api/v[0-9]+`) && HeaderRegexp(`X-Env`, `^preview`)",
        "QueryRegexp(`mobile`, `^(true|yes)$`)",
    ])
    def test_round_trip(self, text):
        rule = TraefikRouterRule.parse(text)

        assert str(rule) == text
        assert TraefikRouterRule.parse(str(rule)) == rule


class TestBuild:
    """Test rules built in code."""

    def test_path_prefix_rule(self):
        rule = TraefikRouterRule.path_prefix_rule(["master", "db"])
        assert str(rule) == "PathPrefix(`/master/db/`)"

    def test_merge(self):
        base = TraefikRouterRule.parse("Host(`preview.example.com`)")
        rule = base.merge(TraefikRouterRule.path_prefix_rule(["master", "db"]))

        assert str(rule) == "Host(`preview.example.com`) && PathPrefix(`/master/db/`)"

    def test_merge_keeps_precedence(self):
        base = TraefikRouterRule.parse("Host(`a`) || Host(`b`)")
        rule = base.merge(TraefikRouterRule.path_prefix_rule(["master", "db"]))

        assert str(rule) == "(Host(`a`) || Host(`b`)) && PathPrefix(`/master/db/`)"
        assert TraefikRouterRule.parse(str(rule)) == rule
