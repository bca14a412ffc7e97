# preview_engine/traefik/rules.py
"""
Traefik router rules.

A rule is a boolean expression over matchers, for example::

    Host(`example.com`) && PathPrefix(`/master/db/`)

See https://doc.traefik.io/traefik/v2.10/routing/routers/#rule
"""

import re
from dataclasses import dataclass
from typing import Iterable, List, Tuple, Union

from preview_engine.core.errors import RuleParseError


MATCHERS = {
    "Host",
    "HostHeader",
    "HostRegexp",
    "Path",
    "PathPrefix",
    "PathRegexp",
    "Method",
    "Header",
    "Headers",
    "HeadersRegexp",
    "HeaderRegexp",
    "Query",
    "QueryRegexp",
    "ClientIP",
}

_TOKEN_PATTERN = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<and>&&)
  | (?P<or>\|\|)
  | (?P<not>!)
  | (?P<lparen>\()
  | (?P<rparen>\))
  | (?P<comma>,)
  | (?P<string>`[^`]*`|"(?:[^"\\]|\\.)*")
  | (?P<name>[A-Za-z][A-Za-z0-9]*)
    """,
    re.VERBOSE,
)


# ============================================
# EXPRESSION TREE
# ============================================

@dataclass(frozen=True)
class Matcher:
    name: str
    args: Tuple[str, ...]

    def __str__(self) -> str:
        args = ", ".join(f"`{arg}`" for arg in self.args)
        return f"{self.name}({args})"


@dataclass(frozen=True)
class Not:
    operand: "Expression"

    def __str__(self) -> str:
        if isinstance(self.operand, Matcher):
            return f"!{self.operand}"
        return f"!({self.operand})"


@dataclass(frozen=True)
class And:
    left: "Expression"
    right: "Expression"

    def __str__(self) -> str:
        right = f"({self.right})" if isinstance(self.right, And) else _wrap_or(self.right)
        return f"{_wrap_or(self.left)} && {right}"


@dataclass(frozen=True)
class Or:
    left: "Expression"
    right: "Expression"

    def __str__(self) -> str:
        return f"{self.left} || {_wrap_or(self.right)}"


Expression = Union[Matcher, Not, And, Or]


def _wrap_or(expression: Expression) -> str:
    if isinstance(expression, Or):
        return f"({expression})"
    return str(expression)


# ============================================
# PARSER
# ============================================

def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens = []
    position = 0

    while position < len(text):
        match = _TOKEN_PATTERN.match(text, position)
        if match is None:
            raise RuleParseError(
                f"Unexpected character {text[position]!r} at position {position} in rule {text!r}"
            )

        kind = match.lastgroup
        if kind != "ws":
            tokens.append((kind, match.group()))
        position = match.end()

    return tokens


class _Parser:
    """Recursive descent parser; precedence is `!` over `&&` over `||`."""

    def __init__(self, text: str):
        self._text = text
        self._tokens = _tokenize(text)
        self._index = 0

    def parse(self) -> Expression:
        if not self._tokens:
            raise RuleParseError("Rule must not be empty")

        expression = self._parse_or()

        if self._index != len(self._tokens):
            _, value = self._tokens[self._index]
            raise RuleParseError(f"Unexpected token {value!r} in rule {self._text!r}")

        return expression

    def _peek(self) -> str:
        if self._index < len(self._tokens):
            return self._tokens[self._index][0]
        return "eof"

    def _expect(self, kind: str) -> str:
        if self._peek() != kind:
            found = self._tokens[self._index][1] if self._index < len(self._tokens) else "end of rule"
            raise RuleParseError(f"Expected {kind} but found {found!r} in rule {self._text!r}")

        value = self._tokens[self._index][1]
        self._index += 1
        return value

    def _parse_or(self) -> Expression:
        expression = self._parse_and()
        while self._peek() == "or":
            self._index += 1
            expression = Or(expression, self._parse_and())
        return expression

    def _parse_and(self) -> Expression:
        expression = self._parse_unary()
        while self._peek() == "and":
            self._index += 1
            expression = And(expression, self._parse_unary())
        return expression

    def _parse_unary(self) -> Expression:
        if self._peek() == "not":
            self._index += 1
            return Not(self._parse_unary())

        if self._peek() == "lparen":
            self._index += 1
            expression = self._parse_or()
            self._expect("rparen")
            return expression

        return self._parse_matcher()

    def _parse_matcher(self) -> Matcher:
        name = self._expect("name")
        if name not in MATCHERS:
            raise RuleParseError(f"Unknown matcher {name!r} in rule {self._text!r}")

        self._expect("lparen")
        args = [self._parse_string()]
        while self._peek() == "comma":
            self._index += 1
            args.append(self._parse_string())
        self._expect("rparen")

        return Matcher(name, tuple(args))

    def _parse_string(self) -> str:
        raw = self._expect("string")
        if raw.startswith("`"):
            return raw[1:-1]
        return re.sub(r"\\(.)", r"\1", raw[1:-1])


# ============================================
# RULE
# ============================================

@dataclass(frozen=True)
class TraefikRouterRule:
    """Parsed, immutable Traefik router rule."""
    expression: Expression

    @classmethod
    def parse(cls, text: str) -> "TraefikRouterRule":
        return cls(_Parser(text).parse())

    @classmethod
    def path_prefix_rule(cls, segments: Iterable[str]) -> "TraefikRouterRule":
        path = "".join(f"/{segment}" for segment in segments) + "/"
        return cls(Matcher("PathPrefix", (path,)))

    def merge(self, other: "TraefikRouterRule") -> "TraefikRouterRule":
        """Combine both rules so that a request must match both."""
        return TraefikRouterRule(And(self.expression, other.expression))

    def __str__(self) -> str:
        return str(self.expression)
