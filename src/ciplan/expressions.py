"""Rule predicate language (`rules: - if: ...`) and variable expansion.

Grammar, lowest precedence first::

    expr       := and_expr ( "||" and_expr )*
    and_expr   := comparison ( "&&" comparison )*
    comparison := operand ( ("==" | "!=" | "=~" | "!~") operand )?
    operand    := VARIABLE | STRING | REGEX | "null" | "(" expr ")"

Evaluation never uses eval(); expressions are parsed once into a small tree.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, List, Mapping, Optional

from .errors import ExpressionError

_TOKEN_SPEC = [
    ("WS", r"\s+"),
    ("AND", r"&&"),
    ("OR", r"\|\|"),
    ("OP", r"==|!=|=~|!~"),
    ("LPAREN", r"\("),
    ("RPAREN", r"\)"),
    ("VAR", r"\$\{(\w+)\}|\$(\w+)"),
    ("STRING", r'"(?:[^"\\]|\\.)*"|\'(?:[^\'\\]|\\.)*\''),
    ("REGEX", r"/((?:\\.|[^/\\])*)/([a-z]*)"),
    ("NULL", r"null\b"),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))
_VAR_REF = re.compile(r"\$\{(\w+)\}|\$(\w+)")
_REGEX_LITERAL = re.compile(r"/((?:\\.|[^/\\])*)/([a-z]*)")


@dataclass(frozen=True)
class Token:
    kind: str
    value: Any
    pos: int


@dataclass(frozen=True)
class RegexValue:
    pattern: str
    flags: str = ""

    def compile(self) -> re.Pattern:
        flags = 0
        for f in self.flags:
            if f == "i":
                flags |= re.IGNORECASE
            elif f == "m":
                flags |= re.MULTILINE
            elif f == "s":
                flags |= re.DOTALL
            else:
                raise ExpressionError(f"unsupported regex flag {f!r} in /{self.pattern}/{self.flags}")
        try:
            return re.compile(self.pattern, flags)
        except re.error as e:
            raise ExpressionError(f"invalid regex /{self.pattern}/: {e}") from e


def tokenize(source: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(source):
        m = _TOKEN_RE.match(source, pos)
        if not m:
            raise ExpressionError(f"unexpected character {source[pos]!r} at {pos} in {source!r}")
        kind = m.lastgroup
        text = m.group(kind)
        if kind == "VAR":
            ref = _VAR_REF.match(text)
            tokens.append(Token(kind, ref.group(1) or ref.group(2), pos))
        elif kind == "STRING":
            tokens.append(Token(kind, re.sub(r"\\(.)", r"\1", text[1:-1]), pos))
        elif kind == "REGEX":
            body, flags = _REGEX_LITERAL.match(text).groups()
            rv = RegexValue(body.replace("\\/", "/"), flags)
            rv.compile()  # fail at load time, not while scheduling
            tokens.append(Token(kind, rv, pos))
        elif kind != "WS":
            tokens.append(Token(kind, text, pos))
        pos = m.end()
    return tokens


# ---------------------------------------------------------------------
# Tree
# ---------------------------------------------------------------------

class Node:
    def value(self, variables: Mapping[str, str]) -> Any:
        raise NotImplementedError

    def truthy(self, variables: Mapping[str, str]) -> bool:
        return _truthy(self.value(variables))


@dataclass(frozen=True)
class Literal(Node):
    literal: Any

    def value(self, variables):
        return self.literal


@dataclass(frozen=True)
class Variable(Node):
    name: str

    def value(self, variables):
        return variables.get(self.name)


@dataclass(frozen=True)
class Compare(Node):
    op: str
    left: Node
    right: Node

    def value(self, variables):
        return self.truthy(variables)

    def truthy(self, variables) -> bool:
        lhs = self.left.value(variables)
        rhs = self.right.value(variables)
        if self.op == "==":
            return _unwrap(lhs) == _unwrap(rhs)
        if self.op == "!=":
            return _unwrap(lhs) != _unwrap(rhs)
        matched = _regex_match(lhs, rhs)
        return matched if self.op == "=~" else not matched


@dataclass(frozen=True)
class And(Node):
    left: Node
    right: Node

    def value(self, variables):
        return self.truthy(variables)

    def truthy(self, variables) -> bool:
        return self.left.truthy(variables) and self.right.truthy(variables)


@dataclass(frozen=True)
class Or(Node):
    left: Node
    right: Node

    def value(self, variables):
        return self.truthy(variables)

    def truthy(self, variables) -> bool:
        return self.left.truthy(variables) or self.right.truthy(variables)


def _unwrap(v: Any) -> Any:
    if isinstance(v, RegexValue):
        return f"/{v.pattern}/{v.flags}"
    return v


def _truthy(v: Any) -> bool:
    if v is None:
        return False
    if isinstance(v, bool):
        return v
    if isinstance(v, RegexValue):
        return True
    return str(v) != ""


def _as_regex(v: Any) -> Optional[RegexValue]:
    if isinstance(v, RegexValue):
        return v
    # a variable may hold "/pattern/flags"
    if isinstance(v, str):
        m = re.fullmatch(r"/(.*)/([a-z]*)", v, re.DOTALL)
        if m:
            return RegexValue(m.group(1), m.group(2))
    return None


def _regex_match(lhs: Any, rhs: Any) -> bool:
    if lhs is None:
        return False
    regex = _as_regex(rhs)
    if regex is None:
        # e.g. `$A =~ $B` where B does not hold "/.../"
        return False
    try:
        return regex.compile().search(str(lhs)) is not None
    except ExpressionError:
        return False


# ---------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------

class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = tokenize(source)
        self.i = 0

    def peek(self) -> Optional[Token]:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def take(self, kind: str | None = None) -> Token:
        tok = self.peek()
        if tok is None:
            raise ExpressionError(f"unexpected end of expression: {self.source!r}")
        if kind is not None and tok.kind != kind:
            raise ExpressionError(f"expected {kind} at {tok.pos}, got {tok.value!r} in {self.source!r}")
        self.i += 1
        return tok

    def parse(self) -> Node:
        if not self.tokens:
            raise ExpressionError("empty expression")
        node = self.expr()
        if self.peek() is not None:
            tok = self.peek()
            raise ExpressionError(f"unexpected {tok.value!r} at {tok.pos} in {self.source!r}")
        return node

    def expr(self) -> Node:
        node = self.and_expr()
        while self.peek() is not None and self.peek().kind == "OR":
            self.take()
            node = Or(node, self.and_expr())
        return node

    def and_expr(self) -> Node:
        node = self.comparison()
        while self.peek() is not None and self.peek().kind == "AND":
            self.take()
            node = And(node, self.comparison())
        return node

    def comparison(self) -> Node:
        left = self.operand()
        tok = self.peek()
        if tok is not None and tok.kind == "OP":
            self.take()
            right = self.operand()
            if tok.value in ("=~", "!~") and isinstance(right, Literal) and not isinstance(right.literal, RegexValue):
                raise ExpressionError(f"right side of {tok.value} must be a regex or variable in {self.source!r}")
            return Compare(tok.value, left, right)
        return left

    def operand(self) -> Node:
        tok = self.take()
        if tok.kind == "VAR":
            return Variable(tok.value)
        if tok.kind in ("STRING", "REGEX"):
            return Literal(tok.value)
        if tok.kind == "NULL":
            return Literal(None)
        if tok.kind == "LPAREN":
            node = self.expr()
            self.take("RPAREN")
            return node
        raise ExpressionError(f"unexpected {tok.value!r} at {tok.pos} in {self.source!r}")


@lru_cache(maxsize=512)
def compile_expression(source: str) -> Node:
    return _Parser(source).parse()


def evaluate(source: str, variables: Mapping[str, str]) -> bool:
    return compile_expression(source).truthy(variables)


# ---------------------------------------------------------------------
# Variable expansion (cache keys, artifact paths, variables referencing variables)
# ---------------------------------------------------------------------

def expand_variables(text: str, variables: Mapping[str, str]) -> str:
    """Replace $NAME / ${NAME}; undefined names expand to an empty string."""
    def repl(m: re.Match) -> str:
        name = m.group(1) or m.group(2)
        return str(variables.get(name, ""))

    return _VAR_REF.sub(repl, text)

