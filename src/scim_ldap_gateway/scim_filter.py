"""SCIM filter expression parser (RFC 7644 §3.4.2.2).

Parses the full filter grammar, not just ``attribute op value``:

    filter     = orExpr
    orExpr     = andExpr *("or" andExpr)
    andExpr    = unary *("and" unary)
    unary      = "not" "(" filter ")" / "(" filter ")" / valuePath / comparison
    comparison = attrPath ("pr" / compareOp compValue)
    valuePath  = attrPath "[" filter "]" ["." subAttr compareOp compValue]

Attribute names may carry a schema URN prefix
(``urn:ietf:params:scim:schemas:extension:enterprise:2.0:User:employeeNumber``).
Operators and keywords are case-insensitive.  :func:`parse_path` parses the
PATCH ``path`` form (``members[value eq "2819c223"]``, ``name.givenName``).

Any syntax error raises :class:`~scim_ldap_gateway.core.errors.InvalidFilterError`.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, List, Mapping, Tuple, Union

from .core.constants import ENTERPRISE_USER_SCHEMA, GROUP_SCHEMA, USER_SCHEMA
from .core.errors import InvalidFilterError

__all__ = [
    "AttributePath",
    "Comparison",
    "ValueFilter",
    "And",
    "Or",
    "Not",
    "FilterNode",
    "COMPARE_OPERATORS",
    "parse_filter",
    "parse_path",
    "matches",
]

COMPARE_OPERATORS = frozenset({"eq", "ne", "co", "sw", "ew", "gt", "ge", "lt", "le"})
PRESENT = "pr"

_KNOWN_SCHEMAS = (ENTERPRISE_USER_SCHEMA, USER_SCHEMA, GROUP_SCHEMA)


# AST -------------------------------------------------------------------------


@dataclass(frozen=True)
class AttributePath:
    """``[schema:]attribute[.sub]`` with an optional ``[filter]`` on the attribute."""

    attribute: str
    sub_attribute: str | None = None
    schema: str | None = None
    filter: "FilterNode | None" = None

    @property
    def dotted(self) -> str:
        """``attribute.sub`` in lower case, without schema or filter."""
        name = self.attribute.lower()
        if self.sub_attribute:
            name = f"{name}.{self.sub_attribute.lower()}"
        return name

    def __str__(self) -> str:
        text = f"{self.schema}:{self.attribute}" if self.schema and self.attribute else (self.schema or self.attribute)
        if self.filter is not None:
            text += f"[{self.filter}]"
        if self.sub_attribute:
            text += f".{self.sub_attribute}"
        return text


@dataclass(frozen=True)
class Comparison:
    path: AttributePath
    op: str
    value: Any = None

    def __str__(self) -> str:
        if self.op == PRESENT:
            return f"{self.path} pr"
        return f"{self.path} {self.op} {json.dumps(self.value)}"


@dataclass(frozen=True)
class ValueFilter:
    """``emails[type eq "work"]`` – true when any element matches *filter*."""

    path: AttributePath
    filter: "FilterNode"

    def __str__(self) -> str:
        return f"{self.path.attribute}[{self.filter}]"


@dataclass(frozen=True)
class And:
    left: "FilterNode"
    right: "FilterNode"

    def __str__(self) -> str:
        return f"({self.left} and {self.right})"


@dataclass(frozen=True)
class Or:
    left: "FilterNode"
    right: "FilterNode"

    def __str__(self) -> str:
        return f"({self.left} or {self.right})"


@dataclass(frozen=True)
class Not:
    filter: "FilterNode"

    def __str__(self) -> str:
        return f"not ({self.filter})"


FilterNode = Union[Comparison, ValueFilter, And, Or, Not]


# Lexer -----------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<lparen>\()
    |(?P<rparen>\))
    |(?P<lbracket>\[)
    |(?P<rbracket>\])
    |(?P<string>"(?:[^"\\]|\\.)*")
    |(?P<number>-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)
    |(?P<subattr>\.[A-Za-z_$][\w$\-]*)
    |(?P<word>[A-Za-z_$][\w$.:\-]*)
    """,
    re.VERBOSE,
)

Token = Tuple[str, str, int]


def _tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise InvalidFilterError(f"Unexpected character {text[pos]!r} at position {pos} in filter: {text}")
        kind = match.lastgroup or ""
        if kind != "ws":
            tokens.append((kind, match.group(), pos))
        pos = match.end()
    return tokens


def _split_schema(word: str) -> Tuple[str | None, str]:
    lowered = word.lower()
    for schema in _KNOWN_SCHEMAS:
        if lowered == schema.lower():
            return schema, ""
        if lowered.startswith(schema.lower() + ":"):
            return schema, word[len(schema) + 1 :]
    if lowered.startswith("urn:") and ":" in word[4:]:
        schema, _, rest = word.rpartition(":")
        return schema, rest
    return None, word


def _make_path(word: str, pos: int, text: str) -> AttributePath:
    schema, rest = _split_schema(word)
    attribute, _, sub = rest.partition(".")
    if (not attribute and schema is None) or "." in sub or (rest and not attribute):
        raise InvalidFilterError(f"Invalid attribute path {word!r} at position {pos} in filter: {text}")
    return AttributePath(attribute=attribute, sub_attribute=sub or None, schema=schema)


# Parser ----------------------------------------------------------------------


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    # token helpers
    def _peek(self, offset: int = 0) -> Token | None:
        idx = self.pos + offset
        return self.tokens[idx] if idx < len(self.tokens) else None

    def _next(self) -> Token:
        tok = self._peek()
        if tok is None:
            raise InvalidFilterError(f"Unexpected end of filter: {self.text}")
        self.pos += 1
        return tok

    def _expect(self, kind: str) -> Token:
        tok = self._next()
        if tok[0] != kind:
            raise InvalidFilterError(f"Expected {kind} at position {tok[2]}, got {tok[1]!r} in filter: {self.text}")
        return tok

    def _at_keyword(self, keyword: str) -> bool:
        tok = self._peek()
        return tok is not None and tok[0] == "word" and tok[1].lower() == keyword

    def _fail(self, tok: Token, message: str) -> InvalidFilterError:
        return InvalidFilterError(f"{message} at position {tok[2]} ({tok[1]!r}) in filter: {self.text}")

    # grammar
    def parse(self) -> FilterNode:
        if not self.tokens:
            raise InvalidFilterError("Empty filter")
        node = self._or()
        tok = self._peek()
        if tok is not None:
            raise self._fail(tok, "Unexpected trailing input")
        return node

    def _or(self) -> FilterNode:
        node = self._and()
        while self._at_keyword("or"):
            self.pos += 1
            node = Or(node, self._and())
        return node

    def _and(self) -> FilterNode:
        node = self._unary()
        while self._at_keyword("and"):
            self.pos += 1
            node = And(node, self._unary())
        return node

    def _unary(self) -> FilterNode:
        tok = self._next()
        kind, value, _ = tok
        if kind == "word" and value.lower() == "not":
            nxt = self._peek()
            if nxt is not None and nxt[0] == "lparen":
                self.pos += 1
                inner = self._or()
                self._expect("rparen")
                return Not(inner)
        if kind == "lparen":
            inner = self._or()
            self._expect("rparen")
            return inner
        if kind != "word":
            raise self._fail(tok, "Expected attribute path")
        path = _make_path(value, tok[2], self.text)
        nxt = self._peek()
        if nxt is not None and nxt[0] == "lbracket":
            if path.sub_attribute:
                raise self._fail(nxt, "Value filter must follow a top-level attribute")
            self.pos += 1
            inner = self._or()
            self._expect("rbracket")
            sub = self._peek()
            if sub is None or sub[0] != "subattr":
                return ValueFilter(path, inner)
            self.pos += 1
            path = AttributePath(
                attribute=path.attribute, sub_attribute=sub[1][1:], schema=path.schema, filter=inner
            )
        return self._comparison(path)

    def _comparison(self, path: AttributePath) -> Comparison:
        tok = self._next()
        kind, value, _ = tok
        op = value.lower()
        if kind != "word" or (op not in COMPARE_OPERATORS and op != PRESENT):
            raise self._fail(tok, "Expected comparison operator")
        if op == PRESENT:
            return Comparison(path, PRESENT)
        return Comparison(path, op, self._value())

    def _value(self) -> Any:
        tok = self._next()
        kind, value, _ = tok
        if kind == "string":
            try:
                return json.loads(value)
            except ValueError:
                raise self._fail(tok, "Invalid string literal") from None
        if kind == "number":
            return float(value) if any(c in value for c in ".eE") else int(value)
        if kind == "word":
            lowered = value.lower()
            if lowered == "true":
                return True
            if lowered == "false":
                return False
            if lowered == "null":
                return None
        raise self._fail(tok, "Expected comparison value")


def parse_filter(text: str) -> FilterNode:
    """Parse *text* into a filter AST."""
    if text is None or not text.strip():
        raise InvalidFilterError("Empty filter")
    return _Parser(text).parse()


def parse_path(text: str) -> AttributePath:
    """Parse a PATCH path: ``attr``, ``attr.sub``, ``attr[filter]`` or ``attr[filter].sub``."""
    if text is None or not text.strip():
        raise InvalidFilterError("Empty path")
    parser = _Parser(text)
    tok = parser._next()
    if tok[0] != "word":
        raise parser._fail(tok, "Expected attribute path")
    path = _make_path(tok[1], tok[2], text)
    nxt = parser._peek()
    if nxt is not None and nxt[0] == "lbracket":
        parser.pos += 1
        inner = parser._or()
        parser._expect("rbracket")
        sub = parser._peek()
        sub_name = path.sub_attribute
        if sub is not None and sub[0] == "subattr":
            parser.pos += 1
            sub_name = sub[1][1:]
        path = AttributePath(attribute=path.attribute, sub_attribute=sub_name, schema=path.schema, filter=inner)
    trailing = parser._peek()
    if trailing is not None:
        raise parser._fail(trailing, "Unexpected trailing input")
    return path


# Evaluation ------------------------------------------------------------------


def _lookup(element: Mapping[str, Any], name: str) -> Any:
    lowered = name.lower()
    for key, value in element.items():
        if str(key).lower() == lowered:
            return value
    return None


def _resolve(element: Mapping[str, Any], path: AttributePath) -> Any:
    value = _lookup(element, path.attribute)
    if path.filter is not None:
        items = value if isinstance(value, list) else ([value] if value is not None else [])
        value = [item for item in items if isinstance(item, Mapping) and matches(path.filter, item)]
    if path.sub_attribute:
        if isinstance(value, list):
            return [_lookup(v, path.sub_attribute) for v in value if isinstance(v, Mapping)]
        if isinstance(value, Mapping):
            return _lookup(value, path.sub_attribute)
        return None
    return value


def _present(value: Any) -> bool:
    if isinstance(value, list):
        return any(_present(v) for v in value)
    return value is not None and value != "" and value != {}


def _compare(actual: Any, op: str, expected: Any) -> bool:
    if op == "ne":
        return not _compare(actual, "eq", expected)
    if isinstance(actual, list):
        return any(_compare(item, op, expected) for item in actual)
    if actual is None:
        return op == "eq" and expected is None
    if isinstance(actual, str) and isinstance(expected, str):
        actual, expected = actual.lower(), expected.lower()
        if op == "co":
            return expected in actual
        if op == "sw":
            return actual.startswith(expected)
        if op == "ew":
            return actual.endswith(expected)
    elif op in ("co", "sw", "ew"):
        return False
    if op == "eq":
        return actual == expected
    if isinstance(actual, bool) or isinstance(expected, bool) or expected is None:
        return False
    try:
        if op == "gt":
            return actual > expected
        if op == "ge":
            return actual >= expected
        if op == "lt":
            return actual < expected
        if op == "le":
            return actual <= expected
    except TypeError:
        return False
    return False


def matches(node: FilterNode, element: Mapping[str, Any]) -> bool:
    """Evaluate *node* against a JSON object (string comparisons ignore case)."""
    if isinstance(node, And):
        return matches(node.left, element) and matches(node.right, element)
    if isinstance(node, Or):
        return matches(node.left, element) or matches(node.right, element)
    if isinstance(node, Not):
        return not matches(node.filter, element)
    if isinstance(node, ValueFilter):
        items = _lookup(element, node.path.attribute)
        if isinstance(items, Mapping):
            items = [items]
        return any(isinstance(item, Mapping) and matches(node.filter, item) for item in items or ())
    if isinstance(node, Comparison):
        value = _resolve(element, node.path)
        if node.op == PRESENT:
            return _present(value)
        return _compare(value, node.op, node.value)
    return False
