"""LDAP filter tree.

Immutable node objects that render to RFC-4515 filter strings.  Values are
escaped with :func:`ldap3.utils.conv.escape_filter_chars` at render time, so a
node always holds the raw (unescaped) value and two trees compare equal
exactly when they are structurally equal.

* ``str(node)`` – the filter text handed to ldap3.
* :func:`build_object_class_filter` – AND a kind predicate
  (``(objectClass=scimUser)``) with an optional translated filter.  When no
  extra filter is supplied the predicate is returned as-is.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple, Union

from ldap3.utils.conv import escape_filter_chars

__all__ = [
    "LdapFilter",
    "And",
    "Or",
    "Not",
    "Equality",
    "Substring",
    "Presence",
    "GreaterOrEqual",
    "LessOrEqual",
    "ExtensibleMatch",
    "AlwaysFalse",
    "build_object_class_filter",
]


@dataclass(frozen=True)
class And:
    filters: Tuple["LdapFilter", ...]

    def __str__(self) -> str:
        return f"(&{''.join(str(f) for f in self.filters)})"


@dataclass(frozen=True)
class Or:
    filters: Tuple["LdapFilter", ...]

    def __str__(self) -> str:
        return f"(|{''.join(str(f) for f in self.filters)})"


@dataclass(frozen=True)
class Not:
    filter: "LdapFilter"

    def __str__(self) -> str:
        return f"(!{self.filter})"


@dataclass(frozen=True)
class Equality:
    attribute: str
    value: str

    def __str__(self) -> str:
        return f"({self.attribute}={escape_filter_chars(self.value)})"


@dataclass(frozen=True)
class Substring:
    """``initial*any*...*final``; at least one component must be set."""

    attribute: str
    initial: str | None = None
    any: Tuple[str, ...] = ()
    final: str | None = None

    def __str__(self) -> str:
        middle = "*".join(escape_filter_chars(v) for v in self.any)
        pattern = escape_filter_chars(self.initial or "") + "*"
        if middle:
            pattern += middle + "*"
        pattern += escape_filter_chars(self.final or "")
        return f"({self.attribute}={pattern})"


@dataclass(frozen=True)
class Presence:
    attribute: str

    def __str__(self) -> str:
        return f"({self.attribute}=*)"


@dataclass(frozen=True)
class GreaterOrEqual:
    attribute: str
    value: str

    def __str__(self) -> str:
        return f"({self.attribute}>={escape_filter_chars(self.value)})"


@dataclass(frozen=True)
class LessOrEqual:
    attribute: str
    value: str

    def __str__(self) -> str:
        return f"({self.attribute}<={escape_filter_chars(self.value)})"


@dataclass(frozen=True)
class ExtensibleMatch:
    attribute: str
    matching_rule: str
    value: str

    def __str__(self) -> str:
        return f"({self.attribute}:{self.matching_rule}:={escape_filter_chars(self.value)})"


@dataclass(frozen=True)
class AlwaysFalse:
    """Matches nothing: ``(!(objectClass=*))``."""

    def __str__(self) -> str:
        return "(!(objectClass=*))"


LdapFilter = Union[
    And, Or, Not, Equality, Substring, Presence, GreaterOrEqual, LessOrEqual, ExtensibleMatch, AlwaysFalse
]


def build_object_class_filter(object_class: str, extra: LdapFilter | None = None) -> LdapFilter:
    """Restrict *extra* to entries of *object_class*."""
    kind = Equality("objectClass", object_class)
    if extra is None:
        return kind
    return And((kind, extra))
