"""SCIM filter → LDAP filter translation.

The parsed SCIM tree is mapped 1:1 onto the LDAP tree: ``and`` / ``or`` /
``not`` combine independently translated children and every comparison is
translated on its own through the attribute mapping tables.

Leaf policy
~~~~~~~~~~~
* ``eq`` → equality, ``ne`` → ``(!(equality))``, ``co`` / ``sw`` / ``ew`` →
  substring, ``pr`` → presence, ``gt`` / ``ge`` → ``>=`` and ``lt`` / ``le``
  → ``<=`` (LDAP has no strict ordering match, the bound stays inclusive).
* ``emails.value`` is answered from the ``mail`` mirror, type-qualified
  phone numbers and work addresses from their mirror attributes.
* Any other path into a JSON-per-value attribute becomes a JSON object
  filter extensible match,
  ``(scimEmails:jsonObjectFilterExtensibleMatch:={"filterType":...})``.
* Ids used against ``members`` / ``groups`` / ``manager`` are resolved to
  DNs; an id that cannot be resolved is kept verbatim with a warning.
* Node types the translator does not know match nothing:
  ``(!(objectClass=*))``.
"""
from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, List

from .attribute_mapper import (
    ADDRESS_ATTRIBUTES,
    ENTERPRISE_ATTRIBUTES,
    GROUP_SIMPLE_ATTRIBUTES,
    MAIL_ATTR,
    PHONE_TYPE_ATTRIBUTES,
    REFERENCE_ATTRIBUTES,
    USER_JSON_ATTRIBUTES,
    USER_SIMPLE_ATTRIBUTES,
    format_generalized_time,
)
from .core.constants import (
    CREATE_TIMESTAMP_ATTR,
    ENTERPRISE_USER_SCHEMA,
    GROUP,
    JSON_MATCHING_RULE,
    MEMBER_OF_ATTR,
    MODIFY_TIMESTAMP_ATTR,
    USER,
)
from .core.errors import InvalidFilterError
from .ldap_filter import (
    AlwaysFalse,
    And,
    Equality,
    ExtensibleMatch,
    GreaterOrEqual,
    LdapFilter,
    LessOrEqual,
    Not,
    Or,
    Presence,
    Substring,
)
from .models import parse_datetime
from . import scim_filter as sf

logger = logging.getLogger("scim_ldap_gateway.filter")

__all__ = ["FilterTranslator", "json_filter_object"]

_ATTRIBUTE_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9-]*$")
_TIMESTAMP_ATTRIBUTES = frozenset(a.lower() for a in (CREATE_TIMESTAMP_ATTR, MODIFY_TIMESTAMP_ATTR))


def json_filter_object(field: Any, op: str, value: Any = None) -> Dict[str, Any]:
    """JSON object filter component for a single comparison on *field*."""
    if op == "eq":
        return {"filterType": "equals", "field": field, "value": value}
    if op == "ne":
        return {"filterType": "negate", "negateFilter": json_filter_object(field, "eq", value)}
    if op == "co":
        return {"filterType": "substring", "field": field, "contains": value}
    if op == "sw":
        return {"filterType": "substring", "field": field, "startsWith": value}
    if op == "ew":
        return {"filterType": "substring", "field": field, "endsWith": value}
    if op == "pr":
        return {"filterType": "containsField", "field": field}
    if op in ("gt", "ge"):
        return {"filterType": "greaterThan", "field": field, "value": value, "allowEquals": op == "ge"}
    if op in ("lt", "le"):
        return {"filterType": "lessThan", "field": field, "value": value, "allowEquals": op == "le"}
    raise InvalidFilterError(f"Unsupported operator {op!r}")


def _ldap_leaf(attribute: str, op: str, value: str | None) -> LdapFilter:
    if op == "pr":
        return Presence(attribute)
    if value is None:
        # "eq null" means the attribute is absent
        return Not(Presence(attribute)) if op == "eq" else Presence(attribute)
    if op == "eq":
        return Equality(attribute, value)
    if op == "ne":
        return Not(Equality(attribute, value))
    if op in ("co", "sw", "ew") and value == "":
        return Presence(attribute)
    if op == "co":
        return Substring(attribute, any=(value,))
    if op == "sw":
        return Substring(attribute, initial=value)
    if op == "ew":
        return Substring(attribute, final=value)
    if op in ("gt", "ge"):
        return GreaterOrEqual(attribute, value)
    if op in ("lt", "le"):
        return LessOrEqual(attribute, value)
    raise InvalidFilterError(f"Unsupported operator {op!r}")


def _type_qualifier(node: Any) -> str | None:
    """``"work"`` for a ``type eq "work"`` value filter, else ``None``."""
    if (
        isinstance(node, sf.Comparison)
        and node.op == "eq"
        and node.path.attribute.lower() == "type"
        and node.path.sub_attribute is None
        and isinstance(node.value, str)
    ):
        return node.value.lower()
    return None


class FilterTranslator:
    """Translate SCIM filters for one resource kind.

    *resolve_id* maps ``(id, kind)`` to a DN; usually
    :meth:`IdentityResolver.resolve_id_to_dn`.  Without it membership ids are
    used verbatim.
    """

    def __init__(
        self,
        kind: str = USER,
        resolve_id: Callable[[str, str | None], str | None] | None = None,
    ) -> None:
        if kind not in (USER, GROUP):
            raise ValueError(f"Unknown resource kind {kind!r}")
        self.kind = kind
        self.resolve_id = resolve_id
        self.simple_attributes = USER_SIMPLE_ATTRIBUTES if kind == USER else GROUP_SIMPLE_ATTRIBUTES
        self.json_attributes = USER_JSON_ATTRIBUTES if kind == USER else {}

    # Entry points ------------------------------------------------------

    def translate(self, text: str | None) -> LdapFilter | None:
        """Translate filter *text*; ``None`` for an empty filter."""
        if text is None or not text.strip():
            return None
        node = sf.parse_filter(text)
        result = self.translate_node(node)
        logger.debug(f"Translated SCIM filter {text!r} to {result}")
        return result

    def translate_node(self, node: Any) -> LdapFilter:
        if isinstance(node, sf.And):
            return And((self.translate_node(node.left), self.translate_node(node.right)))
        if isinstance(node, sf.Or):
            return Or((self.translate_node(node.left), self.translate_node(node.right)))
        if isinstance(node, sf.Not):
            return Not(self.translate_node(node.filter))
        if isinstance(node, sf.Comparison):
            return self._comparison(node)
        if isinstance(node, sf.ValueFilter):
            return self._value_filter(node)
        logger.warning(f"Unsupported filter node {type(node).__name__}; matching nothing")
        return AlwaysFalse()

    # Leaves ------------------------------------------------------------

    def _lookup_simple(self, path: sf.AttributePath) -> str | None:
        key = path.dotted
        if path.schema and path.schema.lower() == ENTERPRISE_USER_SCHEMA.lower():
            return ENTERPRISE_ATTRIBUTES.get(key) if self.kind == USER else None
        found = self.simple_attributes.get(key)
        if found is None and self.kind == USER:
            found = ENTERPRISE_ATTRIBUTES.get(key)
        return found

    def sort_attribute(self, sort_by: str | None) -> str | None:
        """Directory attribute to sort on for a ``sortBy`` path; ``None`` if unsortable."""
        if not sort_by or not sort_by.strip():
            return None
        path = sf.parse_path(sort_by)
        if path.filter is not None:
            return None
        found = self._lookup_simple(path)
        if found is None and self.kind == USER and path.dotted in ("emails", "emails.value"):
            found = MAIL_ATTR
        if found is None or found.lower() in REFERENCE_ATTRIBUTES:
            return None
        return found

    def _comparison(self, node: sf.Comparison) -> LdapFilter:
        path = node.path
        attribute = path.attribute.lower()

        json_attr = None if path.schema == ENTERPRISE_USER_SCHEMA else self.json_attributes.get(attribute)
        if json_attr is not None:
            return self._json_comparison(json_attr, node)

        if path.filter is not None:
            ldap_attr = self._lookup_simple(sf.AttributePath(path.attribute, "value", path.schema))
            if ldap_attr is not None and ldap_attr.lower() in REFERENCE_ATTRIBUTES:
                scoped = self._reference_filter(path.filter, ldap_attr)
                return And((scoped, self._reference_leaf(ldap_attr, node.op, node.value)))
            raise InvalidFilterError(f"Attribute {path.attribute!r} does not support value filters")

        ldap_attr = self._lookup_simple(path)
        if ldap_attr is None:
            ldap_attr = self._unmapped(path)
        if ldap_attr.lower() in REFERENCE_ATTRIBUTES:
            return self._reference_leaf(ldap_attr, node.op, node.value)
        return _ldap_leaf(ldap_attr, node.op, self._convert_value(ldap_attr, node.value))

    def _unmapped(self, path: sf.AttributePath) -> str:
        name = path.attribute if not path.sub_attribute else f"{path.attribute}.{path.sub_attribute}"
        if not _ATTRIBUTE_NAME.match(name):
            raise InvalidFilterError(f"Unknown attribute {str(path)!r}")
        logger.warning(f"No explicit mapping for SCIM attribute {name!r}, using it as-is")
        return name

    def _convert_value(self, ldap_attr: str, value: Any) -> str | None:
        if value is None:
            return None
        lowered = ldap_attr.lower()
        if lowered == "scimactive":
            if isinstance(value, bool):
                return "true" if value else "false"
            if isinstance(value, str) and value.strip().lower() in ("true", "false"):
                return value.strip().lower()
            raise InvalidFilterError(f"active must be compared with a boolean, got {value!r}")
        if lowered in _TIMESTAMP_ATTRIBUTES:
            try:
                parsed = parse_datetime(value) if not isinstance(value, datetime) else value
            except (TypeError, ValueError):
                raise InvalidFilterError(f"Invalid timestamp {value!r}") from None
            return format_generalized_time(parsed)
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    # References --------------------------------------------------------

    def _reference_kind(self, ldap_attr: str) -> str:
        if ldap_attr.lower() == MEMBER_OF_ATTR.lower():
            return GROUP
        return USER

    def _resolve(self, resource_id: str, kind: str) -> str:
        if self.resolve_id is None:
            return resource_id
        dn = self.resolve_id(resource_id, kind)
        if dn is None:
            logger.warning(f"Could not resolve {kind} id {resource_id!r} to a DN; using the raw value")
            return resource_id
        return dn

    def _reference_leaf(self, ldap_attr: str, op: str, value: Any) -> LdapFilter:
        if op == "pr" or value is None:
            return _ldap_leaf(ldap_attr, op, None)
        if op not in ("eq", "ne"):
            return _ldap_leaf(ldap_attr, op, str(value))
        dn = self._resolve(str(value), self._reference_kind(ldap_attr))
        return _ldap_leaf(ldap_attr, op, dn)

    def _reference_filter(self, node: Any, ldap_attr: str) -> LdapFilter:
        """Translate the ``[...]`` part of ``members[...]`` / ``groups[...]``."""
        if isinstance(node, sf.And):
            return And((self._reference_filter(node.left, ldap_attr), self._reference_filter(node.right, ldap_attr)))
        if isinstance(node, sf.Or):
            return Or((self._reference_filter(node.left, ldap_attr), self._reference_filter(node.right, ldap_attr)))
        if isinstance(node, sf.Not):
            return Not(self._reference_filter(node.filter, ldap_attr))
        if isinstance(node, sf.Comparison) and node.path.attribute.lower() == "value" and node.path.sub_attribute is None:
            return self._reference_leaf(ldap_attr, node.op, node.value)
        logger.warning(f"Cannot express {node} against {ldap_attr}; matching nothing")
        return AlwaysFalse()

    # JSON-per-value attributes -----------------------------------------

    def _json_comparison(self, json_attr: str, node: sf.Comparison) -> LdapFilter:
        path = node.path
        attribute = path.attribute.lower()
        sub = (path.sub_attribute or "value").lower()
        qualifier = _type_qualifier(path.filter) if path.filter is not None else None

        # mirror fast paths
        if attribute == "emails" and path.filter is None and sub == "value":
            return _ldap_leaf(MAIL_ATTR, node.op, self._convert_value(MAIL_ATTR, node.value))
        if attribute == "phonenumbers" and sub == "value" and qualifier in PHONE_TYPE_ATTRIBUTES:
            mirror = PHONE_TYPE_ATTRIBUTES[qualifier]
            return _ldap_leaf(mirror, node.op, self._convert_value(mirror, node.value))
        if attribute == "addresses" and sub in ADDRESS_ATTRIBUTES and (path.filter is None or qualifier == "work"):
            mirror = ADDRESS_ATTRIBUTES[sub]
            return _ldap_leaf(mirror, node.op, self._convert_value(mirror, node.value))

        if path.sub_attribute is None and node.op == "pr" and path.filter is None:
            return Presence(json_attr)

        leaf = json_filter_object(path.sub_attribute or "value", node.op, node.value)
        if path.filter is not None:
            scoped = self._json_node(path.filter)
            if scoped is None:
                return AlwaysFalse()
            leaf = {"filterType": "and", "andFilters": [scoped, leaf]}
        return self._json_match(json_attr, leaf)

    def _value_filter(self, node: sf.ValueFilter) -> LdapFilter:
        attribute = node.path.attribute.lower()
        json_attr = self.json_attributes.get(attribute)
        if json_attr is not None:
            inner = self._json_node(node.filter)
            return AlwaysFalse() if inner is None else self._json_match(json_attr, inner)
        ldap_attr = self._lookup_simple(sf.AttributePath(node.path.attribute, "value", node.path.schema))
        if ldap_attr is not None and ldap_attr.lower() in REFERENCE_ATTRIBUTES:
            return self._reference_filter(node.filter, ldap_attr)
        raise InvalidFilterError(f"Attribute {node.path.attribute!r} does not support value filters")

    def _json_node(self, node: Any) -> Dict[str, Any] | None:
        """Translate a value filter body into a JSON object filter (``None`` if inexpressible)."""
        if isinstance(node, (sf.And, sf.Or)):
            left, right = self._json_node(node.left), self._json_node(node.right)
            if left is None or right is None:
                return None
            if isinstance(node, sf.And):
                return {"filterType": "and", "andFilters": [left, right]}
            return {"filterType": "or", "orFilters": [left, right]}
        if isinstance(node, sf.Not):
            inner = self._json_node(node.filter)
            return None if inner is None else {"filterType": "negate", "negateFilter": inner}
        if isinstance(node, sf.Comparison) and node.path.filter is None:
            field: str | List[str] = node.path.attribute
            if node.path.sub_attribute:
                field = [node.path.attribute, node.path.sub_attribute]
            return json_filter_object(field, node.op, node.value)
        logger.warning(f"Unsupported JSON value filter {node}; matching nothing")
        return None

    @staticmethod
    def _json_match(json_attr: str, json_filter: Dict[str, Any]) -> ExtensibleMatch:
        text = json.dumps(json_filter, separators=(",", ":"), ensure_ascii=False)
        return ExtensibleMatch(json_attr, JSON_MATCHING_RULE, text)
