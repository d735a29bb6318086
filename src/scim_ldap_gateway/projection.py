"""Attribute selection (``attributes`` / ``excludedAttributes``) and pagination.

Each resource kind has a descriptor table built once from the model key
tables: lower-cased SCIM path -> canonical key path in the JSON form, e.g.
``"name.givenname" -> ("name", "givenName")``.  Selection works on the output
of ``to_dict()``; requested paths that are not in the table are ignored.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple, TypeVar

from .core.constants import ENTERPRISE_USER_SCHEMA, GROUP, GROUP_SCHEMA, USER, USER_SCHEMA
from .models import (
    ADDRESS_KEYS,
    ENTERPRISE_KEYS,
    GROUP_SIMPLE_KEYS,
    MANAGER_KEYS,
    META_KEYS,
    MULTI_VALUED_KEYS,
    NAME_KEYS,
    REFERENCE_KEYS,
    USER_MULTI_VALUED,
    USER_SIMPLE_KEYS,
    Address,
    Reference,
)

logger = logging.getLogger("scim_ldap_gateway.projection")

T = TypeVar("T")
FieldPath = Tuple[str, ...]

ALWAYS_RETURNED = ("schemas", "id", "meta")
NEVER_RETURNED = ("password",)


def _sub_keys(element_type: type) -> Iterable[str]:
    if element_type is Address:
        return (key for _, key in ADDRESS_KEYS)
    if element_type is Reference:
        return (key for _, key in REFERENCE_KEYS)
    return (key for _, key in MULTI_VALUED_KEYS)


def _add(table: Dict[str, FieldPath], root: FieldPath, keys: Iterable[str]) -> None:
    table[".".join(root).lower()] = root
    for key in keys:
        table[".".join(root + (key,)).lower()] = root + (key,)


def _build_user_fields() -> Dict[str, FieldPath]:
    table: Dict[str, FieldPath] = {}
    for _, key in USER_SIMPLE_KEYS:
        table[key.lower()] = (key,)
    _add(table, ("name",), (key for _, key in NAME_KEYS))
    for _, key, element_type in USER_MULTI_VALUED:
        _add(table, (key,), _sub_keys(element_type))
    _add(table, ("meta",), (key for _, key in META_KEYS))
    table["schemas"] = ("schemas",)
    # enterprise extension attributes are addressed by their schema URN
    urn = ENTERPRISE_USER_SCHEMA
    table[urn.lower()] = (urn,)
    for _, key in ENTERPRISE_KEYS:
        table[f"{urn}:{key}".lower()] = (urn, key)
    for _, key in MANAGER_KEYS:
        table[f"{urn}:manager.{key}".lower()] = (urn, "manager", key)
    return table


def _build_group_fields() -> Dict[str, FieldPath]:
    table: Dict[str, FieldPath] = {}
    for _, key in GROUP_SIMPLE_KEYS:
        table[key.lower()] = (key,)
    _add(table, ("members",), (key for _, key in REFERENCE_KEYS))
    _add(table, ("meta",), (key for _, key in META_KEYS))
    table["schemas"] = ("schemas",)
    return table


FIELD_TABLES: Dict[str, Dict[str, FieldPath]] = {
    USER: _build_user_fields(),
    GROUP: _build_group_fields(),
}
_CORE_SCHEMAS = {USER: USER_SCHEMA.lower(), GROUP: GROUP_SCHEMA.lower()}


def resolve_field(kind: str, path: str) -> FieldPath | None:
    """Canonical key path for a SCIM attribute path, ``None`` if unknown."""
    lowered = path.strip().lower()
    core = _CORE_SCHEMAS[kind] + ":"
    if lowered.startswith(core):
        lowered = lowered[len(core) :]
    return FIELD_TABLES[kind].get(lowered)


def _resolve_all(kind: str, paths: Sequence[str] | None) -> List[FieldPath]:
    resolved = []
    for path in paths or ():
        field = resolve_field(kind, path)
        if field is None:
            logger.debug(f"Ignoring unknown {kind} attribute {path!r} in attribute selection")
            continue
        resolved.append(field)
    return resolved


# Selection -------------------------------------------------------------------


def _copy_field(source: Mapping[str, Any], target: Dict[str, Any], field: FieldPath) -> None:
    head, rest = field[0], field[1:]
    if head not in source:
        return
    value = source[head]
    if not rest:
        target[head] = value
        return
    if isinstance(value, list):
        existing = target.setdefault(head, [{} for _ in value])
        for src_item, dst_item in zip(value, existing):
            if isinstance(src_item, Mapping):
                _copy_field(src_item, dst_item, rest)
        return
    if isinstance(value, Mapping):
        _copy_field(value, target.setdefault(head, {}), rest)


def _drop_field(target: Dict[str, Any], field: FieldPath) -> None:
    head, rest = field[0], field[1:]
    if head not in target:
        return
    if not rest:
        del target[head]
        return
    value = target[head]
    items = value if isinstance(value, list) else [value]
    for item in items:
        if isinstance(item, dict):
            _drop_field(item, rest)


def _prune(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _prune(v) for k, v in value.items() if v not in ({}, [])}
    if isinstance(value, list):
        return [_prune(v) for v in value if v != {}]
    return value


def project(
    kind: str,
    resource: Mapping[str, Any],
    attributes: Sequence[str] | None = None,
    excluded_attributes: Sequence[str] | None = None,
) -> Dict[str, Any]:
    """Apply SCIM attribute selection to the JSON form of a resource.

    ``attributes`` wins when both lists are given (RFC 7644 §3.4.2.5).
    ``schemas``, ``id`` and ``meta`` are always returned and ``password``
    never is.
    """
    included = _resolve_all(kind, attributes)
    if included:
        out: Dict[str, Any] = {}
        for key in ALWAYS_RETURNED:
            if key in resource:
                out[key] = resource[key]
        for field in included:
            _copy_field(resource, out, field)
        out = _prune(out)
    else:
        out = {key: value for key, value in resource.items()}
        for field in _resolve_all(kind, excluded_attributes):
            if field[0] in ALWAYS_RETURNED:
                continue
            if field[0] in out:
                out[field[0]] = _deep_copy(out[field[0]])
            _drop_field(out, field)
        out = _prune(out)
    for key in NEVER_RETURNED:
        out.pop(key, None)
    return out


def _deep_copy(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _deep_copy(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_deep_copy(v) for v in value]
    return value


def ldap_attributes_for(kind: str, attributes: Sequence[str] | None, owners: Mapping[str, Sequence[str]]) -> List[str] | None:
    """Directory attributes needed to answer an ``attributes=`` request.

    Returns ``None`` (fetch everything) when no selection is requested or a
    requested attribute has no known owner.
    """
    included = _resolve_all(kind, attributes)
    if not included:
        return None
    wanted: List[str] = []
    for field in included:
        top = field[0].lower()
        if top in ("schemas", "id", "meta"):
            continue
        ldap_attrs = owners.get(top)
        if ldap_attrs is None:
            return None
        for attr in ldap_attrs:
            if attr not in wanted:
                wanted.append(attr)
    return wanted


# Pagination ------------------------------------------------------------------


def paginate(items: Sequence[T], start_index: int | None = 1, count: int | None = None) -> List[T]:
    """1-based SCIM pagination.

    Returns ``min(count, max(0, total - start + 1))`` items; a start index
    below 1 is treated as 1, a negative count as 0 and ``None`` as "all".
    """
    start = 1 if start_index is None or start_index < 1 else start_index
    window = list(items[start - 1 :])
    if count is None:
        return window
    return window[: max(0, count)]
