"""SCIM PATCH operation handling (RFC 7644 §3.5.2).

Identity providers use PATCH to make incremental changes instead of
replacing the entire resource with PUT, e.g.:

  - deactivating a user: ``replace`` ``active`` with ``false``
  - adding group members: ``add`` to ``members``
  - removing group members: ``remove`` ``members[value eq "..."]``

Operation values arrive loosely typed.  They are decoded once, when the
operation is built, into one of :class:`StructValue`, :class:`StructListValue`
or :class:`ScalarValue`.

:func:`apply_operations` applies operations to the SCIM JSON form of a
resource in memory and reports which top-level attributes were touched.  It
does NOT touch the directory; group membership operations are turned into
incremental ``member`` modifications by the repository instead.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Set, Tuple, Union

from .core.constants import ENTERPRISE_USER_SCHEMA, GROUP_SCHEMA, USER_SCHEMA
from .core.errors import InvalidFilterError, InvalidPatchError
from .scim_filter import And, AttributePath, Comparison, FilterNode, Or, matches, parse_path

__all__ = [
    "PatchOp",
    "StructValue",
    "StructListValue",
    "ScalarValue",
    "PatchValue",
    "PatchOperation",
    "decode_value",
    "apply_operations",
    "MULTI_VALUED_ATTRIBUTES",
    "READ_ONLY_ATTRIBUTES",
    "member_ids_from_filter",
]

PATCH_OP_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:PatchOp"

MULTI_VALUED_ATTRIBUTES = frozenset(
    {
        "emails",
        "phonenumbers",
        "ims",
        "photos",
        "addresses",
        "groups",
        "entitlements",
        "roles",
        "x509certificates",
        "members",
    }
)
READ_ONLY_ATTRIBUTES = frozenset({"id", "meta", "groups", "schemas"})
_CORE_SCHEMAS = frozenset({USER_SCHEMA.lower(), GROUP_SCHEMA.lower()})


class PatchOp(str, Enum):
    ADD = "add"
    REMOVE = "remove"
    REPLACE = "replace"


# Values ----------------------------------------------------------------------


@dataclass(frozen=True)
class StructValue:
    """A single JSON object."""

    value: Dict[str, Any]


@dataclass(frozen=True)
class StructListValue:
    """A list of JSON objects (multi-valued complex attribute)."""

    items: Tuple[Dict[str, Any], ...]


@dataclass(frozen=True)
class ScalarValue:
    """A string, number, boolean or a list of those."""

    value: Any


PatchValue = Union[StructValue, StructListValue, ScalarValue]


def decode_value(raw: Any) -> PatchValue | None:
    if raw is None:
        return None
    if isinstance(raw, dict):
        return StructValue(dict(raw))
    if isinstance(raw, list) and raw and all(isinstance(item, dict) for item in raw):
        return StructListValue(tuple(dict(item) for item in raw))
    if isinstance(raw, list) and not raw:
        return StructListValue(())
    return ScalarValue(raw)


def _plain(value: PatchValue | None) -> Any:
    if isinstance(value, StructValue):
        return dict(value.value)
    if isinstance(value, StructListValue):
        return [dict(item) for item in value.items]
    if isinstance(value, ScalarValue):
        return value.value
    return None


# Operations ------------------------------------------------------------------


@dataclass(frozen=True)
class PatchOperation:
    op: PatchOp
    path: AttributePath | None = None
    value: PatchValue | None = None

    @classmethod
    def create(cls, op: str, path: str | None = None, value: Any = None) -> "PatchOperation":
        try:
            patch_op = PatchOp(str(op).strip().lower())
        except ValueError:
            raise InvalidPatchError(f"Unsupported patch operation {op!r}", scim_type="invalidSyntax") from None
        parsed: AttributePath | None = None
        if path is not None and str(path).strip():
            try:
                parsed = parse_path(str(path))
            except InvalidFilterError as exc:
                raise InvalidPatchError(f"Invalid patch path {path!r}: {exc.message}") from exc
        decoded = decode_value(value)
        if patch_op is PatchOp.REMOVE and parsed is None:
            raise InvalidPatchError("remove requires a path", scim_type="noTarget")
        if patch_op is not PatchOp.REMOVE and decoded is None:
            raise InvalidPatchError(f"{patch_op.value} requires a value", scim_type="invalidValue")
        if parsed is None and not isinstance(decoded, StructValue) and patch_op is not PatchOp.REMOVE:
            raise InvalidPatchError(f"{patch_op.value} without a path requires an object value", scim_type="invalidValue")
        return cls(patch_op, parsed, decoded)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PatchOperation":
        if not isinstance(data, Mapping):
            raise InvalidPatchError("Patch operation must be a JSON object", scim_type="invalidSyntax")
        lowered = {str(k).lower(): v for k, v in data.items()}
        if "op" not in lowered:
            raise InvalidPatchError("Patch operation is missing 'op'", scim_type="invalidSyntax")
        return cls.create(lowered["op"], lowered.get("path"), lowered.get("value"))

    @classmethod
    def list_from_request(cls, body: Mapping[str, Any]) -> List["PatchOperation"]:
        """Decode a ``PatchOp`` message body (``{"schemas": [...], "Operations": [...]}``)."""
        lowered = {str(k).lower(): v for k, v in body.items()}
        operations = lowered.get("operations")
        if not isinstance(operations, list) or not operations:
            raise InvalidPatchError("Patch request has no Operations", scim_type="invalidSyntax")
        return [cls.from_dict(item) for item in operations]

    @property
    def target(self) -> str | None:
        """Lower-cased top-level attribute targeted by the path (schema URN for extension roots)."""
        if self.path is None:
            return None
        if self.path.schema and self.path.schema.lower() == ENTERPRISE_USER_SCHEMA.lower():
            return ENTERPRISE_USER_SCHEMA.lower()
        return self.path.attribute.lower()


def member_ids_from_filter(node: FilterNode | None) -> List[str] | None:
    """Ids from ``value eq "<id>"`` (optionally OR-ed); ``None`` for any other shape."""
    if node is None:
        return None
    if isinstance(node, Or):
        left, right = member_ids_from_filter(node.left), member_ids_from_filter(node.right)
        if left is None or right is None:
            return None
        return left + right
    if (
        isinstance(node, Comparison)
        and node.op == "eq"
        and node.path.attribute.lower() == "value"
        and node.path.sub_attribute is None
        and node.path.filter is None
        and node.value is not None
    ):
        return [str(node.value)]
    return None


# In-memory application -------------------------------------------------------


def _find_key(container: Mapping[str, Any], name: str) -> str | None:
    lowered = name.lower()
    for key in container:
        if str(key).lower() == lowered:
            return key
    return None


def _set(container: Dict[str, Any], name: str, value: Any) -> None:
    key = _find_key(container, name) or name
    container[key] = value


def _get(container: Mapping[str, Any], name: str) -> Any:
    key = _find_key(container, name)
    return container.get(key) if key is not None else None


def _delete(container: Dict[str, Any], name: str) -> None:
    key = _find_key(container, name)
    if key is not None:
        del container[key]


def _merge(target: Dict[str, Any], updates: Mapping[str, Any]) -> None:
    for key, value in updates.items():
        _set(target, key, value)


def _single_primary(items: List[Dict[str, Any]], preferred: Iterable[Dict[str, Any]] = ()) -> None:
    """Keep ``primary: true`` on at most one element, preferring the most recently written ones."""
    winners = [item for item in preferred if _get(item, "primary") is True]
    winner = winners[-1] if winners else next((i for i in items if _get(i, "primary") is True), None)
    if winner is None:
        return
    for item in items:
        if item is not winner and _get(item, "primary") is True:
            _set(item, "primary", False)


def _equality_template(node: FilterNode | None) -> Dict[str, Any] | None:
    """Build ``{"type": "work"}`` from ``type eq "work"`` (AND-ed equalities only)."""
    if isinstance(node, And):
        left, right = _equality_template(node.left), _equality_template(node.right)
        if left is None or right is None:
            return None
        return {**left, **right}
    if isinstance(node, Comparison) and node.op == "eq" and node.path.sub_attribute is None and node.path.filter is None:
        return {node.path.attribute: node.value}
    return None


def _container_for(resource: Dict[str, Any], path: AttributePath, create: bool) -> Dict[str, Any] | None:
    if path.schema and path.schema.lower() == ENTERPRISE_USER_SCHEMA.lower():
        container = _get(resource, ENTERPRISE_USER_SCHEMA)
        if container is None:
            if not create:
                return None
            container = {}
            _set(resource, ENTERPRISE_USER_SCHEMA, container)
        return container
    return resource


def _apply_add(container: Dict[str, Any], attribute: str, sub: str | None, value: Any) -> None:
    multi = attribute.lower() in MULTI_VALUED_ATTRIBUTES
    current = _get(container, attribute)
    if sub:
        if multi:
            for item in current or ():
                _set(item, sub, value)
            return
        target = current if isinstance(current, dict) else {}
        _set(target, sub, value)
        _set(container, attribute, target)
        return
    if multi:
        items = list(current or [])
        new_items = value if isinstance(value, list) else [value]
        added = []
        for item in new_items:
            if item not in items:
                items.append(item)
                added.append(item)
        if all(isinstance(i, dict) for i in items):
            _single_primary(items, added)
        _set(container, attribute, items)
        return
    if isinstance(value, dict) and isinstance(current, dict):
        _merge(current, value)
        return
    _set(container, attribute, value)


def _apply_replace(container: Dict[str, Any], attribute: str, sub: str | None, value: Any) -> None:
    multi = attribute.lower() in MULTI_VALUED_ATTRIBUTES
    current = _get(container, attribute)
    if sub:
        _apply_add(container, attribute, sub, value)
        return
    if multi:
        items = value if isinstance(value, list) else [value]
        if all(isinstance(i, dict) for i in items):
            _single_primary(items)
        _set(container, attribute, items)
        return
    if isinstance(value, dict) and isinstance(current, dict):
        _merge(current, value)
        return
    _set(container, attribute, value)


def _apply_remove(container: Dict[str, Any], attribute: str, sub: str | None, value: Any) -> None:
    current = _get(container, attribute)
    if sub:
        if isinstance(current, list):
            for item in current:
                if isinstance(item, dict):
                    _delete(item, sub)
        elif isinstance(current, dict):
            _delete(current, sub)
        return
    if isinstance(current, list) and value is not None:
        doomed = value if isinstance(value, list) else [value]
        remaining = [item for item in current if item not in doomed]
        if remaining:
            _set(container, attribute, remaining)
        else:
            _delete(container, attribute)
        return
    _delete(container, attribute)


def _apply_filtered(container: Dict[str, Any], op: PatchOperation, value: Any) -> None:
    path = op.path
    assert path is not None and path.filter is not None
    current = _get(container, path.attribute)
    items: List[Any] = list(current) if isinstance(current, list) else []
    selected = [item for item in items if isinstance(item, dict) and matches(path.filter, item)]

    if op.op is PatchOp.REMOVE:
        if path.sub_attribute:
            for item in selected:
                _delete(item, path.sub_attribute)
        else:
            items = [item for item in items if not any(item is s for s in selected)]
            if items:
                _set(container, path.attribute, items)
            else:
                _delete(container, path.attribute)
        return

    if not selected:
        template = _equality_template(path.filter)
        if template is None:
            raise InvalidPatchError(f"No value matched {path}", scim_type="noTarget")
        element = dict(template)
        if path.sub_attribute:
            element[path.sub_attribute] = value
        elif isinstance(value, dict):
            _merge(element, value)
        else:
            raise InvalidPatchError(f"Value for {path} must be an object", scim_type="invalidValue")
        items.append(element)
        selected = [element]
    else:
        for item in selected:
            if path.sub_attribute:
                _set(item, path.sub_attribute, value)
            elif isinstance(value, dict):
                if op.op is PatchOp.REPLACE:
                    item.clear()
                _merge(item, value)
            else:
                raise InvalidPatchError(f"Value for {path} must be an object", scim_type="invalidValue")
    if all(isinstance(i, dict) for i in items):
        _single_primary(items, selected)
    _set(container, path.attribute, items)


def _apply_one(resource: Dict[str, Any], op: PatchOperation, path: AttributePath, value: Any) -> str:
    name = path.attribute.lower()
    is_extension_root = bool(path.schema) and not path.attribute
    is_enterprise = bool(path.schema) and path.schema.lower() == ENTERPRISE_USER_SCHEMA.lower()
    if name in READ_ONLY_ATTRIBUTES and not is_enterprise:
        raise InvalidPatchError(f"Attribute {path.attribute!r} is read-only", scim_type="mutability")
    if path.schema and not is_enterprise and (is_extension_root or path.schema.lower() not in _CORE_SCHEMAS):
        raise InvalidPatchError(f"Unknown schema {path.schema!r}", scim_type="invalidPath")

    if is_extension_root:
        # the whole enterprise extension object
        if op.op is PatchOp.REMOVE:
            _delete(resource, ENTERPRISE_USER_SCHEMA)
        elif isinstance(value, dict):
            container = _container_for(resource, path, create=True)
            _merge(container, value)
        else:
            raise InvalidPatchError("Extension value must be an object", scim_type="invalidValue")
        return ENTERPRISE_USER_SCHEMA.lower()

    container = _container_for(resource, path, create=op.op is not PatchOp.REMOVE)
    touched = ENTERPRISE_USER_SCHEMA.lower() if container is not resource else name
    if container is None:
        return touched
    if path.filter is not None:
        if name not in MULTI_VALUED_ATTRIBUTES:
            raise InvalidPatchError(f"Attribute {path.attribute!r} is not multi-valued", scim_type="invalidPath")
        _apply_filtered(container, op, value)
    elif op.op is PatchOp.ADD:
        _apply_add(container, path.attribute, path.sub_attribute, value)
    elif op.op is PatchOp.REPLACE:
        _apply_replace(container, path.attribute, path.sub_attribute, value)
    else:
        _apply_remove(container, path.attribute, path.sub_attribute, value)
    return touched


def apply_operations(resource: Dict[str, Any], operations: Iterable[PatchOperation]) -> Set[str]:
    """Apply *operations* to *resource* (SCIM JSON, modified in place).

    Returns the lower-cased top-level attribute names that were touched; the
    enterprise extension is reported by its schema URN.
    """
    touched: Set[str] = set()
    for op in operations:
        value = _plain(op.value)
        if op.path is None:
            for key, item in (value or {}).items():
                if str(key).lower() in READ_ONLY_ATTRIBUTES:
                    continue
                try:
                    key_path = parse_path(str(key))
                except InvalidFilterError as exc:
                    raise InvalidPatchError(f"Invalid attribute {key!r}: {exc.message}") from exc
                touched.add(_apply_one(resource, op, key_path, item))
            continue
        touched.add(_apply_one(resource, op, op.path, value))
    return touched
