"""Shared fixtures: an in-memory directory and fake ldap3 connections."""
import json
import uuid
from typing import Any, Dict, List, Optional

import pytest

from scim_ldap_gateway.attribute_mapper import AttributeMapper
from scim_ldap_gateway.config import Config
from scim_ldap_gateway.core.constants import NAME_WITH_ENTRY_UUID_OID
from scim_ldap_gateway.core.errors import ConflictError, ResourceNotFoundError
from scim_ldap_gateway.ldap_client import MODIFY_ADD, MODIFY_DELETE, MODIFY_REPLACE, DirectoryEntry
from scim_ldap_gateway.ldap_filter import (
    AlwaysFalse,
    And,
    Equality,
    ExtensibleMatch,
    GreaterOrEqual,
    LessOrEqual,
    Not,
    Or,
    Presence,
    Substring,
)
from scim_ldap_gateway.naming import IdentityResolver, is_descendant, normalize_dn, parent_dn
from scim_ldap_gateway.repository import DirectoryRepository

USER_BASE = "ou=users,dc=example,dc=com"
GROUP_BASE = "ou=groups,dc=example,dc=com"
TIMESTAMP = "20240102030405Z"


# ---------------------------------------------------------------------------
# Filter evaluation
# ---------------------------------------------------------------------------

def _json_field(obj: Any, field: Any) -> Any:
    path = field if isinstance(field, list) else [field]
    value = obj
    for key in path:
        if isinstance(value, list):
            value = [v.get(key) for v in value if isinstance(v, dict)]
        elif isinstance(value, dict):
            value = value.get(key)
        else:
            return None
    return value


def _json_values(value: Any) -> List[Any]:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _json_matches(flt: Dict[str, Any], obj: Any) -> bool:
    kind = flt["filterType"]
    if kind == "and":
        return all(_json_matches(f, obj) for f in flt["andFilters"])
    if kind == "or":
        return any(_json_matches(f, obj) for f in flt["orFilters"])
    if kind == "negate":
        return not _json_matches(flt["negateFilter"], obj)
    values = _json_values(_json_field(obj, flt["field"]))
    if kind == "containsField":
        return bool(values)
    if kind == "equals":
        target = flt["value"]
        return any(
            (v.lower() == target.lower()) if isinstance(v, str) and isinstance(target, str) else v == target
            for v in values
        )
    if kind == "substring":
        for v in values:
            if not isinstance(v, str):
                continue
            low = v.lower()
            if "contains" in flt and flt["contains"].lower() not in low:
                continue
            if "startsWith" in flt and not low.startswith(flt["startsWith"].lower()):
                continue
            if "endsWith" in flt and not low.endswith(flt["endsWith"].lower()):
                continue
            return True
        return False
    if kind in ("greaterThan", "lessThan"):
        target = flt["value"]
        for v in values:
            if kind == "greaterThan" and (v > target or (flt.get("allowEquals") and v == target)):
                return True
            if kind == "lessThan" and (v < target or (flt.get("allowEquals") and v == target)):
                return True
        return False
    raise AssertionError(f"unknown JSON filter type {kind}")


def evaluate(node, entry: DirectoryEntry) -> bool:
    """Evaluate an LdapFilter node against *entry* (case-insensitive strings)."""
    if isinstance(node, And):
        return all(evaluate(f, entry) for f in node.filters)
    if isinstance(node, Or):
        return any(evaluate(f, entry) for f in node.filters)
    if isinstance(node, Not):
        return not evaluate(node.filter, entry)
    if isinstance(node, AlwaysFalse):
        return False
    if isinstance(node, Presence):
        return entry.has(node.attribute)
    values = [v.lower() for v in entry.get(node.attribute)]
    if isinstance(node, Equality):
        target = node.value.lower()
        return any(v == target or normalize_dn(v) == normalize_dn(target) for v in values)
    if isinstance(node, Substring):
        for v in values:
            if node.initial and not v.startswith(node.initial.lower()):
                continue
            if node.final and not v.endswith(node.final.lower()):
                continue
            if any(part.lower() not in v for part in node.any):
                continue
            return True
        return False
    if isinstance(node, GreaterOrEqual):
        return any(v >= node.value.lower() for v in values)
    if isinstance(node, LessOrEqual):
        return any(v <= node.value.lower() for v in values)
    if isinstance(node, ExtensibleMatch):
        flt = json.loads(node.value)
        return any(_json_matches(flt, json.loads(raw)) for raw in entry.get(node.attribute))
    raise AssertionError(f"unsupported filter node {node!r}")


# ---------------------------------------------------------------------------
# In-memory directory
# ---------------------------------------------------------------------------

class FakeDirectory:
    """Stand-in for DirectoryClient that keeps entries in memory and records calls."""

    def __init__(self):
        self.entries: Dict[str, Dict[str, List[str]]] = {}
        self.dns: Dict[str, str] = {}
        self.searches: List[Dict[str, Any]] = []
        self.adds: List[Dict[str, Any]] = []
        self.modifications: List[tuple] = []
        self.deletes: List[str] = []

    # seeding -------------------------------------------------------------

    def seed(self, dn: str, attributes: Dict[str, Any], entry_uuid: Optional[str] = None) -> str:
        entry_uuid = entry_uuid or str(uuid.uuid4())
        attrs = {k: list(v) if isinstance(v, (list, tuple)) else [v] for k, v in attributes.items()}
        attrs.setdefault("entryUUID", [entry_uuid])
        attrs.setdefault("createTimestamp", [TIMESTAMP])
        attrs.setdefault("modifyTimestamp", [TIMESTAMP])
        self.entries[normalize_dn(dn)] = attrs
        self.dns[normalize_dn(dn)] = dn
        return attrs["entryUUID"][0]

    def raw(self, dn: str) -> Dict[str, List[str]]:
        return self.entries[normalize_dn(dn)]

    # helpers -------------------------------------------------------------

    def _entry(self, key: str) -> DirectoryEntry:
        attrs = {k: list(v) for k, v in self.entries[key].items()}
        classes = {c.lower() for c in attrs.get("objectClass", [])}
        if "scimuser" in classes:
            groups = [
                self.dns[other]
                for other, other_attrs in self.entries.items()
                if any(normalize_dn(m) == key for m in other_attrs.get("member", []))
            ]
            if groups:
                attrs["memberOf"] = groups
        return DirectoryEntry(dn=self.dns[key], attributes=attrs)

    # DirectoryClient API -------------------------------------------------

    def search(self, base_dn, search_filter, *, scope="SUBTREE", attributes=None, size_limit=None,
               time_limit=None, sort_keys=None):
        self.searches.append(
            dict(base=base_dn, filter=search_filter, scope=scope, attributes=attributes,
                 size_limit=size_limit, time_limit=time_limit, sort_keys=sort_keys)
        )
        base_key = normalize_dn(base_dn)
        results = []
        for key in list(self.entries):
            if scope == "BASE":
                if key != base_key:
                    continue
            elif not (key == base_key or is_descendant(self.dns[key], base_dn)):
                continue
            entry = self._entry(key)
            if evaluate(search_filter, entry):
                results.append(entry)
        if sort_keys:
            attr, reverse = sort_keys[0]
            results.sort(key=lambda e: (e.first(attr) or "").lower(), reverse=reverse)
        if size_limit:
            results = results[:size_limit]
        return results

    def get_entry(self, dn, attributes=None):
        entries = self.search(dn, Presence("objectClass"), scope="BASE", attributes=attributes, size_limit=1)
        return entries[0] if entries else None

    def count(self, base_dn, search_filter):
        return len(self.search(base_dn, search_filter, attributes=["1.1"]))

    def add(self, dn, attributes, controls=None):
        self.adds.append(dict(dn=dn, attributes=attributes, controls=controls))
        entry_uuid = str(uuid.uuid4())
        if controls and any(c[0] == NAME_WITH_ENTRY_UUID_OID for c in controls):
            dn = f"entryUUID={entry_uuid},{parent_dn(dn)}"
        if normalize_dn(dn) in self.entries:
            raise ConflictError(f"{dn} already exists", result_code=68)
        self.seed(dn, {k: list(v) for k, v in attributes.items() if v}, entry_uuid)

    def modify(self, dn, modifications):
        if not modifications:
            return
        key = normalize_dn(dn)
        if key not in self.entries:
            raise ResourceNotFoundError("entry", dn)
        self.modifications.append((dn, list(modifications)))
        attrs = self.entries[key]
        for mod in modifications:
            current = attrs.get(mod.attribute, [])
            if mod.operation == MODIFY_ADD:
                for value in mod.values:
                    if value.lower() in (c.lower() for c in current):
                        raise ConflictError(f"{mod.attribute} already has {value}", result_code=20)
                attrs[mod.attribute] = current + list(mod.values)
            elif mod.operation == MODIFY_DELETE:
                if not mod.values:
                    attrs.pop(mod.attribute, None)
                    continue
                lowered = {v.lower() for v in mod.values}
                missing = lowered - {c.lower() for c in current}
                if missing:
                    raise ConflictError(f"{mod.attribute} has no value {missing}", result_code=16)
                remaining = [c for c in current if c.lower() not in lowered]
                if remaining:
                    attrs[mod.attribute] = remaining
                else:
                    attrs.pop(mod.attribute, None)
            elif mod.operation == MODIFY_REPLACE:
                if mod.values:
                    attrs[mod.attribute] = list(mod.values)
                else:
                    attrs.pop(mod.attribute, None)

    def delete(self, dn):
        self.deletes.append(dn)
        return self.entries.pop(normalize_dn(dn), None) is not None


# ---------------------------------------------------------------------------
# Fake ldap3 connection
# ---------------------------------------------------------------------------

class FakeConnection:
    """Mimics the parts of ldap3.Connection used by DirectoryClient and the pool."""

    def __init__(self, result: int = 0, response: Optional[list] = None):
        self.next_result = result
        self.next_response = response or []
        self.result: Dict[str, Any] = {}
        self.response: list = []
        self.calls: List[tuple] = []
        self.closed = False
        self.unbound = False

    def _finish(self):
        self.result = {"result": self.next_result, "description": "fake", "message": ""}

    def search(self, search_base, search_filter, search_scope="SUBTREE", attributes=None, size_limit=0,
               time_limit=0, controls=None):
        self.calls.append(("search", dict(base=search_base, filter=search_filter, scope=search_scope,
                                          attributes=attributes, size_limit=size_limit,
                                          time_limit=time_limit, controls=controls)))
        self.response = list(self.next_response)
        self._finish()
        return self.next_result == 0

    def add(self, dn, attributes=None, controls=None):
        self.calls.append(("add", dict(dn=dn, attributes=attributes, controls=controls)))
        self._finish()
        return self.next_result == 0

    def modify(self, dn, changes, controls=None):
        self.calls.append(("modify", dict(dn=dn, changes=changes)))
        self._finish()
        return self.next_result == 0

    def delete(self, dn, controls=None):
        self.calls.append(("delete", dict(dn=dn)))
        self._finish()
        return self.next_result == 0

    def unbind(self):
        self.unbound = True
        self.closed = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

def make_config(**overrides) -> Config:
    values = dict(
        ldap_url="ldap://localhost:1389",
        ldap_bind_dn="cn=Directory Manager",
        ldap_bind_password="secret",
        ldap_base_dn="dc=example,dc=com",
        ldap_user_base_dn=USER_BASE,
        ldap_group_base_dn=GROUP_BASE,
        use_entry_uuid_dn=True,
        scim_base_url="/scim/v2",
        pool_min_size=0,
        pool_max_size=2,
        pool_health_check_interval=0,
    )
    values.update(overrides)
    return Config(**values)


def build_repository(directory: FakeDirectory, config: Config) -> DirectoryRepository:
    resolver = IdentityResolver(directory, config)
    mapper = AttributeMapper(
        base_url=config.scim_base_url,
        dn_to_id=resolver.resolve_dn_to_id,
        id_to_dn=resolver.member_dn,
        member_type=resolver.member_type,
    )
    return DirectoryRepository(directory, resolver, mapper, config)


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def resolver(directory, config):
    return IdentityResolver(directory, config)


@pytest.fixture
def repository(directory, config):
    return build_repository(directory, config)
