"""Canonical SCIM resources (User, Group) and their JSON shapes.

Python attributes are snake_case; :meth:`to_dict` / :meth:`from_dict` speak
the SCIM wire format (camelCase keys, ``None`` omitted, case-insensitive on
input).  The ``*_KEYS`` tables are the single source of truth for the
attribute ↔ key correspondence and are reused by :mod:`.projection`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Sequence, Tuple, Type, TypeVar

from .core.constants import ENTERPRISE_USER_SCHEMA, GROUP, GROUP_SCHEMA, USER, USER_SCHEMA

__all__ = [
    "Name",
    "MultiValuedAttribute",
    "Address",
    "Reference",
    "Manager",
    "EnterpriseUser",
    "Meta",
    "User",
    "Group",
    "format_datetime",
    "parse_datetime",
]

T = TypeVar("T")
Keys = Tuple[Tuple[str, str], ...]


# Helpers ---------------------------------------------------------------------


def format_datetime(value: datetime) -> str:
    """ISO-8601 in UTC with a ``Z`` suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    text = str(value).strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _to_bool(value: Any) -> bool | None:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "false"):
            return lowered == "true"
    raise ValueError(f"expected a boolean, got {value!r}")


def _lowered(data: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return {str(k).lower(): v for k, v in data.items()}


def _dump(obj: Any, keys: Keys) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for attr, key in keys:
        val = getattr(obj, attr)
        if val is not None:
            out[key] = val
    return out


def _load(cls: Type[T], data: Dict[str, Any], keys: Keys) -> T:
    lowered = _lowered(data)
    return cls(**{attr: lowered.get(key.lower()) for attr, key in keys})


def _load_list(cls: Any, values: Any) -> List[Any] | None:
    if values is None:
        return None
    if isinstance(values, dict):
        values = [values]
    return [cls.from_dict(v) for v in values]


def _dump_list(values: Sequence[Any] | None) -> List[Dict[str, Any]] | None:
    if values is None:
        return None
    return [v.to_dict() for v in values]


# Sub-attribute types -----------------------------------------------------------

NAME_KEYS: Keys = (
    ("formatted", "formatted"),
    ("family_name", "familyName"),
    ("given_name", "givenName"),
    ("middle_name", "middleName"),
    ("honorific_prefix", "honorificPrefix"),
    ("honorific_suffix", "honorificSuffix"),
)


@dataclass(slots=True)
class Name:
    formatted: str | None = None
    family_name: str | None = None
    given_name: str | None = None
    middle_name: str | None = None
    honorific_prefix: str | None = None
    honorific_suffix: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return _dump(self, NAME_KEYS)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Name":
        return _load(cls, data, NAME_KEYS)

    def compose(self) -> str:
        """Space-join prefix, given, middle, family and suffix, skipping empty parts."""
        parts = (self.honorific_prefix, self.given_name, self.middle_name, self.family_name, self.honorific_suffix)
        return " ".join(p.strip() for p in parts if p and p.strip())


MULTI_VALUED_KEYS: Keys = (
    ("value", "value"),
    ("display", "display"),
    ("type", "type"),
    ("primary", "primary"),
)


@dataclass(slots=True)
class MultiValuedAttribute:
    """Element of emails, phoneNumbers, ims, photos, roles, entitlements, x509Certificates."""

    value: str | None = None
    display: str | None = None
    type: str | None = None
    primary: bool | None = None

    def to_dict(self) -> Dict[str, Any]:
        return _dump(self, MULTI_VALUED_KEYS)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MultiValuedAttribute":
        item = _load(cls, data, MULTI_VALUED_KEYS)
        item.primary = _to_bool(item.primary)
        return item


ADDRESS_KEYS: Keys = (
    ("formatted", "formatted"),
    ("street_address", "streetAddress"),
    ("locality", "locality"),
    ("region", "region"),
    ("postal_code", "postalCode"),
    ("country", "country"),
    ("type", "type"),
    ("primary", "primary"),
)


@dataclass(slots=True)
class Address:
    formatted: str | None = None
    street_address: str | None = None
    locality: str | None = None
    region: str | None = None
    postal_code: str | None = None
    country: str | None = None
    type: str | None = None
    primary: bool | None = None

    def to_dict(self) -> Dict[str, Any]:
        return _dump(self, ADDRESS_KEYS)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Address":
        item = _load(cls, data, ADDRESS_KEYS)
        item.primary = _to_bool(item.primary)
        return item


REFERENCE_KEYS: Keys = (
    ("value", "value"),
    ("ref", "$ref"),
    ("display", "display"),
    ("type", "type"),
)


@dataclass(slots=True)
class Reference:
    """Group member, or a user's group membership."""

    value: str | None = None
    ref: str | None = None
    display: str | None = None
    type: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return _dump(self, REFERENCE_KEYS)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Reference":
        return _load(cls, data, REFERENCE_KEYS)


MANAGER_KEYS: Keys = (
    ("value", "value"),
    ("ref", "$ref"),
    ("display_name", "displayName"),
)


@dataclass(slots=True)
class Manager:
    value: str | None = None
    ref: str | None = None
    display_name: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return _dump(self, MANAGER_KEYS)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Manager":
        return _load(cls, data, MANAGER_KEYS)


ENTERPRISE_KEYS: Keys = (
    ("employee_number", "employeeNumber"),
    ("cost_center", "costCenter"),
    ("organization", "organization"),
    ("division", "division"),
    ("department", "department"),
    ("manager", "manager"),
)


@dataclass(slots=True)
class EnterpriseUser:
    employee_number: str | None = None
    cost_center: str | None = None
    organization: str | None = None
    division: str | None = None
    department: str | None = None
    manager: Manager | None = None

    def is_empty(self) -> bool:
        return all(getattr(self, attr) is None for attr, _ in ENTERPRISE_KEYS)

    def to_dict(self) -> Dict[str, Any]:
        out = _dump(self, ENTERPRISE_KEYS)
        if self.manager is not None:
            out["manager"] = self.manager.to_dict()
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnterpriseUser":
        item = _load(cls, data, ENTERPRISE_KEYS)
        if isinstance(item.manager, dict):
            item.manager = Manager.from_dict(item.manager)
        elif isinstance(item.manager, str):
            item.manager = Manager(value=item.manager)
        return item


META_KEYS: Keys = (
    ("resource_type", "resourceType"),
    ("created", "created"),
    ("last_modified", "lastModified"),
    ("version", "version"),
    ("location", "location"),
)


@dataclass(slots=True)
class Meta:
    resource_type: str | None = None
    created: datetime | None = None
    last_modified: datetime | None = None
    version: str | None = None
    location: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        out = _dump(self, META_KEYS)
        for key in ("created", "lastModified"):
            if key in out:
                out[key] = format_datetime(out[key])
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Meta":
        item = _load(cls, data, META_KEYS)
        item.created = parse_datetime(item.created)
        item.last_modified = parse_datetime(item.last_modified)
        return item


# Resources ---------------------------------------------------------------------

USER_SIMPLE_KEYS: Keys = (
    ("id", "id"),
    ("external_id", "externalId"),
    ("user_name", "userName"),
    ("display_name", "displayName"),
    ("nick_name", "nickName"),
    ("profile_url", "profileUrl"),
    ("title", "title"),
    ("user_type", "userType"),
    ("preferred_language", "preferredLanguage"),
    ("locale", "locale"),
    ("timezone", "timezone"),
    ("active", "active"),
    ("password", "password"),
)

# (attribute, key, element type)
USER_MULTI_VALUED: Tuple[Tuple[str, str, type], ...] = (
    ("emails", "emails", MultiValuedAttribute),
    ("phone_numbers", "phoneNumbers", MultiValuedAttribute),
    ("ims", "ims", MultiValuedAttribute),
    ("photos", "photos", MultiValuedAttribute),
    ("addresses", "addresses", Address),
    ("groups", "groups", Reference),
    ("entitlements", "entitlements", MultiValuedAttribute),
    ("roles", "roles", MultiValuedAttribute),
    ("x509_certificates", "x509Certificates", MultiValuedAttribute),
)


@dataclass(slots=True)
class User:
    id: str | None = None
    external_id: str | None = None
    user_name: str | None = None
    name: Name | None = None
    display_name: str | None = None
    nick_name: str | None = None
    profile_url: str | None = None
    title: str | None = None
    user_type: str | None = None
    preferred_language: str | None = None
    locale: str | None = None
    timezone: str | None = None
    active: bool | None = None
    password: str | None = None
    emails: List[MultiValuedAttribute] | None = None
    phone_numbers: List[MultiValuedAttribute] | None = None
    ims: List[MultiValuedAttribute] | None = None
    photos: List[MultiValuedAttribute] | None = None
    addresses: List[Address] | None = None
    groups: List[Reference] | None = None
    entitlements: List[MultiValuedAttribute] | None = None
    roles: List[MultiValuedAttribute] | None = None
    x509_certificates: List[MultiValuedAttribute] | None = None
    enterprise: EnterpriseUser | None = None
    meta: Meta | None = None

    resource_type = USER

    @property
    def schemas(self) -> List[str]:
        schemas = [USER_SCHEMA]
        if self.enterprise is not None and not self.enterprise.is_empty():
            schemas.append(ENTERPRISE_USER_SCHEMA)
        return schemas

    def to_dict(self, *, include_password: bool = False) -> Dict[str, Any]:
        out: Dict[str, Any] = {"schemas": self.schemas}
        out.update(_dump(self, USER_SIMPLE_KEYS))
        if not include_password:
            out.pop("password", None)
        if self.name is not None:
            out["name"] = self.name.to_dict()
        for attr, key, _ in USER_MULTI_VALUED:
            values = _dump_list(getattr(self, attr))
            if values is not None:
                out[key] = values
        if self.enterprise is not None and not self.enterprise.is_empty():
            out[ENTERPRISE_USER_SCHEMA] = self.enterprise.to_dict()
        if self.meta is not None:
            out["meta"] = self.meta.to_dict()
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        lowered = _lowered(data)
        user = _load(cls, data, USER_SIMPLE_KEYS)
        user.active = _to_bool(user.active)
        if lowered.get("name") is not None:
            user.name = Name.from_dict(lowered["name"])
        for attr, key, item_cls in USER_MULTI_VALUED:
            setattr(user, attr, _load_list(item_cls, lowered.get(key.lower())))
        enterprise = lowered.get(ENTERPRISE_USER_SCHEMA.lower())
        if enterprise is not None:
            user.enterprise = EnterpriseUser.from_dict(enterprise)
        if lowered.get("meta") is not None:
            user.meta = Meta.from_dict(lowered["meta"])
        return user


GROUP_SIMPLE_KEYS: Keys = (
    ("id", "id"),
    ("external_id", "externalId"),
    ("display_name", "displayName"),
)


@dataclass(slots=True)
class Group:
    id: str | None = None
    external_id: str | None = None
    display_name: str | None = None
    members: List[Reference] | None = None
    meta: Meta | None = None

    resource_type = GROUP

    @property
    def schemas(self) -> List[str]:
        return [GROUP_SCHEMA]

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"schemas": self.schemas}
        out.update(_dump(self, GROUP_SIMPLE_KEYS))
        members = _dump_list(self.members)
        if members is not None:
            out["members"] = members
        if self.meta is not None:
            out["meta"] = self.meta.to_dict()
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Group":
        lowered = _lowered(data)
        group = _load(cls, data, GROUP_SIMPLE_KEYS)
        group.members = _load_list(Reference, lowered.get("members"))
        if lowered.get("meta") is not None:
            group.meta = Meta.from_dict(lowered["meta"])
        return group
