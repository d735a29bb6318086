"""Resource ↔ directory entry attribute mapping.

Three kinds of mapping are used:

* scalar 1:1 (``userName`` → ``uid``);
* *mirror*: a primary or type-preferred element of a multi-valued attribute
  is copied into a standard single-valued attribute for directory-native
  indexing (``emails`` → ``mail``, ``phoneNumbers`` → ``telephoneNumber`` ...);
* *JSON-per-value*: every element of a complex multi-valued attribute is
  serialized on its own and stored as one value of a dedicated attribute
  (``emails`` → ``scimEmails``).

The mapper performs no directory I/O itself.  DN ↔ id conversions are
supplied as callables so the same object can be used with or without a live
:class:`~scim_ldap_gateway.naming.IdentityResolver`.

Decoding never raises for bad data: an element that fails to decode is
logged and dropped, an unparseable timestamp is logged and left absent.
"""
from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Sequence, Tuple

from .core.constants import (
    CREATE_TIMESTAMP_ATTR,
    ENTERPRISE_USER_SCHEMA,
    ENTRY_UUID_ATTR,
    GROUP,
    GROUP_OBJECT_CLASSES,
    MEMBER_ATTR,
    MEMBER_OF_ATTR,
    MODIFY_TIMESTAMP_ATTR,
    UNKNOWN_VALUE,
    USER,
    USER_OBJECT_CLASSES,
)
from .ldap_client import DirectoryEntry
from .models import (
    Address,
    EnterpriseUser,
    Group,
    Manager,
    Meta,
    MultiValuedAttribute,
    Name,
    Reference,
    User,
)
from .naming import extract_id_from_dn

logger = logging.getLogger("scim_ldap_gateway.mapper")

__all__ = [
    "AttributeMapper",
    "USER_SIMPLE_ATTRIBUTES",
    "GROUP_SIMPLE_ATTRIBUTES",
    "ENTERPRISE_ATTRIBUTES",
    "USER_JSON_ATTRIBUTES",
    "PHONE_TYPE_ATTRIBUTES",
    "ADDRESS_ATTRIBUTES",
    "REFERENCE_ATTRIBUTES",
    "USER_ATTRIBUTE_OWNERS",
    "GROUP_ATTRIBUTE_OWNERS",
    "USER_MANAGED_ATTRIBUTES",
    "GROUP_MANAGED_ATTRIBUTES",
    "encode_json_values",
    "decode_json_values",
    "parse_generalized_time",
    "format_generalized_time",
]

OBJECT_CLASS = "objectClass"
RESOURCE_TYPE_ATTR = "scimResourceType"
VERSION_ATTR = "scimVersion"
MAIL_ATTR = "mail"

# Mapping tables ---------------------------------------------------------------
# Keys are lower-cased SCIM attribute paths.

USER_SIMPLE_ATTRIBUTES: Dict[str, str] = {
    "id": ENTRY_UUID_ATTR,
    "externalid": "scimExternalId",
    "username": "uid",
    "displayname": "displayName",
    "name.formatted": "cn",
    "name.familyname": "sn",
    "name.givenname": "givenName",
    "name.middlename": "scimMiddleName",
    "name.honorificprefix": "personalTitle",
    "name.honorificsuffix": "scimHonorificSuffix",
    "nickname": "scimNickName",
    "profileurl": "scimProfileUrl",
    "title": "title",
    "usertype": "employeeType",
    "preferredlanguage": "preferredLanguage",
    "locale": "scimLocale",
    "timezone": "scimTimezone",
    "active": "scimActive",
    "groups": MEMBER_OF_ATTR,
    "groups.value": MEMBER_OF_ATTR,
    "meta.resourcetype": RESOURCE_TYPE_ATTR,
    "meta.version": VERSION_ATTR,
    "meta.created": CREATE_TIMESTAMP_ATTR,
    "meta.lastmodified": MODIFY_TIMESTAMP_ATTR,
}

ENTERPRISE_ATTRIBUTES: Dict[str, str] = {
    "employeenumber": "employeeNumber",
    "costcenter": "scimCostCenter",
    "organization": "o",
    "division": "scimDivision",
    "department": "departmentNumber",
    "manager": "manager",
    "manager.value": "manager",
}

GROUP_SIMPLE_ATTRIBUTES: Dict[str, str] = {
    "id": ENTRY_UUID_ATTR,
    "externalid": "scimExternalId",
    "displayname": "cn",
    "members": MEMBER_ATTR,
    "members.value": MEMBER_ATTR,
    "meta.resourcetype": RESOURCE_TYPE_ATTR,
    "meta.version": VERSION_ATTR,
    "meta.created": CREATE_TIMESTAMP_ATTR,
    "meta.lastmodified": MODIFY_TIMESTAMP_ATTR,
}

# attribute, directory attribute, element type
_USER_JSON_FIELDS: Tuple[Tuple[str, str, str, type], ...] = (
    ("emails", "emails", "scimEmails", MultiValuedAttribute),
    ("phone_numbers", "phonenumbers", "scimPhoneNumbers", MultiValuedAttribute),
    ("addresses", "addresses", "scimAddresses", Address),
    ("ims", "ims", "scimIms", MultiValuedAttribute),
    ("photos", "photos", "scimPhotos", MultiValuedAttribute),
    ("roles", "roles", "scimRoles", MultiValuedAttribute),
    ("entitlements", "entitlements", "scimEntitlements", MultiValuedAttribute),
    ("x509_certificates", "x509certificates", "scimX509Certificates", MultiValuedAttribute),
)
USER_JSON_ATTRIBUTES: Dict[str, str] = {scim: ldap for _, scim, ldap, _ in _USER_JSON_FIELDS}

PHONE_TYPE_ATTRIBUTES: Dict[str, str] = {
    "work": "telephoneNumber",
    "mobile": "mobile",
    "home": "homePhone",
    "fax": "facsimileTelephoneNumber",
    "pager": "pager",
}

# address sub-attribute → mirror attribute (work address, else the first one)
ADDRESS_ATTRIBUTES: Dict[str, str] = {
    "streetaddress": "street",
    "locality": "l",
    "region": "st",
    "postalcode": "postalCode",
    "country": "c",
}

# directory attributes whose values are DNs of other resources
REFERENCE_ATTRIBUTES = frozenset(a.lower() for a in (MEMBER_ATTR, MEMBER_OF_ATTR, "manager"))

_NAME_ATTRIBUTES = ("sn", "givenName", "scimMiddleName", "personalTitle", "scimHonorificSuffix")

# top-level SCIM attribute (lower-cased) → directory attributes derived from it
USER_ATTRIBUTE_OWNERS: Dict[str, Tuple[str, ...]] = {
    "externalid": ("scimExternalId",),
    "username": ("uid", "cn", "sn"),
    "displayname": ("displayName", "cn"),
    "name": _NAME_ATTRIBUTES + ("cn",),
    "nickname": ("scimNickName",),
    "profileurl": ("scimProfileUrl",),
    "title": ("title",),
    "usertype": ("employeeType",),
    "preferredlanguage": ("preferredLanguage",),
    "locale": ("scimLocale",),
    "timezone": ("scimTimezone",),
    "active": ("scimActive",),
    "password": ("userPassword",),
    "emails": ("scimEmails", MAIL_ATTR),
    "phonenumbers": ("scimPhoneNumbers",) + tuple(PHONE_TYPE_ATTRIBUTES.values()),
    "addresses": ("scimAddresses",) + tuple(ADDRESS_ATTRIBUTES.values()),
    "ims": ("scimIms",),
    "photos": ("scimPhotos",),
    "roles": ("scimRoles",),
    "entitlements": ("scimEntitlements",),
    "x509certificates": ("scimX509Certificates",),
    ENTERPRISE_USER_SCHEMA.lower(): ("employeeNumber", "scimCostCenter", "o", "scimDivision", "departmentNumber", "manager"),
}

GROUP_ATTRIBUTE_OWNERS: Dict[str, Tuple[str, ...]] = {
    "externalid": ("scimExternalId",),
    "displayname": ("cn",),
    "members": (MEMBER_ATTR,),
}


def _managed(owners: Dict[str, Tuple[str, ...]]) -> Tuple[str, ...]:
    seen: Dict[str, None] = {}
    for attrs in owners.values():
        for attr in attrs:
            seen.setdefault(attr, None)
    return tuple(seen) + (RESOURCE_TYPE_ATTR,)


USER_MANAGED_ATTRIBUTES = _managed(USER_ATTRIBUTE_OWNERS)
GROUP_MANAGED_ATTRIBUTES = _managed(GROUP_ATTRIBUTE_OWNERS)


# JSON-per-value encoding ------------------------------------------------------


def encode_json_values(items: Sequence[Any] | None) -> List[str]:
    """One compact JSON object per element, camelCase keys, ``None`` omitted."""
    if not items:
        return []
    return [json.dumps(item.to_dict(), separators=(",", ":"), ensure_ascii=False) for item in items]


def decode_json_values(values: Sequence[str], item_cls: Any, attribute: str = "") -> List[Any] | None:
    """Decode stored elements; broken ones are logged and dropped.

    Returns ``None`` when nothing decodes so that the SCIM attribute stays absent.
    """
    items: List[Any] = []
    for raw in values:
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
            items.append(item_cls.from_dict(data))
        except (ValueError, TypeError) as exc:
            logger.warning(f"Dropping undecodable value of {attribute or item_cls.__name__}: {exc}")
    return items or None


# Generalized time -------------------------------------------------------------

_GENERALIZED_TIME = re.compile(
    r"^(\d{4})(\d{2})(\d{2})(\d{2})(\d{2})?(\d{2})?(?:[.,](\d+))?(Z|[+-]\d{2}(?:\d{2})?)?$"
)


def parse_generalized_time(value: str | None) -> datetime | None:
    """Parse ``YYYYmmddHH[MM[SS]][.fff][Z|±hh[mm]]`` into an aware UTC datetime.

    Returns ``None`` (and logs) for values that do not parse.
    """
    if not value:
        return None
    match = _GENERALIZED_TIME.match(value.strip())
    if not match:
        logger.warning(f"Unparseable generalized time {value!r}")
        return None
    year, month, day, hour, minute, second, fraction, zone = match.groups()
    try:
        parsed = datetime(
            int(year),
            int(month),
            int(day),
            int(hour),
            int(minute or 0),
            int(second or 0),
            int((fraction or "0")[:6].ljust(6, "0")),
            tzinfo=timezone.utc,
        )
    except ValueError as exc:
        logger.warning(f"Unparseable generalized time {value!r}: {exc}")
        return None
    if zone and zone != "Z":
        sign = 1 if zone[0] == "+" else -1
        offset = timedelta(hours=int(zone[1:3]), minutes=int(zone[3:5] or 0))
        parsed -= sign * offset
    return parsed


def format_generalized_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y%m%d%H%M%SZ")


# Mapper -----------------------------------------------------------------------


def _default_member_type(dn: str) -> str:
    return USER


class AttributeMapper:
    """Convert :class:`User` / :class:`Group` to directory attributes and back.

    ``dn_to_id(dn)`` returns the resource id for a referenced DN,
    ``id_to_dn(id, kind)`` the DN for a referenced id and ``member_type(dn)``
    whether a member DN names a ``User`` or a ``Group``.  References that
    cannot be converted are skipped with a warning.
    """

    def __init__(
        self,
        *,
        base_url: str = "",
        dn_to_id: Callable[[str], str | None] = extract_id_from_dn,
        id_to_dn: Callable[[str, str | None], str | None] | None = None,
        member_type: Callable[[str], str] = _default_member_type,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.dn_to_id = dn_to_id
        self.id_to_dn = id_to_dn
        self.member_type = member_type

    # Helpers -----------------------------------------------------------

    def location(self, kind: str, resource_id: str | None) -> str | None:
        if not resource_id:
            return None
        return f"{self.base_url}/{kind}s/{resource_id}"

    def _reference_dn(self, resource_id: str | None, kind: str | None) -> str | None:
        if not resource_id:
            return None
        if self.id_to_dn is None:
            logger.warning(f"Cannot resolve reference {resource_id}: no id resolver configured")
            return None
        dn = self.id_to_dn(resource_id, kind)
        if dn is None:
            logger.warning(f"Skipping reference to unknown {kind or 'resource'} {resource_id}")
        return dn

    def _reference_id(self, dn: str) -> str | None:
        resource_id = self.dn_to_id(dn)
        if resource_id is None:
            logger.warning(f"Skipping reference {dn}: no id could be determined")
        return resource_id

    def _entry_id(self, entry: DirectoryEntry) -> str | None:
        resource_id = entry.first(ENTRY_UUID_ATTR) or extract_id_from_dn(entry.dn)
        if resource_id is None:
            logger.warning(f"Unable to determine SCIM id for entry {entry.dn}")
        return resource_id

    def _meta(self, entry: DirectoryEntry, kind: str, resource_id: str | None) -> Meta:
        return Meta(
            resource_type=kind,
            created=parse_generalized_time(entry.first(CREATE_TIMESTAMP_ATTR)),
            last_modified=parse_generalized_time(entry.first(MODIFY_TIMESTAMP_ATTR)),
            version=entry.first(VERSION_ATTR),
            location=self.location(kind, resource_id),
        )

    # User --------------------------------------------------------------

    def user_to_attributes(self, user: User) -> Dict[str, List[str]]:
        attrs: Dict[str, List[str]] = {OBJECT_CLASS: list(USER_OBJECT_CLASSES)}

        def put(name: str, value: Any) -> None:
            if value is not None and value != "":
                attrs[name] = [str(value)]

        put("scimExternalId", user.external_id)
        put("uid", user.user_name)
        put("displayName", user.display_name)

        name = user.name or Name()
        cn = user.display_name or name.formatted or user.user_name or UNKNOWN_VALUE
        put("cn", cn)
        put("sn", name.family_name or user.user_name or UNKNOWN_VALUE)
        put("givenName", name.given_name)
        put("scimMiddleName", name.middle_name)
        put("personalTitle", name.honorific_prefix)
        put("scimHonorificSuffix", name.honorific_suffix)

        put("scimNickName", user.nick_name)
        put("scimProfileUrl", user.profile_url)
        put("title", user.title)
        put("employeeType", user.user_type)
        put("preferredLanguage", user.preferred_language)
        put("scimLocale", user.locale)
        put("scimTimezone", user.timezone)
        if user.active is not None:
            put("scimActive", "true" if user.active else "false")
        put("userPassword", user.password)

        for attr, _, ldap_attr, _ in _USER_JSON_FIELDS:
            encoded = encode_json_values(getattr(user, attr))
            if encoded:
                attrs[ldap_attr] = encoded

        if user.emails:
            primary = next((e for e in user.emails if e.primary), user.emails[0])
            put(MAIL_ATTR, primary.value)

        for phone in user.phone_numbers or ():
            target = PHONE_TYPE_ATTRIBUTES.get((phone.type or "").lower())
            if target and phone.value and target not in attrs:
                attrs[target] = [phone.value]

        if user.addresses:
            address = next(
                (a for a in user.addresses if (a.type or "").lower() == "work"), user.addresses[0]
            )
            put("street", address.street_address)
            put("l", address.locality)
            put("st", address.region)
            put("postalCode", address.postal_code)
            put("c", address.country)

        enterprise = user.enterprise
        if enterprise is not None:
            put("employeeNumber", enterprise.employee_number)
            put("scimCostCenter", enterprise.cost_center)
            put("o", enterprise.organization)
            put("scimDivision", enterprise.division)
            put("departmentNumber", enterprise.department)
            if enterprise.manager is not None:
                put("manager", self._reference_dn(enterprise.manager.value, USER))

        attrs[RESOURCE_TYPE_ATTR] = [USER]
        return attrs

    def entry_to_user(self, entry: DirectoryEntry) -> User:
        user = User(id=self._entry_id(entry))
        user.external_id = entry.first("scimExternalId")
        user.user_name = entry.first("uid")
        user.display_name = entry.first("displayName")

        name = Name(
            family_name=entry.first("sn"),
            given_name=entry.first("givenName"),
            middle_name=entry.first("scimMiddleName"),
            honorific_prefix=entry.first("personalTitle"),
            honorific_suffix=entry.first("scimHonorificSuffix"),
        )
        if any(getattr(name, attr) for attr in ("family_name", "given_name", "middle_name", "honorific_prefix", "honorific_suffix")):
            name.formatted = name.compose() or None
            user.name = name

        user.nick_name = entry.first("scimNickName")
        user.profile_url = entry.first("scimProfileUrl")
        user.title = entry.first("title")
        user.user_type = entry.first("employeeType")
        user.preferred_language = entry.first("preferredLanguage")
        user.locale = entry.first("scimLocale")
        user.timezone = entry.first("scimTimezone")

        active = entry.first("scimActive")
        if active is not None:
            if active.strip().lower() in ("true", "false"):
                user.active = active.strip().lower() == "true"
            else:
                logger.warning(f"Ignoring invalid scimActive value {active!r} on {entry.dn}")

        for attr, _, ldap_attr, item_cls in _USER_JSON_FIELDS:
            values = entry.get(ldap_attr)
            if values:
                setattr(user, attr, decode_json_values(values, item_cls, ldap_attr))

        if user.emails is None and entry.first(MAIL_ATTR):
            user.emails = [MultiValuedAttribute(value=entry.first(MAIL_ATTR), type="work", primary=True)]

        groups: List[Reference] = []
        for dn in entry.get(MEMBER_OF_ATTR):
            group_id = self._reference_id(dn)
            if group_id:
                groups.append(Reference(value=group_id, ref=self.location(GROUP, group_id)))
        user.groups = groups or None

        enterprise = EnterpriseUser(
            employee_number=entry.first("employeeNumber"),
            cost_center=entry.first("scimCostCenter"),
            organization=entry.first("o"),
            division=entry.first("scimDivision"),
            department=entry.first("departmentNumber"),
        )
        manager_dn = entry.first("manager")
        if manager_dn:
            manager_id = self._reference_id(manager_dn)
            if manager_id:
                enterprise.manager = Manager(value=manager_id, ref=self.location(USER, manager_id))
        user.enterprise = None if enterprise.is_empty() else enterprise

        user.meta = self._meta(entry, USER, user.id)
        return user

    # Group -------------------------------------------------------------

    def group_to_attributes(self, group: Group) -> Dict[str, List[str]]:
        attrs: Dict[str, List[str]] = {OBJECT_CLASS: list(GROUP_OBJECT_CLASSES)}
        if group.external_id:
            attrs["scimExternalId"] = [group.external_id]
        if group.display_name:
            attrs["cn"] = [group.display_name]
        members: List[str] = []
        for member in group.members or ():
            dn = self._reference_dn(member.value, member.type)
            if dn and dn not in members:
                members.append(dn)
        if members:
            attrs[MEMBER_ATTR] = members
        attrs[RESOURCE_TYPE_ATTR] = [GROUP]
        return attrs

    def entry_to_member(self, dn: str) -> Reference | None:
        member_id = self._reference_id(dn)
        if member_id is None:
            return None
        kind = self.member_type(dn)
        return Reference(value=member_id, ref=self.location(kind, member_id), type=kind)

    def entry_to_group(self, entry: DirectoryEntry) -> Group:
        group = Group(id=self._entry_id(entry))
        group.external_id = entry.first("scimExternalId")
        group.display_name = entry.first("cn")
        members = [m for m in (self.entry_to_member(dn) for dn in entry.get(MEMBER_ATTR)) if m is not None]
        group.members = members or None
        group.meta = self._meta(entry, GROUP, group.id)
        return group
