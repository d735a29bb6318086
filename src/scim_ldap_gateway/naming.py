"""DN construction, RDN escaping and SCIM id ↔ DN resolution.

The SCIM ``id`` of every resource is the directory ``entryUUID``.  Two naming
modes exist:

* *naming by identifier* (``use_entry_uuid_dn``): the server names new entries
  ``entryUUID=<id>,<base>``, so an id converts to a DN without a round trip;
* *human-key naming*: entries are ``uid=<userName>,<userBase>`` /
  ``cn=<displayName>,<groupBase>`` and ids are located by search.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Sequence

from .core.constants import ENTRY_UUID_ATTR, GROUP, USER
from .ldap_filter import Equality

if TYPE_CHECKING:  # pragma: no cover
    from .config import Config
    from .ldap_client import DirectoryClient, DirectoryEntry

logger = logging.getLogger("scim_ldap_gateway.naming")

__all__ = [
    "escape_rdn_value",
    "unescape_rdn_value",
    "split_dn",
    "rdn_attribute",
    "rdn_value",
    "parent_dn",
    "normalize_dn",
    "is_descendant",
    "build_placeholder_dn",
    "build_dn_from_id",
    "extract_id_from_dn",
    "IdentityResolver",
]

_RDN_SPECIAL = ',=+<>#;"'
_HEX = "0123456789abcdefABCDEF"


# Escaping --------------------------------------------------------------------


def escape_rdn_value(value: str | None) -> str:
    """Escape ``, = + < > # ; \\ "`` plus leading/trailing spaces for use in an RDN."""
    if not value:
        return ""
    out = value.replace("\\", "\\\\")
    for ch in _RDN_SPECIAL:
        out = out.replace(ch, "\\" + ch)
    if value.endswith(" "):
        out = out[:-1] + "\\ "
    if value.startswith(" ") and len(value) > 1:
        out = "\\" + out
    return out


def unescape_rdn_value(value: str) -> str:
    """Inverse of :func:`escape_rdn_value`; also decodes ``\\XX`` hex pairs (UTF-8)."""
    buf = bytearray()
    i = 0
    while i < len(value):
        ch = value[i]
        if ch == "\\" and i + 1 < len(value):
            nxt = value[i + 1 : i + 3]
            if len(nxt) == 2 and nxt[0] in _HEX and nxt[1] in _HEX:
                buf.append(int(nxt, 16))
                i += 3
                continue
            buf.extend(value[i + 1].encode("utf-8"))
            i += 2
            continue
        buf.extend(ch.encode("utf-8"))
        i += 1
    return buf.decode("utf-8", errors="replace")


def _split_unescaped(text: str, sep: str, maxsplit: int = -1) -> List[str]:
    parts: List[str] = []
    current: List[str] = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == "\\" and i + 1 < len(text):
            current.append(text[i : i + 2])
            i += 2
            continue
        if ch == sep and (maxsplit < 0 or len(parts) < maxsplit):
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
        i += 1
    parts.append("".join(current))
    return parts


# DN helpers ------------------------------------------------------------------


def split_dn(dn: str) -> List[str]:
    """Split *dn* into its RDN strings, honouring escaped commas."""
    if not dn:
        return []
    return [rdn.strip() for rdn in _split_unescaped(dn, ",")]


def _leading_rdn(dn: str) -> tuple[str, str] | None:
    rdns = split_dn(dn)
    if not rdns:
        return None
    pair = _split_unescaped(rdns[0], "=", maxsplit=1)
    if len(pair) != 2:
        return None
    return pair[0].strip(), pair[1].strip()


def rdn_attribute(dn: str) -> str | None:
    """Attribute name of the leading RDN (``uid`` for ``uid=jdoe,ou=users``)."""
    rdn = _leading_rdn(dn)
    return rdn[0] if rdn else None


def rdn_value(dn: str) -> str | None:
    rdn = _leading_rdn(dn)
    return unescape_rdn_value(rdn[1]) if rdn else None


def parent_dn(dn: str) -> str:
    rdns = split_dn(dn)
    return ",".join(rdns[1:])


def normalize_dn(dn: str) -> str:
    """Lower-case comparison form: no spaces around separators."""
    out: List[str] = []
    for rdn in split_dn(dn):
        pair = _split_unescaped(rdn, "=", maxsplit=1)
        if len(pair) == 2:
            out.append(f"{pair[0].strip().lower()}={pair[1].strip().lower()}")
        else:
            out.append(rdn.lower())
    return ",".join(out)


def is_descendant(dn: str, base: str) -> bool:
    """True when *dn* lies strictly below *base*."""
    dn_n, base_n = normalize_dn(dn), normalize_dn(base)
    if not base_n:
        return bool(dn_n)
    return dn_n.endswith("," + base_n)


def build_placeholder_dn(attribute: str, human_key: str, base_dn: str) -> str:
    """DN sent with an add request, e.g. ``uid=jdoe,ou=users,dc=example,dc=com``.

    With naming by identifier enabled the server replaces it with the
    ``entryUUID`` form.
    """
    return f"{attribute}={escape_rdn_value(human_key)},{base_dn}"


def build_dn_from_id(resource_id: str, base_dn: str) -> str:
    return f"{ENTRY_UUID_ATTR}={escape_rdn_value(resource_id)},{base_dn}"


def extract_id_from_dn(dn: str | None) -> str | None:
    """Return the id embedded in an ``entryUUID=<id>,...`` DN, otherwise ``None``."""
    if not dn:
        return None
    rdn = _leading_rdn(dn)
    if rdn is None or rdn[0].lower() != ENTRY_UUID_ATTR.lower():
        return None
    value = unescape_rdn_value(rdn[1])
    return value or None


# Resolver --------------------------------------------------------------------


class IdentityResolver:
    """Translate SCIM ids to directory DNs and back."""

    def __init__(self, client: "DirectoryClient", config: "Config") -> None:
        self.client = client
        self.config = config

    def base_dn(self, kind: str | None) -> str:
        if kind == USER:
            return self.config.ldap_user_base_dn
        if kind == GROUP:
            return self.config.ldap_group_base_dn
        return self.config.ldap_base_dn

    def find_entry_by_id(
        self,
        resource_id: str,
        kind: str | None = None,
        attributes: Sequence[str] | None = None,
    ) -> "DirectoryEntry | None":
        """Search the kind's base for ``(entryUUID=<id>)``; ``None`` when absent."""
        if not resource_id:
            return None
        entries = self.client.search(
            self.base_dn(kind),
            Equality(ENTRY_UUID_ATTR, resource_id),
            attributes=list(attributes) if attributes else ["*", "+"],
            size_limit=1,
        )
        return entries[0] if entries else None

    def resolve_id_to_dn(self, resource_id: str, kind: str | None = None) -> str | None:
        """DN for *resource_id*; constructed directly in naming-by-identifier mode."""
        if not resource_id:
            return None
        if self.config.use_entry_uuid_dn:
            return build_dn_from_id(resource_id, self.base_dn(kind))
        entry = self.find_entry_by_id(resource_id, kind, attributes=[ENTRY_UUID_ATTR])
        if entry is None:
            logger.debug(f"No entry found for id {resource_id} under {self.base_dn(kind)}")
            return None
        return entry.dn

    def resolve_dn_to_id(self, dn: str | None) -> str | None:
        """entryUUID for *dn*: read from the DN itself when possible, else looked up."""
        if not dn:
            return None
        embedded = extract_id_from_dn(dn)
        if embedded:
            return embedded
        entry = self.client.get_entry(dn, attributes=[ENTRY_UUID_ATTR])
        if entry is None:
            logger.warning(f"Referenced entry {dn} does not exist")
            return None
        return entry.first(ENTRY_UUID_ATTR)

    def member_dn(self, resource_id: str, member_type: str | None = None) -> str | None:
        """DN for a group member; ``Group`` members live under the group base."""
        kind = GROUP if member_type and member_type.lower() == GROUP.lower() else USER
        return self.resolve_id_to_dn(resource_id, kind)

    def member_type(self, dn: str) -> str:
        if is_descendant(dn, self.config.ldap_group_base_dn):
            return GROUP
        return USER
