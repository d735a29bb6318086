import pytest

from conftest import GROUP_BASE, USER_BASE, make_config
from scim_ldap_gateway.core.constants import GROUP, USER
from scim_ldap_gateway.naming import (
    IdentityResolver,
    build_dn_from_id,
    build_placeholder_dn,
    escape_rdn_value,
    extract_id_from_dn,
    is_descendant,
    normalize_dn,
    parent_dn,
    rdn_attribute,
    rdn_value,
    split_dn,
    unescape_rdn_value,
)


# ---------------------------------------------------------------------------
# Escaping and DN helpers
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "raw,escaped",
    [
        ("jdoe", "jdoe"),
        ("doe, john", "doe\\, john"),
        ("a=b+c", "a\\=b\\+c"),
        ('say "hi"', 'say \\"hi\\"'),
        ("back\\slash", "back\\\\slash"),
        ("<tag>;#1", "\\<tag\\>\\;\\#1"),
        ("trailing ", "trailing\\ "),
        (" leading", "\\ leading"),
        ("", ""),
    ],
)
def test_escape_rdn_value(raw, escaped):
    assert escape_rdn_value(raw) == escaped
    assert unescape_rdn_value(escaped) == raw


def test_unescape_hex_pairs():
    assert unescape_rdn_value("caf\\c3\\a9") == "café"
    assert unescape_rdn_value("a\\2cb") == "a,b"


def test_split_dn_honours_escaped_commas():
    assert split_dn("uid=doe\\, john, ou=users,dc=example") == ["uid=doe\\, john", "ou=users", "dc=example"]
    assert split_dn("") == []


def test_rdn_helpers():
    dn = "uid=doe\\, john,ou=users,dc=example,dc=com"
    assert rdn_attribute(dn) == "uid"
    assert rdn_value(dn) == "doe, john"
    assert parent_dn(dn) == "ou=users,dc=example,dc=com"


def test_normalize_and_descendant():
    assert normalize_dn("UID=JDoe, OU=Users,dc=Example") == "uid=jdoe,ou=users,dc=example"
    assert is_descendant("uid=a,ou=users,dc=example,dc=com", "OU=Users, DC=example, DC=com")
    assert not is_descendant("ou=users,dc=example,dc=com", "ou=users,dc=example,dc=com")
    assert not is_descendant("uid=a,ou=groups,dc=example,dc=com", USER_BASE)


def test_build_and_extract_ids():
    assert build_placeholder_dn("cn", "Admins, EU", GROUP_BASE) == f"cn=Admins\\, EU,{GROUP_BASE}"
    dn = build_dn_from_id("1234-abcd", USER_BASE)
    assert dn == f"entryUUID=1234-abcd,{USER_BASE}"
    assert extract_id_from_dn(dn) == "1234-abcd"
    assert extract_id_from_dn("ENTRYUUID=5678," + USER_BASE) == "5678"
    assert extract_id_from_dn(f"uid=jdoe,{USER_BASE}") is None
    assert extract_id_from_dn(None) is None


# ---------------------------------------------------------------------------
# IdentityResolver
# ---------------------------------------------------------------------------

def test_resolver_builds_dn_without_search_in_uuid_mode(resolver, directory):
    assert resolver.resolve_id_to_dn("abc", USER) == f"entryUUID=abc,{USER_BASE}"
    assert resolver.resolve_id_to_dn("abc", GROUP) == f"entryUUID=abc,{GROUP_BASE}"
    assert resolver.resolve_id_to_dn("") is None
    assert directory.searches == []


def test_resolver_searches_in_human_key_mode(directory):
    resolver = IdentityResolver(directory, make_config(use_entry_uuid_dn=False))
    user_id = directory.seed(f"uid=jdoe,{USER_BASE}", {"objectClass": ["scimUser"], "uid": "jdoe"})

    assert resolver.resolve_id_to_dn(user_id, USER) == f"uid=jdoe,{USER_BASE}"
    assert resolver.resolve_id_to_dn("missing", USER) is None
    assert str(directory.searches[-1]["filter"]) == "(entryUUID=missing)"


def test_resolve_dn_to_id(resolver, directory):
    assert resolver.resolve_dn_to_id(f"entryUUID=abc,{USER_BASE}") == "abc"
    user_id = directory.seed(f"uid=jdoe,{USER_BASE}", {"objectClass": ["scimUser"], "uid": "jdoe"})
    assert resolver.resolve_dn_to_id(f"uid=jdoe,{USER_BASE}") == user_id
    assert resolver.resolve_dn_to_id(f"uid=ghost,{USER_BASE}") is None
    assert resolver.resolve_dn_to_id(None) is None


def test_member_dn_and_type(resolver):
    assert resolver.member_dn("u1") == f"entryUUID=u1,{USER_BASE}"
    assert resolver.member_dn("g1", "group") == f"entryUUID=g1,{GROUP_BASE}"
    assert resolver.member_type(f"entryUUID=g1,{GROUP_BASE}") == GROUP
    assert resolver.member_type(f"entryUUID=u1,{USER_BASE}") == USER
