import pytest

from scim_ldap_gateway.attribute_mapper import GROUP_ATTRIBUTE_OWNERS, USER_ATTRIBUTE_OWNERS
from scim_ldap_gateway.core.constants import ENTERPRISE_USER_SCHEMA, GROUP, USER, USER_SCHEMA
from scim_ldap_gateway.projection import ldap_attributes_for, paginate, project, resolve_field


def resource():
    return {
        "schemas": [USER_SCHEMA, ENTERPRISE_USER_SCHEMA],
        "id": "u1",
        "userName": "bjensen",
        "password": "secret",
        "title": "Tour Guide",
        "name": {"givenName": "Barbara", "familyName": "Jensen"},
        "emails": [{"value": "a@example.com", "type": "work"}, {"value": "b@example.com", "type": "home"}],
        ENTERPRISE_USER_SCHEMA: {"department": "Sales", "manager": {"value": "m1", "$ref": "/Users/m1"}},
        "meta": {"resourceType": "User"},
    }


@pytest.mark.parametrize(
    "path,expected",
    [
        ("userName", ("userName",)),
        ("USERNAME", ("userName",)),
        (f"{USER_SCHEMA}:title", ("title",)),
        ("name.givenName", ("name", "givenName")),
        ("emails.value", ("emails", "value")),
        ("groups.$ref", ("groups", "$ref")),
        ("meta.lastModified", ("meta", "lastModified")),
        (f"{ENTERPRISE_USER_SCHEMA}:department", (ENTERPRISE_USER_SCHEMA, "department")),
        (f"{ENTERPRISE_USER_SCHEMA}:manager.value", (ENTERPRISE_USER_SCHEMA, "manager", "value")),
        ("nonsense", None),
    ],
)
def test_resolve_user_fields(path, expected):
    assert resolve_field(USER, path) == expected


def test_resolve_group_fields():
    assert resolve_field(GROUP, "members.value") == ("members", "value")
    assert resolve_field(GROUP, "userName") is None


def test_attributes_keep_always_returned():
    out = project(USER, resource(), attributes=["userName", "name.familyName"])
    assert out == {
        "schemas": [USER_SCHEMA, ENTERPRISE_USER_SCHEMA],
        "id": "u1",
        "userName": "bjensen",
        "name": {"familyName": "Jensen"},
        "meta": {"resourceType": "User"},
    }


def test_sub_attribute_of_multi_valued():
    out = project(USER, resource(), attributes=["emails.value"])
    assert out["emails"] == [{"value": "a@example.com"}, {"value": "b@example.com"}]


def test_enterprise_sub_attributes():
    out = project(USER, resource(), attributes=[f"{ENTERPRISE_USER_SCHEMA}:manager.value"])
    assert out[ENTERPRISE_USER_SCHEMA] == {"manager": {"value": "m1"}}


def test_excluded_attributes():
    source = resource()
    out = project(USER, source, excluded_attributes=["title", "emails.type", "id", "nonsense"])
    assert "title" not in out
    assert out["id"] == "u1"
    assert out["emails"] == [{"value": "a@example.com"}, {"value": "b@example.com"}]
    assert source["emails"][0]["type"] == "work"


def test_attributes_win_over_excluded():
    out = project(USER, resource(), attributes=["title"], excluded_attributes=["title"])
    assert out["title"] == "Tour Guide"


def test_password_is_never_returned():
    assert "password" not in project(USER, resource())
    assert "password" not in project(USER, resource(), attributes=["password"])


def test_only_unknown_attributes_returns_everything():
    out = project(USER, resource(), attributes=["nonsense"])
    assert out["title"] == "Tour Guide"


def test_ldap_attributes_for():
    assert ldap_attributes_for(USER, None, USER_ATTRIBUTE_OWNERS) is None
    assert ldap_attributes_for(USER, ["userName", "emails.value"], USER_ATTRIBUTE_OWNERS) == [
        "uid",
        "cn",
        "sn",
        "scimEmails",
        "mail",
    ]
    assert ldap_attributes_for(USER, ["id", "meta"], USER_ATTRIBUTE_OWNERS) == []
    assert ldap_attributes_for(USER, ["groups"], USER_ATTRIBUTE_OWNERS) is None
    assert ldap_attributes_for(GROUP, ["displayName"], GROUP_ATTRIBUTE_OWNERS) == ["cn"]


@pytest.mark.parametrize(
    "start,count,expected",
    [
        (1, None, [1, 2, 3, 4, 5]),
        (1, 2, [1, 2]),
        (4, 10, [4, 5]),
        (5, 1, [5]),
        (6, 10, []),
        (0, 2, [1, 2]),
        (-3, 2, [1, 2]),
        (None, None, [1, 2, 3, 4, 5]),
        (2, 0, []),
        (2, -1, []),
    ],
)
def test_paginate(start, count, expected):
    assert paginate([1, 2, 3, 4, 5], start, count) == expected
