import json
from datetime import datetime, timezone

import pytest

from conftest import GROUP_BASE, USER_BASE
from scim_ldap_gateway.attribute_mapper import (
    AttributeMapper,
    decode_json_values,
    encode_json_values,
    format_generalized_time,
    parse_generalized_time,
)
from scim_ldap_gateway.core.constants import GROUP, USER, USER_OBJECT_CLASSES
from scim_ldap_gateway.ldap_client import DirectoryEntry
from scim_ldap_gateway.models import (
    Address,
    EnterpriseUser,
    Group,
    Manager,
    MultiValuedAttribute,
    Name,
    Reference,
    User,
)
from scim_ldap_gateway.naming import extract_id_from_dn


def id_to_dn(resource_id, kind):
    if resource_id == "ghost":
        return None
    base = GROUP_BASE if kind == GROUP else USER_BASE
    return f"entryUUID={resource_id},{base}"


def member_type(dn):
    return GROUP if dn.lower().endswith(GROUP_BASE) else USER


@pytest.fixture
def mapper():
    return AttributeMapper(base_url="/scim/v2", dn_to_id=extract_id_from_dn, id_to_dn=id_to_dn, member_type=member_type)


# ---------------------------------------------------------------------------
# JSON-per-value and generalized time
# ---------------------------------------------------------------------------

def test_encode_json_values_is_compact_and_omits_none():
    encoded = encode_json_values([MultiValuedAttribute(value="a@example.com", type="work", primary=True)])
    assert encoded == ['{"value":"a@example.com","type":"work","primary":true}']
    assert encode_json_values(None) == []


def test_decode_json_values_drops_broken_values():
    values = ['{"value":"a@example.com"}', "not json", '["list"]', '{"value":"b@example.com","primary":"yes"}']
    decoded = decode_json_values(values, MultiValuedAttribute, "scimEmails")
    assert decoded == [MultiValuedAttribute(value="a@example.com")]
    assert decode_json_values(["{"], MultiValuedAttribute) is None


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("20240102030405Z", datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)),
        ("20240102030405.123Z", datetime(2024, 1, 2, 3, 4, 5, 123000, tzinfo=timezone.utc)),
        ("202401020304Z", datetime(2024, 1, 2, 3, 4, tzinfo=timezone.utc)),
        ("20240102030405+0200", datetime(2024, 1, 2, 1, 4, 5, tzinfo=timezone.utc)),
        ("20240102030405-05", datetime(2024, 1, 2, 8, 4, 5, tzinfo=timezone.utc)),
        ("2024-01-02", None),
        ("20241302030405Z", None),
        (None, None),
    ],
)
def test_parse_generalized_time(raw, expected):
    assert parse_generalized_time(raw) == expected


def test_format_generalized_time():
    assert format_generalized_time(datetime(2024, 1, 2, 3, 4, 5)) == "20240102030405Z"


# ---------------------------------------------------------------------------
# User → attributes
# ---------------------------------------------------------------------------

def test_minimal_user_gets_required_attributes(mapper):
    attrs = mapper.user_to_attributes(User(user_name="bjensen"))
    assert attrs["objectClass"] == USER_OBJECT_CLASSES
    assert attrs["uid"] == ["bjensen"]
    assert attrs["cn"] == ["bjensen"]
    assert attrs["sn"] == ["bjensen"]
    assert attrs["scimResourceType"] == ["User"]
    assert "mail" not in attrs


def test_user_without_any_name_uses_placeholder(mapper):
    attrs = mapper.user_to_attributes(User())
    assert attrs["cn"] == ["Unknown"]
    assert attrs["sn"] == ["Unknown"]


def test_common_name_prefers_display_name_then_formatted(mapper):
    user = User(user_name="bjensen", name=Name(formatted="Ms. Barbara J Jensen III", family_name="Jensen"))
    assert mapper.user_to_attributes(user)["cn"] == ["Ms. Barbara J Jensen III"]
    user.display_name = "Babs Jensen"
    attrs = mapper.user_to_attributes(user)
    assert attrs["cn"] == ["Babs Jensen"]
    assert attrs["sn"] == ["Jensen"]


def test_emails_are_stored_per_value_with_primary_mirror(mapper):
    user = User(
        user_name="bjensen",
        emails=[
            MultiValuedAttribute(value="home@example.com", type="home"),
            MultiValuedAttribute(value="work@example.com", type="work", primary=True),
        ],
    )
    attrs = mapper.user_to_attributes(user)
    assert [json.loads(v)["value"] for v in attrs["scimEmails"]] == ["home@example.com", "work@example.com"]
    assert attrs["mail"] == ["work@example.com"]

    user.emails[1].primary = None
    assert mapper.user_to_attributes(user)["mail"] == ["home@example.com"]


def test_phone_and_address_mirrors(mapper):
    user = User(
        user_name="bjensen",
        phone_numbers=[
            MultiValuedAttribute(value="555-1", type="work"),
            MultiValuedAttribute(value="555-2", type="work"),
            MultiValuedAttribute(value="555-3", type="Mobile"),
            MultiValuedAttribute(value="555-4", type="other"),
        ],
        addresses=[
            Address(locality="Home Town", type="home"),
            Address(street_address="100 Universal City Plaza", locality="Hollywood", region="CA",
                    postal_code="91608", country="US", type="work"),
        ],
    )
    attrs = mapper.user_to_attributes(user)
    assert attrs["telephoneNumber"] == ["555-1"]
    assert attrs["mobile"] == ["555-3"]
    assert len(attrs["scimPhoneNumbers"]) == 4
    assert attrs["street"] == ["100 Universal City Plaza"]
    assert attrs["l"] == ["Hollywood"]
    assert attrs["st"] == ["CA"]
    assert attrs["postalCode"] == ["91608"]
    assert attrs["c"] == ["US"]


def test_enterprise_and_flags(mapper):
    user = User(
        user_name="bjensen",
        active=False,
        password="t1meMa$heen",
        enterprise=EnterpriseUser(employee_number="701984", department="Tour Operations", manager=Manager(value="m1")),
    )
    attrs = mapper.user_to_attributes(user)
    assert attrs["scimActive"] == ["false"]
    assert attrs["userPassword"] == ["t1meMa$heen"]
    assert attrs["employeeNumber"] == ["701984"]
    assert attrs["departmentNumber"] == ["Tour Operations"]
    assert attrs["manager"] == [f"entryUUID=m1,{USER_BASE}"]


def test_unknown_manager_is_skipped(mapper):
    user = User(user_name="bjensen", enterprise=EnterpriseUser(manager=Manager(value="ghost")))
    assert "manager" not in mapper.user_to_attributes(user)


# ---------------------------------------------------------------------------
# Entry → user
# ---------------------------------------------------------------------------

def user_entry(**attrs):
    base = {
        "objectClass": USER_OBJECT_CLASSES,
        "entryUUID": ["u1"],
        "uid": ["bjensen"],
        "createTimestamp": ["20240102030405Z"],
        "modifyTimestamp": ["20240203040506Z"],
        "scimVersion": ['W/"abc"'],
    }
    base.update({k: v if isinstance(v, list) else [v] for k, v in attrs.items()})
    return DirectoryEntry(dn=f"entryUUID=u1,{USER_BASE}", attributes=base)


def test_entry_to_user_basics(mapper):
    user = mapper.entry_to_user(
        user_entry(sn="Jensen", givenName="Barbara", personalTitle="Ms.", scimActive="TRUE", title="Tour Guide")
    )
    assert user.id == "u1"
    assert user.user_name == "bjensen"
    assert user.name.formatted == "Ms. Barbara Jensen"
    assert user.active is True
    assert user.title == "Tour Guide"
    assert user.meta.resource_type == "User"
    assert user.meta.location == "/scim/v2/Users/u1"
    assert user.meta.version == 'W/"abc"'
    assert user.meta.created == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert user.meta.last_modified == datetime(2024, 2, 3, 4, 5, 6, tzinfo=timezone.utc)


def test_entry_to_user_email_fallback_from_mail(mapper):
    user = mapper.entry_to_user(user_entry(mail="bjensen@example.com"))
    assert user.emails == [MultiValuedAttribute(value="bjensen@example.com", type="work", primary=True)]


def test_entry_to_user_prefers_json_emails(mapper):
    user = mapper.entry_to_user(
        user_entry(mail="old@example.com", scimEmails=['{"value":"new@example.com","type":"home"}'])
    )
    assert user.emails == [MultiValuedAttribute(value="new@example.com", type="home")]


def test_entry_to_user_tolerates_bad_data(mapper):
    user = mapper.entry_to_user(user_entry(scimActive="yes", scimRoles=["garbage"], modifyTimestamp="later"))
    assert user.active is None
    assert user.roles is None
    assert user.meta.last_modified is None


def test_entry_to_user_references(mapper):
    user = mapper.entry_to_user(
        user_entry(memberOf=[f"entryUUID=g1,{GROUP_BASE}", "cn=legacy,ou=groups"], manager=f"entryUUID=m1,{USER_BASE}")
    )
    assert user.groups == [Reference(value="g1", ref="/scim/v2/Groups/g1")]
    assert user.enterprise.manager == Manager(value="m1", ref="/scim/v2/Users/m1")


def test_entry_without_enterprise_attributes(mapper):
    assert mapper.entry_to_user(user_entry()).enterprise is None


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------

def test_group_to_attributes(mapper):
    group = Group(
        display_name="Tour Guides",
        external_id="ext-1",
        members=[Reference(value="u1"), Reference(value="g2", type="Group"), Reference(value="u1"), Reference(value="ghost")],
    )
    attrs = mapper.group_to_attributes(group)
    assert attrs["cn"] == ["Tour Guides"]
    assert attrs["scimExternalId"] == ["ext-1"]
    assert attrs["member"] == [f"entryUUID=u1,{USER_BASE}", f"entryUUID=g2,{GROUP_BASE}"]
    assert attrs["scimResourceType"] == ["Group"]


def test_entry_to_group(mapper):
    entry = DirectoryEntry(
        dn=f"entryUUID=g1,{GROUP_BASE}",
        attributes={
            "entryUUID": ["g1"],
            "cn": ["Tour Guides"],
            "member": [f"entryUUID=u1,{USER_BASE}", f"entryUUID=g2,{GROUP_BASE}"],
        },
    )
    group = mapper.entry_to_group(entry)
    assert group.id == "g1"
    assert group.display_name == "Tour Guides"
    assert group.members == [
        Reference(value="u1", ref="/scim/v2/Users/u1", type="User"),
        Reference(value="g2", ref="/scim/v2/Groups/g2", type="Group"),
    ]
    assert group.meta.location == "/scim/v2/Groups/g1"


def test_mapper_without_resolver_skips_references():
    mapper = AttributeMapper()
    group = Group(display_name="x", members=[Reference(value="u1")])
    assert "member" not in mapper.group_to_attributes(group)


# ---------------------------------------------------------------------------
# Round trip
# ---------------------------------------------------------------------------

def stored(mapper, user):
    attrs = dict(mapper.user_to_attributes(user))
    attrs["entryUUID"] = ["u1"]
    return mapper.entry_to_user(DirectoryEntry(dn=f"entryUUID=u1,{USER_BASE}", attributes=attrs))


@pytest.mark.parametrize(
    "field,values",
    [
        ("emails", [
            MultiValuedAttribute(value="home@example.com", type="home"),
            MultiValuedAttribute(value="work@example.com", type="work", primary=True),
            MultiValuedAttribute(value="other@example.com", display="Other", type="work", primary=False),
        ]),
        ("phone_numbers", [
            MultiValuedAttribute(value="555-1", type="work"),
            MultiValuedAttribute(value="555-2", type="work", primary=True),
            MultiValuedAttribute(value="555-3", type="mobile", display="Cell"),
        ]),
        ("addresses", [
            Address(locality="Home Town", country="NZ", type="home"),
            Address(street_address="100 Universal City Plaza", locality="Hollywood", region="CA",
                    postal_code="91608", country="US", type="work", primary=True),
            Address(formatted="PO Box 1, Springfield", type="work"),
        ]),
        ("ims", [
            MultiValuedAttribute(value="someaimhandle", type="aim"),
            MultiValuedAttribute(value="other", type="aim", primary=True),
        ]),
        ("photos", [
            MultiValuedAttribute(value="https://photos.example.com/1.jpg", type="photo"),
            MultiValuedAttribute(value="https://photos.example.com/2.jpg", type="thumbnail"),
        ]),
        ("roles", [MultiValuedAttribute(value="admin", primary=True), MultiValuedAttribute(value="auditor")]),
        ("entitlements", [MultiValuedAttribute(value="read"), MultiValuedAttribute(value="write", display="Write")]),
        ("x509_certificates", [MultiValuedAttribute(value="MIIDQzCCAqygAwIBAgICEAAwDQYJ"), MultiValuedAttribute(value="MIIB")]),
    ],
)
def test_multi_valued_round_trip(mapper, field, values):
    user = User(user_name="bjensen", **{field: values})
    assert getattr(stored(mapper, user), field) == values


def test_full_user_round_trip(mapper):
    user = User(
        id="u1",
        external_id="ext-701984",
        user_name="bjensen",
        name=Name(
            formatted="Ms. Barbara Jane Jensen III",
            family_name="Jensen",
            given_name="Barbara",
            middle_name="Jane",
            honorific_prefix="Ms.",
            honorific_suffix="III",
        ),
        display_name="Babs Jensen",
        nick_name="Babs",
        profile_url="https://login.example.com/bjensen",
        title="Tour Guide",
        user_type="Employee",
        preferred_language="en-US",
        locale="en-US",
        timezone="America/Los_Angeles",
        active=True,
        emails=[MultiValuedAttribute(value="bjensen@example.com", type="work", primary=True)],
        phone_numbers=[MultiValuedAttribute(value="555-555-8377", type="work")],
        addresses=[Address(locality="Hollywood", type="work")],
        enterprise=EnterpriseUser(
            employee_number="701984",
            cost_center="4130",
            organization="Universal Studios",
            division="Theme Park",
            department="Tour Operations",
            manager=Manager(value="m1", ref="/scim/v2/Users/m1"),
        ),
    )
    read = stored(mapper, user)
    read.meta = None
    assert read == user
