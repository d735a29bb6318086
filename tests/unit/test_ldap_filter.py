import pytest

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
    build_object_class_filter,
)


@pytest.mark.parametrize(
    "node,expected",
    [
        (Equality("uid", "jdoe"), "(uid=jdoe)"),
        (Equality("cn", "a*(b)\\"), "(cn=a\\2a\\28b\\29\\5c)"),
        (Presence("mail"), "(mail=*)"),
        (Substring("cn", initial="Ba"), "(cn=Ba*)"),
        (Substring("cn", final="sen"), "(cn=*sen)"),
        (Substring("cn", any=("arb",)), "(cn=*arb*)"),
        (Substring("cn", initial="B", any=("a", "r"), final="n"), "(cn=B*a*r*n)"),
        (GreaterOrEqual("modifyTimestamp", "20240101000000Z"), "(modifyTimestamp>=20240101000000Z)"),
        (LessOrEqual("employeeNumber", "10"), "(employeeNumber<=10)"),
        (Not(Equality("scimActive", "true")), "(!(scimActive=true))"),
        (And((Equality("a", "1"), Or((Presence("b"), Equality("c", "3"))))), "(&(a=1)(|(b=*)(c=3)))"),
        (AlwaysFalse(), "(!(objectClass=*))"),
        (
            ExtensibleMatch("scimEmails", "jsonObjectFilterExtensibleMatch", '{"filterType":"containsField","field":"type"}'),
            '(scimEmails:jsonObjectFilterExtensibleMatch:={"filterType":"containsField","field":"type"})',
        ),
    ],
)
def test_render(node, expected):
    assert str(node) == expected


def test_nodes_hold_raw_values_and_compare_structurally():
    assert Equality("cn", "a*b").value == "a*b"
    assert And((Presence("a"), Presence("b"))) == And((Presence("a"), Presence("b")))
    assert Equality("cn", "x") != Equality("cn", "y")


def test_object_class_filter():
    assert str(build_object_class_filter("scimUser")) == "(objectClass=scimUser)"
    combined = build_object_class_filter("scimGroup", Equality("cn", "Admins"))
    assert str(combined) == "(&(objectClass=scimGroup)(cn=Admins))"
