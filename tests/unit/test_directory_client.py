import pytest
from ldap3.core.exceptions import LDAPCommunicationError

from conftest import FakeConnection
from scim_ldap_gateway.core.constants import NAME_WITH_ENTRY_UUID_OID, SERVER_SIDE_SORT_OID
from scim_ldap_gateway.core.errors import ConflictError, InfrastructureError, ResourceNotFoundError
from scim_ldap_gateway.ldap_client import (
    MODIFY_ADD,
    MODIFY_DELETE,
    MODIFY_REPLACE,
    ConnectionPool,
    DirectoryClient,
    DirectoryEntry,
    Modification,
    check_connection,
    name_with_entry_uuid_control,
    sort_control,
)
from scim_ldap_gateway.ldap_filter import Equality


@pytest.fixture
def conn():
    return FakeConnection()


@pytest.fixture
def client(conn):
    pool = ConnectionPool(lambda: conn, min_size=0, max_size=1, health_check_interval=0)
    return DirectoryClient(pool, size_limit=500, time_limit=10)


def last_call(conn):
    return conn.calls[-1]


def search_entry(dn, **attributes):
    return {
        "type": "searchResEntry",
        "dn": dn,
        "raw_attributes": {k: [v.encode() for v in vals] for k, vals in attributes.items()},
    }


# ---------------------------------------------------------------------------
# Entries and controls
# ---------------------------------------------------------------------------

def test_directory_entry_is_case_insensitive():
    entry = DirectoryEntry("uid=a", {"Mail": ["a@example.com", "b@example.com"]})
    assert entry.get("mail") == ["a@example.com", "b@example.com"]
    assert entry.first("MAIL") == "a@example.com"
    assert entry.has("mail")
    assert entry.get("cn") == []
    assert entry.first("cn") is None


def test_sort_control_is_ber_encoded():
    oid, critical, value = sort_control([("uid", True)])
    assert oid == SERVER_SIDE_SORT_OID
    assert critical is False
    assert value[:1] == b"\x30"
    assert b"\x04\x03uid" in value
    assert b"\x81\x01" in value
    assert b"\x81" not in sort_control([("uid", False)])[2]


def test_name_with_entry_uuid_control():
    assert name_with_entry_uuid_control() == (NAME_WITH_ENTRY_UUID_OID, True, None)


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

def test_search_decodes_entries(client, conn):
    conn.next_response = [
        search_entry("uid=a,ou=users", uid=["a"], cn=["Ann"]),
        {"type": "searchResRef", "uri": ["ldap://elsewhere"]},
    ]
    entries = client.search("ou=users", Equality("uid", "a"))

    assert [e.dn for e in entries] == ["uid=a,ou=users"]
    assert entries[0].first("CN") == "Ann"
    name, args = last_call(conn)
    assert name == "search"
    assert args["filter"] == "(uid=a)"
    assert args["scope"] == "SUBTREE"
    assert args["attributes"] == ["*"]
    assert args["size_limit"] == 500
    assert args["time_limit"] == 10
    assert args["controls"] is None


def test_search_with_sort_keys_sends_control(client, conn):
    client.search("ou=users", "(objectClass=*)", sort_keys=[("uid", False)], size_limit=5)
    _, args = last_call(conn)
    assert args["controls"][0][0] == SERVER_SIDE_SORT_OID
    assert args["size_limit"] == 5


def test_search_missing_base_is_empty(client, conn):
    conn.next_result = 32
    assert client.search("ou=missing", "(objectClass=*)") == []


def test_search_size_limit_returns_partial_result(client, conn):
    conn.next_result = 4
    conn.next_response = [search_entry("uid=a,ou=users", uid=["a"])]
    assert len(client.search("ou=users", "(objectClass=*)")) == 1


@pytest.mark.parametrize("code", [3, 50, 51, 80])
def test_search_failures_raise_infrastructure_error(client, conn, code):
    conn.next_result = code
    with pytest.raises(InfrastructureError) as excinfo:
        client.search("ou=users", "(objectClass=*)")
    assert excinfo.value.result_code == code


def test_get_entry_and_count(client, conn):
    conn.next_response = [search_entry("uid=a,ou=users", uid=["a"])]
    entry = client.get_entry("uid=a,ou=users", ["uid"])
    assert entry.dn == "uid=a,ou=users"
    _, args = last_call(conn)
    assert args["scope"] == "BASE"
    assert args["filter"] == "(objectClass=*)"
    assert args["size_limit"] == 1

    assert client.count("ou=users", "(objectClass=*)") == 1
    assert last_call(conn)[1]["attributes"] == ["1.1"]

    conn.next_response = []
    assert client.get_entry("uid=b,ou=users") is None


def test_communication_error_marks_session_defunct(client, conn):
    def broken_search(*args, **kwargs):
        raise LDAPCommunicationError("socket closed")

    conn.search = broken_search
    with pytest.raises(InfrastructureError):
        client.search("ou=users", "(objectClass=*)")
    stats = client.pool.stats()
    assert stats.closed_defunct == 1
    assert stats.in_use == 0
    assert conn.unbound


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def test_add_drops_empty_attributes_and_passes_controls(client, conn):
    client.add("uid=a,ou=users", {"uid": ["a"], "title": []}, controls=[name_with_entry_uuid_control()])
    name, args = last_call(conn)
    assert name == "add"
    assert args["attributes"] == {"uid": ["a"]}
    assert args["controls"] == [(NAME_WITH_ENTRY_UUID_OID, True, None)]


@pytest.mark.parametrize(
    "code,scim_type",
    [(68, "uniqueness"), (19, "uniqueness"), (21, "invalidValue"), (65, "invalidValue")],
)
def test_add_conflicts(client, conn, code, scim_type):
    conn.next_result = code
    with pytest.raises(ConflictError) as excinfo:
        client.add("uid=a,ou=users", {"uid": ["a"]})
    assert excinfo.value.result_code == code
    assert excinfo.value.scim_type == scim_type


def test_modify_groups_changes_by_attribute(client, conn):
    client.modify(
        "cn=g,ou=groups",
        [
            Modification(MODIFY_ADD, "member", ("uid=a",)),
            Modification(MODIFY_DELETE, "member", ("uid=b",)),
            Modification(MODIFY_REPLACE, "description", ()),
        ],
    )
    _, args = last_call(conn)
    assert args["changes"] == {
        "member": [(MODIFY_ADD, ["uid=a"]), (MODIFY_DELETE, ["uid=b"])],
        "description": [(MODIFY_REPLACE, [])],
    }


def test_modify_without_changes_is_a_no_op(client, conn):
    client.modify("cn=g,ou=groups", [])
    assert conn.calls == []


def test_modify_missing_entry(client, conn):
    conn.next_result = 32
    with pytest.raises(ResourceNotFoundError):
        client.modify("cn=g,ou=groups", [Modification(MODIFY_REPLACE, "cn", ("x",))])


def test_delete(client, conn):
    assert client.delete("uid=a,ou=users") is True
    conn.next_result = 32
    assert client.delete("uid=a,ou=users") is False
    conn.next_result = 66
    with pytest.raises(ConflictError):
        client.delete("ou=users")


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("code,healthy", [(0, True), (32, True), (1, False), (52, False)])
def test_check_connection(code, healthy):
    conn = FakeConnection(result=code)
    assert check_connection(conn, "dc=example,dc=com") is healthy
    _, args = conn.calls[-1]
    assert args["base"] == "dc=example,dc=com"
    assert args["scope"] == "BASE"
    assert args["attributes"] == ["1.1"]


def test_check_connection_on_closed_connection():
    conn = FakeConnection()
    conn.closed = True
    assert check_connection(conn) is False
    assert conn.calls == []
