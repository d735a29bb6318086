"""Shared constants across the application."""

# Truth value strings
YES_VALUES = ('1', 'TRUE', 'YES', 'ON', 'true', 'yes', 'on')

# Default endpoints
DEFAULT_LDAP_URL = 'ldap://localhost:1389'
DEFAULT_LDAP_BIND_DN = 'cn=Directory Manager'
DEFAULT_LDAP_BASE_DN = 'dc=example,dc=com'
DEFAULT_LDAP_USER_BASE_DN = 'ou=users,dc=example,dc=com'
DEFAULT_LDAP_GROUP_BASE_DN = 'ou=groups,dc=example,dc=com'
DEFAULT_SCIM_BASE_URL = '/scim/v2'

# Pool defaults (seconds where applicable)
DEFAULT_POOL_MIN = 2
DEFAULT_POOL_MAX = 10
DEFAULT_POOL_MAX_AGE = 3600
DEFAULT_POOL_HEALTH_CHECK_INTERVAL = 60
DEFAULT_POOL_CHECKOUT_TIMEOUT = 10
DEFAULT_CONNECT_TIMEOUT = 5
DEFAULT_RECEIVE_TIMEOUT = 30

# Search defaults
DEFAULT_SEARCH_SIZE_LIMIT = 1000
DEFAULT_SEARCH_TIME_LIMIT = 30

# Resource kinds
USER = 'User'
GROUP = 'Group'

# SCIM schema URNs
USER_SCHEMA = 'urn:ietf:params:scim:schemas:core:2.0:User'
GROUP_SCHEMA = 'urn:ietf:params:scim:schemas:core:2.0:Group'
ENTERPRISE_USER_SCHEMA = 'urn:ietf:params:scim:schemas:extension:enterprise:2.0:User'

# Object classes
USER_OBJECT_CLASSES = ['top', 'person', 'organizationalPerson', 'inetOrgPerson', 'scimUser']
GROUP_OBJECT_CLASSES = ['top', 'groupOfNames', 'scimGroup']
USER_KIND_OBJECT_CLASS = 'scimUser'
GROUP_KIND_OBJECT_CLASS = 'scimGroup'

# Identity / operational attributes
ENTRY_UUID_ATTR = 'entryUUID'
CREATE_TIMESTAMP_ATTR = 'createTimestamp'
MODIFY_TIMESTAMP_ATTR = 'modifyTimestamp'
OPERATIONAL_ATTRS = [ENTRY_UUID_ATTR, CREATE_TIMESTAMP_ATTR, MODIFY_TIMESTAMP_ATTR]

MEMBER_ATTR = 'member'
MEMBER_OF_ATTR = 'memberOf'
USER_NAMING_ATTR = 'uid'
GROUP_NAMING_ATTR = 'cn'

# Fallback value for MUST attributes of the person object class
UNKNOWN_VALUE = 'Unknown'

# UnboundID / PingDirectory "name with entryUUID" request control
NAME_WITH_ENTRY_UUID_OID = '1.3.6.1.4.1.30221.2.5.44'
# RFC 2891 server side sort request control
SERVER_SIDE_SORT_OID = '1.2.840.113556.1.4.473'
# PingDirectory JSON object filter matching rule
JSON_MATCHING_RULE = 'jsonObjectFilterExtensibleMatch'

# Requests no attributes at all (RFC 4511 4.5.1.8)
NO_ATTRIBUTES = '1.1'
