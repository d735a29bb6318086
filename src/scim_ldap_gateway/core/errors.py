"""Error taxonomy shared by every layer of the gateway.

Callers (the REST layer) branch on the class, not on messages:

* :class:`InvalidInputError` – the request itself is wrong (bad filter, bad
  patch path or value).  Never retryable.
* :class:`ResourceNotFoundError` – the id does not resolve to an entry.
* :class:`ConflictError` – the directory rejected a write because of a
  constraint.  Carries the LDAP result code.
* :class:`InfrastructureError` – the directory could not be reached, timed
  out, or the pool is exhausted.  Retryable at the caller's discretion.

Reads of a missing id return ``None`` and deletes return ``False``; the
not-found exception is reserved for writes that need an existing entry.
"""
from __future__ import annotations

__all__ = [
    "ScimLdapError",
    "InvalidInputError",
    "InvalidFilterError",
    "InvalidPatchError",
    "ResourceNotFoundError",
    "ConflictError",
    "InfrastructureError",
    "PoolExhaustedError",
]


class ScimLdapError(Exception):
    """Base class for all gateway errors."""

    scim_type: str | None = None

    def __init__(self, message: str, *, scim_type: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if scim_type is not None:
            self.scim_type = scim_type


class InvalidInputError(ScimLdapError):
    scim_type = "invalidValue"


class InvalidFilterError(InvalidInputError):
    scim_type = "invalidFilter"


class InvalidPatchError(InvalidInputError):
    scim_type = "invalidPath"


class ResourceNotFoundError(ScimLdapError):
    def __init__(self, resource_type: str, resource_id: str) -> None:
        super().__init__(f"{resource_type} not found: {resource_id}")
        self.resource_type = resource_type
        self.resource_id = resource_id


class ConflictError(ScimLdapError):
    scim_type = "uniqueness"

    def __init__(self, message: str, *, result_code: int | None = None, scim_type: str | None = None) -> None:
        super().__init__(message, scim_type=scim_type)
        self.result_code = result_code


class InfrastructureError(ScimLdapError):
    """Directory unreachable, timed out or otherwise unavailable."""

    def __init__(self, message: str, *, result_code: int | None = None) -> None:
        super().__init__(message)
        self.result_code = result_code


class PoolExhaustedError(InfrastructureError):
    pass
