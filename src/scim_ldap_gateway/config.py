"""Central configuration dataclass loaded from environment variables.

Every field reads its environment variable when the :class:`Config` is
constructed, so tests (and the console entry point) can adjust ``os.environ``
before building one.  Explicit keyword arguments override the environment.
"""
from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict

from .core.constants import (
    YES_VALUES,
    DEFAULT_LDAP_URL,
    DEFAULT_LDAP_BIND_DN,
    DEFAULT_LDAP_BASE_DN,
    DEFAULT_LDAP_USER_BASE_DN,
    DEFAULT_LDAP_GROUP_BASE_DN,
    DEFAULT_SCIM_BASE_URL,
    DEFAULT_POOL_MIN,
    DEFAULT_POOL_MAX,
    DEFAULT_POOL_MAX_AGE,
    DEFAULT_POOL_HEALTH_CHECK_INTERVAL,
    DEFAULT_POOL_CHECKOUT_TIMEOUT,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_RECEIVE_TIMEOUT,
    DEFAULT_SEARCH_SIZE_LIMIT,
    DEFAULT_SEARCH_TIME_LIMIT,
)


def _env_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return val in YES_VALUES


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_str(name: str, default: str) -> str:
    return os.getenv(name, default)


@dataclass(slots=True)
class Config:
    """Runtime configuration derived from environment variables."""

    # LDAP --------------------------------------------------------------
    ldap_url: str = field(default_factory=lambda: _env_str('LDAP_URL', DEFAULT_LDAP_URL))
    ldap_bind_dn: str = field(default_factory=lambda: _env_str('LDAP_BIND_DN', DEFAULT_LDAP_BIND_DN))
    ldap_bind_password: str = field(default_factory=lambda: _env_str('LDAP_BIND_PASSWORD', ''))
    ldap_base_dn: str = field(default_factory=lambda: _env_str('LDAP_BASE_DN', DEFAULT_LDAP_BASE_DN))
    ldap_user_base_dn: str = field(default_factory=lambda: _env_str('LDAP_USER_BASE_DN', DEFAULT_LDAP_USER_BASE_DN))
    ldap_group_base_dn: str = field(default_factory=lambda: _env_str('LDAP_GROUP_BASE_DN', DEFAULT_LDAP_GROUP_BASE_DN))
    use_entry_uuid_dn: bool = field(default_factory=lambda: _env_bool('LDAP_USE_ENTRY_UUID_DN', True))

    ignore_ldaps_cert: bool = field(default_factory=lambda: _env_bool('IGNORE_LDAPS_CERT', False))
    ldap_ca_file: str | None = field(default_factory=lambda: os.getenv('LDAP_CA_FILE') or None)
    connect_timeout: int = field(default_factory=lambda: _env_int('LDAP_CONNECT_TIMEOUT', DEFAULT_CONNECT_TIMEOUT))
    receive_timeout: int = field(default_factory=lambda: _env_int('LDAP_RECEIVE_TIMEOUT', DEFAULT_RECEIVE_TIMEOUT))

    # Pool --------------------------------------------------------------
    pool_min_size: int = field(default_factory=lambda: _env_int('LDAP_POOL_MIN', DEFAULT_POOL_MIN))
    pool_max_size: int = field(default_factory=lambda: _env_int('LDAP_POOL_MAX', DEFAULT_POOL_MAX))
    pool_max_age: int = field(default_factory=lambda: _env_int('LDAP_POOL_MAX_AGE', DEFAULT_POOL_MAX_AGE))
    pool_health_check_interval: int = field(
        default_factory=lambda: _env_int('LDAP_POOL_HEALTH_CHECK_INTERVAL', DEFAULT_POOL_HEALTH_CHECK_INTERVAL)
    )
    pool_checkout_timeout: int = field(
        default_factory=lambda: _env_int('LDAP_POOL_CHECKOUT_TIMEOUT', DEFAULT_POOL_CHECKOUT_TIMEOUT)
    )
    health_check_dn: str = field(default_factory=lambda: _env_str('LDAP_HEALTH_CHECK_DN', ''))

    # Search ------------------------------------------------------------
    search_size_limit: int = field(default_factory=lambda: _env_int('LDAP_SEARCH_SIZE_LIMIT', DEFAULT_SEARCH_SIZE_LIMIT))
    search_time_limit: int = field(default_factory=lambda: _env_int('LDAP_SEARCH_TIME_LIMIT', DEFAULT_SEARCH_TIME_LIMIT))

    # SCIM --------------------------------------------------------------
    scim_base_url: str = field(default_factory=lambda: _env_str('SCIM_BASE_URL', DEFAULT_SCIM_BASE_URL))

    # Misc --------------------------------------------------------------
    debug: str = field(default_factory=lambda: os.getenv('DEBUG', '').upper())

    def __post_init__(self) -> None:
        self.scim_base_url = self.scim_base_url.rstrip('/')
        if self.pool_min_size < 0:
            raise ValueError("LDAP_POOL_MIN must not be negative")
        if self.pool_max_size < 1:
            raise ValueError("LDAP_POOL_MAX must be at least 1")
        # a minimum above the maximum would make the pool refill forever
        if self.pool_min_size > self.pool_max_size:
            self.pool_min_size = self.pool_max_size

    def masked(self) -> Dict[str, Any]:
        """Return the configuration as a dict with secrets replaced by ``***``."""
        cfg_dict = asdict(self)
        for k in cfg_dict:
            if any(s in k.lower() for s in ("password", "secret", "token")):
                cfg_dict[k] = "***"
        return cfg_dict
