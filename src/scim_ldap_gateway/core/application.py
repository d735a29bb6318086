"""Main application class for the SCIM ↔ LDAP gateway.

This module provides the central Application class that wires configuration,
the connection pool, identity resolution, attribute mapping, filter
translation and the repository together, and owns their lifecycle.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..attribute_mapper import AttributeMapper
from ..config import Config
from ..core.constants import GROUP, USER
from ..core.errors import ScimLdapError
from ..filter_translator import FilterTranslator
from ..ldap_client import ConnectionPool, DirectoryClient, PoolStats, build_connection_factory, check_connection
from ..naming import IdentityResolver
from ..repository import DirectoryRepository

logger = logging.getLogger(__name__)


@dataclass
class HealthReport:
    """Result of a connectivity check against the directory."""
    success: bool
    pool: Optional[PoolStats]
    counts: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    duration: float = 0.0
    timestamp: float = 0.0


@dataclass
class Application:
    """Composition root for the gateway.

    Example:
        with Application(config=Config()) as app:
            user = app.repository.get_user(user_id)

    ``connection_factory`` replaces the ldap3 connection factory, which lets
    tests run the whole stack against fake connections.
    """
    config: Config
    connection_factory: Optional[Callable[[], Any]] = None

    def __post_init__(self):
        """Initialize application after dataclass creation."""
        self.logger = logging.getLogger(f"{__name__}.Application")
        self.pool: Optional[ConnectionPool] = None
        self.client: Optional[DirectoryClient] = None
        self.resolver: Optional[IdentityResolver] = None
        self.mapper: Optional[AttributeMapper] = None
        self.translators: Dict[str, FilterTranslator] = {}
        self._repository: Optional[DirectoryRepository] = None

    @property
    def repository(self) -> DirectoryRepository:
        if self._repository is None:
            raise RuntimeError("Application has not been started")
        return self._repository

    @property
    def started(self) -> bool:
        return self._repository is not None

    def start(self) -> "Application":
        """Open the connection pool and build the component graph."""
        if self.started:
            return self
        cfg = self.config
        self.logger.info(f"Starting SCIM LDAP gateway against {cfg.ldap_url}")
        self.logger.debug(f"Configuration: {cfg.masked()}")

        health_dn = cfg.health_check_dn
        self.pool = ConnectionPool(
            self.connection_factory or build_connection_factory(cfg),
            min_size=cfg.pool_min_size,
            max_size=cfg.pool_max_size,
            max_age=cfg.pool_max_age,
            checkout_timeout=cfg.pool_checkout_timeout,
            health_check_interval=cfg.pool_health_check_interval,
            health_check=lambda conn: check_connection(conn, health_dn),
        )
        self.pool.start()

        self.client = DirectoryClient(self.pool, size_limit=cfg.search_size_limit, time_limit=cfg.search_time_limit)
        self.resolver = IdentityResolver(self.client, cfg)
        self.mapper = AttributeMapper(
            base_url=cfg.scim_base_url,
            dn_to_id=self.resolver.resolve_dn_to_id,
            id_to_dn=self.resolver.member_dn,
            member_type=self.resolver.member_type,
        )
        self.translators = {
            kind: FilterTranslator(kind, resolve_id=self.resolver.resolve_id_to_dn) for kind in (USER, GROUP)
        }
        self._repository = DirectoryRepository(
            self.client, self.resolver, self.mapper, cfg, translators=self.translators
        )
        self.logger.info(f"Gateway started ({self.pool.stats()})")
        return self

    def close(self) -> None:
        """Gracefully shutdown the application."""
        if self.pool is not None:
            self.logger.info("Application shutdown requested")
            self.pool.close()
        self._repository = None

    def __enter__(self) -> "Application":
        return self.start()

    def __exit__(self, *exc_info) -> None:
        self.close()

    def health_report(self) -> HealthReport:
        """Check one pooled session and count the users and groups visible to the gateway."""
        start_time = time.time()
        errors: List[str] = []
        counts: Dict[str, int] = {}
        if not self.started:
            self.start()
        try:
            with self.pool.connection() as conn:
                if not check_connection(conn, self.config.health_check_dn):
                    errors.append(f"Health check read of {self.config.health_check_dn or 'root DSE'} failed")
            if not errors:
                counts[USER] = self.repository.count_users()
                counts[GROUP] = self.repository.count_groups()
        except ScimLdapError as exc:
            self.logger.error(f"Health check failed: {exc}")
            errors.append(str(exc))

        duration = time.time() - start_time
        report = HealthReport(
            success=not errors,
            pool=self.pool.stats() if self.pool is not None else None,
            counts=counts,
            errors=errors,
            duration=duration,
            timestamp=start_time,
        )
        if report.success:
            self.logger.info(
                f"Directory healthy in {duration:.2f}s: {counts.get(USER, 0)} users, {counts.get(GROUP, 0)} groups"
            )
        return report
