"""Pooled LDAP access built on *ldap3*.

Features
~~~~~~~~
* Connects using simple bind (service account DN/password), ``ldaps://`` with
  optional certificate ignore or CA file.
* :class:`ConnectionPool` – thread-safe pool of bound connections with a
  minimum/maximum size, a maximum connection age, a checkout timeout and a
  background health check (base read of the root DSE, or of
  ``LDAP_HEALTH_CHECK_DN``).  Sessions are also checked on release and
  discarded after an I/O error; the pool is refilled up to its minimum.
* :class:`DirectoryClient` – ``search`` / ``get_entry`` / ``count`` /
  ``add`` / ``modify`` / ``delete``, each over exactly one pooled session.
  ldap3 result codes and exceptions are mapped onto
  :mod:`scim_ldap_gateway.core.errors`; nothing from ldap3 leaks out.
* Server side sort request control (RFC 2891), BER-encoded with *pyasn1*.

Entries are returned as :class:`DirectoryEntry` instances whose attribute map
is case-insensitive and holds ``list[str]`` values.
"""
from __future__ import annotations

import logging
import ssl
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterator, List, Mapping, Sequence, Set, Tuple

from ldap3 import BASE, MODIFY_ADD, MODIFY_DELETE, MODIFY_REPLACE, SUBTREE, SYNC, Connection, Server, Tls
from ldap3.core.exceptions import LDAPBindError, LDAPCommunicationError, LDAPException
from ldap3.utils.ciDict import CaseInsensitiveDict
from pyasn1.codec.ber import encoder as ber_encoder
from pyasn1.type import namedtype, tag, univ

from .core.constants import NAME_WITH_ENTRY_UUID_OID, NO_ATTRIBUTES, SERVER_SIDE_SORT_OID
from .core.errors import (
    ConflictError,
    InfrastructureError,
    PoolExhaustedError,
    ResourceNotFoundError,
)
from .ldap_filter import LdapFilter, Presence

logger = logging.getLogger("scim_ldap_gateway.ldap")

__all__ = [
    "DirectoryEntry",
    "Modification",
    "PoolStats",
    "PooledSession",
    "ConnectionPool",
    "DirectoryClient",
    "build_connection_factory",
    "check_connection",
    "sort_control",
    "name_with_entry_uuid_control",
    "MODIFY_ADD",
    "MODIFY_DELETE",
    "MODIFY_REPLACE",
]

Control = Tuple[str, bool, "bytes | None"]

# ldap3 result codes
RESULT_SUCCESS = 0
RESULT_TIME_LIMIT_EXCEEDED = 3
RESULT_SIZE_LIMIT_EXCEEDED = 4
RESULT_NO_SUCH_OBJECT = 32

_CONFLICT_CODES = {
    16: "noSuchAttribute",
    17: "undefinedAttributeType",
    19: "constraintViolation",
    20: "attributeOrValueExists",
    21: "invalidAttributeSyntax",
    64: "namingViolation",
    65: "objectClassViolation",
    66: "notAllowedOnNonLeaf",
    67: "notAllowedOnRDN",
    68: "entryAlreadyExists",
    69: "objectClassModsProhibited",
}
# attribute level rejections surface as invalid values rather than uniqueness clashes
_INVALID_VALUE_CODES = {16, 17, 21, 65, 67, 69}


# Model -----------------------------------------------------------------------


@dataclass(slots=True)
class DirectoryEntry:
    dn: str
    attributes: Mapping[str, List[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.attributes, CaseInsensitiveDict):
            self.attributes = CaseInsensitiveDict(
                {k: [str(v) for v in vals] for k, vals in dict(self.attributes).items()}
            )

    def get(self, name: str) -> List[str]:
        if name in self.attributes:
            return list(self.attributes[name])
        return []

    def first(self, name: str) -> str | None:
        values = self.get(name)
        return values[0] if values else None

    def has(self, name: str) -> bool:
        return bool(self.get(name))

    def __repr__(self) -> str:  # pragma: no cover – cosmetic
        return f"DirectoryEntry(dn={self.dn!r}, attributes={len(self.attributes)} items)"


@dataclass(frozen=True, slots=True)
class Modification:
    """One change of a modify request; *operation* is an ldap3 ``MODIFY_*`` constant."""

    operation: str
    attribute: str
    values: Tuple[str, ...] = ()


# Controls --------------------------------------------------------------------


class _SortKey(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("attributeType", univ.OctetString()),
        namedtype.OptionalNamedType(
            "orderingRule",
            univ.OctetString().subtype(implicitTag=tag.Tag(tag.tagClassContext, tag.tagFormatSimple, 0)),
        ),
        namedtype.DefaultedNamedType(
            "reverseOrder",
            univ.Boolean(False).subtype(implicitTag=tag.Tag(tag.tagClassContext, tag.tagFormatSimple, 1)),
        ),
    )


class _SortKeyList(univ.SequenceOf):
    componentType = _SortKey()


def sort_control(keys: Sequence[Tuple[str, bool]], criticality: bool = False) -> Control:
    """Server side sort request control for ``[(attribute, reverse), ...]``."""
    key_list = _SortKeyList()
    for idx, (attribute, reverse) in enumerate(keys):
        key = _SortKey()
        key["attributeType"] = attribute
        if reverse:
            key["reverseOrder"] = True
        key_list.setComponentByPosition(idx, key)
    return (SERVER_SIDE_SORT_OID, criticality, ber_encoder.encode(key_list))


def name_with_entry_uuid_control() -> Control:
    """Ask the server to name the new entry ``entryUUID=<generated>,<parent>``."""
    return (NAME_WITH_ENTRY_UUID_OID, True, None)


# Helper ----------------------------------------------------------------------


def _build_server(
    host: str,
    ignore_cert: bool = False,
    ca_file: str | None = None,
    connect_timeout: int | float | None = None,
) -> Server:
    """Build an ldap3 :class:`Server` with correct TLS settings."""
    use_ssl = host.lower().startswith("ldaps://")
    clean_host = host.replace("ldap://", "").replace("ldaps://", "").rstrip("/")

    tls: Tls | None = None
    if use_ssl:
        if ignore_cert:
            tls = Tls(validate=ssl.CERT_NONE)
        elif ca_file:
            tls = Tls(validate=ssl.CERT_REQUIRED, ca_certs_file=ca_file)
    return Server(clean_host, use_ssl=use_ssl, get_info=None, tls=tls, connect_timeout=connect_timeout)


def build_connection_factory(config: Any) -> Callable[[], Connection]:
    """Return a callable producing bound SYNC connections for *config*."""
    server = _build_server(
        config.ldap_url,
        ignore_cert=config.ignore_ldaps_cert,
        ca_file=config.ldap_ca_file,
        connect_timeout=config.connect_timeout,
    )

    def _connect() -> Connection:
        try:
            return Connection(
                server,
                user=config.ldap_bind_dn,
                password=config.ldap_bind_password,
                client_strategy=SYNC,
                auto_bind=True,
                raise_exceptions=False,
                receive_timeout=config.receive_timeout,
            )
        except LDAPBindError as exc:
            logger.error(f"LDAP bind as {config.ldap_bind_dn} failed: {exc}")
            raise InfrastructureError(f"LDAP bind failed: {exc}") from exc
        except LDAPException as exc:
            logger.error(f"Cannot connect to {config.ldap_url}: {exc}")
            raise InfrastructureError(f"LDAP connection failed: {exc}") from exc

    return _connect


def check_connection(conn: Any, dn: str = "") -> bool:
    """Base-scope read of *dn* requesting no attributes; ``True`` when the session answers."""
    if getattr(conn, "closed", False):
        return False
    try:
        conn.search(dn, "(objectClass=*)", search_scope=BASE, attributes=[NO_ATTRIBUTES], size_limit=1)
    except LDAPException as exc:
        logger.debug(f"Health check failed: {exc}")
        return False
    code = (conn.result or {}).get("result")
    return code in (RESULT_SUCCESS, RESULT_NO_SUCH_OBJECT)


def _close_connection(conn: Any) -> None:
    try:
        conn.unbind()
    except LDAPException as exc:
        logger.debug(f"Ignoring error while closing LDAP connection: {exc}")


# Pool ------------------------------------------------------------------------


@dataclass(slots=True)
class PoolStats:
    max_size: int
    min_size: int
    in_use: int
    available: int
    total_created: int
    closed_defunct: int
    closed_expired: int
    successful_checkouts: int
    failed_checkouts: int

    def __str__(self) -> str:
        return (
            f"LDAP pool: available={self.available}, in_use={self.in_use}, max={self.max_size}, "
            f"checkouts ok={self.successful_checkouts} failed={self.failed_checkouts}, "
            f"closed defunct={self.closed_defunct} expired={self.closed_expired}"
        )


class PooledSession:
    """A connection owned by a :class:`ConnectionPool`."""

    _counter = 0
    _counter_lock = threading.Lock()

    def __init__(self, connection: Any, created_at: float | None = None) -> None:
        with PooledSession._counter_lock:
            PooledSession._counter += 1
            self.session_id = PooledSession._counter
        self.connection = connection
        self.created_at = created_at if created_at is not None else time.monotonic()
        self.defunct = False

    def expired(self, max_age: float, now: float | None = None) -> bool:
        if max_age <= 0:
            return False
        return ((now if now is not None else time.monotonic()) - self.created_at) >= max_age

    def __hash__(self) -> int:
        return hash(self.session_id)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, PooledSession) and other.session_id == self.session_id


class ConnectionPool:
    """Thread-safe pool of directory sessions.

    ``factory`` creates a bound connection, ``health_check`` returns whether
    a connection is still usable and ``closer`` disposes of one.  All three
    are injectable so the pool can be exercised without a directory.
    Connection creation, health checks and closing run without the pool lock.
    """

    def __init__(
        self,
        factory: Callable[[], Any],
        *,
        min_size: int = 2,
        max_size: int = 10,
        max_age: float = 3600,
        checkout_timeout: float = 10,
        health_check_interval: float = 60,
        health_check: Callable[[Any], bool] | None = None,
        closer: Callable[[Any], None] = _close_connection,
        check_on_release: bool = True,
        defunct_errors: Tuple[type, ...] = (LDAPCommunicationError, OSError),
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.min_size = max(0, min(min_size, max_size))
        self.max_size = max_size
        self.max_age = max_age
        self.checkout_timeout = checkout_timeout
        self.health_check_interval = health_check_interval
        self._factory = factory
        self._health_check = health_check
        self._closer = closer
        self._check_on_release = check_on_release
        self._defunct_errors = defunct_errors

        self._lock = threading.RLock()
        self._available = threading.Condition(self._lock)
        self._idle: Deque[PooledSession] = deque()
        self._in_use: Set[PooledSession] = set()
        self._creating = 0
        self._closed = False
        self._stop = threading.Event()
        self._health_thread: threading.Thread | None = None

        self._total_created = 0
        self._closed_defunct = 0
        self._closed_expired = 0
        self._successful_checkouts = 0
        self._failed_checkouts = 0

    # Lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Open ``min_size`` sessions and start the background health check."""
        self.fill()
        if self.health_check_interval and self.health_check_interval > 0 and self._health_thread is None:
            self._health_thread = threading.Thread(
                target=self._health_loop, name="ldap-pool-health", daemon=True
            )
            self._health_thread.start()
        logger.info(f"LDAP connection pool started with {self.min_size} initial connections, max {self.max_size}")

    def close(self) -> None:
        self._stop.set()
        thread = self._health_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)
        self._health_thread = None
        with self._available:
            self._closed = True
            idle = list(self._idle)
            self._idle.clear()
            self._available.notify_all()
        for session in idle:
            self._closer(session.connection)
        logger.info("LDAP connection pool closed")

    @property
    def closed(self) -> bool:
        return self._closed

    # Checkout ----------------------------------------------------------

    def acquire(self, timeout: float | None = None) -> PooledSession:
        """Check out a session, waiting up to *timeout* (default ``checkout_timeout``)."""
        wait_for = self.checkout_timeout if timeout is None else timeout
        deadline = time.monotonic() + max(0.0, wait_for)
        expired: List[PooledSession] = []
        try:
            with self._available:
                while True:
                    if self._closed:
                        self._failed_checkouts += 1
                        raise InfrastructureError("LDAP connection pool is closed")
                    now = time.monotonic()
                    while self._idle:
                        session = self._idle.popleft()
                        if session.expired(self.max_age, now):
                            self._closed_expired += 1
                            expired.append(session)
                            continue
                        self._in_use.add(session)
                        self._successful_checkouts += 1
                        return session
                    if len(self._in_use) + self._creating < self.max_size:
                        self._creating += 1
                        break
                    remaining = deadline - now
                    if remaining <= 0:
                        self._failed_checkouts += 1
                        raise PoolExhaustedError(
                            f"No LDAP connection available within {wait_for}s (max {self.max_size})"
                        )
                    self._available.wait(remaining)
        finally:
            for session in expired:
                self._closer(session.connection)

        try:
            connection = self._factory()
        except Exception:
            with self._available:
                self._creating -= 1
                self._failed_checkouts += 1
                self._available.notify()
            raise
        session = PooledSession(connection)
        with self._available:
            self._creating -= 1
            self._total_created += 1
            self._in_use.add(session)
            self._successful_checkouts += 1
        return session

    def release(self, session: PooledSession, *, defunct: bool = False) -> None:
        """Return *session*; unhealthy, defunct or expired sessions are closed."""
        healthy = not (defunct or session.defunct)
        if healthy and self._check_on_release and self._health_check is not None and not self._closed:
            healthy = self._run_health_check(session)
        discard = False
        with self._available:
            self._in_use.discard(session)
            if self._closed or not healthy:
                discard = True
                if not healthy:
                    self._closed_defunct += 1
            elif session.expired(self.max_age):
                discard = True
                self._closed_expired += 1
            else:
                self._idle.append(session)
            self._available.notify()
        if discard:
            self._closer(session.connection)

    @contextmanager
    def connection(self, timeout: float | None = None) -> Iterator[Any]:
        """Check out a connection for the duration of the ``with`` block."""
        session = self.acquire(timeout)
        try:
            yield session.connection
        except self._defunct_errors:
            session.defunct = True
            raise
        finally:
            self.release(session)

    # Health ------------------------------------------------------------

    def _run_health_check(self, session: PooledSession) -> bool:
        try:
            return bool(self._health_check(session.connection))
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"LDAP health check raised {exc!r}; discarding connection")
            return False

    def check_idle(self) -> None:
        """Health-check every idle session, drop failures and refill to ``min_size``."""
        with self._available:
            if self._closed:
                return
            candidates = list(self._idle)
            self._idle.clear()
            self._in_use.update(candidates)
        now = time.monotonic()
        for session in candidates:
            if session.expired(self.max_age, now):
                with self._available:
                    self._in_use.discard(session)
                    self._closed_expired += 1
                    self._available.notify()
                self._closer(session.connection)
                continue
            healthy = self._health_check is None or self._run_health_check(session)
            if not healthy:
                logger.warning(f"Discarding unhealthy LDAP connection #{session.session_id}")
            with self._available:
                self._in_use.discard(session)
                if healthy and not self._closed:
                    self._idle.append(session)
                else:
                    self._closed_defunct += 1
                self._available.notify()
            if not healthy:
                self._closer(session.connection)
        self.fill()

    def fill(self) -> None:
        """Create sessions until ``min_size`` exist."""
        while True:
            with self._available:
                total = len(self._idle) + len(self._in_use) + self._creating
                if self._closed or total >= self.min_size:
                    return
                self._creating += 1
            try:
                connection = self._factory()
            except Exception:
                with self._available:
                    self._creating -= 1
                raise
            with self._available:
                self._creating -= 1
                self._total_created += 1
                self._idle.append(PooledSession(connection))
                self._available.notify()

    def _health_loop(self) -> None:
        while not self._stop.wait(self.health_check_interval):
            try:
                self.check_idle()
            except Exception as exc:  # noqa: BLE001
                logger.error(f"LDAP pool health check cycle failed: {exc}")

    def stats(self) -> PoolStats:
        with self._lock:
            return PoolStats(
                max_size=self.max_size,
                min_size=self.min_size,
                in_use=len(self._in_use),
                available=len(self._idle),
                total_created=self._total_created,
                closed_defunct=self._closed_defunct,
                closed_expired=self._closed_expired,
                successful_checkouts=self._successful_checkouts,
                failed_checkouts=self._failed_checkouts,
            )


# Directory operations --------------------------------------------------------


def _decode(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def _entries_from_response(response: Sequence[Mapping[str, Any]] | None) -> List[DirectoryEntry]:
    entries: List[DirectoryEntry] = []
    for item in response or ():
        if item.get("type") != "searchResEntry":
            continue
        raw = item.get("raw_attributes") or {}
        attributes = CaseInsensitiveDict()
        for name, values in raw.items():
            if isinstance(values, (bytes, bytearray, str)):
                values = [values]
            attributes[name] = [_decode(v) for v in values]
        entries.append(DirectoryEntry(dn=item.get("dn", ""), attributes=attributes))
    return entries


class DirectoryClient:
    """Directory operations over a :class:`ConnectionPool`."""

    def __init__(self, pool: ConnectionPool, *, size_limit: int = 1000, time_limit: int = 30) -> None:
        self.pool = pool
        self.size_limit = size_limit
        self.time_limit = time_limit

    # Helper ------------------------------------------------------------

    def _raise_for_result(self, conn: Any, operation: str, dn: str) -> None:
        result = conn.result or {}
        code = result.get("result", RESULT_SUCCESS)
        if code == RESULT_SUCCESS:
            return
        description = result.get("description") or ""
        message = result.get("message") or ""
        text = f"LDAP {operation} on {dn!r} failed: {description} ({code}) {message}".strip()
        if code == RESULT_NO_SUCH_OBJECT:
            raise ResourceNotFoundError("entry", dn)
        if code in _CONFLICT_CODES:
            logger.warning(text)
            scim_type = "invalidValue" if code in _INVALID_VALUE_CODES else None
            raise ConflictError(text, result_code=code, scim_type=scim_type)
        logger.error(text)
        raise InfrastructureError(text, result_code=code)

    @contextmanager
    def _session(self, operation: str, dn: str) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except LDAPCommunicationError as exc:
            logger.error(f"LDAP {operation} on {dn!r}: connection failure: {exc}")
            raise InfrastructureError(f"LDAP {operation} failed: {exc}") from exc
        except LDAPException as exc:
            logger.error(f"LDAP {operation} on {dn!r}: {exc}")
            raise InfrastructureError(f"LDAP {operation} failed: {exc}") from exc

    # Reads -------------------------------------------------------------

    def search(
        self,
        base_dn: str,
        search_filter: LdapFilter | str,
        *,
        scope: str = SUBTREE,
        attributes: Sequence[str] | None = None,
        size_limit: int | None = None,
        time_limit: int | None = None,
        sort_keys: Sequence[Tuple[str, bool]] | None = None,
    ) -> List[DirectoryEntry]:
        """Run one search; a missing base yields ``[]``, a hit size limit yields the partial result."""
        filter_text = str(search_filter)
        controls = [sort_control(sort_keys)] if sort_keys else None
        limit = self.size_limit if size_limit is None else size_limit
        seconds = self.time_limit if time_limit is None else time_limit
        logger.debug(f"Searching {base_dn} ({scope}) with filter: {filter_text} and attributes: {attributes}")
        with self._session("search", base_dn) as conn:
            conn.search(
                search_base=base_dn,
                search_filter=filter_text,
                search_scope=scope,
                attributes=list(attributes) if attributes else ["*"],
                size_limit=limit,
                time_limit=seconds,
                controls=controls,
            )
            code = (conn.result or {}).get("result", RESULT_SUCCESS)
            if code == RESULT_NO_SUCH_OBJECT:
                return []
            if code == RESULT_SIZE_LIMIT_EXCEEDED:
                entries = _entries_from_response(conn.response)
                logger.warning(f"Size limit {limit} exceeded searching {base_dn}; returning {len(entries)} entries")
                return entries
            if code == RESULT_TIME_LIMIT_EXCEEDED:
                raise InfrastructureError(f"LDAP search under {base_dn!r} exceeded {seconds}s", result_code=code)
            self._raise_for_result(conn, "search", base_dn)
            return _entries_from_response(conn.response)

    def get_entry(self, dn: str, attributes: Sequence[str] | None = None) -> DirectoryEntry | None:
        entries = self.search(dn, Presence("objectClass"), scope=BASE, attributes=attributes, size_limit=1)
        return entries[0] if entries else None

    def count(self, base_dn: str, search_filter: LdapFilter | str) -> int:
        return len(self.search(base_dn, search_filter, attributes=[NO_ATTRIBUTES]))

    # Writes ------------------------------------------------------------

    def add(
        self,
        dn: str,
        attributes: Mapping[str, Sequence[str]],
        controls: Sequence[Control] | None = None,
    ) -> None:
        payload = {k: list(v) for k, v in attributes.items() if v}
        logger.debug(f"Adding {dn} with attributes: {sorted(payload)}")
        with self._session("add", dn) as conn:
            conn.add(dn, attributes=payload, controls=list(controls) if controls else None)
            self._raise_for_result(conn, "add", dn)

    def modify(self, dn: str, modifications: Sequence[Modification]) -> None:
        if not modifications:
            return
        changes: Dict[str, List[Tuple[str, List[str]]]] = {}
        for mod in modifications:
            changes.setdefault(mod.attribute, []).append((mod.operation, list(mod.values)))
        logger.debug(f"Modifying {dn}: {[(m.operation, m.attribute, len(m.values)) for m in modifications]}")
        with self._session("modify", dn) as conn:
            conn.modify(dn, changes)
            self._raise_for_result(conn, "modify", dn)

    def delete(self, dn: str) -> bool:
        """Delete *dn*; ``False`` when it did not exist."""
        with self._session("delete", dn) as conn:
            conn.delete(dn)
            if (conn.result or {}).get("result") == RESULT_NO_SUCH_OBJECT:
                return False
            self._raise_for_result(conn, "delete", dn)
            return True
