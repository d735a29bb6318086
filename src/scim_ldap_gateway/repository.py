"""Directory repository – SCIM CRUD, patch and search over LDAP.

Every public method performs one logical SCIM operation as a short sequence
of directory calls (resolve, read, write, reread).  The sequence is not
transactional; a failure between steps is raised to the caller as is.

Group membership patches are translated into incremental ``member`` value
changes so that adding or removing one member never rewrites the whole
membership list.  All other patch operations are applied to the SCIM form of
the resource in memory and written back by replacing the directory
attributes owned by the touched SCIM attributes.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence, Set, Tuple, Union

from .attribute_mapper import (
    GROUP_ATTRIBUTE_OWNERS,
    GROUP_MANAGED_ATTRIBUTES,
    OBJECT_CLASS,
    USER_ATTRIBUTE_OWNERS,
    USER_MANAGED_ATTRIBUTES,
    VERSION_ATTR,
    AttributeMapper,
)
from .core.constants import (
    ENTRY_UUID_ATTR,
    GROUP,
    GROUP_KIND_OBJECT_CLASS,
    GROUP_NAMING_ATTR,
    MEMBER_ATTR,
    MEMBER_OF_ATTR,
    OPERATIONAL_ATTRS,
    USER,
    USER_KIND_OBJECT_CLASS,
    USER_NAMING_ATTR,
)
from .core.errors import (
    InfrastructureError,
    InvalidFilterError,
    InvalidInputError,
    InvalidPatchError,
    ResourceNotFoundError,
)
from .filter_translator import FilterTranslator
from .ldap_client import (
    MODIFY_ADD,
    MODIFY_DELETE,
    MODIFY_REPLACE,
    DirectoryClient,
    DirectoryEntry,
    Modification,
    name_with_entry_uuid_control,
)
from .ldap_filter import Equality, build_object_class_filter
from .models import Group, User
from .naming import IdentityResolver, build_dn_from_id, build_placeholder_dn, normalize_dn, rdn_attribute
from .patch import PatchOperation, PatchOp, ScalarValue, StructListValue, StructValue, apply_operations, member_ids_from_filter
from .projection import ldap_attributes_for, paginate, project, resolve_field
from .scim_filter import matches

logger = logging.getLogger("scim_ldap_gateway.repository")

__all__ = ["DirectoryRepository", "SearchRequest", "SearchResult", "new_version"]

LIST_RESPONSE_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:ListResponse"

Resource = Union[User, Group]
PatchInput = Union[PatchOperation, Mapping[str, Any]]


def new_version() -> str:
    """Weak entity tag stored in ``scimVersion`` on every write."""
    return f'W/"{uuid.uuid4().hex}"'


def _from_dict(model: Any, data: Mapping[str, Any]) -> Resource:
    """Build *model* from its SCIM JSON form; malformed values are input errors."""
    try:
        return model.from_dict(dict(data))
    except (ValueError, TypeError) as exc:
        raise InvalidInputError(f"Invalid {model.__name__} resource: {exc}") from exc


# Requests / results ----------------------------------------------------------


@dataclass(slots=True)
class SearchRequest:
    filter: str | None = None
    sort_by: str | None = None
    sort_order: str | None = None
    attributes: List[str] | None = None
    excluded_attributes: List[str] | None = None
    start_index: int | None = 1
    count: int | None = None

    @property
    def descending(self) -> bool:
        return (self.sort_order or "").strip().lower() == "descending"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SearchRequest":
        """Build from a ``SearchRequest`` message body or query parameters."""
        lowered = {str(k).lower(): v for k, v in data.items()}

        def _list(value: Any) -> List[str] | None:
            if value is None:
                return None
            if isinstance(value, str):
                return [v.strip() for v in value.split(",") if v.strip()]
            return [str(v) for v in value]

        def _int(name: str, value: Any) -> int | None:
            if value is None or value == "":
                return None
            try:
                return int(value)
            except (TypeError, ValueError):
                raise InvalidInputError(f"{name} must be an integer, got {value!r}") from None

        return cls(
            filter=lowered.get("filter"),
            sort_by=lowered.get("sortby"),
            sort_order=lowered.get("sortorder"),
            attributes=_list(lowered.get("attributes")),
            excluded_attributes=_list(lowered.get("excludedattributes")),
            start_index=_int("startIndex", lowered.get("startindex")),
            count=_int("count", lowered.get("count")),
        )


@dataclass(slots=True)
class SearchResult:
    resources: List[Resource] = field(default_factory=list)
    total_results: int = 0
    start_index: int = 1
    items_per_page: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schemas": [LIST_RESPONSE_SCHEMA],
            "totalResults": self.total_results,
            "startIndex": self.start_index,
            "itemsPerPage": self.items_per_page,
            "Resources": [r.to_dict() for r in self.resources],
        }


@dataclass(frozen=True)
class _KindSpec:
    name: str
    model: type
    object_class: str
    naming_attribute: str
    owners: Mapping[str, Tuple[str, ...]]
    managed: Tuple[str, ...]
    read_attributes: Tuple[str, ...]
    to_attributes: Callable[[Any], Dict[str, List[str]]]
    from_entry: Callable[[DirectoryEntry], Any]
    human_key: Callable[[Any], str | None]


# attributes that are never rewritten by update / patch
_IMMUTABLE = frozenset(a.lower() for a in (OBJECT_CLASS, ENTRY_UUID_ATTR))
# written when supplied, never cleared because it is absent from a read
_WRITE_ONLY = frozenset({"userpassword"})


# Repository --------------------------------------------------------------------


class DirectoryRepository:
    """SCIM resource store backed by an LDAP directory."""

    def __init__(
        self,
        client: DirectoryClient,
        resolver: IdentityResolver,
        mapper: AttributeMapper,
        config: Any,
        translators: Mapping[str, FilterTranslator] | None = None,
    ) -> None:
        self.client = client
        self.resolver = resolver
        self.mapper = mapper
        self.config = config
        self.translators: Dict[str, FilterTranslator] = dict(translators or {})
        for kind in (USER, GROUP):
            self.translators.setdefault(kind, FilterTranslator(kind, resolve_id=resolver.resolve_id_to_dn))

        common = tuple(OPERATIONAL_ATTRS) + (VERSION_ATTR, OBJECT_CLASS)
        self.kinds: Dict[str, _KindSpec] = {
            USER: _KindSpec(
                name=USER,
                model=User,
                object_class=USER_KIND_OBJECT_CLASS,
                naming_attribute=USER_NAMING_ATTR,
                owners=USER_ATTRIBUTE_OWNERS,
                managed=USER_MANAGED_ATTRIBUTES,
                read_attributes=("*",) + common + (MEMBER_OF_ATTR,),
                to_attributes=mapper.user_to_attributes,
                from_entry=mapper.entry_to_user,
                human_key=lambda user: user.user_name,
            ),
            GROUP: _KindSpec(
                name=GROUP,
                model=Group,
                object_class=GROUP_KIND_OBJECT_CLASS,
                naming_attribute=GROUP_NAMING_ATTR,
                owners=GROUP_ATTRIBUTE_OWNERS,
                managed=GROUP_MANAGED_ATTRIBUTES,
                read_attributes=("*",) + common,
                to_attributes=mapper.group_to_attributes,
                from_entry=mapper.entry_to_group,
                human_key=lambda group: group.display_name,
            ),
        }

    # Helper ------------------------------------------------------------

    def _spec(self, kind: str) -> _KindSpec:
        try:
            return self.kinds[kind]
        except KeyError:
            raise InvalidInputError(f"Unknown resource type {kind!r}") from None

    def _base(self, kind: str) -> str:
        return self.resolver.base_dn(kind)

    def _read_attributes(self, spec: _KindSpec, attributes: Sequence[str] | None = None) -> List[str]:
        wanted = ldap_attributes_for(spec.name, attributes, spec.owners)
        if wanted is None:
            return list(spec.read_attributes)
        return wanted + [a for a in spec.read_attributes if a != "*" and a not in wanted]

    @staticmethod
    def _is_kind(entry: DirectoryEntry, spec: _KindSpec) -> bool:
        classes = {c.lower() for c in entry.get(OBJECT_CLASS)}
        return not classes or spec.object_class.lower() in classes

    def _fetch(self, spec: _KindSpec, resource_id: str, attributes: Sequence[str] | None = None) -> DirectoryEntry | None:
        if not resource_id:
            return None
        attrs = self._read_attributes(spec, attributes)
        if self.config.use_entry_uuid_dn:
            entry = self.client.get_entry(build_dn_from_id(resource_id, self._base(spec.name)), attrs)
        else:
            entry = self.resolver.find_entry_by_id(resource_id, spec.name, attrs)
        if entry is None:
            return None
        if not self._is_kind(entry, spec):
            logger.debug(f"Entry {entry.dn} is not a {spec.name}")
            return None
        return entry

    def _require(self, spec: _KindSpec, resource_id: str) -> DirectoryEntry:
        entry = self._fetch(spec, resource_id)
        if entry is None:
            raise ResourceNotFoundError(spec.name, resource_id)
        return entry

    def _selected(
        self,
        spec: _KindSpec,
        resource: Resource,
        attributes: Sequence[str] | None,
        excluded_attributes: Sequence[str] | None,
    ) -> Resource:
        if not attributes and not excluded_attributes:
            return resource
        return spec.model.from_dict(project(spec.name, resource.to_dict(), attributes, excluded_attributes))

    def _modify(self, spec: _KindSpec, resource_id: str, dn: str, modifications: List[Modification]) -> None:
        modifications.append(Modification(MODIFY_REPLACE, VERSION_ATTR, (new_version(),)))
        try:
            self.client.modify(dn, modifications)
        except ResourceNotFoundError:
            # entry vanished between resolve and write
            raise ResourceNotFoundError(spec.name, resource_id) from None

    def _replacements(
        self,
        entry: DirectoryEntry,
        new_attributes: Mapping[str, List[str]],
        attribute_names: Iterable[str],
    ) -> List[Modification]:
        """REPLACE modifications for *attribute_names*, skipping immutable and RDN attributes."""
        rdn = (rdn_attribute(entry.dn) or "").lower()
        mods: List[Modification] = []
        seen: Set[str] = set()
        for name in attribute_names:
            lowered = name.lower()
            if lowered in seen or lowered in _IMMUTABLE:
                continue
            seen.add(lowered)
            values = new_attributes.get(name) or []
            if lowered == rdn:
                if values and entry.get(name) != values:
                    logger.warning(f"Not changing naming attribute {name} of {entry.dn}; rename is unsupported")
                continue
            if values:
                mods.append(Modification(MODIFY_REPLACE, name, tuple(values)))
            elif lowered not in _WRITE_ONLY and entry.has(name):
                mods.append(Modification(MODIFY_REPLACE, name, ()))
        return mods

    # Generic -----------------------------------------------------------

    def get(
        self,
        kind: str,
        resource_id: str,
        attributes: Sequence[str] | None = None,
        excluded_attributes: Sequence[str] | None = None,
    ) -> Resource | None:
        spec = self._spec(kind)
        entry = self._fetch(spec, resource_id, attributes)
        if entry is None:
            return None
        return self._selected(spec, spec.from_entry(entry), attributes, excluded_attributes)

    def create(self, kind: str, resource: Resource) -> Resource:
        spec = self._spec(kind)
        human_key = spec.human_key(resource)
        if not human_key:
            field_name = "userName" if kind == USER else "displayName"
            raise InvalidInputError(f"{kind} requires {field_name}", scim_type="invalidValue")

        attributes = spec.to_attributes(resource)
        attributes[VERSION_ATTR] = [new_version()]
        dn = build_placeholder_dn(spec.naming_attribute, human_key, self._base(kind))
        controls = [name_with_entry_uuid_control()] if self.config.use_entry_uuid_dn else None
        self.client.add(dn, attributes, controls=controls)
        logger.info(f"Created {kind} {human_key!r}")

        if self.config.use_entry_uuid_dn:
            # the server chose the DN, find the entry again by its human key
            search_filter = build_object_class_filter(spec.object_class, Equality(spec.naming_attribute, human_key))
            entries = self.client.search(
                self._base(kind), search_filter, attributes=list(spec.read_attributes), size_limit=2
            )
            if len(entries) > 1:
                logger.warning(f"{len(entries)} {kind} entries share {spec.naming_attribute}={human_key!r}")
            entry = entries[0] if entries else None
        else:
            entry = self.client.get_entry(dn, list(spec.read_attributes))
        if entry is None:
            logger.error(f"{kind} {human_key!r} was created but could not be read back")
            raise InfrastructureError(f"{kind} {human_key!r} was created but could not be read back")
        return spec.from_entry(entry)

    def update(self, kind: str, resource_id: str, resource: Resource) -> Resource:
        """Replace the resource (PUT); managed attributes missing from *resource* are cleared."""
        spec = self._spec(kind)
        entry = self._require(spec, resource_id)
        new_attributes = spec.to_attributes(replace(resource, id=resource_id))
        mods = self._replacements(entry, new_attributes, spec.managed)
        self._modify(spec, resource_id, entry.dn, mods)
        logger.info(f"Updated {kind} {resource_id}")
        return self._reread(spec, resource_id)

    def patch(self, kind: str, resource_id: str, operations: Sequence[PatchInput]) -> Resource:
        spec = self._spec(kind)
        ops = [op if isinstance(op, PatchOperation) else PatchOperation.from_dict(op) for op in operations]
        if not ops:
            raise InvalidPatchError("Patch request has no operations", scim_type="invalidSyntax")
        entry = self._require(spec, resource_id)

        mods: List[Modification] = []
        remaining = ops
        if kind == GROUP:
            remaining, membership = self._split_membership(ops)
            mods.extend(self._membership_changes(entry, membership))
        if remaining:
            mods.extend(self._attribute_changes(spec, entry, resource_id, remaining))

        self._modify(spec, resource_id, entry.dn, mods)
        logger.info(f"Patched {kind} {resource_id} with {len(ops)} operation(s)")
        return self._reread(spec, resource_id)

    def delete(self, kind: str, resource_id: str) -> bool:
        spec = self._spec(kind)
        if not resource_id:
            return False
        if self.config.use_entry_uuid_dn:
            dn = build_dn_from_id(resource_id, self._base(kind))
        else:
            dn = self.resolver.resolve_id_to_dn(resource_id, kind)
            if dn is None:
                return False
        deleted = self.client.delete(dn)
        if deleted:
            logger.info(f"Deleted {spec.name} {resource_id}")
        return deleted

    def search(self, kind: str, request: SearchRequest | None = None) -> SearchResult:
        spec = self._spec(kind)
        request = request or SearchRequest()
        translator = self.translators[kind]
        search_filter = build_object_class_filter(spec.object_class, translator.translate(request.filter))

        sort_keys = None
        if request.sort_by:
            try:
                sort_attribute = translator.sort_attribute(request.sort_by)
            except InvalidFilterError as exc:
                raise InvalidInputError(f"Invalid sortBy {request.sort_by!r}: {exc.message}") from exc
            if sort_attribute:
                sort_keys = [(sort_attribute, request.descending)]

        entries = self.client.search(
            self._base(kind),
            search_filter,
            attributes=self._read_attributes(spec, self._search_attributes(request)),
            size_limit=self.config.search_size_limit,
            time_limit=self.config.search_time_limit,
            sort_keys=sort_keys,
        )
        resources = [spec.from_entry(entry) for entry in entries]
        if request.sort_by:
            # servers without the sort control return directory order
            resources = _sort_resources(kind, resources, request.sort_by, request.descending)

        start = 1 if request.start_index is None or request.start_index < 1 else request.start_index
        page = paginate(resources, start, request.count)
        return SearchResult(
            resources=[self._selected(spec, r, request.attributes, request.excluded_attributes) for r in page],
            total_results=len(resources),
            start_index=start,
            items_per_page=len(page),
        )

    def count(self, kind: str, scim_filter: str | None = None) -> int:
        spec = self._spec(kind)
        search_filter = build_object_class_filter(spec.object_class, self.translators[kind].translate(scim_filter))
        return self.client.count(self._base(kind), search_filter)

    # Per kind ----------------------------------------------------------

    def get_user(
        self,
        resource_id: str,
        attributes: Sequence[str] | None = None,
        excluded_attributes: Sequence[str] | None = None,
    ) -> User | None:
        return self.get(USER, resource_id, attributes, excluded_attributes)

    def create_user(self, user: User | Mapping[str, Any]) -> User:
        return self.create(USER, user if isinstance(user, User) else _from_dict(User, user))

    def update_user(self, resource_id: str, user: User | Mapping[str, Any]) -> User:
        return self.update(USER, resource_id, user if isinstance(user, User) else _from_dict(User, user))

    def patch_user(self, resource_id: str, operations: Sequence[PatchInput]) -> User:
        return self.patch(USER, resource_id, operations)

    def delete_user(self, resource_id: str) -> bool:
        return self.delete(USER, resource_id)

    def search_users(self, request: SearchRequest | None = None) -> SearchResult:
        return self.search(USER, request)

    def count_users(self, scim_filter: str | None = None) -> int:
        return self.count(USER, scim_filter)

    def get_group(
        self,
        resource_id: str,
        attributes: Sequence[str] | None = None,
        excluded_attributes: Sequence[str] | None = None,
    ) -> Group | None:
        return self.get(GROUP, resource_id, attributes, excluded_attributes)

    def create_group(self, group: Group | Mapping[str, Any]) -> Group:
        return self.create(GROUP, group if isinstance(group, Group) else _from_dict(Group, group))

    def update_group(self, resource_id: str, group: Group | Mapping[str, Any]) -> Group:
        return self.update(GROUP, resource_id, group if isinstance(group, Group) else _from_dict(Group, group))

    def patch_group(self, resource_id: str, operations: Sequence[PatchInput]) -> Group:
        return self.patch(GROUP, resource_id, operations)

    def delete_group(self, resource_id: str) -> bool:
        return self.delete(GROUP, resource_id)

    def search_groups(self, request: SearchRequest | None = None) -> SearchResult:
        return self.search(GROUP, request)

    def count_groups(self, scim_filter: str | None = None) -> int:
        return self.count(GROUP, scim_filter)

    # Internals ---------------------------------------------------------

    def _reread(self, spec: _KindSpec, resource_id: str) -> Resource:
        entry = self._fetch(spec, resource_id)
        if entry is None:
            raise ResourceNotFoundError(spec.name, resource_id)
        return spec.from_entry(entry)

    @staticmethod
    def _search_attributes(request: SearchRequest) -> List[str] | None:
        """Requested attributes plus the sort attribute, so in-memory sorting sees it."""
        if not request.attributes:
            return None
        if request.sort_by and request.sort_by not in request.attributes:
            return list(request.attributes) + [request.sort_by]
        return list(request.attributes)

    def _attribute_changes(
        self,
        spec: _KindSpec,
        entry: DirectoryEntry,
        resource_id: str,
        operations: Sequence[PatchOperation],
    ) -> List[Modification]:
        current = spec.from_entry(entry).to_dict()
        current.pop("members", None)
        name = current.get("name")
        if isinstance(name, dict):
            # derived on read, re-derived on write
            name.pop("formatted", None)
        touched = apply_operations(current, operations)
        unknown = sorted(t for t in touched if t not in spec.owners)
        if unknown:
            raise InvalidPatchError(f"Unsupported {spec.name} attribute(s): {', '.join(unknown)}")
        try:
            patched = spec.model.from_dict(current)
        except (ValueError, TypeError) as exc:
            raise InvalidPatchError(f"Invalid value for {spec.name}: {exc}", scim_type="invalidValue") from exc
        patched.id = resource_id
        new_attributes = spec.to_attributes(patched)
        owned = [attr for key in sorted(touched) for attr in spec.owners[key]]
        return self._replacements(entry, new_attributes, owned)

    @staticmethod
    def _split_membership(ops: Sequence[PatchOperation]) -> Tuple[List[PatchOperation], List[PatchOperation]]:
        """Separate ``members`` operations from the rest (no-path values are split by key)."""
        remaining: List[PatchOperation] = []
        membership: List[PatchOperation] = []
        for op in ops:
            if op.target == "members":
                membership.append(op)
                continue
            if op.path is None and isinstance(op.value, StructValue):
                members = {k: v for k, v in op.value.value.items() if str(k).lower() == "members"}
                rest = {k: v for k, v in op.value.value.items() if str(k).lower() != "members"}
                for value in members.values():
                    membership.append(PatchOperation.create(op.op.value, "members", value))
                if rest:
                    remaining.append(PatchOperation(op.op, None, StructValue(rest)))
                continue
            remaining.append(op)
        return remaining, membership

    @staticmethod
    def _member_values(op: PatchOperation) -> List[Tuple[str, str | None]]:
        """``(id, type)`` pairs carried by a membership operation's value."""
        value = op.value
        items: List[Any]
        if isinstance(value, StructListValue):
            items = list(value.items)
        elif isinstance(value, StructValue):
            items = [value.value]
        elif isinstance(value, ScalarValue):
            items = value.value if isinstance(value.value, list) else [value.value]
        else:
            items = []
        pairs: List[Tuple[str, str | None]] = []
        for item in items:
            if isinstance(item, Mapping):
                lowered = {str(k).lower(): v for k, v in item.items()}
                if lowered.get("value"):
                    pairs.append((str(lowered["value"]), lowered.get("type")))
            elif item is not None and item != "":
                pairs.append((str(item), None))
        return pairs

    def _membership_changes(self, entry: DirectoryEntry, operations: Sequence[PatchOperation]) -> List[Modification]:
        members: Dict[str, str] = {normalize_dn(dn): dn for dn in entry.get(MEMBER_ATTR)}
        mods: List[Modification] = []

        def locate(member_id: str, member_type: str | None) -> str | None:
            """DN of *member_id* among the current members (users first, then groups)."""
            candidates = [member_type] if member_type else [USER, GROUP]
            for kind in candidates:
                dn = self.resolver.member_dn(member_id, kind)
                if dn and normalize_dn(dn) in members:
                    return members[normalize_dn(dn)]
            return None

        for op in operations:
            path = op.path
            if path is not None and path.sub_attribute and path.sub_attribute.lower() != "value":
                raise InvalidPatchError(f"members.{path.sub_attribute} cannot be modified", scim_type="mutability")

            if op.op is PatchOp.REMOVE:
                doomed: List[str] = []
                if path is not None and path.filter is not None:
                    ids = member_ids_from_filter(path.filter)
                    if ids is not None:
                        doomed = [dn for dn in (locate(i, None) for i in ids) if dn]
                    else:
                        for dn in list(members.values()):
                            ref = self.mapper.entry_to_member(dn)
                            if ref is not None and matches(path.filter, ref.to_dict()):
                                doomed.append(dn)
                elif op.value is not None:
                    doomed = [dn for dn in (locate(i, t) for i, t in self._member_values(op)) if dn]
                else:
                    mods.append(Modification(MODIFY_REPLACE, MEMBER_ATTR, ()))
                    members.clear()
                    continue
                doomed = list(dict.fromkeys(doomed))
                if doomed:
                    mods.append(Modification(MODIFY_DELETE, MEMBER_ATTR, tuple(doomed)))
                    for dn in doomed:
                        members.pop(normalize_dn(dn), None)
                else:
                    logger.debug(f"Member removal on {entry.dn} matched no current member")
                continue

            if path is not None and path.filter is not None:
                raise InvalidPatchError(f"{op.op.value} does not accept a member filter", scim_type="invalidPath")

            resolved: List[str] = []
            for member_id, member_type in self._member_values(op):
                dn = self.resolver.member_dn(member_id, member_type)
                if dn is None:
                    logger.warning(f"Skipping unknown member {member_id} for {entry.dn}")
                    continue
                if dn not in resolved:
                    resolved.append(dn)

            if op.op is PatchOp.REPLACE:
                mods.append(Modification(MODIFY_REPLACE, MEMBER_ATTR, tuple(resolved)))
                members = {normalize_dn(dn): dn for dn in resolved}
                continue

            added = [dn for dn in resolved if normalize_dn(dn) not in members]
            if added:
                mods.append(Modification(MODIFY_ADD, MEMBER_ATTR, tuple(added)))
                members.update({normalize_dn(dn): dn for dn in added})
        return mods


# Sorting -----------------------------------------------------------------------


def _sort_value(resource: Dict[str, Any], path: Tuple[str, ...]) -> Any:
    value: Any = resource
    for key in path:
        if isinstance(value, list):
            primary = next((v for v in value if isinstance(v, dict) and v.get("primary") is True), None)
            value = primary if primary is not None else (value[0] if value else None)
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    if isinstance(value, list):
        primary = next((v for v in value if isinstance(v, dict) and v.get("primary") is True), None)
        value = primary if primary is not None else (value[0] if value else None)
        if isinstance(value, dict):
            value = value.get("value")
    if isinstance(value, str):
        return value.lower()
    return value


def _sort_resources(kind: str, resources: List[Resource], sort_by: str, descending: bool) -> List[Resource]:
    """Stable sort on *sort_by*; resources without a value go last."""
    path = resolve_field(kind, sort_by)
    if path is None:
        logger.debug(f"Cannot sort {kind} resources by unknown attribute {sort_by!r}")
        return resources
    keyed = [(_sort_value(r.to_dict(), path), r) for r in resources]
    present = [(k, r) for k, r in keyed if k is not None]
    missing = [r for k, r in keyed if k is None]
    try:
        present.sort(key=lambda item: item[0], reverse=descending)
    except TypeError:
        present.sort(key=lambda item: str(item[0]), reverse=descending)
    return [r for _, r in present] + missing
