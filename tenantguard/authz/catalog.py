"""
Catalog Store.

Holds modules, resources and permission definitions for one snapshot.
Resources form a tree through `parent_id`; the tree is kept as an arena
indexed by id, and ancestor walks are iterative lookups bounded by
`max_depth`.
"""

import uuid
from dataclasses import replace
from typing import Any, Iterable, Iterator, Mapping, Optional, Union

from tenantguard.authz.conditions import ConditionSet, decode_conditions
from tenantguard.authz.domain import Module, Permission, Resource
from tenantguard.authz.errors import CatalogIntegrityError, ConfigurationError, ResourceNotFound
from tenantguard.authz.vocabulary import (
    DEFAULT_VOCABULARY,
    Action,
    Lifecycle,
    ModuleCategory,
    ResourceType,
    Vocabulary,
)

DEFAULT_MAX_DEPTH = 32


class CatalogStore:
    """
    In-memory catalog with referential-integrity checks on mutation.

    Mutations reject a parent that would create a cycle or cross a module
    boundary, duplicate codes and duplicate (resource, action) pairs.
    """

    def __init__(
        self,
        vocabulary: Vocabulary = DEFAULT_VOCABULARY,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ):
        self.vocabulary = vocabulary
        self.max_depth = max_depth
        self._modules: dict[uuid.UUID, Module] = {}
        self._resources: dict[uuid.UUID, Resource] = {}
        self._permissions: dict[uuid.UUID, Permission] = {}
        self._module_codes: dict[str, uuid.UUID] = {}
        self._resource_codes: dict[tuple[uuid.UUID, str], uuid.UUID] = {}
        self._permission_index: dict[tuple[uuid.UUID, Action], uuid.UUID] = {}
        self._resource_permissions: dict[uuid.UUID, set[uuid.UUID]] = {}

    @classmethod
    def from_rows(
        cls,
        modules: Iterable[Module],
        resources: Iterable[Resource],
        permissions: Iterable[Permission],
        vocabulary: Vocabulary = DEFAULT_VOCABULARY,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> "CatalogStore":
        """
        Build a store from already-persisted rows.

        Rows are taken verbatim; integrity problems that slipped into
        storage surface later as CatalogIntegrityError from the ancestor
        walk rather than failing the load.
        """
        store = cls(vocabulary=vocabulary, max_depth=max_depth)
        for module in modules:
            store._put_module(module)
        for resource in resources:
            store._put_resource(resource)
        for permission in permissions:
            store._put_permission(permission)
        return store

    # ========================================================================
    # Arena maintenance
    # ========================================================================

    def _put_module(self, module: Module) -> None:
        self._modules[module.id] = module
        if module.is_live:
            self._module_codes[module.code] = module.id

    def _put_resource(self, resource: Resource) -> None:
        self._resources[resource.id] = resource
        if resource.is_live:
            self._resource_codes[(resource.module_id, resource.code)] = resource.id
        self._resource_permissions.setdefault(resource.id, set())

    def _put_permission(self, permission: Permission) -> None:
        self._permissions[permission.id] = permission
        self._permission_index[(permission.resource_id, permission.action)] = permission.id
        self._resource_permissions.setdefault(permission.resource_id, set()).add(permission.id)

    # ========================================================================
    # Queries
    # ========================================================================

    def export_rows(self) -> tuple[list[Module], list[Resource], list[Permission]]:
        """Every stored row, tombstones included, in the shape `from_rows` accepts."""
        return (
            list(self._modules.values()),
            list(self._resources.values()),
            list(self._permissions.values()),
        )

    def modules(self) -> Iterator[Module]:
        return (m for m in self._modules.values() if m.is_live)

    def resources(self) -> Iterator[Resource]:
        return (r for r in self._resources.values() if r.is_live)

    def permissions(self) -> Iterator[Permission]:
        return iter(self._permissions.values())

    def get_module(self, module_id: uuid.UUID) -> Optional[Module]:
        module = self._modules.get(module_id)
        return module if module is not None and module.is_live else None

    def get_module_by_code(self, code: str) -> Optional[Module]:
        module_id = self._module_codes.get(code)
        return self._modules.get(module_id) if module_id else None

    def get_resource_by_id(self, resource_id: uuid.UUID) -> Optional[Resource]:
        resource = self._resources.get(resource_id)
        return resource if resource is not None and resource.is_live else None

    def get_permission(self, permission_id: uuid.UUID) -> Optional[Permission]:
        return self._permissions.get(permission_id)

    def qualified_code(self, resource: Resource) -> str:
        module = self._modules[resource.module_id]
        return f"{module.code}.{resource.code}"

    def get_resource(self, code: str) -> Resource:
        """
        Look up a reachable resource by its qualified code.

        Raises:
            ResourceNotFound: Unknown code, or the resource, its module or
                one of its ancestors is deleted
        """
        module_code, _, resource_code = code.partition(".")
        module = self.get_module_by_code(module_code)
        if module is None or not resource_code:
            raise ResourceNotFound(code)

        resource_id = self._resource_codes.get((module.id, resource_code))
        resource = self._resources.get(resource_id) if resource_id else None
        if resource is None or not resource.is_live:
            raise ResourceNotFound(code)

        if any(not a.is_live for a in self._walk(resource)):
            raise ResourceNotFound(code)
        return resource

    def _walk(self, resource: Resource) -> list[Resource]:
        """Ancestors of resource, nearest first, live or not."""
        chain: list[Resource] = []
        seen = {resource.id}
        parent_id = resource.parent_id

        while parent_id is not None:
            if len(chain) >= self.max_depth:
                raise CatalogIntegrityError(
                    f"Resource {resource.id} exceeds maximum depth {self.max_depth}"
                )
            if parent_id in seen:
                raise CatalogIntegrityError(f"Resource {resource.id} has cyclic parentage")
            parent = self._resources.get(parent_id)
            if parent is None:
                raise CatalogIntegrityError(f"Resource {resource.id} has unknown parent {parent_id}")
            if parent.module_id != resource.module_id:
                raise CatalogIntegrityError(f"Resource {resource.id} has a parent in another module")
            seen.add(parent_id)
            chain.append(parent)
            parent_id = parent.parent_id

        return chain

    def reachable_resources(self) -> list[Resource]:
        """Live resources whose module and ancestors are all live, by qualified code."""
        reachable = []
        for resource in self.resources():
            if self.get_module(resource.module_id) is None:
                continue
            if all(a.is_live for a in self._walk(resource)):
                reachable.append(resource)
        return sorted(reachable, key=lambda r: (r.sort_order, self.qualified_code(r)))

    def get_ancestors(self, resource_id: uuid.UUID) -> list[Resource]:
        """
        Return the ancestors of a resource ordered root-to-leaf.

        The resource itself is not included.

        Raises:
            ResourceNotFound: Unknown resource id
            CatalogIntegrityError: Cycle, dangling parent or depth guard hit
        """
        resource = self._resources.get(resource_id)
        if resource is None:
            raise ResourceNotFound(resource_id)
        return list(reversed(self._walk(resource)))

    def list_permissions(self, resource_id: uuid.UUID) -> frozenset[Permission]:
        """All permissions defined on a resource, active or not."""
        return frozenset(
            self._permissions[pid] for pid in self._resource_permissions.get(resource_id, ())
        )

    def find_permission(self, resource_id: uuid.UUID, action: Action) -> Optional[Permission]:
        permission_id = self._permission_index.get((resource_id, action))
        return self._permissions.get(permission_id) if permission_id else None

    # ========================================================================
    # Mutations
    # ========================================================================

    def create_module(
        self,
        code: str,
        category: Union[str, ModuleCategory],
        name: str = "",
        is_core: bool = False,
        is_active: bool = True,
        sort_order: int = 0,
        module_id: Optional[uuid.UUID] = None,
    ) -> Module:
        """Create a module. Codes are globally unique and may not contain dots."""
        if not code or "." in code:
            raise ConfigurationError(f"Invalid module code: {code!r}")
        if code in self._module_codes:
            raise ConfigurationError(f"Module code already exists: {code}")
        if not self.vocabulary.has_category(category):
            raise ConfigurationError(f"Unknown module category: {category}")

        module = Module(
            id=module_id or uuid.uuid4(),
            code=code,
            category=ModuleCategory(category),
            name=name or code,
            is_active=is_active,
            is_core=is_core,
            sort_order=sort_order,
        )
        self._put_module(module)
        return module

    def create_resource(
        self,
        module_id: uuid.UUID,
        code: str,
        resource_type: Union[str, ResourceType],
        parent_id: Optional[uuid.UUID] = None,
        name: str = "",
        is_public: bool = False,
        requires_approval: bool = False,
        is_active: bool = True,
        sort_order: int = 0,
        resource_id: Optional[uuid.UUID] = None,
    ) -> Resource:
        """
        Create a resource inside a module.

        Raises:
            ConfigurationError: Unknown module, duplicate code, unknown
                resource type, or a parent that is missing, deleted or in
                another module
        """
        if self.get_module(module_id) is None:
            raise ConfigurationError(f"Unknown module: {module_id}")
        if not code:
            raise ConfigurationError("Resource code is required")
        if (module_id, code) in self._resource_codes:
            raise ConfigurationError(f"Resource code already exists in module: {code}")
        if not self.vocabulary.has_resource_type(resource_type):
            raise ConfigurationError(f"Unknown resource type: {resource_type}")

        resource = Resource(
            id=resource_id or uuid.uuid4(),
            module_id=module_id,
            code=code,
            resource_type=ResourceType(resource_type),
            parent_id=parent_id,
            name=name or code,
            is_public=is_public,
            requires_approval=requires_approval,
            is_active=is_active,
            sort_order=sort_order,
        )
        self._check_parent(resource, parent_id)
        self._put_resource(resource)
        return resource

    def move_resource(self, resource_id: uuid.UUID, parent_id: Optional[uuid.UUID]) -> Resource:
        """Re-parent a resource, rejecting cycles and cross-module parents."""
        resource = self.get_resource_by_id(resource_id)
        if resource is None:
            raise ResourceNotFound(resource_id)
        self._check_parent(resource, parent_id)
        moved = replace(resource, parent_id=parent_id)
        self._put_resource(moved)
        return moved

    def _check_parent(self, resource: Resource, parent_id: Optional[uuid.UUID]) -> None:
        if parent_id is None:
            return
        if parent_id == resource.id:
            raise ConfigurationError("A resource cannot be its own parent")

        parent = self.get_resource_by_id(parent_id)
        if parent is None:
            raise ConfigurationError(f"Unknown parent resource: {parent_id}")
        if parent.module_id != resource.module_id:
            raise ConfigurationError("Parent resource belongs to another module")

        # The new parent's chain must not pass through the resource itself
        depth = 1
        cursor: Optional[Resource] = parent
        while cursor is not None:
            if cursor.id == resource.id:
                raise ConfigurationError("Parent assignment would create a cycle")
            depth += 1
            if depth > self.max_depth:
                raise ConfigurationError(f"Resource tree deeper than {self.max_depth}")
            cursor = self._resources.get(cursor.parent_id) if cursor.parent_id else None

    def define_permission(
        self,
        resource_id: uuid.UUID,
        action: Union[str, Action],
        conditions: Union[ConditionSet, Mapping[str, Any], None] = None,
        name: str = "",
        is_active: bool = True,
        permission_id: Optional[uuid.UUID] = None,
    ) -> Permission:
        """
        Define an action on a resource.

        Raises:
            ConfigurationError: Unknown resource, action outside the
                vocabulary, duplicate (resource, action) or bad conditions
        """
        resource = self.get_resource_by_id(resource_id)
        if resource is None:
            raise ConfigurationError(f"Unknown resource: {resource_id}")

        parsed = self.vocabulary.parse_action(action)
        if parsed is None:
            raise ConfigurationError(f"Unknown action: {action}")
        if (resource_id, parsed) in self._permission_index:
            raise ConfigurationError(
                f"Permission already defined for {self.qualified_code(resource)}:{parsed.value}"
            )

        if conditions is None or isinstance(conditions, Mapping):
            conditions = decode_conditions(conditions)

        permission = Permission(
            id=permission_id or uuid.uuid4(),
            resource_id=resource_id,
            action=parsed,
            conditions=conditions,
            name=name or f"{self.qualified_code(resource)}.{parsed.value}",
            is_active=is_active,
        )
        self._put_permission(permission)
        return permission

    def set_permission_active(self, permission_id: uuid.UUID, is_active: bool) -> Permission:
        permission = self._permissions.get(permission_id)
        if permission is None:
            raise ResourceNotFound(permission_id, kind="permission")
        updated = replace(permission, is_active=is_active)
        self._put_permission(updated)
        return updated

    def set_module_active(self, module_id: uuid.UUID, is_active: bool) -> Module:
        module = self.get_module(module_id)
        if module is None:
            raise ResourceNotFound(module_id, kind="module")
        if module.is_core and not is_active:
            raise ConfigurationError(f"Core module cannot be deactivated: {module.code}")
        updated = replace(module, is_active=is_active)
        self._put_module(updated)
        return updated

    def delete_module(self, module_id: uuid.UUID) -> Module:
        """Tombstone a module. Core modules cannot be deleted."""
        module = self.get_module(module_id)
        if module is None:
            raise ResourceNotFound(module_id, kind="module")
        if module.is_core:
            raise ConfigurationError(f"Core module cannot be deleted: {module.code}")
        deleted = replace(module, lifecycle=Lifecycle.DELETED)
        self._module_codes.pop(module.code, None)
        self._put_module(deleted)
        return deleted

    def delete_resource(self, resource_id: uuid.UUID) -> Resource:
        """Tombstone a resource; its descendants become unreachable."""
        resource = self.get_resource_by_id(resource_id)
        if resource is None:
            raise ResourceNotFound(resource_id)
        deleted = replace(resource, lifecycle=Lifecycle.DELETED)
        self._resource_codes.pop((resource.module_id, resource.code), None)
        self._put_resource(deleted)
        return deleted
