"""
Authorization administration service.

Mutation operations over the authorization tables. Each mutation is
validated against an in-memory store built from the current rows (the
same invariants the snapshots rely on), written, committed and then
announced: the persisted version is bumped and the local engine is
invalidated.
"""

import uuid
from typing import Optional, Tuple

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.authz import domain, models
from tenantguard.authz.assignments import AssignmentStore
from tenantguard.authz.catalog import DEFAULT_MAX_DEPTH, CatalogStore
from tenantguard.authz.engine import AuthorizationEngine
from tenantguard.authz.errors import AssignmentError, ConfigurationError, ResourceNotFound
from tenantguard.authz.ports import CATALOG_SCOPE, VersionStore
from tenantguard.authz.repository import fetch_assignment_rows, fetch_catalog_rows, list_access_logs
from tenantguard.authz.schemas import (
    AccessLogFilter,
    AssignmentCreate,
    EnablementUpdate,
    ModuleCreate,
    PermissionCreate,
    ResourceCreate,
    RoleBindingCreate,
    RoleCreate,
)
from tenantguard.authz.vocabulary import DEFAULT_VOCABULARY, EnablementTarget, Lifecycle, RoleScope, Vocabulary

logger = structlog.get_logger(__name__)


def _same_company(column, company_id: Optional[uuid.UUID]):
    return column.is_(None) if company_id is None else column == company_id


class AuthorizationService:
    """
    Administrative mutations for catalog, roles, assignments and enablement.

    Provides:
    - Catalog management (modules, resources, permissions)
    - Role management and user bindings
    - Grants, denies and revocation
    - Tenant enablement switches
    - Access log queries
    """

    def __init__(
        self,
        db: AsyncSession,
        engine: Optional[AuthorizationEngine] = None,
        version_store: Optional[VersionStore] = None,
        vocabulary: Vocabulary = DEFAULT_VOCABULARY,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ):
        self.db = db
        self.engine = engine
        self.version_store = version_store
        self.vocabulary = vocabulary
        self.max_depth = max_depth

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _catalog(self) -> CatalogStore:
        rows = await fetch_catalog_rows(self.db)
        return CatalogStore.from_rows(*rows, vocabulary=self.vocabulary, max_depth=self.max_depth)

    async def _assignment_store(self, workspace_id: Optional[uuid.UUID] = None) -> AssignmentStore:
        rows = await fetch_assignment_rows(self.db, workspace_id, all_roles=True)
        return AssignmentStore.from_rows(*rows)

    async def _touch(self, workspace_id: Optional[uuid.UUID]) -> None:
        """Announce a committed mutation; None means catalog-wide."""
        if self.version_store is not None:
            await self.version_store.bump(workspace_id or CATALOG_SCOPE)
        if self.engine is not None:
            if workspace_id is None:
                self.engine.invalidate_all()
            else:
                self.engine.invalidate(workspace_id)

    # ========================================================================
    # Modules
    # ========================================================================

    async def create_module(self, data: ModuleCreate) -> domain.Module:
        """
        Create a module.

        Raises:
            ConfigurationError: Duplicate code or category outside the vocabulary
        """
        catalog = await self._catalog()
        module = catalog.create_module(
            code=data.code,
            category=data.category,
            name=data.name,
            is_core=data.is_core,
            is_active=data.is_active,
            sort_order=data.sort_order,
        )
        self.db.add(models.Module(
            id=module.id,
            code=module.code,
            name=module.name,
            category=module.category,
            is_active=module.is_active,
            is_core=module.is_core,
            sort_order=module.sort_order,
            lifecycle=module.lifecycle,
        ))
        await self.db.commit()

        logger.info("module_created", module_id=str(module.id), code=module.code)
        await self._touch(None)
        return module

    async def set_module_active(self, module_id: uuid.UUID, is_active: bool) -> domain.Module:
        catalog = await self._catalog()
        module = catalog.set_module_active(module_id, is_active)
        await self.db.execute(
            update(models.Module).where(models.Module.id == module_id).values(is_active=is_active)
        )
        await self.db.commit()

        logger.info("module_updated", module_id=str(module_id), is_active=is_active)
        await self._touch(None)
        return module

    async def delete_module(self, module_id: uuid.UUID) -> domain.Module:
        """Soft-delete a module (core modules are rejected)."""
        catalog = await self._catalog()
        module = catalog.delete_module(module_id)
        await self.db.execute(
            update(models.Module)
            .where(models.Module.id == module_id)
            .values(lifecycle=Lifecycle.DELETED)
        )
        await self.db.commit()

        logger.info("module_deleted", module_id=str(module_id), code=module.code)
        await self._touch(None)
        return module

    # ========================================================================
    # Resources
    # ========================================================================

    async def create_resource(self, data: ResourceCreate) -> domain.Resource:
        """
        Create a resource.

        Raises:
            ConfigurationError: Unknown module, duplicate code, or a parent
                that is missing or in another module
        """
        catalog = await self._catalog()
        resource = catalog.create_resource(
            module_id=data.module_id,
            code=data.code,
            resource_type=data.resource_type,
            parent_id=data.parent_id,
            name=data.name,
            is_public=data.is_public,
            requires_approval=data.requires_approval,
            is_active=data.is_active,
            sort_order=data.sort_order,
        )
        self.db.add(models.Resource(
            id=resource.id,
            module_id=resource.module_id,
            parent_id=resource.parent_id,
            code=resource.code,
            name=resource.name,
            resource_type=resource.resource_type,
            is_public=resource.is_public,
            requires_approval=resource.requires_approval,
            is_active=resource.is_active,
            sort_order=resource.sort_order,
            lifecycle=resource.lifecycle,
        ))
        await self.db.commit()

        logger.info("resource_created", resource_id=str(resource.id), code=catalog.qualified_code(resource))
        await self._touch(None)
        return resource

    async def move_resource(self, resource_id: uuid.UUID, parent_id: Optional[uuid.UUID]) -> domain.Resource:
        """Re-parent a resource; cycles and cross-module parents are rejected."""
        catalog = await self._catalog()
        resource = catalog.move_resource(resource_id, parent_id)
        await self.db.execute(
            update(models.Resource)
            .where(models.Resource.id == resource_id)
            .values(parent_id=parent_id)
        )
        await self.db.commit()

        logger.info(
            "resource_moved",
            resource_id=str(resource_id),
            parent_id=str(parent_id) if parent_id else None,
        )
        await self._touch(None)
        return resource

    async def delete_resource(self, resource_id: uuid.UUID) -> domain.Resource:
        catalog = await self._catalog()
        resource = catalog.delete_resource(resource_id)
        await self.db.execute(
            update(models.Resource)
            .where(models.Resource.id == resource_id)
            .values(lifecycle=Lifecycle.DELETED)
        )
        await self.db.commit()

        logger.info("resource_deleted", resource_id=str(resource_id))
        await self._touch(None)
        return resource

    # ========================================================================
    # Permissions
    # ========================================================================

    async def define_permission(self, data: PermissionCreate) -> domain.Permission:
        """
        Define an action on a resource.

        Raises:
            ConfigurationError: Duplicate (resource, action), unknown
                resource, or action outside the vocabulary
        """
        catalog = await self._catalog()
        blob = data.conditions.to_blob() if data.conditions else None
        permission = catalog.define_permission(
            resource_id=data.resource_id,
            action=data.action,
            conditions=blob,
            name=data.name,
            is_active=data.is_active,
        )
        self.db.add(models.Permission(
            id=permission.id,
            resource_id=permission.resource_id,
            action=permission.action,
            name=permission.name,
            conditions=blob or None,
            is_active=permission.is_active,
        ))
        await self.db.commit()

        logger.info("permission_defined", permission_id=str(permission.id), name=permission.name)
        await self._touch(None)
        return permission

    async def set_permission_active(self, permission_id: uuid.UUID, is_active: bool) -> domain.Permission:
        catalog = await self._catalog()
        permission = catalog.set_permission_active(permission_id, is_active)
        await self.db.execute(
            update(models.Permission)
            .where(models.Permission.id == permission_id)
            .values(is_active=is_active)
        )
        await self.db.commit()

        logger.info("permission_updated", permission_id=str(permission_id), is_active=is_active)
        await self._touch(None)
        return permission

    # ========================================================================
    # Roles
    # ========================================================================

    @staticmethod
    def _role_workspace(role: domain.Role) -> Optional[uuid.UUID]:
        # System and company roles can be bound in any workspace
        return role.workspace_id if role.scope is RoleScope.WORKSPACE else None

    async def create_role(self, data: RoleCreate) -> domain.Role:
        """
        Create a role.

        Raises:
            ConfigurationError: Duplicate code in scope or invalid scope
        """
        store = await self._assignment_store()
        role = store.create_role(
            code=data.code,
            workspace_id=data.workspace_id,
            company_id=data.company_id,
            is_system=data.is_system,
            name=data.name,
            is_active=data.is_active,
            sort_order=data.sort_order,
        )
        self.db.add(models.Role(
            id=role.id,
            code=role.code,
            name=role.name,
            scope=role.scope,
            workspace_id=role.workspace_id,
            company_id=role.company_id,
            is_active=role.is_active,
            sort_order=role.sort_order,
            lifecycle=role.lifecycle,
        ))
        await self.db.commit()

        logger.info("role_created", role_id=str(role.id), code=role.code, scope=role.scope.value)
        await self._touch(self._role_workspace(role))
        return role

    async def set_role_active(self, role_id: uuid.UUID, is_active: bool) -> domain.Role:
        store = await self._assignment_store()
        role = store.set_role_active(role_id, is_active)
        await self.db.execute(
            update(models.Role).where(models.Role.id == role_id).values(is_active=is_active)
        )
        await self.db.commit()

        logger.info("role_updated", role_id=str(role_id), is_active=is_active)
        await self._touch(self._role_workspace(role))
        return role

    async def delete_role(self, role_id: uuid.UUID) -> domain.Role:
        """Soft-delete a role (system roles are rejected)."""
        store = await self._assignment_store()
        role = store.delete_role(role_id)
        await self.db.execute(
            update(models.Role).where(models.Role.id == role_id).values(lifecycle=Lifecycle.DELETED)
        )
        await self.db.commit()

        logger.info("role_deleted", role_id=str(role_id), code=role.code)
        await self._touch(self._role_workspace(role))
        return role

    async def bind_role(self, data: RoleBindingCreate, actor_id: Optional[uuid.UUID] = None) -> domain.RoleBinding:
        """
        Give a user a role inside a workspace.

        Raises:
            AssignmentError: Unknown role or binding already present
        """
        store = await self._assignment_store(data.workspace_id)
        binding = store.bind_role(
            user_id=data.user_id,
            role_id=data.role_id,
            workspace_id=data.workspace_id,
            company_id=data.company_id,
        )
        self.db.add(models.UserRole(
            workspace_id=binding.workspace_id,
            company_id=binding.company_id,
            user_id=binding.user_id,
            role_id=binding.role_id,
            is_active=binding.is_active,
            created_by=actor_id,
        ))
        await self.db.commit()

        logger.info(
            "role_bound",
            user_id=str(data.user_id),
            role_id=str(data.role_id),
            workspace_id=str(data.workspace_id),
        )
        await self._touch(data.workspace_id)
        return binding

    async def unbind_role(
        self,
        user_id: uuid.UUID,
        role_id: uuid.UUID,
        workspace_id: uuid.UUID,
        company_id: Optional[uuid.UUID] = None,
    ) -> bool:
        result = await self.db.execute(
            delete(models.UserRole).where(
                models.UserRole.user_id == user_id,
                models.UserRole.role_id == role_id,
                models.UserRole.workspace_id == workspace_id,
                _same_company(models.UserRole.company_id, company_id),
            )
        )
        await self.db.commit()
        if not result.rowcount:
            return False

        logger.info("role_unbound", user_id=str(user_id), role_id=str(role_id), workspace_id=str(workspace_id))
        await self._touch(workspace_id)
        return True

    # ========================================================================
    # Assignments
    # ========================================================================

    async def save_assignment(
        self,
        data: AssignmentCreate,
        actor_id: Optional[uuid.UUID] = None,
    ) -> domain.Assignment:
        """
        Grant or deny a permission to a role in a workspace.

        A deny may be added next to an existing grant.

        Raises:
            AssignmentError: Unknown role/permission or duplicate row
            ConfigurationError: Malformed condition override
        """
        catalog = await self._catalog()
        if catalog.get_permission(data.permission_id) is None:
            raise AssignmentError(f"Unknown permission: {data.permission_id}")

        blob = data.conditions.to_blob() if data.conditions else None
        store = await self._assignment_store(data.workspace_id)
        assignment = store.save_assignment(
            role_id=data.role_id,
            permission_id=data.permission_id,
            workspace_id=data.workspace_id,
            is_granted=data.is_granted,
            granted_by=actor_id,
            expires_at=data.expires_at,
            conditions=blob,
        )
        self.db.add(models.RoleModulePermission(
            id=assignment.id,
            role_id=assignment.role_id,
            permission_id=assignment.permission_id,
            workspace_id=assignment.workspace_id,
            is_granted=assignment.is_granted,
            conditions=blob,
            granted_by=assignment.granted_by,
            granted_at=assignment.granted_at,
            expires_at=assignment.expires_at,
        ))
        await self.db.commit()

        logger.info(
            "assignment_saved",
            assignment_id=str(assignment.id),
            role_id=str(assignment.role_id),
            permission_id=str(assignment.permission_id),
            workspace_id=str(assignment.workspace_id),
            is_granted=assignment.is_granted,
        )
        await self._touch(assignment.workspace_id)
        return assignment

    async def revoke_assignment(self, assignment_id: uuid.UUID) -> None:
        """
        Remove a grant or deny.

        Raises:
            ResourceNotFound: Unknown assignment id
        """
        row = await self.db.get(models.RoleModulePermission, assignment_id)
        if row is None:
            raise ResourceNotFound(assignment_id, kind="assignment")
        workspace_id = row.workspace_id
        await self.db.delete(row)
        await self.db.commit()

        logger.info("assignment_revoked", assignment_id=str(assignment_id), workspace_id=str(workspace_id))
        await self._touch(workspace_id)

    # ========================================================================
    # Enablement
    # ========================================================================

    async def set_enablement(
        self,
        data: EnablementUpdate,
        actor_id: Optional[uuid.UUID] = None,
    ) -> domain.EnablementRow:
        """
        Switch a module or resource on or off for a workspace or company.

        Raises:
            ResourceNotFound: Unknown module or resource
            ConfigurationError: Disabling a core module
        """
        catalog = await self._catalog()
        if data.target is EnablementTarget.MODULE:
            module = catalog.get_module(data.target_id)
            if module is None:
                raise ResourceNotFound(data.target_id, kind="module")
            if module.is_core and not data.is_enabled:
                raise ConfigurationError(f"Core module cannot be disabled: {module.code}")
        elif catalog.get_resource_by_id(data.target_id) is None:
            raise ResourceNotFound(data.target_id)

        result = await self.db.execute(
            select(models.Enablement).where(
                models.Enablement.workspace_id == data.workspace_id,
                _same_company(models.Enablement.company_id, data.company_id),
                models.Enablement.target == data.target,
                models.Enablement.target_id == data.target_id,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = models.Enablement(
                workspace_id=data.workspace_id,
                company_id=data.company_id,
                target=data.target,
                target_id=data.target_id,
            )
            self.db.add(row)
        row.is_enabled = data.is_enabled
        row.updated_by = actor_id
        await self.db.commit()

        logger.info(
            "enablement_changed",
            target=data.target.value,
            target_id=str(data.target_id),
            workspace_id=str(data.workspace_id),
            company_id=str(data.company_id) if data.company_id else None,
            is_enabled=data.is_enabled,
        )
        await self._touch(data.workspace_id)
        return domain.EnablementRow(
            target=data.target,
            target_id=data.target_id,
            workspace_id=data.workspace_id,
            is_enabled=data.is_enabled,
            company_id=data.company_id,
            toggled_by=actor_id,
        )

    async def remove_enablement(
        self,
        target: EnablementTarget,
        target_id: uuid.UUID,
        workspace_id: uuid.UUID,
        company_id: Optional[uuid.UUID] = None,
    ) -> bool:
        """Drop an enablement row so the next level of defaults applies."""
        result = await self.db.execute(
            delete(models.Enablement).where(
                models.Enablement.workspace_id == workspace_id,
                _same_company(models.Enablement.company_id, company_id),
                models.Enablement.target == target,
                models.Enablement.target_id == target_id,
            )
        )
        await self.db.commit()
        if not result.rowcount:
            return False

        logger.info(
            "enablement_removed",
            target=target.value,
            target_id=str(target_id),
            workspace_id=str(workspace_id),
        )
        await self._touch(workspace_id)
        return True

    # ========================================================================
    # Access Log
    # ========================================================================

    async def list_access_logs(
        self,
        workspace_id: uuid.UUID,
        filter_params: Optional[AccessLogFilter] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[list[domain.AccessLogEntry], int]:
        """Get access log entries with filtering, newest first."""
        return await list_access_logs(self.db, workspace_id, filter_params, limit=limit, offset=offset)
