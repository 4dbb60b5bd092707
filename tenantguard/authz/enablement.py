"""
Enablement Layer.

Resolves whether a module or resource is usable in a tenant context:
company row, else workspace row, else the entity's own active flag. A
disabled module or ancestor resource disables everything beneath it.
"""

import uuid
from typing import Iterable, Optional

from tenantguard.authz.catalog import CatalogStore
from tenantguard.authz.domain import EnablementRow, Module, Resource, TenantContext
from tenantguard.authz.vocabulary import EnablementTarget


class EnablementLayer:
    """Per-tenant module/resource switches for one workspace snapshot."""

    def __init__(self, catalog: CatalogStore, rows: Iterable[EnablementRow] = ()):
        self._catalog = catalog
        self._workspace_rows: dict[tuple[uuid.UUID, EnablementTarget, uuid.UUID], bool] = {}
        self._company_rows: dict[tuple[uuid.UUID, uuid.UUID, EnablementTarget, uuid.UUID], bool] = {}
        for row in rows:
            self.put(row)

    def put(self, row: EnablementRow) -> None:
        if row.company_id is None:
            self._workspace_rows[(row.workspace_id, row.target, row.target_id)] = row.is_enabled
        else:
            self._company_rows[
                (row.workspace_id, row.company_id, row.target, row.target_id)
            ] = row.is_enabled

    def _row_state(
        self,
        target: EnablementTarget,
        target_id: uuid.UUID,
        tenant: TenantContext,
    ) -> Optional[bool]:
        if tenant.company_id is not None:
            state = self._company_rows.get((tenant.workspace_id, tenant.company_id, target, target_id))
            if state is not None:
                return state
        return self._workspace_rows.get((tenant.workspace_id, target, target_id))

    def module_enabled(self, module: Module, tenant: TenantContext) -> bool:
        if not module.is_live:
            return False
        # Core modules cannot be switched off for a tenant
        if module.is_core:
            return True
        state = self._row_state(EnablementTarget.MODULE, module.id, tenant)
        return module.is_active if state is None else state

    def _resource_switch(self, resource: Resource, tenant: TenantContext) -> bool:
        if not resource.is_live:
            return False
        state = self._row_state(EnablementTarget.RESOURCE, resource.id, tenant)
        return resource.is_active if state is None else state

    def resource_enabled(self, resource: Resource, tenant: TenantContext) -> bool:
        """
        Return True when the resource, every ancestor and the owning
        module are enabled for the tenant.
        """
        module = self._catalog.get_module(resource.module_id)
        if module is None or not self.module_enabled(module, tenant):
            return False
        if not self._resource_switch(resource, tenant):
            return False
        return all(
            self._resource_switch(ancestor, tenant)
            for ancestor in self._catalog.get_ancestors(resource.id)
        )

    def is_enabled(self, entity_id: uuid.UUID, tenant: TenantContext) -> bool:
        """Resolve a module or resource id; unknown ids are disabled."""
        module = self._catalog.get_module(entity_id)
        if module is not None:
            return self.module_enabled(module, tenant)
        resource = self._catalog.get_resource_by_id(entity_id)
        if resource is not None:
            return self.resource_enabled(resource, tenant)
        return False
