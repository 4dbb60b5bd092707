"""Shared pytest fixtures for authorization tests."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import pytest

from tenantguard.authz.assignments import AssignmentStore
from tenantguard.authz.catalog import CatalogStore
from tenantguard.authz.domain import (
    Assignment,
    EnablementRow,
    EvalContext,
    Module,
    Permission,
    Principal,
    Resource,
    Role,
    TenantContext,
)
from tenantguard.authz.enablement import EnablementLayer
from tenantguard.authz.ports import MemoryPersistence
from tenantguard.authz.resolver import WorkspaceSnapshot
from tenantguard.authz.vocabulary import Action, EnablementTarget, ModuleCategory, ResourceType


@dataclass
class World:
    """
    A small HR catalog:

        hr (module)
        +-- employees            view, export
        |   +-- employees.delete delete (department scope)
        +-- handbook             public
    """
    persistence: MemoryPersistence
    workspace_id: uuid.UUID
    company_x: uuid.UUID
    company_y: uuid.UUID
    hr: Module
    employees: Resource
    employees_delete: Resource
    handbook: Resource
    view: Permission
    export: Permission
    delete: Permission
    hr_manager: Role
    user: Principal
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def catalog(self) -> CatalogStore:
        return self.persistence.catalog

    @property
    def assignments(self) -> AssignmentStore:
        return self.persistence.assignments

    @property
    def tenant(self) -> TenantContext:
        return TenantContext(workspace_id=self.workspace_id, company_id=self.company_x)

    def snapshot(self, version: int = 0) -> WorkspaceSnapshot:
        return WorkspaceSnapshot(
            workspace_id=self.workspace_id,
            version=version,
            catalog=self.catalog,
            enablement=EnablementLayer(self.catalog, self.persistence.enablement_rows),
            assignments=self.assignments,
        )

    def grant(
        self,
        permission: Permission,
        role: Optional[Role] = None,
        is_granted: bool = True,
        workspace_id: Optional[uuid.UUID] = None,
        **kwargs: Any,
    ) -> Assignment:
        return self.assignments.save_assignment(
            role_id=(role or self.hr_manager).id,
            permission_id=permission.id,
            workspace_id=workspace_id or self.workspace_id,
            is_granted=is_granted,
            **kwargs,
        )

    def deny(self, permission: Permission, role: Optional[Role] = None, **kwargs: Any) -> Assignment:
        return self.grant(permission, role=role, is_granted=False, **kwargs)

    def switch(
        self,
        target_id: uuid.UUID,
        is_enabled: bool,
        company_id: Optional[uuid.UUID] = None,
        target: EnablementTarget = EnablementTarget.MODULE,
    ) -> None:
        self.persistence.enablement_rows.append(EnablementRow(
            target=target,
            target_id=target_id,
            workspace_id=self.workspace_id,
            is_enabled=is_enabled,
            company_id=company_id,
        ))

    def dept_ctx(self, department_id: str = "dept-hr") -> EvalContext:
        return EvalContext(department_id=department_id)


@pytest.fixture()
def world() -> World:
    """Fresh HR catalog with one workspace role bound to one user."""
    catalog = CatalogStore()
    assignments = AssignmentStore()
    workspace_id = uuid.uuid4()

    hr = catalog.create_module("hr", ModuleCategory.HR, name="Human Resources")
    employees = catalog.create_resource(hr.id, "employees", ResourceType.PAGE)
    employees_delete = catalog.create_resource(
        hr.id, "employees.delete", ResourceType.ACTION, parent_id=employees.id
    )
    handbook = catalog.create_resource(hr.id, "handbook", ResourceType.PAGE, is_public=True)

    view = catalog.define_permission(employees.id, Action.VIEW)
    export = catalog.define_permission(employees.id, Action.EXPORT)
    delete = catalog.define_permission(employees_delete.id, Action.DELETE, {"scope": "department"})

    hr_manager = assignments.create_role("hr_manager", workspace_id=workspace_id)
    user = Principal(user_id=uuid.uuid4(), department_id="dept-hr")
    assignments.bind_role(user.user_id, hr_manager.id, workspace_id)

    return World(
        persistence=MemoryPersistence(catalog, assignments),
        workspace_id=workspace_id,
        company_x=uuid.uuid4(),
        company_y=uuid.uuid4(),
        hr=hr,
        employees=employees,
        employees_delete=employees_delete,
        handbook=handbook,
        view=view,
        export=export,
        delete=delete,
        hr_manager=hr_manager,
        user=user,
    )


class FixedClock:
    """Settable clock for expiry tests."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock(datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc))
