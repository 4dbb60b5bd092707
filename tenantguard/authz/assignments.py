"""
Assignment Store.

Holds roles, user-role bindings and role/permission assignments for one
workspace snapshot. Rows are kept verbatim; expiry is evaluated against
the `now` passed to each query, never at load time.
"""

import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Union

from tenantguard.authz.conditions import ConditionSet, decode_conditions
from tenantguard.authz.domain import Assignment, Role, RoleBinding, TenantContext, utc_now
from tenantguard.authz.errors import AssignmentError, ConfigurationError, ResourceNotFound
from tenantguard.authz.vocabulary import Lifecycle, RoleScope


def role_scope_for(
    workspace_id: Optional[uuid.UUID],
    company_id: Optional[uuid.UUID],
    is_system: bool,
) -> RoleScope:
    """
    Derive the scope of a role, enforcing that exactly one scope is set.

    Raises:
        ConfigurationError: Both or neither of workspace/company given for a
            non-system role, or a system role with either
    """
    if is_system:
        if workspace_id is not None or company_id is not None:
            raise ConfigurationError("System roles cannot be scoped to a workspace or company")
        return RoleScope.SYSTEM
    if workspace_id is not None and company_id is not None:
        raise ConfigurationError("A role cannot be scoped to both a workspace and a company")
    if workspace_id is not None:
        return RoleScope.WORKSPACE
    if company_id is not None:
        return RoleScope.COMPANY
    raise ConfigurationError("A non-system role needs a workspace or company scope")


class AssignmentStore:
    """Roles, bindings and assignments with their uniqueness rules."""

    def __init__(self) -> None:
        self._roles: dict[uuid.UUID, Role] = {}
        self._role_codes: dict[tuple[RoleScope, Optional[uuid.UUID], str], uuid.UUID] = {}
        self._bindings: dict[tuple[uuid.UUID, uuid.UUID], list[RoleBinding]] = {}
        self._assignments: dict[uuid.UUID, Assignment] = {}
        self._assignment_keys: dict[tuple[uuid.UUID, uuid.UUID, uuid.UUID, bool], uuid.UUID] = {}
        self._by_permission: dict[tuple[uuid.UUID, uuid.UUID], set[uuid.UUID]] = {}

    @classmethod
    def from_rows(
        cls,
        roles: Iterable[Role],
        bindings: Iterable[RoleBinding],
        assignments: Iterable[Assignment],
    ) -> "AssignmentStore":
        store = cls()
        for role in roles:
            store._put_role(role)
        for binding in bindings:
            store._put_binding(binding)
        for assignment in assignments:
            store._put_assignment(assignment)
        return store

    # ========================================================================
    # Arena maintenance
    # ========================================================================

    @staticmethod
    def _scope_key(role: Role) -> tuple[RoleScope, Optional[uuid.UUID]]:
        if role.scope is RoleScope.WORKSPACE:
            return role.scope, role.workspace_id
        if role.scope is RoleScope.COMPANY:
            return role.scope, role.company_id
        return role.scope, None

    def _put_role(self, role: Role) -> None:
        self._roles[role.id] = role
        if role.is_live:
            self._role_codes[(*self._scope_key(role), role.code)] = role.id

    def _put_binding(self, binding: RoleBinding) -> None:
        self._bindings.setdefault((binding.workspace_id, binding.user_id), []).append(binding)

    def _put_assignment(self, assignment: Assignment) -> None:
        self._assignments[assignment.id] = assignment
        key = (assignment.role_id, assignment.permission_id, assignment.workspace_id, assignment.is_granted)
        self._assignment_keys[key] = assignment.id
        self._by_permission.setdefault(
            (assignment.permission_id, assignment.workspace_id), set()
        ).add(assignment.id)

    # ========================================================================
    # Roles
    # ========================================================================

    def all_roles(self) -> list[Role]:
        """Every role row, tombstones included."""
        return list(self._roles.values())

    def roles(self) -> list[Role]:
        return sorted(
            (r for r in self._roles.values() if r.is_live),
            key=lambda r: (r.sort_order, r.code),
        )

    def get_role(self, role_id: uuid.UUID) -> Optional[Role]:
        role = self._roles.get(role_id)
        return role if role is not None and role.is_live else None

    def create_role(
        self,
        code: str,
        workspace_id: Optional[uuid.UUID] = None,
        company_id: Optional[uuid.UUID] = None,
        is_system: bool = False,
        name: str = "",
        is_active: bool = True,
        sort_order: int = 0,
        role_id: Optional[uuid.UUID] = None,
    ) -> Role:
        """
        Create a role.

        Raises:
            ConfigurationError: Invalid scope combination or duplicate code
                within the scope
        """
        scope = role_scope_for(workspace_id, company_id, is_system)
        role = Role(
            id=role_id or uuid.uuid4(),
            code=code,
            scope=scope,
            workspace_id=workspace_id,
            company_id=company_id,
            name=name or code,
            is_active=is_active,
            sort_order=sort_order,
        )
        if (*self._scope_key(role), code) in self._role_codes:
            raise ConfigurationError(f"Role code already exists in scope: {code}")
        self._put_role(role)
        return role

    def set_role_active(self, role_id: uuid.UUID, is_active: bool) -> Role:
        role = self.get_role(role_id)
        if role is None:
            raise ResourceNotFound(role_id, kind="role")
        updated = replace(role, is_active=is_active)
        self._put_role(updated)
        return updated

    def delete_role(self, role_id: uuid.UUID) -> Role:
        """Tombstone a role. System roles cannot be deleted."""
        role = self.get_role(role_id)
        if role is None:
            raise ResourceNotFound(role_id, kind="role")
        if role.is_system:
            raise ConfigurationError(f"System role cannot be deleted: {role.code}")
        deleted = replace(role, lifecycle=Lifecycle.DELETED)
        self._role_codes.pop((*self._scope_key(role), role.code), None)
        self._put_role(deleted)
        return deleted

    # ========================================================================
    # Bindings
    # ========================================================================

    def bind_role(
        self,
        user_id: uuid.UUID,
        role_id: uuid.UUID,
        workspace_id: uuid.UUID,
        company_id: Optional[uuid.UUID] = None,
    ) -> RoleBinding:
        """Give a user a role in a workspace (optionally one company only)."""
        if self.get_role(role_id) is None:
            raise AssignmentError(f"Unknown role: {role_id}")
        for existing in self._bindings.get((workspace_id, user_id), ()):
            if existing.role_id == role_id and existing.company_id == company_id:
                raise AssignmentError("Role already bound to user in this scope")
        binding = RoleBinding(
            user_id=user_id,
            role_id=role_id,
            workspace_id=workspace_id,
            company_id=company_id,
        )
        self._put_binding(binding)
        return binding

    def unbind_role(
        self,
        user_id: uuid.UUID,
        role_id: uuid.UUID,
        workspace_id: uuid.UUID,
        company_id: Optional[uuid.UUID] = None,
    ) -> bool:
        bindings = self._bindings.get((workspace_id, user_id), [])
        kept = [b for b in bindings if not (b.role_id == role_id and b.company_id == company_id)]
        self._bindings[(workspace_id, user_id)] = kept
        return len(kept) != len(bindings)

    def bindings(self) -> list[RoleBinding]:
        return [b for group in self._bindings.values() for b in group]

    def role_applies(self, role: Role, tenant: TenantContext) -> bool:
        """Tenant isolation: a role only counts inside its own scope."""
        if not role.is_live or not role.is_active:
            return False
        if role.scope is RoleScope.SYSTEM:
            return True
        if role.scope is RoleScope.WORKSPACE:
            return role.workspace_id == tenant.workspace_id
        return tenant.company_id is not None and role.company_id == tenant.company_id

    def roles_for(self, user_id: uuid.UUID, tenant: TenantContext) -> frozenset[uuid.UUID]:
        """Ids of the roles a user holds in the tenant context."""
        role_ids = set()
        for binding in self._bindings.get((tenant.workspace_id, user_id), ()):
            if not binding.is_active:
                continue
            if binding.company_id is not None and binding.company_id != tenant.company_id:
                continue
            role = self._roles.get(binding.role_id)
            if role is not None and self.role_applies(role, tenant):
                role_ids.add(role.id)
        return frozenset(role_ids)

    # ========================================================================
    # Assignments
    # ========================================================================

    def assignments(self) -> list[Assignment]:
        return list(self._assignments.values())

    def get_assignment(self, assignment_id: uuid.UUID) -> Optional[Assignment]:
        return self._assignments.get(assignment_id)

    def save_assignment(
        self,
        role_id: uuid.UUID,
        permission_id: uuid.UUID,
        workspace_id: uuid.UUID,
        is_granted: bool = True,
        granted_by: Optional[uuid.UUID] = None,
        expires_at: Optional[datetime] = None,
        conditions: Union[ConditionSet, Mapping[str, Any], None] = None,
        granted_at: Optional[datetime] = None,
        assignment_id: Optional[uuid.UUID] = None,
    ) -> Assignment:
        """
        Store a grant or explicit deny.

        A deny may coexist with a grant for the same role, permission and
        workspace; two rows of the same kind may not.

        Raises:
            AssignmentError: Unknown role, workspace role used in another
                workspace, or duplicate (role, permission, workspace, is_granted)
        """
        role = self.get_role(role_id)
        if role is None:
            raise AssignmentError(f"Unknown role: {role_id}")
        if role.workspace_id is not None and role.workspace_id != workspace_id:
            raise AssignmentError(f"Role {role.code} belongs to another workspace")
        if (role_id, permission_id, workspace_id, is_granted) in self._assignment_keys:
            kind = "grant" if is_granted else "deny"
            raise AssignmentError(f"A {kind} already exists for this role and permission")

        if isinstance(conditions, Mapping):
            # An empty override still replaces the template
            conditions = decode_conditions(conditions)

        assignment = Assignment(
            id=assignment_id or uuid.uuid4(),
            role_id=role_id,
            permission_id=permission_id,
            workspace_id=workspace_id,
            is_granted=is_granted,
            granted_by=granted_by,
            granted_at=granted_at or utc_now(),
            expires_at=expires_at,
            conditions=conditions,
        )
        self._put_assignment(assignment)
        return assignment

    def revoke(self, assignment_id: uuid.UUID) -> bool:
        assignment = self._assignments.pop(assignment_id, None)
        if assignment is None:
            return False
        self._assignment_keys.pop(
            (assignment.role_id, assignment.permission_id, assignment.workspace_id, assignment.is_granted),
            None,
        )
        self._by_permission.get((assignment.permission_id, assignment.workspace_id), set()).discard(
            assignment_id
        )
        return True

    def find_assignments(
        self,
        role_ids: Iterable[uuid.UUID],
        permission_id: uuid.UUID,
        workspace_id: uuid.UUID,
        now: datetime,
    ) -> list[Assignment]:
        """
        Return live assignments for the roles, permission and workspace.

        Expired rows (expires_at <= now) are never returned.
        """
        wanted = set(role_ids)
        found = [
            self._assignments[aid]
            for aid in self._by_permission.get((permission_id, workspace_id), ())
            if self._assignments[aid].role_id in wanted
            and not self._assignments[aid].is_expired(now)
        ]
        return sorted(found, key=lambda a: (a.granted_at, str(a.id)))
